"""Self-service cancellation endpoints.

Implements:
- POST /api/cancel/request  (email a signed cancel link)
- GET  /api/cancel?token=   (redeem the link, redirect to a result page)
"""

import json
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse
from pydantic import ValidationError

from subscription_sync.api.security import get_settings
from subscription_sync.config import Settings
from subscription_sync.errors import InvalidToken
from subscription_sync.logging_config import get_logger
from subscription_sync.models import CancelLinkRequest, OkResponse
from subscription_sync.services.alert_dispatcher import AlertDispatcher, get_alert_dispatcher
from subscription_sync.services.cancellation import CancellationService, get_cancellation_service

logger = get_logger(__name__)
router = APIRouter(tags=["Cancellation"])


def _email_from_body(body: bytes) -> Optional[str]:
    try:
        return CancelLinkRequest.model_validate(json.loads(body or b"{}")).email
    except (ValueError, ValidationError):
        return None


@router.post("/api/cancel/request", response_model=OkResponse)
async def request_cancel_link(
    request: Request,
    service: CancellationService = Depends(get_cancellation_service),
) -> OkResponse:
    """Email a cancel link if the address is known.

    The answer is identical whether or not the email is known, so the
    endpoint cannot be used to probe for customers.
    """
    try:
        email = _email_from_body(await request.body())
        sent = await run_in_threadpool(service.request_cancel_link, email)
        logger.info("cancel_link_requested", email=email, sent=sent)
    except Exception as e:
        logger.error("cancel_link_request_failed", error=str(e), error_type=type(e).__name__, exc_info=True)
    return OkResponse()


@router.get("/api/cancel")
def complete_cancel(
    token: Optional[str] = Query(None, description="Signed cancel token"),
    service: CancellationService = Depends(get_cancellation_service),
    settings: Settings = Depends(get_settings),
    alerts: AlertDispatcher = Depends(get_alert_dispatcher),
) -> RedirectResponse:
    """Redeem a cancel link.

    Only an invalid or expired token (or one without an identity) lands on
    the failure page. Everything else, including replays of a used link and
    internal failures, lands on the success page; internal failures are
    alerted for follow-up.
    """
    try:
        outcome = service.complete_self_service_cancel(token)
    except InvalidToken:
        logger.info("cancel_link_rejected")
        return RedirectResponse(settings.cancel_failure_redirect, status_code=302)
    except Exception as e:
        logger.error("cancel_link_redeem_failed", error=str(e), error_type=type(e).__name__, exc_info=True)
        alerts.error("Cancel link redemption crashed", error=str(e), error_type=type(e).__name__)
        return RedirectResponse(settings.cancel_success_redirect, status_code=302)

    logger.info(
        "cancel_link_redeemed",
        email=outcome.email,
        ok=outcome.ok,
        reason=outcome.reason,
        replayed=outcome.replayed,
        cancel_at_date=outcome.cancel_at_date.isoformat() if outcome.cancel_at_date else None,
    )
    return RedirectResponse(settings.cancel_success_redirect, status_code=302)
