"""Payment provider webhook.

Implements:
- POST /api/payments/webhook

The provider only sends a payment id (form-encoded or JSON). Every
delivery is acknowledged with 200 "OK" so the provider does not retry
storms; failures are logged and alerted by the engine and fixed forward.
"""

import json
from typing import Optional
from urllib.parse import parse_qs

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse

from subscription_sync.logging_config import get_logger
from subscription_sync.services.webhook_engine import WebhookEngine, get_webhook_engine

logger = get_logger(__name__)
router = APIRouter(tags=["Payments"])


def parse_payment_id(body: bytes, content_type: str = "") -> Optional[str]:
    """Extract the payment id from a webhook body.

    Accepts ``id`` or ``payment[id]`` form fields, or ``id`` / ``payment.id``
    in a JSON object.
    """
    text = body.decode("utf-8", errors="replace").strip()
    if not text:
        return None

    if "json" in content_type.lower() or text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        payment = data.get("payment")
        value = data.get("id") or (payment.get("id") if isinstance(payment, dict) else None)
        return str(value) if value else None

    fields = parse_qs(text)
    for name in ("id", "payment[id]"):
        values = fields.get(name)
        if values and values[0]:
            return values[0]
    return None


@router.post("/api/payments/webhook", response_class=PlainTextResponse)
async def payment_webhook(
    request: Request,
    engine: WebhookEngine = Depends(get_webhook_engine),
) -> str:
    """Process a payment status notification; always answers 200 OK."""
    try:
        body = await request.body()
        payment_id = parse_payment_id(body, request.headers.get("content-type", ""))
        outcome = await run_in_threadpool(engine.handle_payment_notification, payment_id)
        logger.info(
            "webhook_handled",
            payment_id=payment_id,
            action=outcome.action,
            errors=outcome.errors,
        )
    except Exception as e:
        logger.error("webhook_unhandled_error", error=str(e), error_type=type(e).__name__, exc_info=True)
    return "OK"
