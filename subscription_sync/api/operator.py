"""Operator (customer support) endpoints.

Implements:
- POST /api/operator/cancel          (bulk by emails, or cancel-all for one customer)
- POST /api/operator/subscriptions   (list a verified customer's subscriptions)
- POST /api/operator/import          (backfill mapping records from the provider)

All endpoints require ``Authorization: Bearer <ADMIN_CANCEL_SECRET>``.
"""

from typing import Union

from fastapi import APIRouter, Depends, HTTPException, Query

from subscription_sync.api.security import require_admin
from subscription_sync.errors import IdentityMismatch, NoMapping, ProviderError, StoreError
from subscription_sync.logging_config import bind_context, get_logger
from subscription_sync.models import (
    CancelAllOutcome,
    CancelAllResponse,
    CancelOutcome,
    CustomerLookupRequest,
    ImportResponse,
    OperatorCancelItem,
    OperatorCancelRequest,
    OperatorCancelResponse,
    SubscriptionListResponse,
    SubscriptionSummary,
)
from subscription_sync.services.cancellation import CancellationService, get_cancellation_service
from subscription_sync.services.mapping_import import MappingImporter, get_mapping_importer

logger = get_logger(__name__)
router = APIRouter(prefix="/api/operator", tags=["Operator"], dependencies=[Depends(require_admin)])


def _convert_cancel_outcome(outcome: CancelOutcome) -> OperatorCancelItem:
    return OperatorCancelItem(
        email=outcome.email or "",
        ok=outcome.ok,
        reason=outcome.reason,
        customerId=outcome.customer_id,
        subscriptionId=outcome.subscription_id,
        cancelAtDate=outcome.cancel_at_date,
        providerCancelStatus=outcome.primary_cancel_status,
    )


def _convert_cancel_all(outcome: CancelAllOutcome) -> CancelAllResponse:
    return CancelAllResponse(
        message=outcome.message,
        canceledCount=outcome.canceled_count,
        canceledIds=outcome.canceled_ids,
        failures=[{"subscriptionId": a.subscription_id, "status": a.http_status} for a in outcome.failures],
        cancelAtDate=outcome.cancel_at_date,
        storeUpdated=outcome.store_updated,
    )


def _lookup_error(e: Exception) -> HTTPException:
    """Map customer verification failures to HTTP errors."""
    if isinstance(e, NoMapping):
        return HTTPException(status_code=404, detail={"error": "Customer not found", "message": str(e)})
    if isinstance(e, IdentityMismatch):
        return HTTPException(status_code=400, detail={"error": "Invalid request", "message": str(e)})
    return HTTPException(
        status_code=502,
        detail={"error": "Payment provider error", "message": str(e)},
    )


@router.post("/cancel", response_model=None)
def operator_cancel(
    request: OperatorCancelRequest,
    service: CancellationService = Depends(get_cancellation_service),
) -> Union[OperatorCancelResponse, CancelAllResponse]:
    """Cancel subscriptions on behalf of customers.

    With ``emails`` each address is canceled through its mapping record and
    reported individually. With ``customerId`` and ``email`` every live
    subscription of that customer is canceled after verifying the email.

    Raises:
        400: Neither form given, or email does not match the customer
        404: Customer unknown to the provider
        502: Provider failure
    """
    if request.emails:
        logger.info("operator_bulk_cancel", count=len(request.emails))
        outcomes = service.operator_cancel_emails(request.emails)
        return OperatorCancelResponse(results=[_convert_cancel_outcome(o) for o in outcomes])

    if request.customerId and request.email:
        bind_context(customer_id=request.customerId, email=request.email)
        logger.info("operator_cancel_all")
        try:
            outcome = service.operator_cancel_all(request.customerId, request.email)
        except (NoMapping, IdentityMismatch, ProviderError) as e:
            raise _lookup_error(e)
        return _convert_cancel_all(outcome)

    raise HTTPException(
        status_code=400,
        detail={"error": "Invalid request", "message": "Provide customerId and email, or emails[]"},
    )


@router.post("/subscriptions", response_model=SubscriptionListResponse)
def list_subscriptions(
    request: CustomerLookupRequest,
    service: CancellationService = Depends(get_cancellation_service),
) -> SubscriptionListResponse:
    """List every subscription of a customer after verifying the email."""
    bind_context(customer_id=request.customerId, email=request.email)
    try:
        subscriptions = service.list_customer_subscriptions(request.customerId, request.email)
    except (NoMapping, IdentityMismatch, ProviderError) as e:
        raise _lookup_error(e)

    return SubscriptionListResponse(
        customerId=request.customerId,
        email=request.email,
        count=len(subscriptions),
        subscriptions=[SubscriptionSummary.from_subscription(s) for s in subscriptions],
    )


@router.post("/import", response_model=ImportResponse)
def import_mappings(
    force: bool = Query(False, description="Overwrite identifiers on existing records"),
    importer: MappingImporter = Depends(get_mapping_importer),
) -> ImportResponse:
    """Backfill mapping records for every customer with a live subscription."""
    try:
        summary = importer.run(force=force)
    except ProviderError as e:
        raise HTTPException(
            status_code=502,
            detail={"error": "Payment provider error", "message": str(e)},
        )
    except StoreError as e:
        raise HTTPException(
            status_code=503,
            detail={"error": "Store unavailable", "message": str(e)},
        )
    return ImportResponse(summary=summary)
