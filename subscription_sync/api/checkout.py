"""Checkout endpoint.

Implements:
- POST /api/checkout
"""

from fastapi import APIRouter, Depends, HTTPException

from subscription_sync.errors import ProviderError, ValidationFailure
from subscription_sync.logging_config import bind_context, get_logger
from subscription_sync.models import CheckoutRequest, CheckoutResponse
from subscription_sync.services.checkout import CheckoutService, get_checkout_service

logger = get_logger(__name__)
router = APIRouter(tags=["Checkout"])


@router.post("/api/checkout", response_model=CheckoutResponse)
def start_checkout(
    request: CheckoutRequest,
    service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutResponse:
    """Create a provider customer and payment, return the hosted checkout URL.

    Raises:
        400: Missing email or no offers configured
        502: Provider rejected the customer or payment
    """
    bind_context(email=request.email)
    logger.info("checkout_request", offer_id=request.offerId)

    try:
        checkout_url = service.start_checkout(request.email, request.name, request.offerId)
    except ValidationFailure as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid request", "message": str(e)},
        )
    except ProviderError as e:
        logger.error("checkout_failed", error=str(e), status_code=e.status_code)
        raise HTTPException(
            status_code=502,
            detail={"error": "Payment provider error", "message": "Could not start checkout"},
        )

    return CheckoutResponse(checkoutUrl=checkout_url)
