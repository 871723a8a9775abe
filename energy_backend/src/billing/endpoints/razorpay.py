"""
Razorpay Endpoints

Checkout support for the web client: publishable key, order creation,
signature verification, gateway payment lookup and the webhook receiver.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from energy_backend.src.billing.container import BillingServices
from energy_backend.src.billing.external.razorpay import verify_payment_signature
from energy_backend.src.billing.shared.exceptions import (
    GatewayNotConfiguredError,
    InvalidInputError,
    VerificationFailedError,
)
from .dependencies import get_billing_services, get_current_user_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/razorpay", tags=["razorpay"])


# ============================================================================
# Request Models
# ============================================================================

class CreateOrderRequest(BaseModel):
    """Request for a standalone order; `amount` is in rupees."""
    amount: Optional[Decimal] = Field(None, description="Amount in major units, e.g. 1375.50")
    currency: Optional[str] = Field(None, description="ISO currency code, defaults to INR")
    notes: Optional[Dict[str, Any]] = None


class VerifyPaymentRequest(BaseModel):
    """Checkout confirmation as returned to the client by Razorpay."""
    model_config = ConfigDict(populate_by_name=True)

    razorpay_order_id: Optional[str] = Field(
        None, validation_alias=AliasChoices('razorpay_order_id', 'orderId')
    )
    razorpay_payment_id: Optional[str] = Field(
        None, validation_alias=AliasChoices('razorpay_payment_id', 'paymentId')
    )
    razorpay_signature: Optional[str] = Field(
        None, validation_alias=AliasChoices('razorpay_signature', 'signature')
    )


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/key")
async def get_key(services: BillingServices = Depends(get_billing_services)) -> Dict:
    """Publishable key id for the checkout widget. Never the secret."""
    key_id = services.settings.RAZORPAY_KEY_ID
    if not key_id:
        raise GatewayNotConfiguredError()
    return {'key_id': key_id}


@router.post("/create-order")
async def create_order(
    request: CreateOrderRequest,
    services: BillingServices = Depends(get_billing_services)
) -> Dict:
    """Create a Razorpay order for an arbitrary amount."""
    handle = await services.orders.create_order(request.amount, request.currency, request.notes)
    return {'success': True, **handle.to_dict()}


@router.post("/verify-payment")
async def verify_payment(
    request: VerifyPaymentRequest,
    services: BillingServices = Depends(get_billing_services)
) -> Dict:
    """
    Verify a checkout signature without recording anything.

    Use POST /bills/{bill_id}/confirm-payment to settle a bill.
    """
    order_id = request.razorpay_order_id
    payment_id = request.razorpay_payment_id
    if not order_id or not payment_id or not request.razorpay_signature:
        raise InvalidInputError(
            "order_id, payment_id, and signature are required",
            code="MISSING_FIELDS"
        )

    key_secret = services.settings.RAZORPAY_KEY_SECRET
    if not key_secret:
        raise GatewayNotConfiguredError()

    is_valid = verify_payment_signature(order_id, payment_id, request.razorpay_signature, key_secret)
    logger.info(f"[VERIFY] order={order_id} payment={payment_id} valid={is_valid}")
    if not is_valid:
        logger.warning(f"[SECURITY] Signature mismatch on verify-payment for order {order_id}")
        raise VerificationFailedError(order_id=order_id, payment_id=payment_id)

    return {
        'success': True,
        'verified': True,
        'message': 'Payment verified successfully',
        'payment_id': payment_id,
        'order_id': order_id
    }


@router.get("/payment/{payment_id}", dependencies=[Depends(get_current_user_id)])
async def get_payment(
    payment_id: str,
    services: BillingServices = Depends(get_billing_services)
) -> Dict:
    """Fetch a payment from Razorpay (amount in paise)."""
    summary = await services.orders.get_payment_summary(payment_id)
    return {'success': True, 'payment': summary}


@router.post("/webhook")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    x_razorpay_event_id: Optional[str] = Header(None),
    services: BillingServices = Depends(get_billing_services)
) -> Dict:
    """
    Process Razorpay webhook events.

    Handles:
    - payment.captured
    - payment.failed
    - order.paid
    """
    raw_body = await request.body()
    return await services.webhooks.process_webhook(raw_body, x_razorpay_signature, x_razorpay_event_id)
