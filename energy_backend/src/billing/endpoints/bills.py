"""
Bill Endpoints

Bill listing and import, plus the bill payment flow: order creation,
checkout confirmation and failed/cancelled attempts.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from energy_backend.src.billing.bills import BillDraft
from energy_backend.src.billing.container import BillingServices
from energy_backend.src.billing.domain import Bill
from energy_backend.src.billing.payments import PaymentAttemptState
from energy_backend.src.billing.shared.exceptions import InvalidInputError
from .dependencies import get_billing_services, get_current_user_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bills", tags=["bills"])


# ============================================================================
# Request Models
# ============================================================================

class CreateBillRequest(BaseModel):
    """Bill import; total_amount is optional and checked against the charges."""
    service_number: str = Field(..., min_length=1, max_length=64)
    bill_month: str = Field(..., description="YYYY-MM")
    bill_period_start: date
    bill_period_end: date
    due_date: date
    energy_charges: Decimal = Decimal('0')
    fixed_charges: Decimal = Decimal('0')
    tax_amount: Decimal = Decimal('0')
    other_charges: Decimal = Decimal('0')
    total_amount: Optional[Decimal] = None
    bill_number: Optional[str] = Field(None, max_length=64)
    previous_reading: Optional[Decimal] = None
    current_reading: Optional[Decimal] = None
    units_consumed: Optional[Decimal] = None
    electricity_board: Optional[str] = None
    tariff_category: Optional[str] = None
    notes: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ConfirmPaymentRequest(BaseModel):
    """Checkout confirmation for a bill."""
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


class PaymentFailedRequest(BaseModel):
    """A checkout that ended without a confirmation."""
    model_config = ConfigDict(populate_by_name=True)

    razorpay_order_id: Optional[str] = Field(
        None, validation_alias=AliasChoices('razorpay_order_id', 'orderId')
    )
    razorpay_payment_id: Optional[str] = Field(
        None, validation_alias=AliasChoices('razorpay_payment_id', 'paymentId')
    )
    reason: Optional[str] = Field(None, max_length=1000)
    cancelled: bool = False


def serialize_bill(bill: Bill) -> Dict:
    def money(value):
        return str(value) if value is not None else None

    return {
        'id': bill.id,
        'user_id': bill.user_id,
        'service_number': bill.service_number,
        'bill_number': bill.bill_number,
        'bill_month': bill.bill_month,
        'bill_period_start': bill.bill_period_start.isoformat(),
        'bill_period_end': bill.bill_period_end.isoformat(),
        'due_date': bill.due_date.isoformat(),
        'previous_reading': money(bill.previous_reading),
        'current_reading': money(bill.current_reading),
        'units_consumed': money(bill.units_consumed),
        'energy_charges': money(bill.energy_charges),
        'fixed_charges': money(bill.fixed_charges),
        'tax_amount': money(bill.tax_amount),
        'other_charges': money(bill.other_charges),
        'total_amount': money(bill.total_amount),
        'status': bill.status,
        'payment_id': bill.payment_id,
        'electricity_board': bill.electricity_board,
        'tariff_category': bill.tariff_category,
        'notes': bill.notes,
        'metadata': bill.bill_metadata or {},
        'created_at': bill.created_at.isoformat() if bill.created_at else None,
    }


# ============================================================================
# Endpoints
# ============================================================================

@router.get("")
async def list_bills(
    status: Optional[str] = Query(None, description="paid, unpaid, overdue, partial"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_billing_services)
) -> Dict:
    """List the caller's bills, newest month first."""
    bills = await services.bills.list_bills(user_id, status=status, limit=limit, offset=offset)
    return {
        'bills': [serialize_bill(b) for b in bills],
        'pagination': {'limit': limit, 'offset': offset, 'count': len(bills)}
    }


@router.post("", status_code=201)
async def create_bill(
    request: CreateBillRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_billing_services)
) -> Dict:
    """Import a bill for the caller."""
    bill = await services.bills.create_bill(user_id, BillDraft(**request.model_dump()))
    return serialize_bill(bill)


@router.get("/{bill_id}")
async def get_bill(
    bill_id: str,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_billing_services)
) -> Dict:
    bill = await services.bills.get_bill(user_id, bill_id)
    return serialize_bill(bill)


@router.post("/{bill_id}/order")
async def create_bill_order(
    bill_id: str,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_billing_services)
) -> Dict:
    """Create a Razorpay order for the bill's total."""
    bill = await services.bills.get_bill(user_id, bill_id)
    handle = await services.orders.create_bill_order(bill)
    return {
        'success': True,
        'bill_id': bill.id,
        'key_id': services.settings.RAZORPAY_KEY_ID,
        **handle.to_dict()
    }


@router.post("/{bill_id}/confirm-payment")
async def confirm_payment(
    bill_id: str,
    request: ConfirmPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_billing_services)
):
    """
    Verify the checkout confirmation, record the payment and mark the bill paid.

    200 when the bill is paid. 202 when the payment is recorded but the bill
    update is deferred to the reconciliation sweep.
    """
    if not request.razorpay_order_id or not request.razorpay_payment_id or not request.razorpay_signature:
        raise InvalidInputError(
            "order_id, payment_id, and signature are required",
            code="MISSING_FIELDS"
        )

    outcome = await services.reconciler.confirm_payment(
        user_id=user_id,
        bill_id=bill_id,
        order_id=request.razorpay_order_id,
        payment_id=request.razorpay_payment_id,
        signature=request.razorpay_signature
    )
    body = {'success': True, 'verified': True, **outcome.to_dict()}
    if outcome.state == PaymentAttemptState.BILL_UPDATE_FAILED:
        return JSONResponse(status_code=202, content=body)
    return body


@router.post("/{bill_id}/payment-failed")
async def payment_failed(
    bill_id: str,
    request: PaymentFailedRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_billing_services)
) -> Dict:
    """Record a checkout that was cancelled or failed at the gateway."""
    outcome = await services.reconciler.record_failure(
        user_id=user_id,
        bill_id=bill_id,
        order_id=request.razorpay_order_id,
        payment_id=request.razorpay_payment_id,
        reason=request.reason,
        cancelled=request.cancelled
    )
    return {'success': True, **outcome.to_dict()}
