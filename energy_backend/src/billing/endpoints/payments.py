"""
Payment Endpoints

Payment history and totals for the caller.
"""

import logging
from typing import Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query

from energy_backend.src.billing.container import BillingServices
from energy_backend.src.billing.domain import Payment, PaymentStatus
from energy_backend.src.billing.shared.exceptions import InvalidInputError
from .dependencies import get_billing_services, get_current_user_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def serialize_payment(payment: Payment) -> Dict:
    return {
        'id': payment.id,
        'bill_id': payment.bill_id,
        'bill_number': payment.bill_number,
        'service_number': payment.service_number,
        'bill_month': payment.bill_month,
        'amount': str(payment.amount),
        'currency': payment.currency,
        'payment_date': payment.payment_date.isoformat() if payment.payment_date else None,
        'status': payment.status,
        'payment_method': payment.payment_method,
        'transaction_id': payment.transaction_id,
        'razorpay_order_id': payment.razorpay_order_id,
        'razorpay_payment_id': payment.razorpay_payment_id,
        'failure_reason': payment.failure_reason,
    }


@router.get("")
async def list_payments(
    status: Optional[str] = Query(None, description="success, failed, pending, refunded"),
    sort_by: Literal['date', 'amount'] = Query('date'),
    order: Literal['asc', 'desc'] = Query('desc'),
    limit: int = Query(50, ge=1, le=100, description="Number of payments"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_billing_services)
) -> Dict:
    """Payment history with status filter and date/amount sorting."""
    if status and status not in {s.value for s in PaymentStatus}:
        raise InvalidInputError(f"Unknown payment status '{status}'", field='status')

    payments = await services.store.list_payments(
        user_id, status=status, sort_by=sort_by, order=order, limit=limit, offset=offset
    )
    return {
        'payments': [serialize_payment(p) for p in payments],
        'pagination': {
            'limit': limit,
            'offset': offset,
            'count': len(payments),
            'has_more': len(payments) == limit
        }
    }


@router.get("/summary")
async def payment_summary(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_billing_services)
) -> Dict:
    """Totals across the caller's payments."""
    summary = await services.store.payment_summary(user_id)
    last = summary['last_payment_date']
    return {
        **summary,
        'total_paid': str(summary['total_paid']),
        'last_payment_date': last.isoformat() if last else None,
    }
