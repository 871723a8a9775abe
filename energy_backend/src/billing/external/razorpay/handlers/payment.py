"""
Payment Webhook Handler

Handles payment-related Razorpay webhook events:
- payment.captured
- payment.failed
- order.paid

Every handler is idempotent: the payment row is deduplicated on the
Razorpay payment id and the bill moves to paid through the store's
conditional update. Redelivering any event changes nothing.

A bill is only paid once its successful payments cover the total; an
underpayment moves an unpaid or overdue bill to partial.
"""

import logging
from typing import Any, Dict, Optional

from energy_backend.src.billing.domain import Bill, BillStatus, PaymentStatus
from energy_backend.src.billing.payments.store import PaymentRecord, SqlBillStore
from energy_backend.src.billing.shared.config import AMOUNT_TOLERANCE, amounts_match, from_minor_units
from energy_backend.src.billing.shared.exceptions import BillNotFoundError, WebhookError
from energy_backend.utils.timezone import timezone

logger = logging.getLogger(__name__)


def _entity(payload: Dict, name: str) -> Dict[str, Any]:
    wrapper = payload.get(name) or {}
    entity = wrapper.get('entity') if isinstance(wrapper, dict) else None
    return entity if isinstance(entity, dict) else {}


def _notes(*entities: Dict) -> Dict[str, Any]:
    """Merge notes from the given entities; Razorpay sends [] for empty notes."""
    merged = {}
    for entity in entities:
        notes = entity.get('notes')
        if isinstance(notes, dict):
            for key, value in notes.items():
                merged.setdefault(key, value)
    return merged


class PaymentHandler:
    """
    Handler for Razorpay payment webhook events.

    When a payment is captured we need to:
    - Record the payment if the client callback never arrived
    - Correct a payment previously recorded as failed
    - Mark the bill paid
    """

    def __init__(self, store: SqlBillStore):
        self.store = store

    async def handle_payment_captured(self, payload: Dict) -> Dict[str, Any]:
        """Handle payment.captured."""
        payment = _entity(payload, 'payment')
        return await self._settle(payment, _notes(payment), source='payment.captured')

    async def handle_order_paid(self, payload: Dict) -> Dict[str, Any]:
        """Handle order.paid; the order's notes carry the bill reference."""
        payment = _entity(payload, 'payment')
        order = _entity(payload, 'order')
        if not payment.get('order_id') and order.get('id'):
            payment = {**payment, 'order_id': order['id']}
        return await self._settle(payment, _notes(payment, order), source='order.paid')

    async def handle_payment_failed(self, payload: Dict) -> Dict[str, Any]:
        """
        Handle payment.failed.

        Records the failure for history. Never touches the bill and never
        downgrades a payment already recorded as successful.
        """
        payment = _entity(payload, 'payment')
        payment_id = self._require_payment_id(payment, 'payment.failed')
        notes = _notes(payment)
        bill = await self._resolve_bill(notes)
        reason = payment.get('error_description') or payment.get('error_reason') or 'Payment failed'

        record, created = await self.store.record_payment(
            self._record(payment, notes, bill, PaymentStatus.FAILED.value, failure_reason=reason)
        )
        if not created and record.is_success():
            logger.info(f"[PAYMENT HANDLER] Ignoring payment.failed for already successful {payment_id}")
        else:
            logger.info(f"[PAYMENT HANDLER] Payment {payment_id} failed: {reason}")
        return {'payment_id': record.id, 'created': created, 'payment_status': record.status}

    async def _settle(self, payment: Dict, notes: Dict, source: str) -> Dict[str, Any]:
        payment_id = self._require_payment_id(payment, source)
        bill = await self._resolve_bill(notes)
        amount = from_minor_units(int(payment.get('amount') or 0))

        record, created = await self.store.record_payment(
            self._record(payment, notes, bill, PaymentStatus.SUCCESS.value)
        )

        bill_id = record.bill_id or (bill.id if bill else None)
        if bill is None and bill_id is not None:
            bill = await self.store.get_bill(bill_id)

        bill_updated = False
        bill_status = bill.status if bill else None
        if bill_id is None or bill is None:
            logger.warning(
                f"[PAYMENT HANDLER] {source} for {payment_id} has no resolvable bill "
                f"(notes={notes}); payment stored unlinked"
            )
        else:
            # Every successful payment on the bill counts towards its total
            covered = await self.store.successful_payment_total(bill.id)
            if covered < bill.total_amount - AMOUNT_TOLERANCE:
                logger.warning(
                    f"[PAYMENT HANDLER] Underpayment on bill {bill.bill_number}: captured {amount}, "
                    f"paid so far {covered}, bill total {bill.total_amount}"
                )
                if await self.store.mark_bill_partial(bill.id):
                    bill_status = BillStatus.PARTIAL.value
            else:
                if not amounts_match(amount, bill.total_amount):
                    logger.warning(
                        f"[PAYMENT HANDLER] Amount mismatch for bill {bill.bill_number}: "
                        f"captured {amount}, bill total {bill.total_amount}"
                    )
                try:
                    bill_updated = await self.store.mark_bill_paid(bill.id, record.id)
                    bill_status = BillStatus.PAID.value
                except BillNotFoundError:
                    logger.warning(f"[PAYMENT HANDLER] Bill {bill_id} referenced by {payment_id} does not exist")

        logger.info(
            f"[PAYMENT HANDLER] {source} {payment_id}: payment "
            f"{'created' if created else 'exists'}, bill {bill_id} "
            f"{'updated' if bill_updated else 'unchanged'}"
        )
        return {
            'payment_id': record.id,
            'created': created,
            'bill_id': bill_id,
            'bill_updated': bill_updated,
            'bill_status': bill_status,
        }

    async def _resolve_bill(self, notes: Dict) -> Optional[Bill]:
        bill_id = notes.get('bill_id')
        if bill_id:
            bill = await self.store.get_bill(str(bill_id))
            if bill is not None:
                return bill
        bill_number = notes.get('bill_number')
        if bill_number:
            return await self.store.get_bill_by_number(str(bill_number))
        return None

    @staticmethod
    def _require_payment_id(payment: Dict, source: str) -> str:
        payment_id = payment.get('id')
        if not payment_id:
            raise WebhookError(
                f"{source} payload has no payment entity",
                code="INVALID_PAYLOAD",
                event_type=source
            )
        return payment_id

    @staticmethod
    def _record(
        payment: Dict,
        notes: Dict,
        bill: Optional[Bill],
        status: str,
        failure_reason: Optional[str] = None
    ) -> PaymentRecord:
        created_at = payment.get('created_at')
        return PaymentRecord(
            amount=from_minor_units(int(payment.get('amount') or 0)),
            status=status,
            user_id=bill.user_id if bill else notes.get('user_id'),
            bill_id=bill.id if bill else None,
            bill_number=bill.bill_number if bill else notes.get('bill_number'),
            service_number=bill.service_number if bill else notes.get('service_number'),
            bill_month=bill.bill_month if bill else notes.get('bill_month'),
            currency=payment.get('currency') or 'INR',
            razorpay_order_id=payment.get('order_id'),
            razorpay_payment_id=payment.get('id'),
            failure_reason=failure_reason,
            payment_date=timezone.from_timestamp(created_at) if created_at else None,
            metadata={
                'source': 'webhook',
                'method': payment.get('method'),
                'email': payment.get('email'),
                'contact': payment.get('contact'),
            },
        )
