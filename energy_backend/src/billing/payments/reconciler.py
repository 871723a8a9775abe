"""
Payment Reconciler

Turns a client-side checkout confirmation into a recorded payment and a
paid bill.

States:
    initiated -> awaiting_gateway_confirmation -> verified | rejected
    verified -> recorded -> bill_updated | bill_update_failed
    awaiting_gateway_confirmation -> cancelled | failed
    awaiting_gateway_confirmation -> recorded (failure reported for a captured payment)

Nothing is written before the signature verifies and the signed order is
confirmed at the gateway to be for this bill and its full total. Once the payment row
exists, a bill update that keeps failing leaves the outcome in
bill_update_failed and the reconciliation sweep finishes the job.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from energy_backend.src.billing.domain import Bill, BillStatus, PaymentStatus
from energy_backend.src.billing.external.razorpay.signature import verify_payment_signature
from energy_backend.src.billing.shared.config import DEFAULT_CURRENCY, from_minor_units, to_minor_units
from energy_backend.src.billing.shared.exceptions import StoreError, VerificationFailedError
from .interfaces import PaymentGatewayInterface
from .store import PaymentRecord, SqlBillStore

logger = logging.getLogger(__name__)


class PaymentAttemptState(str, Enum):
    """Lifecycle of one payment attempt."""
    INITIATED = "initiated"
    AWAITING_GATEWAY_CONFIRMATION = "awaiting_gateway_confirmation"
    VERIFIED = "verified"
    REJECTED = "rejected"
    RECORDED = "recorded"
    BILL_UPDATED = "bill_updated"
    BILL_UPDATE_FAILED = "bill_update_failed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({
    PaymentAttemptState.REJECTED,
    PaymentAttemptState.BILL_UPDATED,
    PaymentAttemptState.BILL_UPDATE_FAILED,
    PaymentAttemptState.CANCELLED,
    PaymentAttemptState.FAILED,
})


@dataclass
class ReconciliationOutcome:
    """Where a payment attempt ended up and how it got there."""
    state: PaymentAttemptState = PaymentAttemptState.INITIATED
    transitions: List[PaymentAttemptState] = field(default_factory=lambda: [PaymentAttemptState.INITIATED])
    bill_id: Optional[str] = None
    bill_status: Optional[str] = None
    payment_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    payment_status: Optional[str] = None
    already_paid: bool = False
    error: Optional[str] = None

    def advance(self, state: PaymentAttemptState) -> 'ReconciliationOutcome':
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Cannot leave terminal state {self.state.value} for {state.value}")
        self.state = state
        self.transitions.append(state)
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict:
        return {
            'state': self.state.value,
            'transitions': [s.value for s in self.transitions],
            'bill_id': self.bill_id,
            'bill_status': self.bill_status,
            'payment_id': self.payment_id,
            'razorpay_payment_id': self.razorpay_payment_id,
            'payment_status': self.payment_status,
            'already_paid': self.already_paid,
            'error': self.error,
        }


class PaymentReconciler:
    """
    Confirms checkout payments against the store.

    Usage:
        reconciler = PaymentReconciler(store, gateway, settings.RAZORPAY_KEY_SECRET)
        outcome = await reconciler.confirm_payment(user_id, bill_id, order_id, payment_id, signature)
    """

    def __init__(
        self,
        store: SqlBillStore,
        gateway: PaymentGatewayInterface,
        key_secret: str,
        retry_attempts: int = 3,
        retry_wait: float = 0.5
    ):
        self.store = store
        self.gateway = gateway
        self._key_secret = key_secret
        self.retry_attempts = max(1, retry_attempts)
        self.retry_wait = retry_wait

    async def confirm_payment(
        self,
        user_id: str,
        bill_id: str,
        order_id: str,
        payment_id: str,
        signature: str
    ) -> ReconciliationOutcome:
        """
        Verify a checkout confirmation, record the payment and settle the bill.

        The signature proves Razorpay captured a payment on `order_id`; the
        order itself must have been minted for this bill and for its full
        total, otherwise a cheap order could settle an expensive bill.

        Raises:
            VerificationFailedError: signature or order binding did not verify; nothing persisted
            BillNotFoundError: bill missing or not owned by `user_id`
            GatewayError: the order could not be fetched (safe to retry)
            StoreError: the payment could not be recorded (safe to retry)
        """
        outcome = ReconciliationOutcome(bill_id=bill_id, razorpay_payment_id=payment_id)
        outcome.advance(PaymentAttemptState.AWAITING_GATEWAY_CONFIRMATION)

        if not verify_payment_signature(order_id, payment_id, signature, self._key_secret):
            outcome.advance(PaymentAttemptState.REJECTED)
            logger.warning(
                f"[SECURITY] Payment signature mismatch user={user_id} bill={bill_id} "
                f"order={order_id} payment={payment_id}"
            )
            raise VerificationFailedError(order_id=order_id, payment_id=payment_id)

        bill = await self.store.get_user_bill(bill_id, user_id)
        order = await self.gateway.fetch_order(order_id)
        mismatch = self._order_mismatch(order, bill)
        if mismatch:
            outcome.advance(PaymentAttemptState.REJECTED)
            logger.warning(
                f"[SECURITY] Order {order_id} is not bound to bill {bill.bill_number}: {mismatch} "
                f"(user={user_id} payment={payment_id})"
            )
            raise VerificationFailedError(
                f"Order does not belong to this bill: {mismatch}",
                order_id=order_id,
                payment_id=payment_id
            )
        outcome.advance(PaymentAttemptState.VERIFIED)

        payment, created = await self.store.record_payment(PaymentRecord(
            amount=from_minor_units(int(order['amount'])),
            status=PaymentStatus.SUCCESS.value,
            currency=order.get('currency') or DEFAULT_CURRENCY,
            user_id=user_id,
            bill_id=bill.id,
            bill_number=bill.bill_number,
            service_number=bill.service_number,
            bill_month=bill.bill_month,
            razorpay_order_id=order_id,
            razorpay_payment_id=payment_id,
            razorpay_signature=signature,
        ))
        outcome.payment_id = payment.id
        outcome.payment_status = payment.status
        outcome.advance(PaymentAttemptState.RECORDED)
        logger.info(
            f"[RECONCILER] Payment {payment_id} for bill {bill.bill_number} "
            f"{'recorded' if created else 'already recorded'}"
        )

        try:
            changed = await self._mark_bill_paid(bill.id, payment.id)
        except StoreError as e:
            outcome.error = e.message
            outcome.bill_status = bill.status
            outcome.advance(PaymentAttemptState.BILL_UPDATE_FAILED)
            logger.error(
                f"[RECONCILER] Bill {bill.id} update failed after {self.retry_attempts} attempts; "
                f"payment {payment_id} left for the reconciliation sweep: {e.message}"
            )
            return outcome

        outcome.already_paid = not changed
        outcome.bill_status = BillStatus.PAID.value
        outcome.advance(PaymentAttemptState.BILL_UPDATED)
        return outcome

    @staticmethod
    def _order_mismatch(order: Dict[str, Any], bill: Bill) -> Optional[str]:
        """Why `order` cannot settle `bill`, or None when it can."""
        notes = order.get('notes')
        notes = notes if isinstance(notes, dict) else {}
        if str(notes.get('bill_id') or '') != bill.id:
            return f"order notes name bill {notes.get('bill_id')!r}"
        try:
            amount = int(order.get('amount'))
        except (TypeError, ValueError):
            return "order has no amount"
        expected = to_minor_units(bill.total_amount)
        if amount != expected:
            return f"order amount {amount} != bill total {expected}"
        return None

    async def record_failure(
        self,
        user_id: str,
        bill_id: str,
        order_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        reason: Optional[str] = None,
        cancelled: bool = False
    ) -> ReconciliationOutcome:
        """
        Close an attempt that never produced a confirmation.

        A cancelled checkout or a failure with no gateway payment id writes
        nothing. A gateway failure with a payment id is stored as a failed
        payment. When that payment id is already stored as a success the
        report is stale: the success is kept and the outcome reflects it
        (state recorded, or bill_updated once the bill is paid).
        """
        bill = await self.store.get_user_bill(bill_id, user_id)
        outcome = ReconciliationOutcome(bill_id=bill.id, bill_status=bill.status, razorpay_payment_id=payment_id)
        outcome.advance(PaymentAttemptState.AWAITING_GATEWAY_CONFIRMATION)
        outcome.error = reason

        if cancelled or not payment_id:
            logger.info(f"[RECONCILER] Checkout for bill {bill.bill_number} closed without payment")
            return outcome.advance(PaymentAttemptState.CANCELLED)

        payment, _ = await self.store.record_payment(PaymentRecord(
            amount=bill.total_amount,
            status=PaymentStatus.FAILED.value,
            user_id=user_id,
            bill_id=bill.id,
            bill_number=bill.bill_number,
            service_number=bill.service_number,
            bill_month=bill.bill_month,
            razorpay_order_id=order_id,
            razorpay_payment_id=payment_id,
            failure_reason=reason or 'Payment failed',
        ))
        outcome.payment_id = payment.id
        outcome.payment_status = payment.status

        if payment.is_success():
            current = await self.store.get_bill(bill.id)
            outcome.error = None
            outcome.bill_status = current.status if current is not None else bill.status
            outcome.advance(PaymentAttemptState.RECORDED)
            logger.info(
                f"[RECONCILER] Ignoring failure report for {payment_id}: already captured, "
                f"bill {bill.bill_number} is {outcome.bill_status}"
            )
            if outcome.bill_status == BillStatus.PAID.value:
                outcome.already_paid = True
                outcome.advance(PaymentAttemptState.BILL_UPDATED)
            return outcome

        logger.info(f"[RECONCILER] Payment {payment_id} for bill {bill.bill_number} failed: {reason}")
        return outcome.advance(PaymentAttemptState.FAILED)

    async def _mark_bill_paid(self, bill_id: str, payment_id: str) -> bool:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=10),
            retry=retry_if_exception_type(StoreError),
            reraise=True,
        ):
            with attempt:
                return await self.store.mark_bill_paid(bill_id, payment_id)
