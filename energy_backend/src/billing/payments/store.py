"""
Bill Store

SQLAlchemy persistence for bills, payments and webhook events.

Two guarantees carry the reconciliation design:
- payments are unique on ``razorpay_payment_id`` so the client callback and
  the webhook can both try to insert the same payment
- a bill becomes ``paid`` through one conditional UPDATE, so whichever path
  arrives second is a no-op

Every database failure, including driver connection errors and timeouts,
surfaces as StoreError; callers never see SQLAlchemy or driver exceptions.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from energy_backend.src.billing.domain import (
    PAYABLE_STATUSES,
    Bill,
    BillStatus,
    Payment,
    PaymentStatus,
    WebhookEvent,
    WebhookEventStatus,
    can_correct_status,
)
from energy_backend.src.billing.shared.config import AMOUNT_TOLERANCE
from energy_backend.src.billing.shared.exceptions import (
    BillNotFoundError,
    DuplicateBillError,
    StoreError,
)
from energy_backend.utils.timezone import timezone

logger = logging.getLogger(__name__)


@dataclass
class PaymentRecord:
    """Values for a payment row about to be written."""
    amount: Decimal
    status: str
    user_id: Optional[str] = None
    bill_id: Optional[str] = None
    bill_number: Optional[str] = None
    service_number: Optional[str] = None
    bill_month: Optional[str] = None
    currency: str = 'INR'
    payment_method: str = 'online'
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    failure_reason: Optional[str] = None
    payment_date: Optional[datetime] = None
    metadata: Optional[Dict] = field(default=None)

    def to_model(self) -> Payment:
        return Payment(
            amount=self.amount,
            status=self.status,
            user_id=self.user_id,
            bill_id=self.bill_id,
            bill_number=self.bill_number,
            service_number=self.service_number,
            bill_month=self.bill_month,
            currency=self.currency,
            payment_method=self.payment_method,
            payment_date=self.payment_date or timezone.now(),
            transaction_id=self.razorpay_payment_id,
            razorpay_order_id=self.razorpay_order_id,
            razorpay_payment_id=self.razorpay_payment_id,
            razorpay_signature=self.razorpay_signature,
            failure_reason=self.failure_reason,
            payment_metadata=self.metadata,
        )


PAYMENT_SORT_COLUMNS = {
    'date': Payment.payment_date,
    'amount': Payment.amount,
}


class SqlBillStore:
    """
    Bill and payment persistence over an async session factory.

    Usage:
        store = SqlBillStore(async_db_session)
        payment, created = await store.record_payment(record)
        updated = await store.mark_bill_paid(bill.id, payment.id)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"[STORE] {operation} failed: {e!r}")
            raise StoreError(f"Bill store unavailable during {operation}", operation=operation) from e

    # -------------------------------------------------------------------------
    # Bills
    # -------------------------------------------------------------------------

    async def get_bill(self, bill_id: str) -> Optional[Bill]:
        async with self._session('get_bill') as session:
            return await session.get(Bill, bill_id)

    async def get_user_bill(self, bill_id: str, user_id: str) -> Bill:
        """Load a bill owned by `user_id`; anyone else's bill looks missing."""
        bill = await self.get_bill(bill_id)
        if bill is None or bill.user_id != user_id:
            raise BillNotFoundError(bill_id=bill_id)
        return bill

    async def get_bill_by_number(self, bill_number: str) -> Optional[Bill]:
        async with self._session('get_bill_by_number') as session:
            result = await session.execute(sa.select(Bill).where(Bill.bill_number == bill_number))
            return result.scalar_one_or_none()

    async def list_bills(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Bill]:
        stmt = sa.select(Bill).where(Bill.user_id == user_id)
        if status:
            stmt = stmt.where(Bill.status == status)
        stmt = stmt.order_by(Bill.bill_month.desc(), Bill.created_at.desc()).limit(limit).offset(offset)
        async with self._session('list_bills') as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def create_bill(self, bill: Bill) -> Bill:
        async with self._session('create_bill') as session:
            session.add(bill)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.info(f"[STORE] Duplicate bill {bill.bill_number}: {e.orig}")
                raise DuplicateBillError(bill.bill_number) from e
            return bill

    async def mark_bill_paid(self, bill_id: str, payment_id: str) -> bool:
        """
        Set the bill to paid if it is still payable.

        Returns:
            True if this call changed the bill, False if it was already paid

        Raises:
            BillNotFoundError: If the bill does not exist
        """
        stmt = (
            sa.update(Bill)
            .where(Bill.id == bill_id, Bill.status.in_(PAYABLE_STATUSES))
            .values(status=BillStatus.PAID.value, payment_id=payment_id, updated_at=timezone.now())
            .execution_options(synchronize_session=False)
        )
        async with self._session('mark_bill_paid') as session:
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount:
                return True
            exists = await session.scalar(sa.select(Bill.id).where(Bill.id == bill_id))
        if exists is None:
            raise BillNotFoundError(bill_id=bill_id)
        return False

    async def mark_bill_partial(self, bill_id: str) -> bool:
        """
        Move an unpaid or overdue bill to partial after an underpayment.

        Returns:
            True if this call changed the bill
        """
        stmt = (
            sa.update(Bill)
            .where(
                Bill.id == bill_id,
                Bill.status.in_((BillStatus.UNPAID.value, BillStatus.OVERDUE.value)),
            )
            .values(status=BillStatus.PARTIAL.value, updated_at=timezone.now())
            .execution_options(synchronize_session=False)
        )
        async with self._session('mark_bill_partial') as session:
            result = await session.execute(stmt)
            await session.commit()
            return bool(result.rowcount)

    async def mark_overdue_bills(self, today: date) -> int:
        """Move unpaid bills whose due date has passed to overdue."""
        stmt = (
            sa.update(Bill)
            .where(Bill.status == BillStatus.UNPAID.value, Bill.due_date < today)
            .values(status=BillStatus.OVERDUE.value, updated_at=timezone.now())
            .execution_options(synchronize_session=False)
        )
        async with self._session('mark_overdue_bills') as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def list_bills_with_mismatched_totals(self) -> List[Bill]:
        components = Bill.energy_charges + Bill.fixed_charges + Bill.tax_amount + Bill.other_charges
        stmt = sa.select(Bill).where(sa.func.abs(Bill.total_amount - components) > AMOUNT_TOLERANCE)
        async with self._session('list_bills_with_mismatched_totals') as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        async with self._session('get_payment') as session:
            return await session.get(Payment, payment_id)

    async def get_payment_by_gateway_id(self, razorpay_payment_id: str) -> Optional[Payment]:
        async with self._session('get_payment_by_gateway_id') as session:
            result = await session.execute(
                sa.select(Payment).where(Payment.razorpay_payment_id == razorpay_payment_id)
            )
            return result.scalar_one_or_none()

    async def record_payment(self, record: PaymentRecord) -> Tuple[Payment, bool]:
        """
        Insert a payment, deduplicating on the gateway payment id.

        A second write for the same gateway payment never creates a row. It
        may correct the stored status (failed -> success) and fill in a
        missing bill link, but never downgrades a success.

        Returns:
            (payment, created)
        """
        if record.razorpay_payment_id:
            existing = await self.get_payment_by_gateway_id(record.razorpay_payment_id)
            if existing is not None:
                return await self._merge_payment(record), False

        async with self._session('record_payment') as session:
            payment = record.to_model()
            session.add(payment)
            try:
                await session.commit()
            except IntegrityError:
                # Lost the insert race to the other completion path
                await session.rollback()
                logger.info(
                    f"[STORE] Payment {record.razorpay_payment_id} inserted concurrently, merging"
                )
            else:
                return payment, True

        return await self._merge_payment(record), False

    async def _merge_payment(self, record: PaymentRecord) -> Payment:
        async with self._session('merge_payment') as session:
            result = await session.execute(
                sa.select(Payment)
                .where(Payment.razorpay_payment_id == record.razorpay_payment_id)
                .with_for_update()
            )
            payment = result.scalar_one_or_none()
            if payment is None:
                raise StoreError(
                    f"Payment {record.razorpay_payment_id} vanished during merge", operation='merge_payment'
                )

            changed = False
            if payment.status != record.status and can_correct_status(payment.status, record.status):
                logger.info(
                    f"[STORE] Payment {payment.razorpay_payment_id} status {payment.status} -> {record.status}"
                )
                payment.status = record.status
                if record.status == PaymentStatus.SUCCESS.value:
                    payment.failure_reason = None
                    payment.amount = record.amount
                changed = True
            for attr in ('bill_id', 'user_id', 'bill_number', 'service_number', 'bill_month',
                         'razorpay_order_id', 'razorpay_signature'):
                value = getattr(record, attr)
                if value and not getattr(payment, attr):
                    setattr(payment, attr, value)
                    changed = True

            if changed:
                await session.commit()
            return payment

    async def list_payments(
        self,
        user_id: str,
        status: Optional[str] = None,
        sort_by: str = 'date',
        order: str = 'desc',
        limit: int = 50,
        offset: int = 0
    ) -> List[Payment]:
        column = PAYMENT_SORT_COLUMNS.get(sort_by, Payment.payment_date)
        stmt = sa.select(Payment).where(Payment.user_id == user_id)
        if status:
            stmt = stmt.where(Payment.status == status)
        stmt = stmt.order_by(column.asc() if order == 'asc' else column.desc(), Payment.id)
        stmt = stmt.limit(limit).offset(offset)
        async with self._session('list_payments') as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def payment_summary(self, user_id: str) -> Dict:
        stmt = (
            sa.select(
                Payment.status,
                sa.func.count(Payment.id),
                sa.func.coalesce(sa.func.sum(Payment.amount), 0),
                sa.func.max(Payment.payment_date),
            )
            .where(Payment.user_id == user_id)
            .group_by(Payment.status)
        )
        async with self._session('payment_summary') as session:
            rows = (await session.execute(stmt)).all()

        counts = {s.value: 0 for s in PaymentStatus}
        total_paid = Decimal('0.00')
        last_payment_date = None
        for status, count, amount, last_date in rows:
            counts[status] = count
            if status == PaymentStatus.SUCCESS.value:
                total_paid = Decimal(str(amount)).quantize(Decimal('0.01'))
                last_payment_date = last_date
        return {
            'total_paid': total_paid,
            'total_payments': sum(counts.values()),
            'successful_payments': counts[PaymentStatus.SUCCESS.value],
            'failed_payments': counts[PaymentStatus.FAILED.value],
            'pending_payments': counts[PaymentStatus.PENDING.value],
            'refunded_payments': counts[PaymentStatus.REFUNDED.value],
            'last_payment_date': last_payment_date,
        }

    async def successful_payment_total(self, bill_id: str) -> Decimal:
        """Sum of successful payments recorded against a bill."""
        stmt = sa.select(sa.func.coalesce(sa.func.sum(Payment.amount), 0)).where(
            Payment.bill_id == bill_id, Payment.status == PaymentStatus.SUCCESS.value
        )
        async with self._session('successful_payment_total') as session:
            total = await session.scalar(stmt)
        return Decimal(str(total)).quantize(Decimal('0.01'))

    async def list_unreflected_payments(self) -> List[Payment]:
        """
        Successful payments whose bill is still not marked paid although the
        bill's successful payments cover its total.

        No age limit: a payment recorded at any time must eventually settle
        its bill.
        """
        covering = aliased(Payment)
        paid_so_far = (
            sa.select(sa.func.coalesce(sa.func.sum(covering.amount), 0))
            .where(covering.bill_id == Bill.id, covering.status == PaymentStatus.SUCCESS.value)
            .correlate(Bill)
            .scalar_subquery()
        )
        stmt = (
            sa.select(Payment)
            .join(Bill, Bill.id == Payment.bill_id)
            .where(
                Payment.status == PaymentStatus.SUCCESS.value,
                Bill.status != BillStatus.PAID.value,
                paid_so_far >= Bill.total_amount - AMOUNT_TOLERANCE,
            )
            .order_by(Payment.payment_date)
        )
        async with self._session('list_unreflected_payments') as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_duplicate_settlements(self, since: Optional[datetime] = None) -> List[Dict]:
        """Bills with more than one successful payment."""
        stmt = (
            sa.select(Payment.bill_id, sa.func.count(Payment.id).label('payment_count'))
            .where(Payment.status == PaymentStatus.SUCCESS.value, Payment.bill_id.is_not(None))
            .group_by(Payment.bill_id)
            .having(sa.func.count(Payment.id) > 1)
        )
        if since is not None:
            stmt = stmt.where(Payment.payment_date >= since)
        async with self._session('find_duplicate_settlements') as session:
            groups = (await session.execute(stmt)).all()
            duplicates = []
            for bill_id, payment_count in groups:
                payments = await session.execute(
                    sa.select(Payment.razorpay_payment_id, Payment.amount)
                    .where(Payment.bill_id == bill_id, Payment.status == PaymentStatus.SUCCESS.value)
                    .order_by(Payment.payment_date)
                )
                rows = payments.all()
                duplicates.append({
                    'bill_id': bill_id,
                    'payment_count': payment_count,
                    'razorpay_payment_ids': [r[0] for r in rows],
                    'total_charged': sum((Decimal(str(r[1])) for r in rows), Decimal('0.00')),
                })
            return duplicates

    # -------------------------------------------------------------------------
    # Webhook events
    # -------------------------------------------------------------------------

    async def claim_webhook_event(self, event_id: str, event_type: str, payload: Optional[Dict] = None) -> bool:
        """
        Mark an event as being processed.

        Returns:
            False if the event already completed or a concurrent delivery inserted it first
        """
        async with self._session('claim_webhook_event') as session:
            event = await session.get(WebhookEvent, event_id)
            if event is not None:
                if event.status == WebhookEventStatus.COMPLETED.value:
                    return False
                # Earlier delivery failed or died mid-flight; handlers are idempotent
                event.status = WebhookEventStatus.PROCESSING.value
                event.attempts += 1
                event.error_message = None
                await session.commit()
                return True

            session.add(WebhookEvent(id=event_id, event_type=event_type, payload=payload))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def complete_webhook_event(self, event_id: str) -> None:
        await self._set_webhook_status(event_id, WebhookEventStatus.COMPLETED.value, None)

    async def fail_webhook_event(self, event_id: str, error_message: str) -> None:
        await self._set_webhook_status(event_id, WebhookEventStatus.FAILED.value, error_message[:2000])

    async def _set_webhook_status(self, event_id: str, status: str, error_message: Optional[str]) -> None:
        values = {'status': status, 'error_message': error_message}
        if status == WebhookEventStatus.COMPLETED.value:
            values['completed_at'] = timezone.now()
        async with self._session('update_webhook_event') as session:
            await session.execute(
                sa.update(WebhookEvent).where(WebhookEvent.id == event_id).values(**values)
            )
            await session.commit()
