"""Tests for the payment attempt state machine with a mocked store."""

from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from energy_backend.src.billing.domain import Bill, Payment
from energy_backend.src.billing.external.razorpay import compute_signature
from energy_backend.src.billing.payments import PaymentAttemptState, PaymentReconciler, ReconciliationOutcome
from energy_backend.src.billing.shared.exceptions import StoreError, VerificationFailedError

SECRET = 'test_key_secret'


def _bill() -> Bill:
    return Bill(
        user_id='user-1',
        service_number='SN-1001',
        bill_number='EB-B1',
        bill_month='2026-01',
        bill_period_start=date(2025, 12, 1),
        bill_period_end=date(2025, 12, 31),
        due_date=date(2026, 1, 20),
        total_amount=Decimal('1375.00'),
    )


def _store(bill: Bill) -> MagicMock:
    store = MagicMock()
    store.get_user_bill = AsyncMock(return_value=bill)
    store.get_bill = AsyncMock(return_value=bill)
    store.record_payment = AsyncMock(
        side_effect=lambda record: (record.to_model(), True)
    )
    store.mark_bill_paid = AsyncMock(return_value=True)
    return store


def _gateway(bill: Bill, amount: int = 137500, **notes) -> MagicMock:
    gateway = MagicMock()
    gateway.fetch_order = AsyncMock(return_value={
        'id': 'order_1',
        'amount': amount,
        'currency': 'INR',
        'notes': notes or {'bill_id': bill.id},
    })
    return gateway


class TestReconciliationOutcome:
    """Tests for outcome transitions."""

    def test_starts_initiated(self):
        outcome = ReconciliationOutcome()
        assert outcome.state == PaymentAttemptState.INITIATED
        assert outcome.transitions == [PaymentAttemptState.INITIATED]
        assert outcome.is_terminal is False

    def test_terminal_state_cannot_be_left(self):
        outcome = ReconciliationOutcome()
        outcome.advance(PaymentAttemptState.AWAITING_GATEWAY_CONFIRMATION)
        outcome.advance(PaymentAttemptState.REJECTED)

        with pytest.raises(RuntimeError):
            outcome.advance(PaymentAttemptState.VERIFIED)
        assert outcome.to_dict()['transitions'] == ['initiated', 'awaiting_gateway_confirmation', 'rejected']


class TestConfirmPayment:
    """Tests for confirm_payment with store doubles."""

    @pytest.mark.asyncio
    async def test_happy_path_reaches_bill_updated(self):
        bill = _bill()
        store = _store(bill)
        reconciler = PaymentReconciler(store, _gateway(bill), SECRET, retry_wait=0)
        signature = compute_signature('order_1|pay_1', SECRET)

        outcome = await reconciler.confirm_payment('user-1', bill.id, 'order_1', 'pay_1', signature)

        assert outcome.state == PaymentAttemptState.BILL_UPDATED
        assert [s.value for s in outcome.transitions] == [
            'initiated', 'awaiting_gateway_confirmation', 'verified', 'recorded', 'bill_updated'
        ]
        record = store.record_payment.call_args.args[0]
        assert record.amount == Decimal('1375.00')
        assert record.status == 'success'
        assert record.razorpay_payment_id == 'pay_1'

    @pytest.mark.asyncio
    async def test_bad_signature_touches_nothing(self):
        bill = _bill()
        store = _store(bill)
        gateway = _gateway(bill)
        reconciler = PaymentReconciler(store, gateway, SECRET)

        with pytest.raises(VerificationFailedError) as exc_info:
            await reconciler.confirm_payment('user-1', bill.id, 'order_1', 'pay_1', 'f' * 64)

        assert exc_info.value.to_dict()['verified'] is False
        store.get_user_bill.assert_not_called()
        gateway.fetch_order.assert_not_called()
        store.record_payment.assert_not_called()
        store.mark_bill_paid.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_secret_never_verifies(self):
        bill = _bill()
        store = _store(bill)
        reconciler = PaymentReconciler(store, _gateway(bill), '')

        with pytest.raises(VerificationFailedError):
            await reconciler.confirm_payment('user-1', bill.id, 'order_1', 'pay_1', compute_signature('order_1|pay_1', ''))
        store.record_payment.assert_not_called()

    @pytest.mark.asyncio
    async def test_transient_store_error_is_retried(self):
        bill = _bill()
        store = _store(bill)
        store.mark_bill_paid = AsyncMock(side_effect=[StoreError('locked'), True])
        reconciler = PaymentReconciler(store, _gateway(bill), SECRET, retry_attempts=3, retry_wait=0)

        outcome = await reconciler.confirm_payment(
            'user-1', bill.id, 'order_1', 'pay_1', compute_signature('order_1|pay_1', SECRET)
        )

        assert outcome.state == PaymentAttemptState.BILL_UPDATED
        assert store.mark_bill_paid.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_end_in_bill_update_failed(self):
        bill = _bill()
        store = _store(bill)
        store.mark_bill_paid = AsyncMock(side_effect=StoreError('db unreachable'))
        reconciler = PaymentReconciler(store, _gateway(bill), SECRET, retry_attempts=3, retry_wait=0)

        outcome = await reconciler.confirm_payment(
            'user-1', bill.id, 'order_1', 'pay_1', compute_signature('order_1|pay_1', SECRET)
        )

        assert outcome.state == PaymentAttemptState.BILL_UPDATE_FAILED
        assert outcome.payment_id is not None
        assert outcome.error == 'db unreachable'
        assert store.mark_bill_paid.await_count == 3

    @pytest.mark.asyncio
    async def test_already_paid_is_not_an_error(self):
        bill = _bill()
        store = _store(bill)
        store.mark_bill_paid = AsyncMock(return_value=False)
        reconciler = PaymentReconciler(store, _gateway(bill), SECRET)

        outcome = await reconciler.confirm_payment(
            'user-1', bill.id, 'order_1', 'pay_1', compute_signature('order_1|pay_1', SECRET)
        )

        assert outcome.state == PaymentAttemptState.BILL_UPDATED
        assert outcome.already_paid is True


class TestOrderBinding:
    """Tests for rejecting signed orders that were not minted for the bill."""

    @pytest.mark.asyncio
    async def test_order_amount_is_recorded(self):
        bill = _bill()
        store = _store(bill)
        gateway = _gateway(bill)
        reconciler = PaymentReconciler(store, gateway, SECRET)

        await reconciler.confirm_payment(
            'user-1', bill.id, 'order_1', 'pay_1', compute_signature('order_1|pay_1', SECRET)
        )

        gateway.fetch_order.assert_awaited_once_with('order_1')
        record = store.record_payment.call_args.args[0]
        assert record.amount == Decimal('1375.00')
        assert record.razorpay_order_id == 'order_1'

    @pytest.mark.asyncio
    async def test_underpriced_order_is_rejected(self):
        bill = _bill()
        store = _store(bill)
        reconciler = PaymentReconciler(store, _gateway(bill, amount=100), SECRET)

        with pytest.raises(VerificationFailedError) as exc_info:
            await reconciler.confirm_payment(
                'user-1', bill.id, 'order_1', 'pay_1', compute_signature('order_1|pay_1', SECRET)
            )

        assert '137500' in exc_info.value.message
        store.record_payment.assert_not_called()
        store.mark_bill_paid.assert_not_called()

    @pytest.mark.asyncio
    async def test_order_for_another_bill_is_rejected(self):
        bill = _bill()
        store = _store(bill)
        reconciler = PaymentReconciler(store, _gateway(bill, bill_id='some-other-bill'), SECRET)

        with pytest.raises(VerificationFailedError):
            await reconciler.confirm_payment(
                'user-1', bill.id, 'order_1', 'pay_1', compute_signature('order_1|pay_1', SECRET)
            )
        store.record_payment.assert_not_called()

    def test_mismatch_reasons(self):
        bill = _bill()
        good = {'amount': 137500, 'notes': {'bill_id': bill.id}}

        assert PaymentReconciler._order_mismatch(good, bill) is None
        assert PaymentReconciler._order_mismatch({**good, 'notes': []}, bill)
        assert PaymentReconciler._order_mismatch({**good, 'amount': None}, bill) == 'order has no amount'
        assert PaymentReconciler._order_mismatch({**good, 'amount': 137600}, bill)


class TestRecordFailure:
    """Tests for cancelled and failed attempts."""

    @pytest.mark.asyncio
    async def test_cancelled_writes_nothing(self):
        bill = _bill()
        store = _store(bill)
        reconciler = PaymentReconciler(store, _gateway(bill), SECRET)
        outcome = await reconciler.record_failure('user-1', bill.id, cancelled=True)

        assert outcome.state == PaymentAttemptState.CANCELLED
        store.record_payment.assert_not_called()

    @pytest.mark.asyncio
    async def test_gateway_failure_is_recorded(self):
        bill = _bill()
        store = _store(bill)
        outcome = await PaymentReconciler(store, _gateway(bill), SECRET).record_failure(
            'user-1', bill.id, order_id='order_1', payment_id='pay_1', reason='Card declined'
        )

        assert outcome.state == PaymentAttemptState.FAILED
        assert outcome.error == 'Card declined'
        record = store.record_payment.call_args.args[0]
        assert record.status == 'failed'
        assert record.failure_reason == 'Card declined'
        assert isinstance(record.to_model(), Payment)
        store.mark_bill_paid.assert_not_called()

    @pytest.mark.asyncio
    async def test_late_failure_for_captured_payment_keeps_success(self):
        bill = _bill()
        bill.status = 'paid'
        store = _store(bill)
        captured = Payment(amount=Decimal('1375.00'), status='success', bill_id=bill.id, razorpay_payment_id='pay_1')
        store.record_payment = AsyncMock(return_value=(captured, False))
        reconciler = PaymentReconciler(store, _gateway(bill), SECRET)

        outcome = await reconciler.record_failure(
            'user-1', bill.id, order_id='order_1', payment_id='pay_1', reason='Timed out'
        )

        assert outcome.state == PaymentAttemptState.BILL_UPDATED
        assert PaymentAttemptState.FAILED not in outcome.transitions
        assert outcome.payment_status == 'success'
        assert outcome.payment_id == captured.id
        assert outcome.already_paid is True
        assert outcome.error is None
        store.get_bill.assert_awaited_once_with(bill.id)
