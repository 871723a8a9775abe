"""Integration tests for the checkout confirmation flow against a real store.

Tests cover:
- Bill B1 (1375.00) paid by a valid confirmation
- A corrupted confirmation leaves no trace
- A genuine confirmation for an order minted for another amount or bill
- A bill update lost to a store outage is finished by the sweep
- Client callback and webhook racing for the same payment
"""

import asyncio
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from energy_backend.src.billing.payments import PaymentAttemptState
from energy_backend.src.billing.shared.exceptions import (
    BillNotFoundError,
    GatewayError,
    StoreError,
    VerificationFailedError,
)


class TestConfirmPayment:
    """Tests for PaymentReconciler.confirm_payment."""

    @pytest.mark.asyncio
    async def test_valid_confirmation_pays_the_bill(self, services, make_bill, bill_order, sign):
        bill = await make_bill()
        assert bill.total_amount == Decimal('1375.00')
        order_id = await bill_order(bill)

        outcome = await services.reconciler.confirm_payment(
            'user-1', bill.id, order_id, 'pay_B1', sign(order_id, 'pay_B1')
        )

        assert outcome.state == PaymentAttemptState.BILL_UPDATED
        assert outcome.already_paid is False
        assert outcome.payment_status == 'success'

        payment = await services.store.get_payment_by_gateway_id('pay_B1')
        assert payment.amount == Decimal('1375.00')
        assert payment.status == 'success'
        assert payment.bill_id == bill.id
        assert payment.razorpay_order_id == order_id
        assert payment.transaction_id == 'pay_B1'

        stored = await services.store.get_bill(bill.id)
        assert stored.status == 'paid'
        assert stored.payment_id == payment.id

    @pytest.mark.asyncio
    async def test_corrupted_signature_records_nothing(self, services, make_bill, bill_order, sign):
        bill = await make_bill()
        order_id = await bill_order(bill)
        signature = sign(order_id, 'pay_B1')
        corrupted = signature[:-1] + ('0' if signature[-1] != '0' else '1')

        with pytest.raises(VerificationFailedError):
            await services.reconciler.confirm_payment('user-1', bill.id, order_id, 'pay_B1', corrupted)

        assert await services.store.get_payment_by_gateway_id('pay_B1') is None
        assert (await services.store.get_bill(bill.id)).status == 'unpaid'

    @pytest.mark.asyncio
    async def test_replayed_confirmation_is_a_no_op(self, services, make_bill, bill_order, sign):
        bill = await make_bill()
        order_id = await bill_order(bill)
        signature = sign(order_id, 'pay_B1')

        first = await services.reconciler.confirm_payment('user-1', bill.id, order_id, 'pay_B1', signature)
        second = await services.reconciler.confirm_payment('user-1', bill.id, order_id, 'pay_B1', signature)

        assert first.payment_id == second.payment_id
        assert second.already_paid is True
        assert len(await services.store.list_payments('user-1')) == 1

    @pytest.mark.asyncio
    async def test_other_users_bill_is_not_found(self, services, make_bill, bill_order, sign):
        bill = await make_bill(user_id='user-1')
        order_id = await bill_order(bill)
        with pytest.raises(BillNotFoundError):
            await services.reconciler.confirm_payment(
                'user-2', bill.id, order_id, 'pay_B1', sign(order_id, 'pay_B1')
            )
        assert await services.store.get_payment_by_gateway_id('pay_B1') is None

    @pytest.mark.asyncio
    async def test_overdue_bill_can_be_paid(self, services, make_bill, bill_order, sign):
        bill = await make_bill()
        await services.store.mark_overdue_bills(date(2026, 2, 1))
        assert (await services.store.get_bill(bill.id)).status == 'overdue'
        order_id = await bill_order(bill)

        outcome = await services.reconciler.confirm_payment(
            'user-1', bill.id, order_id, 'pay_B1', sign(order_id, 'pay_B1')
        )
        assert outcome.bill_status == 'paid'
        assert (await services.store.get_bill(bill.id)).status == 'paid'


class TestOrderBinding:
    """Tests for confirmations whose signed order was not minted for the bill."""

    @pytest.mark.asyncio
    async def test_cheap_order_cannot_settle_bill(self, services, make_bill, sign):
        bill = await make_bill()
        cheap = await services.orders.create_order('1.00', notes={'bill_id': bill.id})
        assert cheap.amount == 100

        with pytest.raises(VerificationFailedError) as exc_info:
            await services.reconciler.confirm_payment(
                'user-1', bill.id, cheap.order_id, 'pay_cheap', sign(cheap.order_id, 'pay_cheap')
            )

        assert exc_info.value.to_dict()['verified'] is False
        assert await services.store.get_payment_by_gateway_id('pay_cheap') is None
        assert (await services.store.get_bill(bill.id)).status == 'unpaid'

    @pytest.mark.asyncio
    async def test_untagged_order_cannot_settle_bill(self, services, make_bill, sign):
        bill = await make_bill()
        order = await services.orders.create_order('1375.00')

        with pytest.raises(VerificationFailedError):
            await services.reconciler.confirm_payment(
                'user-1', bill.id, order.order_id, 'pay_1', sign(order.order_id, 'pay_1')
            )
        assert (await services.store.get_bill(bill.id)).status == 'unpaid'

    @pytest.mark.asyncio
    async def test_order_for_another_bill_cannot_settle_bill(self, services, make_bill, bill_order, sign):
        cheap_bill = await make_bill(bill_month='2025-12', energy_charges=Decimal('1.00'),
                                     fixed_charges=Decimal('0'), tax_amount=Decimal('0'),
                                     other_charges=Decimal('0'))
        bill = await make_bill(bill_month='2026-01')
        order_id = await bill_order(cheap_bill)

        with pytest.raises(VerificationFailedError):
            await services.reconciler.confirm_payment(
                'user-1', bill.id, order_id, 'pay_1', sign(order_id, 'pay_1')
            )

        assert (await services.store.get_bill(bill.id)).status == 'unpaid'
        assert (await services.store.get_bill(cheap_bill.id)).status == 'unpaid'

    @pytest.mark.asyncio
    async def test_unknown_order_is_a_gateway_error(self, services, make_bill, sign):
        bill = await make_bill()
        with pytest.raises(GatewayError):
            await services.reconciler.confirm_payment(
                'user-1', bill.id, 'order_forged', 'pay_1', sign('order_forged', 'pay_1')
            )
        assert await services.store.get_payment_by_gateway_id('pay_1') is None


class TestStoreOutage:
    """Tests for a bill update lost after the payment was recorded."""

    @pytest.mark.asyncio
    async def test_sweep_finishes_the_bill_update(self, services, make_bill, bill_order, sign):
        bill = await make_bill()
        order_id = await bill_order(bill)
        outage = AsyncMock(side_effect=StoreError('connection refused', operation='mark_bill_paid'))

        with patch.object(services.store, 'mark_bill_paid', outage):
            outcome = await services.reconciler.confirm_payment(
                'user-1', bill.id, order_id, 'pay_B1', sign(order_id, 'pay_B1')
            )

        assert outcome.state == PaymentAttemptState.BILL_UPDATE_FAILED
        assert outage.await_count == services.settings.BILLING_STORE_RETRY_ATTEMPTS
        assert (await services.store.get_bill(bill.id)).status == 'unpaid'

        results = await services.reconciliation.reconcile_unreflected_payments()

        assert results['checked'] == 1
        assert results['fixed'] == 1
        stored = await services.store.get_bill(bill.id)
        assert stored.status == 'paid'
        assert stored.payment_id == outcome.payment_id
        assert len(await services.store.list_payments('user-1')) == 1

        # Nothing left for the next sweep
        again = await services.reconciliation.reconcile_unreflected_payments()
        assert again['checked'] == 0

    @pytest.mark.asyncio
    async def test_connection_refused_after_recording_is_deferred(
        self, services, make_bill, bill_order, sign
    ):
        bill = await make_bill()
        order_id = await bill_order(bill)
        store = services.store
        real_factory = store._session_factory
        real_record = store.record_payment

        def refusing_factory():
            raise ConnectionRefusedError(111, 'Connect call failed')

        async def record_then_drop(record):
            result = await real_record(record)
            store._session_factory = refusing_factory
            return result

        with patch.object(store, '_session_factory', real_factory), \
                patch.object(store, 'record_payment', record_then_drop):
            outcome = await services.reconciler.confirm_payment(
                'user-1', bill.id, order_id, 'pay_B1', sign(order_id, 'pay_B1')
            )

        assert outcome.state == PaymentAttemptState.BILL_UPDATE_FAILED
        assert outcome.error
        assert (await store.get_bill(bill.id)).status == 'unpaid'

        results = await services.reconciliation.reconcile_unreflected_payments()
        assert results['fixed'] == 1
        assert (await store.get_bill(bill.id)).status == 'paid'

    @pytest.mark.asyncio
    async def test_timeout_surfaces_as_store_error(self, services):
        def timing_out():
            raise asyncio.TimeoutError()

        with patch.object(services.store, '_session_factory', timing_out):
            with pytest.raises(StoreError) as exc_info:
                await services.store.get_bill('bill-1')
            results = await services.reconciliation.reconcile_unreflected_payments()

        assert isinstance(exc_info.value.__cause__, asyncio.TimeoutError)
        assert results['checked'] == 0
        assert len(results['errors']) == 1


class TestCallbackWebhookRace:
    """Tests for concurrent completion paths."""

    @pytest.mark.asyncio
    async def test_callback_and_webhook_record_one_payment(
        self, services, make_bill, bill_order, sign, webhook_event
    ):
        bill = await make_bill()
        order_id = await bill_order(bill)
        raw, signature = webhook_event('payment.captured', 'pay_B1', bill, order_id=order_id)

        outcome, result = await asyncio.gather(
            services.reconciler.confirm_payment('user-1', bill.id, order_id, 'pay_B1', sign(order_id, 'pay_B1')),
            services.webhooks.process_webhook(raw, signature, 'evt_race'),
        )

        assert outcome.state == PaymentAttemptState.BILL_UPDATED
        assert result['handled'] is True
        # Exactly one path moved the bill
        assert (not outcome.already_paid) + result['bill_updated'] == 1
        assert outcome.payment_id == result['payment_id']

        payments = await services.store.list_payments('user-1')
        assert len(payments) == 1
        assert payments[0].status == 'success'
        stored = await services.store.get_bill(bill.id)
        assert stored.status == 'paid'
        assert stored.payment_id == payments[0].id
