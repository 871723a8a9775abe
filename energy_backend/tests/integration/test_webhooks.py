"""Integration tests for Razorpay webhook processing.

Tests cover:
- Idempotence under redelivery
- payment.failed followed by payment.captured for the same payment
- Underpaid captures leaving the bill partial until the total is covered
- order.paid resolving the bill from order notes
- Configuration and signature failures
"""

import pytest

from energy_backend.src.billing.external.razorpay import WebhookService
from energy_backend.src.billing.shared.exceptions import VerificationFailedError, WebhookError


class TestPaymentCaptured:
    """Tests for payment.captured."""

    @pytest.mark.asyncio
    async def test_captured_event_pays_the_bill(self, services, make_bill, webhook_event):
        bill = await make_bill()
        raw, signature = webhook_event('payment.captured', 'pay_W1', bill)

        result = await services.webhooks.process_webhook(raw, signature, 'evt_1')

        assert result['status'] == 'ok'
        assert result['handled'] is True
        assert result['created'] is True
        assert result['bill_updated'] is True

        payment = await services.store.get_payment_by_gateway_id('pay_W1')
        assert payment.status == 'success'
        assert payment.user_id == 'user-1'
        assert payment.payment_metadata['source'] == 'webhook'
        assert (await services.store.get_bill(bill.id)).status == 'paid'

    @pytest.mark.asyncio
    async def test_same_event_twice_is_processed_once(self, services, make_bill, webhook_event):
        bill = await make_bill()
        raw, signature = webhook_event('payment.captured', 'pay_W1', bill)

        first = await services.webhooks.process_webhook(raw, signature, 'evt_1')
        second = await services.webhooks.process_webhook(raw, signature, 'evt_1')

        assert first['created'] is True
        assert second == {'status': 'ok', 'event_id': 'evt_1', 'duplicate': True}
        assert len(await services.store.list_payments('user-1')) == 1

    @pytest.mark.asyncio
    async def test_redelivery_under_new_event_id_dedupes_on_payment(self, services, make_bill, webhook_event):
        bill = await make_bill()
        raw, signature = webhook_event('payment.captured', 'pay_W1', bill)

        first = await services.webhooks.process_webhook(raw, signature, 'evt_1')
        second = await services.webhooks.process_webhook(raw, signature, 'evt_2')

        assert first['bill_updated'] is True
        assert second['created'] is False
        assert second['bill_updated'] is False
        assert second['payment_id'] == first['payment_id']
        assert len(await services.store.list_payments('user-1')) == 1

    @pytest.mark.asyncio
    async def test_body_digest_dedupes_without_event_id(self, services, make_bill, webhook_event):
        bill = await make_bill()
        raw, signature = webhook_event('payment.captured', 'pay_W1', bill)

        first = await services.webhooks.process_webhook(raw, signature)
        second = await services.webhooks.process_webhook(raw, signature)

        assert first['event_id'].startswith('body_')
        assert second['duplicate'] is True

    @pytest.mark.asyncio
    async def test_captured_without_bill_is_stored_unlinked(self, services, webhook_event):
        raw, signature = webhook_event('payment.captured', 'pay_orphan', None)

        result = await services.webhooks.process_webhook(raw, signature, 'evt_1')

        assert result['bill_id'] is None
        assert result['bill_updated'] is False
        payment = await services.store.get_payment_by_gateway_id('pay_orphan')
        assert payment.bill_id is None
        assert payment.status == 'success'


    @pytest.mark.asyncio
    async def test_underpaid_capture_leaves_bill_partial(self, services, make_bill, webhook_event):
        bill = await make_bill()
        raw, signature = webhook_event('payment.captured', 'pay_small', bill, amount=100)

        result = await services.webhooks.process_webhook(raw, signature, 'evt_1')

        assert result['handled'] is True
        assert result['bill_updated'] is False
        assert result['bill_status'] == 'partial'
        stored = await services.store.get_bill(bill.id)
        assert stored.status == 'partial'
        assert stored.payment_id is None
        assert (await services.store.get_payment_by_gateway_id('pay_small')).status == 'success'

    @pytest.mark.asyncio
    async def test_second_capture_completing_total_pays_bill(self, services, make_bill, webhook_event):
        bill = await make_bill()
        raw, signature = webhook_event('payment.captured', 'pay_part_1', bill, amount=100)
        await services.webhooks.process_webhook(raw, signature, 'evt_1')

        raw, signature = webhook_event('payment.captured', 'pay_part_2', bill, amount=137400)
        result = await services.webhooks.process_webhook(raw, signature, 'evt_2')

        assert result['bill_updated'] is True
        assert result['bill_status'] == 'paid'
        stored = await services.store.get_bill(bill.id)
        assert stored.status == 'paid'
        assert stored.payment_id == result['payment_id']

class TestPaymentFailed:
    """Tests for payment.failed."""

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_bill_untouched(self, services, make_bill, webhook_event):
        bill = await make_bill()
        raw, signature = webhook_event(
            'payment.failed', 'pay_F1', bill, error_description='Payment was declined by the bank'
        )

        result = await services.webhooks.process_webhook(raw, signature, 'evt_1')

        assert result['payment_status'] == 'failed'
        payment = await services.store.get_payment_by_gateway_id('pay_F1')
        assert payment.failure_reason == 'Payment was declined by the bank'
        assert (await services.store.get_bill(bill.id)).status == 'unpaid'

    @pytest.mark.asyncio
    async def test_failed_then_captured_corrects_the_payment(self, services, make_bill, webhook_event):
        bill = await make_bill()
        raw, signature = webhook_event('payment.failed', 'pay_F1', bill, error_description='Timed out')
        await services.webhooks.process_webhook(raw, signature, 'evt_1')

        raw, signature = webhook_event('payment.captured', 'pay_F1', bill)
        result = await services.webhooks.process_webhook(raw, signature, 'evt_2')

        assert result['created'] is False
        assert result['bill_updated'] is True
        payments = await services.store.list_payments('user-1')
        assert len(payments) == 1
        assert payments[0].status == 'success'
        assert payments[0].failure_reason is None
        assert (await services.store.get_bill(bill.id)).status == 'paid'

    @pytest.mark.asyncio
    async def test_failed_after_success_never_downgrades(self, services, make_bill, webhook_event):
        bill = await make_bill()
        raw, signature = webhook_event('payment.captured', 'pay_W1', bill)
        await services.webhooks.process_webhook(raw, signature, 'evt_1')

        raw, signature = webhook_event('payment.failed', 'pay_W1', bill)
        result = await services.webhooks.process_webhook(raw, signature, 'evt_2')

        assert result['payment_status'] == 'success'
        assert (await services.store.get_payment_by_gateway_id('pay_W1')).status == 'success'
        assert (await services.store.get_bill(bill.id)).status == 'paid'

    @pytest.mark.asyncio
    async def test_failure_for_another_payment_leaves_paid_bill(self, services, make_bill, webhook_event):
        bill = await make_bill()
        raw, signature = webhook_event('payment.captured', 'pay_W1', bill)
        await services.webhooks.process_webhook(raw, signature, 'evt_1')

        raw, signature = webhook_event('payment.failed', 'pay_W2', bill)
        await services.webhooks.process_webhook(raw, signature, 'evt_2')

        assert (await services.store.get_bill(bill.id)).status == 'paid'
        assert len(await services.store.list_payments('user-1')) == 2


class TestOrderPaid:
    """Tests for order.paid."""

    @pytest.mark.asyncio
    async def test_bill_resolved_from_order_notes(self, services, make_bill, webhook_event):
        bill = await make_bill()
        raw, signature = webhook_event('order.paid', 'pay_O1', bill, order_id='order_77', notes_on_order=True)

        result = await services.webhooks.process_webhook(raw, signature, 'evt_1')

        assert result['bill_id'] == bill.id
        assert result['bill_updated'] is True
        payment = await services.store.get_payment_by_gateway_id('pay_O1')
        assert payment.razorpay_order_id == 'order_77'

    @pytest.mark.asyncio
    async def test_unknown_event_is_accepted_and_ignored(self, services, webhook_event):
        raw, signature = webhook_event('refund.processed', 'pay_R1', None)

        result = await services.webhooks.process_webhook(raw, signature, 'evt_1')

        assert result['status'] == 'ok'
        assert result['handled'] is False
        assert await services.store.get_payment_by_gateway_id('pay_R1') is None


class TestWebhookRejection:
    """Tests for webhooks that must be rejected."""

    @pytest.mark.asyncio
    async def test_missing_secret_is_a_server_error(self, store, webhook_event):
        raw, signature = webhook_event('payment.captured', 'pay_1', None)
        with pytest.raises(WebhookError) as exc_info:
            await WebhookService(store, webhook_secret='').process_webhook(raw, signature)

        assert exc_info.value.status_code == 500
        assert exc_info.value.code == 'WEBHOOK_NOT_CONFIGURED'

    @pytest.mark.asyncio
    async def test_missing_signature(self, services, webhook_event):
        raw, _ = webhook_event('payment.captured', 'pay_1', None)
        with pytest.raises(WebhookError) as exc_info:
            await services.webhooks.process_webhook(raw, None)
        assert exc_info.value.code == 'MISSING_SIGNATURE'

    @pytest.mark.asyncio
    async def test_wrong_signature_processes_nothing(self, services, make_bill, webhook_event):
        bill = await make_bill()
        raw, _ = webhook_event('payment.captured', 'pay_1', bill)
        _, forged = webhook_event('payment.captured', 'pay_1', bill, secret='attacker')

        with pytest.raises(VerificationFailedError):
            await services.webhooks.process_webhook(raw, forged, 'evt_1')

        assert await services.store.get_payment_by_gateway_id('pay_1') is None
        assert (await services.store.get_bill(bill.id)).status == 'unpaid'

    @pytest.mark.asyncio
    async def test_signed_garbage_is_invalid_payload(self, services):
        from energy_backend.src.billing.external.razorpay import compute_signature

        raw = b'not json'
        with pytest.raises(WebhookError) as exc_info:
            await services.webhooks.process_webhook(raw, compute_signature(raw, services.settings.RAZORPAY_WEBHOOK_SECRET))
        assert exc_info.value.code == 'INVALID_PAYLOAD'

    @pytest.mark.asyncio
    async def test_failed_handler_leaves_event_retryable(self, services, make_bill, webhook_event):
        from unittest.mock import AsyncMock, patch

        from energy_backend.src.billing.shared.exceptions import StoreError

        bill = await make_bill()
        raw, signature = webhook_event('payment.captured', 'pay_W1', bill)

        outage = AsyncMock(side_effect=StoreError('db down', operation='record_payment'))
        with patch.object(services.store, 'record_payment', outage):
            with pytest.raises(StoreError):
                await services.webhooks.process_webhook(raw, signature, 'evt_1')

        result = await services.webhooks.process_webhook(raw, signature, 'evt_1')
        assert result.get('duplicate') is None
        assert result['bill_updated'] is True
