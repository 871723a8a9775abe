"""
Razorpay Webhook Service

Central dispatcher for Razorpay webhook events.
Handles signature verification, deduplication, and routing to handlers.

Failure policy:
- misconfiguration (no webhook secret) -> 500; verification is never skipped
- missing/invalid signature or unparsable body -> 400, not retried by Razorpay
- store unavailable -> 503 so Razorpay redelivers; handlers are idempotent
"""

import hashlib
import json
import logging
from typing import Any, Dict, Optional

from energy_backend.src.billing.payments.store import SqlBillStore
from energy_backend.src.billing.shared.config import (
    EVENT_ORDER_PAID,
    EVENT_PAYMENT_CAPTURED,
    EVENT_PAYMENT_FAILED,
)
from energy_backend.src.billing.shared.exceptions import (
    BillingError,
    VerificationFailedError,
    WebhookError,
)

from .handlers import PaymentHandler
from .signature import verify_webhook_signature

logger = logging.getLogger(__name__)


class WebhookService:
    """
    Central service for processing Razorpay webhooks.

    Responsibilities:
    - Verify webhook signatures over the raw body
    - Deduplicate events through the webhook event log
    - Route events to appropriate handlers
    - Handle errors and mark event status

    Usage:
        webhook_service = WebhookService(store, settings.RAZORPAY_WEBHOOK_SECRET)
        result = await webhook_service.process_webhook(raw_body, signature, event_id)
    """

    def __init__(self, store: SqlBillStore, webhook_secret: str):
        self.store = store
        self._webhook_secret = webhook_secret
        self.payment_handler = PaymentHandler(store)

    async def process_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        event_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Process an incoming Razorpay webhook.

        Args:
            raw_body: Exact request body bytes (the signature covers these)
            signature: X-Razorpay-Signature header
            event_id: X-Razorpay-Event-Id header, if sent

        Returns:
            Dict with processing status

        Raises:
            WebhookError: Secret not configured, signature missing, bad payload
            VerificationFailedError: Signature does not match
            StoreError: Persistence failed; the event is left retryable
        """
        if not self._webhook_secret:
            logger.error("[WEBHOOK] RAZORPAY_WEBHOOK_SECRET not configured, rejecting webhook")
            raise WebhookError(
                "Webhook secret not configured",
                code="WEBHOOK_NOT_CONFIGURED",
                status_code=500
            )

        if not signature:
            raise WebhookError("Missing X-Razorpay-Signature header", code="MISSING_SIGNATURE")

        if not verify_webhook_signature(raw_body, signature, self._webhook_secret):
            logger.warning(f"[SECURITY] Invalid webhook signature (event_id={event_id})")
            raise VerificationFailedError("Invalid webhook signature")

        try:
            event = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"[WEBHOOK] Invalid payload: {e}")
            raise WebhookError("Invalid JSON payload", code="INVALID_PAYLOAD")

        if not isinstance(event, dict) or not event.get('event'):
            raise WebhookError("Payload has no event type", code="INVALID_PAYLOAD")

        event_type = event['event']
        event_id = event_id or self._body_digest(raw_body)

        if not await self.store.claim_webhook_event(event_id, event_type, payload=event):
            logger.info(f"[WEBHOOK] Skipping event {event_id}: already processed or in progress")
            return {
                'status': 'ok',
                'event_id': event_id,
                'duplicate': True
            }

        logger.info(f"[WEBHOOK] Processing event type: {event_type} (ID: {event_id})")

        try:
            result = await self._route_event(event_type, event.get('payload') or {})
        except BillingError as e:
            await self._mark_failed(event_id, f"{e.code}: {e.message}")
            raise

        await self.store.complete_webhook_event(event_id)
        return {
            'status': 'ok',
            'event_id': event_id,
            'event': event_type,
            **result
        }

    async def _route_event(self, event_type: str, payload: Dict) -> Dict[str, Any]:
        """
        Route event to the appropriate handler.

        Args:
            event_type: Razorpay event name
            payload: The event's `payload` object
        """
        if event_type == EVENT_PAYMENT_CAPTURED:
            logger.info("[WEBHOOK] Handling payment.captured")
            return {'handled': True, **await self.payment_handler.handle_payment_captured(payload)}

        elif event_type == EVENT_ORDER_PAID:
            logger.info("[WEBHOOK] Handling order.paid")
            return {'handled': True, **await self.payment_handler.handle_order_paid(payload)}

        elif event_type == EVENT_PAYMENT_FAILED:
            logger.info("[WEBHOOK] Handling payment.failed")
            return {'handled': True, **await self.payment_handler.handle_payment_failed(payload)}

        logger.info(f"[WEBHOOK] Unhandled event type: {event_type}")
        return {'handled': False}

    async def _mark_failed(self, event_id: str, error_message: str) -> None:
        try:
            await self.store.fail_webhook_event(event_id, error_message)
        except BillingError as e:
            # The original error is what the caller needs to see
            logger.error(f"[WEBHOOK] Could not mark event {event_id} failed: {e.message}")

    @staticmethod
    def _body_digest(raw_body: bytes) -> str:
        return f"body_{hashlib.sha256(raw_body).hexdigest()}"
