"""
Razorpay Integration Module

Provides the Razorpay integration for bill payments:
- HMAC signature verification for checkout confirmations and webhooks
- Circuit breaker for API resilience
- Async REST client for orders and payments
- Webhook processing and event handlers

Usage:
    from energy_backend.src.billing.external.razorpay import (
        RazorpayClient,
        verify_payment_signature,
    )

    client = RazorpayClient(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET)
    order = await client.create_order(137500, 'INR', 'receipt_1712000000000')
"""

from .signature import (
    compute_signature,
    verify_payment_signature,
    verify_webhook_signature,
)

from .circuit_breaker import (
    CircuitState,
    RazorpayCircuitBreaker,
)

from .client import RazorpayClient

from .webhooks import WebhookService

from .handlers import PaymentHandler

__all__ = [
    # Signatures
    'compute_signature',
    'verify_payment_signature',
    'verify_webhook_signature',
    # Circuit Breaker
    'CircuitState',
    'RazorpayCircuitBreaker',
    # API Client
    'RazorpayClient',
    # Webhook Service
    'WebhookService',
    # Handlers
    'PaymentHandler',
]
