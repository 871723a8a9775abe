"""
Razorpay Webhook Handlers

- PaymentHandler: payment.captured, payment.failed and order.paid
"""

from .payment import PaymentHandler

__all__ = [
    'PaymentHandler',
]
