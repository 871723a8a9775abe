"""
Razorpay Signature Verification

Both checks are HMAC-SHA256, hex encoded, compared in constant time:

- checkout confirmations sign ``"{order_id}|{payment_id}"`` with the key secret
- webhooks sign the exact raw request body with the webhook secret

Any missing input verifies as False. Nothing here raises or keeps state.
"""

import hashlib
import hmac
from typing import Optional, Union


def compute_signature(message: Union[str, bytes], secret: str) -> str:
    """Hex HMAC-SHA256 of `message` keyed by `secret`."""
    if isinstance(message, str):
        message = message.encode('utf-8')
    return hmac.new(secret.encode('utf-8'), message, hashlib.sha256).hexdigest()


def _matches(expected: str, provided: str) -> bool:
    try:
        provided_bytes = provided.encode('ascii')
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected.encode('ascii'), provided_bytes)


def verify_payment_signature(
    order_id: Optional[str],
    payment_id: Optional[str],
    signature: Optional[str],
    secret: Optional[str],
) -> bool:
    """Check a checkout confirmation returned to the client by Razorpay."""
    if not order_id or not payment_id or not signature or not secret:
        return False
    expected = compute_signature(f"{order_id}|{payment_id}", secret)
    return _matches(expected, signature)


def verify_webhook_signature(
    raw_body: Optional[bytes],
    signature_header: Optional[str],
    webhook_secret: Optional[str],
) -> bool:
    """Check the X-Razorpay-Signature header against the raw body bytes."""
    if raw_body is None or not signature_header or not webhook_secret:
        return False
    expected = compute_signature(raw_body, webhook_secret)
    return _matches(expected, signature_header)
