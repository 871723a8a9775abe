"""Tests for Razorpay signature verification.

Tests cover:
- Checkout signatures over "order_id|payment_id"
- Webhook signatures over the raw body
- Rejection of any single-bit mutation
- Missing inputs
"""

import hashlib
import hmac
import json

import pytest

from energy_backend.src.billing.external.razorpay.signature import (
    compute_signature,
    verify_payment_signature,
    verify_webhook_signature,
)

SECRET = 'test_key_secret'


def _flip_bit(signature: str, bit: int) -> str:
    raw = bytearray(bytes.fromhex(signature))
    raw[bit // 8] ^= 1 << (bit % 8)
    return raw.hex()


class TestPaymentSignature:
    """Tests for checkout confirmation signatures."""

    def test_compute_matches_hmac_sha256(self):
        """Signature is hex HMAC-SHA256 of 'order|payment' keyed by the secret."""
        expected = hmac.new(SECRET.encode(), b'order_ABC|pay_XYZ', hashlib.sha256).hexdigest()
        assert compute_signature('order_ABC|pay_XYZ', SECRET) == expected

    @pytest.mark.parametrize('order_id,payment_id', [
        ('order_IluGWxBm9U8zJ8', 'pay_IluGWxBm9U8zJ9'),
        ('order_1', 'pay_1'),
        ('ordér_ünicode', 'pay_ütf8'),
        ('order|with|pipes', 'pay'),
    ])
    def test_valid_signature_verifies(self, order_id, payment_id):
        signature = compute_signature(f'{order_id}|{payment_id}', SECRET)
        assert verify_payment_signature(order_id, payment_id, signature, SECRET) is True

    def test_every_single_bit_mutation_is_rejected(self):
        """Flipping any one of the 256 digest bits fails verification."""
        signature = compute_signature('order_B1|pay_B1', SECRET)
        for bit in range(256):
            mutated = _flip_bit(signature, bit)
            assert verify_payment_signature('order_B1', 'pay_B1', mutated, SECRET) is False, bit

    def test_every_single_character_corruption_is_rejected(self):
        signature = compute_signature('order_B1|pay_B1', SECRET)
        for i, char in enumerate(signature):
            corrupted = signature[:i] + ('0' if char != '0' else '1') + signature[i + 1:]
            assert verify_payment_signature('order_B1', 'pay_B1', corrupted, SECRET) is False

    def test_uppercase_hex_is_rejected(self):
        """Razorpay sends lowercase hex; comparison is exact."""
        signature = compute_signature('order_1|pay_1', SECRET)
        assert verify_payment_signature('order_1', 'pay_1', signature.upper(), SECRET) is False

    def test_swapped_ids_are_rejected(self):
        signature = compute_signature('order_1|pay_1', SECRET)
        assert verify_payment_signature('pay_1', 'order_1', signature, SECRET) is False

    def test_wrong_secret_is_rejected(self):
        signature = compute_signature('order_1|pay_1', 'other_secret')
        assert verify_payment_signature('order_1', 'pay_1', signature, SECRET) is False

    @pytest.mark.parametrize('order_id,payment_id,signature,secret', [
        (None, 'pay_1', 'abc', SECRET),
        ('order_1', '', 'abc', SECRET),
        ('order_1', 'pay_1', None, SECRET),
        ('order_1', 'pay_1', 'abc', ''),
        ('order_1', 'pay_1', 'abc', None),
    ])
    def test_missing_inputs_are_rejected(self, order_id, payment_id, signature, secret):
        assert verify_payment_signature(order_id, payment_id, signature, secret) is False

    def test_non_ascii_signature_is_rejected(self):
        assert verify_payment_signature('order_1', 'pay_1', 'é' * 64, SECRET) is False


class TestWebhookSignature:
    """Tests for webhook body signatures."""

    def test_raw_body_verifies(self):
        body = b'{"event":"payment.captured","payload":{}}'
        signature = compute_signature(body, 'whsec')
        assert verify_webhook_signature(body, signature, 'whsec') is True

    def test_reserialized_body_is_rejected(self):
        """The signature covers the exact bytes; re-serialising changes them."""
        body = b'{"event": "payment.captured", "payload": {}}'
        signature = compute_signature(body, 'whsec')
        reserialized = json.dumps(json.loads(body), separators=(',', ':')).encode()
        assert verify_webhook_signature(reserialized, signature, 'whsec') is False

    def test_missing_header_or_secret_is_rejected(self):
        body = b'{}'
        signature = compute_signature(body, 'whsec')
        assert verify_webhook_signature(body, None, 'whsec') is False
        assert verify_webhook_signature(body, signature, '') is False
        assert verify_webhook_signature(None, signature, 'whsec') is False
