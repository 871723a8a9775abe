"""
Razorpay API Client

Thin async REST client for the two Razorpay endpoints the service needs:
order creation and payment lookup. Every call goes through the circuit
breaker and carries a bounded timeout.

Order creation is never retried here: Razorpay would mint a second order.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from energy_backend.src.billing.payments.interfaces import PaymentGatewayInterface
from energy_backend.src.billing.shared.exceptions import GatewayError, GatewayNotConfiguredError

from .circuit_breaker import RazorpayCircuitBreaker

logger = logging.getLogger(__name__)


class RazorpayClient(PaymentGatewayInterface):
    """
    Razorpay Orders/Payments API over httpx with basic auth.

    Usage:
        client = RazorpayClient(key_id, key_secret)
        order = await client.create_order(137500, 'INR', 'receipt_1712000000000')
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        circuit_breaker: Optional[RazorpayCircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self._key_secret = key_secret
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.circuit_breaker = circuit_breaker or RazorpayCircuitBreaker()
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self._key_secret)

    def _ensure_configured(self):
        if not self.is_configured:
            raise GatewayNotConfiguredError()

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Create a Razorpay order.

        Args:
            amount: Amount in currency subunits (paise)
            currency: ISO currency code
            receipt: Merchant receipt reference
            notes: Up to 15 string key/value pairs echoed back on webhooks

        Returns:
            The order entity as returned by Razorpay
        """
        self._ensure_configured()
        payload = {
            'amount': amount,
            'currency': currency,
            'receipt': receipt,
            'notes': notes or {},
        }
        return await self.circuit_breaker.safe_call(self._request, 'POST', '/orders', json=payload)

    async def fetch_order(self, order_id: str) -> Dict[str, Any]:
        """Fetch an order entity; `amount` is in subunits."""
        self._ensure_configured()
        return await self.circuit_breaker.safe_call(self._request, 'GET', f'/orders/{order_id}')

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        """Fetch a payment entity by its Razorpay id."""
        self._ensure_configured()
        return await self.circuit_breaker.safe_call(self._request, 'GET', f'/payments/{payment_id}')

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self.key_id, self._key_secret),
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"[RAZORPAY] {method} {path} timed out after {self.timeout}s")
            raise GatewayError(f"Razorpay request timed out: {path}", code="GATEWAY_TIMEOUT") from e
        except httpx.HTTPError as e:
            logger.error(f"[RAZORPAY] {method} {path} transport error: {e}")
            raise GatewayError(f"Could not reach Razorpay: {e}") from e

        if response.is_error:
            description, upstream_code = self._error_details(response)
            logger.warning(f"[RAZORPAY] {method} {path} -> {response.status_code}: {description}")
            raise GatewayError(
                description,
                upstream_status=response.status_code,
                upstream_code=upstream_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(
                "Razorpay returned a non-JSON response", upstream_status=response.status_code
            ) from e

    @staticmethod
    def _error_details(response: httpx.Response) -> tuple:
        """Razorpay errors look like {"error": {"code": ..., "description": ...}}."""
        try:
            error = response.json().get('error') or {}
        except ValueError:
            error = {}
        description = error.get('description') or f"Razorpay returned HTTP {response.status_code}"
        return description, error.get('code')
