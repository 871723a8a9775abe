"""
Order Service

Mints Razorpay orders for bill payments.
Features:
- Decimal amount validation and conversion to paise
- Bill-bound orders whose notes let the webhook find the bill
- Gateway payment summaries for the payment status page

One call creates at most one remote order; nothing here retries.
"""

import logging
import time
from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from energy_backend.src.billing.domain import Bill
from energy_backend.src.billing.shared.config import (
    CURRENCY_PATTERN,
    DEFAULT_CURRENCY,
    MAX_AMOUNT,
    MAX_NOTE_LENGTH,
    MAX_ORDER_NOTES,
    RECEIPT_PREFIX,
    to_decimal,
    to_minor_units,
)
from energy_backend.src.billing.shared.exceptions import (
    BillAlreadyPaidError,
    InvalidAmountError,
    InvalidInputError,
)
from .interfaces import PaymentGatewayInterface

logger = logging.getLogger(__name__)


@dataclass
class OrderHandle:
    """A created gateway order; `amount` is in minor units."""
    order_id: str
    amount: int
    currency: str
    receipt: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class OrderService:
    """
    Creates gateway orders.

    Usage:
        handle = await order_service.create_order(Decimal('1375.00'))
        # OrderHandle(order_id='order_...', amount=137500, currency='INR', receipt='receipt_...')
    """

    def __init__(self, gateway: PaymentGatewayInterface, default_currency: str = DEFAULT_CURRENCY):
        self.gateway = gateway
        self.default_currency = default_currency

    async def create_order(
        self,
        amount,
        currency: Optional[str] = None,
        notes: Optional[Dict[str, Any]] = None
    ) -> OrderHandle:
        """
        Create an order for `amount` major units.

        Raises:
            InvalidAmountError: amount missing, non-numeric, or not positive
            InvalidInputError: bad currency code or notes
            GatewayError: Razorpay refused or could not be reached
        """
        minor = self._amount_to_minor(amount)
        currency = self._validate_currency(currency or self.default_currency)
        clean_notes = self._validate_notes(notes)
        receipt = f"{RECEIPT_PREFIX}{int(time.time() * 1000)}"

        logger.info(f"[ORDER] Creating order amount={minor} {currency} receipt={receipt}")
        order = await self.gateway.create_order(minor, currency, receipt, clean_notes)

        handle = OrderHandle(
            order_id=order['id'],
            amount=int(order.get('amount', minor)),
            currency=order.get('currency', currency),
            receipt=order.get('receipt') or receipt,
        )
        logger.info(f"[ORDER] Created {handle.order_id} for {handle.amount} {handle.currency}")
        return handle

    async def create_bill_order(self, bill: Bill, currency: Optional[str] = None) -> OrderHandle:
        """Order for a bill's total, tagged so webhooks can resolve the bill."""
        if not bill.is_payable():
            raise BillAlreadyPaidError(bill.id)
        notes = {
            'bill_id': bill.id,
            'bill_number': bill.bill_number,
            'service_number': bill.service_number,
            'bill_month': bill.bill_month,
            'user_id': bill.user_id,
        }
        return await self.create_order(bill.total_amount, currency, notes)

    async def get_payment_summary(self, payment_id: str) -> Dict[str, Any]:
        """Gateway view of a payment; `amount` stays in minor units."""
        if not payment_id:
            raise InvalidInputError("Payment id is required", field='payment_id')
        payment = await self.gateway.fetch_payment(payment_id)
        return {
            'id': payment.get('id'),
            'amount': payment.get('amount'),
            'currency': payment.get('currency'),
            'status': payment.get('status'),
            'method': payment.get('method'),
            'email': payment.get('email'),
            'contact': payment.get('contact'),
            'created_at': payment.get('created_at'),
        }

    @staticmethod
    def _amount_to_minor(amount) -> int:
        if amount is None:
            raise InvalidAmountError("Amount is required")
        try:
            value = to_decimal(amount)
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidAmountError(amount=amount)
        if not value.is_finite() or value <= 0 or value > MAX_AMOUNT:
            raise InvalidAmountError(amount=amount)
        minor = to_minor_units(value)
        if minor < 1:
            raise InvalidAmountError("Amount is below the smallest currency unit", amount=amount)
        return minor

    @staticmethod
    def _validate_currency(currency: str) -> str:
        code = str(currency).strip().upper()
        if not CURRENCY_PATTERN.match(code):
            raise InvalidInputError(f"Invalid currency '{currency}'", field='currency')
        return code

    @staticmethod
    def _validate_notes(notes: Optional[Dict[str, Any]]) -> Dict[str, str]:
        if not notes:
            return {}
        if not isinstance(notes, dict):
            raise InvalidInputError("Notes must be an object", field='notes')
        if len(notes) > MAX_ORDER_NOTES:
            raise InvalidInputError(f"At most {MAX_ORDER_NOTES} notes are allowed", field='notes')
        clean = {}
        for key, value in notes.items():
            text = '' if value is None else str(value)
            if len(text) > MAX_NOTE_LENGTH:
                raise InvalidInputError(f"Note '{key}' is too long", field='notes')
            clean[str(key)] = text
        return clean
