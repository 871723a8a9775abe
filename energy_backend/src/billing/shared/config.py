"""
Billing Configuration

Constants for orders, bills and the reconciliation sweep.
Deployment-specific values (keys, secrets, timeouts) live in core.conf.

Usage:
    from energy_backend.src.billing.shared.config import to_minor_units

    to_minor_units(Decimal('1375.005'))  # 137501
"""

import re

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from energy_backend.core.conf import settings


# =============================================================================
# AMOUNTS
# =============================================================================
# Razorpay amounts are integers in the currency subunit (paise for INR)
MINOR_UNITS_PER_MAJOR: int = 100

MONEY_QUANTUM: Decimal = Decimal('0.01')

# Largest bill amount a column of Numeric(10, 2) can hold
MAX_AMOUNT: Decimal = Decimal('99999999.99')

# Tolerated drift between a bill total and its components, or a bill total
# and a webhook's captured amount
AMOUNT_TOLERANCE: Decimal = Decimal('0.01')


# =============================================================================
# ORDERS
# =============================================================================
DEFAULT_CURRENCY: str = settings.BILLING_DEFAULT_CURRENCY

CURRENCY_PATTERN = re.compile(r'^[A-Z]{3}$')

# Razorpay accepts at most 15 note keys of up to 256 characters each
MAX_ORDER_NOTES: int = 15
MAX_NOTE_LENGTH: int = 256

RECEIPT_PREFIX: str = 'receipt_'


# =============================================================================
# BILLS
# =============================================================================
BILL_MONTH_PATTERN = re.compile(r'^\d{4}-(0[1-9]|1[0-2])$')

BILL_NUMBER_PREFIX: str = 'EB'


# =============================================================================
# WEBHOOK EVENTS
# =============================================================================
EVENT_PAYMENT_CAPTURED = 'payment.captured'
EVENT_PAYMENT_FAILED = 'payment.failed'
EVENT_ORDER_PAID = 'order.paid'


# =============================================================================
# HELPERS
# =============================================================================
def to_decimal(value) -> Decimal:
    """Parse a user-supplied amount without passing through float."""
    if isinstance(value, bool):
        raise InvalidOperation(f'not an amount: {value!r}')
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value).strip())


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """round(amount * 100), half away from zero."""
    return int((amount * MINOR_UNITS_PER_MAJOR).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / MINOR_UNITS_PER_MAJOR).quantize(MONEY_QUANTUM)


def amounts_match(a: Decimal, b: Decimal) -> bool:
    return abs(Decimal(a) - Decimal(b)) <= AMOUNT_TOLERANCE
