"""
Bill Service

Bill import and lookup. The writer is responsible for the bill invariants:
the total equals the sum of the charge breakdown, the billing month is
YYYY-MM, the period and readings run forwards.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from energy_backend.src.billing.domain import Bill, BillStatus
from energy_backend.src.billing.payments.store import SqlBillStore
from energy_backend.src.billing.shared.config import (
    AMOUNT_TOLERANCE,
    BILL_MONTH_PATTERN,
    BILL_NUMBER_PREFIX,
    quantize_money,
    to_decimal,
)
from energy_backend.src.billing.shared.exceptions import InvalidInputError

logger = logging.getLogger(__name__)


@dataclass
class BillDraft:
    """Incoming bill values before validation."""
    service_number: str
    bill_month: str
    bill_period_start: date
    bill_period_end: date
    due_date: date
    energy_charges: Any = Decimal('0')
    fixed_charges: Any = Decimal('0')
    tax_amount: Any = Decimal('0')
    other_charges: Any = Decimal('0')
    total_amount: Any = None
    bill_number: Optional[str] = None
    previous_reading: Any = None
    current_reading: Any = None
    units_consumed: Any = None
    electricity_board: Optional[str] = None
    tariff_category: Optional[str] = None
    notes: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = field(default=None)


def default_bill_number(user_id: str, bill_month: str) -> str:
    return f"{BILL_NUMBER_PREFIX}-{user_id[:8]}-{bill_month}"


def _money(value, field_name: str, allow_none: bool = False) -> Optional[Decimal]:
    if value is None:
        if allow_none:
            return None
        value = 0
    try:
        amount = to_decimal(value)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidInputError(f"{field_name} must be a number", field=field_name)
    if not amount.is_finite() or amount < 0:
        raise InvalidInputError(f"{field_name} must be zero or more", field=field_name)
    return quantize_money(amount)


class BillService:
    """
    Creates and reads bills.

    Usage:
        bill = await bill_service.create_bill(user_id, BillDraft(...))
    """

    def __init__(self, store: SqlBillStore):
        self.store = store

    async def create_bill(self, user_id: str, draft: BillDraft) -> Bill:
        """
        Validate and store a new bill.

        Raises:
            InvalidInputError: An invariant does not hold
            DuplicateBillError: Bill number or (user, service, month) exists
        """
        if not user_id:
            raise InvalidInputError("User is required", field='user_id')
        if not draft.service_number or not draft.service_number.strip():
            raise InvalidInputError("Service number is required", field='service_number')
        if not BILL_MONTH_PATTERN.match(draft.bill_month or ''):
            raise InvalidInputError("Bill month must be YYYY-MM", field='bill_month')
        if draft.bill_period_start > draft.bill_period_end:
            raise InvalidInputError("Billing period starts after it ends", field='bill_period_start')

        energy = _money(draft.energy_charges, 'energy_charges')
        fixed = _money(draft.fixed_charges, 'fixed_charges')
        tax = _money(draft.tax_amount, 'tax_amount')
        other = _money(draft.other_charges, 'other_charges')
        total = quantize_money(energy + fixed + tax + other)

        if draft.total_amount is not None:
            supplied = _money(draft.total_amount, 'total_amount')
            if abs(supplied - total) > AMOUNT_TOLERANCE:
                raise InvalidInputError(
                    f"Total {supplied} does not equal the sum of charges {total}",
                    field='total_amount'
                )
        if total <= 0:
            raise InvalidInputError("Bill total must be positive", field='total_amount')

        previous = _money(draft.previous_reading, 'previous_reading', allow_none=True)
        current = _money(draft.current_reading, 'current_reading', allow_none=True)
        units = _money(draft.units_consumed, 'units_consumed', allow_none=True)
        if previous is not None and current is not None:
            if current < previous:
                raise InvalidInputError("Current reading is below previous reading", field='current_reading')
            if units is None:
                units = current - previous

        bill = Bill(
            user_id=user_id,
            service_number=draft.service_number.strip(),
            bill_number=draft.bill_number or default_bill_number(user_id, draft.bill_month),
            bill_month=draft.bill_month,
            bill_period_start=draft.bill_period_start,
            bill_period_end=draft.bill_period_end,
            due_date=draft.due_date,
            total_amount=total,
            previous_reading=previous,
            current_reading=current,
            units_consumed=units,
            energy_charges=energy,
            fixed_charges=fixed,
            tax_amount=tax,
            other_charges=other,
            status=BillStatus.UNPAID.value,
            electricity_board=draft.electricity_board,
            tariff_category=draft.tariff_category,
            notes=draft.notes,
            bill_metadata=draft.metadata,
        )
        bill = await self.store.create_bill(bill)
        logger.info(f"[BILLS] Created bill {bill.bill_number} for {user_id}: {total}")
        return bill

    async def get_bill(self, user_id: str, bill_id: str) -> Bill:
        return await self.store.get_user_bill(bill_id, user_id)

    async def list_bills(
        self,
        user_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Bill]:
        if status and status not in {s.value for s in BillStatus}:
            raise InvalidInputError(f"Unknown bill status '{status}'", field='status')
        return await self.store.list_bills(user_id, status=status, limit=limit, offset=offset)
