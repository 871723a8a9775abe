"""
Bill Domain Entity

A utility bill for one service connection and one billing month.
Only the reconciliation flow changes its status; bills are never deleted here.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from energy_backend.common.model import Base, id_key
from energy_backend.database.db import uuid4_str


class BillStatus(str, Enum):
    """Possible bill statuses."""
    UNPAID = "unpaid"
    PAID = "paid"
    OVERDUE = "overdue"
    PARTIAL = "partial"


# Statuses from which a confirmed payment may settle the bill
PAYABLE_STATUSES = (BillStatus.UNPAID.value, BillStatus.OVERDUE.value, BillStatus.PARTIAL.value)

MONEY = sa.Numeric(10, 2)


class Bill(Base):
    """电费账单"""

    __tablename__ = 'bills'
    __table_args__ = (
        sa.UniqueConstraint('user_id', 'service_number', 'bill_month', name='uq_bills_user_service_month'),
        sa.CheckConstraint("status IN ('paid', 'unpaid', 'overdue', 'partial')", name='ck_bills_status'),
        sa.CheckConstraint('bill_period_start <= bill_period_end', name='ck_bills_period'),
        {'comment': 'Electricity bills'},
    )

    id: Mapped[id_key] = mapped_column(init=False, default_factory=uuid4_str)

    # -------------------------------------------------------------------------
    # Required fields (no defaults) - must come first for dataclasses
    # -------------------------------------------------------------------------

    user_id: Mapped[str] = mapped_column(sa.String(64), index=True, comment='Owning user')
    service_number: Mapped[str] = mapped_column(sa.String(64), comment='Service / consumer account number')
    bill_number: Mapped[str] = mapped_column(sa.String(64), unique=True, comment='Globally unique bill number')
    bill_month: Mapped[str] = mapped_column(sa.String(7), index=True, comment='YYYY-MM')
    bill_period_start: Mapped[date] = mapped_column(sa.Date, comment='Billing period start')
    bill_period_end: Mapped[date] = mapped_column(sa.Date, comment='Billing period end')
    due_date: Mapped[date] = mapped_column(sa.Date, index=True, comment='Payment due date')
    total_amount: Mapped[Decimal] = mapped_column(MONEY, comment='energy + fixed + tax + other')

    # -------------------------------------------------------------------------
    # Optional fields (with defaults)
    # -------------------------------------------------------------------------

    previous_reading: Mapped[Optional[Decimal]] = mapped_column(MONEY, default=None)
    current_reading: Mapped[Optional[Decimal]] = mapped_column(MONEY, default=None)
    units_consumed: Mapped[Optional[Decimal]] = mapped_column(MONEY, default=None, comment='kWh')

    energy_charges: Mapped[Decimal] = mapped_column(MONEY, default=Decimal('0.00'))
    fixed_charges: Mapped[Decimal] = mapped_column(MONEY, default=Decimal('0.00'))
    tax_amount: Mapped[Decimal] = mapped_column(MONEY, default=Decimal('0.00'))
    other_charges: Mapped[Decimal] = mapped_column(MONEY, default=Decimal('0.00'))

    status: Mapped[str] = mapped_column(
        sa.String(20), default=BillStatus.UNPAID.value, index=True, comment='paid, unpaid, overdue, partial'
    )
    # Plain reference: payments.bill_id already carries the foreign key
    payment_id: Mapped[Optional[str]] = mapped_column(
        sa.String(36), default=None, index=True, comment='Payment that settled this bill'
    )

    electricity_board: Mapped[Optional[str]] = mapped_column(sa.String(128), default=None)
    tariff_category: Mapped[Optional[str]] = mapped_column(sa.String(64), default=None)
    notes: Mapped[Optional[str]] = mapped_column(sa.Text, default=None)
    bill_metadata: Mapped[Optional[dict]] = mapped_column('metadata', sa.JSON, default=None)

    @property
    def components_total(self) -> Decimal:
        """Sum of the charge breakdown; must equal total_amount."""
        return (
            Decimal(self.energy_charges or 0)
            + Decimal(self.fixed_charges or 0)
            + Decimal(self.tax_amount or 0)
            + Decimal(self.other_charges or 0)
        ).quantize(Decimal('0.01'))

    def is_payable(self) -> bool:
        return self.status in PAYABLE_STATUSES
