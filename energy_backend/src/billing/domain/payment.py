"""
Payment Domain Entity

One row per completed or attempted gateway payment. Rows are immutable apart
from status correction (failed/pending -> success, success -> refunded).
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from energy_backend.common.model import Base, TimeZone, id_key
from energy_backend.database.db import uuid4_str
from energy_backend.utils.timezone import timezone


class PaymentStatus(str, Enum):
    """Possible payment statuses."""
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"
    REFUNDED = "refunded"


# Allowed status corrections on an existing row
STATUS_CORRECTIONS = {
    PaymentStatus.FAILED.value: {PaymentStatus.SUCCESS.value},
    PaymentStatus.PENDING.value: {PaymentStatus.SUCCESS.value, PaymentStatus.FAILED.value},
    PaymentStatus.SUCCESS.value: {PaymentStatus.REFUNDED.value},
    PaymentStatus.REFUNDED.value: set(),
}


def can_correct_status(current: str, new: str) -> bool:
    """Whether an existing payment in `current` may move to `new`."""
    return new in STATUS_CORRECTIONS.get(current, set())


class Payment(Base):
    """账单支付记录"""

    __tablename__ = 'payments'
    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('success', 'failed', 'pending', 'refunded')", name='ck_payments_status'
        ),
        {'comment': 'Bill payments'},
    )

    id: Mapped[id_key] = mapped_column(init=False, default_factory=uuid4_str)

    amount: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), comment='Amount in major units')

    user_id: Mapped[Optional[str]] = mapped_column(
        sa.String(64), default=None, index=True, comment='Null for webhook payments with no known bill'
    )
    bill_id: Mapped[Optional[str]] = mapped_column(
        sa.String(36),
        sa.ForeignKey('bills.id', ondelete='SET NULL'),
        default=None,
        index=True,
        comment='Settled bill',
    )
    bill_number: Mapped[Optional[str]] = mapped_column(sa.String(64), default=None)
    service_number: Mapped[Optional[str]] = mapped_column(sa.String(64), default=None)
    bill_month: Mapped[Optional[str]] = mapped_column(sa.String(7), default=None)

    currency: Mapped[str] = mapped_column(sa.String(3), default='INR')
    payment_date: Mapped[datetime] = mapped_column(TimeZone, default_factory=timezone.now, index=True)
    status: Mapped[str] = mapped_column(
        sa.String(20), default=PaymentStatus.PENDING.value, index=True, comment='success, failed, pending, refunded'
    )
    payment_method: Mapped[str] = mapped_column(sa.String(32), default='online')

    transaction_id: Mapped[Optional[str]] = mapped_column(sa.String(255), default=None)
    razorpay_order_id: Mapped[Optional[str]] = mapped_column(sa.String(255), default=None, index=True)
    razorpay_payment_id: Mapped[Optional[str]] = mapped_column(
        sa.String(255), default=None, unique=True, comment='Dedupe key across callback and webhook paths'
    )
    razorpay_signature: Mapped[Optional[str]] = mapped_column(sa.String(255), default=None)
    failure_reason: Mapped[Optional[str]] = mapped_column(sa.Text, default=None)
    payment_metadata: Mapped[Optional[dict]] = mapped_column('metadata', sa.JSON, default=None)

    def is_success(self) -> bool:
        return self.status == PaymentStatus.SUCCESS.value
