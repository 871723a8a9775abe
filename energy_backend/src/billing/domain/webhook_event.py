"""Webhook event log: one row per gateway event id."""

from datetime import datetime
from enum import Enum
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from energy_backend.common.model import DataClassBase, TimeZone
from energy_backend.utils.timezone import timezone


class WebhookEventStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookEvent(DataClassBase):
    """Razorpay webhook 事件日志"""

    __tablename__ = 'webhook_events'

    id: Mapped[str] = mapped_column(sa.String(255), primary_key=True, comment='Gateway event id or body digest')
    event_type: Mapped[str] = mapped_column(sa.String(64), index=True)
    status: Mapped[str] = mapped_column(sa.String(20), default=WebhookEventStatus.PROCESSING.value)
    payload: Mapped[Optional[dict]] = mapped_column(sa.JSON, default=None)
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, default=None)
    attempts: Mapped[int] = mapped_column(sa.Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(TimeZone, init=False, default_factory=timezone.now)
    completed_at: Mapped[Optional[datetime]] = mapped_column(TimeZone, default=None)
