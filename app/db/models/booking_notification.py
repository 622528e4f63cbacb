from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_NOTIFICATION_STATUSES = frozenset(
    {NotificationStatus.SENT.value, NotificationStatus.FAILED.value, NotificationStatus.SKIPPED.value}
)


class BookingNotification(Base):
    __tablename__ = "booking_notifications"
    __table_args__ = (
        UniqueConstraint("booking_id", "caregiver_profile_id", "channel", name="booking_notify_unique"),
        Index("ix_booking_notifications_status_scheduled_for", "status", "scheduled_for"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    booking_id: Mapped[int | None] = mapped_column(
        ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True, index=True
    )
    caregiver_profile_id: Mapped[int | None] = mapped_column(
        ForeignKey("caregiver_profiles.id", ondelete="SET NULL"), nullable=True, index=True
    )
    channel: Mapped[str] = mapped_column(String(10), nullable=False, default=NotificationChannel.EMAIL.value)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default=NotificationStatus.PENDING.value)
    meta: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    booking = relationship("Booking")
    caregiver_profile = relationship("CaregiverProfile")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_NOTIFICATION_STATUSES

    @property
    def reason(self) -> str | None:
        return (self.meta or {}).get("reason")

    def _merge_meta(self, extra: dict[str, Any]) -> None:
        # JSON columns are not mutation-tracked, so always assign a new dict.
        self.meta = {**(self.meta or {}), **extra}

    def mark_sent(self, meta: dict[str, Any] | None = None) -> None:
        self.status = NotificationStatus.SENT.value
        self._merge_meta(meta or {})

    def mark_failed(self, reason: str, meta: dict[str, Any] | None = None) -> None:
        self.status = NotificationStatus.FAILED.value
        self._merge_meta({"reason": reason, **(meta or {})})

    def mark_skipped(self, reason: str, meta: dict[str, Any] | None = None) -> None:
        self.status = NotificationStatus.SKIPPED.value
        self._merge_meta({"reason": reason, **(meta or {})})
