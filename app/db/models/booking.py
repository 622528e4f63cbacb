from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import JSON, CheckConstraint, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ATTENDED = "attended"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    ARCHIVED = "archived"


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint(
            "(client_id IS NULL) <> (guest_email IS NULL)",
            name="ck_bookings_single_requester",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    uuid: Mapped[str] = mapped_column(String(36), unique=True, index=True, nullable=False)
    slot_id: Mapped[int] = mapped_column(
        ForeignKey("booking_slots.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    client_id: Mapped[int | None] = mapped_column(
        ForeignKey("clients.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    guest_email: Mapped[str | None] = mapped_column(String(254), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_via: Mapped[str] = mapped_column(String(20), nullable=False, default="web")
    booking_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    slot = relationship("BookingSlot", back_populates="bookings")
    client = relationship("Client", back_populates="bookings")
    status_history = relationship(
        "BookingStatusHistory",
        back_populates="booking",
        order_by="BookingStatusHistory.id",
    )
    payments = relationship("Payment", back_populates="booking")

    @property
    def requester_email(self) -> str | None:
        if self.client is not None:
            return self.client.email
        return self.guest_email

    def cancel(self, at: datetime | None = None) -> None:
        self.status = BookingStatus.CANCELLED.value
        self.cancelled_at = at or datetime.now(UTC)
