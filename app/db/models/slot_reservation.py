from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class SlotReservation(Base):
    __tablename__ = "slot_reservations"
    __table_args__ = (
        UniqueConstraint("slot_id", "reserved_for_client_id", name="uq_slot_reservations_slot_client"),
        UniqueConstraint("slot_id", "guest_email", name="uq_slot_reservations_slot_guest"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    slot_id: Mapped[int] = mapped_column(
        ForeignKey("booking_slots.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reserved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    reserved_for_client_id: Mapped[int | None] = mapped_column(ForeignKey("clients.id"), nullable=True)
    guest_email: Mapped[str | None] = mapped_column(String(254), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    slot = relationship("BookingSlot")
