from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class CaregiverProfile(Base):
    __tablename__ = "caregiver_profiles"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    client_id: Mapped[int | None] = mapped_column(
        ForeignKey("clients.id", ondelete="SET NULL"), nullable=True, index=True
    )
    preferred_contact_method: Mapped[str] = mapped_column(String(20), nullable=False, default="email")
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    sms_opt_in: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    preferences: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    user = relationship("User", back_populates="caregiver_profile")
    client = relationship("Client")

    def reminder_window_hours(self, default: int) -> int:
        return int((self.preferences or {}).get("reminder_window_hours", default))
