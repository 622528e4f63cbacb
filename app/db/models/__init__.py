from app.db.models.audit_log import AuditLog
from app.db.models.booking import Booking, BookingStatus
from app.db.models.booking_notification import (
    BookingNotification,
    NotificationChannel,
    NotificationStatus,
)
from app.db.models.booking_slot import BookingSlot
from app.db.models.booking_status_history import BookingStatusHistory
from app.db.models.caregiver_profile import CaregiverProfile
from app.db.models.client import Client
from app.db.models.facility import Facility
from app.db.models.media_item import MediaItem, MediaOwnerKind, MediaStatus
from app.db.models.payment import Payment, PaymentStatus
from app.db.models.service import Service
from app.db.models.slot_reservation import SlotReservation
from app.db.models.user import User, UserRole

__all__ = [
    "User",
    "UserRole",
    "Client",
    "Facility",
    "Service",
    "CaregiverProfile",
    "BookingSlot",
    "Booking",
    "BookingStatus",
    "BookingStatusHistory",
    "SlotReservation",
    "BookingNotification",
    "NotificationChannel",
    "NotificationStatus",
    "MediaItem",
    "MediaOwnerKind",
    "MediaStatus",
    "Payment",
    "PaymentStatus",
    "AuditLog",
]
