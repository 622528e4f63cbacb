import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.exceptions import DataIntegrityViolation, InvalidStatusTransition
from app.core.metrics import BookingMetrics, booking_metrics
from app.db.models import Booking, BookingStatus, BookingStatusHistory
from app.services.capacity_service import release_slot

logger = logging.getLogger(__name__)

BOOKING_NOT_FOUND_DETAIL = "Booking not found"
ALREADY_IN_STATUS_MESSAGE = "Booking already in the selected status."
STATUS_UPDATED_MESSAGE = "Booking status updated."

ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset(
        {BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW, BookingStatus.ARCHIVED}
    ),
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.ATTENDED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW, BookingStatus.ARCHIVED}
    ),
    BookingStatus.ATTENDED: frozenset({BookingStatus.ARCHIVED}),
    BookingStatus.CANCELLED: frozenset({BookingStatus.ARCHIVED}),
    BookingStatus.NO_SHOW: frozenset({BookingStatus.ARCHIVED}),
    BookingStatus.ARCHIVED: frozenset(),
}

# Statuses whose cancellation hands the seat back to the slot.
CAPACITY_HOLDING_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})


@dataclass(frozen=True)
class TransitionResult:
    booking: Booking
    changed: bool
    message: str


def can_transition(from_status: BookingStatus, to_status: BookingStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


def get_booking(db: Session, booking_id: int) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise DataIntegrityViolation(BOOKING_NOT_FOUND_DETAIL)
    return booking


def get_booking_by_uuid(db: Session, booking_uuid: str) -> Booking:
    booking = db.scalar(select(Booking).where(Booking.uuid == booking_uuid))
    if booking is None:
        raise DataIntegrityViolation(BOOKING_NOT_FOUND_DETAIL)
    return booking


def transition_booking(
    db: Session,
    booking_id: int,
    to_status: BookingStatus,
    changed_by: int | None = None,
    now: datetime | None = None,
    metrics: BookingMetrics = booking_metrics,
) -> TransitionResult:
    current_time = now or datetime.now(UTC)
    try:
        booking = db.scalar(select(Booking).where(Booking.id == booking_id).with_for_update())
        if booking is None:
            raise DataIntegrityViolation(BOOKING_NOT_FOUND_DETAIL)

        from_status = BookingStatus(booking.status)
        if from_status == to_status:
            db.rollback()
            logger.info("booking_status_unchanged booking_id=%s status=%s", booking_id, to_status.value)
            return TransitionResult(booking=booking, changed=False, message=ALREADY_IN_STATUS_MESSAGE)

        if not can_transition(from_status, to_status):
            raise InvalidStatusTransition(from_status.value, to_status.value)

        if to_status == BookingStatus.CANCELLED:
            booking.cancel(at=current_time)
            if from_status in CAPACITY_HOLDING_STATUSES:
                release_slot(db, booking.slot_id)
        else:
            booking.status = to_status.value

        db.add(
            BookingStatusHistory(
                booking_id=booking.id,
                from_status=from_status.value,
                to_status=to_status.value,
                changed_by=changed_by,
                changed_at=current_time,
            )
        )
        db.commit()
    except (DataIntegrityViolation, InvalidStatusTransition):
        db.rollback()
        raise

    db.refresh(booking)
    metrics.record_status_change(from_status.value, to_status.value)
    logger.info(
        "booking_status_changed booking_id=%s from=%s to=%s changed_by=%s",
        booking.id,
        from_status.value,
        to_status.value,
        changed_by,
    )
    return TransitionResult(booking=booking, changed=True, message=STATUS_UPDATED_MESSAGE)


def list_bookings(
    db: Session,
    status: BookingStatus | None = None,
    limit: int = 20,
    offset: int = 0,
) -> list[Booking]:
    query = select(Booking)
    if status:
        query = query.where(Booking.status == status.value)
    return list(db.scalars(query.order_by(Booking.created_at.desc(), Booking.id.desc()).limit(limit).offset(offset)))


def count_bookings_by_status(db: Session) -> dict[str, int]:
    rows = db.execute(select(Booking.status, func.count(Booking.id)).group_by(Booking.status)).all()
    counts = {status.value: 0 for status in BookingStatus}
    counts.update({status: total for status, total in rows})
    return counts


def get_status_history(db: Session, booking_id: int) -> list[BookingStatusHistory]:
    get_booking(db, booking_id)
    return list(
        db.scalars(
            select(BookingStatusHistory)
            .where(BookingStatusHistory.booking_id == booking_id)
            .order_by(BookingStatusHistory.id)
        )
    )
