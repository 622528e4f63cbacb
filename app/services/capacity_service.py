import logging
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    CapacityExhausted,
    ConcurrencyConflict,
    DataIntegrityViolation,
    DomainError,
    ValidationFailure,
)
from app.core.metrics import BookingMetrics, booking_metrics
from app.db.models import (
    Booking,
    BookingSlot,
    BookingStatus,
    BookingStatusHistory,
    Client,
    SlotReservation,
)
from app.schemas.booking import ClientDetails

logger = logging.getLogger(__name__)

LOCK_CONFLICT_DETAIL = "Slot is busy. Retry the request."
SLOT_UNAVAILABLE_DETAIL = "Selected slot is no longer available."
SLOT_NOT_FOUND_DETAIL = "Slot not found"
HOLD_ALREADY_EXISTS_DETAIL = "A hold for this slot already exists"
# lock_not_available (lock_timeout), serialization_failure, deadlock_detected
PG_RETRYABLE_SQLSTATES = frozenset({"55P03", "40001", "40P01"})


def _is_postgresql_session(db: Session) -> bool:
    bind = db.get_bind()
    return bind is not None and bind.dialect.name == "postgresql"


def _is_pg_retryable(exc: OperationalError) -> bool:
    original_error = getattr(exc, "orig", None)
    if original_error is None:
        return False

    sqlstate = getattr(original_error, "sqlstate", None)
    if sqlstate is None:
        sqlstate = getattr(original_error, "pgcode", None)

    return sqlstate in PG_RETRYABLE_SQLSTATES


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _slot_unavailable() -> CapacityExhausted:
    return CapacityExhausted(SLOT_UNAVAILABLE_DETAIL, {"slot_id": [SLOT_UNAVAILABLE_DETAIL]})


def _take_capacity(db: Session, slot_id: int) -> None:
    """Decrement available_count by one inside the caller's transaction.

    PostgreSQL waits for the slot row lock and keeps it for the rest of the
    transaction, so concurrent callers queue and each sees the count left by
    the previous one. ``lock_timeout`` bounds the wait. Other backends rely
    on a single guarded UPDATE, which the database evaluates atomically.
    """
    if _is_postgresql_session(db):
        db.execute(text(f"SET LOCAL lock_timeout = {int(settings.booking_lock_timeout_ms)}"))
        slot = db.scalar(select(BookingSlot).where(BookingSlot.id == slot_id).with_for_update())
        if slot is None:
            raise DataIntegrityViolation(SLOT_NOT_FOUND_DETAIL, {"slot_id": [SLOT_NOT_FOUND_DETAIL]})
        if slot.available_count <= 0:
            raise _slot_unavailable()
        slot.available_count -= 1
        slot.lock_version += 1
        db.flush()
        return

    slot_exists = db.scalar(select(BookingSlot.id).where(BookingSlot.id == slot_id))
    if not slot_exists:
        raise DataIntegrityViolation(SLOT_NOT_FOUND_DETAIL, {"slot_id": [SLOT_NOT_FOUND_DETAIL]})

    updated = db.execute(
        update(BookingSlot)
        .where(BookingSlot.id == slot_id, BookingSlot.available_count > 0)
        .values(
            available_count=BookingSlot.available_count - 1,
            lock_version=BookingSlot.lock_version + 1,
        )
    )
    if updated.rowcount != 1:
        raise _slot_unavailable()


def release_slot(db: Session, slot_id: int) -> bool:
    """Give one unit of capacity back, never exceeding the slot's capacity.

    Runs inside the caller's transaction; the caller commits.
    """
    updated = db.execute(
        update(BookingSlot)
        .where(BookingSlot.id == slot_id, BookingSlot.available_count < BookingSlot.capacity)
        .values(
            available_count=BookingSlot.available_count + 1,
            lock_version=BookingSlot.lock_version + 1,
        )
    )
    released = updated.rowcount == 1
    if not released:
        logger.warning("slot_release_skipped slot_id=%s reason=already_at_capacity", slot_id)
    return released


def _resolve_client(db: Session, details: ClientDetails) -> Client:
    email = details.email.lower()
    client = db.scalar(select(Client).where(Client.email == email))
    if client is None:
        client = Client(email=email)
        db.add(client)

    client.first_name = details.first_name
    client.last_name = details.last_name
    client.phone = details.phone
    client.language_preference = details.language_preference or "en"
    client.consent_version = details.consent_version
    db.flush()
    return client


def _consume_hold(db: Session, reservation_id: int, slot_id: int, now: datetime) -> None:
    hold = db.scalar(select(SlotReservation).where(SlotReservation.id == reservation_id))
    if hold is None or hold.slot_id != slot_id:
        raise ValidationFailure(
            "Reservation not found for this slot",
            {"reservation_id": ["Reservation not found for this slot"]},
        )
    if as_utc(hold.expires_at) <= now:
        raise ValidationFailure("Reservation has expired", {"reservation_id": ["Reservation has expired"]})

    # Whoever deletes the hold row owns its unit of capacity.
    deleted = db.execute(delete(SlotReservation).where(SlotReservation.id == reservation_id))
    if deleted.rowcount != 1:
        raise _slot_unavailable()


def reserve_slot(
    db: Session,
    slot_id: int,
    *,
    email: str | None = None,
    client: ClientDetails | None = None,
    caregiver_name: str | None = None,
    notes: str | None = None,
    created_by: int | None = None,
    created_via: str = "web",
    reservation_id: int | None = None,
    now: datetime | None = None,
    metrics: BookingMetrics = booking_metrics,
) -> Booking:
    current_time = now or datetime.now(UTC)
    if client is None and not email:
        raise ValidationFailure(
            "Either an email or client details are required",
            {"email": ["Either an email or client details are required"]},
        )

    try:
        client_row = _resolve_client(db, client) if client is not None else None

        if reservation_id is not None:
            _consume_hold(db, reservation_id=reservation_id, slot_id=slot_id, now=current_time)
        else:
            _take_capacity(db, slot_id)

        booking = Booking(
            uuid=str(uuid4()),
            slot_id=slot_id,
            client_id=client_row.id if client_row else None,
            guest_email=None if client_row else email.lower(),
            status=BookingStatus.PENDING.value,
            created_by=created_by,
            created_via=created_via,
            booking_metadata={"notes": notes, "caregiver_name": caregiver_name},
        )
        db.add(booking)
        db.flush()
        db.add(
            BookingStatusHistory(
                booking_id=booking.id,
                from_status=None,
                to_status=BookingStatus.PENDING.value,
                changed_by=created_by,
                changed_at=current_time,
            )
        )
        db.commit()
    except DomainError:
        db.rollback()
        raise
    except OperationalError as exc:
        db.rollback()
        if _is_pg_retryable(exc):
            raise ConcurrencyConflict(LOCK_CONFLICT_DETAIL) from None
        raise
    except IntegrityError:
        db.rollback()
        raise ConcurrencyConflict(LOCK_CONFLICT_DETAIL) from None

    db.refresh(booking)
    metrics.record_booking_created(booking.status)
    logger.info("booking_created booking_uuid=%s slot_id=%s via=%s", booking.uuid, slot_id, created_via)
    return booking


def place_hold(
    db: Session,
    slot_id: int,
    *,
    guest_email: str | None = None,
    client_id: int | None = None,
    user_id: int | None = None,
    expires_in: timedelta | None = None,
    now: datetime | None = None,
) -> SlotReservation:
    current_time = now or datetime.now(UTC)
    ttl = expires_in or timedelta(minutes=settings.reservation_hold_minutes)
    if guest_email is None and client_id is None and user_id is None:
        raise ValidationFailure("A hold needs a guest email, client or user", {"email": ["Email is required"]})

    try:
        _take_capacity(db, slot_id)
        hold = SlotReservation(
            slot_id=slot_id,
            guest_email=guest_email.lower() if guest_email else None,
            reserved_for_client_id=client_id,
            reserved_by_user_id=user_id,
            expires_at=current_time + ttl,
        )
        db.add(hold)
        db.commit()
    except DomainError:
        db.rollback()
        raise
    except OperationalError as exc:
        db.rollback()
        if _is_pg_retryable(exc):
            raise ConcurrencyConflict(LOCK_CONFLICT_DETAIL) from None
        raise
    except IntegrityError:
        db.rollback()
        raise ValidationFailure(HOLD_ALREADY_EXISTS_DETAIL, {"slot_id": [HOLD_ALREADY_EXISTS_DETAIL]}) from None

    db.refresh(hold)
    logger.info("slot_hold_placed reservation_id=%s slot_id=%s", hold.id, slot_id)
    return hold
