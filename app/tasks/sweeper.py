import logging
from datetime import UTC, datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.core.metrics import BookingMetrics, booking_metrics
from app.db.models import SlotReservation
from app.db.session import SessionLocal
from app.services.capacity_service import release_slot
from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _release_expired_reservation(db: Session, reservation_id: int, slot_id: int) -> bool:
    """Delete one hold and return its seat, as a single transaction.

    A concurrent sweeper or a booking that converted the hold may have
    deleted the row already; only the run whose DELETE matched releases.
    """
    try:
        deleted = db.execute(delete(SlotReservation).where(SlotReservation.id == reservation_id))
        if deleted.rowcount != 1:
            db.rollback()
            return False
        release_slot(db, slot_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return True


def sweep_expired_reservations(db: Session, now: datetime | None = None) -> int:
    current_time = now or datetime.now(UTC)

    expired = db.execute(
        select(SlotReservation.id, SlotReservation.slot_id)
        .where(SlotReservation.expires_at < current_time)
        .order_by(SlotReservation.id)
    ).all()

    released = 0
    for reservation_id, slot_id in expired:
        if _release_expired_reservation(db, reservation_id=reservation_id, slot_id=slot_id):
            released += 1

    return released


def run_reservation_sweeper(
    db: Session,
    now: datetime | None = None,
    metrics: BookingMetrics = booking_metrics,
) -> int:
    try:
        released = sweep_expired_reservations(db=db, now=now)
    except Exception as exc:
        metrics.record_sweeper_run("failure")
        logger.error("reservation_sweeper_failed message=%s", exc)
        raise

    metrics.record_sweeper_run("success", released=released)
    logger.info("reservation_sweeper_completed released=%s", released)
    return released


# No task-level retries: beat re-runs the sweep on its next tick.
@celery_app.task(name="reservations.sweep_expired")
def sweep_expired_reservations_task() -> dict[str, int]:
    db = SessionLocal()
    try:
        return {"released": run_reservation_sweeper(db=db)}
    finally:
        db.close()
