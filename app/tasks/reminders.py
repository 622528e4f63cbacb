import logging

from app.core.config import parse_backoff_schedule, settings
from app.db.session import SessionLocal
from app.services.notification_service import (
    claim_due_notifications,
    dispatch_notification,
    schedule_booking_reminders,
)
from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

REMINDER_BACKOFF_SECONDS = parse_backoff_schedule(settings.reminder_retry_backoff_seconds)


def retry_countdown(schedule: list[int], retries: int) -> int:
    if not schedule:
        return 0
    return schedule[min(retries, len(schedule) - 1)]


@celery_app.task(name="reminders.schedule")
def schedule_booking_reminders_task() -> dict[str, int]:
    db = SessionLocal()
    try:
        return {"scheduled": schedule_booking_reminders(db=db)}
    finally:
        db.close()


@celery_app.task(name="reminders.dispatch_due")
def dispatch_due_reminders_task() -> dict[str, int]:
    db = SessionLocal()
    try:
        notification_ids = claim_due_notifications(db=db)
    finally:
        db.close()

    for notification_id in notification_ids:
        send_booking_reminder_task.apply_async(args=[notification_id], queue=settings.notifications_queue)
    return {"enqueued": len(notification_ids)}


@celery_app.task(
    name="reminders.send",
    bind=True,
    max_retries=max(settings.reminder_max_attempts - 1, 0),
)
def send_booking_reminder_task(self, notification_id: int) -> str | None:
    db = SessionLocal()
    try:
        return dispatch_notification(db, notification_id, retrying=self.request.retries > 0)
    except Exception as exc:
        countdown = retry_countdown(REMINDER_BACKOFF_SECONDS, self.request.retries)
        logger.warning(
            "booking_reminder_retry notification_id=%s retries=%s countdown=%s",
            notification_id,
            self.request.retries,
            countdown,
        )
        raise self.retry(exc=exc, countdown=countdown)
    finally:
        db.close()
