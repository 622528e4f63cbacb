import logging

from app.core.config import parse_backoff_schedule, settings
from app.db.session import SessionLocal
from app.services.media_service import ingest_media, transcode_media
from app.tasks.celery_app import celery_app
from app.tasks.reminders import retry_countdown

logger = logging.getLogger(__name__)

MEDIA_BACKOFF_SECONDS = parse_backoff_schedule(settings.media_retry_backoff_seconds)
MEDIA_MAX_RETRIES = max(settings.media_max_attempts - 1, 0)


@celery_app.task(name="media.ingest", bind=True, max_retries=MEDIA_MAX_RETRIES)
def ingest_media_task(self, media_id: int) -> dict[str, int | bool]:
    db = SessionLocal()
    try:
        scanned = ingest_media(db, media_id)
    except Exception as exc:
        raise self.retry(exc=exc, countdown=retry_countdown(MEDIA_BACKOFF_SECONDS, self.request.retries))
    finally:
        db.close()

    if scanned:
        transcode_media_task.apply_async(args=[media_id], queue=settings.media_queue)
    return {"media_id": media_id, "scanned": scanned}


@celery_app.task(name="media.transcode", bind=True, max_retries=MEDIA_MAX_RETRIES)
def transcode_media_task(self, media_id: int) -> dict[str, int | bool]:
    db = SessionLocal()
    try:
        conversions = transcode_media(db, media_id)
    except Exception as exc:
        raise self.retry(exc=exc, countdown=retry_countdown(MEDIA_BACKOFF_SECONDS, self.request.retries))
    finally:
        db.close()

    logger.info("media_transcode_task_done media_id=%s", media_id)
    return {"media_id": media_id, "ready": conversions is not None}


def enqueue_media_ingest(media_id: int) -> None:
    ingest_media_task.apply_async(args=[media_id], queue=settings.media_queue)
    logger.info("media_ingest_enqueued media_id=%s", media_id)
