from datetime import timedelta
import os

from celery import Celery, Task, signals

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.request_context import request_id_ctx_var

broker_url = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
result_backend = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1")

celery_app = Celery(
    "daycare",
    broker=broker_url,
    backend=result_backend,
    include=["app.tasks.sweeper", "app.tasks.reminders", "app.tasks.media"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_routes={
        "reminders.send": {"queue": settings.notifications_queue},
        "media.*": {"queue": settings.media_queue},
    },
    beat_schedule={
        "sweep-expired-reservations": {
            "task": "reservations.sweep_expired",
            "schedule": timedelta(minutes=settings.celery_sweeper_interval_minutes),
        },
        "schedule-booking-reminders": {
            "task": "reminders.schedule",
            "schedule": timedelta(minutes=settings.celery_reminder_schedule_interval_minutes),
        },
        "dispatch-due-reminders": {
            "task": "reminders.dispatch_due",
            "schedule": timedelta(minutes=settings.celery_reminder_dispatch_interval_minutes),
        },
    },
)


@signals.setup_logging.connect
def configure_worker_logging(**_: object) -> None:
    setup_logging()


@signals.task_prerun.connect
def bind_task_id(task_id: str | None = None, task: Task | None = None, **_: object) -> None:
    if task is not None:
        task.request.request_id_token = request_id_ctx_var.set(task_id or "-")


@signals.task_postrun.connect
def unbind_task_id(task: Task | None = None, **_: object) -> None:
    token = getattr(task.request, "request_id_token", None) if task is not None else None
    if token is not None:
        request_id_ctx_var.reset(token)
