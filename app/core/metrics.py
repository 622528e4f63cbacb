"""Prometheus metrics shared by the API and the Celery workers.

Workers and web processes are separate, so production runs every process
with ``PROMETHEUS_MULTIPROC_DIR`` pointing at one shared directory. Each
process then writes its samples there and ``/metrics`` aggregates them.
Without the variable the default in-process registry is served.
"""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    multiprocess,
)

BOOKING_STATUSES = ("pending", "confirmed", "attended", "cancelled", "no_show", "archived")
NOTIFICATION_CHANNELS = ("email", "sms")
SWEEPER_RESULTS = ("success", "failure")

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
)

BOOKINGS_CREATED = Counter(
    "elderly_bookings_created_total",
    "Total number of booking requests created.",
)

BOOKING_STATUS = Gauge(
    "elderly_booking_status",
    "Bookings currently recorded per status.",
    ["status"],
    multiprocess_mode="sum",
)

BOOKING_STATUS_TRANSITIONS = Counter(
    "elderly_booking_status_transition_total",
    "Total booking status transitions.",
    ["from", "to"],
)

RESERVATION_SWEEPER_RUNS = Counter(
    "elderly_reservation_sweeper_total",
    "Reservation sweeper job executions.",
    ["result"],
)

RESERVATIONS_RELEASED = Counter(
    "elderly_reservations_released_total",
    "Expired slot reservations released by the sweeper.",
)

MEDIA_INGEST = Counter(
    "elderly_media_ingest_total",
    "Total number of media items queued for ingestion.",
)

MEDIA_TRANSCODE_STARTED = Counter(
    "elderly_media_transcode_started_total",
    "Media transcode jobs started.",
)

MEDIA_TRANSCODE_SUCCESS = Counter(
    "elderly_media_transcode_success_total",
    "Media transcode jobs completed successfully.",
)

MEDIA_TRANSCODE_FAILURE = Counter(
    "elderly_media_transcode_failure_total",
    "Media transcode jobs that failed.",
)

MEDIA_VIRUS_SCAN_FAILURE = Counter(
    "elderly_media_virus_scan_failure_total",
    "Media items that failed virus scanning.",
)

MEDIA_CONVERSION_BACKLOG = Gauge(
    "elderly_media_conversion_backlog",
    "Media items currently pending conversion.",
    multiprocess_mode="sum",
)

NOTIFICATIONS_SCHEDULED = Counter(
    "elderly_notifications_scheduled_total",
    "Notifications scheduled for delivery.",
    ["channel"],
)

NOTIFICATIONS_SENT = Counter(
    "elderly_notifications_sent_total",
    "Notifications successfully delivered.",
    ["channel"],
)

NOTIFICATIONS_FAILED = Counter(
    "elderly_notifications_failed_total",
    "Notifications that failed delivery.",
    ["channel"],
)

NOTIFICATIONS_SKIPPED = Counter(
    "elderly_notifications_skipped_total",
    "Notifications skipped due to preferences or quiet hours.",
    ["channel"],
)

# Pre-create every labelled series so a scrape always sees zeroes.
for _status in BOOKING_STATUSES:
    BOOKING_STATUS.labels(_status)
    for _to in BOOKING_STATUSES:
        if _status != _to:
            BOOKING_STATUS_TRANSITIONS.labels(_status, _to)
for _result in SWEEPER_RESULTS:
    RESERVATION_SWEEPER_RUNS.labels(_result)
for _channel in NOTIFICATION_CHANNELS:
    for _family in (NOTIFICATIONS_SCHEDULED, NOTIFICATIONS_SENT, NOTIFICATIONS_FAILED, NOTIFICATIONS_SKIPPED):
        _family.labels(_channel)


class BookingMetrics:
    def record_booking_created(self, status: str = "pending") -> None:
        BOOKINGS_CREATED.inc()
        BOOKING_STATUS.labels(status).inc()

    def record_status_change(self, from_status: str, to_status: str) -> None:
        BOOKING_STATUS_TRANSITIONS.labels(from_status, to_status).inc()
        BOOKING_STATUS.labels(from_status).dec()
        BOOKING_STATUS.labels(to_status).inc()

    def record_sweeper_run(self, result: str, released: int = 0) -> None:
        RESERVATION_SWEEPER_RUNS.labels(result).inc()
        if released:
            RESERVATIONS_RELEASED.inc(released)


class MediaMetrics:
    """The backlog gauge counts items in ``processing``; callers pair enter and leave."""

    def record_ingest_queued(self) -> None:
        MEDIA_INGEST.inc()

    def record_backlog_entered(self) -> None:
        MEDIA_CONVERSION_BACKLOG.inc()

    def record_backlog_left(self) -> None:
        MEDIA_CONVERSION_BACKLOG.dec()

    def record_transcode_start(self) -> None:
        MEDIA_TRANSCODE_STARTED.inc()

    def record_transcode_success(self) -> None:
        MEDIA_TRANSCODE_SUCCESS.inc()

    def record_transcode_failure(self) -> None:
        MEDIA_TRANSCODE_FAILURE.inc()

    def record_virus_scan_failure(self) -> None:
        MEDIA_VIRUS_SCAN_FAILURE.inc()


class NotificationMetrics:
    def record_scheduled(self, channel: str) -> None:
        NOTIFICATIONS_SCHEDULED.labels(channel).inc()

    def record_sent(self, channel: str) -> None:
        NOTIFICATIONS_SENT.labels(channel).inc()

    def record_failed(self, channel: str) -> None:
        NOTIFICATIONS_FAILED.labels(channel).inc()

    def record_skipped(self, channel: str) -> None:
        NOTIFICATIONS_SKIPPED.labels(channel).inc()


booking_metrics = BookingMetrics()
media_metrics = MediaMetrics()
notification_metrics = NotificationMetrics()


def render_metrics(multiprocess_dir: str | None = None) -> tuple[bytes, str]:
    path = multiprocess_dir or os.environ.get("PROMETHEUS_MULTIPROC_DIR")
    if not path:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST

    registry = CollectorRegistry()
    multiprocess.MultiProcessCollector(registry, path=path)
    return generate_latest(registry), CONTENT_TYPE_LATEST
