"""Reminder delivery for booking notifications.

A notification row moves from ``pending`` through ``queued`` (handed to the
job runner) and ``sending`` (claimed by one worker) to exactly one of
``sent``, ``failed`` or ``skipped``. Both hand-offs are conditional updates,
so a row is delivered at most once however many tasks carry its id.
Delivery failures re-raise so the job runner can retry; every other outcome
is final.
"""

import logging
import smtplib
from datetime import UTC, datetime, time, timedelta
from email.message import EmailMessage
from typing import Any, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import ExternalServiceFailure
from app.core.metrics import NotificationMetrics, notification_metrics
from app.db.models import (
    Booking,
    BookingNotification,
    BookingSlot,
    BookingStatus,
    CaregiverProfile,
    NotificationChannel,
    NotificationStatus,
    User,
)

logger = logging.getLogger(__name__)

REMINDABLE_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)

REASON_MISSING_PROFILE_OR_BOOKING = "missing_profile_or_booking"
REASON_QUIET_HOURS = "quiet_hours"
REASON_SMS_OPT_OUT = "sms_opt_out"
REASON_MISSING_EMAIL = "missing_email"
REASON_EXCEPTION = "exception"


class ReminderChannel(Protocol):
    def send(self, recipient: User, booking: Booking, timezone: str) -> dict[str, Any] | None:
        ...


def parse_clock(value: str) -> time:
    hours, minutes = value.strip().split(":")
    return time(hour=int(hours), minute=int(minutes))


def is_in_quiet_hours(local_now: time, start: time, end: time) -> bool:
    """Half-open window ``[start, end)``; a window with start == end is disabled."""
    if start == end:
        return False
    if start < end:
        return start <= local_now < end
    return local_now >= start or local_now < end


def resolve_timezone(name: str | None, fallback: str = "UTC") -> ZoneInfo:
    try:
        return ZoneInfo(name or fallback)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown_timezone timezone=%s fallback=%s", name, fallback)
        return ZoneInfo(fallback)


def _slot_start_local(booking: Booking, zone: ZoneInfo) -> str:
    start_at = booking.slot.start_at
    if start_at.tzinfo is None:
        start_at = start_at.replace(tzinfo=UTC)
    return start_at.astimezone(zone).strftime("%b %d, %Y %I:%M %p")


def _service_name(booking: Booking) -> str:
    service = booking.slot.service if booking.slot else None
    return service.name if service else "Your visit"


class EmailChannel:
    def __init__(self, config: Settings = default_settings) -> None:
        self._config = config

    def send(self, recipient: User, booking: Booking, timezone: str) -> dict[str, Any] | None:
        config = self._config
        if not config.smtp_host:
            raise ExternalServiceFailure("smtp", "Email not configured")

        when = _slot_start_local(booking, resolve_timezone(timezone))
        message = EmailMessage()
        message["From"] = config.smtp_from_email
        message["To"] = recipient.email
        message["Subject"] = f"Reminder: Upcoming Visit on {when}"
        message.set_content(
            f"Hello {recipient.full_name or ''},\n\n"
            f"This is a reminder for {_service_name(booking)} on {when} ({timezone}).\n"
            f"Booking reference: {booking.uuid}\n"
        )

        try:
            with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=config.smtp_timeout_seconds) as server:
                if config.smtp_use_tls:
                    server.starttls()
                if config.smtp_username and config.smtp_password:
                    server.login(config.smtp_username, config.smtp_password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise ExternalServiceFailure("smtp", str(exc)) from exc
        return None


class SmsChannel:
    def __init__(self, config: Settings = default_settings, client: httpx.Client | None = None) -> None:
        self._config = config
        self._client = client

    def send(self, recipient: User, booking: Booking, timezone: str) -> dict[str, Any] | None:
        config = self._config
        when = _slot_start_local(booking, resolve_timezone(timezone))
        payload = {
            "api_key": config.vonage_api_key,
            "api_secret": config.vonage_api_secret,
            "from": config.vonage_sms_from,
            "to": recipient.phone,
            "text": f"Reminder: {_service_name(booking)} on {when}. Reply HELP for assistance.",
            "type": "unicode",
        }
        client = self._client or httpx.Client(timeout=config.vonage_timeout_seconds)
        try:
            response = client.post(config.vonage_api_url, data=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise ExternalServiceFailure("sms", str(exc)) from exc
        finally:
            if self._client is None:
                client.close()

        messages = body.get("messages") or [{}]
        first = messages[0]
        if first.get("status") != "0":
            raise ExternalServiceFailure("sms", first.get("error-text") or "SMS provider rejected the message")
        return {"provider_message_id": first.get("message-id")}


def build_channels(config: Settings = default_settings) -> dict[str, ReminderChannel]:
    return {
        NotificationChannel.EMAIL.value: EmailChannel(config),
        NotificationChannel.SMS.value: SmsChannel(config),
    }


def _profile_channels(profile: CaregiverProfile) -> list[str]:
    channels = [NotificationChannel.EMAIL.value]
    if profile.preferred_contact_method == NotificationChannel.SMS.value:
        channels.append(NotificationChannel.SMS.value)
    return channels


def schedule_booking_reminders(
    db: Session,
    now: datetime | None = None,
    config: Settings = default_settings,
    metrics: NotificationMetrics = notification_metrics,
) -> int:
    current_time = now or datetime.now(UTC)
    profiles = db.scalars(select(CaregiverProfile).where(CaregiverProfile.client_id.is_not(None))).all()

    scheduled = 0
    for profile in profiles:
        window_end = current_time + timedelta(hours=profile.reminder_window_hours(config.reminder_default_window_hours))
        bookings = db.scalars(
            select(Booking)
            .join(BookingSlot, Booking.slot_id == BookingSlot.id)
            .where(
                Booking.client_id == profile.client_id,
                Booking.status.in_(REMINDABLE_STATUSES),
                BookingSlot.start_at > current_time,
                BookingSlot.start_at <= window_end,
            )
        ).all()
        if not bookings:
            continue

        existing = set(
            db.execute(
                select(BookingNotification.booking_id, BookingNotification.channel).where(
                    BookingNotification.caregiver_profile_id == profile.id,
                    BookingNotification.booking_id.in_([booking.id for booking in bookings]),
                )
            ).all()
        )
        created: list[str] = []
        for booking in bookings:
            for channel in _profile_channels(profile):
                if (booking.id, channel) in existing:
                    continue
                db.add(
                    BookingNotification(
                        booking_id=booking.id,
                        caregiver_profile_id=profile.id,
                        channel=channel,
                        status=NotificationStatus.PENDING.value,
                        scheduled_for=current_time,
                    )
                )
                created.append(channel)

        try:
            db.commit()
        except IntegrityError:
            # A concurrent scheduler run inserted the same rows first.
            db.rollback()
            logger.info("booking_reminders_already_scheduled caregiver_profile_id=%s", profile.id)
            continue

        for channel in created:
            metrics.record_scheduled(channel)
        scheduled += len(created)

    logger.info("booking_reminders_scheduled count=%s", scheduled)
    return scheduled


def _queueable(current_time: datetime, config: Settings):
    # A queued row whose task never ran is handed out again after the requeue window.
    stale_before = current_time - timedelta(minutes=config.reminder_requeue_after_minutes)
    return or_(
        BookingNotification.status == NotificationStatus.PENDING.value,
        and_(
            BookingNotification.status == NotificationStatus.QUEUED.value,
            BookingNotification.claimed_at < stale_before,
        ),
    )


def due_notification_ids(
    db: Session,
    now: datetime | None = None,
    limit: int = 500,
    config: Settings = default_settings,
) -> list[int]:
    current_time = now or datetime.now(UTC)
    return list(
        db.scalars(
            select(BookingNotification.id)
            .where(_queueable(current_time, config), BookingNotification.scheduled_for <= current_time)
            .order_by(BookingNotification.scheduled_for, BookingNotification.id)
            .limit(limit)
        )
    )


def claim_due_notifications(
    db: Session,
    now: datetime | None = None,
    limit: int = 500,
    config: Settings = default_settings,
) -> list[int]:
    """Move due rows to ``queued`` and return the ids this call claimed.

    Each row is claimed with a conditional UPDATE, so overlapping dispatcher
    runs never hand out the same notification twice.
    """
    current_time = now or datetime.now(UTC)
    claimed: list[int] = []
    for notification_id in due_notification_ids(db, now=current_time, limit=limit, config=config):
        result = db.execute(
            update(BookingNotification)
            .where(BookingNotification.id == notification_id, _queueable(current_time, config))
            .values(status=NotificationStatus.QUEUED.value, claimed_at=current_time)
        )
        if result.rowcount == 1:
            claimed.append(notification_id)
    db.commit()
    return claimed


def _may_process(notification: BookingNotification, retrying: bool) -> bool:
    if notification.status in (NotificationStatus.PENDING.value, NotificationStatus.QUEUED.value):
        return True
    # A job-runner retry may reopen a row whose last delivery attempt raised.
    return (
        retrying
        and notification.status == NotificationStatus.FAILED.value
        and notification.reason == REASON_EXCEPTION
    )


def _claim_for_delivery(db: Session, notification: BookingNotification, now: datetime) -> bool:
    observed_status = notification.status
    result = db.execute(
        update(BookingNotification)
        .where(BookingNotification.id == notification.id, BookingNotification.status == observed_status)
        .values(status=NotificationStatus.SENDING.value, claimed_at=now)
    )
    db.commit()
    return result.rowcount == 1


def dispatch_notification(
    db: Session,
    notification_id: int,
    channels: dict[str, ReminderChannel] | None = None,
    *,
    now: datetime | None = None,
    retrying: bool = False,
    config: Settings = default_settings,
    metrics: NotificationMetrics = notification_metrics,
) -> str | None:
    notification = db.get(BookingNotification, notification_id)
    if notification is None:
        logger.warning("booking_notification_missing id=%s", notification_id)
        return None

    if not _may_process(notification, retrying):
        logger.info("booking_notification_not_dispatchable id=%s status=%s", notification.id, notification.status)
        return notification.status

    current_time = now or datetime.now(UTC)
    if not _claim_for_delivery(db, notification, current_time):
        logger.info("booking_notification_claimed_elsewhere id=%s", notification_id)
        return None

    channel = notification.channel
    profile: CaregiverProfile | None = notification.caregiver_profile
    booking: Booking | None = notification.booking

    if profile is None or booking is None:
        notification.mark_failed(REASON_MISSING_PROFILE_OR_BOOKING)
        db.commit()
        metrics.record_failed(channel)
        logger.warning("booking_notification_failed id=%s reason=%s", notification.id, REASON_MISSING_PROFILE_OR_BOOKING)
        return notification.status

    user = profile.user
    timezone = profile.timezone or config.app_timezone
    local_now = current_time.astimezone(resolve_timezone(timezone, config.app_timezone)).time()
    quiet_start = parse_clock(config.reminder_quiet_hours_start)
    quiet_end = parse_clock(config.reminder_quiet_hours_end)

    skip_reason = None
    if is_in_quiet_hours(local_now, quiet_start, quiet_end):
        skip_reason = REASON_QUIET_HOURS
    elif channel == NotificationChannel.SMS.value and (not profile.sms_opt_in or not (user and user.phone)):
        skip_reason = REASON_SMS_OPT_OUT
    elif channel == NotificationChannel.EMAIL.value and not (user and user.email):
        skip_reason = REASON_MISSING_EMAIL

    if skip_reason:
        notification.mark_skipped(skip_reason)
        db.commit()
        metrics.record_skipped(channel)
        logger.info("booking_notification_skipped id=%s channel=%s reason=%s", notification.id, channel, skip_reason)
        return notification.status

    if config.reminder_simulate_delivery:
        notification.mark_sent({"simulated": True})
        db.commit()
        metrics.record_sent(channel)
        return notification.status

    attempts = int((notification.meta or {}).get("attempts", 0)) + 1
    sender = (channels or build_channels(config))[channel]
    try:
        delivery_meta = sender.send(user, booking, timezone)
    except Exception as exc:
        notification.mark_failed(REASON_EXCEPTION, {"message": str(exc), "attempts": attempts})
        db.commit()
        metrics.record_failed(channel)
        logger.error(
            "booking_reminder_failed id=%s channel=%s attempts=%s message=%s",
            notification.id,
            channel,
            attempts,
            exc,
        )
        raise

    notification.mark_sent({**(delivery_meta or {}), "attempts": attempts, "reason": None})
    db.commit()
    metrics.record_sent(channel)
    logger.info("booking_reminder_sent id=%s channel=%s attempts=%s", notification.id, channel, attempts)
    return notification.status
