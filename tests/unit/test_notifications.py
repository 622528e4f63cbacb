from datetime import UTC, datetime, time, timedelta

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.core.exceptions import ExternalServiceFailure
from app.db.models import BookingNotification, NotificationStatus, UserRole
from app.schemas.booking import ClientDetails
from app.services.capacity_service import as_utc, reserve_slot
from app.services.notification_service import (
    REASON_EXCEPTION,
    REASON_MISSING_PROFILE_OR_BOOKING,
    REASON_QUIET_HOURS,
    REASON_SMS_OPT_OUT,
    claim_due_notifications,
    dispatch_notification,
    due_notification_ids,
    is_in_quiet_hours,
    schedule_booking_reminders,
)

NOON = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
LATE_EVENING = datetime(2026, 10, 19, 22, 30, tzinfo=UTC)


def _counter(name: str, channel: str) -> float:
    return REGISTRY.get_sample_value(f"elderly_notifications_{name}_total", {"channel": channel}) or 0.0


class RecordingChannel:
    def __init__(self, error: Exception | None = None, before_send=None) -> None:
        self.error = error
        self.before_send = before_send
        self.calls = []

    def send(self, recipient, booking, timezone):
        if self.before_send is not None:
            self.before_send()
        self.calls.append((recipient.email, booking.uuid, timezone))
        if self.error is not None:
            raise self.error
        return {"provider_message_id": "msg-1"}


@pytest.fixture()
def caregiver_booking(db_session, slot_factory, user_factory):
    def make(channel: str = "email", **caregiver_kwargs):
        caregiver = user_factory("carer@example.com", UserRole.CAREGIVER, client_email="ada@example.com", **caregiver_kwargs)
        slot = slot_factory(capacity=2, start_at=NOON + timedelta(hours=6))
        booking = reserve_slot(db_session, slot.id, client=ClientDetails(email="ada@example.com"))
        notification = BookingNotification(
            booking_id=booking.id,
            caregiver_profile_id=caregiver.caregiver_profile.id,
            channel=channel,
            status=NotificationStatus.PENDING.value,
            scheduled_for=NOON,
        )
        db_session.add(notification)
        db_session.commit()
        return notification

    return make


@pytest.mark.parametrize(
    ("now", "start", "end", "expected"),
    [
        (time(22, 0), time(21, 0), time(8, 0), True),
        (time(3, 0), time(21, 0), time(8, 0), True),
        (time(21, 0), time(21, 0), time(8, 0), True),
        (time(8, 0), time(21, 0), time(8, 0), False),
        (time(12, 0), time(21, 0), time(8, 0), False),
        (time(13, 0), time(12, 0), time(14, 0), True),
        (time(14, 0), time(12, 0), time(14, 0), False),
        (time(11, 59), time(12, 0), time(14, 0), False),
        (time(9, 0), time(9, 0), time(9, 0), False),
    ],
)
def test_is_in_quiet_hours(now, start, end, expected):
    assert is_in_quiet_hours(now, start, end) is expected


def test_sms_opt_out_is_skipped_and_counted(db_session, caregiver_booking):
    notification = caregiver_booking(channel="sms", phone="+15550001111", sms_opt_in=False)
    channel = RecordingChannel()
    skipped_before = _counter("skipped", "sms")

    status = dispatch_notification(db_session, notification.id, {"sms": channel}, now=NOON)

    db_session.refresh(notification)
    assert status == NotificationStatus.SKIPPED.value
    assert notification.reason == REASON_SMS_OPT_OUT
    assert channel.calls == []
    assert _counter("skipped", "sms") == skipped_before + 1


def test_quiet_hours_use_caregiver_timezone(db_session, caregiver_booking):
    notification = caregiver_booking(channel="email", timezone="Asia/Tokyo")
    channel = RecordingChannel()

    # 12:00 UTC is 21:00 in Tokyo.
    dispatch_notification(db_session, notification.id, {"email": channel}, now=NOON)

    db_session.refresh(notification)
    assert notification.status == NotificationStatus.SKIPPED.value
    assert notification.reason == REASON_QUIET_HOURS
    assert channel.calls == []


def test_email_delivery_marks_sent(db_session, caregiver_booking):
    notification = caregiver_booking(channel="email")
    channel = RecordingChannel()
    sent_before = _counter("sent", "email")

    status = dispatch_notification(db_session, notification.id, {"email": channel}, now=NOON)

    db_session.refresh(notification)
    assert status == NotificationStatus.SENT.value
    assert notification.meta["provider_message_id"] == "msg-1"
    assert notification.meta["attempts"] == 1
    assert channel.calls == [("carer@example.com", notification.booking.uuid, "UTC")]
    assert _counter("sent", "email") == sent_before + 1


def test_delivery_during_quiet_hours_in_utc_is_skipped(db_session, caregiver_booking):
    notification = caregiver_booking(channel="email")

    dispatch_notification(db_session, notification.id, {"email": RecordingChannel()}, now=LATE_EVENING)

    db_session.refresh(notification)
    assert notification.reason == REASON_QUIET_HOURS


def test_missing_booking_fails_without_delivery(db_session, caregiver_booking):
    notification = caregiver_booking(channel="email")
    notification.booking_id = None
    db_session.commit()
    failed_before = _counter("failed", "email")

    dispatch_notification(db_session, notification.id, {"email": RecordingChannel()}, now=NOON)

    db_session.refresh(notification)
    assert notification.status == NotificationStatus.FAILED.value
    assert notification.reason == REASON_MISSING_PROFILE_OR_BOOKING
    assert _counter("failed", "email") == failed_before + 1


def test_delivery_exception_marks_failed_and_reraises(db_session, caregiver_booking):
    notification = caregiver_booking(channel="email")
    channel = RecordingChannel(error=ExternalServiceFailure("smtp", "connection refused"))

    with pytest.raises(ExternalServiceFailure):
        dispatch_notification(db_session, notification.id, {"email": channel}, now=NOON)

    db_session.refresh(notification)
    assert notification.status == NotificationStatus.FAILED.value
    assert notification.reason == REASON_EXCEPTION
    assert notification.meta["message"] == "connection refused"
    assert notification.meta["attempts"] == 1


def test_terminal_notification_is_not_reprocessed(db_session, caregiver_booking):
    notification = caregiver_booking(channel="email")
    channel = RecordingChannel(error=ExternalServiceFailure("smtp", "down"))
    with pytest.raises(ExternalServiceFailure):
        dispatch_notification(db_session, notification.id, {"email": channel}, now=NOON)

    status = dispatch_notification(db_session, notification.id, {"email": channel}, now=NOON)

    assert status == NotificationStatus.FAILED.value
    assert len(channel.calls) == 1


def test_retry_reopens_notification_failed_by_exception(db_session, caregiver_booking):
    notification = caregiver_booking(channel="email")
    with pytest.raises(ExternalServiceFailure):
        dispatch_notification(
            db_session,
            notification.id,
            {"email": RecordingChannel(error=ExternalServiceFailure("smtp", "down"))},
            now=NOON,
        )

    status = dispatch_notification(
        db_session,
        notification.id,
        {"email": RecordingChannel()},
        now=NOON,
        retrying=True,
    )

    db_session.refresh(notification)
    assert status == NotificationStatus.SENT.value
    assert notification.meta["attempts"] == 2


def test_simulated_delivery_skips_channels(db_session, caregiver_booking):
    notification = caregiver_booking(channel="email")
    channel = RecordingChannel()
    config = settings.model_copy(update={"reminder_simulate_delivery": True})

    dispatch_notification(db_session, notification.id, {"email": channel}, now=NOON, config=config)

    db_session.refresh(notification)
    assert notification.status == NotificationStatus.SENT.value
    assert notification.meta == {"simulated": True}
    assert channel.calls == []


def test_schedule_booking_reminders_creates_rows_once(db_session, slot_factory, user_factory):
    user_factory(
        "sms-carer@example.com",
        UserRole.CAREGIVER,
        phone="+15550002222",
        sms_opt_in=True,
        preferred_contact_method="sms",
        client_email="bob@example.com",
    )
    soon = slot_factory(capacity=2, start_at=NOON + timedelta(hours=3))
    later = slot_factory(capacity=2, start_at=NOON + timedelta(days=3))
    reserve_slot(db_session, soon.id, client=ClientDetails(email="bob@example.com"))
    reserve_slot(db_session, later.id, client=ClientDetails(email="bob@example.com"))
    scheduled_before = _counter("scheduled", "sms")

    first = schedule_booking_reminders(db_session, now=NOON)
    second = schedule_booking_reminders(db_session, now=NOON)

    rows = db_session.query(BookingNotification).all()
    assert first == 2
    assert second == 0
    assert sorted(row.channel for row in rows) == ["email", "sms"]
    assert _counter("scheduled", "sms") == scheduled_before + 1
    assert sorted(due_notification_ids(db_session, now=NOON)) == sorted(row.id for row in rows)


def test_claim_due_notifications_hands_each_row_out_once(db_session, caregiver_booking):
    notification = caregiver_booking(channel="email")

    first = claim_due_notifications(db_session, now=NOON)
    second = claim_due_notifications(db_session, now=NOON + timedelta(minutes=1))

    db_session.refresh(notification)
    assert first == [notification.id]
    assert second == []
    assert notification.status == NotificationStatus.QUEUED.value
    assert as_utc(notification.claimed_at) == NOON


def test_stale_queued_notification_is_claimed_again(db_session, caregiver_booking):
    notification = caregiver_booking(channel="email")
    claim_due_notifications(db_session, now=NOON)
    window = timedelta(minutes=settings.reminder_requeue_after_minutes)

    assert claim_due_notifications(db_session, now=NOON + window - timedelta(seconds=1)) == []
    assert claim_due_notifications(db_session, now=NOON + window + timedelta(seconds=1)) == [notification.id]


def test_queued_notification_is_delivered(db_session, caregiver_booking):
    notification = caregiver_booking(channel="email")
    claim_due_notifications(db_session, now=NOON)
    channel = RecordingChannel()

    status = dispatch_notification(db_session, notification.id, {"email": channel}, now=NOON)

    assert status == NotificationStatus.SENT.value
    assert len(channel.calls) == 1


def test_notification_left_in_sending_is_not_resent(db_session, caregiver_booking):
    notification = caregiver_booking(channel="email")
    notification.status = NotificationStatus.SENDING.value
    db_session.commit()
    channel = RecordingChannel()

    status = dispatch_notification(db_session, notification.id, {"email": channel}, now=NOON)

    assert status == NotificationStatus.SENDING.value
    assert channel.calls == []
    assert claim_due_notifications(db_session, now=NOON + timedelta(days=1)) == []


def test_overlapping_dispatches_of_one_row_send_once(db_session, caregiver_booking):
    notification = caregiver_booking(channel="email")
    other_session = sessionmaker(bind=db_session.get_bind(), autocommit=False, autoflush=False)()
    # Loaded before either dispatch runs, so the rival still sees the row as pending.
    stale_copy = other_session.get(BookingNotification, notification.id)
    assert stale_copy.status == NotificationStatus.PENDING.value
    rival_results = []
    channel = RecordingChannel(
        before_send=lambda: rival_results.append(
            dispatch_notification(other_session, notification.id, {"email": channel}, now=NOON)
        )
    )
    sent_before = _counter("sent", "email")

    try:
        status = dispatch_notification(db_session, notification.id, {"email": channel}, now=NOON)
    finally:
        other_session.close()

    db_session.refresh(notification)
    assert status == NotificationStatus.SENT.value
    assert rival_results == [None]
    assert len(channel.calls) == 1
    assert notification.status == NotificationStatus.SENT.value
    assert _counter("sent", "email") == sent_before + 1
