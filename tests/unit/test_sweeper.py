from datetime import UTC, datetime, timedelta

import pytest
from prometheus_client import REGISTRY

from app.db.models import BookingSlot, SlotReservation
from app.services.capacity_service import place_hold
from app.tasks import sweeper
from app.tasks.sweeper import run_reservation_sweeper, sweep_expired_reservations


def _sweeper_runs(result: str) -> float:
    return REGISTRY.get_sample_value("elderly_reservation_sweeper_total", {"result": result}) or 0.0


def test_sweeper_releases_only_expired_holds(db_session, slot_factory):
    slot = slot_factory(capacity=3)
    now = datetime.now(UTC)
    place_hold(db_session, slot.id, guest_email="old@example.com", expires_in=timedelta(minutes=1), now=now)
    place_hold(db_session, slot.id, guest_email="fresh@example.com", expires_in=timedelta(hours=1), now=now)

    released = sweep_expired_reservations(db_session, now=now + timedelta(minutes=10))

    remaining = db_session.query(SlotReservation).all()
    assert released == 1
    assert [hold.guest_email for hold in remaining] == ["fresh@example.com"]
    assert db_session.get(BookingSlot, slot.id).available_count == 2


def test_sweeper_is_idempotent(db_session, slot_factory):
    slot = slot_factory(capacity=1)
    now = datetime.now(UTC)
    place_hold(db_session, slot.id, guest_email="gone@example.com", expires_in=timedelta(minutes=1), now=now)
    later = now + timedelta(minutes=5)

    first = sweep_expired_reservations(db_session, now=later)
    second = sweep_expired_reservations(db_session, now=later)

    assert (first, second) == (1, 0)
    assert db_session.get(BookingSlot, slot.id).available_count == 1


def test_run_reservation_sweeper_records_success(db_session, slot_factory):
    slot = slot_factory(capacity=1)
    now = datetime.now(UTC)
    place_hold(db_session, slot.id, guest_email="metric@example.com", expires_in=timedelta(minutes=1), now=now)
    released_before = REGISTRY.get_sample_value("elderly_reservations_released_total") or 0.0
    success_before = _sweeper_runs("success")

    released = run_reservation_sweeper(db_session, now=now + timedelta(minutes=2))

    assert released == 1
    assert _sweeper_runs("success") == success_before + 1
    assert REGISTRY.get_sample_value("elderly_reservations_released_total") == released_before + 1


def test_run_reservation_sweeper_records_failure_and_reraises(db_session, monkeypatch):
    def broken_sweep(db, now=None):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(sweeper, "sweep_expired_reservations", broken_sweep)
    failure_before = _sweeper_runs("failure")

    with pytest.raises(RuntimeError):
        run_reservation_sweeper(db_session)

    assert _sweeper_runs("failure") == failure_before + 1
