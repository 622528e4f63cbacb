import os
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.core.exceptions import CapacityExhausted, ConcurrencyConflict
from app.db.base import Base
from app.db.models import Booking, BookingSlot, BookingStatus, Facility, Service
from app.services.capacity_service import LOCK_CONFLICT_DETAIL, reserve_slot

TEST_POSTGRES_DATABASE_URL = os.getenv("TEST_POSTGRES_DATABASE_URL")


@pytest.fixture()
def postgres_session_factory():
    if not TEST_POSTGRES_DATABASE_URL:
        pytest.skip("TEST_POSTGRES_DATABASE_URL is not set")

    engine = create_engine(TEST_POSTGRES_DATABASE_URL, pool_pre_ping=True)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


def _seed_slot(SessionLocal, capacity: int) -> int:
    seed_session = SessionLocal()
    facility = Facility(name="PG Day Centre", address={"street": "5 Lock Street"})
    seed_session.add(facility)
    seed_session.flush()
    service = Service(facility_id=facility.id, name="PG Club")
    seed_session.add(service)
    seed_session.flush()
    start = datetime.now(UTC) + timedelta(hours=1)
    slot = BookingSlot(
        service_id=service.id,
        facility_id=facility.id,
        start_at=start,
        end_at=start + timedelta(hours=2),
        capacity=capacity,
        available_count=capacity,
    )
    seed_session.add(slot)
    seed_session.commit()
    slot_id = slot.id
    seed_session.close()
    return slot_id


def _reserve_in_new_session(SessionLocal, slot_id: int, email: str) -> Booking:
    session = SessionLocal()
    try:
        return reserve_slot(session, slot_id, email=email)
    finally:
        session.close()


def _slot_state(SessionLocal, slot_id: int) -> tuple[int, int, int]:
    session = SessionLocal()
    try:
        slot = session.scalar(select(BookingSlot).where(BookingSlot.id == slot_id))
        return session.query(Booking).count(), slot.available_count, slot.lock_version
    finally:
        session.close()


@pytest.mark.postgres
def test_contended_reservation_waits_for_lock_and_takes_remaining_seat(postgres_session_factory):
    slot_id = _seed_slot(postgres_session_factory, capacity=2)

    lock_holder = postgres_session_factory()
    with ThreadPoolExecutor(max_workers=1) as pool:
        try:
            lock_holder.scalar(select(BookingSlot).where(BookingSlot.id == slot_id).with_for_update())
            pending = pool.submit(_reserve_in_new_session, postgres_session_factory, slot_id, "pg-waiter@example.com")
            time.sleep(0.3)
            assert not pending.done()
        finally:
            lock_holder.rollback()
            lock_holder.close()

        booking = pending.result(timeout=10)

    assert booking.status == BookingStatus.PENDING.value
    assert _slot_state(postgres_session_factory, slot_id) == (1, 1, 1)


@pytest.mark.postgres
def test_waiter_for_last_seat_gets_capacity_exhausted(postgres_session_factory):
    slot_id = _seed_slot(postgres_session_factory, capacity=1)

    lock_holder = postgres_session_factory()
    with ThreadPoolExecutor(max_workers=1) as pool:
        try:
            slot = lock_holder.scalar(select(BookingSlot).where(BookingSlot.id == slot_id).with_for_update())
            pending = pool.submit(_reserve_in_new_session, postgres_session_factory, slot_id, "pg-late@example.com")
            time.sleep(0.3)
            slot.available_count = 0
            slot.lock_version += 1
            lock_holder.commit()
        finally:
            lock_holder.close()

        with pytest.raises(CapacityExhausted):
            pending.result(timeout=10)

    assert _slot_state(postgres_session_factory, slot_id) == (0, 0, 1)


@pytest.mark.postgres
def test_lock_timeout_surfaces_as_concurrency_conflict(postgres_session_factory, monkeypatch):
    monkeypatch.setattr(settings, "booking_lock_timeout_ms", 200)
    slot_id = _seed_slot(postgres_session_factory, capacity=1)

    lock_holder = postgres_session_factory()
    try:
        lock_holder.scalar(select(BookingSlot).where(BookingSlot.id == slot_id).with_for_update())
        with pytest.raises(ConcurrencyConflict) as exc_info:
            _reserve_in_new_session(postgres_session_factory, slot_id, "pg-contender@example.com")
        assert exc_info.value.status_code == 409
        assert exc_info.value.message == LOCK_CONFLICT_DETAIL
    finally:
        lock_holder.rollback()
        lock_holder.close()

    booking = _reserve_in_new_session(postgres_session_factory, slot_id, "pg-winner@example.com")

    assert booking.status == BookingStatus.PENDING.value
    assert _slot_state(postgres_session_factory, slot_id) == (1, 0, 1)
