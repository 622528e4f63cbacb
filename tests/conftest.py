import os
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

sys.path.append(str(Path(__file__).resolve().parents[1]))
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

from app.core.rate_limiter import rate_limiter
from app.core.security import create_access_token, get_password_hash
from app.db.base import Base
from app.db.models import BookingSlot, CaregiverProfile, Client, Facility, Service, User, UserRole
from app.db.session import get_db
from app.main import app

TEST_DATABASE_URL = "sqlite+pysqlite:///:memory:"
engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def reset_database() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    rate_limiter.reset()


@pytest.fixture()
def db_session() -> Session:
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client() -> TestClient:
    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def slot_factory(db_session: Session):
    def make_slot(capacity: int = 1, start_at: datetime | None = None, deposit_cents: int | None = None) -> BookingSlot:
        start = start_at or datetime.now(UTC) + timedelta(days=1)
        facility = Facility(name="Sunrise Day Centre", address={"street": "12 Elm Road"})
        db_session.add(facility)
        db_session.flush()
        service = Service(facility_id=facility.id, name="Morning Club", deposit_cents=deposit_cents)
        db_session.add(service)
        db_session.flush()
        slot = BookingSlot(
            service_id=service.id,
            facility_id=facility.id,
            start_at=start,
            end_at=start + timedelta(hours=2),
            capacity=capacity,
            available_count=capacity,
        )
        db_session.add(slot)
        db_session.commit()
        return slot

    return make_slot


@pytest.fixture()
def user_factory(db_session: Session):
    def make_user(
        email: str,
        role: UserRole = UserRole.CAREGIVER,
        phone: str | None = None,
        timezone: str = "UTC",
        sms_opt_in: bool = False,
        preferred_contact_method: str = "email",
        client_email: str | None = None,
    ) -> User:
        user = User(
            email=email,
            full_name="Test User",
            phone=phone,
            hashed_password=get_password_hash("StrongPass123"),
            role=role.value,
        )
        if role == UserRole.CAREGIVER:
            care_client = None
            if client_email:
                care_client = Client(email=client_email, first_name="Ada", last_name="Lovelace")
                db_session.add(care_client)
                db_session.flush()
            user.caregiver_profile = CaregiverProfile(
                client_id=care_client.id if care_client else None,
                timezone=timezone,
                sms_opt_in=sms_opt_in,
                preferred_contact_method=preferred_contact_method,
            )
        db_session.add(user)
        db_session.commit()
        return user

    return make_user


@pytest.fixture()
def auth_headers():
    def headers_for(user: User) -> dict[str, str]:
        token = create_access_token(user_id=user.id, role=user.role, email=user.email)
        return {"Authorization": f"Bearer {token}"}

    return headers_for
