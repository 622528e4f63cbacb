from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import Response
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.api.deps import client_ip, get_caregiver_profile
from app.core.config import settings
from app.core.exceptions import DataIntegrityViolation
from app.core.rate_limiter import throttle
from app.db.models import Booking, BookingSlot, BookingStatus, CaregiverProfile
from app.db.session import get_db
from app.schemas.calendar import CalendarBookingSummary, CalendarExportSummaryResponse
from app.schemas.payment import DepositIntentResponse
from app.services.audit_service import record_audit
from app.services.booking_service import BOOKING_NOT_FOUND_DETAIL, get_booking_by_uuid
from app.services.calendar_service import build_caregiver_calendar_ics
from app.services.payment_service import create_deposit_intent

router = APIRouter(prefix="/caregiver", tags=["caregiver"])

CALENDAR_DOWNLOAD_PATH = "/caregiver/calendar.ics"


def _throttle_calendar(profile: CaregiverProfile) -> None:
    throttle(
        "calendar",
        str(profile.user_id),
        limit=settings.calendar_export_max_attempts,
        window_seconds=settings.calendar_rate_limit_window_seconds,
    )


def _family_bookings(db: Session, profile: CaregiverProfile) -> list[Booking]:
    if profile.client_id is None:
        return []
    return list(
        db.scalars(
            select(Booking)
            .join(BookingSlot, Booking.slot_id == BookingSlot.id)
            .where(Booking.client_id == profile.client_id, Booking.status != BookingStatus.ARCHIVED.value)
            .order_by(BookingSlot.start_at, Booking.id)
        )
    )


def _audit_export(db: Session, action: str, profile: CaregiverProfile, booking_count: int, request: Request) -> None:
    record_audit(db, action, profile.user, profile.client, {"booking_count": booking_count}, client_ip(request))
    db.commit()


@router.get("/calendar", response_model=CalendarExportSummaryResponse, status_code=status.HTTP_200_OK)
def view_calendar(
    request: Request,
    profile: CaregiverProfile = Depends(get_caregiver_profile),
    db: Session = Depends(get_db),
) -> CalendarExportSummaryResponse:
    _throttle_calendar(profile)
    bookings = _family_bookings(db, profile)
    summaries = [
        CalendarBookingSummary(
            uuid=booking.uuid,
            status=booking.status,
            start_at=booking.slot.start_at if booking.slot else None,
            end_at=booking.slot.end_at if booking.slot else None,
            service_name=booking.slot.service.name if booking.slot and booking.slot.service else None,
            facility_name=booking.slot.facility.name if booking.slot and booking.slot.facility else None,
        )
        for booking in bookings
    ]
    _audit_export(db, "calendar_export.view", profile, len(bookings), request)
    return CalendarExportSummaryResponse(
        booking_count=len(summaries),
        bookings=summaries,
        download_url=CALENDAR_DOWNLOAD_PATH,
    )


@router.get("/calendar.ics", status_code=status.HTTP_200_OK)
def export_calendar(
    request: Request,
    profile: CaregiverProfile = Depends(get_caregiver_profile),
    db: Session = Depends(get_db),
) -> Response:
    _throttle_calendar(profile)
    bookings = _family_bookings(db, profile)
    content = build_caregiver_calendar_ics(bookings)
    _audit_export(db, "calendar_export.download", profile, len(bookings), request)

    return Response(
        content=content,
        media_type="text/calendar; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="daycare-bookings.ics"'},
    )


@router.post(
    "/bookings/{booking_uuid}/deposit",
    response_model=DepositIntentResponse,
    status_code=status.HTTP_200_OK,
)
def create_deposit(
    booking_uuid: str,
    profile: CaregiverProfile = Depends(get_caregiver_profile),
    db: Session = Depends(get_db),
) -> DepositIntentResponse:
    booking = get_booking_by_uuid(db, booking_uuid)
    if profile.client_id is None or booking.client_id != profile.client_id:
        raise DataIntegrityViolation(BOOKING_NOT_FOUND_DETAIL)

    payment, client_secret = create_deposit_intent(db, booking)
    return DepositIntentResponse(
        payment_id=payment.id,
        payment_intent_id=payment.stripe_payment_intent_id,
        client_secret=client_secret,
        amount_cents=payment.amount_cents,
        currency=payment.currency,
        status=payment.status,
    )
