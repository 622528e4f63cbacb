from fastapi import APIRouter, Depends, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.api.deps import STAFF_ROLES, get_optional_user
from app.db.models import User
from app.db.session import get_db
from app.schemas.booking import (
    BookingConfirmationResponse,
    BookingCreateRequest,
    BookingResponse,
    HoldCreateRequest,
    HoldResponse,
)
from app.services.booking_service import get_booking_by_uuid
from app.services.capacity_service import place_hold, reserve_slot

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", status_code=status.HTTP_303_SEE_OTHER)
def create_booking(
    payload: BookingCreateRequest,
    current_user: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
) -> RedirectResponse:
    is_staff = current_user is not None and current_user.role in {role.value for role in STAFF_ROLES}
    booking = reserve_slot(
        db,
        payload.slot_id,
        email=payload.email,
        client=payload.client,
        caregiver_name=payload.caregiver_name,
        notes=payload.notes,
        created_by=current_user.id if current_user else None,
        created_via="staff" if is_staff else "web",
        reservation_id=payload.reservation_id,
    )
    return RedirectResponse(url=f"/bookings/{booking.uuid}", status_code=status.HTTP_303_SEE_OTHER)


@router.post("/holds", response_model=HoldResponse, status_code=status.HTTP_201_CREATED)
def create_hold(
    payload: HoldCreateRequest,
    current_user: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
) -> HoldResponse:
    hold = place_hold(
        db,
        payload.slot_id,
        guest_email=payload.email,
        user_id=current_user.id if current_user else None,
    )
    return HoldResponse.model_validate(hold)


@router.get("/{booking_uuid}", response_model=BookingConfirmationResponse, status_code=status.HTTP_200_OK)
def get_booking_confirmation(booking_uuid: str, db: Session = Depends(get_db)) -> BookingConfirmationResponse:
    booking = get_booking_by_uuid(db, booking_uuid)
    slot = booking.slot
    return BookingConfirmationResponse(
        **BookingResponse.model_validate(booking).model_dump(),
        slot_start_at=slot.start_at,
        slot_end_at=slot.end_at,
        service_name=slot.service.name if slot.service else None,
        facility_name=slot.facility.name if slot.facility else None,
    )
