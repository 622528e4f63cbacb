from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import STAFF_ROLES, require_roles
from app.db.models import BookingStatus, User
from app.db.session import get_db
from app.schemas.booking import (
    AdminBookingListResponse,
    BookingResponse,
    BookingStatusHistoryResponse,
    BookingStatusUpdateRequest,
    BookingStatusUpdateResponse,
)
from app.schemas.media import MediaCreateRequest, MediaResponse
from app.services.booking_service import (
    count_bookings_by_status,
    get_status_history,
    list_bookings,
    transition_booking,
)
from app.services.media_service import register_media
from app.tasks.media import enqueue_media_ingest

router = APIRouter(prefix="/admin", tags=["admin"])

require_staff = require_roles(*STAFF_ROLES)

InboxLimit = Annotated[int, Query(ge=1, le=100, description="Page size for the booking inbox")]
InboxOffset = Annotated[int, Query(ge=0)]


@router.get("/bookings", response_model=AdminBookingListResponse, status_code=status.HTTP_200_OK)
def booking_inbox(
    status_filter: BookingStatus | None = Query(default=None, alias="status"),
    limit: InboxLimit = 20,
    offset: InboxOffset = 0,
    _: User = Depends(require_staff),
    db: Session = Depends(get_db),
) -> AdminBookingListResponse:
    bookings = list_bookings(db, status=status_filter, limit=limit, offset=offset)
    return AdminBookingListResponse(
        bookings=[BookingResponse.model_validate(booking) for booking in bookings],
        status_counts=count_bookings_by_status(db),
    )


@router.patch(
    "/bookings/{booking_id}/status",
    response_model=BookingStatusUpdateResponse,
    status_code=status.HTTP_200_OK,
)
def update_booking_status(
    booking_id: int,
    payload: BookingStatusUpdateRequest,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db),
) -> BookingStatusUpdateResponse:
    result = transition_booking(db, booking_id, payload.status, changed_by=current_user.id)
    return BookingStatusUpdateResponse(
        booking=BookingResponse.model_validate(result.booking),
        changed=result.changed,
        message=result.message,
    )


@router.get(
    "/bookings/{booking_id}/history",
    response_model=list[BookingStatusHistoryResponse],
    status_code=status.HTTP_200_OK,
)
def booking_status_history(
    booking_id: int,
    _: User = Depends(require_staff),
    db: Session = Depends(get_db),
) -> list[BookingStatusHistoryResponse]:
    return [BookingStatusHistoryResponse.model_validate(entry) for entry in get_status_history(db, booking_id)]


@router.post("/media", response_model=MediaResponse, status_code=status.HTTP_202_ACCEPTED)
def create_media(
    payload: MediaCreateRequest,
    current_user: User = Depends(require_staff),
    db: Session = Depends(get_db),
) -> MediaResponse:
    media = register_media(
        db,
        file_url=payload.file_url,
        mime_type=payload.mime_type,
        size_bytes=payload.size_bytes,
        owner_kind=payload.owner_kind,
        owner_id=payload.owner_id,
        title=payload.title,
        uploaded_by=current_user.id,
    )
    enqueue_media_ingest(media.id)
    return MediaResponse.model_validate(media)
