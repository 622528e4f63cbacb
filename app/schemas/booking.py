from datetime import datetime

from pydantic import BaseModel, EmailStr, Field, model_validator

from app.db.models.booking import BookingStatus


class ClientDetails(BaseModel):
    email: EmailStr
    first_name: str | None = Field(default=None, max_length=255)
    last_name: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=64)
    language_preference: str | None = Field(default=None, max_length=16)
    consent_version: str | None = Field(default=None, max_length=64)


class BookingCreateRequest(BaseModel):
    slot_id: int
    email: EmailStr | None = None
    client: ClientDetails | None = None
    caregiver_name: str | None = Field(default=None, max_length=255)
    notes: str | None = Field(default=None, max_length=2000)
    reservation_id: int | None = None

    @model_validator(mode="after")
    def validate_requester(self) -> "BookingCreateRequest":
        if (self.email is None) == (self.client is None):
            raise ValueError("Provide exactly one of email or client")
        return self


class BookingResponse(BaseModel):
    id: int
    uuid: str
    slot_id: int
    client_id: int | None
    guest_email: str | None
    status: str
    created_at: datetime
    cancelled_at: datetime | None

    model_config = {"from_attributes": True}


class BookingConfirmationResponse(BookingResponse):
    slot_start_at: datetime
    slot_end_at: datetime
    service_name: str | None
    facility_name: str | None


class AdminBookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    status_counts: dict[str, int]


class BookingStatusUpdateRequest(BaseModel):
    status: BookingStatus


class BookingStatusUpdateResponse(BaseModel):
    booking: BookingResponse
    changed: bool
    message: str


class BookingStatusHistoryResponse(BaseModel):
    id: int
    booking_id: int
    from_status: str | None
    to_status: str
    changed_by: int | None
    changed_at: datetime

    model_config = {"from_attributes": True}


class HoldCreateRequest(BaseModel):
    slot_id: int
    email: EmailStr


class HoldResponse(BaseModel):
    id: int
    slot_id: int
    guest_email: str | None
    expires_at: datetime

    model_config = {"from_attributes": True}
