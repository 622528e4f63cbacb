from datetime import datetime

from pydantic import BaseModel


class CalendarBookingSummary(BaseModel):
    uuid: str
    status: str
    start_at: datetime | None
    end_at: datetime | None
    service_name: str | None
    facility_name: str | None


class CalendarExportSummaryResponse(BaseModel):
    booking_count: int
    bookings: list[CalendarBookingSummary]
    download_url: str
