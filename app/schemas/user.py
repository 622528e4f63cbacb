from datetime import datetime

from pydantic import BaseModel, EmailStr

from app.db.models.user import UserRole


class CaregiverProfileSummary(BaseModel):
    client_id: int | None
    timezone: str
    sms_opt_in: bool
    preferred_contact_method: str

    model_config = {"from_attributes": True}


class UserResponse(BaseModel):
    id: int
    email: EmailStr
    full_name: str | None
    phone: str | None
    role: UserRole
    is_active: bool
    created_at: datetime
    caregiver_profile: CaregiverProfileSummary | None = None

    model_config = {"from_attributes": True}
