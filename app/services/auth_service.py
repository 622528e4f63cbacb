from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.security import create_access_token, get_password_hash, verify_password
from app.db.models import CaregiverProfile, User, UserRole
from app.schemas.auth import LoginRequest, RegisterRequest, TokenResponse

DUPLICATE_EMAIL_DETAIL = "User with this email already exists"


def _commit_new_user(db: Session, user: User) -> User:
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=DUPLICATE_EMAIL_DETAIL,
        ) from None
    db.refresh(user)
    return user


def register_caregiver(payload: RegisterRequest, db: Session) -> User:
    email = payload.email.lower()
    existing_user = db.scalar(select(User).where(User.email == email))
    if existing_user:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=DUPLICATE_EMAIL_DETAIL,
        )

    user = User(
        email=email,
        full_name=payload.full_name,
        phone=payload.phone,
        hashed_password=get_password_hash(payload.password),
        role=UserRole.CAREGIVER.value,
    )
    user.caregiver_profile = CaregiverProfile(
        timezone=payload.timezone,
        sms_opt_in=payload.sms_opt_in,
        preferred_contact_method="sms" if payload.sms_opt_in else "email",
    )
    db.add(user)
    return _commit_new_user(db, user)


def create_admin(db: Session, email: str, full_name: str, password: str) -> User:
    user = User(
        email=email.lower(),
        full_name=full_name,
        hashed_password=get_password_hash(password),
        role=UserRole.ADMIN.value,
        is_active=True,
    )
    db.add(user)
    return _commit_new_user(db, user)


def login_user(payload: LoginRequest, db: Session) -> TokenResponse:
    email = payload.email.lower()
    user = db.scalar(select(User).where(User.email == email))
    if not user or not user.is_active or not verify_password(payload.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    token = create_access_token(user_id=user.id, role=user.role, email=user.email)
    return TokenResponse(access_token=token)
