from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.schemas.payment import WebhookAckResponse
from app.services.payment_service import handle_webhook

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhook", response_model=WebhookAckResponse, status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
) -> WebhookAckResponse:
    # The raw body is needed for signature checks; the database work is blocking.
    payload = await request.body()
    event_type = await run_in_threadpool(handle_webhook, db, payload, stripe_signature)
    return WebhookAckResponse(event_type=event_type)
