from pydantic import BaseModel


class DepositIntentResponse(BaseModel):
    payment_id: int
    payment_intent_id: str
    client_secret: str | None
    amount_cents: int
    currency: str
    status: str


class WebhookAckResponse(BaseModel):
    status: str = "ok"
    event_type: str
