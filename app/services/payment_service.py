import logging
from typing import Any

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import ExternalServiceFailure, WebhookSignatureInvalid
from app.db.models import Booking, Payment, PaymentStatus, User
from app.db.models.payment import ACTIVE_PAYMENT_STATUSES
from app.services.audit_service import record_audit

logger = logging.getLogger(__name__)

# Stripe intent statuses that have a local counterpart.
INTENT_STATUS_MAP = {
    "requires_payment_method": PaymentStatus.PENDING.value,
    "requires_confirmation": PaymentStatus.PENDING.value,
    "processing": PaymentStatus.PENDING.value,
    "requires_action": PaymentStatus.REQUIRES_ACTION.value,
    "succeeded": PaymentStatus.SUCCEEDED.value,
    "canceled": PaymentStatus.CANCELLED.value,
}


def _field(obj: Any, key: str) -> Any:
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def _receipt_url(intent: Any) -> str | None:
    charges = _field(_field(intent, "charges"), "data") or []
    if charges:
        return _field(charges[0], "receipt_url")
    latest_charge = _field(intent, "latest_charge")
    return _field(latest_charge, "receipt_url")


class StripeGateway:
    def __init__(self, config: Settings = default_settings) -> None:
        self._config = config

    def create_intent(self, amount_cents: int, currency: str, metadata: dict[str, Any]) -> Any:
        if not self._config.stripe_secret_key:
            raise ExternalServiceFailure("stripe", "Stripe is not configured")
        try:
            return stripe.PaymentIntent.create(
                api_key=self._config.stripe_secret_key,
                amount=amount_cents,
                currency=currency,
                payment_method_types=["card"],
                metadata=metadata,
            )
        except stripe.StripeError as exc:
            raise ExternalServiceFailure("stripe", str(exc)) from exc

    def construct_event(self, payload: bytes, signature: str | None) -> Any:
        if not self._config.stripe_webhook_secret:
            raise ExternalServiceFailure("stripe", "Webhook secret not configured")
        return stripe.Webhook.construct_event(payload, signature, self._config.stripe_webhook_secret)


def _client_secret(payment: Payment) -> str | None:
    return (payment.payment_metadata or {}).get("client_secret")


def get_active_payment(db: Session, booking_id: int) -> Payment | None:
    return db.scalar(
        select(Payment)
        .where(Payment.booking_id == booking_id, Payment.status.in_(ACTIVE_PAYMENT_STATUSES))
        .order_by(Payment.id.desc())
    )


def create_deposit_intent(
    db: Session,
    booking: Booking,
    gateway: StripeGateway | None = None,
    amount_cents: int | None = None,
    config: Settings = default_settings,
) -> tuple[Payment, str | None]:
    """Return the booking's active deposit payment, creating the intent when none exists.

    The second element is the intent's client secret when a new intent was
    created; reused payments keep theirs in ``payment_metadata``.

    The booking row stays locked until the new payment is committed, and the
    partial unique index on active payments backs that up on backends
    without row locks.
    """
    booking_id = booking.id
    db.scalar(select(Booking.id).where(Booking.id == booking_id).with_for_update())
    existing = get_active_payment(db, booking_id)
    if existing is not None:
        db.commit()
        logger.info("deposit_intent_reused booking_id=%s payment_id=%s", booking_id, existing.id)
        return existing, _client_secret(existing)

    service = booking.slot.service if booking.slot else None
    amount = amount_cents or (service.deposit_cents if service and service.deposit_cents else None)
    amount = amount or config.payments_default_deposit_cents
    metadata = {"booking_id": str(booking.id), "client_id": str(booking.client_id or "")}

    intent = (gateway or StripeGateway(config)).create_intent(amount, config.payments_currency, metadata)
    client_secret = _field(intent, "client_secret")
    payment = Payment(
        booking_id=booking.id,
        stripe_payment_intent_id=_field(intent, "id"),
        status=INTENT_STATUS_MAP.get(_field(intent, "status"), PaymentStatus.PENDING.value),
        amount_cents=amount,
        currency=config.payments_currency,
        payment_metadata={**metadata, "client_secret": client_secret},
    )
    db.add(payment)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_active_payment(db, booking_id)
        if existing is None:
            raise
        logger.warning(
            "deposit_intent_discarded booking_id=%s intent_id=%s payment_id=%s",
            booking_id,
            _field(intent, "id"),
            existing.id,
        )
        return existing, _client_secret(existing)

    db.refresh(payment)
    logger.info("deposit_intent_created booking_id=%s intent_id=%s", booking_id, payment.stripe_payment_intent_id)
    return payment, client_secret


def _find_payment(db: Session, intent_id: str | None) -> Payment | None:
    if not intent_id:
        return None
    return db.scalar(select(Payment).where(Payment.stripe_payment_intent_id == intent_id))


def _audit_actor(db: Session, booking: Booking) -> Any:
    if booking.client is not None:
        return booking.client
    if booking.created_by is not None:
        creator = db.get(User, booking.created_by)
        if creator is not None:
            return creator
    return booking


def _apply(
    db: Session,
    intent_id: str | None,
    status: PaymentStatus,
    event_type: str,
    audit_action: str,
    receipt_url: str | None = None,
) -> Payment | None:
    payment = _find_payment(db, intent_id)
    if payment is None:
        logger.warning("payment_missing event_type=%s intent_id=%s", event_type, intent_id)
        return None

    payment.status = status.value
    if receipt_url:
        payment.receipt_url = receipt_url
    record_audit(db, audit_action, _audit_actor(db, payment.booking), payment, {"intent_id": intent_id})
    db.commit()
    logger.info("payment_status_updated payment_id=%s status=%s event_type=%s", payment.id, status.value, event_type)
    return payment


def handle_webhook(
    db: Session,
    payload: bytes,
    signature: str | None,
    gateway: StripeGateway | None = None,
) -> str:
    try:
        event = (gateway or StripeGateway()).construct_event(payload, signature)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("stripe_webhook_verification_failed message=%s", exc)
        raise WebhookSignatureInvalid(
            "Invalid webhook signature",
            {"signature": ["signature_verification_failed"]},
        ) from exc

    event_type = _field(event, "type") or ""
    obj = _field(_field(event, "data"), "object")

    if event_type == "payment_intent.succeeded":
        _apply(db, _field(obj, "id"), PaymentStatus.SUCCEEDED, event_type, "payment.succeeded", _receipt_url(obj))
    elif event_type == "payment_intent.payment_failed":
        _apply(db, _field(obj, "id"), PaymentStatus.CANCELLED, event_type, "payment.failed")
    elif event_type == "charge.refunded":
        intent_id = _field(obj, "payment_intent")
        if not intent_id:
            logger.warning("refund_event_missing_intent charge_id=%s", _field(obj, "id"))
        else:
            _apply(db, intent_id, PaymentStatus.REFUNDED, event_type, "payment.refunded")
    else:
        logger.info("stripe_webhook_unhandled event_type=%s", event_type)

    return event_type
