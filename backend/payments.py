# backend/payments.py
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx
from sqlalchemy.orm import Session

import config
from bookings import update_payment_status
from errors import Conflict, Forbidden, InvalidState, NotAuthenticated, NotFound, UpstreamFailure
from models import (
    Booking, Client, Payment, User,
    PAYMENT_PAID, PAYMENT_PENDING, PAYMENT_REFUNDED, STATUS_CANCELLED,
)
from notifications import notifier

logger = logging.getLogger(__name__)

# Provider event status -> booking payment status
WEBHOOK_STATUS_MAP = {
    "succeeded": PAYMENT_PAID,
    "refunded": PAYMENT_REFUNDED,
    "failed": PAYMENT_PENDING,
}


@dataclass
class PaymentIntentResult:
    status: str
    id: str


class HttpPaymentGateway:
    """Payment provider client: createPaymentIntent(amount, method) -> {status, id}"""

    def __init__(self, api_url: Optional[str] = None, api_key: Optional[str] = None, timeout: float = 15.0):
        self.api_url = api_url or config.PAYMENT_API_URL
        self.api_key = api_key if api_key is not None else config.PAYMENT_API_KEY
        self.timeout = timeout

    async def create_payment_intent(self, amount: float, method: str) -> PaymentIntentResult:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.api_url,
                    json={"amount": int(round(amount * 100)), "currency": "usd", "method": method},
                    headers=headers,
                )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Payment provider error: {e}")
            raise UpstreamFailure("Payment processing failed")

        if not data.get("id"):
            logger.error(f"Payment provider returned no intent id: {data}")
            raise UpstreamFailure("Payment processing failed")
        return PaymentIntentResult(status=data.get("status", "requires_confirmation"), id=str(data["id"]))


def get_payment_gateway() -> HttpPaymentGateway:
    return HttpPaymentGateway()


async def start_payment(db: Session, actor: User, booking_id: int, method: str, gateway) -> Payment:
    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if not booking:
        raise NotFound("Booking not found")
    if booking.client is None or booking.client.user_id != actor.id:
        raise Forbidden("Only the booking's client can pay for it")
    if booking.status == STATUS_CANCELLED:
        raise InvalidState("Cannot pay for a cancelled booking")
    if booking.payment_status == PAYMENT_PAID:
        raise Conflict("Booking is already paid", code="already_paid")

    amount = booking.amount if booking.amount is not None else booking.service.price
    intent = await gateway.create_payment_intent(amount, method)

    payment = Payment(
        booking_id=booking.id,
        client_id=booking.client_id,
        amount=amount,
        method=method,
        status=intent.status,
        provider_intent_id=intent.id,
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    logger.info(f"Payment intent {intent.id} created for booking {booking.id} ({amount:.2f})")
    return payment


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str] = None):
    secret = config.PAYMENT_WEBHOOK_SECRET if secret is None else secret
    if not secret:
        logger.error("PAYMENT_WEBHOOK_SECRET not configured; rejecting webhook")
        raise NotAuthenticated("Webhook signature cannot be verified")
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not signature or not hmac.compare_digest(expected, signature.strip()):
        logger.warning("Rejected payment webhook with invalid signature")
        raise NotAuthenticated("Invalid webhook signature")


def _stale_reason(payment: Payment, status: str) -> Optional[str]:
    """Why an event for this intent must not be applied, or None when it may"""
    previous = payment.status
    if previous == status:
        return "duplicate event"
    if status == "failed" and previous in ("succeeded", "refunded"):
        return f"intent already {previous}"
    if status == "succeeded" and previous == "refunded":
        return "intent already refunded"
    if status == "refunded" and previous != "succeeded":
        return "intent never succeeded"
    return None


def _booking_payment_status(db: Session, payment: Payment, booking: Booking, status: str) -> str:
    if status == "succeeded":
        return PAYMENT_PAID
    # Another intent of the same booking may have paid it
    other_paid = db.query(Payment).filter(
        Payment.booking_id == payment.booking_id,
        Payment.id != payment.id,
        Payment.status == "succeeded",
    ).first()
    if other_paid is not None:
        return booking.payment_status
    return WEBHOOK_STATUS_MAP[status]


def handle_payment_event(db: Session, intent_id: str, status: str, failure_reason: Optional[str] = None) -> Optional[Booking]:
    """
    Apply a verified provider event to the payment and its booking.

    Providers retry and reorder deliveries, so each event is checked against
    the intent's recorded status first. A late failure for an abandoned intent
    never moves a paid booking back to pending, and a refund only counts for
    the intent that actually paid.
    """
    payment = db.query(Payment).filter(Payment.provider_intent_id == intent_id).first()
    if not payment:
        logger.warning(f"Webhook for unknown payment intent {intent_id}")
        return None

    if status not in WEBHOOK_STATUS_MAP:
        logger.info(f"Ignoring payment event {status} for intent {intent_id}")
        return None

    booking = payment.booking
    stale = _stale_reason(payment, status)
    if stale:
        logger.info(f"Ignoring {status} event for intent {intent_id}: {stale}")
        return booking

    booking_status = _booking_payment_status(db, payment, booking, status)
    payment.status = status
    payment.failure_reason = failure_reason if status == "failed" else None
    db.flush()
    if booking_status != booking.payment_status:
        booking = update_payment_status(db, payment.booking_id, booking_status)
    else:
        db.commit()
        logger.info(f"Payment {intent_id} marked {status}; booking {booking.id} stays {booking_status}")

    if status == "succeeded":
        message = f"Payment of {payment.amount:.2f} received for booking #{booking.id}."
    elif status == "refunded":
        message = f"Payment for booking #{booking.id} was refunded."
    else:
        message = f"Payment for booking #{booking.id} failed. Please try again."
    notifier.notify(booking.client.user_id, "payment", message)
    return booking


def list_payments(db: Session, actor: User) -> List[Payment]:
    client = db.query(Client).filter(Client.user_id == actor.id).first()
    if not client:
        return []
    return db.query(Payment).filter(Payment.client_id == client.id).order_by(
        Payment.created_at.desc(), Payment.id.desc()
    ).all()
