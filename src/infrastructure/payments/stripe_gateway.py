# src/infrastructure/payments/stripe_gateway.py

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
import logging
import math

import stripe

from src.domain.clock import utc_now
from src.domain.exceptions import (
    SignatureVerificationError,
    UpstreamGatewayError,
    ValidationError,
)
from src.infrastructure import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewaySession:
    id: str
    url: str
    expires_at: datetime | None = None


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    provider = "unknown"

    @abstractmethod
    def create_session(
        self,
        line_items: list[dict],
        metadata: dict[str, str],
        customer_email: str,
        expires_at: datetime | None = None,
    ) -> GatewaySession: ...

    @abstractmethod
    def expire_session(self, session_id: str) -> None: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str | None) -> dict: ...


# ----------------------------
# Stripe Checkout implementation
# ----------------------------
class StripeGateway(PaymentGateway):
    provider = "stripe"

    # Stripe rejects sessions expiring less than 30 minutes after creation.
    min_session_lifetime = timedelta(minutes=31)

    def __init__(
        self,
        secret_key: str | None = None,
        webhook_secret: str | None = None,
        success_url: str = config.CHECKOUT_SUCCESS_URL,
        cancel_url: str = config.CHECKOUT_CANCEL_URL,
        tolerance_seconds: int = config.WEBHOOK_TOLERANCE_SECONDS,
    ):
        self.secret_key = secret_key or config.stripe_secret_key()
        self.webhook_secret = webhook_secret or config.stripe_webhook_secret()
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.tolerance_seconds = tolerance_seconds

    def create_session(
        self,
        line_items: list[dict],
        metadata: dict[str, str],
        customer_email: str,
        expires_at: datetime | None = None,
    ) -> GatewaySession:
        if not self.secret_key:
            raise UpstreamGatewayError("Stripe secret key not configured. Set STRIPE_SECRET_KEY.")

        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": line_items,
            "customer_email": customer_email,
            "metadata": metadata,
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
        }
        session_expires_at = None
        if expires_at is not None:
            session_expires_at = self.session_expiry(expires_at)
            params["expires_at"] = int(session_expires_at.timestamp())

        try:
            session = stripe.checkout.Session.create(api_key=self.secret_key, **params)
        except stripe.StripeError as exc:
            logger.exception("Stripe Checkout Session creation failed.")
            raise UpstreamGatewayError(f"Stripe session creation failed: {exc}") from exc

        return GatewaySession(id=session["id"], url=session["url"], expires_at=session_expires_at)

    def session_expiry(self, hold_expires_at: datetime) -> datetime:
        """Hold expiry pushed out to Stripe's minimum, in whole seconds."""
        earliest = utc_now() + self.min_session_lifetime
        expiry = max(hold_expires_at, earliest)
        return datetime.fromtimestamp(math.ceil(expiry.timestamp()), tz=timezone.utc)

    def expire_session(self, session_id: str) -> None:
        if not self.secret_key:
            raise UpstreamGatewayError("Stripe secret key not configured. Set STRIPE_SECRET_KEY.")
        try:
            stripe.checkout.Session.expire(session_id, api_key=self.secret_key)
        except stripe.StripeError as exc:
            raise UpstreamGatewayError(f"Stripe session expiry failed: {exc}") from exc

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict:
        if not self.webhook_secret:
            raise SignatureVerificationError("Webhook secret not configured. Set STRIPE_WEBHOOK_SECRET.")
        if not signature:
            raise SignatureVerificationError("Missing Stripe-Signature header")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                self.tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            logger.warning("Rejected webhook with invalid signature: %s", exc)
            raise SignatureVerificationError(f"Invalid Stripe signature: {exc}") from exc

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise ValidationError("Malformed webhook payload") from exc
        if not isinstance(event, dict) or "type" not in event:
            raise ValidationError("Webhook payload is not a Stripe event")
        return event


def price_line_item(name: str, unit_amount: int, currency: str, stripe_price_id: str | None = None) -> dict:
    """A Checkout line item, by Stripe price id when one is configured."""
    if stripe_price_id:
        return {"price": stripe_price_id, "quantity": 1}
    return {
        "price_data": {
            "currency": currency,
            "unit_amount": unit_amount,
            "product_data": {"name": name},
        },
        "quantity": 1,
    }
