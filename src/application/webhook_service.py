from dataclasses import dataclass
import json
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.application.reservation_service import ReservationService
from src.domain.exceptions import SlotUnavailableError, ValidationError, WebhookOutOfOrderError
from src.domain.state_machine import PaymentSource, PaymentStatus
from src.infrastructure import config
from src.infrastructure.db.models import Payment
from src.infrastructure.payments.stripe_gateway import PaymentGateway
from src.infrastructure.repositories.payment_repository import PaymentRepository
from src.infrastructure.repositories.slot_repository import SlotRepository
from src.infrastructure.repositories.user_repository import UserRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookOutcome:
    event_type: str
    result: str
    payment_id: str | None = None


def parse_slot_ids(metadata: dict) -> list[str]:
    """
    Slot ids travel in session metadata as a JSON array under ``slotIds``.
    Older sessions used a comma separated ``slots`` string.
    """
    raw = metadata.get("slotIds") or metadata.get("slotsToReserve")
    if raw:
        try:
            decoded = json.loads(raw)
        except ValueError as exc:
            raise ValidationError(f"Unreadable slot id list in metadata: {raw!r}") from exc
        if not isinstance(decoded, list) or not all(isinstance(item, str) for item in decoded):
            raise ValidationError(f"Slot id list in metadata is not a list of strings: {raw!r}")
        return list(dict.fromkeys(decoded))

    legacy = metadata.get("slots") or metadata.get("slotId") or ""
    return list(dict.fromkeys(item.strip() for item in legacy.split(",") if item.strip()))


class WebhookService:
    """
    Drives slots, payments and registrations to their final state from
    gateway events. Each event is applied in a single transaction and every
    handler is idempotent, keyed by the checkout session id or the payment
    intent id.
    """

    def __init__(self, db: Session, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway
        self.reservations = ReservationService(db)
        self.slot_repository = SlotRepository(db)
        self.payment_repository = PaymentRepository(db)
        self.user_repository = UserRepository(db)
        self._handlers = {
            "checkout.session.completed": self._on_session_completed,
            "checkout.session.async_payment_succeeded": self._on_session_completed,
            "checkout.session.expired": self._on_session_expired,
            "checkout.session.async_payment_failed": self._on_session_expired,
            "charge.refunded": self._on_charge_refunded,
        }

    def handle(self, payload: bytes, signature: str | None) -> WebhookOutcome:
        event = self.gateway.verify_webhook(payload, signature)
        event_id = event.get("id")
        event_type = event["type"]
        data_object = (event.get("data") or {}).get("object") or {}

        if event_id and self.payment_repository.get_webhook_event(self.gateway.provider, event_id):
            logger.info("Duplicate webhook delivery skipped. event_id=%s type=%s", event_id, event_type)
            return WebhookOutcome(event_type, "duplicate")

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Ignoring unhandled webhook type. event_id=%s type=%s", event_id, event_type)
            return WebhookOutcome(event_type, "ignored")

        outcome = handler(event_type, data_object)
        if event_id:
            self.payment_repository.record_webhook_event(
                provider=self.gateway.provider,
                provider_event_id=event_id,
                event_type=event_type,
                payload=payload,
                session_id=data_object.get("id") if event_type.startswith("checkout.") else None,
            )

        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event or session committed first.
            self.db.rollback()
            logger.info("Concurrent webhook delivery lost the race. event_id=%s", event_id)
            return WebhookOutcome(event_type, "duplicate")
        return outcome

    def _on_session_completed(self, event_type: str, session: dict) -> WebhookOutcome:
        session_id = session.get("id")
        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId")
        slot_ids = parse_slot_ids(metadata)
        if not session_id or not user_id or not slot_ids:
            raise ValidationError(
                f"Checkout session {session_id} lacks userId or slot ids in metadata"
            )

        if session.get("payment_status") not in ("paid", "no_payment_required"):
            logger.info(
                "Checkout completed but payment not settled yet. session_id=%s payment_status=%s",
                session_id,
                session.get("payment_status"),
            )
            return WebhookOutcome(event_type, "awaiting_payment")

        existing_slots = self.slot_repository.lock_many(slot_ids)
        event_id = metadata.get("eventId") or next(
            (slot.event_id for slot in existing_slots),
            None,
        )
        if not event_id:
            raise ValidationError(f"Cannot determine the event of checkout session {session_id}")

        payment = self.payment_repository.get_by_session_id(session_id, for_update=True)
        if payment is not None and payment.status == PaymentStatus.REFUNDED.value:
            logger.warning("Completion received for refunded payment. session_id=%s", session_id)
            return WebhookOutcome(event_type, "ignored", payment.id)

        amount = session.get("amount_total") or 0
        currency = session.get("currency") or config.STRIPE_CURRENCY
        if payment is None:
            payment = self.payment_repository.create_payment(
                event_id=event_id,
                user_id=user_id,
                amount=amount,
                currency=currency,
                source=PaymentSource.STRIPE,
                status=PaymentStatus.PAID,
                slot_ids=slot_ids,
                stripe_session_id=session_id,
                is_pack=metadata.get("isPack") == "true",
                pack_name=metadata.get("productName"),
            )
        else:
            self.payment_repository.update_status(payment, PaymentStatus.PAID)
            payment.amount = amount
            payment.currency = currency
            payment.slot_ids = slot_ids
        payment.stripe_payment_intent_id = session.get("payment_intent") or payment.stripe_payment_intent_id
        self.payment_repository.merge_metadata(payment, stripe=dict(metadata))

        category_ids = self._finalize_slots(payment, slot_ids, user_id, session_id, existing_slots)
        self.user_repository.mark_registration_paid(
            user_id,
            event_id,
            payment.id,
            category_ids,
            email=metadata.get("userEmail") or session.get("customer_email"),
        )
        logger.info(
            "Payment confirmed. session_id=%s payment_id=%s user_id=%s slot_ids=%s",
            session_id,
            payment.id,
            user_id,
            slot_ids,
        )
        return WebhookOutcome(event_type, "paid", payment.id)

    def _finalize_slots(self, payment: Payment, slot_ids, user_id, session_id, existing_slots) -> list[str]:
        """
        Finalize what can be finalized. Money has been taken either way, so
        missing or conflicting slots are recorded on the payment for the audit
        instead of failing the delivery.
        """
        found = {slot.id for slot in existing_slots}
        missing = [slot_id for slot_id in slot_ids if slot_id not in found]
        candidates = [slot_id for slot_id in slot_ids if slot_id in found]
        conflicts: list[str] = []

        if candidates:
            try:
                self.reservations.finalize(candidates, payment.id, user_id, session_id=session_id)
            except SlotUnavailableError as exc:
                conflicts = exc.slot_ids
                remaining = [slot_id for slot_id in candidates if slot_id not in conflicts]
                if remaining:
                    self.reservations.finalize(remaining, payment.id, user_id, session_id=session_id)

        if missing or conflicts:
            logger.error(
                "Paid checkout could not claim all slots. payment_id=%s missing=%s conflicts=%s",
                payment.id,
                missing,
                conflicts,
            )
            self.payment_repository.merge_metadata(
                payment,
                missing_slots=missing,
                slot_conflicts=conflicts,
            )

        return sorted(
            {
                slot.category_id
                for slot in existing_slots
                if slot.id not in conflicts
            }
        )

    def _on_session_expired(self, event_type: str, session: dict) -> WebhookOutcome:
        session_id = session.get("id")
        if not session_id:
            raise ValidationError("Expired checkout session without id")

        released = self.reservations.release_for_session(session_id)
        payment = self.payment_repository.get_by_session_id(session_id, for_update=True)
        if payment is not None and payment.status == PaymentStatus.PENDING.value:
            self.payment_repository.update_status(payment, PaymentStatus.FAILED)
            self.payment_repository.merge_metadata(payment, failure=event_type)

        logger.info(
            "Checkout session ended without payment. session_id=%s released=%s",
            session_id,
            released,
        )
        return WebhookOutcome(event_type, "released", payment.id if payment else None)

    def _on_charge_refunded(self, event_type: str, charge: dict) -> WebhookOutcome:
        payment_intent_id = charge.get("payment_intent")
        payment = None
        if payment_intent_id:
            payment = self.payment_repository.get_by_payment_intent(payment_intent_id)
        session_id = (charge.get("metadata") or {}).get("sessionId")
        if payment is None and session_id:
            payment = self.payment_repository.get_by_session_id(session_id, for_update=True)

        if payment is None:
            logger.warning(
                "Refund for unknown payment, asking for redelivery. charge_id=%s payment_intent=%s",
                charge.get("id"),
                payment_intent_id,
            )
            raise WebhookOutOfOrderError(
                f"No payment matches charge {charge.get('id')} (payment intent {payment_intent_id})"
            )

        if payment.status == PaymentStatus.REFUNDED.value:
            return WebhookOutcome(event_type, "already_refunded", payment.id)

        amount_refunded = charge.get("amount_refunded") or 0
        fully_refunded = charge.get("refunded") is True or amount_refunded >= (charge.get("amount") or payment.amount)
        refund_info = {"chargeId": charge.get("id"), "amountRefunded": amount_refunded}
        if not fully_refunded:
            self.payment_repository.merge_metadata(payment, partial_refund=refund_info)
            logger.info("Partial refund recorded. payment_id=%s amount=%s", payment.id, amount_refunded)
            return WebhookOutcome(event_type, "partial_refund", payment.id)

        self.payment_repository.update_status(payment, PaymentStatus.REFUNDED)
        self.payment_repository.merge_metadata(payment, refund=refund_info)
        refunded = self.reservations.refund(payment.slot_ids, payment.id)
        if not self.payment_repository.has_paid_payment(
            payment.user_id,
            payment.event_id,
            exclude_payment_id=payment.id,
        ):
            self.user_repository.mark_registration_unpaid(payment.user_id, payment.event_id)

        logger.info(
            "Payment refunded. payment_id=%s user_id=%s released_slots=%s",
            payment.id,
            payment.user_id,
            refunded,
        )
        return WebhookOutcome(event_type, "refunded", payment.id)
