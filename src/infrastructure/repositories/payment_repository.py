# src/infrastructure/repositories/payment_repository.py

import hashlib

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.domain.state_machine import PaymentSource, PaymentStatus
from src.infrastructure.db.models import Payment, PaymentWebhookEvent


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, payment_id: str) -> Payment | None:
        stmt = select(Payment).where(Payment.id == payment_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_session_id(
        self,
        session_id: str,
        for_update: bool = False,
    ) -> Payment | None:

        stmt = select(Payment).where(Payment.stripe_session_id == session_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_payment_intent(self, payment_intent_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.stripe_payment_intent_id == payment_intent_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def slot_references(self, event_ids: set[str]) -> dict[str, str]:
        """Slot id to payment id for every pending or paid payment of the events."""
        if not event_ids:
            return {}
        stmt = (
            select(Payment)
            .where(Payment.event_id.in_(event_ids))
            .where(Payment.status.in_([PaymentStatus.PENDING.value, PaymentStatus.PAID.value]))
        )
        references = {}
        for payment in self.db.execute(stmt).scalars():
            for slot_id in payment.slot_ids or []:
                references[slot_id] = payment.id
        return references

    def list_for_event(self, event_id: str) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.event_id == event_id)
            .order_by(Payment.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def has_paid_payment(
        self,
        user_id: str,
        event_id: str,
        exclude_payment_id: str | None = None,
    ) -> bool:
        stmt = (
            select(Payment.id)
            .where(Payment.user_id == user_id)
            .where(Payment.event_id == event_id)
            .where(Payment.status == PaymentStatus.PAID.value)
        )
        if exclude_payment_id is not None:
            stmt = stmt.where(Payment.id != exclude_payment_id)
        return self.db.execute(stmt.limit(1)).first() is not None

    def create_payment(
        self,
        event_id: str,
        user_id: str,
        amount: int,
        currency: str,
        source: PaymentSource,
        status: PaymentStatus,
        slot_ids: list[str],
        stripe_session_id: str | None = None,
        is_pack: bool = False,
        pack_name: str | None = None,
        extra: dict | None = None,
    ) -> Payment:

        payment = Payment(
            event_id=event_id,
            user_id=user_id,
            amount=amount,
            currency=currency,
            source=source.value,
            status=status.value,
            slot_ids=list(slot_ids),
            stripe_session_id=stripe_session_id,
            is_pack=is_pack,
            pack_name=pack_name,
            extra=dict(extra or {}),
        )
        self.db.add(payment)
        self.db.flush()
        return payment

    def update_status(
        self,
        payment: Payment,
        new_status: PaymentStatus,
    ) -> None:

        payment.status = new_status.value

    def merge_metadata(self, payment: Payment, **values) -> None:
        # JSON columns are not mutation-tracked; assign a new dict.
        payment.extra = {**(payment.extra or {}), **values}

    # -----------------------------
    # Webhook dedupe ledger
    # -----------------------------
    def get_webhook_event(
        self,
        provider: str,
        provider_event_id: str,
    ) -> PaymentWebhookEvent | None:
        stmt = (
            select(PaymentWebhookEvent)
            .where(PaymentWebhookEvent.provider == provider)
            .where(PaymentWebhookEvent.provider_event_id == provider_event_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def record_webhook_event(
        self,
        provider: str,
        provider_event_id: str,
        event_type: str,
        payload: bytes,
        session_id: str | None = None,
        status: str = "PROCESSED",
    ) -> PaymentWebhookEvent:
        webhook_event = PaymentWebhookEvent(
            provider=provider,
            provider_event_id=provider_event_id,
            event_type=event_type,
            session_id=session_id,
            payload_hash=hashlib.sha256(payload).hexdigest(),
            status=status,
        )
        self.db.add(webhook_event)
        return webhook_event
