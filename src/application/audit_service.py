from dataclasses import asdict, dataclass, field
from datetime import datetime
import logging

from sqlalchemy.orm import Session

from src.domain.clock import as_utc, utc_now
from src.domain.exceptions import NotFoundError, ValidationError
from src.domain.state_machine import (
    EXPIRING_HOLD_STATUSES,
    PaymentSource,
    PaymentStatus,
    SlotStatus,
)
from src.infrastructure.db.models import Registration
from src.infrastructure.repositories.catalog_repository import CatalogRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository
from src.infrastructure.repositories.slot_repository import SlotRepository
from src.infrastructure.repositories.user_repository import UserRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditIssue:
    kind: str
    detail: str
    user_id: str | None = None
    payment_id: str | None = None
    slot_id: str | None = None


@dataclass
class AuditReport:
    event_id: str
    generated_at: datetime
    issues: list[AuditIssue] = field(default_factory=list)

    def of_kind(self, kind: str) -> list[AuditIssue]:
        return [issue for issue in self.issues if issue.kind == kind]

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for issue in self.issues:
            counts[issue.kind] = counts.get(issue.kind, 0) + 1
        return counts

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "generated_at": self.generated_at.isoformat(),
            "counts": self.counts(),
            "issues": [asdict(issue) for issue in self.issues],
        }


class AuditService:
    """
    Read-only cross-check of payments, registrations and slots of one event.
    ``reconcile_user_from_payment`` is the single corrective operation.
    """

    def __init__(self, db: Session):
        self.db = db
        self.slot_repository = SlotRepository(db)
        self.payment_repository = PaymentRepository(db)
        self.user_repository = UserRepository(db)
        self.catalog_repository = CatalogRepository(db)

    def report(self, event_id: str, now: datetime | None = None) -> AuditReport:
        if self.catalog_repository.get_event(event_id) is None:
            raise NotFoundError(f"Event {event_id} not found")
        now = now or utc_now()
        report = AuditReport(event_id=event_id, generated_at=now)

        payments = self.payment_repository.list_for_event(event_id)
        slots = {slot.id: slot for slot in self.slot_repository.list_for_event(event_id)}
        registrations = {
            registration.user_id: registration
            for registration in self.user_repository.list_registrations(event_id)
        }
        paid_payments = [payment for payment in payments if payment.status == PaymentStatus.PAID.value]

        for payment in paid_payments:
            self._check_payment(report, payment, registrations, slots)

        paying_users = {payment.user_id for payment in paid_payments}
        for user_id, registration in sorted(registrations.items()):
            if registration.paid and user_id not in paying_users:
                report.issues.append(
                    AuditIssue(
                        kind="ghost_registration",
                        detail="User is marked paid without a paid payment",
                        user_id=user_id,
                        payment_id=registration.payment_id,
                    )
                )

        self._check_slots(report, list(slots.values()), now)

        logger.info("Audit report built. event_id=%s counts=%s", event_id, report.counts())
        return report

    def _check_payment(self, report: AuditReport, payment, registrations, slots) -> None:
        registration: Registration | None = registrations.get(payment.user_id)
        if registration is None or not registration.paid:
            report.issues.append(
                AuditIssue(
                    kind="user_not_paid",
                    detail="Paid payment but the user's registration is not paid",
                    user_id=payment.user_id,
                    payment_id=payment.id,
                )
            )

        if payment.source == PaymentSource.STRIPE.value and payment.amount == 0:
            report.issues.append(
                AuditIssue(
                    kind="zero_amount_stripe",
                    detail="Stripe payment recorded with amount 0",
                    user_id=payment.user_id,
                    payment_id=payment.id,
                )
            )

        for slot_id in payment.slot_ids or []:
            slot = slots.get(slot_id)
            if slot is None:
                report.issues.append(
                    AuditIssue(
                        kind="missing_slots",
                        detail="Payment references a slot that no longer exists",
                        user_id=payment.user_id,
                        payment_id=payment.id,
                        slot_id=slot_id,
                    )
                )
            elif slot.user_id != payment.user_id:
                report.issues.append(
                    AuditIssue(
                        kind="slot_not_assigned_to_payer",
                        detail=f"Slot is held by {slot.user_id or 'nobody'} ({slot.status})",
                        user_id=payment.user_id,
                        payment_id=payment.id,
                        slot_id=slot_id,
                    )
                )

        for slot_id in (payment.extra or {}).get("slot_conflicts") or []:
            report.issues.append(
                AuditIssue(
                    kind="slot_conflict",
                    detail="Payment confirmed while the slot was claimed by somebody else",
                    user_id=payment.user_id,
                    payment_id=payment.id,
                    slot_id=slot_id,
                )
            )

    def _check_slots(self, report: AuditReport, slots, now: datetime) -> None:
        claimants = {slot.user_id for slot in slots if slot.user_id}
        existing_users = self.user_repository.existing_ids(claimants)
        known_statuses = {status.value for status in SlotStatus}
        expiring = {status.value for status in EXPIRING_HOLD_STATUSES}

        for slot in slots:
            if slot.status not in known_statuses:
                report.issues.append(
                    AuditIssue(
                        kind="unknown_status",
                        detail=f"Slot has unknown status {slot.status!r}",
                        user_id=slot.user_id,
                        slot_id=slot.id,
                    )
                )
            if slot.user_id and slot.user_id not in existing_users:
                report.issues.append(
                    AuditIssue(
                        kind="orphaned_slot",
                        detail="Slot references a user that no longer exists",
                        user_id=slot.user_id,
                        payment_id=slot.payment_id,
                        slot_id=slot.id,
                    )
                )
            expires_at = as_utc(slot.hold_expires_at)
            if slot.status in expiring and expires_at is not None and expires_at < now:
                report.issues.append(
                    AuditIssue(
                        kind="stale_hold",
                        detail=f"Hold expired at {expires_at.isoformat()} and was not swept",
                        user_id=slot.user_id,
                        slot_id=slot.id,
                    )
                )

    def reconcile_user_from_payment(self, user_id: str, payment_id: str) -> Registration:
        payment = self.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if payment.user_id != user_id:
            raise ValidationError(f"Payment {payment_id} belongs to user {payment.user_id}, not {user_id}")
        if payment.status != PaymentStatus.PAID.value:
            raise ValidationError(f"Payment {payment_id} is {payment.status}, not paid")
        if self.user_repository.get_by_id(user_id) is None:
            raise NotFoundError(f"User {user_id} not found")

        slots = self.slot_repository.lock_many(list(payment.slot_ids or []))
        registration = self.user_repository.mark_registration_paid(
            user_id,
            payment.event_id,
            payment.id,
            sorted({slot.category_id for slot in slots}),
        )
        logger.warning(
            "Registration reconciled from payment. user_id=%s payment_id=%s event_id=%s",
            user_id,
            payment_id,
            payment.event_id,
        )
        return registration
