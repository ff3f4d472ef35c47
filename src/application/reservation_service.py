from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging

from sqlalchemy.orm import Session

from src.domain.clock import as_utc, utc_now
from src.domain.exceptions import (
    NotFoundError,
    ProtectedStateError,
    SlotUnavailableError,
    ValidationError,
)
from src.domain.state_machine import (
    EXPIRING_HOLD_STATUSES,
    HOLD_STATUSES,
    AssignmentType,
    SlotStateMachine,
    SlotStatus,
)
from src.infrastructure import config
from src.infrastructure.db.models import Slot
from src.infrastructure.repositories.payment_repository import PaymentRepository
from src.infrastructure.repositories.slot_repository import SlotRepository

logger = logging.getLogger(__name__)


@dataclass
class ReservationResult:
    held: bool
    slot_ids: list[str]
    status: SlotStatus
    expires_at: datetime | None = None
    slots: list[Slot] = field(default_factory=list, repr=False)


@dataclass(frozen=True)
class ExpiredHold:
    slot_id: str
    user_id: str | None
    session_id: str | None


def unique_ids(slot_ids: list[str]) -> list[str]:
    ids = [slot_id for slot_id in dict.fromkeys(slot_ids) if slot_id]
    if not ids:
        raise ValidationError("At least one slot id is required")
    return ids


def _in_open_checkout(slot: Slot, now: datetime) -> bool:
    return (
        slot.status in {status.value for status in EXPIRING_HOLD_STATUSES}
        and slot.checkout_session_id is not None
        and slot.hold_expires_at is not None
        and as_utc(slot.hold_expires_at) > now
    )


def slot_status(slot: Slot) -> SlotStatus:
    """Parse the stored status; unknown values are a data-integrity error."""
    try:
        return SlotStatus(slot.status)
    except ValueError:
        raise SlotUnavailableError([slot.id], f"in unknown status '{slot.status}'")


class ReservationService:
    """
    The only legal transition surface for slots.

    Methods never commit; the caller owns the transaction. ``reserve``
    rolls the session back itself when a batch is only partially
    claimed, so that no slot of a failed batch stays mutated.
    """

    def __init__(self, db: Session, hold_ttl_seconds: int = config.HOLD_TTL_SECONDS):
        self.db = db
        self.hold_ttl = timedelta(seconds=hold_ttl_seconds)
        self.slot_repository = SlotRepository(db)
        self.payment_repository = PaymentRepository(db)

    def reserve(
        self,
        event_id: str,
        slot_ids: list[str],
        claimant_user_id: str,
        mode: SlotStatus = SlotStatus.PENDING,
        session_ref: str | None = None,
        now: datetime | None = None,
    ) -> ReservationResult:
        if mode not in EXPIRING_HOLD_STATUSES:
            raise ValidationError(f"Reservation mode must be locked or pending, got {mode}")
        if not claimant_user_id:
            raise ValidationError("A claimant user id is required")

        ids = unique_ids(slot_ids)
        now = now or utc_now()
        slots = self._lock_existing(ids)

        unavailable = [
            slot.id
            for slot in slots
            if slot.event_id != event_id
            or slot.status != SlotStatus.AVAILABLE.value
            or slot.user_id is not None
        ]
        if unavailable:
            raise SlotUnavailableError(unavailable)

        expires_at = now + self.hold_ttl
        claimed = self.slot_repository.claim_available(
            ids,
            event_id,
            {
                "status": mode.value,
                "user_id": claimant_user_id,
                "checkout_session_id": session_ref,
                "hold_expires_at": expires_at,
                "payment_id": None,
                "assignment_type": None,
                "assigned_by": None,
                "assigned_at": None,
            },
        )
        if claimed != len(ids):
            # Lost a race between the availability check and the update.
            self.db.rollback()
            logger.info(
                "Reservation lost race. event_id=%s user_id=%s slot_ids=%s claimed=%s",
                event_id,
                claimant_user_id,
                ids,
                claimed,
            )
            raise SlotUnavailableError(ids, "claimed concurrently")

        slots = self.slot_repository.lock_many(ids)
        logger.info(
            "Slots held. event_id=%s user_id=%s mode=%s slot_ids=%s expires_at=%s",
            event_id,
            claimant_user_id,
            mode.value,
            ids,
            expires_at.isoformat(),
        )
        return ReservationResult(
            held=True,
            slot_ids=ids,
            status=mode,
            expires_at=expires_at,
            slots=slots,
        )

    def attach_session(
        self,
        slot_ids: list[str],
        session_id: str,
        user_id: str,
        session_expires_at: datetime | None = None,
    ) -> None:
        """Bind held slots to a gateway session; the hold lasts as long as the session."""
        slots = self._lock_existing(unique_ids(slot_ids))
        foreign = [
            slot.id
            for slot in slots
            if slot.user_id != user_id or slot_status(slot) not in EXPIRING_HOLD_STATUSES
        ]
        if foreign:
            raise SlotUnavailableError(foreign, "no longer held by this checkout")
        for slot in slots:
            slot.checkout_session_id = session_id
            if session_expires_at is not None and (
                slot.hold_expires_at is None or as_utc(slot.hold_expires_at) < session_expires_at
            ):
                slot.hold_expires_at = session_expires_at

    def finalize(
        self,
        slot_ids: list[str],
        payment_id: str,
        user_id: str,
        session_id: str | None = None,
        assignment_type: AssignmentType = AssignmentType.PAYMENT,
        now: datetime | None = None,
    ) -> list[Slot]:
        """
        Move held slots to ``paid``.

        Slots already paid by ``payment_id`` are left untouched, so a
        redelivered confirmation is a no-op. A slot whose hold expired and
        that nobody claimed since is taken for the payer. Any slot held or
        paid by somebody else rejects the whole batch.
        """
        ids = unique_ids(slot_ids)
        now = now or utc_now()
        slots = self._lock_existing(ids)

        to_finalize = []
        conflicts = []
        for slot in slots:
            status = slot_status(slot)
            if status == SlotStatus.PAID and slot.payment_id == payment_id:
                continue
            if status in HOLD_STATUSES and slot.user_id == user_id and (
                session_id is None
                or slot.checkout_session_id in (None, session_id)
            ):
                to_finalize.append(slot)
            elif status == SlotStatus.AVAILABLE and slot.user_id is None:
                to_finalize.append(slot)
            else:
                conflicts.append(slot.id)

        if conflicts:
            raise SlotUnavailableError(conflicts, "held or paid by another claimant")

        for slot in to_finalize:
            if slot.status == SlotStatus.AVAILABLE.value:
                logger.warning(
                    "Re-claiming released slot for late payment. slot_id=%s payment_id=%s",
                    slot.id,
                    payment_id,
                )
                self._transition(slot, SlotStatus.PENDING)
            self._transition(slot, SlotStatus.PAID)
            slot.user_id = user_id
            slot.payment_id = payment_id
            slot.hold_expires_at = None
            slot.assignment_type = assignment_type.value
            slot.assigned_at = now
            if session_id is not None:
                slot.checkout_session_id = session_id

        if to_finalize:
            logger.info(
                "Slots finalized. payment_id=%s user_id=%s slot_ids=%s",
                payment_id,
                user_id,
                [slot.id for slot in to_finalize],
            )
        return slots

    def release(self, slot_ids: list[str]) -> list[str]:
        """Revert held slots to available. Paid slots reject the whole batch."""
        slots = self._lock_existing(unique_ids(slot_ids))
        paid = [slot.id for slot in slots if slot_status(slot) == SlotStatus.PAID]
        if paid:
            raise ProtectedStateError(paid, "released")

        released = []
        for slot in slots:
            if slot.status == SlotStatus.AVAILABLE.value:
                continue
            self._clear(slot)
            released.append(slot.id)

        if released:
            logger.info("Slots released. slot_ids=%s", released)
        return released

    def release_for_session(self, session_id: str) -> list[str]:
        """Release the holds still bound to an abandoned checkout session."""
        released = []
        for slot in self.slot_repository.list_by_session(session_id):
            if slot.status in {status.value for status in EXPIRING_HOLD_STATUSES}:
                self._clear(slot)
                released.append(slot.id)

        if released:
            logger.info(
                "Released holds of checkout session. session_id=%s slot_ids=%s",
                session_id,
                released,
            )
        return released

    def refund(self, slot_ids: list[str], payment_id: str) -> list[str]:
        """
        The explicit ``paid -> available`` path. Only slots still paid by
        ``payment_id`` are reverted; slots reassigned since are kept.
        """
        refunded = []
        for slot in self.slot_repository.lock_many(list(dict.fromkeys(slot_ids))):
            if slot.status == SlotStatus.PAID.value and slot.payment_id == payment_id:
                self._clear(slot)
                refunded.append(slot.id)
            else:
                logger.warning(
                    "Refund skipped slot no longer paid by payment. slot_id=%s payment_id=%s status=%s",
                    slot.id,
                    payment_id,
                    slot.status,
                )

        logger.info("Slots refunded. payment_id=%s slot_ids=%s", payment_id, refunded)
        return refunded

    def assign_manually(
        self,
        slot_id: str,
        user_id: str,
        resulting_status: SlotStatus,
        admin_id: str | None = None,
        now: datetime | None = None,
    ) -> Slot:
        return self.assign_many_manually(
            [slot_id],
            user_id,
            resulting_status,
            admin_id=admin_id,
            now=now,
        )[0]

    def assign_many_manually(
        self,
        slot_ids: list[str],
        user_id: str,
        resulting_status: SlotStatus,
        admin_id: str | None = None,
        now: datetime | None = None,
    ) -> list[Slot]:
        if resulting_status not in (SlotStatus.OFFERED, SlotStatus.PAID):
            raise ValidationError("Manual assignment results in offered or paid")
        if not user_id:
            raise ValidationError("A user id is required")

        ids = unique_ids(slot_ids)
        now = now or utc_now()
        slots = self._lock_existing(ids)

        taken = [
            slot.id
            for slot in slots
            if slot.user_id is not None and slot.user_id != user_id
        ]
        if taken:
            raise SlotUnavailableError(taken, "assigned to another user")

        plan = [(slot, self._manual_path(slot, resulting_status)) for slot in slots]
        for slot, path in plan:
            if not path and slot.status == SlotStatus.PAID.value:
                # Already paid by this user; provenance and payment stay as they are.
                continue
            for to_status in path:
                self._transition(slot, to_status)
            slot.user_id = user_id
            slot.hold_expires_at = None
            if slot.checkout_session_id is not None:
                logger.info(
                    "Manual assignment supersedes checkout hold. slot_id=%s session_id=%s",
                    slot.id,
                    slot.checkout_session_id,
                )
                slot.checkout_session_id = None
            slot.assignment_type = AssignmentType.MANUAL.value
            slot.assigned_by = admin_id
            slot.assigned_at = now

        logger.info(
            "Slots assigned manually. user_id=%s admin_id=%s status=%s slot_ids=%s",
            user_id,
            admin_id,
            resulting_status.value,
            ids,
        )
        return slots

    def delete(self, slot_id: str) -> None:
        self.delete_many([slot_id])

    def delete_many(
        self,
        slot_ids: list[str],
        action: str = "deleted",
        now: datetime | None = None,
    ) -> list[str]:
        """
        Delete slots nobody depends on. Paid slots, slots held by a checkout
        session that is still open and slots listed on a pending or paid
        payment reject the whole batch.
        """
        now = now or utc_now()
        slots = self._lock_existing(unique_ids(slot_ids))
        references = self.payment_repository.slot_references({slot.event_id for slot in slots})
        paid = [slot.id for slot in slots if slot.status == SlotStatus.PAID.value]
        in_use = [
            slot.id
            for slot in slots
            if slot.id not in paid
            and (slot.id in references or _in_open_checkout(slot, now))
        ]
        if in_use:
            raise ProtectedStateError(paid + in_use, action, subject="Paid or in-use slots")
        if paid:
            raise ProtectedStateError(paid, action)

        for slot in slots:
            self.slot_repository.delete(slot)
        self.db.flush()
        deleted = [slot.id for slot in slots]
        logger.info("Slots deleted. slot_ids=%s", deleted)
        return deleted

    def sweep_expired(self, now: datetime | None = None) -> list[ExpiredHold]:
        """Release every locked/pending hold whose expiry has passed."""
        now = now or utc_now()
        expired = []
        for slot in self.slot_repository.list_expired_holds(now):
            logger.info(
                "Hold expired. slot_id=%s user_id=%s session_id=%s",
                slot.id,
                slot.user_id,
                slot.checkout_session_id,
            )
            expired.append(ExpiredHold(slot.id, slot.user_id, slot.checkout_session_id))
            self._clear(slot)
        return expired

    def _lock_existing(self, ids: list[str]) -> list[Slot]:
        slots = self.slot_repository.lock_many(ids)
        found = {slot.id for slot in slots}
        missing = [slot_id for slot_id in ids if slot_id not in found]
        if missing:
            raise NotFoundError(
                f"Slots not found: {', '.join(missing)}",
                public_message="One or more selected slots do not exist.",
            )
        return slots

    def _manual_path(self, slot: Slot, resulting_status: SlotStatus) -> list[SlotStatus]:
        """Validated list of transitions taking ``slot`` to ``resulting_status``."""
        current = slot_status(slot)
        if current == resulting_status or current == SlotStatus.PAID:
            # Already in place for this user; a paid slot is never downgraded.
            return []
        if current == SlotStatus.AVAILABLE:
            path = [SlotStatus.OFFERED]
            if resulting_status == SlotStatus.PAID:
                path.append(SlotStatus.PAID)
            return path
        if current in EXPIRING_HOLD_STATUSES and resulting_status == SlotStatus.OFFERED:
            # The claimant's own checkout hold is converted into an offer.
            return [SlotStatus.AVAILABLE, SlotStatus.OFFERED]
        SlotStateMachine.validate_transition(current, resulting_status)
        return [resulting_status]

    def _transition(self, slot: Slot, to_status: SlotStatus) -> None:
        SlotStateMachine.validate_transition(slot_status(slot), to_status)
        slot.status = to_status.value

    def _clear(self, slot: Slot) -> None:
        slot.status = SlotStatus.AVAILABLE.value
        slot.user_id = None
        slot.checkout_session_id = None
        slot.hold_expires_at = None
        slot.payment_id = None
        slot.assignment_type = None
        slot.assigned_by = None
        slot.assigned_at = None
