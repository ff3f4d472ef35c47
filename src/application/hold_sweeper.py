from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy.orm import Session

from src.application.reservation_service import ReservationService
from src.domain.clock import utc_now
from src.domain.state_machine import PaymentStatus
from src.infrastructure.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    released_slot_ids: list[str]
    failed_payment_ids: list[str]


class HoldSweeper:
    """
    Returns expired checkout holds to the pool and fails the pending
    payments of their sessions. Runs from cron or the admin endpoint.
    """

    def __init__(self, db: Session):
        self.db = db
        self.reservations = ReservationService(db)
        self.payment_repository = PaymentRepository(db)

    def sweep(self, now: datetime | None = None) -> SweepResult:
        now = now or utc_now()
        expired = self.reservations.sweep_expired(now)

        failed = []
        for session_id in sorted({hold.session_id for hold in expired if hold.session_id}):
            payment = self.payment_repository.get_by_session_id(session_id, for_update=True)
            if payment is not None and payment.status == PaymentStatus.PENDING.value:
                self.payment_repository.update_status(payment, PaymentStatus.FAILED)
                self.payment_repository.merge_metadata(payment, failure="hold_expired")
                failed.append(payment.id)

        self.db.commit()
        if expired:
            logger.info(
                "Expired holds swept. released=%s failed_payments=%s",
                len(expired),
                len(failed),
            )
        return SweepResult(
            released_slot_ids=[hold.slot_id for hold in expired],
            failed_payment_ids=failed,
        )
