# src/infrastructure/repositories/slot_repository.py

from datetime import date, datetime

from sqlalchemy.orm import Session
from sqlalchemy import func, select, update

from src.domain.state_machine import EXPIRING_HOLD_STATUSES, SlotStatus
from src.infrastructure.db.models import Slot


class SlotRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, slot_id: str) -> Slot | None:
        stmt = select(Slot).where(Slot.id == slot_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_many(self, slot_ids: list[str]) -> list[Slot]:
        """
        SELECT ... FOR UPDATE
        Rows are locked in id order so overlapping batches cannot deadlock.
        """

        stmt = (
            select(Slot)
            .where(Slot.id.in_(slot_ids))
            .order_by(Slot.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def claim_available(
        self,
        slot_ids: list[str],
        event_id: str,
        values: dict,
    ) -> int:
        """
        Conditional UPDATE that only touches slots still available.
        Returns the number of rows claimed.
        """

        stmt = (
            update(Slot)
            .where(Slot.id.in_(slot_ids))
            .where(Slot.event_id == event_id)
            .where(Slot.status == SlotStatus.AVAILABLE.value)
            .where(Slot.user_id.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def list_for_event(
        self,
        event_id: str,
        on_date: date | None = None,
        category_id: str | None = None,
    ) -> list[Slot]:
        stmt = select(Slot).where(Slot.event_id == event_id)
        if on_date is not None:
            stmt = stmt.where(Slot.date == on_date)
        if category_id is not None:
            stmt = stmt.where(Slot.category_id == category_id)
        stmt = stmt.order_by(Slot.date, Slot.start_at)
        return list(self.db.execute(stmt).scalars().all())

    def lock_for_date(self, event_id: str, on_date: date) -> list[Slot]:
        stmt = (
            select(Slot)
            .where(Slot.event_id == event_id)
            .where(Slot.date == on_date)
            .order_by(Slot.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_by_session(self, session_id: str) -> list[Slot]:
        stmt = (
            select(Slot)
            .where(Slot.checkout_session_id == session_id)
            .order_by(Slot.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_expired_holds(self, now: datetime) -> list[Slot]:
        stmt = (
            select(Slot)
            .where(Slot.status.in_([status.value for status in EXPIRING_HOLD_STATUSES]))
            .where(Slot.hold_expires_at.is_not(None))
            .where(Slot.hold_expires_at < now)
            .order_by(Slot.id)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def count_for_category_day(self, category_id: str, on_date: date) -> int:
        stmt = (
            select(func.count())
            .select_from(Slot)
            .where(Slot.category_id == category_id)
            .where(Slot.date == on_date)
        )
        return self.db.execute(stmt).scalar_one()

    def exists_for_category(self, category_id: str) -> bool:
        stmt = select(Slot.id).where(Slot.category_id == category_id).limit(1)
        return self.db.execute(stmt).first() is not None

    def add(self, slot: Slot) -> Slot:
        self.db.add(slot)
        return slot

    def delete(self, slot: Slot) -> None:
        self.db.delete(slot)
