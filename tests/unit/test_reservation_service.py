# tests/unit/test_reservation_service.py

import threading
from datetime import timedelta

import pytest

from src.application.reservation_service import ReservationService
from src.domain.clock import utc_now
from src.domain.exceptions import (
    NotFoundError,
    ProtectedStateError,
    SlotUnavailableError,
    ValidationError,
)
from src.domain.state_machine import AssignmentType, SlotStatus
from src.infrastructure.db.models import Slot
from src.infrastructure.db.session import SessionLocal


def _slot(db, slot_id) -> Slot:
    db.expire_all()
    return db.get(Slot, slot_id)


# ---------------------
# RESERVE
# ---------------------

def test_reserve_holds_every_slot(db, world):
    service = ReservationService(db)

    result = service.reserve(world.event_id, world.slot_ids[:2], "user-1")
    db.commit()

    assert result.held is True
    assert result.status == SlotStatus.PENDING
    assert result.expires_at is not None
    for slot_id in world.slot_ids[:2]:
        slot = _slot(db, slot_id)
        assert slot.status == "pending"
        assert slot.user_id == "user-1"
        assert slot.hold_expires_at is not None


def test_reserve_is_all_or_nothing(db, world):
    service = ReservationService(db)
    service.reserve(world.event_id, [world.slot_ids[1]], "user-2")
    db.commit()

    with pytest.raises(SlotUnavailableError) as exc_info:
        service.reserve(world.event_id, world.slot_ids[:3], "user-1")
    db.rollback()

    assert exc_info.value.slot_ids == [world.slot_ids[1]]
    assert _slot(db, world.slot_ids[0]).status == "available"
    assert _slot(db, world.slot_ids[0]).user_id is None
    assert _slot(db, world.slot_ids[2]).status == "available"
    assert _slot(db, world.slot_ids[1]).user_id == "user-2"


def test_reserve_rejects_slot_of_another_event(db, world):
    service = ReservationService(db)

    with pytest.raises(SlotUnavailableError):
        service.reserve("another-event", [world.slot_ids[0]], "user-1")


def test_reserve_unknown_slot_is_not_found(db, world):
    with pytest.raises(NotFoundError):
        ReservationService(db).reserve(world.event_id, ["missing-slot"], "user-1")


def test_reserve_requires_slot_ids(db, world):
    with pytest.raises(ValidationError):
        ReservationService(db).reserve(world.event_id, [], "user-1")


def test_concurrent_reservations_have_single_winner(world):
    slot_id = world.slot_ids[0]
    users = [f"racer-{index}" for index in range(6)]
    barrier = threading.Barrier(len(users))
    results = {}

    def attempt(user_id):
        session = SessionLocal()
        try:
            barrier.wait()
            ReservationService(session).reserve(world.event_id, [slot_id], user_id)
            session.commit()
            results[user_id] = "held"
        except SlotUnavailableError:
            session.rollback()
            results[user_id] = "unavailable"
        finally:
            session.close()

    threads = [threading.Thread(target=attempt, args=(user_id,)) for user_id in users]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [user_id for user_id, outcome in results.items() if outcome == "held"]
    assert len(winners) == 1
    assert sorted(results.values()).count("unavailable") == len(users) - 1

    session = SessionLocal()
    try:
        slot = session.get(Slot, slot_id)
        assert slot.status == "pending"
        assert slot.user_id == winners[0]
    finally:
        session.close()


# ---------------------
# FINALIZE
# ---------------------

def test_finalize_is_idempotent(db, world):
    service = ReservationService(db)
    service.reserve(world.event_id, [world.slot_ids[0]], "user-1", session_ref="cs_1")
    db.commit()

    service.finalize([world.slot_ids[0]], "payment-1", "user-1", session_id="cs_1")
    db.commit()
    service.finalize([world.slot_ids[0]], "payment-1", "user-1", session_id="cs_1")
    db.commit()

    slot = _slot(db, world.slot_ids[0])
    assert slot.status == "paid"
    assert slot.payment_id == "payment-1"
    assert slot.assignment_type == AssignmentType.PAYMENT.value
    assert slot.hold_expires_at is None


def test_finalize_reclaims_released_unclaimed_slot(db, world):
    service = ReservationService(db)

    service.finalize([world.slot_ids[0]], "payment-1", "user-1", session_id="cs_late")
    db.commit()

    slot = _slot(db, world.slot_ids[0])
    assert slot.status == "paid"
    assert slot.user_id == "user-1"


def test_finalize_refuses_slot_held_by_someone_else(db, world):
    service = ReservationService(db)
    service.reserve(world.event_id, [world.slot_ids[1]], "user-2")
    db.commit()

    with pytest.raises(SlotUnavailableError) as exc_info:
        service.finalize(world.slot_ids[:2], "payment-1", "user-1")
    db.rollback()

    assert exc_info.value.slot_ids == [world.slot_ids[1]]
    assert _slot(db, world.slot_ids[0]).status == "available"
    assert _slot(db, world.slot_ids[1]).user_id == "user-2"


# ---------------------
# RELEASE / DELETE / REFUND
# ---------------------

def test_release_clears_claimant(db, world):
    service = ReservationService(db)
    service.reserve(world.event_id, world.slot_ids[:2], "user-1", session_ref="cs_1")
    db.commit()

    released = service.release(world.slot_ids[:2])
    db.commit()

    assert sorted(released) == sorted(world.slot_ids[:2])
    slot = _slot(db, world.slot_ids[0])
    assert slot.status == "available"
    assert slot.user_id is None
    assert slot.checkout_session_id is None


def test_paid_slots_cannot_be_released_or_deleted(db, world):
    service = ReservationService(db)
    service.reserve(world.event_id, [world.slot_ids[0]], "user-1")
    service.finalize([world.slot_ids[0]], "payment-1", "user-1")
    db.commit()

    with pytest.raises(ProtectedStateError):
        service.release([world.slot_ids[0], world.slot_ids[1]])
    db.rollback()
    with pytest.raises(ProtectedStateError):
        service.delete(world.slot_ids[0])
    db.rollback()

    assert _slot(db, world.slot_ids[0]).status == "paid"


def test_refund_only_touches_slots_of_the_payment(db, world):
    service = ReservationService(db)
    service.reserve(world.event_id, world.slot_ids[:2], "user-1")
    service.finalize([world.slot_ids[0]], "payment-1", "user-1")
    service.finalize([world.slot_ids[1]], "payment-2", "user-1")
    db.commit()

    refunded = service.refund(world.slot_ids[:2], "payment-1")
    db.commit()

    assert refunded == [world.slot_ids[0]]
    assert _slot(db, world.slot_ids[0]).status == "available"
    assert _slot(db, world.slot_ids[1]).status == "paid"


# ---------------------
# MANUAL ASSIGNMENT
# ---------------------

def test_assign_manually_records_provenance(db, world):
    service = ReservationService(db)

    slot = service.assign_manually(world.slot_ids[0], "user-1", SlotStatus.OFFERED, admin_id="admin-1")
    db.commit()

    assert slot.status == "offered"
    assert slot.assignment_type == AssignmentType.MANUAL.value
    assert slot.assigned_by == "admin-1"
    assert slot.assigned_at is not None


def test_assign_manually_refuses_other_claimant(db, world):
    service = ReservationService(db)
    service.reserve(world.event_id, [world.slot_ids[0]], "user-2")
    db.commit()

    with pytest.raises(SlotUnavailableError):
        service.assign_manually(world.slot_ids[0], "user-1", SlotStatus.PAID)


def test_offered_slot_upgrades_to_paid(db, world):
    service = ReservationService(db)
    service.assign_manually(world.slot_ids[0], "user-1", SlotStatus.OFFERED)
    db.commit()

    slot = service.assign_manually(world.slot_ids[0], "user-1", SlotStatus.PAID)
    db.commit()

    assert slot.status == "paid"


# ---------------------
# EXPIRY
# ---------------------

def test_sweep_releases_only_expired_holds(db, world):
    service = ReservationService(db, hold_ttl_seconds=60)
    now = utc_now()
    service.reserve(world.event_id, [world.slot_ids[0]], "user-1", session_ref="cs_old", now=now - timedelta(minutes=5))
    service.reserve(world.event_id, [world.slot_ids[1]], "user-2", now=now)
    service.assign_manually(world.slot_ids[2], "user-1", SlotStatus.OFFERED)
    db.commit()

    expired = service.sweep_expired(now)
    db.commit()

    assert [hold.slot_id for hold in expired] == [world.slot_ids[0]]
    assert expired[0].session_id == "cs_old"
    assert _slot(db, world.slot_ids[0]).status == "available"
    assert _slot(db, world.slot_ids[1]).status == "pending"
    assert _slot(db, world.slot_ids[2]).status == "offered"
