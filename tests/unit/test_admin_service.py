# tests/unit/test_admin_service.py

import threading
from datetime import time, timedelta

import pytest

from src.application.admin_service import AdminService
from src.application.checkout_service import CheckoutService
from src.application.reservation_service import ReservationService
from src.domain.clock import utc_now
from src.domain.exceptions import (
    EventLockedError,
    InUseError,
    NotFoundError,
    ProtectedStateError,
    SlotUnavailableError,
    ValidationError,
)
from src.domain.state_machine import EventStatus, PaymentSource, PaymentStatus
from src.infrastructure.db.models import Category, Event, Payment, Registration, Slot, User
from src.infrastructure.db.session import SessionLocal
from src.infrastructure.repositories.payment_repository import PaymentRepository


def _slot(db, slot_id) -> Slot:
    db.expire_all()
    return db.get(Slot, slot_id)


def _pay_registration(db, world, user_id="user-1"):
    db.add(Registration(user_id=user_id, event_id=world.event_id, paid=True, category_ids=[]))
    db.commit()


# ---------------------
# ASSIGNMENT
# ---------------------

def test_assign_to_unpaid_user_offers_slot(db, world):
    slot = AdminService(db).assign(world.slot_ids[0], "user-1", admin_id="admin-1")
    db.commit()

    assert slot.status == "offered"
    assert slot.user_id == "user-1"
    assert slot.assigned_by == "admin-1"


def test_assign_to_paid_user_marks_slot_paid(db, world):
    _pay_registration(db, world)

    slot = AdminService(db).assign(world.slot_ids[0], "user-1", admin_id="admin-1")
    db.commit()

    assert slot.status == "paid"
    registration = db.query(Registration).filter_by(user_id="user-1").one()
    assert registration.category_ids == [world.category_id]


def test_assign_refused_when_event_closed(db, world):
    db.get(Event, world.event_id).status = EventStatus.CLOSED.value
    db.commit()

    with pytest.raises(EventLockedError):
        AdminService(db).assign(world.slot_ids[0], "user-1")


def test_bulk_assign_is_all_or_nothing(db, world):
    ReservationService(db).reserve(world.event_id, [world.slot_ids[2]], "user-2")
    db.commit()

    with pytest.raises(SlotUnavailableError):
        AdminService(db).assign_bulk(world.slot_ids[:3], "user-1")
    db.rollback()

    assert _slot(db, world.slot_ids[0]).status == "available"
    assert _slot(db, world.slot_ids[1]).status == "available"


def test_assign_unknown_user_is_not_found(db, world):
    with pytest.raises(NotFoundError):
        AdminService(db).assign(world.slot_ids[0], "ghost")


def test_unassign_refuses_paid_slot(db, world):
    _pay_registration(db, world)
    service = AdminService(db)
    service.assign(world.slot_ids[0], "user-1")
    db.commit()

    with pytest.raises(ProtectedStateError):
        service.unassign([world.slot_ids[0]])


def test_assign_turns_own_checkout_hold_into_offer(db, world):
    ReservationService(db).reserve(world.event_id, [world.slot_ids[0]], "user-1", session_ref="cs_own")
    db.commit()

    slot = AdminService(db).assign(world.slot_ids[0], "user-1", admin_id="admin-1")
    db.commit()

    assert slot.status == "offered"
    assert slot.checkout_session_id is None
    assert slot.hold_expires_at is None
    assert slot.assigned_by == "admin-1"


def test_assign_settles_own_checkout_hold_for_paid_user(db, world):
    _pay_registration(db, world)
    ReservationService(db).reserve(world.event_id, [world.slot_ids[0]], "user-1", session_ref="cs_own")
    db.commit()

    slot = AdminService(db).assign(world.slot_ids[0], "user-1")
    db.commit()

    assert slot.status == "paid"
    assert slot.checkout_session_id is None


# ---------------------
# REFUNDS
# ---------------------

def test_refund_slots_takes_back_manual_paid_placement(db, world):
    _pay_registration(db, world)
    service = AdminService(db)
    service.assign(world.slot_ids[0], "user-1")
    db.commit()

    refunded = service.refund_slots([world.slot_ids[0]], admin_id="admin-1")
    db.commit()

    assert refunded == [world.slot_ids[0]]
    slot = _slot(db, world.slot_ids[0])
    assert slot.status == "available"
    assert slot.user_id is None


def test_refund_slots_reverses_manual_payment(db, world):
    service = AdminService(db)
    payment = service.record_manual_payment(
        world.event_id,
        "user-2",
        6000,
        slot_ids=[world.slot_ids[3]],
        note="Paid cash at the desk",
        admin_id="admin-1",
    )
    db.commit()

    service.refund_slots([world.slot_ids[3]], admin_id="admin-1")
    db.commit()

    assert _slot(db, world.slot_ids[3]).status == "available"
    refunded_payment = db.get(Payment, payment.id)
    assert refunded_payment.status == "refunded"
    assert refunded_payment.extra["refund"] == {"refundedBy": "admin-1", "slotIds": [world.slot_ids[3]]}
    registration = db.query(Registration).filter_by(user_id="user-2").one()
    assert registration.paid is False


def test_refund_slots_leaves_stripe_payments_to_stripe(db, world):
    payment = PaymentRepository(db).create_payment(
        event_id=world.event_id,
        user_id="user-1",
        amount=6000,
        currency="eur",
        source=PaymentSource.STRIPE,
        status=PaymentStatus.PAID,
        slot_ids=[world.slot_ids[0]],
    )
    ReservationService(db).finalize([world.slot_ids[0]], payment.id, "user-1")
    db.commit()
    service = AdminService(db)

    with pytest.raises(ValidationError):
        service.refund_slots([world.slot_ids[0]])
    with pytest.raises(ValidationError):
        service.refund_slots([world.slot_ids[1]])
    db.rollback()

    assert _slot(db, world.slot_ids[0]).status == "paid"


# ---------------------
# SLOTS
# ---------------------

def test_delete_by_date_lists_every_paid_slot(db, world):
    _pay_registration(db, world)
    service = AdminService(db)
    service.assign_bulk([world.slot_ids[0], world.teglia_slot_ids[0]], "user-1")
    db.commit()

    with pytest.raises(ProtectedStateError) as exc_info:
        service.delete_slots_by_date(world.event_id, world.day)
    db.rollback()

    assert sorted(exc_info.value.slot_ids) == sorted([world.slot_ids[0], world.teglia_slot_ids[0]])
    assert db.query(Slot).count() == 6


def test_delete_by_date_removes_unpaid_day(db, world):
    deleted = AdminService(db).delete_slots_by_date(world.event_id, world.day)
    db.commit()

    assert len(deleted) == 6
    assert db.query(Slot).count() == 0


def test_slot_in_open_checkout_cannot_be_deleted(db, world, gateway):
    CheckoutService(db, gateway).start_single_checkout([world.slot_ids[0]], "user-1", "u1@example.com")
    service = AdminService(db)

    with pytest.raises(ProtectedStateError) as exc_info:
        service.delete_slot(world.slot_ids[0])
    db.rollback()
    assert exc_info.value.slot_ids == [world.slot_ids[0]]

    with pytest.raises(ProtectedStateError) as exc_info:
        service.delete_slots_by_date(world.event_id, world.day)
    db.rollback()
    assert exc_info.value.slot_ids == [world.slot_ids[0]]
    assert db.query(Slot).count() == 6


def test_slot_listed_on_pending_payment_cannot_be_deleted(db, world):
    PaymentRepository(db).create_payment(
        event_id=world.event_id,
        user_id="user-1",
        amount=6000,
        currency="eur",
        source=PaymentSource.STRIPE,
        status=PaymentStatus.PENDING,
        slot_ids=[world.slot_ids[1]],
        stripe_session_id="cs_elsewhere",
    )
    db.commit()

    with pytest.raises(ProtectedStateError) as exc_info:
        AdminService(db).delete_slot(world.slot_ids[1])

    assert "in-use" in str(exc_info.value)


def test_abandoned_hold_can_be_deleted(db, world):
    ReservationService(db, hold_ttl_seconds=60).reserve(
        world.event_id,
        [world.slot_ids[2]],
        "user-1",
        session_ref="cs_gone",
        now=utc_now() - timedelta(minutes=5),
    )
    db.commit()

    AdminService(db).delete_slot(world.slot_ids[2])
    db.commit()

    assert _slot(db, world.slot_ids[2]) is None


def test_concurrent_generation_respects_daily_capacity(world):
    day = world.day + timedelta(days=2)
    barrier = threading.Barrier(2)
    outcomes = []

    def generate():
        session = SessionLocal()
        try:
            barrier.wait()
            AdminService(session, timezone_name="UTC").generate_slots(
                world.event_id,
                world.category_id,
                day,
                day_start=time(8, 0),
                day_end=time(10, 0),
            )
            session.commit()
            outcomes.append("created")
        except ValidationError:
            session.rollback()
            outcomes.append("refused")
        finally:
            session.close()

    threads = [threading.Thread(target=generate) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["created", "refused"]
    session = SessionLocal()
    try:
        assert session.query(Slot).filter(Slot.date == day).count() == 6
    finally:
        session.close()


def test_generate_slots_fills_the_window(db, world):
    day = world.day + timedelta(days=1)

    slots = AdminService(db, timezone_name="UTC").generate_slots(
        world.event_id,
        world.category_id,
        day,
        day_start=time(10, 0),
        day_end=time(12, 0),
        break_minutes=10,
    )
    db.commit()

    assert len(slots) == 4
    assert [slot.start_at.strftime("%H:%M") for slot in slots] == ["10:00", "10:30", "11:00", "11:30"]
    assert all(slot.end_at - slot.start_at == timedelta(minutes=20) for slot in slots)


def test_generate_slots_respects_daily_capacity(db, world):
    with pytest.raises(ValidationError):
        AdminService(db, timezone_name="UTC").generate_slots(
            world.event_id,
            world.category_id,
            world.day,
            day_start=time(8, 0),
            day_end=time(12, 0),
        )


def test_generate_slots_respects_active_dates(db, world):
    category = db.get(Category, world.category_id)
    category.active_dates = [world.day.isoformat()]
    db.commit()

    with pytest.raises(ValidationError):
        AdminService(db).create_slot(world.event_id, world.category_id, world.day + timedelta(days=1), time(10, 0))


def test_slots_cannot_be_created_for_closed_event(db, world):
    db.get(Event, world.event_id).status = EventStatus.ARCHIVED.value
    db.commit()

    with pytest.raises(EventLockedError):
        AdminService(db).create_slot(world.event_id, world.category_id, world.day, time(10, 0))


# ---------------------
# CATALOGUE
# ---------------------

def test_category_with_slots_cannot_be_deleted(db, world):
    with pytest.raises(InUseError):
        AdminService(db).delete_category(world.category_id)


def test_archived_event_cannot_be_reopened(db, world):
    service = AdminService(db)
    service.update_event(world.event_id, status="archived")
    db.commit()

    with pytest.raises(EventLockedError):
        service.update_event(world.event_id, status="open")


def test_event_dates_are_validated(db, world):
    now = utc_now()
    with pytest.raises(ValidationError):
        AdminService(db).create_event(
            name="Backwards",
            year=now.year,
            start_at=now,
            end_at=now - timedelta(days=1),
            registration_deadline=now - timedelta(days=2),
        )


def test_voucher_codes_are_unique_per_event(db, world):
    service = AdminService(db)
    service.create_voucher(world.event_id, "FREE", world.product_id)
    db.commit()

    with pytest.raises(InUseError):
        service.create_voucher(world.event_id, "FREE", world.product_id)


def test_used_voucher_cannot_be_deleted(db, world):
    service = AdminService(db)
    voucher = service.create_voucher(world.event_id, "USED", world.product_id)
    voucher.is_used = True
    db.commit()

    with pytest.raises(InUseError):
        service.delete_voucher(voucher.id)


# ---------------------
# USERS AND PAYMENTS
# ---------------------

def test_delete_user_keeps_slots(db, world):
    service = AdminService(db)
    service.assign(world.slot_ids[0], "user-1")
    db.commit()

    service.delete_user("user-1")
    db.commit()

    assert db.get(User, "user-1") is None
    assert _slot(db, world.slot_ids[0]).user_id == "user-1"


def test_set_user_role_validates_value(db, world):
    service = AdminService(db)

    assert service.set_user_role("user-1", "jury").role == "jury"
    with pytest.raises(ValidationError):
        service.set_user_role("user-1", "superuser")


def test_manual_payment_marks_user_and_slots_paid(db, world):
    payment = AdminService(db).record_manual_payment(
        world.event_id,
        "user-2",
        6000,
        source=PaymentSource.MANUAL,
        slot_ids=[world.slot_ids[3]],
        note="Paid cash at the desk",
        admin_id="admin-1",
    )
    db.commit()

    assert payment.status == "paid"
    slot = _slot(db, world.slot_ids[3])
    assert slot.status == "paid"
    assert slot.payment_id == payment.id
    registration = db.query(Registration).filter_by(user_id="user-2").one()
    assert registration.paid is True
    assert registration.payment_id == payment.id


def test_manual_payment_refuses_slot_of_another_event(db, world):
    source_event = db.get(Event, world.event_id)
    other = Event(
        name="Pizza Trophy Other",
        year=source_event.year,
        start_at=source_event.start_at,
        end_at=source_event.end_at,
        registration_deadline=source_event.registration_deadline,
        status=EventStatus.OPEN.value,
    )
    db.add(other)
    db.commit()

    with pytest.raises(ValidationError):
        AdminService(db).record_manual_payment(other.id, "user-1", 6000, slot_ids=[world.slot_ids[0]])
    db.rollback()

    assert db.query(Payment).count() == 0


def test_manual_payment_keeps_existing_settlement(db, world):
    service = AdminService(db)
    first = service.record_manual_payment(world.event_id, "user-1", 6000, slot_ids=[world.slot_ids[0]])
    db.commit()

    with pytest.raises(SlotUnavailableError):
        service.record_manual_payment(world.event_id, "user-1", 6000, slot_ids=[world.slot_ids[0]])
    db.rollback()

    assert _slot(db, world.slot_ids[0]).payment_id == first.id
    assert db.query(Payment).count() == 1
