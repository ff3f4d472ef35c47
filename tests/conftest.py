import hashlib
import hmac
import json
import os
import tempfile
import time as time_module
from datetime import datetime, time, timedelta, timezone
from types import SimpleNamespace

_DB_DIR = tempfile.mkdtemp(prefix="pizza-trophy-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"

import pytest
import stripe
from fastapi.testclient import TestClient

from src.api.dependencies import get_payment_gateway
from src.domain.state_machine import EventStatus, UserRole
from src.infrastructure.db.models import Category, Event, Product, Slot, User
from src.infrastructure.db.session import Base, SessionLocal, engine
from src.infrastructure.payments.stripe_gateway import StripeGateway
from src.main import app

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def stripe_api(monkeypatch):
    """Stands in for the Stripe HTTP API; the stripe library stays real."""
    calls = SimpleNamespace(created=[], expired=[], fail_create=None)

    def fake_create(**params):
        if calls.fail_create is not None:
            raise calls.fail_create
        session_id = f"cs_test_{len(calls.created) + 1}"
        calls.created.append(params)
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def fake_expire(session_id, **params):
        calls.expired.append(session_id)
        return {"id": session_id, "status": "expired"}

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    monkeypatch.setattr(stripe.checkout.Session, "expire", fake_expire)
    return calls


@pytest.fixture
def gateway(stripe_api):
    return StripeGateway(secret_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def client(gateway):
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def signed_event():
    """Build a Stripe event body and a valid Stripe-Signature header for it."""

    def build(event_type: str, data_object: dict, event_id: str | None = None, secret: str = WEBHOOK_SECRET):
        body = {
            "id": event_id or f"evt_{data_object.get('id', 'x')}_{event_type}",
            "object": "event",
            "type": event_type,
            "data": {"object": data_object},
        }
        payload = json.dumps(body).encode("utf-8")
        timestamp = int(time_module.time())
        signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return payload, f"t={timestamp},v1={signature}"

    return build


@pytest.fixture
def world(db):
    """An open event with two categories, six slots, a two-slot pack and three users."""
    now = datetime.now(timezone.utc)
    competition_day = (now + timedelta(days=20)).date()

    event = Event(
        name="Pizza Trophy Test",
        year=competition_day.year,
        start_at=now + timedelta(days=20),
        end_at=now + timedelta(days=21),
        registration_deadline=now + timedelta(days=10),
        status=EventStatus.OPEN.value,
    )
    db.add(event)
    db.flush()

    classic = Category(
        event_id=event.id,
        name="Classic Pizza",
        unit_price=6000,
        max_slots=10,
        duration_minutes=20,
    )
    teglia = Category(
        event_id=event.id,
        name="Pizza in Teglia",
        unit_price=5000,
        max_slots=10,
        duration_minutes=30,
    )
    db.add_all([classic, teglia])
    db.flush()

    def add_slots(category, count, first_hour):
        slots = []
        for index in range(count):
            start_at = datetime.combine(competition_day, time(first_hour + index, 0), tzinfo=timezone.utc)
            slot = Slot(
                event_id=event.id,
                category_id=category.id,
                date=competition_day,
                start_at=start_at,
                end_at=start_at + timedelta(minutes=category.duration_minutes),
            )
            db.add(slot)
            slots.append(slot)
        return slots

    classic_slots = add_slots(classic, 4, 9)
    teglia_slots = add_slots(teglia, 2, 14)
    pack = Product(
        event_id=event.id,
        name="Duo Pack",
        price=10000,
        slots_required=2,
    )
    db.add(pack)
    db.add_all(
        [
            User(id="user-1", first_name="Ada", last_name="Rossi", email="u1@example.com"),
            User(id="user-2", first_name="Bruno", last_name="Neri", email="u2@example.com"),
            User(id="admin-1", first_name="Carla", last_name="Verdi", email="admin@example.com", role=UserRole.ADMIN.value),
        ]
    )
    db.commit()

    return SimpleNamespace(
        event_id=event.id,
        category_id=classic.id,
        other_category_id=teglia.id,
        slot_ids=[slot.id for slot in classic_slots],
        teglia_slot_ids=[slot.id for slot in teglia_slots],
        product_id=pack.id,
        day=competition_day,
    )


@pytest.fixture
def admin_headers():
    return {"X-User-Id": "admin-1"}
