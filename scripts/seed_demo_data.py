from datetime import datetime, time, timedelta, timezone

from sqlalchemy import select

from src.application.admin_service import AdminService
from src.domain.state_machine import EventStatus, UserRole
from src.infrastructure.db.models import Category, Event, Product, User
from src.infrastructure.db.session import SessionLocal

DEMO_EVENT_NAME = "Pizza Trophy Demo"
ADMIN_USER_ID = "admin-demo"


def _days_from_now(days: int) -> datetime:
    now = datetime.now(timezone.utc).replace(hour=9, minute=0, second=0, microsecond=0)
    return now + timedelta(days=days)


def seed_event(db, service: AdminService) -> Event:
    existing = db.execute(
        select(Event).where(Event.name == DEMO_EVENT_NAME)
    ).scalar_one_or_none()
    if existing:
        return existing

    return service.create_event(
        name=DEMO_EVENT_NAME,
        year=_days_from_now(30).year,
        start_at=_days_from_now(30),
        end_at=_days_from_now(32),
        registration_deadline=_days_from_now(25),
        status=EventStatus.OPEN,
    )


def seed_catalogue(db, service: AdminService, event: Event) -> None:
    category_defs = [
        {"name": "Classic Pizza", "unit_price": 6000, "max_slots": 24, "duration_minutes": 20},
        {"name": "Pizza in Teglia", "unit_price": 6000, "max_slots": 12, "duration_minutes": 30},
        {"name": "Fastest Pizza Maker", "unit_price": 3000, "max_slots": 16, "duration_minutes": 10},
    ]
    competition_day = _days_from_now(30).date()

    for item in category_defs:
        existing = db.execute(
            select(Category)
            .where(Category.event_id == event.id)
            .where(Category.name == item["name"])
        ).scalar_one_or_none()
        if existing:
            continue

        category = service.create_category(event.id, **item)
        service.generate_slots(
            event.id,
            category.id,
            competition_day,
            day_start=time(10, 0),
            day_end=time(13, 0),
            break_minutes=5,
        )

    product_defs = [
        {"name": "Duo Pack", "price": 10000, "slots_required": 2},
        {"name": "Champion Pack", "price": 14000, "slots_required": 3, "includes_meal": True},
    ]
    for item in product_defs:
        existing = db.execute(
            select(Product)
            .where(Product.event_id == event.id)
            .where(Product.name == item["name"])
        ).scalar_one_or_none()
        if not existing:
            service.create_product(event.id, **item)


def seed_admin(db) -> None:
    if db.get(User, ADMIN_USER_ID):
        return
    db.add(
        User(
            id=ADMIN_USER_ID,
            first_name="Demo",
            last_name="Admin",
            email="admin@example.com",
            role=UserRole.ADMIN.value,
        )
    )


def main() -> None:
    db = SessionLocal()
    try:
        service = AdminService(db)
        event = seed_event(db, service)
        seed_catalogue(db, service, event)
        seed_admin(db)
        db.commit()
        print(f"Seed complete: {DEMO_EVENT_NAME} with categories, slots, packs and admin '{ADMIN_USER_ID}'.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
