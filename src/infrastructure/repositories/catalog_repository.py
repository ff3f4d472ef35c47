# src/infrastructure/repositories/catalog_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from src.infrastructure.db.models import Category, Event, Product, Voucher


class CatalogRepository:
    """Events and the catalogue they own: categories, products, vouchers."""

    def __init__(self, db: Session):
        self.db = db

    # -----------------------------
    # Events
    # -----------------------------
    def get_event(self, event_id: str, for_update: bool = False) -> Event | None:
        stmt = select(Event).where(Event.id == event_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def list_events(self) -> list[Event]:
        stmt = select(Event).order_by(Event.year.desc(), Event.start_at)
        return list(self.db.execute(stmt).scalars().all())

    # -----------------------------
    # Categories
    # -----------------------------
    def get_category(self, category_id: str, for_update: bool = False) -> Category | None:
        stmt = select(Category).where(Category.id == category_id)
        if for_update:
            # Serialises capacity checks of concurrent slot creation.
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_categories(self, category_ids: set[str]) -> dict[str, Category]:
        if not category_ids:
            return {}
        stmt = select(Category).where(Category.id.in_(category_ids))
        return {category.id: category for category in self.db.execute(stmt).scalars()}

    def list_categories(self, event_id: str) -> list[Category]:
        stmt = select(Category).where(Category.event_id == event_id).order_by(Category.name)
        return list(self.db.execute(stmt).scalars().all())

    # -----------------------------
    # Products
    # -----------------------------
    def get_product(self, product_id: str) -> Product | None:
        stmt = select(Product).where(Product.id == product_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_products(self, event_id: str) -> list[Product]:
        stmt = select(Product).where(Product.event_id == event_id).order_by(Product.name)
        return list(self.db.execute(stmt).scalars().all())

    # -----------------------------
    # Vouchers
    # -----------------------------
    def get_voucher(self, voucher_id: str) -> Voucher | None:
        stmt = select(Voucher).where(Voucher.id == voucher_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_voucher_by_code(self, event_id: str, code: str) -> Voucher | None:
        stmt = (
            select(Voucher)
            .where(Voucher.event_id == event_id)
            .where(Voucher.code == code)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_vouchers(self, event_id: str) -> list[Voucher]:
        stmt = select(Voucher).where(Voucher.event_id == event_id).order_by(Voucher.created_at)
        return list(self.db.execute(stmt).scalars().all())

    def mark_voucher_used(self, voucher_id: str, user_id: str) -> bool:
        """
        Conditional UPDATE so that two concurrent redemptions of a
        single-use voucher cannot both succeed.
        """

        stmt = (
            update(Voucher)
            .where(Voucher.id == voucher_id)
            .where(Voucher.is_used.is_(False))
            .values(is_used=True, user_id=user_id)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def add(self, entity):
        self.db.add(entity)
        return entity

    def delete(self, entity) -> None:
        self.db.delete(entity)
