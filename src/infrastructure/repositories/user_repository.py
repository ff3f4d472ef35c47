# src/infrastructure/repositories/user_repository.py

from sqlalchemy.orm import Session, selectinload
from sqlalchemy import select

from src.infrastructure.db.models import Registration, User


class UserRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: str) -> User | None:
        stmt = (
            select(User)
            .where(User.id == user_id)
            .options(selectinload(User.registrations))
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_all(self) -> list[User]:
        stmt = select(User).options(selectinload(User.registrations)).order_by(User.id)
        return list(self.db.execute(stmt).scalars().all())

    def existing_ids(self, user_ids: set[str]) -> set[str]:
        if not user_ids:
            return set()
        stmt = select(User.id).where(User.id.in_(user_ids))
        return set(self.db.execute(stmt).scalars().all())

    def lock_registration(self, user_id: str, event_id: str) -> Registration | None:
        stmt = (
            select(Registration)
            .where(Registration.user_id == user_id)
            .where(Registration.event_id == event_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_or_create_registration(self, user_id: str, event_id: str) -> Registration:
        registration = self.lock_registration(user_id, event_id)
        if registration:
            return registration

        registration = Registration(
            user_id=user_id,
            event_id=event_id,
            paid=False,
            category_ids=[],
        )
        self.db.add(registration)
        self.db.flush()
        return registration

    def ensure_user(self, user_id: str, email: str | None = None) -> User:
        """Users come from the identity provider; the first write creates the row."""
        user = self.db.get(User, user_id)
        if user:
            return user

        user = User(id=user_id, email=email or "")
        self.db.add(user)
        self.db.flush()
        return user

    def mark_registration_paid(
        self,
        user_id: str,
        event_id: str,
        payment_id: str,
        category_ids: list[str],
        email: str | None = None,
    ) -> Registration:
        self.ensure_user(user_id, email)
        registration = self.get_or_create_registration(user_id, event_id)
        registration.paid = True
        registration.payment_id = payment_id
        # JSON columns are not mutation-tracked; assign a new list.
        registration.category_ids = sorted(set(registration.category_ids or []) | set(category_ids))
        return registration

    def mark_registration_unpaid(self, user_id: str, event_id: str) -> Registration | None:
        registration = self.lock_registration(user_id, event_id)
        if registration:
            registration.paid = False
            registration.payment_id = None
        return registration

    def list_registrations(self, event_id: str) -> list[Registration]:
        stmt = select(Registration).where(Registration.event_id == event_id)
        return list(self.db.execute(stmt).scalars().all())

    def add(self, user: User) -> User:
        self.db.add(user)
        return user

    def delete(self, user: User) -> None:
        self.db.delete(user)
