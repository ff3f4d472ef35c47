from fastapi import Depends, Header
from sqlalchemy.orm import Session

from src.domain.exceptions import PermissionDeniedError
from src.domain.state_machine import UserRole
from src.infrastructure.db.session import SessionLocal
from src.infrastructure.payments.stripe_gateway import PaymentGateway, StripeGateway
from src.infrastructure.repositories.user_repository import UserRepository


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_payment_gateway() -> PaymentGateway:
    return StripeGateway()


def require_admin(
    x_user_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> str:
    """The identity provider forwards the caller's id; admins are flagged by role."""
    if not x_user_id:
        raise PermissionDeniedError("Missing X-User-Id header")
    user = UserRepository(db).get_by_id(x_user_id)
    if user is None or user.role != UserRole.ADMIN.value:
        raise PermissionDeniedError(f"User {x_user_id} is not an admin")
    return user.id
