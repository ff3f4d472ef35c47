from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.application.reservation_service import ReservationService, unique_ids
from src.domain.clock import as_utc
from src.domain.exceptions import (
    EventLockedError,
    InUseError,
    NotFoundError,
    SlotUnavailableError,
    ValidationError,
)
from src.domain.state_machine import (
    EDITABLE_EVENT_STATUSES,
    EventStatus,
    PaymentSource,
    PaymentStatus,
    SlotStatus,
    UserRole,
)
from src.infrastructure import config
from src.infrastructure.db.models import (
    Category,
    Event,
    Payment,
    Product,
    Slot,
    User,
    Voucher,
)
from src.infrastructure.repositories.catalog_repository import CatalogRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository
from src.infrastructure.repositories.slot_repository import SlotRepository
from src.infrastructure.repositories.user_repository import UserRepository

logger = logging.getLogger(__name__)

EVENT_FIELDS = {"name", "year", "start_at", "end_at", "registration_deadline"}
CATEGORY_FIELDS = {
    "name",
    "description",
    "rules",
    "unit_price",
    "max_slots",
    "duration_minutes",
    "is_active",
    "active_dates",
    "stripe_price_id",
}
PRODUCT_FIELDS = {
    "name",
    "description",
    "price",
    "slots_required",
    "is_pack",
    "includes_meal",
    "is_active",
    "stripe_price_id",
}
USER_FIELDS = {"first_name", "last_name", "email", "country", "phone"}


class AdminService:
    """
    Staff operations. Nothing here commits: the request scoped session
    commits on success and rolls back on any error.
    """

    def __init__(self, db: Session, timezone_name: str = config.EVENT_TIMEZONE):
        self.db = db
        self.timezone = ZoneInfo(timezone_name)
        self.reservations = ReservationService(db)
        self.slot_repository = SlotRepository(db)
        self.catalog_repository = CatalogRepository(db)
        self.payment_repository = PaymentRepository(db)
        self.user_repository = UserRepository(db)

    # -----------------------------
    # Manual assignment
    # -----------------------------
    def assign(self, slot_id: str, user_id: str, admin_id: str | None = None) -> Slot:
        return self.assign_bulk([slot_id], user_id, admin_id)[0]

    def assign_bulk(
        self,
        slot_ids: list[str],
        user_id: str,
        admin_id: str | None = None,
    ) -> list[Slot]:
        """
        Place a competitor into slots outside the payment flow. The slots
        end up ``paid`` when the user already paid for the event and
        ``offered`` otherwise. All or nothing.
        """
        ids = unique_ids(slot_ids)
        slots = [self._get_slot(slot_id) for slot_id in ids]
        event_ids = {slot.event_id for slot in slots}
        if len(event_ids) != 1:
            raise ValidationError("Bulk assignment slots must belong to one event")
        event = self._get_event(event_ids.pop())
        if event.status not in {status.value for status in EDITABLE_EVENT_STATUSES}:
            raise EventLockedError(f"Event {event.id} is {event.status}; assignments are frozen")

        user = self.user_repository.get_by_id(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        registration = user.registration_for(event.id)
        resulting = SlotStatus.PAID if registration and registration.paid else SlotStatus.OFFERED

        assigned = self.reservations.assign_many_manually(
            ids,
            user_id,
            resulting,
            admin_id=admin_id,
        )
        if registration is not None and resulting == SlotStatus.PAID:
            registration.category_ids = sorted(
                set(registration.category_ids or []) | {slot.category_id for slot in assigned}
            )
        return assigned

    def unassign(self, slot_ids: list[str]) -> list[str]:
        return self.reservations.release(slot_ids)

    def refund_slots(self, slot_ids: list[str], admin_id: str | None = None) -> list[str]:
        """
        Take back paid slots that staff placed or that were settled outside
        Stripe. Stripe payments are refunded in Stripe and released by the
        ``charge.refunded`` webhook.

        A payment left without paid slots is marked ``refunded``; the user's
        registration is unpaid once no other paid payment remains.
        """
        ids = unique_ids(slot_ids)
        slots = self.slot_repository.lock_many(ids)
        found = {slot.id for slot in slots}
        missing = [slot_id for slot_id in ids if slot_id not in found]
        if missing:
            raise NotFoundError(f"Slots not found: {', '.join(missing)}")
        unpaid = [slot.id for slot in slots if slot.status != SlotStatus.PAID.value]
        if unpaid:
            raise ValidationError(f"Only paid slots can be refunded: {', '.join(unpaid)}")

        payments = {
            payment_id: self.payment_repository.get_by_id(payment_id)
            for payment_id in {slot.payment_id for slot in slots if slot.payment_id}
        }
        through_stripe = [
            slot.id
            for slot in slots
            if slot.payment_id
            and payments[slot.payment_id] is not None
            and payments[slot.payment_id].source == PaymentSource.STRIPE.value
        ]
        if through_stripe:
            raise ValidationError(
                f"Slots {', '.join(through_stripe)} were paid through Stripe; refund them in Stripe"
            )

        by_payment: dict[str | None, list[str]] = {}
        for slot in slots:
            by_payment.setdefault(slot.payment_id, []).append(slot.id)
        refunded = []
        for payment_id, group in by_payment.items():
            refunded.extend(self.reservations.refund(group, payment_id))
        self.db.flush()

        for payment in payments.values():
            if payment is None:
                continue
            still_paid = [
                slot.id
                for slot in self.slot_repository.lock_many(payment.slot_ids or [])
                if slot.status == SlotStatus.PAID.value and slot.payment_id == payment.id
            ]
            returned = [slot_id for slot_id in refunded if slot_id in (payment.slot_ids or [])]
            if still_paid:
                self.payment_repository.merge_metadata(
                    payment,
                    returned_slots=sorted(set((payment.extra or {}).get("returned_slots", [])) | set(returned)),
                )
                continue
            self.payment_repository.update_status(payment, PaymentStatus.REFUNDED)
            self.payment_repository.merge_metadata(
                payment,
                refund={"refundedBy": admin_id, "slotIds": returned},
            )
            if not self.payment_repository.has_paid_payment(
                payment.user_id,
                payment.event_id,
                exclude_payment_id=payment.id,
            ):
                self.user_repository.mark_registration_unpaid(payment.user_id, payment.event_id)

        logger.warning(
            "Paid slots refunded by staff. admin_id=%s slot_ids=%s payment_ids=%s",
            admin_id,
            refunded,
            sorted(payment_id for payment_id in payments),
        )
        return refunded

    # -----------------------------
    # Slots
    # -----------------------------
    def create_slot(
        self,
        event_id: str,
        category_id: str,
        on_date: date,
        start: time,
        end: time | None = None,
    ) -> Slot:
        event, category = self._slot_context(event_id, category_id, on_date)
        start_at = self._localize(on_date, start)
        end_at = (
            self._localize(on_date, end)
            if end is not None
            else start_at + timedelta(minutes=category.duration_minutes)
        )
        if end_at <= start_at:
            raise ValidationError("Slot end must be after its start")
        self._check_capacity(category, on_date, 1)

        slot = self.slot_repository.add(
            Slot(
                event_id=event.id,
                category_id=category.id,
                date=on_date,
                start_at=start_at,
                end_at=end_at,
                status=SlotStatus.AVAILABLE.value,
            )
        )
        self.db.flush()
        logger.info("Slot created. slot_id=%s category_id=%s date=%s", slot.id, category.id, on_date)
        return slot

    def generate_slots(
        self,
        event_id: str,
        category_id: str,
        on_date: date,
        day_start: time,
        day_end: time,
        duration_minutes: int | None = None,
        break_minutes: int = 0,
    ) -> list[Slot]:
        """Batch-create back-to-back slots between ``day_start`` and ``day_end``."""
        event, category = self._slot_context(event_id, category_id, on_date)
        duration = timedelta(minutes=duration_minutes or category.duration_minutes)
        cycle = duration + timedelta(minutes=break_minutes)
        if duration <= timedelta(0) or break_minutes < 0:
            raise ValidationError("Duration must be positive and break non-negative")

        windows = []
        current = self._localize(on_date, day_start)
        day_close = self._localize(on_date, day_end)
        while current + duration <= day_close:
            windows.append((current, current + duration))
            current += cycle
        if not windows:
            raise ValidationError("The time range does not fit a single slot")
        self._check_capacity(category, on_date, len(windows))

        slots = [
            self.slot_repository.add(
                Slot(
                    event_id=event.id,
                    category_id=category.id,
                    date=on_date,
                    start_at=start_at,
                    end_at=end_at,
                    status=SlotStatus.AVAILABLE.value,
                )
            )
            for start_at, end_at in windows
        ]
        self.db.flush()
        logger.info(
            "Slots generated. event_id=%s category_id=%s date=%s count=%s",
            event.id,
            category.id,
            on_date,
            len(slots),
        )
        return slots

    def delete_slot(self, slot_id: str) -> None:
        self.reservations.delete(slot_id)

    def delete_slots_by_date(self, event_id: str, on_date: date) -> list[str]:
        slots = self.slot_repository.lock_for_date(event_id, on_date)
        if not slots:
            return []
        return self.reservations.delete_many(
            [slot.id for slot in slots],
            action=f"deleted with the day {on_date.isoformat()}",
        )

    # -----------------------------
    # Events
    # -----------------------------
    def create_event(self, **fields) -> Event:
        status = _parse(EventStatus, fields.pop("status", EventStatus.DRAFT))
        _ensure_fields(fields, EVENT_FIELDS)
        if not fields.get("name") or not fields.get("year"):
            raise ValidationError("name and year are required")
        event = Event(status=status.value, **fields)
        _check_event_dates(event)
        self.catalog_repository.add(event)
        self.db.flush()
        logger.info("Event created. event_id=%s name=%s", event.id, event.name)
        return event

    def update_event(self, event_id: str, **fields) -> Event:
        event = self.catalog_repository.get_event(event_id, for_update=True)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")

        if "status" in fields:
            new_status = _parse(EventStatus, fields.pop("status"))
            if event.status == EventStatus.ARCHIVED.value and new_status != EventStatus.ARCHIVED:
                raise EventLockedError(f"Event {event.id} is archived and cannot be reopened")
            event.status = new_status.value
        _ensure_fields(fields, EVENT_FIELDS)
        for key, value in fields.items():
            setattr(event, key, value)
        _check_event_dates(event)
        logger.info("Event updated. event_id=%s status=%s", event.id, event.status)
        return event

    # -----------------------------
    # Categories
    # -----------------------------
    def create_category(self, event_id: str, **fields) -> Category:
        self._get_event(event_id)
        _ensure_fields(fields, CATEGORY_FIELDS)
        category = self.catalog_repository.add(Category(event_id=event_id, **fields))
        self.db.flush()
        return category

    def update_category(self, category_id: str, **fields) -> Category:
        category = self._get_category(category_id)
        _ensure_fields(fields, CATEGORY_FIELDS)
        for key, value in fields.items():
            setattr(category, key, value)
        return category

    def delete_category(self, category_id: str) -> None:
        category = self._get_category(category_id)
        if self.slot_repository.exists_for_category(category.id):
            raise InUseError(f"Category {category.name} still has slots; delete them first")
        self.catalog_repository.delete(category)

    # -----------------------------
    # Products and vouchers
    # -----------------------------
    def create_product(self, event_id: str, **fields) -> Product:
        self._get_event(event_id)
        _ensure_fields(fields, PRODUCT_FIELDS)
        product = self.catalog_repository.add(Product(event_id=event_id, **fields))
        self.db.flush()
        return product

    def update_product(self, product_id: str, **fields) -> Product:
        product = self.catalog_repository.get_product(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        _ensure_fields(fields, PRODUCT_FIELDS)
        for key, value in fields.items():
            setattr(product, key, value)
        return product

    def create_voucher(
        self,
        event_id: str,
        code: str,
        product_id: str,
        is_single_use: bool = True,
        expires_at: datetime | None = None,
    ) -> Voucher:
        self._get_event(event_id)
        product = self.catalog_repository.get_product(product_id)
        if product is None or product.event_id != event_id:
            raise NotFoundError(f"Product {product_id} not found for event {event_id}")
        code = code.strip()
        if not code:
            raise ValidationError("Voucher code must not be empty")

        voucher = self.catalog_repository.add(
            Voucher(
                event_id=event_id,
                code=code,
                product_id=product_id,
                is_single_use=is_single_use,
                is_used=False,
                expires_at=expires_at,
            )
        )
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            raise InUseError(f"Voucher code {code!r} already exists for event {event_id}") from exc
        return voucher

    def delete_voucher(self, voucher_id: str) -> None:
        voucher = self.catalog_repository.get_voucher(voucher_id)
        if voucher is None:
            raise NotFoundError(f"Voucher {voucher_id} not found")
        if voucher.is_used:
            raise InUseError(f"Voucher {voucher.code} was redeemed and is kept for the record")
        self.catalog_repository.delete(voucher)

    # -----------------------------
    # Users and payments
    # -----------------------------
    def upsert_user(self, user_id: str, **fields) -> User:
        _ensure_fields(fields, USER_FIELDS)
        user = self.user_repository.get_by_id(user_id)
        if user is None:
            if not fields.get("email"):
                raise ValidationError("email is required for a new user")
            user = self.user_repository.add(User(id=user_id, **fields))
        else:
            for key, value in fields.items():
                setattr(user, key, value)
        self.db.flush()
        return user

    def set_user_role(self, user_id: str, role: str) -> User:
        user = self._get_user(user_id)
        user.role = _parse(UserRole, role).value
        logger.info("User role changed. user_id=%s role=%s", user_id, user.role)
        return user

    def delete_user(self, user_id: str) -> None:
        """Slots keep their weak reference; the audit reports them as orphaned."""
        user = self._get_user(user_id)
        self.user_repository.delete(user)
        logger.warning("User deleted. user_id=%s", user_id)

    def record_manual_payment(
        self,
        event_id: str,
        user_id: str,
        amount: int,
        source: PaymentSource = PaymentSource.MANUAL,
        slot_ids: list[str] | None = None,
        note: str | None = None,
        admin_id: str | None = None,
    ) -> Payment:
        """Record a payment taken outside Stripe and mark the user paid."""
        if source == PaymentSource.STRIPE:
            raise ValidationError("Stripe payments are recorded by the webhook only")
        if amount < 0:
            raise ValidationError("Amount must not be negative")
        event = self._get_event(event_id)
        user = self._get_user(user_id)
        ids = unique_ids(slot_ids) if slot_ids else []
        if ids:
            self._check_settleable(event, ids)

        payment = self.payment_repository.create_payment(
            event_id=event.id,
            user_id=user.id,
            amount=amount,
            currency=config.STRIPE_CURRENCY,
            source=source,
            status=PaymentStatus.PAID,
            slot_ids=ids,
            extra={"note": note, "recordedBy": admin_id},
        )
        category_ids = []
        if ids:
            assigned = self.reservations.assign_many_manually(
                ids,
                user.id,
                SlotStatus.PAID,
                admin_id=admin_id,
            )
            for slot in assigned:
                slot.payment_id = payment.id
            category_ids = [slot.category_id for slot in assigned]
        self.user_repository.mark_registration_paid(user.id, event.id, payment.id, category_ids)
        logger.info(
            "Manual payment recorded. payment_id=%s user_id=%s amount=%s source=%s",
            payment.id,
            user.id,
            amount,
            source.value,
        )
        return payment

    # -----------------------------
    # Helpers
    # -----------------------------
    def _slot_context(self, event_id: str, category_id: str, on_date: date) -> tuple[Event, Category]:
        event = self._get_event(event_id)
        if event.status not in {status.value for status in EDITABLE_EVENT_STATUSES}:
            raise EventLockedError(f"Event {event.id} is {event.status}; slots cannot be created")
        category = self._get_category(category_id, for_update=True)
        if category.event_id != event.id:
            raise ValidationError(f"Category {category.id} does not belong to event {event.id}")
        if category.active_dates and on_date.isoformat() not in category.active_dates:
            raise ValidationError(
                f"Category {category.name} is not active on {on_date.isoformat()}"
            )
        return event, category

    def _check_settleable(self, event: Event, slot_ids: list[str]) -> None:
        if event.status not in {status.value for status in EDITABLE_EVENT_STATUSES}:
            raise EventLockedError(f"Event {event.id} is {event.status}; assignments are frozen")
        slots = self.slot_repository.lock_many(slot_ids)
        found = {slot.id for slot in slots}
        missing = [slot_id for slot_id in slot_ids if slot_id not in found]
        if missing:
            raise NotFoundError(f"Slots not found: {', '.join(missing)}")
        foreign = [slot.id for slot in slots if slot.event_id != event.id]
        if foreign:
            raise ValidationError(f"Slots {', '.join(foreign)} do not belong to event {event.id}")
        settled = [slot.id for slot in slots if slot.payment_id is not None]
        if settled:
            raise SlotUnavailableError(settled, "already settled by another payment")

    def _check_capacity(self, category: Category, on_date: date, adding: int) -> None:
        existing = self.slot_repository.count_for_category_day(category.id, on_date)
        if existing + adding > category.max_slots:
            raise ValidationError(
                f"Category {category.name} allows {category.max_slots} slots per day; "
                f"{existing} exist on {on_date.isoformat()}, {adding} requested"
            )

    def _localize(self, on_date: date, at: time) -> datetime:
        return datetime.combine(on_date, at, tzinfo=self.timezone).astimezone(timezone.utc)

    def _get_event(self, event_id: str) -> Event:
        event = self.catalog_repository.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        return event

    def _get_category(self, category_id: str, for_update: bool = False) -> Category:
        category = self.catalog_repository.get_category(category_id, for_update=for_update)
        if category is None:
            raise NotFoundError(f"Category {category_id} not found")
        return category

    def _get_slot(self, slot_id: str) -> Slot:
        slot = self.slot_repository.get_by_id(slot_id)
        if slot is None:
            raise NotFoundError(f"Slot {slot_id} not found")
        return slot

    def _get_user(self, user_id: str) -> User:
        user = self.user_repository.get_by_id(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user


def _ensure_fields(fields: dict, allowed: set[str]) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")


def _check_event_dates(event: Event) -> None:
    start_at = as_utc(event.start_at)
    end_at = as_utc(event.end_at)
    deadline = as_utc(event.registration_deadline)
    if start_at is None or end_at is None or deadline is None:
        raise ValidationError("start_at, end_at and registration_deadline are required")
    if end_at < start_at:
        raise ValidationError("Event end must not precede its start")
    if deadline > end_at:
        raise ValidationError("Registration deadline must not be after the event end")


def _parse(enum_cls, value):
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid {enum_cls.__name__}: {value!r}") from exc
