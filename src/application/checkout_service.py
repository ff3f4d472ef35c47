from dataclasses import dataclass
from datetime import datetime
import json
import logging

from sqlalchemy.orm import Session

from src.application.reservation_service import ReservationService, unique_ids
from src.domain.clock import as_utc, utc_now
from src.domain.exceptions import (
    EventLockedError,
    NotFoundError,
    ProductMismatchError,
    SlotUnavailableError,
    UpstreamGatewayError,
    ValidationError,
    VoucherError,
)
from src.domain.state_machine import (
    EXPIRING_HOLD_STATUSES,
    AssignmentType,
    EventStatus,
    PaymentSource,
    PaymentStatus,
    SlotStatus,
)
from src.infrastructure import config
from src.infrastructure.db.models import Event, Payment, Slot
from src.infrastructure.payments.stripe_gateway import PaymentGateway, price_line_item
from src.infrastructure.repositories.catalog_repository import CatalogRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository
from src.infrastructure.repositories.slot_repository import SlotRepository
from src.infrastructure.repositories.user_repository import UserRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    session_id: str
    url: str
    payment_id: str
    expires_at: datetime | None


def encode_slot_ids(slot_ids: list[str]) -> str:
    return json.dumps(slot_ids, separators=(",", ":"))


class CheckoutService:
    """Bridges selected slots to a gateway session while holding them."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        currency: str = config.STRIPE_CURRENCY,
    ):
        self.db = db
        self.gateway = gateway
        self.currency = currency
        self.reservations = ReservationService(db)
        self.slot_repository = SlotRepository(db)
        self.catalog_repository = CatalogRepository(db)
        self.payment_repository = PaymentRepository(db)
        self.user_repository = UserRepository(db)

    def start_single_checkout(
        self,
        slot_ids: list[str],
        user_id: str,
        user_email: str,
    ) -> CheckoutResult:
        _require_identity(user_id, user_email)
        ids = unique_ids(slot_ids)
        slots = self._load_slots(ids)
        event = self._open_event(_single_event_id(slots))

        categories = self.catalog_repository.get_categories({slot.category_id for slot in slots})
        line_items = []
        amount = 0
        for slot in slots:
            category = categories.get(slot.category_id)
            if category is None or not category.is_active:
                raise SlotUnavailableError([slot.id], "in an inactive category")
            line_items.append(
                price_line_item(
                    f"{category.name} - {slot.date.isoformat()} {slot.start_at:%H:%M}",
                    category.unit_price,
                    self.currency,
                    category.stripe_price_id,
                )
            )
            amount += category.unit_price

        return self._checkout(
            event=event,
            slot_ids=ids,
            user_id=user_id,
            user_email=user_email,
            line_items=line_items,
            amount=amount,
            metadata={"isPack": "false"},
        )

    def start_pack_checkout(
        self,
        product_id: str,
        slot_ids: list[str],
        user_id: str,
        user_email: str,
    ) -> CheckoutResult:
        _require_identity(user_id, user_email)
        ids = unique_ids(slot_ids)
        product = self.catalog_repository.get_product(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found", public_message="Pack not found.")
        if not product.is_active:
            raise ProductMismatchError(
                f"Product {product_id} is not active",
                public_message="This pack is no longer on sale.",
            )
        if len(ids) != product.slots_required:
            raise ProductMismatchError(
                f"Product {product.name} requires {product.slots_required} slots, got {len(ids)}"
            )

        slots = self._load_slots(ids)
        if _single_event_id(slots) != product.event_id:
            raise ProductMismatchError(f"Slots do not belong to the event of product {product.id}")
        event = self._open_event(product.event_id)

        return self._checkout(
            event=event,
            slot_ids=ids,
            user_id=user_id,
            user_email=user_email,
            line_items=[
                price_line_item(product.name, product.price, self.currency, product.stripe_price_id)
            ],
            amount=product.price,
            metadata={"isPack": "true", "productId": product.id, "productName": product.name},
            pack_name=product.name,
        )

    def redeem_voucher(
        self,
        event_id: str,
        code: str,
        slot_ids: list[str],
        user_id: str,
        user_email: str | None = None,
        now: datetime | None = None,
    ) -> Payment:
        """
        Entitle a user to a product without payment. Slots are reserved
        and finalized in one transaction; a single-use voucher is spent in
        that same transaction.
        """
        if not user_id:
            raise ValidationError("userId is required")
        if not code or not code.strip():
            raise ValidationError("A voucher code is required")
        ids = unique_ids(slot_ids)
        now = now or utc_now()
        event = self._open_event(event_id, now=now)

        voucher = self.catalog_repository.get_voucher_by_code(event_id, code.strip())
        if voucher is None:
            raise VoucherError(f"Unknown voucher code {code!r} for event {event_id}")
        if voucher.expires_at is not None and as_utc(voucher.expires_at) < now:
            raise VoucherError(f"Voucher {voucher.id} expired", public_message="This voucher has expired.")
        if voucher.is_single_use and voucher.is_used:
            raise VoucherError(f"Voucher {voucher.id} already used", public_message="This voucher was already used.")

        product = self.catalog_repository.get_product(voucher.product_id)
        if product is None:
            raise NotFoundError(f"Product {voucher.product_id} of voucher {voucher.id} not found")
        if len(ids) != product.slots_required:
            raise ProductMismatchError(
                f"Voucher product {product.name} requires {product.slots_required} slots, got {len(ids)}"
            )

        reservation = self.reservations.reserve(event.id, ids, user_id, mode=SlotStatus.LOCKED, now=now)
        if voucher.is_single_use and not self.catalog_repository.mark_voucher_used(voucher.id, user_id):
            self.db.rollback()
            raise VoucherError(f"Voucher {voucher.id} redeemed concurrently", public_message="This voucher was already used.")

        payment = self.payment_repository.create_payment(
            event_id=event.id,
            user_id=user_id,
            amount=0,
            currency=self.currency,
            source=PaymentSource.ADMIN,
            status=PaymentStatus.PAID,
            slot_ids=ids,
            is_pack=product.is_pack,
            pack_name=product.name,
            extra={"voucherId": voucher.id, "voucherCode": voucher.code},
        )
        self.reservations.finalize(
            ids,
            payment.id,
            user_id,
            assignment_type=AssignmentType.VOUCHER,
            now=now,
        )
        self.user_repository.mark_registration_paid(
            user_id,
            event.id,
            payment.id,
            [slot.category_id for slot in reservation.slots],
            email=user_email,
        )
        self.db.commit()
        logger.info(
            "Voucher redeemed. voucher_id=%s user_id=%s payment_id=%s slot_ids=%s",
            voucher.id,
            user_id,
            payment.id,
            ids,
        )
        return payment

    def _checkout(
        self,
        event: Event,
        slot_ids: list[str],
        user_id: str,
        user_email: str,
        line_items: list[dict],
        amount: int,
        metadata: dict[str, str],
        pack_name: str | None = None,
    ) -> CheckoutResult:
        reservation = self.reservations.reserve(event.id, slot_ids, user_id, mode=SlotStatus.PENDING)
        # The hold must be durable before the gateway call; no transaction
        # stays open across it.
        self.db.commit()

        session_metadata = {
            "userId": user_id,
            "userEmail": user_email,
            "eventId": event.id,
            "slotIds": encode_slot_ids(slot_ids),
            **metadata,
        }
        try:
            session = self.gateway.create_session(
                line_items=line_items,
                metadata=session_metadata,
                customer_email=user_email,
                expires_at=reservation.expires_at,
            )
        except Exception:
            self._compensate(slot_ids, user_id)
            raise

        try:
            self.reservations.attach_session(
                slot_ids,
                session.id,
                user_id,
                session_expires_at=session.expires_at,
            )
            payment = self.payment_repository.create_payment(
                event_id=event.id,
                user_id=user_id,
                amount=amount,
                currency=self.currency,
                source=PaymentSource.STRIPE,
                status=PaymentStatus.PENDING,
                slot_ids=slot_ids,
                stripe_session_id=session.id,
                is_pack=pack_name is not None,
                pack_name=pack_name,
                extra={"userEmail": user_email},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            self._compensate(slot_ids, user_id, session_id=session.id)
            raise

        logger.info(
            "Checkout session created. session_id=%s user_id=%s event_id=%s slot_ids=%s amount=%s",
            session.id,
            user_id,
            event.id,
            slot_ids,
            amount,
        )
        return CheckoutResult(
            session_id=session.id,
            url=session.url,
            payment_id=payment.id,
            expires_at=session.expires_at or reservation.expires_at,
        )

    def _compensate(self, slot_ids: list[str], user_id: str, session_id: str | None = None) -> None:
        """Release the holds taken by a checkout that could not complete."""
        self.db.rollback()
        held = [
            slot.id
            for slot in self.slot_repository.lock_many(slot_ids)
            if slot.user_id == user_id
            and slot.status in {status.value for status in EXPIRING_HOLD_STATUSES}
            and slot.checkout_session_id in (None, session_id)
        ]
        if held:
            self.reservations.release(held)
        self.db.commit()
        logger.warning(
            "Compensating release after failed checkout. user_id=%s slot_ids=%s",
            user_id,
            held,
        )

        if session_id is not None:
            try:
                self.gateway.expire_session(session_id)
            except UpstreamGatewayError:
                # The expiry webhook or the sweep still covers this session.
                logger.exception("Could not expire abandoned session. session_id=%s", session_id)

    def _load_slots(self, slot_ids: list[str]) -> list[Slot]:
        slots = [self.slot_repository.get_by_id(slot_id) for slot_id in slot_ids]
        missing = [slot_id for slot_id, slot in zip(slot_ids, slots) if slot is None]
        if missing:
            raise SlotUnavailableError(missing, "unknown")
        return slots

    def _open_event(self, event_id: str, now: datetime | None = None) -> Event:
        event = self.catalog_repository.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found", public_message="Event not found.")
        if event.status != EventStatus.OPEN.value:
            raise EventLockedError(f"Event {event.id} is {event.status}")
        if as_utc(event.registration_deadline) < (now or utc_now()):
            raise EventLockedError(f"Registration deadline of event {event.id} has passed")
        return event


def _require_identity(user_id: str, user_email: str) -> None:
    if not user_id or not user_email:
        raise ValidationError("userId and userEmail are required")


def _single_event_id(slots: list[Slot]) -> str:
    event_ids = {slot.event_id for slot in slots}
    if len(event_ids) != 1:
        raise ValidationError("All slots of a checkout must belong to the same event")
    return event_ids.pop()
