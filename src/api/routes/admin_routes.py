from datetime import date
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from src.api.dependencies import get_db, require_admin
from src.api.schemas.schemas import (
    AdminSlotResponse,
    AuditReportResponse,
    CategoryCreate,
    CategoryResponse,
    CategoryUpdate,
    EventCreate,
    EventResponse,
    EventUpdate,
    ManualPaymentRequest,
    PaymentResponse,
    ProductCreate,
    ProductResponse,
    ProductUpdate,
    ReconcileRequest,
    RegistrationResponse,
    SlotAssignRequest,
    SlotBulkAssignRequest,
    SlotCreate,
    SlotGenerateRequest,
    SlotIdsRequest,
    SlotIdsResponse,
    SweepResponse,
    UserResponse,
    UserRoleUpdate,
    UserUpsert,
    VoucherCreate,
    VoucherResponse,
)
from src.application.admin_service import AdminService
from src.application.audit_service import AuditService
from src.application.hold_sweeper import HoldSweeper
from src.domain.clock import as_utc
from src.domain.exceptions import NotFoundError
from src.domain.state_machine import PaymentSource, SlotStatus
from src.infrastructure.db.models import (
    Category,
    Event,
    Payment,
    Product,
    Registration,
    Slot,
    User,
    Voucher,
)
from src.infrastructure.repositories.catalog_repository import CatalogRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository
from src.infrastructure.repositories.slot_repository import SlotRepository
from src.infrastructure.repositories.user_repository import UserRepository


router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


# -----------------------------
# Response builders
# -----------------------------
def _event_response(event: Event) -> EventResponse:
    return EventResponse(
        id=event.id,
        name=event.name,
        year=event.year,
        start_at=as_utc(event.start_at),
        end_at=as_utc(event.end_at),
        registration_deadline=as_utc(event.registration_deadline),
        status=event.status,
    )


def _category_response(category: Category) -> CategoryResponse:
    return CategoryResponse(
        id=category.id,
        event_id=category.event_id,
        name=category.name,
        description=category.description,
        rules=category.rules,
        unit_price=category.unit_price,
        max_slots=category.max_slots,
        duration_minutes=category.duration_minutes,
        is_active=category.is_active,
        active_dates=list(category.active_dates or []),
        stripe_price_id=category.stripe_price_id,
    )


def _product_response(product: Product) -> ProductResponse:
    return ProductResponse(
        id=product.id,
        event_id=product.event_id,
        name=product.name,
        description=product.description,
        price=product.price,
        slots_required=product.slots_required,
        is_pack=product.is_pack,
        includes_meal=product.includes_meal,
        is_active=product.is_active,
        stripe_price_id=product.stripe_price_id,
    )


def _voucher_response(voucher: Voucher) -> VoucherResponse:
    return VoucherResponse(
        id=voucher.id,
        event_id=voucher.event_id,
        code=voucher.code,
        product_id=voucher.product_id,
        is_single_use=voucher.is_single_use,
        is_used=voucher.is_used,
        user_id=voucher.user_id,
        expires_at=as_utc(voucher.expires_at),
    )


def _slot_response(slot: Slot) -> AdminSlotResponse:
    return AdminSlotResponse(
        id=slot.id,
        event_id=slot.event_id,
        category_id=slot.category_id,
        date=slot.date,
        start_at=as_utc(slot.start_at),
        end_at=as_utc(slot.end_at),
        status=slot.status,
        available=slot.status == SlotStatus.AVAILABLE.value,
        user_id=slot.user_id,
        checkout_session_id=slot.checkout_session_id,
        hold_expires_at=as_utc(slot.hold_expires_at),
        payment_id=slot.payment_id,
        assignment_type=slot.assignment_type,
        assigned_by=slot.assigned_by,
        assigned_at=as_utc(slot.assigned_at),
    )


def _registration_response(registration: Registration) -> RegistrationResponse:
    return RegistrationResponse(
        user_id=registration.user_id,
        event_id=registration.event_id,
        paid=registration.paid,
        category_ids=list(registration.category_ids or []),
        payment_id=registration.payment_id,
        registered_at=as_utc(registration.registered_at),
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        first_name=user.first_name,
        last_name=user.last_name,
        email=user.email,
        country=user.country,
        phone=user.phone,
        role=user.role,
        registrations=[_registration_response(item) for item in user.registrations],
    )


def _payment_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        event_id=payment.event_id,
        user_id=payment.user_id,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        source=payment.source,
        slot_ids=list(payment.slot_ids or []),
        stripe_session_id=payment.stripe_session_id,
        stripe_payment_intent_id=payment.stripe_payment_intent_id,
        is_pack=payment.is_pack,
        pack_name=payment.pack_name,
        metadata=dict(payment.extra or {}),
    )


def _category_fields(request) -> dict:
    fields = request.model_dump(exclude_unset=True)
    if fields.get("active_dates") is not None:
        fields["active_dates"] = [day.isoformat() for day in fields["active_dates"]]
    return fields


# -----------------------------
# Events
# -----------------------------
@router.get("/events", response_model=list[EventResponse])
def list_events(
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    return [_event_response(event) for event in CatalogRepository(db).list_events()]


@router.post("/events", response_model=EventResponse)
def create_event(
    request: EventCreate,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    event = AdminService(db).create_event(**request.model_dump())
    return _event_response(event)


@router.patch("/events/{event_id}", response_model=EventResponse)
def update_event(
    event_id: str,
    request: EventUpdate,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    event = AdminService(db).update_event(event_id, **request.model_dump(exclude_unset=True))
    return _event_response(event)


# -----------------------------
# Categories
# -----------------------------
@router.get("/events/{event_id}/categories", response_model=list[CategoryResponse])
def list_categories(
    event_id: str,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    return [_category_response(item) for item in CatalogRepository(db).list_categories(event_id)]


@router.post("/events/{event_id}/categories", response_model=CategoryResponse)
def create_category(
    event_id: str,
    request: CategoryCreate,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    category = AdminService(db).create_category(event_id, **_category_fields(request))
    return _category_response(category)


@router.patch("/categories/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: str,
    request: CategoryUpdate,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    category = AdminService(db).update_category(category_id, **_category_fields(request))
    return _category_response(category)


@router.delete("/categories/{category_id}")
def delete_category(
    category_id: str,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    AdminService(db).delete_category(category_id)
    return {"deleted": category_id}


# -----------------------------
# Products and vouchers
# -----------------------------
@router.get("/events/{event_id}/products", response_model=list[ProductResponse])
def list_products(
    event_id: str,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    return [_product_response(item) for item in CatalogRepository(db).list_products(event_id)]


@router.post("/events/{event_id}/products", response_model=ProductResponse)
def create_product(
    event_id: str,
    request: ProductCreate,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    product = AdminService(db).create_product(event_id, **request.model_dump())
    return _product_response(product)


@router.patch("/products/{product_id}", response_model=ProductResponse)
def update_product(
    product_id: str,
    request: ProductUpdate,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    product = AdminService(db).update_product(product_id, **request.model_dump(exclude_unset=True))
    return _product_response(product)


@router.get("/events/{event_id}/vouchers", response_model=list[VoucherResponse])
def list_vouchers(
    event_id: str,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    return [_voucher_response(item) for item in CatalogRepository(db).list_vouchers(event_id)]


@router.post("/events/{event_id}/vouchers", response_model=VoucherResponse)
def create_voucher(
    event_id: str,
    request: VoucherCreate,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    voucher = AdminService(db).create_voucher(event_id, **request.model_dump())
    return _voucher_response(voucher)


@router.delete("/vouchers/{voucher_id}")
def delete_voucher(
    voucher_id: str,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    AdminService(db).delete_voucher(voucher_id)
    return {"deleted": voucher_id}


# -----------------------------
# Slots
# -----------------------------
@router.get("/events/{event_id}/slots", response_model=list[AdminSlotResponse])
def list_slots(
    event_id: str,
    date: date | None = None,
    category_id: str | None = None,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    slots = SlotRepository(db).list_for_event(event_id, on_date=date, category_id=category_id)
    return [_slot_response(slot) for slot in slots]


@router.post("/events/{event_id}/slots", response_model=AdminSlotResponse)
def create_slot(
    event_id: str,
    request: SlotCreate,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    slot = AdminService(db).create_slot(
        event_id,
        request.category_id,
        request.date,
        request.start_time,
        request.end_time,
    )
    return _slot_response(slot)


@router.post("/events/{event_id}/slots/generate", response_model=list[AdminSlotResponse])
def generate_slots(
    event_id: str,
    request: SlotGenerateRequest,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    slots = AdminService(db).generate_slots(
        event_id,
        request.category_id,
        request.date,
        request.day_start,
        request.day_end,
        duration_minutes=request.duration_minutes,
        break_minutes=request.break_minutes,
    )
    return [_slot_response(slot) for slot in slots]


@router.delete("/events/{event_id}/slots", response_model=SlotIdsResponse)
def delete_slots_by_date(
    event_id: str,
    date: date = Query(...),
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    deleted = AdminService(db).delete_slots_by_date(event_id, date)
    logger.warning("Slots deleted by date. event_id=%s date=%s admin_id=%s", event_id, date, admin_id)
    return SlotIdsResponse(slot_ids=deleted)


@router.delete("/slots/{slot_id}", response_model=SlotIdsResponse)
def delete_slot(
    slot_id: str,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    AdminService(db).delete_slot(slot_id)
    return SlotIdsResponse(slot_ids=[slot_id])


@router.post("/slots/{slot_id}/assign", response_model=AdminSlotResponse)
def assign_slot(
    slot_id: str,
    request: SlotAssignRequest,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    slot = AdminService(db).assign(slot_id, request.user_id, admin_id=admin_id)
    return _slot_response(slot)


@router.post("/slots/assign-bulk", response_model=list[AdminSlotResponse])
def assign_slots_bulk(
    request: SlotBulkAssignRequest,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    slots = AdminService(db).assign_bulk(request.slot_ids, request.user_id, admin_id=admin_id)
    return [_slot_response(slot) for slot in slots]


@router.post("/slots/unassign", response_model=SlotIdsResponse)
def unassign_slots(
    request: SlotIdsRequest,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    released = AdminService(db).unassign(request.slot_ids)
    return SlotIdsResponse(slot_ids=released)


@router.post("/slots/refund", response_model=SlotIdsResponse)
def refund_slots(
    request: SlotIdsRequest,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    refunded = AdminService(db).refund_slots(request.slot_ids, admin_id=admin_id)
    return SlotIdsResponse(slot_ids=refunded)


# -----------------------------
# Users
# -----------------------------
@router.get("/users", response_model=list[UserResponse])
def list_users(
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    return [_user_response(user) for user in UserRepository(db).list_all()]


@router.put("/users/{user_id}", response_model=UserResponse)
def upsert_user(
    user_id: str,
    request: UserUpsert,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    fields = request.model_dump(exclude_unset=True, exclude_none=True)
    user = AdminService(db).upsert_user(user_id, **fields)
    return _user_response(user)


@router.patch("/users/{user_id}/role", response_model=UserResponse)
def set_user_role(
    user_id: str,
    request: UserRoleUpdate,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    user = AdminService(db).set_user_role(user_id, request.role.value)
    return _user_response(user)


@router.delete("/users/{user_id}")
def delete_user(
    user_id: str,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    AdminService(db).delete_user(user_id)
    return {"deleted": user_id}


# -----------------------------
# Payments and reports
# -----------------------------
@router.get("/events/{event_id}/payments", response_model=list[PaymentResponse])
def list_payments(
    event_id: str,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    return [_payment_response(item) for item in PaymentRepository(db).list_for_event(event_id)]


@router.post("/payments/manual", response_model=PaymentResponse)
def record_manual_payment(
    request: ManualPaymentRequest,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    payment = AdminService(db).record_manual_payment(
        event_id=request.event_id,
        user_id=request.user_id,
        amount=request.amount,
        source=PaymentSource(request.source),
        slot_ids=request.slot_ids,
        note=request.note,
        admin_id=admin_id,
    )
    return _payment_response(payment)


@router.get("/events/{event_id}/audit", response_model=AuditReportResponse)
def audit_event(
    event_id: str,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    return AuditService(db).report(event_id).to_dict()


@router.post("/reconcile", response_model=RegistrationResponse)
def reconcile_user(
    request: ReconcileRequest,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    registration = AuditService(db).reconcile_user_from_payment(request.user_id, request.payment_id)
    logger.info(
        "Reconciliation requested. user_id=%s payment_id=%s admin_id=%s",
        request.user_id,
        request.payment_id,
        admin_id,
    )
    return _registration_response(registration)


@router.post("/holds/sweep", response_model=SweepResponse)
def sweep_holds(
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    result = HoldSweeper(db).sweep()
    return SweepResponse(
        released_slot_ids=result.released_slot_ids,
        failed_payment_ids=result.failed_payment_ids,
    )


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(
    payment_id: str,
    db: Session = Depends(get_db),
    admin_id: str = Depends(require_admin),
):
    payment = PaymentRepository(db).get_by_id(payment_id)
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found")
    return _payment_response(payment)
