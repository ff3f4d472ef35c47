from datetime import date as calendar_date, datetime, time
from typing import Literal

from pydantic import BaseModel, Field

from src.domain.state_machine import EventStatus, UserRole


# -----------------------------
# Public
# -----------------------------
class SlotResponse(BaseModel):
    id: str
    event_id: str
    category_id: str
    date: calendar_date
    start_at: datetime
    end_at: datetime
    status: str
    available: bool


class SingleCheckoutRequest(BaseModel):
    user_id: str = Field(min_length=1)
    user_email: str = Field(min_length=3)
    slot_ids: list[str] = Field(min_length=1)


class PackCheckoutRequest(SingleCheckoutRequest):
    product_id: str


class CheckoutResponse(BaseModel):
    session_id: str
    url: str
    payment_id: str
    expires_at: datetime | None = None


class VoucherRedeemRequest(BaseModel):
    event_id: str
    code: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    user_email: str | None = None
    slot_ids: list[str] = Field(min_length=1)


class VoucherRedeemResponse(BaseModel):
    payment_id: str
    slot_ids: list[str]
    status: str


class WebhookResponse(BaseModel):
    received: bool
    event_type: str
    result: str


# -----------------------------
# Admin: events and catalogue
# -----------------------------
class EventCreate(BaseModel):
    name: str = Field(min_length=1)
    year: int = Field(gt=2000)
    start_at: datetime
    end_at: datetime
    registration_deadline: datetime
    status: EventStatus = EventStatus.DRAFT


class EventUpdate(BaseModel):
    name: str | None = None
    year: int | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    registration_deadline: datetime | None = None
    status: EventStatus | None = None


class EventResponse(BaseModel):
    id: str
    name: str
    year: int
    start_at: datetime
    end_at: datetime
    registration_deadline: datetime
    status: str


class CategoryCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    rules: str = ""
    unit_price: int = Field(ge=0)
    max_slots: int = Field(ge=0)
    duration_minutes: int = Field(gt=0)
    is_active: bool = True
    active_dates: list[calendar_date] = []
    stripe_price_id: str | None = None


class CategoryUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    rules: str | None = None
    unit_price: int | None = Field(default=None, ge=0)
    max_slots: int | None = Field(default=None, ge=0)
    duration_minutes: int | None = Field(default=None, gt=0)
    is_active: bool | None = None
    active_dates: list[calendar_date] | None = None
    stripe_price_id: str | None = None


class CategoryResponse(BaseModel):
    id: str
    event_id: str
    name: str
    description: str
    rules: str
    unit_price: int
    max_slots: int
    duration_minutes: int
    is_active: bool
    active_dates: list[str]
    stripe_price_id: str | None = None


class ProductCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    price: int = Field(ge=0)
    slots_required: int = Field(gt=0)
    is_pack: bool = True
    includes_meal: bool = False
    is_active: bool = True
    stripe_price_id: str | None = None


class ProductUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    price: int | None = Field(default=None, ge=0)
    slots_required: int | None = Field(default=None, gt=0)
    is_pack: bool | None = None
    includes_meal: bool | None = None
    is_active: bool | None = None
    stripe_price_id: str | None = None


class ProductResponse(BaseModel):
    id: str
    event_id: str
    name: str
    description: str
    price: int
    slots_required: int
    is_pack: bool
    includes_meal: bool
    is_active: bool
    stripe_price_id: str | None = None


class VoucherCreate(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    product_id: str
    is_single_use: bool = True
    expires_at: datetime | None = None


class VoucherResponse(BaseModel):
    id: str
    event_id: str
    code: str
    product_id: str
    is_single_use: bool
    is_used: bool
    user_id: str | None = None
    expires_at: datetime | None = None


# -----------------------------
# Admin: slots
# -----------------------------
class SlotCreate(BaseModel):
    category_id: str
    date: calendar_date
    start_time: time
    end_time: time | None = None


class SlotGenerateRequest(BaseModel):
    category_id: str
    date: calendar_date
    day_start: time
    day_end: time
    duration_minutes: int | None = Field(default=None, gt=0)
    break_minutes: int = Field(default=0, ge=0)


class AdminSlotResponse(SlotResponse):
    user_id: str | None = None
    checkout_session_id: str | None = None
    hold_expires_at: datetime | None = None
    payment_id: str | None = None
    assignment_type: str | None = None
    assigned_by: str | None = None
    assigned_at: datetime | None = None


class SlotAssignRequest(BaseModel):
    user_id: str = Field(min_length=1)


class SlotBulkAssignRequest(BaseModel):
    user_id: str = Field(min_length=1)
    slot_ids: list[str] = Field(min_length=1)


class SlotIdsRequest(BaseModel):
    slot_ids: list[str] = Field(min_length=1)


class SlotIdsResponse(BaseModel):
    slot_ids: list[str]


# -----------------------------
# Admin: users and payments
# -----------------------------
class UserUpsert(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    country: str | None = None
    phone: str | None = None


class UserRoleUpdate(BaseModel):
    role: UserRole


class RegistrationResponse(BaseModel):
    user_id: str
    event_id: str
    paid: bool
    category_ids: list[str]
    payment_id: str | None = None
    registered_at: datetime | None = None


class UserResponse(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: str
    country: str
    phone: str
    role: str
    registrations: list[RegistrationResponse]


class ManualPaymentRequest(BaseModel):
    event_id: str
    user_id: str
    amount: int = Field(ge=0)
    source: Literal["manual", "admin"] = "manual"
    slot_ids: list[str] = []
    note: str | None = None


class PaymentResponse(BaseModel):
    id: str
    event_id: str
    user_id: str
    amount: int
    currency: str
    status: str
    source: str
    slot_ids: list[str]
    stripe_session_id: str | None = None
    stripe_payment_intent_id: str | None = None
    is_pack: bool
    pack_name: str | None = None
    metadata: dict


# -----------------------------
# Admin: reports
# -----------------------------
class AuditIssueResponse(BaseModel):
    kind: str
    detail: str
    user_id: str | None = None
    payment_id: str | None = None
    slot_id: str | None = None


class AuditReportResponse(BaseModel):
    event_id: str
    generated_at: datetime
    counts: dict[str, int]
    issues: list[AuditIssueResponse]


class ReconcileRequest(BaseModel):
    user_id: str
    payment_id: str


class SweepResponse(BaseModel):
    released_slot_ids: list[str]
    failed_payment_ids: list[str]
