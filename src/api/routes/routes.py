from datetime import date
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from src.api.dependencies import get_db, get_payment_gateway
from src.api.schemas.schemas import (
    CheckoutResponse,
    PackCheckoutRequest,
    SingleCheckoutRequest,
    SlotResponse,
    VoucherRedeemRequest,
    VoucherRedeemResponse,
    WebhookResponse,
)
from src.application.checkout_service import CheckoutResult, CheckoutService
from src.application.webhook_service import WebhookService
from src.domain.clock import as_utc
from src.domain.exceptions import NotFoundError, SignatureVerificationError, ValidationError
from src.domain.state_machine import SlotStatus
from src.infrastructure.db.models import Slot
from src.infrastructure.payments.stripe_gateway import PaymentGateway
from src.infrastructure.repositories.catalog_repository import CatalogRepository
from src.infrastructure.repositories.slot_repository import SlotRepository


router = APIRouter()
logger = logging.getLogger(__name__)


def _slot_response(slot: Slot) -> SlotResponse:
    return SlotResponse(
        id=slot.id,
        event_id=slot.event_id,
        category_id=slot.category_id,
        date=slot.date,
        start_at=as_utc(slot.start_at),
        end_at=as_utc(slot.end_at),
        status=slot.status,
        available=slot.status == SlotStatus.AVAILABLE.value,
    )


def _checkout_response(result: CheckoutResult) -> CheckoutResponse:
    return CheckoutResponse(
        session_id=result.session_id,
        url=result.url,
        payment_id=result.payment_id,
        expires_at=result.expires_at,
    )


@router.get("/health")
def health():
    return {"message": "Pizza Trophy booking service is running"}


@router.get("/events/{event_id}/slots", response_model=list[SlotResponse])
def list_event_slots(
    event_id: str,
    date: date | None = None,
    category_id: str | None = None,
    db: Session = Depends(get_db),
):
    if CatalogRepository(db).get_event(event_id) is None:
        raise NotFoundError(f"Event {event_id} not found", public_message="Event not found.")
    slots = SlotRepository(db).list_for_event(event_id, on_date=date, category_id=category_id)
    return [_slot_response(slot) for slot in slots]


@router.post("/checkout/single", response_model=CheckoutResponse)
def checkout_single(
    request: SingleCheckoutRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    service = CheckoutService(db, gateway)
    result = service.start_single_checkout(
        slot_ids=request.slot_ids,
        user_id=request.user_id,
        user_email=request.user_email,
    )
    return _checkout_response(result)


@router.post("/checkout/pack", response_model=CheckoutResponse)
def checkout_pack(
    request: PackCheckoutRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    service = CheckoutService(db, gateway)
    result = service.start_pack_checkout(
        product_id=request.product_id,
        slot_ids=request.slot_ids,
        user_id=request.user_id,
        user_email=request.user_email,
    )
    return _checkout_response(result)


@router.post("/checkout/voucher", response_model=VoucherRedeemResponse)
def checkout_voucher(
    request: VoucherRedeemRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    service = CheckoutService(db, gateway)
    payment = service.redeem_voucher(
        event_id=request.event_id,
        code=request.code,
        slot_ids=request.slot_ids,
        user_id=request.user_id,
        user_email=request.user_email,
    )
    return VoucherRedeemResponse(
        payment_id=payment.id,
        slot_ids=payment.slot_ids,
        status=payment.status,
    )


async def _raw_body(request: Request) -> bytes:
    # Signature verification needs the body exactly as received.
    return await request.body()


@router.post("/webhook/payment", response_model=WebhookResponse)
def payment_webhook(
    payload: bytes = Depends(_raw_body),
    stripe_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):

    service = WebhookService(db, gateway)
    try:
        outcome = service.handle(payload, stripe_signature)
    except (SignatureVerificationError, ValidationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.public_message,
        ) from exc

    logger.info("Webhook processed. type=%s result=%s", outcome.event_type, outcome.result)
    return WebhookResponse(received=True, event_type=outcome.event_type, result=outcome.result)
