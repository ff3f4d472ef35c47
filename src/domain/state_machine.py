# src/domain/state_machine.py

from enum import Enum
from typing import Dict, Set

from src.domain.exceptions import InvalidStateTransitionError


class SlotStatus(str, Enum):
    AVAILABLE = "available"
    LOCKED = "locked"
    PENDING = "pending"
    OFFERED = "offered"
    PAID = "paid"


class EventStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    CLOSED = "closed"
    ARCHIVED = "archived"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"


class PaymentSource(str, Enum):
    STRIPE = "stripe"
    MANUAL = "manual"
    ADMIN = "admin"


class AssignmentType(str, Enum):
    MANUAL = "manual"
    PAYMENT = "payment"
    VOUCHER = "voucher"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"
    JURY = "jury"


HOLD_STATUSES = frozenset(
    {SlotStatus.LOCKED, SlotStatus.PENDING, SlotStatus.OFFERED}
)

# Holds created by a checkout; admin offers never expire on their own.
EXPIRING_HOLD_STATUSES = frozenset({SlotStatus.LOCKED, SlotStatus.PENDING})

# Events in these states accept slot creation and assignment.
EDITABLE_EVENT_STATUSES = frozenset({EventStatus.DRAFT, EventStatus.OPEN})


class SlotStateMachine:
    """
    Central lifecycle controller for slot transitions.
    ``paid -> available`` only happens through ``ReservationService.refund``.
    """

    _ALLOWED_TRANSITIONS: Dict[SlotStatus, Set[SlotStatus]] = {
        SlotStatus.AVAILABLE: {
            SlotStatus.LOCKED,
            SlotStatus.PENDING,
            SlotStatus.OFFERED,
        },
        SlotStatus.LOCKED: {
            SlotStatus.PAID,
            SlotStatus.AVAILABLE,
        },
        SlotStatus.PENDING: {
            SlotStatus.PAID,
            SlotStatus.AVAILABLE,
        },
        SlotStatus.OFFERED: {
            SlotStatus.PAID,
            SlotStatus.AVAILABLE,
        },
        SlotStatus.PAID: set(),
    }

    @classmethod
    def can_transition(
        cls,
        from_status: SlotStatus,
        to_status: SlotStatus,
    ) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(
        cls,
        from_status: SlotStatus,
        to_status: SlotStatus,
    ) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_hold(cls, status: SlotStatus) -> bool:
        cls._ensure_valid_status(status)
        return status in HOLD_STATUSES

    @classmethod
    def get_allowed_transitions(
        cls, status: SlotStatus
    ) -> Set[SlotStatus]:
        """
        Returns allowed next states from current state.
        """
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @staticmethod
    def _ensure_valid_status(status: SlotStatus) -> None:
        if not isinstance(status, SlotStatus):
            raise TypeError(
                f"Expected SlotStatus, got {type(status)}"
            )
