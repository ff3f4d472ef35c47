# tests/unit/test_state_machine.py

import pytest

from src.domain.state_machine import SlotStateMachine, SlotStatus
from src.domain.exceptions import InvalidStateTransitionError


# ---------------------
# VALID TRANSITIONS
# ---------------------

def test_valid_checkout_path():
    assert SlotStateMachine.can_transition(
        SlotStatus.AVAILABLE,
        SlotStatus.PENDING,
    )

    assert SlotStateMachine.can_transition(
        SlotStatus.PENDING,
        SlotStatus.PAID,
    )


def test_valid_voucher_and_offer_paths():
    assert SlotStateMachine.can_transition(SlotStatus.AVAILABLE, SlotStatus.LOCKED)
    assert SlotStateMachine.can_transition(SlotStatus.LOCKED, SlotStatus.PAID)
    assert SlotStateMachine.can_transition(SlotStatus.AVAILABLE, SlotStatus.OFFERED)
    assert SlotStateMachine.can_transition(SlotStatus.OFFERED, SlotStatus.PAID)


def test_every_hold_can_be_released():
    for status in (SlotStatus.LOCKED, SlotStatus.PENDING, SlotStatus.OFFERED):
        assert SlotStateMachine.can_transition(status, SlotStatus.AVAILABLE)


# ---------------------
# INVALID TRANSITIONS
# ---------------------

def test_cannot_skip_hold():
    with pytest.raises(InvalidStateTransitionError):
        SlotStateMachine.validate_transition(
            SlotStatus.AVAILABLE,
            SlotStatus.PAID,
        )


def test_paid_has_no_regular_exit():
    assert SlotStateMachine.get_allowed_transitions(SlotStatus.PAID) == set()

    with pytest.raises(InvalidStateTransitionError):
        SlotStateMachine.validate_transition(
            SlotStatus.PAID,
            SlotStatus.AVAILABLE,
        )


def test_hold_cannot_move_to_another_hold():
    with pytest.raises(InvalidStateTransitionError):
        SlotStateMachine.validate_transition(
            SlotStatus.PENDING,
            SlotStatus.OFFERED,
        )


# ---------------------
# HELPERS
# ---------------------

def test_is_hold():
    assert SlotStateMachine.is_hold(SlotStatus.PENDING)
    assert SlotStateMachine.is_hold(SlotStatus.OFFERED)
    assert not SlotStateMachine.is_hold(SlotStatus.AVAILABLE)
    assert not SlotStateMachine.is_hold(SlotStatus.PAID)


def test_invalid_type_rejected():
    with pytest.raises(TypeError):
        SlotStateMachine.can_transition("pending", SlotStatus.PAID)
