"""
Transaction and escrow transition table tests
"""

import pytest
from types import SimpleNamespace

from models import EscrowStatus, TransactionStatus
from utils.escrow_state_validator import EscrowStateValidator
from utils.exceptions import StateError
from utils.transaction_state_validator import (
    DEADLINE_RELEASABLE_STATES, QUALITY_ASSESSABLE_STATES, TransactionEvent, TransactionStateValidator
)

S = TransactionStatus


class TestTransactionEvents:

    @pytest.mark.parametrize("status", [S.QUALITY_PENDING, S.DELIVERY_CONFIRMED, S.QUALITY_CHECK])
    def test_quality_decisions_allowed_from_assessable_states(self, status):
        assert TransactionStateValidator.validate_event(status, TransactionEvent.APPROVE_QUALITY) == S.QUALITY_APPROVED
        assert TransactionStateValidator.validate_event(status, TransactionEvent.REJECT_QUALITY) == S.QUALITY_REJECTED

    @pytest.mark.parametrize("status", [s for s in S if s not in QUALITY_ASSESSABLE_STATES])
    def test_quality_decisions_rejected_elsewhere(self, status):
        with pytest.raises(StateError):
            TransactionStateValidator.validate_event(status, TransactionEvent.APPROVE_QUALITY)

    def test_release_only_after_buyer_holds_goods(self):
        assert TransactionStateValidator.allowed_sources(TransactionEvent.RELEASE_FUNDS) == DEADLINE_RELEASABLE_STATES
        assert S.QUALITY_REJECTED not in DEADLINE_RELEASABLE_STATES
        assert S.SHIPPED not in DEADLINE_RELEASABLE_STATES

    def test_payment_paths(self):
        assert TransactionStateValidator.target_for(TransactionEvent.CONFIRM_PAYMENT) == S.PAYMENT_RECEIVED
        assert TransactionStateValidator.target_for(TransactionEvent.CONFIRM_FULL_PAYMENT) == S.ESCROW_HELD
        assert TransactionStateValidator.is_valid_transition(S.PAYMENT_RECEIVED, S.ESCROW_HELD)

    def test_terminal_state_error_carries_status(self):
        with pytest.raises(StateError) as exc_info:
            TransactionStateValidator.validate_event(S.COMPLETED, TransactionEvent.REFUND, transaction_id=7)
        assert exc_info.value.current_status == "completed"
        assert exc_info.value.http_status == 400

    def test_no_backwards_transitions(self):
        assert not TransactionStateValidator.is_valid_transition(S.FUNDS_RELEASED, S.QUALITY_APPROVED)
        assert not TransactionStateValidator.is_valid_transition(S.PAYMENT_PENDING, S.SHIPPED)
        assert not TransactionStateValidator.is_valid_transition("funds_released", "not_a_status")

    def test_terminal_states_have_no_exits(self):
        for status in TransactionStateValidator.TERMINAL_STATES:
            assert TransactionStateValidator.is_terminal(status)
            assert TransactionStateValidator.VALID_TRANSITIONS[status] == set()
        assert not TransactionStateValidator.is_terminal(S.FUNDS_RELEASED)


class TestEscrowTransitions:

    def test_held_escrow_can_release(self):
        escrow = SimpleNamespace(id=1, status=EscrowStatus.HELD.value)
        EscrowStateValidator.validate_and_transition(escrow, EscrowStatus.RELEASED)
        assert escrow.status == "released"

    def test_pending_escrow_cannot_release(self):
        escrow = SimpleNamespace(id=1, status=EscrowStatus.PENDING.value)
        with pytest.raises(StateError) as exc_info:
            EscrowStateValidator.validate_and_transition(escrow, EscrowStatus.RELEASED)
        assert exc_info.value.error_code == "INVALID_ESCROW_STATE"
        assert escrow.status == "pending"

    def test_disputed_escrow_can_be_refunded(self):
        escrow = SimpleNamespace(id=1, status=EscrowStatus.DISPUTED.value)
        EscrowStateValidator.validate_and_transition(escrow, EscrowStatus.REFUNDED)
        assert escrow.status == "refunded"
