"""
Transaction State Transition Validator
======================================

Single table of lifecycle events and the statuses each one may start from.
Every status change made by the orchestrator, the quality gate and the fund
release service is checked here first.
"""

import logging
from enum import Enum
from typing import Dict, FrozenSet, Optional, Set, Tuple

from models import TransactionStatus
from utils.exceptions import StateError

logger = logging.getLogger(__name__)


class TransactionEvent(Enum):
    """Lifecycle events accepted by ``TransactionOrchestrator.advance``"""
    CONFIRM_PAYMENT = "confirm_payment"
    CONFIRM_FULL_PAYMENT = "confirm_full_payment"
    CONFIRM_BALANCE_PAYMENT = "confirm_balance_payment"
    SHIP = "ship"
    MARK_IN_TRANSIT = "mark_in_transit"
    CONFIRM_DELIVERY = "confirm_delivery"
    REQUEST_QUALITY_CHECK = "request_quality_check"
    START_QUALITY_CHECK = "start_quality_check"
    APPROVE_QUALITY = "approve_quality"
    REJECT_QUALITY = "reject_quality"
    RELEASE_FUNDS = "release_funds"
    ESCALATE_DISPUTE = "escalate_dispute"
    COMPLETE = "complete"
    CANCEL = "cancel"
    REFUND = "refund"


S = TransactionStatus

# Statuses in which the buyer may submit a quality assessment
QUALITY_ASSESSABLE_STATES: FrozenSet[TransactionStatus] = frozenset({
    S.QUALITY_PENDING,
    S.DELIVERY_CONFIRMED,
    S.QUALITY_CHECK,
})

# Statuses that may be released once the escrow auto-release deadline has passed
DEADLINE_RELEASABLE_STATES: FrozenSet[TransactionStatus] = QUALITY_ASSESSABLE_STATES | {S.QUALITY_APPROVED}

RELEASED_STATES: FrozenSet[TransactionStatus] = frozenset({S.FUNDS_RELEASED, S.COMPLETED})

# Goods already moving: a late balance payment tops up the escrow without changing status
BALANCE_TOP_UP_STATES: FrozenSet[TransactionStatus] = frozenset({
    S.SHIPPED,
    S.IN_TRANSIT,
}) | DEADLINE_RELEASABLE_STATES


class TransactionStateValidator:
    """
    Validates transaction lifecycle transitions.

    Prevents invalid transitions like:
    - FUNDS_RELEASED -> QUALITY_APPROVED (backwards transition)
    - PAYMENT_PENDING -> SHIPPED (shipping before custody)
    - QUALITY_REJECTED -> FUNDS_RELEASED (paying out a rejected delivery)
    """

    # event -> (allowed source statuses, target status)
    EVENT_TRANSITIONS: Dict[TransactionEvent, Tuple[FrozenSet[TransactionStatus], TransactionStatus]] = {
        TransactionEvent.CONFIRM_PAYMENT: (frozenset({S.PAYMENT_PENDING}), S.PAYMENT_RECEIVED),
        TransactionEvent.CONFIRM_FULL_PAYMENT: (frozenset({S.PAYMENT_PENDING}), S.ESCROW_HELD),
        TransactionEvent.CONFIRM_BALANCE_PAYMENT: (frozenset({S.PAYMENT_RECEIVED}), S.ESCROW_HELD),
        TransactionEvent.SHIP: (frozenset({S.PAYMENT_RECEIVED, S.ESCROW_HELD}), S.SHIPPED),
        TransactionEvent.MARK_IN_TRANSIT: (frozenset({S.SHIPPED}), S.IN_TRANSIT),
        TransactionEvent.CONFIRM_DELIVERY: (frozenset({S.SHIPPED, S.IN_TRANSIT}), S.DELIVERY_CONFIRMED),
        TransactionEvent.REQUEST_QUALITY_CHECK: (frozenset({S.DELIVERY_CONFIRMED}), S.QUALITY_PENDING),
        TransactionEvent.START_QUALITY_CHECK: (frozenset({S.QUALITY_PENDING}), S.QUALITY_CHECK),
        TransactionEvent.APPROVE_QUALITY: (QUALITY_ASSESSABLE_STATES, S.QUALITY_APPROVED),
        TransactionEvent.REJECT_QUALITY: (QUALITY_ASSESSABLE_STATES, S.QUALITY_REJECTED),
        TransactionEvent.RELEASE_FUNDS: (DEADLINE_RELEASABLE_STATES, S.FUNDS_RELEASED),
        TransactionEvent.ESCALATE_DISPUTE: (frozenset({S.QUALITY_REJECTED}), S.DISPUTED),
        TransactionEvent.COMPLETE: (frozenset({S.FUNDS_RELEASED}), S.COMPLETED),
        TransactionEvent.CANCEL: (frozenset({S.INITIATED, S.PAYMENT_PENDING}), S.CANCELLED),
        TransactionEvent.REFUND: (
            frozenset({S.PAYMENT_RECEIVED, S.ESCROW_HELD, S.QUALITY_REJECTED, S.DISPUTED}),
            S.REFUNDED,
        ),
    }

    TERMINAL_STATES: Set[TransactionStatus] = {
        S.COMPLETED,
        S.CANCELLED,
        S.REFUNDED,
    }

    # Derived status graph, used for generic checks and the history replay
    VALID_TRANSITIONS: Dict[TransactionStatus, Set[TransactionStatus]] = {status: set() for status in S}
    for _sources, _target in EVENT_TRANSITIONS.values():
        for _source in _sources:
            VALID_TRANSITIONS[_source].add(_target)
    del _sources, _target, _source

    @classmethod
    def target_for(cls, event: TransactionEvent) -> TransactionStatus:
        return cls.EVENT_TRANSITIONS[event][1]

    @classmethod
    def allowed_sources(cls, event: TransactionEvent) -> FrozenSet[TransactionStatus]:
        return cls.EVENT_TRANSITIONS[event][0]

    @classmethod
    def is_valid_transition(cls, from_status, to_status) -> bool:
        """Boolean check accepting enum members or their string values"""
        try:
            from_enum = S(from_status) if isinstance(from_status, str) else from_status
            to_enum = S(to_status) if isinstance(to_status, str) else to_status
        except ValueError:
            return False
        return to_enum in cls.VALID_TRANSITIONS.get(from_enum, set())

    @classmethod
    def validate_event(
        cls,
        current_status: TransactionStatus,
        event: TransactionEvent,
        transaction_id: Optional[int] = None,
    ) -> TransactionStatus:
        """
        Check that ``event`` may fire from ``current_status``.

        Returns:
            The status the event moves the transaction to.

        Raises:
            StateError: If the current status is not a legal source for the event
        """
        sources, target = cls.EVENT_TRANSITIONS[event]
        txn_ref = f"Transaction {transaction_id}" if transaction_id else "Transaction"

        if current_status in sources:
            logger.debug(f"✅ VALID_TRANSITION: {txn_ref} {current_status.value} -> {target.value} ({event.value})")
            return target

        if current_status in cls.TERMINAL_STATES:
            reason = f"{txn_ref} is {current_status.value} and cannot change further"
        else:
            reason = (
                f"Cannot {event.value.replace('_', ' ')} while transaction is {current_status.value}. "
                f"Allowed from: {sorted(s.value for s in sources)}"
            )

        logger.warning(f"🚫 INVALID_TRANSITION: {txn_ref} {current_status.value} -x-> {target.value} ({event.value})")
        raise StateError(reason, current_status=current_status.value)

    @classmethod
    def is_top_up(cls, current_status: TransactionStatus, event: TransactionEvent) -> bool:
        """Balance payment that funds the escrow but leaves the status where it is"""
        return event == TransactionEvent.CONFIRM_BALANCE_PAYMENT and current_status in BALANCE_TOP_UP_STATES

    @classmethod
    def is_terminal(cls, status: TransactionStatus) -> bool:
        return status in cls.TERMINAL_STATES
