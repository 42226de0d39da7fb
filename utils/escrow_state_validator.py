"""
Escrow State Transition Validator
================================

Keeps escrow custody moving forward only.
PENDING -> HELD -> RELEASED is the normal path; DISPUTED and REFUNDED are the only side exits.
"""

import logging
from typing import Dict, Set, Optional
from models import EscrowStatus
from utils.exceptions import StateError

logger = logging.getLogger(__name__)


class EscrowStateValidator:
    """
    Validates escrow custody transitions.

    Prevents invalid transitions like:
    - RELEASED -> HELD (re-holding paid-out funds)
    - PENDING -> RELEASED (releasing funds that were never received)
    - REFUNDED -> anything (resurrection)
    """

    VALID_TRANSITIONS: Dict[EscrowStatus, Set[EscrowStatus]] = {
        # PENDING: escrow created, buyer has not paid
        EscrowStatus.PENDING: {
            EscrowStatus.HELD,
            EscrowStatus.REFUNDED,
        },

        # HELD: funds in custody
        EscrowStatus.HELD: {
            EscrowStatus.RELEASED,
            EscrowStatus.DISPUTED,
            EscrowStatus.REFUNDED,
        },

        # DISPUTED: frozen until arbitration decides
        EscrowStatus.DISPUTED: {
            EscrowStatus.RELEASED,
            EscrowStatus.REFUNDED,
        },

        EscrowStatus.RELEASED: set(),
        EscrowStatus.REFUNDED: set(),
    }

    TERMINAL_STATES: Set[EscrowStatus] = {
        EscrowStatus.RELEASED,
        EscrowStatus.REFUNDED,
    }

    @classmethod
    def is_valid_transition(cls, from_status: EscrowStatus, to_status: EscrowStatus) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_and_transition(
        cls,
        escrow,
        new_status: EscrowStatus,
        escrow_id: Optional[int] = None,
    ) -> None:
        """
        Validate and apply a custody transition to an escrow object.

        Raises:
            StateError: If the transition is not allowed
        """
        current_status = EscrowStatus(escrow.status)
        escrow_ref = f"Escrow {escrow_id or escrow.id}"

        if current_status == new_status:
            return

        if not cls.is_valid_transition(current_status, new_status):
            logger.error(
                f"❌ INVALID_ESCROW_TRANSITION: {escrow_ref} {current_status.value} -> {new_status.value}"
            )
            raise StateError(
                f"Escrow cannot move from {current_status.value} to {new_status.value}",
                current_status=current_status.value,
                error_code="INVALID_ESCROW_STATE",
            )

        escrow.status = new_status.value
        logger.info(f"✅ ESCROW_TRANSITION: {escrow_ref} {current_status.value} -> {new_status.value}")
