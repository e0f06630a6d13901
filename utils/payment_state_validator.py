"""
Payment and Withdrawal State Transition Validators
==================================================

Prevents invalid state transitions and keeps terminal states final.
A payment moves pending -> succeeded | failed and never back; a manual
withdrawal moves pending -> processing -> completed or pending -> rejected.
"""

import logging
from typing import Dict, Set, Optional, Tuple

from models import PaymentState, WithdrawalState
from utils.exception_handler import InvalidStateTransition

logger = logging.getLogger(__name__)


class PaymentStateValidator:
    """Validates payment state transitions"""

    VALID_TRANSITIONS: Dict[PaymentState, Set[PaymentState]] = {
        PaymentState.PENDING: {PaymentState.SUCCEEDED, PaymentState.FAILED},
        PaymentState.SUCCEEDED: set(),  # terminal
        PaymentState.FAILED: set(),  # terminal
    }

    @classmethod
    def validate_transition(
        cls,
        from_state: PaymentState,
        to_state: PaymentState,
        payment_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        payment_ref = f"Payment {payment_id}" if payment_id else "Payment"

        if from_state == to_state:
            return True, "No state change required"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_state, set())
        if to_state in valid_next_states:
            logger.info(f"✅ VALID_TRANSITION: {payment_ref} {from_state.value} -> {to_state.value}")
            return True, "Valid state transition"

        error_msg = (
            f"Invalid transition: {from_state.value} -> {to_state.value}. "
            f"Valid transitions from {from_state.value}: {[s.value for s in valid_next_states]}"
        )
        logger.error(f"❌ INVALID_TRANSITION: {payment_ref} {from_state.value} -> {to_state.value}")
        return False, error_msg

    @classmethod
    def ensure_transition(cls, from_state: PaymentState, to_state: PaymentState, payment_id: Optional[int] = None):
        is_valid, reason = cls.validate_transition(from_state, to_state, payment_id)
        if not is_valid:
            raise InvalidStateTransition(reason, payment_id=payment_id)


class WithdrawalStateValidator:
    """Validates manual withdrawal state transitions"""

    VALID_TRANSITIONS: Dict[WithdrawalState, Set[WithdrawalState]] = {
        WithdrawalState.PENDING: {WithdrawalState.PROCESSING, WithdrawalState.REJECTED},
        WithdrawalState.PROCESSING: {WithdrawalState.COMPLETED},
        WithdrawalState.COMPLETED: set(),  # terminal
        WithdrawalState.REJECTED: set(),  # terminal
    }

    @classmethod
    def ensure_transition(
        cls,
        from_state: WithdrawalState,
        to_state: WithdrawalState,
        withdrawal_id: Optional[int] = None,
    ):
        """Raise InvalidStateTransition unless from_state -> to_state is allowed (same state included)"""
        valid_next_states = cls.VALID_TRANSITIONS.get(from_state, set())
        if to_state in valid_next_states:
            return
        logger.warning(
            f"❌ INVALID_WITHDRAWAL_TRANSITION: Withdrawal {withdrawal_id} {from_state.value} -> {to_state.value}"
        )
        raise InvalidStateTransition(
            f"Cannot move withdrawal from {from_state.value} to {to_state.value}",
            withdrawal_id=withdrawal_id,
            current_state=from_state.value,
        )
