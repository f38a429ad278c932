"""
Escrow State Machine

Deterministic lifecycle for held-funds transactions.

    (pending) -> escrowed -> completed
                          -> disputed -> resolved
                          -> cancelled

pending is the pre-creation state and is never persisted.
completed, cancelled and resolved are terminal.
"""
import logging
from typing import Any, Dict, List, Tuple

from ...errors import PreconditionError
from ...models.db_models import TransactionDB, TransactionStatus

logger = logging.getLogger(__name__)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

STATE_CONFIG = {
    TransactionStatus.PENDING: {
        "description": "Risk-gated request, no row yet",
        "allowed_transitions": [TransactionStatus.ESCROWED],
        "persisted": False,
    },
    TransactionStatus.ESCROWED: {
        "description": "Funds held, awaiting completion or dispute",
        "allowed_transitions": [
            TransactionStatus.COMPLETED,
            TransactionStatus.DISPUTED,
            TransactionStatus.CANCELLED,
        ],
        "persisted": True,
    },
    TransactionStatus.COMPLETED: {
        "description": "Proof accepted, funds captured and paid out",
        "allowed_transitions": [],  # Terminal state
        "persisted": True,
    },
    TransactionStatus.DISPUTED: {
        "description": "Dispute open, transfers halted",
        "allowed_transitions": [TransactionStatus.RESOLVED],
        "persisted": True,
    },
    TransactionStatus.CANCELLED: {
        "description": "Hold refunded before service",
        "allowed_transitions": [],  # Terminal state
        "persisted": True,
    },
    TransactionStatus.RESOLVED: {
        "description": "Dispute decided, funds refunded or paid out",
        "allowed_transitions": [],  # Terminal state
        "persisted": True,
    },
}


class EscrowStateMachine:
    """Validates and applies status transitions on a TransactionDB row."""

    def get_state_config(self, state: TransactionStatus) -> Dict[str, Any]:
        return STATE_CONFIG.get(state, {})

    def can_transition(
        self,
        from_state: TransactionStatus,
        to_state: TransactionStatus,
    ) -> Tuple[bool, str]:
        """
        Check if a state transition is allowed.

        Returns (allowed, reason)
        """
        allowed_transitions = self.get_state_config(from_state).get("allowed_transitions", [])
        if to_state in allowed_transitions:
            return True, "Transition allowed"
        return False, f"Cannot transition from {from_state.value} to {to_state.value}"

    def require(self, transaction: TransactionDB, expected: TransactionStatus) -> None:
        """Raise PreconditionError unless the transaction is in the expected status."""
        if transaction.status != expected:
            raise PreconditionError(
                f"Transaction {transaction.id} is {transaction.status.value}, expected {expected.value}"
            )

    def transition(self, transaction: TransactionDB, to_state: TransactionStatus) -> TransactionStatus:
        """
        Move the transaction to to_state.

        Raises:
            PreconditionError: transition not allowed from the current status
        """
        from_state = transaction.status
        allowed, reason = self.can_transition(from_state, to_state)
        if not allowed:
            raise PreconditionError(f"Transaction {transaction.id}: {reason}")

        transaction.status = to_state
        logger.info(f"Transaction {transaction.id}: {from_state.value} -> {to_state.value}")
        return from_state

    def is_terminal_state(self, state: TransactionStatus) -> bool:
        """Check if a state is terminal (no further transitions)."""
        return len(self.get_state_config(state).get("allowed_transitions", [])) == 0

    def get_next_states(self, state: TransactionStatus) -> List[TransactionStatus]:
        return list(self.get_state_config(state).get("allowed_transitions", []))
