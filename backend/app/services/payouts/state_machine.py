"""
Payout State Machine

pending --(pass, no external flags)--> approved --> settled
pending --(review/fail, dispute, AML flag)--> held_for_review --(admin)--> approved | rejected
approved --(status-worsening risk recompute)--> held_for_review

settled and rejected are terminal. Every transition is logged immutably.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from ...models.db_models import (
    PayoutRequestDB,
    PayoutStatus,
    PayoutTransitionDB,
    TERMINAL_PAYOUT_STATUSES,
    TransitionActor,
)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

STATE_CONFIG = {
    PayoutStatus.PENDING: {
        "description": "Created, awaiting fraud and compliance evaluation",
        "allowed_transitions": [PayoutStatus.APPROVED, PayoutStatus.HELD_FOR_REVIEW],
        "entry_authority": "SYSTEM",
    },
    PayoutStatus.HELD_FOR_REVIEW: {
        "description": "Blocked on fraud review, dispute or AML flag",
        "allowed_transitions": [PayoutStatus.APPROVED, PayoutStatus.REJECTED],
        "entry_authority": "SYSTEM",
    },
    PayoutStatus.APPROVED: {
        "description": "Cleared for settlement with the wallet ledger",
        "allowed_transitions": [PayoutStatus.SETTLED, PayoutStatus.HELD_FOR_REVIEW],
        "entry_authority": "SYSTEM",  # ADMIN when leaving held_for_review
    },
    PayoutStatus.SETTLED: {
        "description": "Wallet ledger confirmed the transfer",
        "allowed_transitions": [],
        "entry_authority": "SYSTEM",
    },
    PayoutStatus.REJECTED: {
        "description": "Rejected by an admin",
        "allowed_transitions": [],
        "entry_authority": "ADMIN",
    },
}


class PayoutStateMachine:
    """Validates and logs payout status transitions. Never commits."""

    def __init__(self, db_session):
        self.db = db_session

    def get_state_config(self, status: PayoutStatus) -> Dict[str, Any]:
        return STATE_CONFIG.get(status, {})

    def can_transition(
        self,
        from_status: Optional[PayoutStatus],
        to_status: PayoutStatus,
    ) -> Tuple[bool, str]:
        """
        Check if a transition is allowed.

        Returns (allowed, reason)
        """
        if from_status is None:
            if to_status == PayoutStatus.PENDING:
                return True, "Creation allowed"
            return False, f"Requests are created as pending, not {to_status.value}"

        if to_status in self.get_state_config(from_status).get("allowed_transitions", []):
            return True, "Transition allowed"
        return False, f"Cannot transition from {from_status.value} to {to_status.value}"

    def transition(
        self,
        request: PayoutRequestDB,
        to_status: PayoutStatus,
        trigger: str,
        actor: TransitionActor = TransitionActor.SYSTEM,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, str]:
        """
        Execute a transition on a request.

        Returns (success, message)
        """
        from_status = request.status
        allowed, reason = self.can_transition(from_status, to_status)
        if not allowed:
            return False, reason

        self._log(request, from_status, to_status, trigger, actor, metadata)

        now = datetime.utcnow()
        request.status = to_status
        request.updated_at = now
        if to_status == PayoutStatus.APPROVED:
            request.approved_at = now
        if to_status == PayoutStatus.SETTLED:
            request.settled_at = now
        if to_status in TERMINAL_PAYOUT_STATUSES:
            # Frees the one-active-request slot
            request.active_actor_id = None

        return True, f"Transitioned to {to_status.value}"

    def record_creation(self, request: PayoutRequestDB, trigger: str = "requested") -> None:
        self._log(request, None, PayoutStatus.PENDING, trigger, TransitionActor.SYSTEM, None)

    def is_terminal_state(self, status: PayoutStatus) -> bool:
        return len(self.get_state_config(status).get("allowed_transitions", [])) == 0

    def get_next_states(self, status: PayoutStatus) -> List[PayoutStatus]:
        return self.get_state_config(status).get("allowed_transitions", [])

    def _log(
        self,
        request: PayoutRequestDB,
        from_status: Optional[PayoutStatus],
        to_status: PayoutStatus,
        trigger: str,
        actor: TransitionActor,
        metadata: Optional[Dict[str, Any]],
    ) -> None:
        entry = PayoutTransitionDB(
            id=str(uuid4()),
            from_status=from_status,
            to_status=to_status,
            trigger=trigger[:100],
            actor=actor,
            event_metadata=metadata,
            created_at=datetime.utcnow(),
        )
        request.transitions.append(entry)
