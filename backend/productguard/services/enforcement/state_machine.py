"""
Infringement State Machine

Deterministic state machine for the infringement lifecycle.
Status only moves forward, except for the explicit reopen paths.
All transitions are logged immutably to status_transitions.
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, Tuple, List
from uuid import uuid4

from ...models.db_models import (
    InfringementStatus, InfringementEvent, ActorType,
    InfringementDB, StatusTransitionDB,
)

logger = logging.getLogger(__name__)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================
#
# Each state maps the events it accepts to the state they lead to.
# Anything not listed is illegal and leaves stored state unchanged.
#
# AUTHORITY MODEL:
# - reopen is a human override (USER only)
# - relist_detected is the automatic re-detection signal (SYSTEM / CRON only)
# - every other event may come from any actor
#
# =============================================================================

STATE_CONFIG = {
    InfringementStatus.PENDING_VERIFICATION: {
        "description": "Detected by a scan, awaiting human verification",
        "transitions": {
            InfringementEvent.VERIFY: InfringementStatus.ACTIVE,
            InfringementEvent.REJECT: InfringementStatus.REJECTED,
        },
        "terminal": False,
    },
    InfringementStatus.ACTIVE: {
        "description": "Verified infringement, enforcement may start",
        "transitions": {
            InfringementEvent.TAKEDOWN_SENT: InfringementStatus.TAKEDOWN_SENT,
            InfringementEvent.RESOLVE: InfringementStatus.REMOVED,
        },
        "terminal": False,
    },
    InfringementStatus.TAKEDOWN_SENT: {
        "description": "Notice delivered, awaiting removal",
        "transitions": {
            InfringementEvent.RESOLVE: InfringementStatus.REMOVED,
            InfringementEvent.REOPEN: InfringementStatus.ACTIVE,
        },
        "terminal": False,
    },
    InfringementStatus.REMOVED: {
        "description": "Content taken down",
        "transitions": {
            InfringementEvent.REOPEN: InfringementStatus.ACTIVE,
            InfringementEvent.RELIST_DETECTED: InfringementStatus.ACTIVE,
        },
        "terminal": True,
    },
    InfringementStatus.REJECTED: {
        "description": "Discarded as a false positive",
        "transitions": {},
        "terminal": True,
    },
}

EVENT_AUTHORITY = {
    InfringementEvent.REOPEN: {ActorType.USER},
    InfringementEvent.RELIST_DETECTED: {ActorType.SYSTEM, ActorType.CRON},
}


def next_status(
    current: InfringementStatus,
    event: InfringementEvent,
) -> Optional[InfringementStatus]:
    """Pure transition function. None means the event is illegal in this state."""
    return STATE_CONFIG.get(current, {}).get("transitions", {}).get(event)


# =============================================================================
# STATE MACHINE
# =============================================================================

class InfringementStateMachine:
    """
    Guarded status transitions for infringements.

    Core Principles:
    - The (status, event) table is the only source of legal moves
    - Writes are conditional on the status read, so a concurrent
      transition wins and this one becomes a no-op
    - Every applied transition writes one audit row
    """

    def __init__(self, db_session):
        """Initialize with database session."""
        self.db = db_session

    def get_state_config(self, state: InfringementStatus) -> Dict[str, Any]:
        """Get configuration for a state."""
        return STATE_CONFIG.get(state, {})

    def can_transition(
        self,
        from_state: InfringementStatus,
        event: InfringementEvent,
        actor: ActorType = ActorType.USER,
    ) -> Tuple[bool, str]:
        """
        Check if an event is allowed from a state.

        Returns (allowed, reason)
        """
        to_state = next_status(from_state, event)
        if to_state is None:
            return False, f"Cannot apply {event.value} to infringement in {from_state.value}"

        allowed_actors = EVENT_AUTHORITY.get(event)
        if allowed_actors is not None and actor not in allowed_actors:
            return False, f"{event.value} cannot be triggered by {actor.value}"

        return True, "Transition allowed"

    def transition(
        self,
        infringement: InfringementDB,
        event: InfringementEvent,
        actor: ActorType,
        reason: str,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, str]:
        """
        Execute a status transition.

        The UPDATE only matches while the row still holds the status we read;
        zero matched rows means another writer got there first.

        Returns (success, message). The caller owns the commit.
        """
        from_state = infringement.status

        allowed, message = self.can_transition(from_state, event, actor)
        if not allowed:
            logger.warning(f"Rejected transition on infringement {infringement.id}: {message}")
            return False, message

        to_state = next_status(from_state, event)
        now = datetime.utcnow()

        values = {
            "status": to_state,
            "previous_status": from_state,
            "status_changed_at": now,
            "updated_at": now,
        }
        if event == InfringementEvent.VERIFY:
            values["verified_by_user_at"] = now
            values["verified_by_user_id"] = actor_id

        self.db.flush()
        matched = (
            self.db.query(InfringementDB)
            .filter(
                InfringementDB.id == infringement.id,
                InfringementDB.status == from_state,
            )
            .update(values, synchronize_session="fetch")
        )
        if matched == 0:
            logger.warning(
                f"Transition {event.value} on infringement {infringement.id} lost a race; "
                f"status is no longer {from_state.value}"
            )
            return False, f"Infringement is no longer {from_state.value}"

        # Audit entry (immutable)
        self.db.add(StatusTransitionDB(
            id=str(uuid4()),
            infringement_id=infringement.id,
            event_type="status_transition",
            from_status=from_state.value,
            to_status=to_state.value,
            reason=reason,
            actor=actor,
            actor_id=actor_id,
            transition_metadata={"event": event.value, **(metadata or {})},
        ))

        logger.info(
            f"Infringement {infringement.id}: {from_state.value} -> {to_state.value} "
            f"({event.value} by {actor.value})"
        )
        return True, f"Transitioned to {to_state.value}"

    def is_terminal_state(self, state: InfringementStatus) -> bool:
        """Terminal from the pipeline's perspective (removed, rejected)."""
        return self.get_state_config(state).get("terminal", False)

    def get_available_events(self, state: InfringementStatus) -> List[InfringementEvent]:
        """Get the events accepted in a state."""
        return list(self.get_state_config(state).get("transitions", {}).keys())
