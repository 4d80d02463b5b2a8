"""
Infringement Service

User-facing operations on the enforcement record store:
verification, rejection, resolution, reopen and product reassignment.

AUTHORITY MODEL:
- USER-AUTHORIZED: verify, reject, resolve, reopen, reassign
- SYSTEM-AUTHORITATIVE: relist_detected (scan pipeline), takedown_sent (queue processor)

Every human verdict also lands in verification_feedback, which is the
learning input for category precision.
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import (
    InfringementDB, ProductDB, TakedownDB, StatusTransitionDB, VerificationFeedbackDB,
    InfringementStatus, InfringementEvent, ActorType, TakedownStatus, VerificationVerdict,
)
from .state_machine import InfringementStateMachine

logger = logging.getLogger(__name__)


class InfringementService:
    """Tenant-scoped infringement operations. Callers own the commit."""

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session
        self.state_machine = InfringementStateMachine(db_session)

    def get_for_user(self, infringement_id: str, user_id: str) -> Optional[InfringementDB]:
        """Fetch an infringement only if it belongs to the tenant."""
        return self.db.query(InfringementDB).filter(
            InfringementDB.id == infringement_id,
            InfringementDB.user_id == user_id,
        ).first()

    # =========================================================================
    # HUMAN VERIFICATION
    # =========================================================================

    def verify(self, infringement: InfringementDB, user_id: str) -> Dict[str, Any]:
        """Confirm a detection: pending_verification -> active."""
        return self._review(infringement, user_id, InfringementEvent.VERIFY, VerificationVerdict.CONFIRMED)

    def reject(self, infringement: InfringementDB, user_id: str) -> Dict[str, Any]:
        """Discard a false positive: pending_verification -> rejected."""
        return self._review(infringement, user_id, InfringementEvent.REJECT, VerificationVerdict.REJECTED)

    def _review(
        self,
        infringement: InfringementDB,
        user_id: str,
        event: InfringementEvent,
        verdict: VerificationVerdict,
    ) -> Dict[str, Any]:
        success, message = self.state_machine.transition(
            infringement=infringement,
            event=event,
            actor=ActorType.USER,
            actor_id=user_id,
            reason=f"User {verdict.value} detection",
        )
        if not success:
            return {"success": False, "message": message}

        self.db.add(VerificationFeedbackDB(
            id=str(uuid4()),
            infringement_id=infringement.id,
            product_id=infringement.product_id,
            user_id=user_id,
            query_category=infringement.query_category,
            verdict=verdict,
        ))
        return {"success": True, "message": message, "status": infringement.status.value}

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def resolve(self, infringement: InfringementDB, user_id: str) -> Dict[str, Any]:
        """
        Mark content as taken down.
        Open takedowns on the infringement are resolved with it.
        """
        success, message = self.state_machine.transition(
            infringement=infringement,
            event=InfringementEvent.RESOLVE,
            actor=ActorType.USER,
            actor_id=user_id,
            reason="Content confirmed removed",
        )
        if not success:
            return {"success": False, "message": message}

        now = datetime.utcnow()
        resolved = self.db.query(TakedownDB).filter(
            TakedownDB.infringement_id == infringement.id,
            TakedownDB.status == TakedownStatus.SENT,
        ).update(
            {"status": TakedownStatus.RESOLVED, "resolved_at": now, "updated_at": now},
            synchronize_session=False,
        )
        return {"success": True, "message": message, "takedowns_resolved": resolved}

    def reopen(self, infringement: InfringementDB, user_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """Human override: removed/takedown_sent -> active."""
        success, message = self.state_machine.transition(
            infringement=infringement,
            event=InfringementEvent.REOPEN,
            actor=ActorType.USER,
            actor_id=user_id,
            reason=reason or "Reopened by user",
        )
        return {"success": success, "message": message}

    # =========================================================================
    # REASSIGNMENT
    # =========================================================================

    def reassign_product(
        self,
        infringement: InfringementDB,
        new_product_id: str,
        user_id: str,
    ) -> Dict[str, Any]:
        """
        Move an infringement to another product of the same tenant.

        A metadata change, not a status transition. The audit row is
        best-effort: failing to write it never fails the move.
        """
        product = self.db.query(ProductDB).filter(
            ProductDB.id == new_product_id,
            ProductDB.user_id == user_id,
        ).first()
        if product is None:
            return {"success": False, "error_code": "not_found", "message": "Target product not found"}

        old_product_id = infringement.product_id
        if old_product_id == new_product_id:
            return {"success": True, "message": "Already assigned to product", "product_id": new_product_id}

        duplicate = self.db.query(InfringementDB.id).filter(
            InfringementDB.product_id == new_product_id,
            InfringementDB.url_hash == infringement.url_hash,
        ).first()
        if duplicate is not None:
            return {"success": False, "error_code": "conflict", "message": "Target product already tracks this URL"}

        infringement.product_id = new_product_id
        infringement.updated_at = datetime.utcnow()
        self.db.flush()

        try:
            with self.db.begin_nested():
                self.db.add(StatusTransitionDB(
                    id=str(uuid4()),
                    infringement_id=infringement.id,
                    event_type="product_reassigned",
                    from_status=infringement.status.value,
                    to_status=infringement.status.value,
                    reason="Reassigned to a different product",
                    actor=ActorType.USER,
                    actor_id=user_id,
                    transition_metadata={
                        "from_product_id": old_product_id,
                        "to_product_id": new_product_id,
                    },
                ))
        except SQLAlchemyError as e:
            logger.error(f"Failed to write reassignment audit for infringement {infringement.id}: {e}")

        logger.info(f"Infringement {infringement.id} reassigned {old_product_id} -> {new_product_id}")
        return {
            "success": True,
            "message": "Reassigned",
            "from_product_id": old_product_id,
            "product_id": new_product_id,
        }
