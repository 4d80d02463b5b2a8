"""
Deadline Tracker

Finds enforcement actions whose response window has lapsed and proposes
the next escalation step.

Response windows (from takedown sent_at):
- platform: 7 days
- hosting: 10 days
- registrar: 14 days
- search_engine: 14 days

Escalation chain: platform -> hosting -> registrar -> search_engine.

AUTHORITY: SYSTEM - runs from the scheduler endpoint.
Read-mostly and idempotent: suggestions are re-derived from current state
on every run, and overdue_at is only ever set once.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from sqlalchemy.orm import Session

from ...config import PipelineConfig
from ...models.db_models import (
    TakedownDB, InfringementDB, QueueItemDB,
    TakedownStatus, TargetType, DeliveryMethod, InfringementStatus, QueueStatus,
)
from .queue_processor import DMCAQueueProcessor, EnforcementTarget, ENFORCEABLE_STATUSES

logger = logging.getLogger(__name__)


RESPONSE_WINDOW_DAYS = {
    TargetType.PLATFORM: 7,
    TargetType.HOSTING: 10,
    TargetType.REGISTRAR: 14,
    TargetType.SEARCH_ENGINE: 14,
}

ESCALATION_CHAIN = {
    TargetType.PLATFORM: TargetType.HOSTING,
    TargetType.HOSTING: TargetType.REGISTRAR,
    TargetType.REGISTRAR: TargetType.SEARCH_ENGINE,
    TargetType.SEARCH_ENGINE: None,
}

GOOGLE_DEINDEX_TARGET = EnforcementTarget(
    provider_name="Google Search",
    target_type=TargetType.SEARCH_ENGINE,
    delivery_method=DeliveryMethod.WEB_FORM,
    form_url="https://reportcontent.google.com/forms/dmca_search",
)

# Queue states that mean an escalation is already under way
OPEN_QUEUE_STATUSES = (QueueStatus.PENDING, QueueStatus.PROCESSING, QueueStatus.AWAITING_MANUAL)


@dataclass
class EscalationSuggestion:
    """Proposed next enforcement step for one overdue takedown."""
    takedown_id: str
    infringement_id: str
    user_id: str
    current_stage: TargetType
    suggested_next: TargetType
    next_target: Optional[EnforcementTarget]
    escalation_step: int
    days_overdue: int
    reason: str

    @property
    def has_concrete_next_step(self) -> bool:
        return self.next_target is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "takedown_id": self.takedown_id,
            "infringement_id": self.infringement_id,
            "current_stage": self.current_stage.value,
            "suggested_next": self.suggested_next.value,
            "next_target": {
                "provider_name": self.next_target.provider_name,
                "delivery_method": self.next_target.delivery_method.value,
                "recipient_email": self.next_target.recipient_email,
                "form_url": self.next_target.form_url,
            } if self.next_target else None,
            "escalation_step": self.escalation_step,
            "days_overdue": self.days_overdue,
            "reason": self.reason,
        }


def due_at(takedown: TakedownDB) -> Optional[datetime]:
    """Implicit deadline of a sent takedown."""
    if takedown.sent_at is None:
        return None
    return takedown.sent_at + timedelta(days=RESPONSE_WINDOW_DAYS[takedown.target_type])


def resolve_next_target(
    next_type: TargetType,
    infrastructure: Optional[Dict[str, Any]],
) -> Optional[EnforcementTarget]:
    """
    Concrete target for the next tier from the infrastructure profile.
    None when the profile has no usable contact.
    """
    if next_type == TargetType.SEARCH_ENGINE:
        return GOOGLE_DEINDEX_TARGET

    infrastructure = infrastructure or {}
    if next_type == TargetType.HOSTING:
        name = infrastructure.get("hosting_provider")
        email = infrastructure.get("hosting_abuse_email") or infrastructure.get("abuse_email")
    elif next_type == TargetType.REGISTRAR:
        name = infrastructure.get("registrar")
        email = infrastructure.get("registrar_abuse_email")
    else:
        return None

    if not name or not email:
        return None
    return EnforcementTarget(
        provider_name=name,
        target_type=next_type,
        delivery_method=DeliveryMethod.EMAIL,
        recipient_email=email,
    )


class DeadlineTracker:
    """Overdue detection, review staleness and optional auto-escalation."""

    def __init__(
        self,
        db_session: Session,
        config: Optional[PipelineConfig] = None,
        queue: Optional[DMCAQueueProcessor] = None,
    ):
        """Initialize with database session."""
        self.db = db_session
        self.config = config or PipelineConfig()
        self.queue = queue or DMCAQueueProcessor(db_session, config=self.config)

    # =========================================================================
    # ENFORCEMENT DEADLINES
    # =========================================================================

    def _already_escalated(self, infringement_id: str, next_type: TargetType) -> bool:
        """An escalation exists if the next tier has a takedown or an open queue item."""
        takedown = self.db.query(TakedownDB.id).filter(
            TakedownDB.infringement_id == infringement_id,
            TakedownDB.target_type == next_type,
            TakedownDB.status != TakedownStatus.FAILED,
        ).first()
        if takedown is not None:
            return True

        queued = self.db.query(QueueItemDB.id).filter(
            QueueItemDB.infringement_id == infringement_id,
            QueueItemDB.target_type == next_type,
            QueueItemDB.status.in_(OPEN_QUEUE_STATUSES),
        ).first()
        return queued is not None

    def _suggestion_for(
        self,
        takedown: TakedownDB,
        infringement: InfringementDB,
        now: datetime,
    ) -> Optional[EscalationSuggestion]:
        next_type = ESCALATION_CHAIN.get(takedown.target_type)
        if next_type is None:
            return None
        if self._already_escalated(infringement.id, next_type):
            return None

        window = RESPONSE_WINDOW_DAYS[takedown.target_type]
        days_overdue = (now - due_at(takedown)).days
        return EscalationSuggestion(
            takedown_id=takedown.id,
            infringement_id=infringement.id,
            user_id=takedown.user_id,
            current_stage=takedown.target_type,
            suggested_next=next_type,
            next_target=resolve_next_target(next_type, infringement.infrastructure),
            escalation_step=(takedown.escalation_step or 1) + 1,
            days_overdue=days_overdue,
            reason=(
                f"{takedown.target_type.value} notice sent to {takedown.provider_name or 'provider'} "
                f"received no response after {window} days"
            ),
        )

    def check_deadlines(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Mark overdue takedowns and compute escalation suggestions.

        Only takedowns still sent whose infringement is still up
        (active / takedown_sent) are considered.

        Returns:
            updated_count: takedowns newly marked overdue this run
            escalation_suggestions: EscalationSuggestion list
            errors: per-takedown failures
        """
        now = now or datetime.utcnow()
        updated_count = 0
        suggestions: List[EscalationSuggestion] = []
        errors = []

        rows = self.db.query(TakedownDB, InfringementDB).join(
            InfringementDB, InfringementDB.id == TakedownDB.infringement_id
        ).filter(
            TakedownDB.status == TakedownStatus.SENT,
            TakedownDB.sent_at.isnot(None),
            InfringementDB.status.in_(ENFORCEABLE_STATUSES),
        ).order_by(TakedownDB.sent_at.asc(), TakedownDB.id.asc()).all()

        for takedown, infringement in rows:
            try:
                if due_at(takedown) > now:
                    continue

                if takedown.overdue_at is None:
                    takedown.overdue_at = now
                    updated_count += 1
                    logger.info(f"Takedown {takedown.id} is overdue ({takedown.target_type.value})")

                suggestion = self._suggestion_for(takedown, infringement, now)
                if suggestion is not None:
                    suggestions.append(suggestion)

            except Exception as e:
                logger.error(f"Deadline check failed for takedown {takedown.id}: {e}")
                errors.append({
                    "takedown_id": takedown.id,
                    "error": str(e),
                })

        self.db.commit()

        logger.info(f"Deadline check: {updated_count} newly overdue, {len(suggestions)} escalation suggestions")
        return {
            "updated_count": updated_count,
            "escalation_suggestions": suggestions,
            "errors": errors,
        }

    # =========================================================================
    # REVIEW STALENESS
    # =========================================================================

    def check_infringement_reviews(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Flag pending_verification infringements older than the staleness
        threshold for re-review. Never changes their status.
        """
        now = now or datetime.utcnow()
        cutoff = now - timedelta(days=self.config.review_staleness_days)

        stale = self.db.query(InfringementDB).filter(
            InfringementDB.status == InfringementStatus.PENDING_VERIFICATION,
            InfringementDB.created_at <= cutoff,
            InfringementDB.review_flagged_at.is_(None),
        ).all()

        for infringement in stale:
            infringement.review_flagged_at = now

        self.db.commit()

        if stale:
            logger.info(f"Flagged {len(stale)} infringements for re-review")
        return {
            "reviewed_count": len(stale),
            "flagged_ids": [infringement.id for infringement in stale],
        }

    # =========================================================================
    # AUTO-ESCALATION
    # =========================================================================

    def auto_escalate(self, suggestion: EscalationSuggestion) -> Dict[str, Any]:
        """
        Enqueue the suggested next-tier notice.

        Gated by config.auto_escalate. Suggestions without a concrete
        target are never acted on. Eligibility is re-checked against
        current state, so a replayed suggestion does nothing.
        """
        if not self.config.auto_escalate:
            return {"success": False, "skipped": "auto_escalate_disabled"}
        if not suggestion.has_concrete_next_step:
            return {"success": False, "skipped": "no_concrete_next_step"}

        takedown = self.db.query(TakedownDB).filter(TakedownDB.id == suggestion.takedown_id).first()
        infringement = self.db.query(InfringementDB).filter(
            InfringementDB.id == suggestion.infringement_id
        ).first()
        if (
            takedown is None
            or infringement is None
            or takedown.status != TakedownStatus.SENT
            or infringement.status not in ENFORCEABLE_STATUSES
        ):
            return {"success": False, "skipped": "no_longer_eligible"}
        if self._already_escalated(infringement.id, suggestion.suggested_next):
            return {"success": False, "skipped": "already_escalated"}

        subject = f"DMCA Takedown Notice - {infringement.source_url}"
        if takedown.queue_item_id:
            previous = self.db.query(QueueItemDB).filter(QueueItemDB.id == takedown.queue_item_id).first()
            if previous is not None:
                subject = previous.notice_subject

        result = self.queue.enqueue(
            user_id=takedown.user_id,
            infringement_id=infringement.id,
            targets=[suggestion.next_target],
            notice_subject=subject,
            notice_body=takedown.notice_content or "",
            escalation_step=suggestion.escalation_step,
        )
        if result.get("success"):
            logger.info(
                f"Auto-escalated infringement {infringement.id}: "
                f"{suggestion.current_stage.value} -> {suggestion.suggested_next.value}"
            )
        else:
            logger.warning(f"Auto-escalation for infringement {infringement.id} rejected: {result.get('error')}")
        return result

    def run_scheduled_check(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Scheduler entry point: deadlines, review staleness, then
        auto-escalation of concrete suggestions when enabled.
        """
        started = datetime.utcnow()
        deadlines = self.check_deadlines(now)
        reviews = self.check_infringement_reviews(now)

        escalated = []
        if self.config.auto_escalate:
            for suggestion in deadlines["escalation_suggestions"]:
                if suggestion.has_concrete_next_step:
                    result = self.auto_escalate(suggestion)
                    if result.get("success"):
                        escalated.append(result["batch_id"])

        return {
            "run_date": started.isoformat(),
            "enforcement_actions": {
                "overdue_count": deadlines["updated_count"],
                "escalation_suggestions": len(deadlines["escalation_suggestions"]),
                "auto_escalated": len(escalated),
                "errors": len(deadlines["errors"]),
            },
            "infringements": {
                "review_count": reviews["reviewed_count"],
            },
            "escalation_suggestions": [s.to_dict() for s in deadlines["escalation_suggestions"]],
            "escalated_batches": escalated,
        }
