"""
DMCA Send Queue Processor

Delivers queued takedown notices and records the outcome.

Lifecycle of a queue item:
    pending -> processing -> sent
                          -> pending (transient failure, backoff, attempts left)
                          -> failed (permanent failure or attempts exhausted)
                          -> awaiting_manual (web form / manual channel)
    awaiting_manual | failed -> sent (mark_manually_submitted)
    pending -> skipped (cancel_batch)

Concurrency:
- Items are claimed with a conditional UPDATE (status = pending), so two
  cycles never dispatch the same item.
- External calls run after the claim is committed; nothing is locked
  while the mail provider is on the line.
- A processing item older than the staleness window is returned to
  pending by the next cycle.
- Every sent item has exactly one takedown (takedowns.queue_item_id is unique).
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import PipelineConfig
from ...models.db_models import (
    QueueItemDB, TakedownDB, InfringementDB,
    QueueStatus, TakedownStatus, DeliveryMethod, TargetType,
    InfringementStatus, InfringementEvent, ActorType, CostEventType,
)
from ..delivery.mailer import DeliveryError
from ..scan_history.cost_events import UsageCostRecorder
from .state_machine import InfringementStateMachine

logger = logging.getLogger(__name__)

# Infringements that may receive a notice
ENFORCEABLE_STATUSES = (InfringementStatus.ACTIVE, InfringementStatus.TAKEDOWN_SENT)

# Statuses mark_manually_submitted may close
MANUALLY_CLOSABLE = (QueueStatus.AWAITING_MANUAL, QueueStatus.FAILED)

# Statuses that count as finished for batch progress
FINISHED_STATUSES = (QueueStatus.SENT, QueueStatus.FAILED, QueueStatus.SKIPPED)


@dataclass
class EnforcementTarget:
    """One recipient from the target-resolution collaborator, already ordered."""
    provider_name: str
    target_type: TargetType
    delivery_method: DeliveryMethod = DeliveryMethod.EMAIL
    recipient_email: Optional[str] = None
    recipient_name: Optional[str] = None
    form_url: Optional[str] = None


@dataclass
class BulkNotice:
    """One reviewed notice in a bulk submission."""
    infringement_id: str
    target: EnforcementTarget
    notice_subject: str
    notice_body: str


def compute_backoff_seconds(attempt_count: int, base_seconds: int, cap_seconds: int) -> int:
    """Bounded exponential backoff: base, 2x base, 4x base ... capped."""
    exponent = max(attempt_count - 1, 0)
    return min(base_seconds * (2 ** exponent), cap_seconds)


def sign_notice(body: str, signature_name: str, signed_at: datetime) -> str:
    """Append the electronic signature block to a notice body."""
    return (
        f"{body}\n\n---\n"
        f"Electronic Signature: /{signature_name}/\n"
        f"Signed at: {signed_at.isoformat()}"
    )


def _error(code: str, message: str) -> Dict[str, Any]:
    return {"success": False, "error_code": code, "error": message}


class DMCAQueueProcessor:
    """
    Send queue service.

    Collaborators:
    - mailer: object with send(to, subject, body) -> message id, raising DeliveryError
    - sleep: pause between email sends (injected so tests do not wait)
    """

    def __init__(
        self,
        db: Session,
        mailer=None,
        config: Optional[PipelineConfig] = None,
        sleep=time.sleep,
    ):
        self.db = db
        self.mailer = mailer
        self.config = config or PipelineConfig()
        self.sleep = sleep
        self.state_machine = InfringementStateMachine(db)

    # =========================================================================
    # ENQUEUE
    # =========================================================================

    def _enforceable_infringement(self, infringement_id: str, user_id: str) -> Optional[InfringementDB]:
        return self.db.query(InfringementDB).filter(
            InfringementDB.id == infringement_id,
            InfringementDB.user_id == user_id,
        ).first()

    def _build_item(
        self,
        batch_id: str,
        user_id: str,
        infringement_id: str,
        target: EnforcementTarget,
        subject: str,
        body: str,
        priority: int,
        scheduled_for: datetime,
        escalation_step: int,
    ) -> QueueItemDB:
        return QueueItemDB(
            id=str(uuid4()),
            batch_id=batch_id,
            user_id=user_id,
            infringement_id=infringement_id,
            provider_name=target.provider_name,
            target_type=target.target_type,
            delivery_method=target.delivery_method,
            recipient_email=target.recipient_email,
            recipient_name=target.recipient_name,
            form_url=target.form_url,
            notice_subject=subject,
            notice_body=body,
            status=QueueStatus.PENDING,
            priority=priority,
            attempt_count=0,
            max_attempts=self.config.max_attempts,
            scheduled_for=scheduled_for,
            escalation_step=escalation_step,
        )

    def enqueue(
        self,
        user_id: str,
        infringement_id: str,
        targets: List[EnforcementTarget],
        notice_subject: str,
        notice_body: str,
        escalation_step: int = 1,
    ) -> Dict[str, Any]:
        """
        Queue one notice for each target of one infringement.

        Targets arrive in priority order and keep it (priority = position).
        """
        if not targets:
            return _error("invalid", "At least one target is required")
        if len(targets) > self.config.max_batch_items:
            return _error("invalid", f"Maximum {self.config.max_batch_items} items per batch")

        infringement = self._enforceable_infringement(infringement_id, user_id)
        if infringement is None:
            return _error("not_found", "Infringement not found")
        if infringement.status not in ENFORCEABLE_STATUSES:
            return _error(
                "conflict",
                f"Infringement is {infringement.status.value}; only verified infringements can be enforced",
            )

        batch_id = str(uuid4())
        now = datetime.utcnow()
        items = [
            self._build_item(batch_id, user_id, infringement_id, target, notice_subject,
                             notice_body, priority, now, escalation_step)
            for priority, target in enumerate(targets)
        ]
        self.db.add_all(items)
        self.db.commit()

        logger.info(f"Queued batch {batch_id}: {len(items)} targets for infringement {infringement_id}")
        return {"success": True, "batch_id": batch_id, "item_ids": [item.id for item in items]}

    def enqueue_bulk(
        self,
        user_id: str,
        notices: List[BulkNotice],
        signature_name: str,
    ) -> Dict[str, Any]:
        """
        Queue reviewed notices for many infringements as one batch.

        Each body gets the electronic signature block. Email items are
        staggered email_stagger_seconds apart, other channels are due now.
        All-or-nothing: one invalid infringement rejects the batch.
        """
        if not notices:
            return _error("invalid", "items is required")
        if not signature_name or not signature_name.strip():
            return _error("invalid", "signature_name is required")
        if len(notices) > self.config.max_batch_items:
            return _error("invalid", f"Maximum {self.config.max_batch_items} items per batch")

        for notice in notices:
            infringement = self._enforceable_infringement(notice.infringement_id, user_id)
            if infringement is None:
                return _error("not_found", f"Infringement {notice.infringement_id} not found")
            if infringement.status not in ENFORCEABLE_STATUSES:
                return _error(
                    "conflict",
                    f"Infringement {notice.infringement_id} is {infringement.status.value}",
                )

        batch_id = str(uuid4())
        now = datetime.utcnow()
        email_index = 0
        items = []

        for notice in notices:
            if notice.target.delivery_method == DeliveryMethod.EMAIL:
                scheduled_for = now + timedelta(seconds=email_index * self.config.email_stagger_seconds)
                email_index += 1
            else:
                scheduled_for = now

            items.append(self._build_item(
                batch_id, user_id, notice.infringement_id, notice.target,
                notice.notice_subject, sign_notice(notice.notice_body, signature_name.strip(), now),
                0, scheduled_for, 1,
            ))

        self.db.add_all(items)
        self.db.commit()

        web_form_count = sum(1 for n in notices if n.target.delivery_method == DeliveryMethod.WEB_FORM)
        estimated_minutes = (
            (email_index - 1) * self.config.email_stagger_seconds // 60 if email_index > 0 else 0
        )

        logger.info(f"Queued bulk batch {batch_id}: {len(items)} items ({email_index} email)")
        return {
            "success": True,
            "batch_id": batch_id,
            "item_ids": [item.id for item in items],
            "total_queued": len(items),
            "email_count": email_index,
            "web_form_count": web_form_count,
            "estimated_completion_minutes": estimated_minutes,
        }

    # =========================================================================
    # PROCESSING CYCLE
    # =========================================================================

    def recover_stale(self, user_id: Optional[str] = None) -> int:
        """
        Release processing items older than the staleness window.

        An interrupted claim counts as an attempt: items with attempts left go
        back to pending, the rest fail terminally.
        """
        now = datetime.utcnow()
        cutoff = now - timedelta(seconds=self.config.stale_processing_seconds)
        query = self.db.query(QueueItemDB).filter(
            QueueItemDB.status == QueueStatus.PROCESSING,
            QueueItemDB.processing_started_at < cutoff,
        )
        if user_id:
            query = query.filter(QueueItemDB.user_id == user_id)

        next_attempt = QueueItemDB.attempt_count + 1
        exhausted = query.filter(next_attempt >= QueueItemDB.max_attempts).update(
            {
                "status": QueueStatus.FAILED,
                "attempt_count": next_attempt,
                "error_message": "Processing interrupted; no attempts left",
                "processing_started_at": None,
                "completed_at": now,
                "updated_at": now,
            },
            synchronize_session=False,
        )
        released = query.filter(next_attempt < QueueItemDB.max_attempts).update(
            {
                "status": QueueStatus.PENDING,
                "attempt_count": next_attempt,
                "processing_started_at": None,
                "updated_at": now,
            },
            synchronize_session=False,
        )
        self.db.commit()

        if exhausted:
            logger.error(f"Failed {exhausted} stuck queue items with no attempts left")
        if released:
            logger.warning(f"Recovered {released} stuck queue items back to pending")
        return released + exhausted

    def claim_due_items(self, limit: int, user_id: Optional[str] = None) -> List[QueueItemDB]:
        """
        Claim up to `limit` due items, oldest scheduled first.

        Each claim is a conditional UPDATE; an item another cycle already
        took matches zero rows and is skipped.
        """
        now = datetime.utcnow()
        query = self.db.query(QueueItemDB.id).filter(
            QueueItemDB.status == QueueStatus.PENDING,
            QueueItemDB.scheduled_for <= now,
        )
        if user_id:
            query = query.filter(QueueItemDB.user_id == user_id)
        candidate_ids = [
            row.id for row in query.order_by(
                QueueItemDB.scheduled_for.asc(), QueueItemDB.priority.asc()
            ).limit(limit).all()
        ]

        claimed_ids = []
        for item_id in candidate_ids:
            matched = self.db.query(QueueItemDB).filter(
                QueueItemDB.id == item_id,
                QueueItemDB.status == QueueStatus.PENDING,
            ).update(
                {"status": QueueStatus.PROCESSING, "processing_started_at": now, "updated_at": now},
                synchronize_session=False,
            )
            if matched:
                claimed_ids.append(item_id)
        self.db.commit()

        if not claimed_ids:
            return []
        items = self.db.query(QueueItemDB).filter(QueueItemDB.id.in_(claimed_ids)).all()
        order = {item_id: index for index, item_id in enumerate(claimed_ids)}
        return sorted(items, key=lambda item: order[item.id])

    def process_cycle(self, limit: Optional[int] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Run one bounded processing cycle.

        user_id restricts the cycle to that tenant's items (user-triggered);
        None processes every tenant (scheduler-triggered).

        Returns a count summary. Each item commits on its own, so one bad
        item never undoes another's outcome.
        """
        if limit is None:
            limit = self.config.cycle_limit
        result = {
            "processed": 0,
            "sent": 0,
            "failed": 0,
            "retried": 0,
            "awaiting_manual": 0,
            "recovered": self.recover_stale(user_id),
            "items": [],
        }

        items = self.claim_due_items(limit, user_id)
        if not items:
            logger.info("No pending queue items to process")
            return result

        logger.info(f"Processing {len(items)} queue items")
        recorder = UsageCostRecorder(self.db)

        for index, item in enumerate(items):
            result["processed"] += 1
            try:
                outcome = self._dispatch(item, recorder)
            except DeliveryError as e:
                self.db.rollback()
                outcome = self._record_failure(item.id, e.message, e.transient)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Store error while processing queue item {item.id}: {e}")
                outcome = self._record_failure(item.id, f"Processing error: {e}", True)
            except Exception as e:
                self.db.rollback()
                logger.error(f"Unexpected error while processing queue item {item.id}: {e}")
                outcome = self._record_failure(item.id, f"Unexpected error: {e}", True)

            status = outcome["status"]
            if status == QueueStatus.SENT.value:
                result["sent"] += 1
            elif status == QueueStatus.AWAITING_MANUAL.value:
                result["awaiting_manual"] += 1
            else:
                result["failed"] += 1
                if status == QueueStatus.PENDING.value:
                    result["retried"] += 1
            result["items"].append(outcome)

            if (
                item.delivery_method == DeliveryMethod.EMAIL
                and index < len(items) - 1
                and self.config.send_interval_seconds > 0
            ):
                self.sleep(self.config.send_interval_seconds)

        recorder.flush()
        self.db.commit()

        logger.info(
            f"Queue cycle complete: {result['sent']} sent, {result['failed']} failed "
            f"({result['retried']} will retry), {result['awaiting_manual']} awaiting manual"
        )
        return result

    def _dispatch(self, item: QueueItemDB, recorder: UsageCostRecorder) -> Dict[str, Any]:
        """Deliver one claimed item through its channel."""
        if item.delivery_method != DeliveryMethod.EMAIL:
            # No programmatic channel: hand the form URL to a human
            item.status = QueueStatus.AWAITING_MANUAL
            item.processing_started_at = None
            item.updated_at = datetime.utcnow()
            self.db.commit()
            logger.info(f"Queue item {item.id} awaiting manual submission via {item.form_url}")
            return {
                "id": item.id,
                "status": QueueStatus.AWAITING_MANUAL.value,
                "form_url": item.form_url,
                "instructions": f"Submit the notice to {item.provider_name} at {item.form_url}",
            }

        if not item.recipient_email:
            raise DeliveryError("No recipient email address", transient=False)
        if self.mailer is None:
            raise DeliveryError("No mail sender configured", transient=False)

        message_id = self.mailer.send(item.recipient_email, item.notice_subject, item.notice_body)
        takedown_id = self._complete_as_sent(
            item, message_id, actor=ActorType.SYSTEM, actor_id=None,
        )
        recorder.record(item.user_id, CostEventType.EMAIL_SEND, 1, {"queue_item_id": item.id})
        self.db.commit()

        logger.info(f"Queue item {item.id} sent to {item.recipient_email} ({item.provider_name})")
        return {
            "id": item.id,
            "status": QueueStatus.SENT.value,
            "message_id": message_id,
            "takedown_id": takedown_id,
        }

    def _record_failure(self, item_id: str, error_message: str, transient: bool) -> Dict[str, Any]:
        """Count the attempt, then reschedule with backoff or fail terminally."""
        item = self.db.query(QueueItemDB).filter(QueueItemDB.id == item_id).first()
        now = datetime.utcnow()
        attempts = (item.attempt_count or 0) + 1
        item.attempt_count = attempts
        item.error_message = error_message
        item.processing_started_at = None
        item.updated_at = now

        if not transient or attempts >= item.max_attempts:
            item.status = QueueStatus.FAILED
            item.completed_at = now
            logger.error(
                f"Queue item {item.id} failed after {attempts} attempt(s): {error_message}"
            )
        else:
            delay = compute_backoff_seconds(
                attempts, self.config.backoff_base_seconds, self.config.backoff_cap_seconds
            )
            item.status = QueueStatus.PENDING
            item.scheduled_for = now + timedelta(seconds=delay)
            logger.warning(
                f"Queue item {item.id} attempt {attempts} failed, retrying in {delay}s: {error_message}"
            )

        self.db.commit()
        return {
            "id": item.id,
            "status": item.status.value,
            "attempt_count": attempts,
            "error": error_message,
        }

    # =========================================================================
    # TAKEDOWN RECORDING
    # =========================================================================

    def _complete_as_sent(
        self,
        item: QueueItemDB,
        message_id: Optional[str],
        actor: ActorType,
        actor_id: Optional[str],
    ) -> str:
        """
        Write the takedown, advance the infringement and mark the item sent.
        Does not commit.

        Reuses an existing takedown for the item, so replays never duplicate it.
        """
        now = datetime.utcnow()
        takedown = self.db.query(TakedownDB).filter(TakedownDB.queue_item_id == item.id).first()
        infringement = self.db.query(InfringementDB).filter(
            InfringementDB.id == item.infringement_id
        ).first()

        if takedown is None:
            takedown = TakedownDB(
                id=str(uuid4()),
                infringement_id=item.infringement_id,
                user_id=item.user_id,
                queue_item_id=item.id,
                target_type=item.target_type,
                provider_name=item.provider_name,
                recipient=item.recipient_email or item.form_url,
                delivery_method=item.delivery_method,
                escalation_step=item.escalation_step or 1,
                notice_content=item.notice_body,
                infringing_url=infringement.source_url if infringement else None,
                status=TakedownStatus.SENT,
                provider_message_id=message_id,
                submitted_at=now,
                sent_at=now,
            )
            self.db.add(takedown)
            self.db.flush()

        if infringement is not None and infringement.status == InfringementStatus.ACTIVE:
            self.state_machine.transition(
                infringement=infringement,
                event=InfringementEvent.TAKEDOWN_SENT,
                actor=actor,
                actor_id=actor_id,
                reason=f"Notice delivered to {item.provider_name} ({item.delivery_method.value})",
                metadata={"takedown_id": takedown.id, "queue_item_id": item.id},
            )

        item.status = QueueStatus.SENT
        item.takedown_id = takedown.id
        item.provider_message_id = message_id
        item.completed_at = now
        item.processing_started_at = None
        item.attempt_count = (item.attempt_count or 0) + 1
        item.updated_at = now
        return takedown.id

    def mark_manually_submitted(self, item_id: str, user_id: str) -> Dict[str, Any]:
        """
        Close a web-form, manual or terminally failed item that a human submitted.

        Idempotent: an item that is already sent returns its prior takedown
        with already_submitted=True and creates nothing.
        """
        item = self.db.query(QueueItemDB).filter(
            QueueItemDB.id == item_id,
            QueueItemDB.user_id == user_id,
        ).first()
        if item is None:
            return _error("not_found", "Queue item not found")

        if item.status == QueueStatus.SENT:
            return self._already_submitted(item)

        closable = item.status in MANUALLY_CLOSABLE or (
            item.status == QueueStatus.PENDING and item.delivery_method != DeliveryMethod.EMAIL
        )
        if not closable:
            return _error(
                "conflict",
                f"Queue item is {item.status.value}; only awaiting_manual or failed items can be marked submitted",
            )

        # Conditional claim so a concurrent replay closes it only once
        previous_status = item.status
        matched = self.db.query(QueueItemDB).filter(
            QueueItemDB.id == item.id,
            QueueItemDB.status == previous_status,
        ).update({"status": QueueStatus.PROCESSING}, synchronize_session=False)
        if not matched:
            self.db.rollback()
            self.db.refresh(item)
            if item.status == QueueStatus.SENT:
                return self._already_submitted(item)
            return _error("conflict", f"Queue item is {item.status.value}")

        self.db.refresh(item)
        try:
            takedown_id = self._complete_as_sent(item, None, actor=ActorType.USER, actor_id=user_id)
            item.error_message = None
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            self.db.refresh(item)
            return self._already_submitted(item)

        logger.info(f"Queue item {item.id} marked manually submitted by {user_id}")
        return {
            "success": True,
            "already_submitted": False,
            "item_id": item.id,
            "status": QueueStatus.SENT.value,
            "takedown_id": takedown_id,
        }

    def _already_submitted(self, item: QueueItemDB) -> Dict[str, Any]:
        return {
            "success": True,
            "already_submitted": True,
            "item_id": item.id,
            "status": item.status.value,
            "takedown_id": item.takedown_id,
            "completed_at": item.completed_at.isoformat() if item.completed_at else None,
        }

    # =========================================================================
    # BATCH PROGRESS
    # =========================================================================

    def get_batch_summary(self, batch_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Derived progress of a batch. None when the batch is not the user's."""
        items = self.db.query(QueueItemDB).filter(
            QueueItemDB.batch_id == batch_id,
            QueueItemDB.user_id == user_id,
        ).order_by(QueueItemDB.priority.asc(), QueueItemDB.scheduled_for.asc()).all()
        if not items:
            return None

        counts = {status.value: 0 for status in QueueStatus}
        for item in items:
            counts[item.status.value] += 1

        finished = sum(counts[s.value] for s in FINISHED_STATUSES)
        created_times = [item.created_at for item in items if item.created_at]
        completed_times = [item.completed_at for item in items if item.completed_at]
        pending_times = [item.scheduled_for for item in items if item.status == QueueStatus.PENDING]

        return {
            "batch_id": batch_id,
            "total": len(items),
            "counts": counts,
            "percent_complete": round(finished / len(items) * 100),
            "created_at": min(created_times) if created_times else None,
            "last_completed_at": max(completed_times) if completed_times else None,
            "next_scheduled_at": min(pending_times) if pending_times else None,
            "items": [
                {
                    "id": item.id,
                    "infringement_id": item.infringement_id,
                    "provider_name": item.provider_name,
                    "target_type": item.target_type.value,
                    "delivery_method": item.delivery_method.value,
                    "status": item.status.value,
                    "attempt_count": item.attempt_count,
                    "scheduled_for": item.scheduled_for,
                    "form_url": item.form_url,
                    "error_message": item.error_message,
                    "takedown_id": item.takedown_id,
                }
                for item in items
            ],
        }

    def cancel_batch(self, batch_id: str, user_id: str) -> Dict[str, Any]:
        """Skip every still-pending item of a batch."""
        exists = self.db.query(func.count(QueueItemDB.id)).filter(
            QueueItemDB.batch_id == batch_id,
            QueueItemDB.user_id == user_id,
        ).scalar()
        if not exists:
            return _error("not_found", "Batch not found")

        now = datetime.utcnow()
        cancelled = self.db.query(QueueItemDB).filter(
            QueueItemDB.batch_id == batch_id,
            QueueItemDB.user_id == user_id,
            QueueItemDB.status == QueueStatus.PENDING,
        ).update(
            {"status": QueueStatus.SKIPPED, "completed_at": now, "updated_at": now},
            synchronize_session=False,
        )
        self.db.commit()

        logger.info(f"Cancelled {cancelled} pending items in batch {batch_id}")
        return {"success": True, "batch_id": batch_id, "cancelled": cancelled}
