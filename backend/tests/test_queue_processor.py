"""
Tests for the DMCA send queue processor.

Key tests:
1. Transient failures back off and fail for good at max_attempts
2. Permanent failures fail on the first attempt; unexpected mailer errors never abort a cycle
3. A successful send creates exactly one takedown and advances the infringement
4. Web-form items park in awaiting_manual; manual submission is idempotent
5. Claims are atomic: a second cycle never gets an already claimed item
6. Stuck processing items are recovered (counted as an attempt); cycles can be scoped to one tenant
7. Bulk submission staggers emails and signs every notice
8. Batch summary counts and cancellation
"""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from productguard.config import PipelineConfig
from productguard.models.db_models import (
    QueueItemDB, TakedownDB, UsageCostEventDB, StatusTransitionDB,
    QueueStatus, InfringementStatus, DeliveryMethod, TargetType, CostEventType,
)
from productguard.services.delivery import DeliveryError
from productguard.services.enforcement import (
    DMCAQueueProcessor, EnforcementTarget, BulkNotice, compute_backoff_seconds,
)

from conftest import make_product, make_infringement, make_queue_item, USER_ID, OTHER_USER_ID


def _processor(db, mailer=None, **overrides):
    config = PipelineConfig(send_interval_seconds=0, **overrides)
    return DMCAQueueProcessor(db, mailer=mailer, config=config, sleep=MagicMock())


def _mailer(message_id="msg-1", error=None):
    mailer = MagicMock()
    if error is not None:
        mailer.send.side_effect = error
    else:
        mailer.send.return_value = message_id
    return mailer


def _make_due(db, item):
    db.query(QueueItemDB).filter(QueueItemDB.id == item.id).update(
        {"scheduled_for": datetime.utcnow() - timedelta(seconds=1)},
        synchronize_session=False,
    )
    db.commit()


# =============================================================================
# BACKOFF
# =============================================================================

class TestBackoff:
    """Bounded exponential backoff."""

    @pytest.mark.parametrize("attempt, expected", [
        (1, 300),
        (2, 600),
        (3, 1200),
        (4, 2400),
        (5, 3600),
        (9, 3600),
    ])
    def test_schedule(self, attempt, expected):
        assert compute_backoff_seconds(attempt, 300, 3600) == expected


# =============================================================================
# DELIVERY OUTCOMES
# =============================================================================

class TestProcessCycle:
    """One bounded processing cycle."""

    def test_transient_failures_exhaust_attempts(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        item = make_queue_item(db, inf)
        processor = _processor(db, _mailer(error=DeliveryError("timeout", transient=True)))

        first = processor.process_cycle()
        db.refresh(item)
        assert first["failed"] == 1 and first["retried"] == 1
        assert item.status == QueueStatus.PENDING
        assert item.attempt_count == 1
        delay = (item.scheduled_for - datetime.utcnow()).total_seconds()
        assert 290 <= delay <= 300

        # Not due yet: nothing is claimed
        assert processor.process_cycle()["processed"] == 0

        _make_due(db, item)
        processor.process_cycle()
        db.refresh(item)
        assert item.status == QueueStatus.PENDING
        assert item.attempt_count == 2

        _make_due(db, item)
        third = processor.process_cycle()
        db.refresh(item)
        assert third["failed"] == 1 and third["retried"] == 0
        assert item.status == QueueStatus.FAILED
        assert item.attempt_count == 3
        assert item.completed_at is not None
        assert item.error_message == "timeout"
        assert db.query(TakedownDB).count() == 0

    def test_permanent_failure_fails_immediately(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        item = make_queue_item(db, inf)
        processor = _processor(db, _mailer(error=DeliveryError("invalid recipient", transient=False)))

        processor.process_cycle()

        db.refresh(item)
        assert item.status == QueueStatus.FAILED
        assert item.attempt_count == 1

    def test_missing_recipient_is_permanent(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        item = make_queue_item(db, inf, recipient_email=None)
        mailer = _mailer()

        _processor(db, mailer).process_cycle()

        db.refresh(item)
        assert item.status == QueueStatus.FAILED
        mailer.send.assert_not_called()

    def test_success_creates_one_takedown(self, db):
        product = make_product(db)
        inf = make_infringement(db, product, status=InfringementStatus.ACTIVE)
        item = make_queue_item(db, inf)
        mailer = _mailer("resend-abc")

        result = _processor(db, mailer).process_cycle()

        assert result["sent"] == 1
        mailer.send.assert_called_once_with(
            "dmca@host.example", "DMCA Takedown Notice", "Please remove the infringing content."
        )
        db.refresh(item)
        db.refresh(inf)
        takedown = db.query(TakedownDB).one()
        assert item.status == QueueStatus.SENT
        assert item.takedown_id == takedown.id
        assert item.provider_message_id == "resend-abc"
        assert takedown.queue_item_id == item.id
        assert takedown.infringing_url == inf.source_url
        assert inf.status == InfringementStatus.TAKEDOWN_SENT

        cost = db.query(UsageCostEventDB).one()
        assert cost.event_type == CostEventType.EMAIL_SEND
        assert cost.units == 1

    def test_second_target_keeps_takedown_sent(self, db):
        product = make_product(db)
        inf = make_infringement(db, product, status=InfringementStatus.ACTIVE)
        make_queue_item(db, inf)
        make_queue_item(db, inf, recipient_email="abuse@registrar.example")

        result = _processor(db, _mailer()).process_cycle()

        assert result["sent"] == 2
        assert db.query(TakedownDB).count() == 2
        db.refresh(inf)
        assert inf.status == InfringementStatus.TAKEDOWN_SENT
        # Only the first send moved the status
        assert db.query(StatusTransitionDB).filter(
            StatusTransitionDB.infringement_id == inf.id
        ).count() == 1

    def test_web_form_awaits_manual(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        item = make_queue_item(db, inf, delivery_method=DeliveryMethod.WEB_FORM, recipient_email=None)
        mailer = _mailer()

        result = _processor(db, mailer).process_cycle()

        assert result["awaiting_manual"] == 1
        assert result["items"][0]["form_url"] == "https://host.example/dmca"
        db.refresh(item)
        assert item.status == QueueStatus.AWAITING_MANUAL
        mailer.send.assert_not_called()
        assert db.query(TakedownDB).count() == 0

    def test_unexpected_mailer_error_does_not_abort_cycle(self, db):
        product = make_product(db)
        due = datetime.utcnow() - timedelta(minutes=10)
        items = [
            make_queue_item(db, make_infringement(db, product), scheduled_for=due + timedelta(minutes=i))
            for i in range(3)
        ]
        mailer = MagicMock()
        mailer.send.side_effect = [ValueError("Expecting value: line 1 column 1"), "m2", "m3"]

        result = _processor(db, mailer).process_cycle()

        assert result["processed"] == 3
        assert result["sent"] == 2
        assert result["failed"] == 1 and result["retried"] == 1
        statuses = []
        for item in items:
            db.refresh(item)
            statuses.append(item.status)
        assert statuses == [QueueStatus.PENDING, QueueStatus.SENT, QueueStatus.SENT]
        assert items[0].attempt_count == 1
        assert "Expecting value" in items[0].error_message
        assert db.query(TakedownDB).count() == 2

    def test_zero_limit_claims_nothing(self, db):
        product = make_product(db)
        item = make_queue_item(db, make_infringement(db, product))
        mailer = _mailer()

        result = _processor(db, mailer).process_cycle(limit=0)

        assert result["processed"] == 0
        mailer.send.assert_not_called()
        db.refresh(item)
        assert item.status == QueueStatus.PENDING

    def test_pause_between_email_sends(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        make_queue_item(db, inf)
        make_queue_item(db, inf)
        sleep = MagicMock()
        processor = DMCAQueueProcessor(
            db, mailer=_mailer(), config=PipelineConfig(send_interval_seconds=0.2), sleep=sleep,
        )

        processor.process_cycle()

        sleep.assert_called_once_with(0.2)

    def test_cycle_limit(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        for _ in range(4):
            make_queue_item(db, inf)

        result = _processor(db, _mailer(), cycle_limit=3).process_cycle()

        assert result["processed"] == 3
        assert db.query(QueueItemDB).filter(QueueItemDB.status == QueueStatus.PENDING).count() == 1


# =============================================================================
# CLAIMS AND RECOVERY
# =============================================================================

class TestClaims:
    """Atomic claims, stale recovery and tenant scoping."""

    def test_claimed_item_is_not_claimed_again(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        item = make_queue_item(db, inf)

        first = _processor(db).claim_due_items(limit=5)
        second = _processor(db).claim_due_items(limit=5)

        assert [i.id for i in first] == [item.id]
        assert second == []
        db.refresh(item)
        assert item.status == QueueStatus.PROCESSING

    def test_claim_order_follows_schedule_then_priority(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        due = datetime.utcnow() - timedelta(minutes=5)
        late = make_queue_item(db, inf, scheduled_for=due + timedelta(minutes=1))
        early = make_queue_item(db, inf, scheduled_for=due)

        claimed = _processor(db).claim_due_items(limit=5)

        assert [i.id for i in claimed] == [early.id, late.id]

    def test_stale_processing_recovered(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        stuck = make_queue_item(
            db, inf, status=QueueStatus.PROCESSING,
            processing_started_at=datetime.utcnow() - timedelta(hours=1),
        )
        fresh = make_queue_item(
            db, inf, status=QueueStatus.PROCESSING,
            processing_started_at=datetime.utcnow(),
        )

        result = _processor(db, _mailer()).process_cycle()

        assert result["recovered"] == 1
        assert result["sent"] == 1
        db.refresh(stuck)
        db.refresh(fresh)
        assert stuck.status == QueueStatus.SENT
        assert fresh.status == QueueStatus.PROCESSING

    def test_recovery_counts_an_attempt(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        stuck = make_queue_item(
            db, inf, status=QueueStatus.PROCESSING, attempt_count=1,
            processing_started_at=datetime.utcnow() - timedelta(hours=1),
        )

        assert _processor(db).recover_stale() == 1

        db.refresh(stuck)
        assert stuck.status == QueueStatus.PENDING
        assert stuck.attempt_count == 2
        assert stuck.processing_started_at is None

    def test_repeatedly_stuck_item_fails_when_attempts_run_out(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        stuck = make_queue_item(
            db, inf, status=QueueStatus.PROCESSING, attempt_count=2, max_attempts=3,
            processing_started_at=datetime.utcnow() - timedelta(hours=1),
        )
        mailer = _mailer()

        result = _processor(db, mailer).process_cycle()

        assert result["recovered"] == 1
        assert result["processed"] == 0
        mailer.send.assert_not_called()
        db.refresh(stuck)
        assert stuck.status == QueueStatus.FAILED
        assert stuck.attempt_count == 3
        assert stuck.completed_at is not None

    def test_cycle_scoped_to_tenant(self, db):
        mine = make_infringement(db, make_product(db))
        theirs = make_infringement(db, make_product(db, user_id=OTHER_USER_ID))
        my_item = make_queue_item(db, mine)
        their_item = make_queue_item(db, theirs)

        result = _processor(db, _mailer()).process_cycle(user_id=USER_ID)

        assert result["processed"] == 1
        db.refresh(my_item)
        db.refresh(their_item)
        assert my_item.status == QueueStatus.SENT
        assert their_item.status == QueueStatus.PENDING


# =============================================================================
# MANUAL SUBMISSION
# =============================================================================

class TestMarkManuallySubmitted:
    """Closing web-form and failed items by hand."""

    def test_idempotent_submission(self, db):
        product = make_product(db)
        inf = make_infringement(db, product, status=InfringementStatus.ACTIVE)
        item = make_queue_item(
            db, inf, status=QueueStatus.AWAITING_MANUAL,
            delivery_method=DeliveryMethod.WEB_FORM, recipient_email=None,
        )
        processor = _processor(db)

        first = processor.mark_manually_submitted(item.id, USER_ID)
        second = processor.mark_manually_submitted(item.id, USER_ID)

        assert first["success"] and not first["already_submitted"]
        assert second["success"] and second["already_submitted"]
        assert second["takedown_id"] == first["takedown_id"]
        assert db.query(TakedownDB).count() == 1

        takedown = db.query(TakedownDB).one()
        assert takedown.recipient == "https://host.example/dmca"
        assert takedown.delivery_method == DeliveryMethod.WEB_FORM
        db.refresh(inf)
        assert inf.status == InfringementStatus.TAKEDOWN_SENT

    def test_failed_item_can_be_closed(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        item = make_queue_item(db, inf, status=QueueStatus.FAILED, attempt_count=3)

        result = _processor(db).mark_manually_submitted(item.id, USER_ID)

        assert result["success"]
        db.refresh(item)
        assert item.status == QueueStatus.SENT

    def test_pending_email_item_conflicts(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        item = make_queue_item(db, inf)

        result = _processor(db).mark_manually_submitted(item.id, USER_ID)

        assert not result["success"]
        assert result["error_code"] == "conflict"

    def test_other_tenant_not_found(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        item = make_queue_item(db, inf, status=QueueStatus.AWAITING_MANUAL)

        result = _processor(db).mark_manually_submitted(item.id, OTHER_USER_ID)

        assert result["error_code"] == "not_found"


# =============================================================================
# ENQUEUE
# =============================================================================

class TestEnqueue:
    """Queueing notices."""

    def test_targets_keep_priority_order(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        targets = [
            EnforcementTarget("Platform", TargetType.PLATFORM, recipient_email="dmca@platform.example"),
            EnforcementTarget("HostCo", TargetType.HOSTING, recipient_email="abuse@host.example"),
        ]

        result = _processor(db).enqueue(USER_ID, inf.id, targets, "Notice", "Body")

        assert result["success"]
        items = db.query(QueueItemDB).order_by(QueueItemDB.priority).all()
        assert [i.provider_name for i in items] == ["Platform", "HostCo"]
        assert {i.batch_id for i in items} == {result["batch_id"]}
        assert all(i.max_attempts == 3 for i in items)

    def test_pending_verification_cannot_be_enforced(self, db):
        product = make_product(db)
        inf = make_infringement(db, product, status=InfringementStatus.PENDING_VERIFICATION)
        target = EnforcementTarget("Platform", TargetType.PLATFORM, recipient_email="dmca@platform.example")

        result = _processor(db).enqueue(USER_ID, inf.id, [target], "Notice", "Body")

        assert result["error_code"] == "conflict"
        assert db.query(QueueItemDB).count() == 0

    def test_no_targets_is_invalid(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)

        result = _processor(db).enqueue(USER_ID, inf.id, [], "Notice", "Body")

        assert result["error_code"] == "invalid"


class TestEnqueueBulk:
    """Signed, staggered bulk submissions."""

    def _notices(self, db):
        product = make_product(db)
        infringements = [make_infringement(db, product) for _ in range(3)]
        email = EnforcementTarget("Platform", TargetType.PLATFORM, recipient_email="dmca@platform.example")
        form = EnforcementTarget(
            "Google Search", TargetType.SEARCH_ENGINE,
            delivery_method=DeliveryMethod.WEB_FORM, form_url="https://forms.example/dmca",
        )
        return [
            BulkNotice(infringements[0].id, email, "Notice 1", "Body 1"),
            BulkNotice(infringements[1].id, form, "Notice 2", "Body 2"),
            BulkNotice(infringements[2].id, email, "Notice 3", "Body 3"),
        ]

    def test_stagger_and_signature(self, db):
        notices = self._notices(db)

        result = _processor(db).enqueue_bulk(USER_ID, notices, "Jane Creator")

        assert result["total_queued"] == 3
        assert result["email_count"] == 2
        assert result["web_form_count"] == 1
        assert result["estimated_completion_minutes"] == 3

        items = db.query(QueueItemDB).filter(
            QueueItemDB.delivery_method == DeliveryMethod.EMAIL
        ).order_by(QueueItemDB.scheduled_for).all()
        gap = (items[1].scheduled_for - items[0].scheduled_for).total_seconds()
        assert gap == 180
        for item in db.query(QueueItemDB).all():
            assert "Electronic Signature: /Jane Creator/" in item.notice_body
            assert "Signed at: " in item.notice_body

    def test_one_bad_infringement_rejects_batch(self, db):
        notices = self._notices(db)
        notices.append(BulkNotice("missing", notices[0].target, "Notice", "Body"))

        result = _processor(db).enqueue_bulk(USER_ID, notices, "Jane Creator")

        assert result["error_code"] == "not_found"
        assert db.query(QueueItemDB).count() == 0

    def test_signature_required(self, db):
        result = _processor(db).enqueue_bulk(USER_ID, self._notices(db), "  ")

        assert result["error_code"] == "invalid"

    def test_batch_size_limit(self, db):
        notices = self._notices(db)

        result = _processor(db, max_batch_items=2).enqueue_bulk(USER_ID, notices, "Jane Creator")

        assert result["error_code"] == "invalid"


# =============================================================================
# BATCH PROGRESS
# =============================================================================

class TestBatch:
    """Batch summary and cancellation."""

    def test_summary_counts(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        make_queue_item(db, inf, batch_id="batch-1", status=QueueStatus.SENT)
        make_queue_item(db, inf, batch_id="batch-1", status=QueueStatus.FAILED)
        make_queue_item(db, inf, batch_id="batch-1")
        make_queue_item(db, inf, batch_id="batch-1", status=QueueStatus.AWAITING_MANUAL)

        summary = _processor(db).get_batch_summary("batch-1", USER_ID)

        assert summary["total"] == 4
        assert summary["counts"]["sent"] == 1
        assert summary["counts"]["pending"] == 1
        assert summary["percent_complete"] == 50
        assert summary["next_scheduled_at"] is not None
        assert len(summary["items"]) == 4

    def test_summary_hidden_from_other_tenant(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        make_queue_item(db, inf, batch_id="batch-1")

        assert _processor(db).get_batch_summary("batch-1", OTHER_USER_ID) is None

    def test_cancel_skips_only_pending(self, db):
        product = make_product(db)
        inf = make_infringement(db, product)
        pending = make_queue_item(db, inf, batch_id="batch-1")
        sent = make_queue_item(db, inf, batch_id="batch-1", status=QueueStatus.SENT)

        result = _processor(db).cancel_batch("batch-1", USER_ID)

        assert result["cancelled"] == 1
        db.refresh(pending)
        db.refresh(sent)
        assert pending.status == QueueStatus.SKIPPED
        assert sent.status == QueueStatus.SENT

    def test_cancel_unknown_batch(self, db):
        assert _processor(db).cancel_batch("nope", USER_ID)["error_code"] == "not_found"
