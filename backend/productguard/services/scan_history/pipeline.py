"""
Scan Pipeline

Orchestrates one scan run:
delta -> (new candidates only) infrastructure profiling + classification
with the precision advisory -> insert pending infringements -> record the
run -> flush usage costs. Everything commits together or not at all.

Collaborators are injected and treated as opaque:
- classifier.classify(candidate, precision_context) -> Classification
- profiler.profile(candidate) -> dict (hosting_provider, registrar, abuse emails...)
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any, Sequence, Union
from uuid import uuid4

from sqlalchemy.orm import Session

from ...config import PipelineConfig
from ...models.db_models import (
    ScanDB, InfringementDB, InfringementStatus, InfringementEvent,
    ActorType, RiskLevel, CostEventType,
)
from ..enforcement.state_machine import InfringementStateMachine
from ..intelligence.category_precision import CategoryPrecisionEngine, build_confidence_context
from .cost_events import UsageCostRecorder
from .ledger import ScanHistoryLedger, Candidate, RunStats

logger = logging.getLogger(__name__)

VERDICT_CONFIRMED = "confirmed"
VERDICT_LIKELY = "likely"
VERDICT_REJECTED = "rejected"


@dataclass
class Classification:
    """Verdict returned by the classification collaborator."""
    verdict: str  # confirmed, likely, rejected
    severity_score: int = 0  # 0-100

    @property
    def is_rejected(self) -> bool:
        return self.verdict == VERDICT_REJECTED


@dataclass
class PipelineResult:
    """Outcome of a scan run."""
    run_id: str
    new_infringement_ids: List[str] = field(default_factory=list)
    reseen_count: int = 0
    relisted_ids: List[str] = field(default_factory=list)
    reopened_ids: List[str] = field(default_factory=list)
    filtered_out: int = 0
    api_calls_saved: int = 0
    ai_filtering_saved: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "new_infringements": len(self.new_infringement_ids),
            "new_infringement_ids": self.new_infringement_ids,
            "reseen": self.reseen_count,
            "relisted": self.relisted_ids,
            "reopened": self.reopened_ids,
            "filtered_out": self.filtered_out,
            "api_calls_saved": self.api_calls_saved,
            "ai_filtering_saved": self.ai_filtering_saved,
        }


def risk_level_for(severity_score: int) -> RiskLevel:
    """Map a 0-100 severity estimate onto the risk tiers."""
    if severity_score >= 80:
        return RiskLevel.CRITICAL
    if severity_score >= 60:
        return RiskLevel.HIGH
    if severity_score >= 40:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class ScanPipeline:
    """Runs delta detection and verification for one scan execution."""

    def __init__(
        self,
        db: Session,
        classifier,
        profiler=None,
        config: Optional[PipelineConfig] = None,
    ):
        self.db = db
        self.classifier = classifier
        self.profiler = profiler
        self.config = config or PipelineConfig()
        self.ledger = ScanHistoryLedger(db)
        self.precision = CategoryPrecisionEngine(db)
        self.state_machine = InfringementStateMachine(db)

    def run(
        self,
        scan_id: str,
        candidates: Sequence[Union[Candidate, str]],
        platforms_searched: Optional[List[str]] = None,
    ) -> PipelineResult:
        """
        Execute one run and commit it.

        Raises:
            ValueError: unknown scan
            SQLAlchemyError: store failure; nothing was committed

        Any collaborator failure (profiler, classifier) also rolls the run
        back before propagating.
        """
        started = time.monotonic()
        recorder = UsageCostRecorder(self.db)

        try:
            scan = self.db.query(ScanDB).filter(ScanDB.id == scan_id).first()
            if scan is None:
                raise ValueError(f"Scan {scan_id} not found")

            delta = self.ledger.compute_delta(scan_id, candidates)
            result = PipelineResult(
                run_id="",
                reseen_count=len(delta.reseen),
                relisted_ids=[inf.id for inf in delta.relisted],
                api_calls_saved=delta.whois_lookups_skipped,
                ai_filtering_saved=delta.ai_calls_skipped,
            )

            if self.config.auto_reopen_on_relist:
                for infringement in delta.relisted:
                    success, _ = self.state_machine.transition(
                        infringement=infringement,
                        event=InfringementEvent.RELIST_DETECTED,
                        actor=ActorType.SYSTEM,
                        reason="Removed content detected again by scan",
                        metadata={"scan_id": scan_id},
                    )
                    if success:
                        result.reopened_ids.append(infringement.id)

            # Precision stats are read once per run
            stats = self.precision.compute_precision() if delta.new else {}
            profiled = 0
            classified = 0
            now = datetime.utcnow()

            for candidate in delta.new:
                infrastructure = None
                if self.profiler is not None:
                    infrastructure = self.profiler.profile(candidate)
                    profiled += 1

                context = build_confidence_context(stats, candidate.query_category)
                classification = self.classifier.classify(candidate, context)
                classified += 1

                if classification.is_rejected:
                    result.filtered_out += 1
                    continue

                infringement = InfringementDB(
                    id=str(uuid4()),
                    product_id=scan.product_id,
                    user_id=scan.user_id,
                    scan_id=scan_id,
                    source_url=candidate.url,
                    url_normalized=candidate.url_normalized,
                    url_hash=candidate.url_hash,
                    platform=candidate.platform,
                    query_category=candidate.query_category,
                    query_tier=candidate.query_tier,
                    severity_score=classification.severity_score,
                    risk_level=risk_level_for(classification.severity_score),
                    status=InfringementStatus.PENDING_VERIFICATION,
                    first_seen_at=now,
                    last_seen_at=now,
                    seen_count=1,
                    infrastructure=infrastructure,
                    est_revenue_loss=candidate.metadata.get("est_revenue_loss"),
                )
                self.db.add(infringement)
                result.new_infringement_ids.append(infringement.id)

            recorder.record(scan.user_id, CostEventType.SCAN_WHOIS, profiled,
                            {"scan_id": scan_id}, product_id=scan.product_id)
            recorder.record(scan.user_id, CostEventType.SCAN_AI_FILTER, classified,
                            {"scan_id": scan_id}, product_id=scan.product_id)

            result.run_id = self.ledger.record_run(scan_id, RunStats(
                total_urls_scanned=len(candidates),
                new_urls_found=len(delta.new),
                new_infringements_created=len(result.new_infringement_ids),
                api_calls_saved=delta.whois_lookups_skipped,
                ai_filtering_saved=delta.ai_calls_skipped,
                duration_seconds=int(round(time.monotonic() - started)),
                platforms_searched=platforms_searched,
                run_at=now,
            ))

            recorder.flush()
            self.db.commit()
        except Exception as e:
            # A failed run must not advance delta state
            self.db.rollback()
            recorder.reset()
            logger.error(f"Scan run for {scan_id} failed, rolled back: {e}")
            raise

        logger.info(
            f"Scan {scan_id} run complete: {len(result.new_infringement_ids)} new, "
            f"{result.reseen_count} reseen, {result.filtered_out} filtered"
        )
        return result
