"""
Scan History Ledger

Append-only record of scan executions plus delta detection against
everything already known for the scanned product.

Core Principles:
1. A run record is written once and never edited.
2. A (product, normalized URL) pair maps to exactly one infringement.
3. Re-detected URLs bump seen_count / last_seen_at and skip the
   expensive verification steps (WHOIS lookup, AI classification).
4. The ledger never commits. The caller commits the run and the delta
   together, so a failed write leaves no half-advanced delta state.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Any, Sequence, Union
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models.db_models import ScanDB, ScanRunDB, InfringementDB, InfringementStatus, CostEventType
from .cost_events import UNIT_COSTS
from .url_utils import normalize_url, hash_url

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """One URL yielded by the content-discovery collaborator."""
    url: str
    platform: Optional[str] = None
    query_category: Optional[str] = None
    query_tier: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def url_normalized(self) -> str:
        return normalize_url(self.url)

    @property
    def url_hash(self) -> str:
        return hash_url(self.url)


@dataclass
class RunStats:
    """Metrics for one scan execution."""
    total_urls_scanned: int = 0
    new_urls_found: int = 0
    new_infringements_created: int = 0
    api_calls_saved: int = 0
    ai_filtering_saved: int = 0
    duration_seconds: Optional[int] = None
    platforms_searched: Optional[List[str]] = None
    run_at: Optional[datetime] = None


@dataclass
class DeltaResult:
    """Partition of a candidate set against known infringements."""
    new: List[Candidate] = field(default_factory=list)
    reseen: List[InfringementDB] = field(default_factory=list)
    relisted: List[InfringementDB] = field(default_factory=list)
    duplicates_in_batch: int = 0

    @property
    def whois_lookups_skipped(self) -> int:
        return len(self.reseen)

    @property
    def ai_calls_skipped(self) -> int:
        return len(self.reseen)


def _as_candidate(item: Union[Candidate, str]) -> Candidate:
    if isinstance(item, Candidate):
        return item
    return Candidate(url=item)


def calculate_cost_savings(stats: Dict[str, Any]) -> Dict[str, float]:
    """Convert skipped lookups/classifications into dollars at the billed unit rates."""
    whois_savings = (stats.get("total_api_savings") or 0) * UNIT_COSTS[CostEventType.SCAN_WHOIS]
    ai_filtering_savings = (stats.get("total_ai_savings") or 0) * UNIT_COSTS[CostEventType.SCAN_AI_FILTER]
    return {
        "whois_savings": whois_savings,
        "ai_filtering_savings": ai_filtering_savings,
        "total_savings": whois_savings + ai_filtering_savings,
    }


class ScanHistoryLedger:
    """
    Service for the append-only scan history.

    Provides:
    - record_run: append one immutable run record
    - compute_delta: split fresh candidates into new vs. already known
    - get_statistics: aggregate across all runs of a scan
    """

    def __init__(self, db: Session):
        self.db = db

    def _get_scan(self, scan_id: str) -> ScanDB:
        scan = self.db.query(ScanDB).filter(ScanDB.id == scan_id).first()
        if scan is None:
            raise ValueError(f"Scan {scan_id} not found")
        return scan

    # =========================================================================
    # RUN RECORDS
    # =========================================================================

    def record_run(self, scan_id: str, stats: RunStats) -> str:
        """
        Append an immutable run record and advance the scan's run counters.

        Returns:
            The id of the new run record
        """
        scan = self._get_scan(scan_id)
        run_at = stats.run_at or datetime.utcnow()
        run_number = (scan.run_count or 0) + 1

        run = ScanRunDB(
            id=str(uuid4()),
            scan_id=scan_id,
            run_number=run_number,
            run_at=run_at,
            duration_seconds=stats.duration_seconds,
            total_urls_scanned=stats.total_urls_scanned,
            new_urls_found=stats.new_urls_found,
            new_infringements_created=stats.new_infringements_created,
            api_calls_saved=stats.api_calls_saved,
            ai_filtering_saved=stats.ai_filtering_saved,
            platforms_searched=stats.platforms_searched or [],
        )
        self.db.add(run)

        scan.run_count = run_number
        scan.last_run_at = run_at
        if scan.initial_run_at is None:
            scan.initial_run_at = run_at

        # Unique (scan_id, run_number) rejects a concurrent duplicate here
        self.db.flush()

        logger.info(
            f"Recorded run #{run_number} for scan {scan_id}: "
            f"{stats.total_urls_scanned} urls, {stats.new_infringements_created} new, "
            f"{stats.api_calls_saved} lookups skipped"
        )
        return run.id

    def get_history(self, scan_id: str, limit: Optional[int] = None) -> List[ScanRunDB]:
        """Run records for a scan, most recent first."""
        query = self.db.query(ScanRunDB).filter(
            ScanRunDB.scan_id == scan_id
        ).order_by(ScanRunDB.run_at.desc(), ScanRunDB.run_number.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    # =========================================================================
    # DELTA DETECTION
    # =========================================================================

    def compute_delta(
        self,
        scan_id: str,
        candidates: Sequence[Union[Candidate, str]],
        seen_at: Optional[datetime] = None,
    ) -> DeltaResult:
        """
        Partition candidates against every URL already known for the scan's product.

        Reseen infringements get seen_count + 1 and last_seen_at = seen_at.
        Removed infringements that show up again are also reported as relisted;
        deciding whether to reopen them is the caller's policy.
        """
        scan = self._get_scan(scan_id)
        seen_at = seen_at or datetime.utcnow()
        result = DeltaResult()

        by_hash: Dict[str, Candidate] = {}
        for item in candidates:
            candidate = _as_candidate(item)
            key = candidate.url_hash
            if key in by_hash:
                result.duplicates_in_batch += 1
                continue
            by_hash[key] = candidate

        if not by_hash:
            return result

        existing = self.db.query(InfringementDB).filter(
            InfringementDB.product_id == scan.product_id,
            InfringementDB.url_hash.in_(list(by_hash.keys())),
        ).all()
        existing_by_hash = {inf.url_hash: inf for inf in existing}

        for key, candidate in by_hash.items():
            infringement = existing_by_hash.get(key)
            if infringement is None:
                result.new.append(candidate)
                continue
            result.reseen.append(infringement)
            if infringement.status == InfringementStatus.REMOVED:
                result.relisted.append(infringement)

        if result.reseen:
            # Non-status fields: last writer wins
            self.db.query(InfringementDB).filter(
                InfringementDB.id.in_([inf.id for inf in result.reseen])
            ).update(
                {
                    InfringementDB.seen_count: InfringementDB.seen_count + 1,
                    InfringementDB.last_seen_at: seen_at,
                },
                synchronize_session=False,
            )
            for infringement in result.reseen:
                self.db.refresh(infringement)

        logger.info(
            f"Delta for scan {scan_id}: {len(result.new)} new, {len(result.reseen)} reseen, "
            f"{len(result.relisted)} relisted, {result.duplicates_in_batch} duplicates in batch"
        )
        return result

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def get_statistics(self, scan_id: str) -> Dict[str, Any]:
        """Aggregate metrics across every run of a scan."""
        row = self.db.query(
            func.count(ScanRunDB.id),
            func.coalesce(func.sum(ScanRunDB.total_urls_scanned), 0),
            func.coalesce(func.sum(ScanRunDB.new_infringements_created), 0),
            func.coalesce(func.sum(ScanRunDB.api_calls_saved), 0),
            func.coalesce(func.sum(ScanRunDB.ai_filtering_saved), 0),
            func.avg(ScanRunDB.duration_seconds),
            func.min(ScanRunDB.run_at),
            func.max(ScanRunDB.run_at),
        ).filter(ScanRunDB.scan_id == scan_id).one()

        total_runs, urls, new_infringements, api_savings, ai_savings, avg_duration, first_run, last_run = row

        return {
            "total_runs": int(total_runs),
            "total_urls_scanned": int(urls),
            "total_new_infringements": int(new_infringements),
            "total_api_savings": int(api_savings),
            "total_ai_savings": int(ai_savings),
            "avg_duration_seconds": int(round(float(avg_duration))) if avg_duration is not None else 0,
            "first_run_at": first_run,
            "last_run_at": last_run,
        }
