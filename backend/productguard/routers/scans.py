"""
Scan API Routes

Run ingestion, history and statistics for living scans.
"""
from typing import Optional, List
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user, CurrentUser
from ..config import PipelineConfig
from ..database import get_db
from ..deps import get_pipeline_config, get_scan_collaborators
from ..models.db_models import ScanDB
from ..services.scan_history import (
    ScanHistoryLedger, ScanPipeline, Candidate, calculate_cost_savings,
)


router = APIRouter(prefix="/scans", tags=["scans"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class CandidateRequest(BaseModel):
    """One URL found by content discovery."""
    url: str = Field(..., min_length=1, description="Discovered URL")
    platform: Optional[str] = Field(None, description="Platform the URL was found on")
    query_category: Optional[str] = Field(None, description="Search strategy that found it")
    query_tier: Optional[int] = Field(None, description="Strategy tier")
    metadata: dict = Field(default_factory=dict, description="Extra discovery metadata")


class RunScanRequest(BaseModel):
    """Candidates for one scan run."""
    candidates: List[CandidateRequest] = Field(default_factory=list)
    platforms_searched: Optional[List[str]] = None


def _get_owned_scan(db: Session, scan_id: str, user: CurrentUser) -> ScanDB:
    scan = db.query(ScanDB).filter(ScanDB.id == scan_id, ScanDB.user_id == user.id).first()
    if scan is None:
        raise HTTPException(status_code=404, detail="Scan not found")
    return scan


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/{scan_id}/runs", response_model=dict)
def run_scan(
    scan_id: str,
    request: RunScanRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    config: PipelineConfig = Depends(get_pipeline_config),
    collaborators=Depends(get_scan_collaborators),
):
    """
    Record a scan run: delta detection, verification of new URLs only,
    and an immutable history entry.
    """
    _get_owned_scan(db, scan_id, current_user)
    classifier, profiler = collaborators

    pipeline = ScanPipeline(db, classifier=classifier, profiler=profiler, config=config)
    result = pipeline.run(
        scan_id,
        [Candidate(**c.model_dump()) for c in request.candidates],
        platforms_searched=request.platforms_searched,
    )
    return result.to_dict()


@router.get("/{scan_id}/history", response_model=dict)
async def get_scan_history(
    scan_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Run records, most recent first."""
    _get_owned_scan(db, scan_id, current_user)
    runs = ScanHistoryLedger(db).get_history(scan_id, limit=limit)
    return {
        "scan_id": scan_id,
        "runs": [
            {
                "id": run.id,
                "run_number": run.run_number,
                "run_at": run.run_at.isoformat() if run.run_at else None,
                "duration_seconds": run.duration_seconds,
                "total_urls_scanned": run.total_urls_scanned,
                "new_urls_found": run.new_urls_found,
                "new_infringements_created": run.new_infringements_created,
                "api_calls_saved": run.api_calls_saved,
                "ai_filtering_saved": run.ai_filtering_saved,
            }
            for run in runs
        ],
    }


@router.get("/{scan_id}/statistics", response_model=dict)
async def get_scan_statistics(
    scan_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Aggregates across every run, plus the estimated cost avoided."""
    _get_owned_scan(db, scan_id, current_user)
    stats = ScanHistoryLedger(db).get_statistics(scan_id)
    return {
        **stats,
        "first_run_at": stats["first_run_at"].isoformat() if stats["first_run_at"] else None,
        "last_run_at": stats["last_run_at"].isoformat() if stats["last_run_at"] else None,
        "cost_savings": calculate_cost_savings(stats),
    }
