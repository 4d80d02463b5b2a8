"""
Scheduler API Routes

Internal endpoints for system-automatic tasks.
Queue cycles, deadline checks, precision recomputation.

Every call must present the X-Internal-Key secret. Each invocation is a
bounded unit of work that reads current state, acts, and returns counts.
"""
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import verify_internal_key
from ..config import PipelineConfig
from ..database import get_db
from ..deps import get_pipeline_config, get_mailer
from ..services.enforcement import DMCAQueueProcessor, DeadlineTracker
from ..services.intelligence import CategoryPrecisionEngine, build_confidence_context


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/process-queue", response_model=dict)
def run_queue_cycle(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
    config: PipelineConfig = Depends(get_pipeline_config),
    mailer=Depends(get_mailer),
):
    """
    Run one DMCA send queue cycle across all tenants.

    System-automatic - no user confirmation required.
    """
    processor = DMCAQueueProcessor(db, mailer=mailer, config=config)

    result = processor.process_cycle()

    return {
        "task": "process_queue",
        "run_date": datetime.now(timezone.utc).isoformat(),
        **result,
    }


@router.post("/check-deadlines", response_model=dict)
async def run_deadline_check(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
    config: PipelineConfig = Depends(get_pipeline_config),
):
    """
    Run the daily deadline check.

    Marks overdue takedowns, flags stale reviews and, when AUTO_ESCALATE
    is on, queues concrete escalation steps.
    """
    tracker = DeadlineTracker(db, config=config)

    return tracker.run_scheduled_check()


@router.get("/category-precision", response_model=dict)
async def get_category_precision(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Recompute precision per detection category.

    Read-only; includes the global advisory the classifier receives.
    """
    stats = CategoryPrecisionEngine(db).compute_precision()

    return {
        "run_date": datetime.now(timezone.utc).isoformat(),
        "categories": [stat.to_dict() for stat in stats.values()],
        "context": build_confidence_context(stats),
    }
