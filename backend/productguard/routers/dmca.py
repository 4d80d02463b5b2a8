"""
DMCA API Routes

Queueing, delivery cycles, manual submission and batch progress for
takedown notices.
"""
from typing import Optional, List
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_scheduler_or_user, CurrentUser
from ..config import PipelineConfig
from ..database import get_db
from ..deps import get_pipeline_config, get_mailer, get_rate_limiter, raise_for_error
from ..models.db_models import TargetType, DeliveryMethod
from ..services.enforcement import DMCAQueueProcessor, EnforcementTarget, BulkNotice


router = APIRouter(prefix="/dmca", tags=["dmca"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class TargetRequest(BaseModel):
    """One enforcement target, in priority order."""
    provider_name: str = Field(..., min_length=1, description="Provider receiving the notice")
    target_type: TargetType = Field(..., description="platform, hosting, registrar or search_engine")
    delivery_method: DeliveryMethod = Field(default=DeliveryMethod.EMAIL)
    recipient_email: Optional[str] = Field(None, description="DMCA agent / abuse address")
    recipient_name: Optional[str] = Field(None, description="DMCA agent name")
    form_url: Optional[str] = Field(None, description="Web form for form-only providers")

    def to_target(self) -> EnforcementTarget:
        return EnforcementTarget(**self.model_dump())


class EnqueueRequest(BaseModel):
    """Queue one notice to each resolved target of an infringement."""
    infringement_id: str
    targets: List[TargetRequest] = Field(..., min_length=1)
    notice_subject: str = Field(..., min_length=1)
    notice_body: str = Field(..., min_length=1)


class BulkItemRequest(BaseModel):
    """One reviewed notice in a bulk submission."""
    infringement_id: str
    target: TargetRequest
    notice_subject: str = Field(..., min_length=1)
    notice_body: str = Field(..., min_length=1)


class SubmitBulkRequest(BaseModel):
    """Reviewed bulk submission with electronic signature."""
    items: List[BulkItemRequest] = Field(..., min_length=1)
    signature_name: str = Field(..., min_length=1)
    perjury_confirmed: bool = False
    liability_confirmed: bool = False


class ProcessQueueRequest(BaseModel):
    """Optional cycle size override."""
    limit: Optional[int] = Field(None, ge=1, le=50)


def _processor(db: Session, config: PipelineConfig, mailer=None) -> DMCAQueueProcessor:
    return DMCAQueueProcessor(db, mailer=mailer, config=config)


# =============================================================================
# QUEUEING
# =============================================================================

@router.post("/enqueue", response_model=dict)
async def enqueue_notice(
    request: EnqueueRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    config: PipelineConfig = Depends(get_pipeline_config),
):
    """Queue a takedown notice for every target of one infringement."""
    result = _processor(db, config).enqueue(
        user_id=current_user.id,
        infringement_id=request.infringement_id,
        targets=[t.to_target() for t in request.targets],
        notice_subject=request.notice_subject,
        notice_body=request.notice_body,
    )
    return raise_for_error(result)


@router.post("/submit-bulk", response_model=dict)
async def submit_bulk(
    request: SubmitBulkRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    config: PipelineConfig = Depends(get_pipeline_config),
    rate_limiter=Depends(get_rate_limiter),
):
    """
    Queue reviewed notices for many infringements as one batch.
    Email items are staggered; one submission per user per window.
    """
    if not request.perjury_confirmed or not request.liability_confirmed:
        raise HTTPException(
            status_code=400,
            detail="You must confirm the perjury and liability statements",
        )
    if len(request.items) > config.max_batch_items:
        raise HTTPException(status_code=400, detail=f"Maximum {config.max_batch_items} items per batch")

    if not rate_limiter.allow(f"submit-bulk:{current_user.id}"):
        raise HTTPException(
            status_code=429,
            detail="Rate limited. Please wait 5 minutes between bulk submissions.",
            headers={"Retry-After": str(int(rate_limiter.retry_after(f"submit-bulk:{current_user.id}")) + 1)},
        )

    notices = [
        BulkNotice(
            infringement_id=item.infringement_id,
            target=item.target.to_target(),
            notice_subject=item.notice_subject,
            notice_body=item.notice_body,
        )
        for item in request.items
    ]
    result = _processor(db, config).enqueue_bulk(current_user.id, notices, request.signature_name)
    return raise_for_error(result)


# =============================================================================
# DELIVERY
# =============================================================================

@router.post("/process-queue", response_model=dict)
def process_queue(
    request: Optional[ProcessQueueRequest] = None,
    db: Session = Depends(get_db),
    caller: Optional[CurrentUser] = Depends(require_scheduler_or_user),
    config: PipelineConfig = Depends(get_pipeline_config),
    mailer=Depends(get_mailer),
):
    """
    Run one delivery cycle.

    The scheduler processes every tenant; a signed-in user only their own items.
    """
    limit = request.limit if request else None
    return _processor(db, config, mailer).process_cycle(
        limit=limit,
        user_id=caller.id if caller else None,
    )


@router.post("/queue/{item_id}/mark-submitted", response_model=dict)
async def mark_submitted(
    item_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    config: PipelineConfig = Depends(get_pipeline_config),
):
    """Close a web-form or failed item the user submitted by hand. Safe to replay."""
    result = _processor(db, config).mark_manually_submitted(item_id, current_user.id)
    return raise_for_error(result)


# =============================================================================
# BATCHES
# =============================================================================

@router.get("/batch/{batch_id}", response_model=dict)
async def get_batch(
    batch_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    config: PipelineConfig = Depends(get_pipeline_config),
):
    """Batch progress derived from its items."""
    summary = _processor(db, config).get_batch_summary(batch_id, current_user.id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return summary


@router.post("/batch/{batch_id}/cancel", response_model=dict)
async def cancel_batch(
    batch_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    config: PipelineConfig = Depends(get_pipeline_config),
):
    """Skip every still-pending item of a batch."""
    result = _processor(db, config).cancel_batch(batch_id, current_user.id)
    return raise_for_error(result)
