"""
Infringement API Routes

Human verification and lifecycle actions on infringements.
Every action is tenant-scoped; another tenant's infringement is a 404.
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user, CurrentUser
from ..database import get_db
from ..models.db_models import InfringementDB, StatusTransitionDB
from ..services.enforcement import InfringementService


router = APIRouter(prefix="/infringements", tags=["infringements"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class ReopenRequest(BaseModel):
    """Request to reopen a removed or notified infringement."""
    reason: Optional[str] = Field(None, description="Why the infringement is reopened")


class ReassignRequest(BaseModel):
    """Request to move an infringement to another product."""
    product_id: str = Field(..., description="Target product (same tenant)")


def _get_owned(service: InfringementService, infringement_id: str, user: CurrentUser) -> InfringementDB:
    infringement = service.get_for_user(infringement_id, user.id)
    if infringement is None:
        raise HTTPException(status_code=404, detail="Infringement not found")
    return infringement


def _commit_or_conflict(db: Session, result: dict) -> dict:
    if not result["success"]:
        db.rollback()
        raise HTTPException(status_code=409, detail=result["message"])
    db.commit()
    return result


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/{infringement_id}", response_model=dict)
async def get_infringement(
    infringement_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Get one infringement."""
    infringement = _get_owned(InfringementService(db), infringement_id, current_user)
    return {
        "id": infringement.id,
        "product_id": infringement.product_id,
        "source_url": infringement.source_url,
        "platform": infringement.platform,
        "query_category": infringement.query_category,
        "status": infringement.status.value,
        "risk_level": infringement.risk_level.value if infringement.risk_level else None,
        "severity_score": infringement.severity_score,
        "seen_count": infringement.seen_count,
        "first_seen_at": infringement.first_seen_at.isoformat() if infringement.first_seen_at else None,
        "last_seen_at": infringement.last_seen_at.isoformat() if infringement.last_seen_at else None,
        "review_flagged_at": infringement.review_flagged_at.isoformat() if infringement.review_flagged_at else None,
    }


@router.post("/{infringement_id}/verify", response_model=dict)
async def verify_infringement(
    infringement_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Confirm a detection (pending_verification -> active)."""
    service = InfringementService(db)
    infringement = _get_owned(service, infringement_id, current_user)
    return _commit_or_conflict(db, service.verify(infringement, current_user.id))


@router.post("/{infringement_id}/reject", response_model=dict)
async def reject_infringement(
    infringement_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Discard a false positive (pending_verification -> rejected)."""
    service = InfringementService(db)
    infringement = _get_owned(service, infringement_id, current_user)
    return _commit_or_conflict(db, service.reject(infringement, current_user.id))


@router.post("/{infringement_id}/resolve", response_model=dict)
async def resolve_infringement(
    infringement_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Confirm the content was taken down."""
    service = InfringementService(db)
    infringement = _get_owned(service, infringement_id, current_user)
    return _commit_or_conflict(db, service.resolve(infringement, current_user.id))


@router.post("/{infringement_id}/reopen", response_model=dict)
async def reopen_infringement(
    infringement_id: str,
    request: ReopenRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Human override back to active."""
    service = InfringementService(db)
    infringement = _get_owned(service, infringement_id, current_user)
    return _commit_or_conflict(db, service.reopen(infringement, current_user.id, request.reason))


@router.post("/{infringement_id}/reassign", response_model=dict)
async def reassign_infringement(
    infringement_id: str,
    request: ReassignRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Move an infringement to another of the tenant's products."""
    service = InfringementService(db)
    infringement = _get_owned(service, infringement_id, current_user)
    result = service.reassign_product(infringement, request.product_id, current_user.id)
    if not result["success"]:
        db.rollback()
        status_code = 404 if result.get("error_code") == "not_found" else 409
        raise HTTPException(status_code=status_code, detail=result["message"])
    db.commit()
    return result


@router.get("/{infringement_id}/transitions", response_model=dict)
async def get_transitions(
    infringement_id: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Audit trail, oldest first."""
    infringement = _get_owned(InfringementService(db), infringement_id, current_user)
    rows = db.query(StatusTransitionDB).filter(
        StatusTransitionDB.infringement_id == infringement.id
    ).order_by(StatusTransitionDB.created_at.asc()).all()
    return {
        "infringement_id": infringement.id,
        "transitions": [
            {
                "event_type": row.event_type,
                "from_status": row.from_status,
                "to_status": row.to_status,
                "reason": row.reason,
                "actor": row.actor.value,
                "actor_id": row.actor_id,
                "metadata": row.transition_metadata,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in rows
        ],
    }
