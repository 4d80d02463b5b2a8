"""
ProductGuard Enforcement Engine - Admin Router
Administrative purge and learning diagnostics.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth import require_admin, CurrentUser
from ..database import get_db
from ..services.hard_delete_service import HardDeleteService
from ..services.intelligence import CategoryPrecisionEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.delete("/products/{product_id}", response_model=dict)
async def purge_product(
    product_id: str,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_admin),
):
    """
    Hard delete a product with every dependent record.
    Returns the cascade counts.
    """
    cascade = HardDeleteService(db).purge_product(product_id)
    if cascade is None:
        raise HTTPException(status_code=404, detail="Product not found")

    logger.info(f"Admin {admin.id} purged product {product_id}")
    return {"product_id": product_id, "deleted": cascade}


@router.get("/category-precision", response_model=dict)
async def category_precision_dashboard(
    db: Session = Depends(get_db),
    _: CurrentUser = Depends(require_admin),
):
    """Precision per category, narrowest rows and merged view side by side."""
    engine = CategoryPrecisionEngine(db)
    rows = engine.fetch_rows()
    stats = engine.compute_precision()
    return {
        "rows": [row.__dict__ for row in rows],
        "categories": [stat.to_dict() for stat in stats.values()],
    }
