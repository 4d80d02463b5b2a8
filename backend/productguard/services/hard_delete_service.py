"""
Hard Delete Service

Administrative, transactional purge of a product with full dependency teardown.
Normal operation never deletes infringements; this is the only path that does.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class HardDeleteService:
    """
    Centralized hard delete service.
    Single source of truth for dependency discovery and ordered deletion.
    """

    def __init__(self, db: Session):
        self.db = db

    def purge_product(self, product_id: str, user_id: Optional[str] = None) -> Optional[dict]:
        """
        Hard delete a product and all dependent records.

        user_id scopes the purge to the owning tenant; None is the admin path.

        Deletion order:
        1. Learning data (verification feedback)
        2. Usage cost events for the product
        3. Scan history rows of the product's scans
        4. Queue items and takedowns of the product's infringements
        5. Status transition audit rows
        6. Infringements
        7. Scans
        8. The product

        Returns cascade counts for confirmation, or None if not found.
        """
        from ..models.db_models import (
            ProductDB, ScanDB, ScanRunDB, InfringementDB, StatusTransitionDB,
            VerificationFeedbackDB, TakedownDB, QueueItemDB, UsageCostEventDB,
        )

        query = self.db.query(ProductDB).filter(ProductDB.id == product_id)
        if user_id is not None:
            query = query.filter(ProductDB.user_id == user_id)
        product = query.first()

        if not product:
            return None

        cascade = {
            "verification_feedback": 0,
            "usage_cost_events": 0,
            "scan_history": 0,
            "queue_items": 0,
            "takedowns": 0,
            "status_transitions": 0,
            "infringements": 0,
            "scans": 0,
        }

        scan_ids = [
            s.id for s in
            self.db.query(ScanDB.id).filter(ScanDB.product_id == product_id).all()
        ]
        infringement_ids = [
            i.id for i in
            self.db.query(InfringementDB.id).filter(InfringementDB.product_id == product_id).all()
        ]

        # Step 1: Learning data
        cascade["verification_feedback"] = self.db.query(VerificationFeedbackDB).filter(
            VerificationFeedbackDB.product_id == product_id
        ).delete(synchronize_session=False)
        if infringement_ids:
            cascade["verification_feedback"] += self.db.query(VerificationFeedbackDB).filter(
                VerificationFeedbackDB.infringement_id.in_(infringement_ids)
            ).delete(synchronize_session=False)

        # Step 2: Usage cost events
        cascade["usage_cost_events"] = self.db.query(UsageCostEventDB).filter(
            UsageCostEventDB.product_id == product_id
        ).delete(synchronize_session=False)

        if scan_ids:
            # Step 3: History rows referencing the scans
            cascade["scan_history"] = self.db.query(ScanRunDB).filter(
                ScanRunDB.scan_id.in_(scan_ids)
            ).delete(synchronize_session=False)

            # Infringements moved to another product keep living without the scan
            self.db.query(InfringementDB).filter(
                InfringementDB.scan_id.in_(scan_ids),
                InfringementDB.product_id != product_id,
            ).update({"scan_id": None}, synchronize_session=False)

        if infringement_ids:
            # Step 4: Queue items reference takedowns, so they go first
            cascade["queue_items"] = self.db.query(QueueItemDB).filter(
                QueueItemDB.infringement_id.in_(infringement_ids)
            ).delete(synchronize_session=False)

            cascade["takedowns"] = self.db.query(TakedownDB).filter(
                TakedownDB.infringement_id.in_(infringement_ids)
            ).delete(synchronize_session=False)

            # Step 5: Audit rows
            cascade["status_transitions"] = self.db.query(StatusTransitionDB).filter(
                StatusTransitionDB.infringement_id.in_(infringement_ids)
            ).delete(synchronize_session=False)

            # Step 6: Infringements
            cascade["infringements"] = self.db.query(InfringementDB).filter(
                InfringementDB.id.in_(infringement_ids)
            ).delete(synchronize_session=False)

        # Step 7: Scans
        if scan_ids:
            cascade["scans"] = self.db.query(ScanDB).filter(
                ScanDB.id.in_(scan_ids)
            ).delete(synchronize_session=False)

        # Step 8: The product
        self.db.query(ProductDB).filter(ProductDB.id == product_id).delete(synchronize_session=False)
        self.db.commit()

        logger.info(f"Purged product {product_id}: {cascade}")
        return cascade
