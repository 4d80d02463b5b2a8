"""
Usage Cost Recorder

Buffers per-tenant billable events using known unit rates and writes them
in one go. One recorder belongs to one invocation (a scan run, a queue
cycle); nothing is shared at module level.

Usage:
    recorder = UsageCostRecorder(db)
    recorder.record(user_id, CostEventType.SCAN_WHOIS, 12, {"scan_id": scan_id})
    recorder.flush()  # at the end of the invocation
"""
import logging
from typing import Dict, List, Optional, Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import UsageCostEventDB, CostEventType

logger = logging.getLogger(__name__)

# Known unit costs, update when provider pricing changes
UNIT_COSTS = {
    CostEventType.SCAN_AI_FILTER: 0.0002,  # per result classified
    CostEventType.SCAN_WHOIS: 0.005,       # per WHOIS lookup
    CostEventType.EMAIL_SEND: 0.001,       # per transactional email
}


class UsageCostRecorder:
    """Buffered writer for usage_cost_events with explicit flush/reset."""

    BUFFER_LIMIT = 25

    def __init__(self, db: Session):
        self.db = db
        self._buffer: List[Dict[str, Any]] = []

    @property
    def pending(self) -> int:
        """Number of events currently buffered."""
        return len(self._buffer)

    def record(
        self,
        user_id: str,
        event_type: CostEventType,
        units: int,
        metadata: Optional[Dict[str, Any]] = None,
        product_id: Optional[str] = None,
    ) -> None:
        """Buffer one event. Zero-unit events are dropped."""
        if units <= 0:
            return

        self._buffer.append({
            "user_id": user_id,
            "product_id": product_id,
            "event_type": event_type,
            "units": units,
            "unit_cost": UNIT_COSTS[event_type],
            "event_metadata": metadata or {},
        })

        if len(self._buffer) >= self.BUFFER_LIMIT:
            self.flush()

    def flush(self) -> int:
        """
        Write buffered events into the current transaction.

        Best-effort: a failed write is logged and the events are dropped,
        the surrounding work is not affected.

        Returns:
            Number of events written
        """
        if not self._buffer:
            return 0

        events = self._buffer
        self._buffer = []

        try:
            with self.db.begin_nested():
                self.db.add_all([UsageCostEventDB(id=str(uuid4()), **event) for event in events])
        except SQLAlchemyError as e:
            logger.error(f"Failed to write {len(events)} usage cost events: {e}")
            return 0

        return len(events)

    def reset(self) -> None:
        """Discard anything buffered without writing it."""
        self._buffer = []
