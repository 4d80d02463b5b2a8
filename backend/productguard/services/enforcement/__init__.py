"""
Enforcement Services

Infringement state machine -> DMCA send queue -> deadline tracking.

- InfringementStateMachine: guarded, audited status transitions
- InfringementService: human verification, resolution, reopen, reassignment
- DMCAQueueProcessor: queued notice delivery with retry and manual channels
- DeadlineTracker: overdue detection and escalation suggestions
"""

from .state_machine import InfringementStateMachine, next_status
from .infringement_service import InfringementService
from .queue_processor import (
    DMCAQueueProcessor,
    EnforcementTarget,
    BulkNotice,
    compute_backoff_seconds,
)
from .deadline_tracker import DeadlineTracker, EscalationSuggestion

__all__ = [
    'InfringementStateMachine',
    'next_status',
    'InfringementService',
    'DMCAQueueProcessor',
    'EnforcementTarget',
    'BulkNotice',
    'compute_backoff_seconds',
    'DeadlineTracker',
    'EscalationSuggestion',
]
