"""
Scan History Services

Append-only run ledger, delta detection and scan run orchestration.
"""

from .url_utils import normalize_url, hash_url
from .ledger import (
    ScanHistoryLedger,
    Candidate,
    RunStats,
    DeltaResult,
    calculate_cost_savings,
)
from .cost_events import UsageCostRecorder, UNIT_COSTS
from .pipeline import ScanPipeline, Classification, PipelineResult

__all__ = [
    "normalize_url",
    "hash_url",
    "ScanHistoryLedger",
    "Candidate",
    "RunStats",
    "DeltaResult",
    "calculate_cost_savings",
    "UsageCostRecorder",
    "UNIT_COSTS",
    "ScanPipeline",
    "Classification",
    "PipelineResult",
]
