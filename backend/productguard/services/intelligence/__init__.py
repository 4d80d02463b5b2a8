"""
Detection Intelligence

Learns detection-strategy accuracy from human verification verdicts.
Read-only usage: supplies calibration context, never decides.
"""

from .category_precision import (
    CategoryPrecisionEngine,
    CategoryPrecisionStat,
    CategoryRow,
    compute_precision_pct,
    merge_category_rows,
    build_confidence_context,
)

__all__ = [
    "CategoryPrecisionEngine",
    "CategoryPrecisionStat",
    "CategoryRow",
    "compute_precision_pct",
    "merge_category_rows",
    "build_confidence_context",
]
