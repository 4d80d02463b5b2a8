"""
Category Precision Engine

Learns which detection strategies (query categories) produce real
infringements, from the verdicts users give in review.

Computes:
- verified_count: results confirmed as infringements (active and beyond)
- rejected_count: results rejected as false positives
- precision_pct: verified / (verified + rejected) * 100, one decimal

Consumes: infringements (status reflects the human verdict)
Outputs: CategoryPrecisionStat per category, and a deterministic advisory
text handed to the classification collaborator.

A derived view: nothing is stored, everything is recomputed on demand.
"""
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Iterable, Any

from sqlalchemy import func, case
from sqlalchemy.orm import Session

from ...models.db_models import InfringementDB, ProductDB, InfringementStatus

# Any status past human confirmation counts as verified
VERIFIED_STATUSES = (
    InfringementStatus.ACTIVE,
    InfringementStatus.TAKEDOWN_SENT,
    InfringementStatus.REMOVED,
)

# Advisory thresholds
SPECIFIC_MIN_REVIEWED = 3
SUMMARY_MIN_REVIEWED = 5
LOW_PRECISION_PCT = 30
HIGH_PRECISION_PCT = 70
SUMMARY_HIGH_PCT = 60
SUMMARY_LOW_PCT = 40
SUMMARY_SIZE = 3

CONTEXT_HEADER = "HISTORICAL PRECISION CONTEXT (from user verification feedback):"


@dataclass
class CategoryRow:
    """One row of the raw aggregation, narrower than a category."""
    query_category: str
    query_tier: Optional[int]
    product_type: Optional[str]
    total_results: int
    verified_count: int
    rejected_count: int
    pending_count: int = 0


@dataclass
class CategoryPrecisionStat:
    """Precision of one detection category, merged across tiers and product types."""
    query_category: str
    query_tier: Optional[int]
    total_results: int
    verified_count: int
    rejected_count: int
    pending_count: int
    precision_pct: Optional[float]

    @property
    def reviewed_count(self) -> int:
        return self.verified_count + self.rejected_count

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reviewed_count"] = self.reviewed_count
        return data


def compute_precision_pct(verified: int, rejected: int, min_reviewed: int = 1) -> Optional[float]:
    """Percentage with one decimal, or None below the sample threshold."""
    reviewed = verified + rejected
    if reviewed == 0 or reviewed < min_reviewed:
        return None
    return round(verified / reviewed * 100, 1)


def merge_category_rows(
    rows: Iterable[CategoryRow],
    min_reviewed: int = 1,
) -> Dict[str, CategoryPrecisionStat]:
    """
    Roll narrower rows up into one stat per category.

    Pure function over raw counts. The lowest tier seen for a category
    is kept as its tier.
    """
    totals: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        entry = totals.setdefault(row.query_category, {
            "query_tier": row.query_tier,
            "total_results": 0,
            "verified_count": 0,
            "rejected_count": 0,
            "pending_count": 0,
        })
        if row.query_tier is not None and (entry["query_tier"] is None or row.query_tier < entry["query_tier"]):
            entry["query_tier"] = row.query_tier
        entry["total_results"] += row.total_results
        entry["verified_count"] += row.verified_count
        entry["rejected_count"] += row.rejected_count
        entry["pending_count"] += row.pending_count

    stats = {}
    for category in sorted(totals):
        entry = totals[category]
        stats[category] = CategoryPrecisionStat(
            query_category=category,
            query_tier=entry["query_tier"],
            total_results=entry["total_results"],
            verified_count=entry["verified_count"],
            rejected_count=entry["rejected_count"],
            pending_count=entry["pending_count"],
            precision_pct=compute_precision_pct(
                entry["verified_count"], entry["rejected_count"], min_reviewed
            ),
        )
    return stats


def _format_pct(value: float) -> str:
    """20.0 -> '20', 33.3 -> '33.3'."""
    return f"{value:g}" if value == int(value) else f"{value:.1f}"


def build_confidence_context(
    stats: Dict[str, CategoryPrecisionStat],
    result_category: Optional[str] = None,
) -> str:
    """
    Deterministic advisory for the classification step.

    Same stats in, byte-identical text out. Returns an empty string when
    no category has enough reviewed samples.
    """
    lines: List[str] = []

    if result_category:
        stat = stats.get(result_category)
        if stat and stat.precision_pct is not None and stat.reviewed_count >= SPECIFIC_MIN_REVIEWED:
            pct = _format_pct(stat.precision_pct)
            lines.append(
                f'This result was found by the "{result_category}" search strategy, '
                f"which has a historical precision of {pct}% "
                f"({stat.verified_count} verified, {stat.rejected_count} false positives "
                f"out of {stat.total_results} total)."
            )
            if stat.precision_pct < LOW_PRECISION_PCT:
                lines.append(
                    "NOTE: This search strategy has LOW historical precision. "
                    "Be extra skeptical, most results from this strategy are false positives."
                )
            elif stat.precision_pct >= HIGH_PRECISION_PCT:
                lines.append(
                    "NOTE: This search strategy has HIGH historical precision. "
                    "Results from this strategy are usually real infringements."
                )

    reviewed = [
        s for s in stats.values()
        if s.precision_pct is not None and s.reviewed_count >= SUMMARY_MIN_REVIEWED
    ]
    if reviewed:
        ranked = sorted(reviewed, key=lambda s: (-s.precision_pct, s.query_category))
        high = [s for s in ranked if s.precision_pct >= SUMMARY_HIGH_PCT][:SUMMARY_SIZE]
        low = [s for s in ranked if s.precision_pct < SUMMARY_LOW_PCT][-SUMMARY_SIZE:]

        if high:
            lines.append(
                "High-precision strategies: "
                + ", ".join(f"{s.query_category} ({_format_pct(s.precision_pct)}%)" for s in high)
            )
        if low:
            lines.append(
                "Low-precision strategies (most results are false positives): "
                + ", ".join(f"{s.query_category} ({_format_pct(s.precision_pct)}%)" for s in low)
            )

    if not lines:
        return ""

    return CONTEXT_HEADER + "\n" + "\n".join(lines)


class CategoryPrecisionEngine:
    """
    Recomputes category precision from the enforcement record store.

    Read-only. Calling compute_precision twice over the same data
    returns equal results.
    """

    def __init__(self, db: Session, min_reviewed: int = 1):
        self.db = db
        self.min_reviewed = min_reviewed

    def fetch_rows(self) -> List[CategoryRow]:
        """Raw counts grouped by (category, tier, product type)."""
        verified = func.sum(case((InfringementDB.status.in_(VERIFIED_STATUSES), 1), else_=0))
        rejected = func.sum(case((InfringementDB.status == InfringementStatus.REJECTED, 1), else_=0))
        pending = func.sum(case((InfringementDB.status == InfringementStatus.PENDING_VERIFICATION, 1), else_=0))

        results = self.db.query(
            InfringementDB.query_category,
            InfringementDB.query_tier,
            ProductDB.product_type,
            func.count(InfringementDB.id),
            verified,
            rejected,
            pending,
        ).join(
            ProductDB, ProductDB.id == InfringementDB.product_id
        ).filter(
            InfringementDB.query_category.isnot(None)
        ).group_by(
            InfringementDB.query_category,
            InfringementDB.query_tier,
            ProductDB.product_type,
        ).all()

        return [
            CategoryRow(
                query_category=category,
                query_tier=tier,
                product_type=product_type,
                total_results=int(total or 0),
                verified_count=int(v or 0),
                rejected_count=int(r or 0),
                pending_count=int(p or 0),
            )
            for category, tier, product_type, total, v, r, p in results
        ]

    def compute_precision(self) -> Dict[str, CategoryPrecisionStat]:
        """Full recomputation, one stat per category."""
        return merge_category_rows(self.fetch_rows(), self.min_reviewed)

    def confidence_context_for(self, result_category: Optional[str]) -> str:
        """Convenience: compute and render the advisory in one call."""
        return build_confidence_context(self.compute_precision(), result_category)
