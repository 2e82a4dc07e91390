"""Summary numbers and the local analysis summary for a reconciliation run."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .discrepancy import MISSING, PRICE, QUANTITY
from .models import Bid, BidLineItem, Discrepancy, Item, MatchResult


@dataclass
class ReconciliationMetrics:
    """Numbers shown next to a reconciliation."""

    takeoff_total: float
    bid_total: float
    overall_bid_amount: float
    matched_count: int
    missing_count: int
    extra_count: int
    selected_count: int
    bid_line_item_count: int
    discrepancy_count: int
    match_percentage: int
    variance: float
    variance_pct: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReconciliationMetrics":
        return cls(**{key: data.get(key) for key in cls.__dataclass_fields__})


def match_percentage(matched_count: int, selected_count: int) -> int:
    """Percentage of matched items rounded half up; 0 for an empty selection."""

    if selected_count <= 0:
        return 0
    return int(math.floor(matched_count * 100 / selected_count + 0.5))


def takeoff_total(items: Iterable[Item]) -> float:
    """Σ quantity × unit cost, a missing unit cost counting as zero."""

    return float(sum((item.quantity or 0.0) * (item.unit_cost or 0.0) for item in items))


def bid_total(line_items: Iterable[BidLineItem]) -> float:
    return float(sum(item.amount for item in line_items))


def extra_items(line_items: Iterable[Item], matches: Iterable[MatchResult]) -> List[Item]:
    """Bid lines that no match used as a counterpart."""

    used = {match.counterpart.id for match in matches if match.counterpart is not None}
    return [item for item in line_items if item.id not in used]


def aggregate_metrics(
    selected_items: Sequence[Item],
    bid: Bid,
    matches: Sequence[MatchResult],
    discrepancies: Sequence[Discrepancy],
    extras: Optional[Sequence[Item]] = None,
) -> ReconciliationMetrics:
    """Reduce a reconciliation run to its summary numbers.

    ``selected_items`` is the subset the user has checked, not the whole
    candidate list. The bid total always uses the bid's full line-item list.
    ``extras`` defaults to the bid lines no match used; between bids the
    caller passes the unused lines of the comparison bids instead.
    """

    selected_ids = {item.id for item in selected_items}
    relevant = [match for match in matches if match.source.id in selected_ids]
    matched_ids = {match.source.id for match in relevant if match.is_matched}
    matched_count = len(matched_ids)
    selected_count = len(selected_items)

    estimate = takeoff_total(selected_items)
    total = bid_total(bid.line_items)
    variance = total - estimate
    variance_pct = (variance / estimate * 100.0) if estimate else None

    return ReconciliationMetrics(
        takeoff_total=estimate,
        bid_total=total,
        overall_bid_amount=float(bid.bid_amount or 0.0),
        matched_count=matched_count,
        missing_count=selected_count - matched_count,
        extra_count=len(extras if extras is not None else extra_items(bid.line_items, relevant)),
        selected_count=selected_count,
        bid_line_item_count=len(bid.line_items),
        discrepancy_count=len(discrepancies),
        match_percentage=match_percentage(matched_count, selected_count),
        variance=variance,
        variance_pct=variance_pct,
    )


@dataclass
class AnalysisSummary:
    summary: str
    key_findings: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    missing_items: List[Dict[str, Any]] = field(default_factory=list)
    extra_items: List[Dict[str, Any]] = field(default_factory=list)
    quantity_discrepancies: List[Dict[str, Any]] = field(default_factory=list)
    price_discrepancies: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisSummary":
        return cls(
            summary=str(data.get("summary", "")),
            key_findings=list(data.get("key_findings", [])),
            recommendations=list(data.get("recommendations", [])),
            missing_items=list(data.get("missing_items", [])),
            extra_items=list(data.get("extra_items", [])),
            quantity_discrepancies=list(data.get("quantity_discrepancies", [])),
            price_discrepancies=list(data.get("price_discrepancies", [])),
        )


def _describe(item: Optional[Item]) -> Dict[str, Any]:
    if item is None:
        return {}
    return {
        "id": item.id,
        "description": item.description,
        "quantity": item.quantity,
        "unit": item.unit,
        "unit_cost": item.unit_cost,
    }


def build_analysis_summary(
    metrics: ReconciliationMetrics,
    discrepancies: Sequence[Discrepancy],
    extras: Sequence[Item] = (),
) -> AnalysisSummary:
    """Deterministic analysis derived from the metrics and discrepancies."""

    findings: List[str] = []
    if metrics.variance_pct is not None:
        findings.append(f"Price variance: {metrics.variance_pct:.1f}%")
    findings.append(
        f"Scope coverage: {metrics.matched_count}/{metrics.selected_count} items matched"
    )

    by_kind: Dict[str, List[Discrepancy]] = {MISSING: [], QUANTITY: [], PRICE: []}
    for discrepancy in discrepancies:
        by_kind.setdefault(discrepancy.kind, []).append(discrepancy)

    if by_kind[QUANTITY]:
        findings.append(f"{len(by_kind[QUANTITY])} quantity discrepancies above threshold")
    if by_kind[PRICE]:
        findings.append(f"{len(by_kind[PRICE])} unit price discrepancies above threshold")

    recommendations: List[str] = []
    if by_kind[MISSING]:
        recommendations.append("Confirm scope for items missing from the bid before award")
    if by_kind[QUANTITY]:
        recommendations.append("Clarify quantities with the bidder to avoid change orders")
    if by_kind[PRICE]:
        recommendations.append("Review unit prices that deviate from the estimate")
    if extras:
        recommendations.append("Check bid items not found in the comparison for scope creep")
    if not recommendations:
        recommendations.append("No significant discrepancies detected")

    summary = (
        f"{metrics.match_percentage}% of {metrics.selected_count} selected items matched; "
        f"{metrics.discrepancy_count} discrepancies detected."
    )

    def _pair(discrepancy: Discrepancy) -> Dict[str, Any]:
        return {
            "source": _describe(discrepancy.source),
            "counterpart": _describe(discrepancy.counterpart),
            "difference": discrepancy.difference,
            "variance": discrepancy.percentage,
        }

    return AnalysisSummary(
        summary=summary,
        key_findings=findings,
        recommendations=recommendations,
        missing_items=[_describe(d.source) for d in by_kind[MISSING]],
        extra_items=[_describe(item) for item in extras],
        quantity_discrepancies=[_pair(d) for d in by_kind[QUANTITY]],
        price_discrepancies=[_pair(d) for d in by_kind[PRICE]],
    )


__all__ = [
    "AnalysisSummary",
    "ReconciliationMetrics",
    "aggregate_metrics",
    "bid_total",
    "build_analysis_summary",
    "extra_items",
    "match_percentage",
    "takeoff_total",
]
