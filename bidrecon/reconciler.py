"""Reconciliation of a bid against the takeoff or against sibling bids.

The :class:`Reconciler` wires the pieces together: candidate selection, the
cache, the AI match adapter with its heuristic fallback, discrepancy
detection and metrics. Results are recomputed only on a cache miss or when a
refresh is forced; recomputation is always an explicit call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .ai import AIMatchAdapter, AIMatchService, AdapterOutcome, create_match_service
from .cache import CacheEntry, CacheKey, CachedResult, ReconciliationCache, content_digest, create_cache
from .candidates import filter_sibling_bids, filter_takeoff_items
from .config import AppConfig
from .discrepancy import DiscrepancyThresholds, detect_discrepancies
from .errors import InputError
from .metrics import (
    AnalysisSummary,
    ReconciliationMetrics,
    aggregate_metrics,
    build_analysis_summary,
    extra_items,
)
from .models import (
    ACCEPTED,
    BID_TO_BID_MODE,
    PENDING,
    TAKEOFF_MODE,
    Bid,
    Discrepancy,
    Item,
    MatchResult,
    TakeoffItem,
    item_from_dict,
)
from .search import Suggestion, SuggestionProvider, create_suggestion_provider, suggest_for_unmatched

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    """Everything a caller needs to render one reconciliation view."""

    key: CacheKey
    subject: Bid
    matches: List[MatchResult]
    discrepancies: List[Discrepancy]
    metrics: ReconciliationMetrics
    analysis: AnalysisSummary
    computed_at: str
    cached: bool
    stale: bool = False
    ai_available: bool = True
    advisory: Optional[str] = None
    comparison_bids: List[Bid] = field(default_factory=list)
    extras: List[Item] = field(default_factory=list)
    suggestions: Dict[str, List[Suggestion]] = field(default_factory=dict)

    @property
    def mode(self) -> str:
        return self.key.mode

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key.to_dict(),
            "subject_bid_id": self.subject.id,
            "bidder_name": self.subject.bidder_name,
            "computed_at": self.computed_at,
            "cached": self.cached,
            "stale": self.stale,
            "ai_available": self.ai_available,
            "advisory": self.advisory,
            "comparison_bid_ids": [bid.id for bid in self.comparison_bids],
            "metrics": self.metrics.to_dict(),
            "analysis": self.analysis.to_dict(),
            "matches": [match.to_dict() for match in self.matches],
            "discrepancies": [discrepancy.to_dict() for discrepancy in self.discrepancies],
            "extras": [item.to_dict() for item in self.extras],
            "suggestions": {
                source_id: [hit.to_dict() for hit in hits] for source_id, hits in self.suggestions.items()
            },
        }


class Reconciler:
    """Entry point for takeoff and bid-to-bid reconciliation."""

    def __init__(
        self,
        cache: Optional[ReconciliationCache] = None,
        service: Optional[AIMatchService] = None,
        thresholds: DiscrepancyThresholds = DiscrepancyThresholds(),
        timeout: float = 45.0,
        exclude_declined: bool = False,
        suggestion_provider: Optional[SuggestionProvider] = None,
        suggestion_top_k: int = 0,
    ) -> None:
        self.cache = cache if cache is not None else ReconciliationCache()
        self.adapter = AIMatchAdapter(service, timeout=timeout)
        self.thresholds = thresholds
        self.exclude_declined = exclude_declined
        self.suggestion_provider = suggestion_provider
        self.suggestion_top_k = suggestion_top_k

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        service: Optional[AIMatchService] = None,
        suggestion_provider: Optional[SuggestionProvider] = None,
    ) -> "Reconciler":
        """Build a reconciler from configuration.

        ``comparison.suggestion_provider: none`` turns suggestions off
        regardless of ``suggestion_top_k``.
        """

        if suggestion_provider is None:
            suggestion_provider = create_suggestion_provider(config.comparison.suggestion_provider)
        return cls(
            cache=create_cache(config.cache.backend, config.cache.path),
            service=service if service is not None else create_match_service(config.ai),
            thresholds=config.thresholds.as_thresholds(),
            timeout=float(config.ai.timeout_seconds),
            exclude_declined=config.comparison.exclude_declined,
            suggestion_provider=suggestion_provider,
            suggestion_top_k=config.comparison.suggestion_top_k if suggestion_provider is not None else 0,
        )

    # ------------ Takeoff mode ------------
    async def reconcile_takeoff(
        self,
        bid: Bid,
        takeoff_items: Sequence[TakeoffItem],
        selected_ids: Optional[Iterable[str]] = None,
        force_refresh: bool = False,
    ) -> ReconciliationResult:
        """Match the selected takeoff items of the bid's trade to its lines.

        ``selected_ids`` defaults to every takeoff item in the bid's trade;
        ids outside the trade are ignored.
        """

        candidates = filter_takeoff_items(takeoff_items, bid)
        if selected_ids is None:
            selected = list(candidates)
        else:
            wanted = {str(item_id) for item_id in selected_ids}
            selected = [item for item in candidates if item.id in wanted]
            ignored = wanted - {item.id for item in selected}
            if ignored:
                logger.debug("Ignoring %d selected ids outside trade of bid %s", len(ignored), bid.id)

        key = CacheKey.build(bid.id, [item.id for item in selected], bid.job_id, TAKEOFF_MODE)
        digest = content_digest(
            {
                "takeoff": [item.to_dict() for item in selected],
                "bid": [line.to_dict() for line in bid.line_items],
            }
        )

        async def compute() -> CacheEntry:
            logger.info("Reconciling bid %s against %d takeoff items", bid.id, len(selected))
            outcome = await self.adapter.match(selected, bid.line_items, TAKEOFF_MODE)
            extras = extra_items(bid.line_items, outcome.matches)
            return self._build_entry(TAKEOFF_MODE, selected, bid, [outcome], extras, digest)

        resolved = await self.cache.resolve_async(key, force_refresh, compute, digest)
        result = self._to_result(key, bid, resolved, [])
        self._attach_suggestions(result, bid.line_items)
        return result

    # ------------ Bid-to-bid mode ------------
    async def reconcile_bids(
        self,
        bid: Bid,
        all_bids: Sequence[Bid],
        comparison_ids: Optional[Iterable[str]] = None,
        force_refresh: bool = False,
    ) -> ReconciliationResult:
        """Match the bid's lines against the lines of sibling bids.

        Each comparison bid is matched separately, so the result carries one
        match per (subject line, comparison bid).
        """

        comparisons = self.comparison_bids(bid, all_bids, comparison_ids)
        key = CacheKey.build(bid.id, [other.id for other in comparisons], bid.job_id, BID_TO_BID_MODE)
        digest = content_digest(
            {
                "subject": [line.to_dict() for line in bid.line_items],
                "comparisons": {other.id: [line.to_dict() for line in other.line_items] for other in comparisons},
            }
        )

        async def compute() -> CacheEntry:
            logger.info("Reconciling bid %s against %d sibling bids", bid.id, len(comparisons))
            outcomes = await asyncio.gather(
                *(
                    self.adapter.match(bid.line_items, other.line_items, BID_TO_BID_MODE, counterpart_bid_id=other.id)
                    for other in comparisons
                )
            )
            extras: List[Item] = []
            for other, outcome in zip(comparisons, outcomes):
                extras.extend(extra_items(other.line_items, outcome.matches))
            return self._build_entry(BID_TO_BID_MODE, bid.line_items, bid, list(outcomes), extras, digest)

        resolved = await self.cache.resolve_async(key, force_refresh, compute, digest)
        result = self._to_result(key, bid, resolved, comparisons)
        self._attach_suggestions(result, [line for other in comparisons for line in other.line_items])
        return result

    def comparison_bids(
        self,
        bid: Bid,
        all_bids: Sequence[Bid],
        comparison_ids: Optional[Iterable[str]] = None,
    ) -> List[Bid]:
        """Sibling bids to compare against, optionally narrowed to ``comparison_ids``."""

        statuses = (PENDING, ACCEPTED) if self.exclude_declined else None
        siblings = filter_sibling_bids(all_bids, bid, statuses=statuses)
        if comparison_ids is None:
            return siblings

        wanted = [str(bid_id) for bid_id in comparison_ids]
        known = {other.id for other in all_bids}
        unknown = [bid_id for bid_id in wanted if bid_id not in known]
        if unknown:
            raise InputError(f"Unknown comparison bid(s): {', '.join(unknown)}")
        chosen = [other for other in siblings if other.id in set(wanted)]
        skipped = set(wanted) - {other.id for other in chosen}
        if skipped:
            logger.warning(
                "Skipping comparison bids outside the trade of bid %s: %s",
                bid.id,
                ", ".join(sorted(skipped)),
            )
        return chosen

    # ------------ Sync wrappers ------------
    def reconcile_takeoff_sync(self, *args: Any, **kwargs: Any) -> ReconciliationResult:
        return asyncio.run(self.reconcile_takeoff(*args, **kwargs))

    def reconcile_bids_sync(self, *args: Any, **kwargs: Any) -> ReconciliationResult:
        return asyncio.run(self.reconcile_bids(*args, **kwargs))

    # ------------ Helpers ------------
    def _build_entry(
        self,
        mode: str,
        selected: Sequence[Item],
        bid: Bid,
        outcomes: Sequence[AdapterOutcome],
        extras: Sequence[Item],
        digest: str,
    ) -> CacheEntry:
        matches = [match for outcome in outcomes for match in outcome.matches]
        discrepancies = detect_discrepancies(matches, self.thresholds, mode)
        metrics = aggregate_metrics(selected, bid, matches, discrepancies, extras=extras)
        analysis = build_analysis_summary(metrics, discrepancies, extras)

        ai_available = all(outcome.ai_available for outcome in outcomes)
        advisory = next((outcome.advisory for outcome in outcomes if outcome.advisory), None)
        return CacheEntry(
            matches=[match.to_dict() for match in matches],
            analysis={
                "summary": analysis.to_dict(),
                "metrics": metrics.to_dict(),
                "discrepancies": [discrepancy.to_dict() for discrepancy in discrepancies],
                "extras": [item.to_dict() for item in extras],
                "ai_available": ai_available,
                "advisory": advisory,
            },
            content_digest=digest,
        )

    @staticmethod
    def _to_result(
        key: CacheKey,
        bid: Bid,
        resolved: CachedResult,
        comparisons: List[Bid],
    ) -> ReconciliationResult:
        entry = resolved.entry
        analysis = entry.analysis
        return ReconciliationResult(
            key=key,
            subject=bid,
            matches=[MatchResult.from_dict(data) for data in entry.matches],
            discrepancies=[Discrepancy.from_dict(data) for data in analysis.get("discrepancies", [])],
            metrics=ReconciliationMetrics.from_dict(analysis.get("metrics", {})),
            analysis=AnalysisSummary.from_dict(analysis.get("summary", {})),
            computed_at=entry.computed_at,
            cached=resolved.cached,
            stale=resolved.stale,
            ai_available=bool(analysis.get("ai_available", True)),
            advisory=analysis.get("advisory"),
            comparison_bids=comparisons,
            extras=[item_from_dict(data) for data in analysis.get("extras", [])],
        )

    def _attach_suggestions(self, result: ReconciliationResult, candidates: Sequence[Item]) -> None:
        if self.suggestion_top_k <= 0:
            return
        result.suggestions = suggest_for_unmatched(
            result.matches,
            candidates,
            provider=self.suggestion_provider,
            top_k=self.suggestion_top_k,
        )


__all__ = ["ReconciliationResult", "Reconciler"]
