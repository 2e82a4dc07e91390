"""Classification of matched pairs into missing / quantity / price discrepancies."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .models import TAKEOFF_MODE, Discrepancy, Item, MatchResult

logger = logging.getLogger(__name__)

MISSING = "missing"
QUANTITY = "quantity"
PRICE = "price"

DEFAULT_QUANTITY_THRESHOLD_PCT = 20.0
DEFAULT_PRICE_THRESHOLD_PCT = 15.0
PERCENT_DECIMALS = 9


@dataclass(frozen=True)
class DiscrepancyThresholds:
    """Variance above which a pair is flagged. Equal to the threshold is fine."""

    quantity_pct: float = DEFAULT_QUANTITY_THRESHOLD_PCT
    price_pct: float = DEFAULT_PRICE_THRESHOLD_PCT


def absolute_difference(reference: Optional[float], compared: Optional[float]) -> Optional[float]:
    if reference is None or compared is None:
        return None
    return abs(compared - reference)


def percent_difference(reference: Optional[float], compared: Optional[float]) -> Optional[float]:
    """``|compared - reference| / reference * 100`` to 9 decimals; ``None`` when undefined."""

    difference = absolute_difference(reference, compared)
    if difference is None or not reference:
        return None
    # 3 -> 3.6 must come out as 20.0, not 20.000000000000004
    return round(difference * 100.0 / abs(reference), PERCENT_DECIMALS)


def _quantity(item: Item) -> Optional[float]:
    return item.quantity


def _unit_cost(item: Item) -> Optional[float]:
    return item.unit_cost


def reference_pair(match: MatchResult, mode: str = TAKEOFF_MODE) -> Tuple[Item, Item]:
    """Return ``(reference, compared)`` for a matched pair.

    Against a takeoff the takeoff item is the reference. Between bids the
    comparison bid's item is the reference, so percentages describe how the
    subject bid deviates from the others.
    """

    if match.counterpart is None:
        raise ValueError("Only matched pairs have a reference side")
    if mode == TAKEOFF_MODE:
        return match.source, match.counterpart
    return match.counterpart, match.source


def classify_match(
    match: MatchResult,
    thresholds: DiscrepancyThresholds = DiscrepancyThresholds(),
    mode: str = TAKEOFF_MODE,
) -> List[Discrepancy]:
    """Discrepancies for one pair. Quantity and price checks are independent."""

    if match.counterpart is None:
        return [
            Discrepancy(
                kind=MISSING,
                source=match.source,
                counterpart=None,
                counterpart_bid_id=match.counterpart_bid_id,
            )
        ]

    reference, compared = reference_pair(match, mode)
    found: List[Discrepancy] = []

    quantity_pct = percent_difference(_quantity(reference), _quantity(compared))
    if quantity_pct is not None and quantity_pct > thresholds.quantity_pct:
        found.append(
            Discrepancy(
                kind=QUANTITY,
                source=match.source,
                counterpart=match.counterpart,
                difference=absolute_difference(_quantity(reference), _quantity(compared)),
                percentage=quantity_pct,
                counterpart_bid_id=match.counterpart_bid_id,
            )
        )

    price_pct = percent_difference(_unit_cost(reference), _unit_cost(compared))
    if price_pct is not None and price_pct > thresholds.price_pct:
        found.append(
            Discrepancy(
                kind=PRICE,
                source=match.source,
                counterpart=match.counterpart,
                difference=absolute_difference(_unit_cost(reference), _unit_cost(compared)),
                percentage=price_pct,
                counterpart_bid_id=match.counterpart_bid_id,
            )
        )
    return found


def detect_discrepancies(
    matches: Iterable[MatchResult],
    thresholds: DiscrepancyThresholds = DiscrepancyThresholds(),
    mode: str = TAKEOFF_MODE,
) -> List[Discrepancy]:
    discrepancies: List[Discrepancy] = []
    for match in matches:
        discrepancies.extend(classify_match(match, thresholds, mode))
    logger.debug("Detected %d discrepancies", len(discrepancies))
    return discrepancies


__all__ = [
    "DEFAULT_PRICE_THRESHOLD_PCT",
    "DEFAULT_QUANTITY_THRESHOLD_PCT",
    "DiscrepancyThresholds",
    "MISSING",
    "PRICE",
    "QUANTITY",
    "absolute_difference",
    "classify_match",
    "detect_discrepancies",
    "percent_difference",
    "reference_pair",
]
