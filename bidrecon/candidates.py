"""Candidate selection: which takeoff items and sibling bids are comparable."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .models import Bid, TakeoffItem
from .normalize import clean_text, normalize_trade_category

logger = logging.getLogger(__name__)

DISPLAY_FALLBACK_TRADE = "Other"


class _UnknownTrade(str):
    """Typed sentinel for a bid whose trade could not be derived.

    It never compares equal to a real trade, so it can not act as a wildcard
    even when a caller forgets to check for it.
    """

    def __new__(cls) -> "_UnknownTrade":
        return super().__new__(cls, "")

    def __eq__(self, other: object) -> bool:
        return other is self

    def __ne__(self, other: object) -> bool:
        return other is not self

    def __hash__(self) -> int:
        return id(self)

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNKNOWN_TRADE"


UNKNOWN_TRADE = _UnknownTrade()


def is_unknown_trade(trade: Optional[str]) -> bool:
    return trade is None or trade is UNKNOWN_TRADE or not normalize_trade_category(trade)


def derive_trade(bid: Bid) -> str:
    """Return the bid's trade category.

    Priority: explicit subcontractor trade, then the requester contact's trade,
    then the bid package trade. Returns :data:`UNKNOWN_TRADE` when none is set.
    """

    for candidate in (bid.subcontractor_trade, bid.contact_trade, bid.package_trade):
        text = clean_text(candidate)
        if text:
            return text
    return UNKNOWN_TRADE


def display_trade(bid: Bid) -> str:
    trade = derive_trade(bid)
    return DISPLAY_FALLBACK_TRADE if is_unknown_trade(trade) else trade


def filter_takeoff_items(items: Iterable[TakeoffItem], bid: Bid) -> List[TakeoffItem]:
    """Takeoff items sharing the bid's trade; empty when the trade is unknown."""

    trade = derive_trade(bid)
    if is_unknown_trade(trade):
        logger.debug("Bid %s has no trade category; no takeoff items are comparable", bid.id)
        return []
    target = normalize_trade_category(trade)
    return [item for item in items if normalize_trade_category(item.effective_trade) == target]


def filter_sibling_bids(
    bids: Iterable[Bid],
    bid: Bid,
    statuses: Optional[Iterable[str]] = None,
) -> List[Bid]:
    """Other bids in the same trade as ``bid``.

    ``statuses`` optionally restricts the result to bids in the given lifecycle
    states, for callers that leave declined bids out of comparisons.
    """

    trade = derive_trade(bid)
    if is_unknown_trade(trade):
        return []
    target = normalize_trade_category(trade)
    allowed = set(statuses) if statuses is not None else None

    siblings: List[Bid] = []
    for other in bids:
        if other.id == bid.id:
            continue
        if allowed is not None and other.status not in allowed:
            continue
        other_trade = derive_trade(other)
        if is_unknown_trade(other_trade):
            continue
        if normalize_trade_category(other_trade) == target:
            siblings.append(other)
    return siblings


__all__ = [
    "DISPLAY_FALLBACK_TRADE",
    "UNKNOWN_TRADE",
    "derive_trade",
    "display_trade",
    "filter_sibling_bids",
    "filter_takeoff_items",
    "is_unknown_trade",
]
