"""Local fallback matcher based on bidirectional substring containment.

The first candidate (in the order given) whose description contains the
source description, or is contained by it, wins. There is no scoring across
candidates.
"""
from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, TypeVar

from rapidfuzz import fuzz

from .models import MATCH_NONE, BidLineItem, Item, MatchResult
from .normalize import normalize_text

T = TypeVar("T", bound=Item)

MATCH_EXACT = "exact"
MATCH_FUZZY = "fuzzy"


def descriptions_match(left: Optional[str], right: Optional[str]) -> bool:
    """Bidirectional containment of the normalised descriptions.

    Blank descriptions never match; an empty string is contained in everything
    and would otherwise pair an item with the first candidate in the list.
    """

    a = normalize_text(left)
    b = normalize_text(right)
    if not a or not b:
        return False
    return a in b or b in a


def heuristic_match(source_description: Optional[str], candidates: Iterable[T]) -> Optional[T]:
    """Return the first candidate matching ``source_description`` or ``None``."""

    for candidate in candidates:
        if descriptions_match(source_description, candidate.description):
            return candidate
    return None


def heuristic_confidence(left: Optional[str], right: Optional[str]) -> float:
    """Token-sort similarity (0-100) used to score a containment match."""

    return float(round(fuzz.token_sort_ratio(normalize_text(left), normalize_text(right))))


def match_item(source: Item, candidates: Sequence[Item]) -> MatchResult:
    """Build a :class:`MatchResult` for ``source`` using the containment rule."""

    counterpart = heuristic_match(source.description, candidates)
    if counterpart is None:
        return MatchResult(
            source=source,
            counterpart=None,
            confidence=0.0,
            match_type=MATCH_NONE,
            notes="No candidate contains or is contained by this description",
            origin="heuristic",
        )

    same_text = normalize_text(source.description) == normalize_text(counterpart.description)
    return MatchResult(
        source=source,
        counterpart=counterpart,
        confidence=100.0 if same_text else heuristic_confidence(source.description, counterpart.description),
        match_type=MATCH_EXACT if same_text else MATCH_FUZZY,
        notes="Matched by description containment",
        counterpart_bid_id=counterpart.bid_id if isinstance(counterpart, BidLineItem) else None,
        origin="heuristic",
    )


def match_items(sources: Iterable[Item], candidates: Sequence[Item]) -> List[MatchResult]:
    return [match_item(source, candidates) for source in sources]


__all__ = [
    "MATCH_EXACT",
    "MATCH_FUZZY",
    "descriptions_match",
    "heuristic_confidence",
    "heuristic_match",
    "match_item",
    "match_items",
]
