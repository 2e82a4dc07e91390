"""Bid lifecycle: the pending / accepted / declined state machine.

Every state can move to every other state. ``decline`` is the only action with
a precondition (a non-empty reason); when it is violated nothing is applied.
Lifecycle actions never look at reconciliation results.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, MutableMapping, Optional

from .cache import ReconciliationCache
from .candidates import display_trade
from .errors import InputError
from .models import ACCEPTED, DECLINED, PENDING, Bid, utc_now_iso

logger = logging.getLogger(__name__)

NOTES_SEPARATOR = "\n\nAdditional Notes:\n"


def accept(bid: Bid, now: Optional[str] = None) -> Bid:
    bid.status = ACCEPTED
    bid.accepted_at = now or utc_now_iso()
    bid.declined_at = None
    bid.decline_reason = None
    return bid


def decline(bid: Bid, reason: str, notes: Optional[str] = None, now: Optional[str] = None) -> Bid:
    """Decline ``bid``; ``notes`` are appended to the stored reason."""

    text = (reason or "").strip()
    if not text:
        raise InputError("A decline reason is required")
    extra = (notes or "").strip()
    if extra:
        text = f"{text}{NOTES_SEPARATOR}{extra}"

    bid.status = DECLINED
    bid.declined_at = now or utc_now_iso()
    bid.decline_reason = text
    bid.accepted_at = None
    return bid


def set_pending(bid: Bid) -> Bid:
    bid.status = PENDING
    bid.accepted_at = None
    bid.declined_at = None
    bid.decline_reason = None
    return bid


def accepted_bids_by_trade(bids: Iterable[Bid]) -> Dict[str, List[Bid]]:
    """Group accepted bids by display trade.

    More than one accepted bid per trade is allowed; callers use this to
    surface such awards rather than block them.
    """

    grouped: Dict[str, List[Bid]] = {}
    for bid in bids:
        if bid.status == ACCEPTED:
            grouped.setdefault(display_trade(bid), []).append(bid)
    return grouped


@dataclass(frozen=True)
class Transition:
    bid_id: str
    previous: str
    current: str
    at: str
    reason: Optional[str] = None


class BidLifecycle:
    """Applies lifecycle actions to bids looked up by id."""

    def __init__(
        self,
        bids: MutableMapping[str, Bid],
        cache: Optional[ReconciliationCache] = None,
    ) -> None:
        self.bids = bids
        self.cache = cache
        self.history: List[Transition] = []

    @classmethod
    def from_bids(cls, bids: Iterable[Bid], cache: Optional[ReconciliationCache] = None) -> "BidLifecycle":
        return cls({bid.id: bid for bid in bids}, cache=cache)

    def _lookup(self, bid_id: str) -> Bid:
        bid = self.bids.get(bid_id)
        if bid is None:
            raise InputError(f"Unknown bid '{bid_id}'")
        return bid

    def accept(self, bid_id: str) -> str:
        bid = self._lookup(bid_id)
        previous = bid.status
        accept(bid)
        self._record(bid, previous)
        others = [other.id for other in accepted_bids_by_trade(self.bids.values()).get(display_trade(bid), [])]
        if len(others) > 1:
            logger.warning("Trade '%s' now has %d accepted bids: %s", display_trade(bid), len(others), ", ".join(others))
        return bid.status

    def decline(self, bid_id: str, reason: str, notes: Optional[str] = None) -> str:
        bid = self._lookup(bid_id)
        previous = bid.status
        decline(bid, reason, notes)
        self._record(bid, previous, bid.decline_reason)
        return bid.status

    def set_pending(self, bid_id: str) -> str:
        bid = self._lookup(bid_id)
        previous = bid.status
        set_pending(bid)
        self._record(bid, previous)
        return bid.status

    def status_counts(self) -> Mapping[str, int]:
        counts = {PENDING: 0, ACCEPTED: 0, DECLINED: 0}
        for bid in self.bids.values():
            counts[bid.status] = counts.get(bid.status, 0) + 1
        return counts

    def _record(self, bid: Bid, previous: str, reason: Optional[str] = None) -> None:
        self.history.append(
            Transition(bid_id=bid.id, previous=previous, current=bid.status, at=utc_now_iso(), reason=reason)
        )
        logger.info("Bid %s: %s -> %s", bid.id, previous, bid.status)
        if self.cache is not None:
            self.cache.invalidate_bid(bid.id)


__all__ = [
    "BidLifecycle",
    "NOTES_SEPARATOR",
    "Transition",
    "accept",
    "accepted_bids_by_trade",
    "decline",
    "set_pending",
]
