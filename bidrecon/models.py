"""Record types shared by the reconciliation pipeline.

The core never owns these records. Callers hand in snapshots (usually rows
fetched from the persistence layer) and get derived results back. Every type
can be built from a plain mapping with ``from_dict`` and serialised back with
``to_dict`` so results survive a round trip through the cache store.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import InputError

PENDING = "pending"
ACCEPTED = "accepted"
DECLINED = "declined"
BID_STATUSES = (PENDING, ACCEPTED, DECLINED)

TAKEOFF_MODE = "takeoff"
BID_TO_BID_MODE = "bid_to_bid"
COMPARISON_MODES = (TAKEOFF_MODE, BID_TO_BID_MODE)

MATCH_NONE = "none"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def normalise_mode(value: Optional[str]) -> str:
    """Map user supplied comparison mode spellings onto the canonical names."""

    text = (value or "").strip().lower().replace("-", "_")
    if text in {"bid", "bids", "bidtobid"}:
        text = BID_TO_BID_MODE
    if text not in COMPARISON_MODES:
        raise InputError(f"Unknown comparison mode '{value}'")
    return text


def _safe_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(numeric):
        return None
    return numeric


def _safe_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()


def _optional_text(value: Any) -> Optional[str]:
    return _safe_text(value) or None


def _require_id(data: Mapping[str, Any], kind: str) -> str:
    identifier = _safe_text(data.get("id"))
    if not identifier:
        raise InputError(f"{kind} record is missing its 'id'")
    return identifier


def _non_negative(value: Optional[float], name: str, identifier: str) -> Optional[float]:
    if value is not None and value < 0:
        raise InputError(f"'{name}' of {identifier} must not be negative (got {value})")
    return value


def _joined(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    """Return a joined row that may arrive as an object or a one-item list."""

    value = data.get(key)
    if isinstance(value, list):
        value = value[0] if value else None
    return value if isinstance(value, Mapping) else {}


@dataclass(frozen=True)
class TakeoffItem:
    """A quantity/cost line produced by the takeoff analysis."""

    id: str
    category: str
    description: str
    quantity: float
    unit: str = ""
    unit_cost: Optional[float] = None
    trade: Optional[str] = None

    @property
    def effective_trade(self) -> str:
        return self.trade if self.trade else self.category

    @property
    def estimated_total(self) -> float:
        return self.quantity * (self.unit_cost or 0.0)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TakeoffItem":
        identifier = _require_id(data, "Takeoff item")
        quantity = _safe_float(data.get("quantity"))
        if quantity is None:
            raise InputError(f"Takeoff item {identifier} has no numeric quantity")
        return cls(
            id=identifier,
            category=_safe_text(data.get("category")),
            description=_safe_text(data.get("description")),
            quantity=_non_negative(quantity, "quantity", identifier),
            unit=_safe_text(data.get("unit")),
            unit_cost=_non_negative(_safe_float(data.get("unit_cost")), "unit_cost", identifier),
            trade=_optional_text(data.get("trade") or data.get("trade_category")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "description": self.description,
            "quantity": self.quantity,
            "unit": self.unit,
            "unit_cost": self.unit_cost,
            "trade": self.trade,
        }


@dataclass(frozen=True)
class BidLineItem:
    """A priced line of a subcontractor bid. ``amount`` is authoritative."""

    id: str
    bid_id: str
    description: str
    amount: float
    item_number: int = 0
    category: str = ""
    quantity: Optional[float] = None
    unit: Optional[str] = None
    unit_price: Optional[float] = None
    notes: Optional[str] = None
    cost_code: Optional[str] = None

    @property
    def unit_cost(self) -> Optional[float]:
        return self.unit_price

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], bid_id: Optional[str] = None) -> "BidLineItem":
        identifier = _require_id(data, "Bid line item")
        amount = _safe_float(data.get("amount"))
        if amount is None:
            raise InputError(f"Bid line item {identifier} has no amount")
        owner = _safe_text(data.get("bid_id")) or _safe_text(bid_id)
        if not owner:
            raise InputError(f"Bid line item {identifier} is not linked to a bid")
        item_number = _safe_float(data.get("item_number"))
        return cls(
            id=identifier,
            bid_id=owner,
            description=_safe_text(data.get("description")),
            amount=_non_negative(amount, "amount", identifier),
            item_number=int(item_number) if item_number is not None else 0,
            category=_safe_text(data.get("category")),
            quantity=_safe_float(data.get("quantity")),
            unit=_optional_text(data.get("unit")),
            unit_price=_safe_float(data.get("unit_price")),
            notes=_optional_text(data.get("notes")),
            cost_code=_optional_text(data.get("cost_code")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bid_id": self.bid_id,
            "item_number": self.item_number,
            "description": self.description,
            "category": self.category,
            "quantity": self.quantity,
            "unit": self.unit,
            "unit_price": self.unit_price,
            "amount": self.amount,
            "notes": self.notes,
            "cost_code": self.cost_code,
        }


@dataclass
class Bid:
    """A subcontractor response to a bid package, with its line items."""

    id: str
    job_id: str
    bid_amount: Optional[float] = None
    subcontractor_trade: Optional[str] = None
    contact_trade: Optional[str] = None
    package_trade: Optional[str] = None
    bidder_name: Optional[str] = None
    status: str = PENDING
    decline_reason: Optional[str] = None
    accepted_at: Optional[str] = None
    declined_at: Optional[str] = None
    notes: Optional[str] = None
    line_items: List[BidLineItem] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Bid":
        identifier = _require_id(data, "Bid")
        subcontractor = _joined(data, "subcontractors")
        contact = _joined(data, "gc_contacts")
        package = _joined(data, "bid_packages")

        status = _safe_text(data.get("status")).lower() or PENDING
        if status not in BID_STATUSES:
            raise InputError(f"Bid {identifier} has unknown status '{status}'")

        raw_items = data.get("line_items")
        if raw_items is None:
            raw_items = data.get("bid_line_items") or []
        line_items = [BidLineItem.from_dict(item, bid_id=identifier) for item in raw_items]
        line_items.sort(key=lambda item: item.item_number)

        return cls(
            id=identifier,
            job_id=_safe_text(data.get("job_id")) or _safe_text(package.get("job_id")),
            bid_amount=_safe_float(data.get("bid_amount")),
            subcontractor_trade=_optional_text(
                data.get("subcontractor_trade") or subcontractor.get("trade_category")
            ),
            contact_trade=_optional_text(data.get("contact_trade") or contact.get("trade_category")),
            package_trade=_optional_text(data.get("package_trade") or package.get("trade_category")),
            bidder_name=_optional_text(
                data.get("bidder_name") or subcontractor.get("name") or contact.get("name")
            ),
            status=status,
            decline_reason=_optional_text(data.get("decline_reason")),
            accepted_at=_optional_text(data.get("accepted_at")),
            declined_at=_optional_text(data.get("declined_at")),
            notes=_optional_text(data.get("notes")),
            line_items=line_items,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "bid_amount": self.bid_amount,
            "subcontractor_trade": self.subcontractor_trade,
            "contact_trade": self.contact_trade,
            "package_trade": self.package_trade,
            "bidder_name": self.bidder_name,
            "status": self.status,
            "decline_reason": self.decline_reason,
            "accepted_at": self.accepted_at,
            "declined_at": self.declined_at,
            "notes": self.notes,
            "line_items": [item.to_dict() for item in self.line_items],
        }


Item = Union[TakeoffItem, BidLineItem]


def item_from_dict(data: Mapping[str, Any]) -> Item:
    """Rebuild either item type from its serialised form."""

    if "amount" in data and "bid_id" in data:
        return BidLineItem.from_dict(data)
    return TakeoffItem.from_dict(data)


@dataclass
class MatchResult:
    """Pairs a source item with at most one counterpart."""

    source: Item
    counterpart: Optional[Item] = None
    confidence: float = 0.0
    match_type: str = MATCH_NONE
    notes: str = ""
    quantity_variance_pct: Optional[float] = None
    price_variance_pct: Optional[float] = None
    counterpart_bid_id: Optional[str] = None
    origin: str = "heuristic"

    @property
    def is_matched(self) -> bool:
        return self.counterpart is not None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MatchResult":
        counterpart = data.get("counterpart")
        return cls(
            source=item_from_dict(data["source"]),
            counterpart=item_from_dict(counterpart) if counterpart else None,
            confidence=float(data.get("confidence") or 0.0),
            match_type=_safe_text(data.get("match_type")) or MATCH_NONE,
            notes=_safe_text(data.get("notes")),
            quantity_variance_pct=_safe_float(data.get("quantity_variance_pct")),
            price_variance_pct=_safe_float(data.get("price_variance_pct")),
            counterpart_bid_id=_optional_text(data.get("counterpart_bid_id")),
            origin=_safe_text(data.get("origin")) or "heuristic",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.to_dict(),
            "counterpart": self.counterpart.to_dict() if self.counterpart else None,
            "confidence": self.confidence,
            "match_type": self.match_type,
            "notes": self.notes,
            "quantity_variance_pct": self.quantity_variance_pct,
            "price_variance_pct": self.price_variance_pct,
            "counterpart_bid_id": self.counterpart_bid_id,
            "origin": self.origin,
        }


@dataclass
class Discrepancy:
    """A missing item or a quantity/price variance above threshold."""

    kind: str
    source: Item
    counterpart: Optional[Item] = None
    difference: Optional[float] = None
    percentage: Optional[float] = None
    counterpart_bid_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Discrepancy":
        counterpart = data.get("counterpart")
        return cls(
            kind=_safe_text(data.get("kind")),
            source=item_from_dict(data["source"]),
            counterpart=item_from_dict(counterpart) if counterpart else None,
            difference=_safe_float(data.get("difference")),
            percentage=_safe_float(data.get("percentage")),
            counterpart_bid_id=_optional_text(data.get("counterpart_bid_id")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "source": self.source.to_dict(),
            "counterpart": self.counterpart.to_dict() if self.counterpart else None,
            "difference": self.difference,
            "percentage": self.percentage,
            "counterpart_bid_id": self.counterpart_bid_id,
        }


__all__ = [
    "ACCEPTED",
    "BID_STATUSES",
    "BID_TO_BID_MODE",
    "Bid",
    "BidLineItem",
    "COMPARISON_MODES",
    "DECLINED",
    "Discrepancy",
    "Item",
    "MATCH_NONE",
    "MatchResult",
    "PENDING",
    "TAKEOFF_MODE",
    "TakeoffItem",
    "item_from_dict",
    "normalise_mode",
    "utc_now_iso",
]
