from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union
import sys

import pytest

# Ensure project root is on sys.path for absolute imports
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from bidrecon.ai import AIMatch, AIMatchService, MatchRequest
from bidrecon.models import Bid, BidLineItem, TakeoffItem

Responses = Union[Sequence[AIMatch], Callable[[MatchRequest], List[AIMatch]], None]


class FakeMatchService(AIMatchService):
    """Scripted matching service recording every request it receives."""

    def __init__(
        self,
        responses: Responses = None,
        error: Optional[BaseException] = None,
        delay: float = 0.0,
    ) -> None:
        self.responses = responses
        self.error = error
        self.delay = delay
        self.calls: List[MatchRequest] = []

    async def match(self, request: MatchRequest) -> List[AIMatch]:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if callable(self.responses):
            return self.responses(request)
        return list(self.responses or [])


def line(
    identifier: str,
    bid_id: str,
    description: str,
    quantity: Optional[float] = None,
    unit_price: Optional[float] = None,
    amount: Optional[float] = None,
    item_number: int = 0,
    unit: Optional[str] = "ea",
) -> BidLineItem:
    if amount is None:
        amount = (quantity or 0) * (unit_price or 0)
    return BidLineItem(
        id=identifier,
        bid_id=bid_id,
        description=description,
        amount=amount,
        item_number=item_number,
        quantity=quantity,
        unit=unit,
        unit_price=unit_price,
    )


@pytest.fixture
def fake_service():
    return FakeMatchService


@pytest.fixture
def takeoff_items() -> List[TakeoffItem]:
    return [
        TakeoffItem("T1", "Electrical", "Duplex receptacle", 40, "each", 85),
        TakeoffItem("T2", "Electrical", "LED troffer 2x4", 24, "ea", 210),
        TakeoffItem("T3", "Electrical", "EMT conduit 3/4 in", 600, "linear feet", 6.5),
        TakeoffItem("T4", "Electrical", "Panelboard 225A", 1, "ea", 4800),
        TakeoffItem("T5", "Plumbing", "Water closet", 6, "ea", 950),
    ]


@pytest.fixture
def electrical_bid() -> Bid:
    return Bid(
        id="B1",
        job_id="J100",
        bid_amount=16000,
        subcontractor_trade="Electrical",
        bidder_name="Bright Spark Electric",
        line_items=[
            line("B1-1", "B1", "Duplex receptacle, 20A", 40, 90, item_number=1),
            line("B1-2", "B1", "LED troffer 2x4", 30, 205, item_number=2),
            line("B1-3", "B1", "EMT conduit 3/4 in", 600, 8.0, item_number=3),
            line("B1-4", "B1", "Fire alarm pull station", 4, 350, item_number=4),
        ],
    )


@pytest.fixture
def sibling_bid() -> Bid:
    return Bid(
        id="B2",
        job_id="J100",
        bid_amount=13720,
        contact_trade="electrical",
        bidder_name="Volt Brothers",
        line_items=[
            line("B2-1", "B2", "Duplex receptacle", 42, 80, item_number=1),
            line("B2-2", "B2", "LED troffer 2x4 lay-in", 24, 215, item_number=2),
            line("B2-3", "B2", "Panelboard 225A", 1, 5200, item_number=3),
        ],
    )


@pytest.fixture
def plumbing_bid() -> Bid:
    return Bid(
        id="B3",
        job_id="J100",
        bid_amount=9080,
        package_trade="Plumbing",
        line_items=[
            line("B3-1", "B3", "Water closet", 6, 1000, item_number=1),
            line("B3-2", "B3", "Copper pipe 1 in", 220, 14, item_number=2),
        ],
    )


@pytest.fixture
def all_bids(electrical_bid: Bid, sibling_bid: Bid, plumbing_bid: Bid) -> List[Bid]:
    return [electrical_bid, sibling_bid, plumbing_bid]


@pytest.fixture
def make_line():
    return line
