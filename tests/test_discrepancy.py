import pytest

from bidrecon.discrepancy import (
    MISSING,
    PRICE,
    QUANTITY,
    DiscrepancyThresholds,
    classify_match,
    detect_discrepancies,
    percent_difference,
)
from bidrecon.models import BID_TO_BID_MODE, MatchResult, TakeoffItem


def _pair(make_line, takeoff_qty, takeoff_cost, bid_qty, bid_price):
    source = TakeoffItem("T1", "Electrical", "Wire", takeoff_qty, "lf", takeoff_cost)
    counterpart = make_line("L1", "B1", "Wire", bid_qty, bid_price)
    return MatchResult(source=source, counterpart=counterpart, counterpart_bid_id="B1")


def test_quantity_variance_example_flags_only_quantity(make_line):
    found = classify_match(_pair(make_line, 10, 5, 13, 5))
    assert [d.kind for d in found] == [QUANTITY]
    assert found[0].percentage == pytest.approx(30.0)
    assert found[0].difference == pytest.approx(3.0)
    assert found[0].counterpart_bid_id == "B1"


@pytest.mark.parametrize("bid_qty, flagged", [(120.0, False), (80.0, False), (120.01, True), (79.99, True)])
def test_quantity_threshold_is_exclusive(make_line, bid_qty, flagged):
    kinds = [d.kind for d in classify_match(_pair(make_line, 100, None, bid_qty, None))]
    assert (QUANTITY in kinds) is flagged


@pytest.mark.parametrize("bid_price, flagged", [(115.0, False), (85.0, False), (115.01, True), (84.99, True)])
def test_price_threshold_is_exclusive(make_line, bid_price, flagged):
    kinds = [d.kind for d in classify_match(_pair(make_line, 10, 100, 10, bid_price))]
    assert (PRICE in kinds) is flagged


@pytest.mark.parametrize(
    "takeoff_qty, bid_qty, takeoff_cost, bid_price",
    [(3, 3.6, None, None), (3, 2.4, None, None), (1, 1, 0.2, 0.23), (1, 1, 6.5, 7.475)],
)
def test_thresholds_hold_for_inexact_decimal_inputs(make_line, takeoff_qty, bid_qty, takeoff_cost, bid_price):
    assert classify_match(_pair(make_line, takeoff_qty, takeoff_cost, bid_qty, bid_price)) == []


def test_quantity_and_price_checks_are_independent(make_line):
    kinds = [d.kind for d in classify_match(_pair(make_line, 10, 100, 15, 130))]
    assert kinds == [QUANTITY, PRICE]


@pytest.mark.parametrize(
    "takeoff_qty, takeoff_cost, bid_qty, bid_price",
    [
        (0, 0, 13, 5),
        (10, None, 10, 500),
        (10, 5, None, None),
    ],
)
def test_zero_or_absent_values_skip_the_check(make_line, takeoff_qty, takeoff_cost, bid_qty, bid_price):
    assert classify_match(_pair(make_line, takeoff_qty, takeoff_cost, bid_qty, bid_price)) == []


def test_unmatched_item_is_missing():
    source = TakeoffItem("T1", "Electrical", "Panelboard", 1)
    found = classify_match(MatchResult(source=source))
    assert len(found) == 1
    assert found[0].kind == MISSING
    assert found[0].counterpart is None


def test_bid_to_bid_uses_comparison_bid_as_reference(make_line):
    subject = make_line("S1", "B1", "Wire", 80, 10)
    other = make_line("O1", "B2", "Wire", 100, 10)
    match = MatchResult(source=subject, counterpart=other, counterpart_bid_id="B2")

    assert classify_match(match, mode=BID_TO_BID_MODE) == []
    # the other way round the difference is 20 / 80 = 25 %
    assert [d.kind for d in classify_match(match)] == [QUANTITY]


def test_thresholds_are_configurable(make_line):
    matches = [_pair(make_line, 10, 100, 11, 105)]
    assert detect_discrepancies(matches) == []
    strict = DiscrepancyThresholds(quantity_pct=5, price_pct=1)
    assert [d.kind for d in detect_discrepancies(matches, strict)] == [QUANTITY, PRICE]


def test_percent_difference_is_undefined_for_empty_reference():
    assert percent_difference(0, 5) is None
    assert percent_difference(None, 5) is None
    assert percent_difference(4, None) is None
    assert percent_difference(4, 5) == pytest.approx(25.0)
