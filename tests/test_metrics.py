import math

import pytest

from bidrecon.discrepancy import detect_discrepancies
from bidrecon.heuristic import match_items
from bidrecon.metrics import (
    ReconciliationMetrics,
    aggregate_metrics,
    build_analysis_summary,
    match_percentage,
    takeoff_total,
)
from bidrecon.models import TakeoffItem


def test_match_percentage_is_zero_for_empty_selection():
    value = match_percentage(0, 0)
    assert value == 0
    assert not (isinstance(value, float) and math.isnan(value))


def test_match_percentage_rounds():
    assert match_percentage(2, 3) == 67
    assert match_percentage(1, 8) == 13
    assert match_percentage(5, 8) == 63
    assert match_percentage(3, 8) == 38


def test_takeoff_total_treats_missing_unit_cost_as_zero():
    items = [
        TakeoffItem("T1", "Electrical", "Wire", 10, "lf", 2.5),
        TakeoffItem("T2", "Electrical", "Box", 4, "ea", None),
    ]
    assert takeoff_total(items) == pytest.approx(25.0)


def test_aggregate_metrics_uses_selection_and_full_bid(takeoff_items, electrical_bid):
    selected = takeoff_items[:4]
    matches = match_items(selected, electrical_bid.line_items)
    discrepancies = detect_discrepancies(matches)

    metrics = aggregate_metrics(selected, electrical_bid, matches, discrepancies)

    assert metrics.takeoff_total == pytest.approx(17140.0)
    assert metrics.bid_total == pytest.approx(15950.0)
    assert metrics.overall_bid_amount == pytest.approx(16000.0)
    assert metrics.selected_count == 4
    assert metrics.matched_count == 3
    assert metrics.missing_count == 1
    assert metrics.extra_count == 1
    assert metrics.bid_line_item_count == 4
    assert metrics.match_percentage == 75
    assert metrics.discrepancy_count == 3
    assert metrics.variance == pytest.approx(15950.0 - 17140.0)


def test_bid_total_ignores_selection(takeoff_items, electrical_bid):
    selected = takeoff_items[:1]
    matches = match_items(selected, electrical_bid.line_items)
    metrics = aggregate_metrics(selected, electrical_bid, matches, [])
    assert metrics.takeoff_total == pytest.approx(3400.0)
    assert metrics.bid_total == pytest.approx(15950.0)
    assert metrics.match_percentage == 100


def test_empty_selection_yields_zero_percentage(electrical_bid):
    metrics = aggregate_metrics([], electrical_bid, [], [])
    assert metrics.match_percentage == 0
    assert metrics.takeoff_total == 0
    assert metrics.variance_pct is None


def test_metrics_round_trip_through_dict(takeoff_items, electrical_bid):
    metrics = aggregate_metrics(takeoff_items[:2], electrical_bid, [], [])
    assert ReconciliationMetrics.from_dict(metrics.to_dict()) == metrics


def test_analysis_summary_lists_findings(takeoff_items, electrical_bid):
    selected = takeoff_items[:4]
    matches = match_items(selected, electrical_bid.line_items)
    discrepancies = detect_discrepancies(matches)
    metrics = aggregate_metrics(selected, electrical_bid, matches, discrepancies)

    summary = build_analysis_summary(metrics, discrepancies, [electrical_bid.line_items[3]])

    assert summary.summary.startswith("75% of 4 selected items matched")
    assert [item["id"] for item in summary.missing_items] == ["T4"]
    assert [item["id"] for item in summary.extra_items] == ["B1-4"]
    assert len(summary.quantity_discrepancies) == 1
    assert len(summary.price_discrepancies) == 1
    assert any("scope creep" in text for text in summary.recommendations)


def test_analysis_summary_without_discrepancies(electrical_bid):
    metrics = aggregate_metrics([], electrical_bid, [], [])
    summary = build_analysis_summary(metrics, [])
    assert summary.recommendations == ["No significant discrepancies detected"]
