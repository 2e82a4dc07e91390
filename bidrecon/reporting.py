"""Utilities for exporting reconciliation outputs to disk."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd

from .config import OutputConfig
from .normalize import normalize_unit
from .reconciler import ReconciliationResult

logger = logging.getLogger(__name__)

MATCH_COLUMNS = [
    "source_id",
    "source_description",
    "source_quantity",
    "source_unit",
    "source_unit_cost",
    "counterpart_bid_id",
    "counterpart_id",
    "counterpart_description",
    "counterpart_quantity",
    "counterpart_unit",
    "counterpart_unit_cost",
    "confidence",
    "match_type",
    "origin",
    "quantity_variance_pct",
    "price_variance_pct",
    "notes",
    "suggestions",
]

DISCREPANCY_COLUMNS = [
    "kind",
    "source_id",
    "source_description",
    "counterpart_bid_id",
    "counterpart_id",
    "counterpart_description",
    "difference",
    "percentage",
]


def result_to_frames(result: ReconciliationResult) -> Dict[str, pd.DataFrame]:
    """Tabular views of a reconciliation: matches, discrepancies and summary."""

    match_rows: List[Dict[str, Any]] = []
    for match in result.matches:
        source, counterpart = match.source, match.counterpart
        suggestions = result.suggestions.get(source.id, []) if not match.is_matched else []
        match_rows.append(
            {
                "source_id": source.id,
                "source_description": source.description,
                "source_quantity": source.quantity,
                "source_unit": normalize_unit(source.unit),
                "source_unit_cost": source.unit_cost,
                "counterpart_bid_id": match.counterpart_bid_id,
                "counterpart_id": counterpart.id if counterpart else None,
                "counterpart_description": counterpart.description if counterpart else None,
                "counterpart_quantity": counterpart.quantity if counterpart else None,
                "counterpart_unit": normalize_unit(counterpart.unit) if counterpart else None,
                "counterpart_unit_cost": counterpart.unit_cost if counterpart else None,
                "confidence": match.confidence,
                "match_type": match.match_type,
                "origin": match.origin,
                "quantity_variance_pct": match.quantity_variance_pct,
                "price_variance_pct": match.price_variance_pct,
                "notes": match.notes,
                "suggestions": "; ".join(hit.description for hit in suggestions),
            }
        )

    discrepancy_rows = [
        {
            "kind": discrepancy.kind,
            "source_id": discrepancy.source.id,
            "source_description": discrepancy.source.description,
            "counterpart_bid_id": discrepancy.counterpart_bid_id,
            "counterpart_id": discrepancy.counterpart.id if discrepancy.counterpart else None,
            "counterpart_description": discrepancy.counterpart.description if discrepancy.counterpart else None,
            "difference": discrepancy.difference,
            "percentage": discrepancy.percentage,
        }
        for discrepancy in result.discrepancies
    ]

    summary_row = {
        "subject_bid_id": result.subject.id,
        "bidder_name": result.subject.bidder_name,
        "mode": result.mode,
        "comparison_ids": ", ".join(result.key.comparison_ids),
        **result.metrics.to_dict(),
        "cached": result.cached,
        "stale": result.stale,
        "ai_available": result.ai_available,
        "computed_at": result.computed_at,
    }

    return {
        "matches": pd.DataFrame(match_rows, columns=MATCH_COLUMNS),
        "discrepancies": pd.DataFrame(discrepancy_rows, columns=DISCREPANCY_COLUMNS),
        "summary": pd.DataFrame([summary_row]),
    }


def export_reconciliation(result: ReconciliationResult, output: OutputConfig) -> Dict[str, Path]:
    """Persist reconciliation artefacts to the configured output directory."""

    output_dir = output.directory
    output_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Writing reports to %s", output_dir)

    frames = result_to_frames(result)
    paths: Dict[str, Path] = {}

    matches_path = output_dir / output.match_report
    frames["matches"].to_csv(matches_path, index=False)
    paths["matches"] = matches_path

    discrepancies_path = output_dir / output.discrepancy_report
    frames["discrepancies"].to_csv(discrepancies_path, index=False)
    paths["discrepancies"] = discrepancies_path

    summary_path = output_dir / output.summary_report
    frames["summary"].to_csv(summary_path, index=False)
    paths["summary"] = summary_path

    audit_payload = result.to_dict()
    audit_path = output_dir / output.audit_log
    with audit_path.open("w", encoding="utf-8") as handle:
        json.dump(audit_payload, handle, ensure_ascii=False, indent=2)
    paths["audit"] = audit_path

    return paths


__all__ = ["export_reconciliation", "result_to_frames"]
