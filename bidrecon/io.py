"""IO helpers for takeoff and bid snapshots."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from .errors import InputError
from .models import Bid, TakeoffItem

logger = logging.getLogger(__name__)

TAKEOFF_NUMERIC_COLUMNS: Sequence[str] = ("quantity", "unit_cost")
BID_NUMERIC_COLUMNS: Sequence[str] = ("bid_amount",)
LINE_ITEM_NUMERIC_COLUMNS: Sequence[str] = ("item_number", "quantity", "unit_price", "amount")


def load_takeoff_items(path: Path) -> List[TakeoffItem]:
    """Load the takeoff snapshot of a job."""

    logger.info("Loading takeoff items from %s", path)
    records = _load_records(Path(path), TAKEOFF_NUMERIC_COLUMNS)
    return [TakeoffItem.from_dict(record) for record in records]


def load_bids(path: Path, line_items_path: Optional[Path] = None) -> List[Bid]:
    """Load bid snapshots, optionally joining line items from a second file.

    JSON bids may embed their ``line_items``; tabular files cannot, so their
    line items come from ``line_items_path`` and are joined on ``bid_id``.
    """

    logger.info("Loading bids from %s", path)
    records = _load_records(Path(path), BID_NUMERIC_COLUMNS)

    if line_items_path is not None:
        logger.info("Loading bid line items from %s", line_items_path)
        line_records = _load_records(Path(line_items_path), LINE_ITEM_NUMERIC_COLUMNS)
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for line in line_records:
            owner = str(line.get("bid_id") or "").strip()
            if not owner:
                raise InputError(f"Line item {line.get('id')!r} in {line_items_path} has no bid_id")
            grouped.setdefault(owner, []).append(line)

        known = {str(record.get("id")) for record in records}
        orphans = sorted(set(grouped) - known)
        if orphans:
            logger.warning("Ignoring line items of unknown bids: %s", ", ".join(orphans))
        for record in records:
            extra = grouped.get(str(record.get("id")), [])
            record["line_items"] = list(record.get("line_items") or []) + extra

    return [Bid.from_dict(record) for record in records]


def save_bids(path: Path, bids: Iterable[Bid]) -> Path:
    """Write bids, including their line items, back to a JSON snapshot."""

    target = Path(path)
    if target.suffix.lower() != ".json":
        raise ValueError(f"Bids can only be saved as JSON, not '{target.suffix}'")
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = [bid.to_dict() for bid in bids]
    with target.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)
    logger.info("Saved %d bids to %s", len(payload), target)
    return target


def _load_records(path: Path, numeric_columns: Sequence[str]) -> List[Dict[str, Any]]:
    if not path.exists():
        raise FileNotFoundError(f"Dataset '{path}' does not exist")

    ext = path.suffix.lower()
    if ext == ".json":
        return _load_json(path)
    if ext in {".csv", ".txt"}:
        logger.debug("Reading CSV %s", path)
        frame = pd.read_csv(path, dtype=str)
    elif ext in {".xlsx", ".xls"}:
        logger.debug("Reading Excel %s", path)
        frame = pd.read_excel(path, dtype=str)
    else:
        raise ValueError(f"Unsupported file extension '{ext}' for dataset '{path}'")
    return _frame_to_records(frame, numeric_columns)


def _load_json(path: Path) -> List[Dict[str, Any]]:
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if isinstance(payload, Mapping):
        for key in ("items", "bids", "records", "data"):
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
    if not isinstance(payload, list):
        raise InputError(f"'{path}' must contain a list of records")
    records = [dict(entry) for entry in payload if isinstance(entry, Mapping)]
    if len(records) != len(payload):
        raise InputError(f"'{path}' contains entries that are not objects")
    return records


def _frame_to_records(frame: pd.DataFrame, numeric_columns: Sequence[str]) -> List[Dict[str, Any]]:
    normalised = frame.rename(columns=lambda column: _normalise_header(column))
    normalised = normalised.dropna(how="all")
    for column in numeric_columns:
        if column in normalised.columns:
            normalised[column] = coerce_numeric(normalised[column])
    normalised = normalised.astype(object).where(pd.notna(normalised), None)
    return normalised.to_dict(orient="records")


def _normalise_header(value: Any) -> str:
    text = "" if value is None else str(value)
    return "_".join(text.strip().lower().split())


def coerce_numeric(values: pd.Series) -> pd.Series:
    """Coerce textual representations of numbers into floats."""

    if not isinstance(values, pd.Series):
        values = pd.Series(values)
    if values.empty:
        return pd.to_numeric(values, errors="coerce")

    cleaned = values.astype(str)
    cleaned = cleaned.str.replace(r"\s+", "", regex=True)
    cleaned = cleaned.str.replace(r"(?i)(usd|\$|eur|€|gbp|£|cad)", "", regex=True)
    cleaned = cleaned.str.replace(r"[+-]$", "", regex=True)
    cleaned = cleaned.str.replace(r"[^0-9,\.\-+]", "", regex=True)

    # "1.234,50": the dot is a thousands separator
    european = cleaned.str.contains(",") & cleaned.str.contains(".", regex=False)
    european &= cleaned.str.rfind(",") > cleaned.str.rfind(".")
    cleaned = cleaned.where(~european, cleaned.str.replace(".", "", regex=False))

    # "1,234.50" or "1,234": the comma is a thousands separator
    thousands = cleaned.str.contains(r"^-?\d{1,3}(,\d{3})+(\.\d+)?$", regex=True)
    cleaned = cleaned.where(~thousands, cleaned.str.replace(",", "", regex=False))

    cleaned = cleaned.str.replace(",", ".", regex=False)
    cleaned = cleaned.str.replace(r"[.,]$", "", regex=True)

    return pd.to_numeric(cleaned, errors="coerce")


__all__ = [
    "coerce_numeric",
    "load_bids",
    "load_takeoff_items",
    "save_bids",
]
