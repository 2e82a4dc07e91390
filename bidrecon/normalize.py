"""Normalisation helpers for trade categories, descriptions and units.

Every comparison in the pipeline goes through these helpers on *both* sides,
so that case or stray whitespace can never make a match asymmetric.
"""
from __future__ import annotations

import re
from typing import Any, Dict, Optional

DEFAULT_UNIT = "ea"

_UNIT_ALIASES: Dict[str, str] = {
    "sq ft": "sq ft",
    "sqft": "sq ft",
    "square feet": "sq ft",
    "sf": "sq ft",
    "sq. ft.": "sq ft",
    "sq.ft.": "sq ft",
    "sq": "sq ft",
    "lf": "lf",
    "linear feet": "lf",
    "linear ft": "lf",
    "ln ft": "lf",
    "ln. ft.": "lf",
    "each": "ea",
    "ea.": "ea",
    "eaches": "ea",
    "unit": "ea",
    "units": "ea",
    "cy": "cy",
    "cubic yards": "cy",
    "cu yd": "cy",
    "cu. yd.": "cy",
    "cf": "cf",
    "cubic feet": "cf",
    "cu ft": "cf",
    "cu. ft.": "cf",
}


def clean_text(value: Any) -> str:
    """Collapse whitespace runs and strip the ends."""

    if value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    return re.sub(r"\s+", " ", str(value).strip())


def normalize_trade_category(value: Optional[str]) -> str:
    """Canonical form used for every trade-category equality check."""

    return clean_text(value).lower()


def normalize_text(value: Optional[str]) -> str:
    """Canonical form used for description comparisons."""

    return clean_text(value).lower()


def normalize_unit(value: Optional[str]) -> str:
    """Map common unit spellings onto a short canonical unit."""

    text = normalize_text(value)
    if not text:
        return DEFAULT_UNIT
    return _UNIT_ALIASES.get(text, text)


__all__ = [
    "DEFAULT_UNIT",
    "clean_text",
    "normalize_text",
    "normalize_trade_category",
    "normalize_unit",
]
