"""Configuration loading utilities for the reconciliation engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

import yaml

from .discrepancy import (
    DEFAULT_PRICE_THRESHOLD_PCT,
    DEFAULT_QUANTITY_THRESHOLD_PCT,
    DiscrepancyThresholds,
)


@dataclass
class PathsConfig:
    """Snapshot files handed to the engine by the persistence layer."""

    takeoff: Optional[Path] = None
    bids: Optional[Path] = None
    line_items: Optional[Path] = None

    def resolved(self, base_path: Path) -> "PathsConfig":
        return PathsConfig(
            takeoff=_resolve_optional(self.takeoff, base_path),
            bids=_resolve_optional(self.bids, base_path),
            line_items=_resolve_optional(self.line_items, base_path),
        )


@dataclass
class ThresholdConfig:
    """Percent variance above which a matched pair is flagged."""

    quantity_pct: float = DEFAULT_QUANTITY_THRESHOLD_PCT
    price_pct: float = DEFAULT_PRICE_THRESHOLD_PCT

    def as_thresholds(self) -> DiscrepancyThresholds:
        return DiscrepancyThresholds(quantity_pct=float(self.quantity_pct), price_pct=float(self.price_pct))


@dataclass
class AIConfig:
    """Settings of the external matching service."""

    enabled: bool = False
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    timeout_seconds: float = 45.0
    min_confidence: float = 60.0
    api_key_env: str = "OPENAI_API_KEY"
    system_prompt: Optional[str] = None

    def resolve_api_key(self) -> Optional[str]:
        value = os.environ.get(self.api_key_env or "", "").strip()
        return value or None


@dataclass
class CacheConfig:
    """Where computed reconciliations are kept."""

    backend: str = "memory"
    path: Optional[Path] = None

    def resolved(self, base_path: Path) -> "CacheConfig":
        return CacheConfig(backend=self.backend, path=_resolve_optional(self.path, base_path))


@dataclass
class ComparisonConfig:
    """Tweaks influencing candidate selection and suggestions."""

    mode: str = "takeoff"
    exclude_declined: bool = False
    suggestion_top_k: int = 3
    suggestion_provider: str = "tfidf"
    currency: Optional[str] = None


@dataclass
class OutputConfig:
    """Paths describing where reports should be written."""

    directory: Path = Path("output")
    match_report: str = "matches.csv"
    discrepancy_report: str = "discrepancies.csv"
    summary_report: str = "summary.csv"
    audit_log: str = "reconciliation_audit.json"

    def resolved(self, base_path: Path) -> "OutputConfig":
        return OutputConfig(
            directory=_resolve_path(self.directory, base_path),
            match_report=self.match_report,
            discrepancy_report=self.discrepancy_report,
            summary_report=self.summary_report,
            audit_log=self.audit_log,
        )


@dataclass
class AppConfig:
    """Container for all configuration required by the CLI pipeline."""

    paths: PathsConfig = field(default_factory=PathsConfig)
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    comparison: ComparisonConfig = field(default_factory=ComparisonConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    def resolved(self, base_path: Path) -> "AppConfig":
        return AppConfig(
            paths=self.paths.resolved(base_path),
            thresholds=self.thresholds,
            ai=self.ai,
            cache=self.cache.resolved(base_path),
            comparison=self.comparison,
            output=self.output.resolved(base_path),
        )


def load_config(path: Path) -> AppConfig:
    """Load :class:`AppConfig` from a YAML file."""

    config_path = Path(path).expanduser()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file '{config_path}' does not exist")

    with config_path.open("r", encoding="utf-8") as stream:
        raw_config = yaml.safe_load(stream) or {}

    if not isinstance(raw_config, Mapping):
        raise ValueError("Configuration root must be a mapping")

    paths = PathsConfig(**_path_fields(_section(raw_config, "paths"), ("takeoff", "bids", "line_items")))

    thresholds = ThresholdConfig(**_section(raw_config, "thresholds"))
    for name in ("quantity_pct", "price_pct"):
        value = getattr(thresholds, name)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
            raise ValueError(f"thresholds.{name} must be a non-negative number")

    ai = AIConfig(**_section(raw_config, "ai"))
    if ai.timeout_seconds is not None and float(ai.timeout_seconds) <= 0:
        raise ValueError("ai.timeout_seconds must be positive")

    cache = CacheConfig(**_path_fields(_section(raw_config, "cache"), ("path",)))
    comparison = ComparisonConfig(**_section(raw_config, "comparison"))
    output = OutputConfig(**_parse_output_section(_section(raw_config, "output")))

    config = AppConfig(
        paths=paths,
        thresholds=thresholds,
        ai=ai,
        cache=cache,
        comparison=comparison,
        output=output,
    )
    return config.resolved(config_path.parent)


def _section(raw_config: Mapping[str, Any], name: str) -> Dict[str, Any]:
    section = raw_config.get(name) or {}
    if not isinstance(section, Mapping):
        raise ValueError(f"Configuration section '{name}' must be a mapping")
    return dict(section)


def _path_fields(section: Dict[str, Any], keys: Iterable[str]) -> Dict[str, Any]:
    parsed = dict(section)
    for key in keys:
        if parsed.get(key):
            parsed[key] = Path(parsed[key])
    return parsed


def _parse_output_section(section: Mapping[str, Any]) -> Dict[str, Any]:
    parsed: Dict[str, Any] = {}
    if "directory" in section:
        parsed["directory"] = Path(section["directory"])
    for key in ("match_report", "discrepancy_report", "summary_report", "audit_log"):
        if key in section:
            parsed[key] = section[key]
    return parsed


def _resolve_optional(path: Optional[Path], base_path: Path) -> Optional[Path]:
    if path is None:
        return None
    return _resolve_path(path, base_path)


def _resolve_path(path: Path, base_path: Path) -> Path:
    expanded = Path(path).expanduser()
    if expanded.is_absolute():
        return expanded
    return (base_path / expanded).resolve()


__all__ = [
    "AIConfig",
    "AppConfig",
    "CacheConfig",
    "ComparisonConfig",
    "OutputConfig",
    "PathsConfig",
    "ThresholdConfig",
    "load_config",
]
