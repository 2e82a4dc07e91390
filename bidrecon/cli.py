"""Command line interface for bid reconciliation and the bid lifecycle."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Iterable, List, Optional

import numpy as np

from .cache import create_cache
from .config import AppConfig, load_config
from .errors import BidReconError
from .io import load_bids, load_takeoff_items, save_bids
from .lifecycle import BidLifecycle
from .models import TAKEOFF_MODE, Bid, normalise_mode
from .reconciler import ReconciliationResult, Reconciler
from .reporting import export_reconciliation

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Reconcile subcontractor bids against the takeoff or each other")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path to YAML configuration")
    parser.add_argument("--bids", type=Path, help="Override path to the bid snapshot")
    parser.add_argument("--line-items", type=Path, help="Override path to the bid line item snapshot")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING)")
    commands = parser.add_subparsers(dest="command", required=True)

    reconcile = commands.add_parser("reconcile", help="Match a bid and report discrepancies")
    reconcile.add_argument("--bid", required=True, help="Id of the subject bid")
    reconcile.add_argument("--mode", help="Comparison mode (takeoff, bid-to-bid)")
    reconcile.add_argument("--takeoff", type=Path, help="Override path to the takeoff snapshot")
    reconcile.add_argument(
        "--select",
        action="append",
        help="Takeoff item id to include (repeatable, defaults to the whole trade)",
    )
    reconcile.add_argument(
        "--compare",
        action="append",
        help="Comparison bid id for bid-to-bid mode (repeatable, defaults to all siblings)",
    )
    reconcile.add_argument("--force-refresh", action="store_true", help="Recompute even when a cached result exists")
    reconcile.add_argument("--output-dir", type=Path, help="Directory for generated reports")
    reconcile.add_argument("--suggestion-provider", help="Suggestion provider for unmatched items (tfidf, none)")
    reconcile.add_argument("--quiet", action="store_true", help="Suppress console summary output")

    for name, help_text in (("accept", "Accept a bid"), ("pending", "Move a bid back to pending")):
        action = commands.add_parser(name, help=help_text)
        action.add_argument("--bid", required=True, help="Id of the bid")
        action.add_argument("--save-to", type=Path, help="JSON file receiving the updated bids")

    decline = commands.add_parser("decline", help="Decline a bid with a reason")
    decline.add_argument("--bid", required=True, help="Id of the bid")
    decline.add_argument("--reason", required=True, help="Why the bid is declined")
    decline.add_argument("--notes", help="Additional notes appended to the reason")
    decline.add_argument("--save-to", type=Path, help="JSON file receiving the updated bids")
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    try:
        config = load_config(args.config)
        _apply_overrides(config, args)
    except Exception as exc:  # pragma: no cover - CLI validation
        logger.error("Failed to load configuration: %s", exc)
        return 1

    if config.paths.bids is None:
        logger.error("No bid snapshot configured; set paths.bids or pass --bids")
        return 1

    try:
        bids = load_bids(config.paths.bids, config.paths.line_items)
    except Exception as exc:
        logger.exception("Failed to load bids: %s", exc)
        return 1

    if args.command == "reconcile":
        return _run_reconcile(config, bids, args)
    return _run_lifecycle(config, bids, args)


def _run_reconcile(config: AppConfig, bids: List[Bid], args: argparse.Namespace) -> int:
    subject = _find_bid(bids, args.bid)
    if subject is None:
        logger.error("Bid '%s' not found in %s", args.bid, config.paths.bids)
        return 1

    try:
        mode = normalise_mode(args.mode or config.comparison.mode)
    except BidReconError as exc:
        logger.error("%s", exc)
        return 1

    reconciler = Reconciler.from_config(config)

    try:
        if mode == TAKEOFF_MODE:
            if config.paths.takeoff is None:
                logger.error("No takeoff snapshot configured; set paths.takeoff or pass --takeoff")
                return 1
            takeoff_items = load_takeoff_items(config.paths.takeoff)
            result = reconciler.reconcile_takeoff_sync(
                subject,
                takeoff_items,
                selected_ids=args.select,
                force_refresh=args.force_refresh,
            )
        else:
            result = reconciler.reconcile_bids_sync(
                subject,
                bids,
                comparison_ids=args.compare,
                force_refresh=args.force_refresh,
            )
    except BidReconError as exc:
        logger.error("Reconciliation rejected: %s", exc)
        return 1
    except Exception as exc:
        logger.exception("Reconciliation failed: %s", exc)
        return 1

    try:
        export_reconciliation(result, config.output)
    except Exception as exc:
        logger.exception("Failed to export reconciliation results: %s", exc)
        return 1

    if not args.quiet:
        _print_summary(result, config.comparison.currency)
    return 0


def _run_lifecycle(config: AppConfig, bids: List[Bid], args: argparse.Namespace) -> int:
    target = args.save_to or config.paths.bids
    if target is None or Path(target).suffix.lower() != ".json":
        logger.error("Bid updates can only be written to a JSON snapshot; pass --save-to")
        return 1

    lifecycle = BidLifecycle.from_bids(bids, cache=create_cache(config.cache.backend, config.cache.path))
    try:
        if args.command == "accept":
            status = lifecycle.accept(args.bid)
        elif args.command == "decline":
            status = lifecycle.decline(args.bid, args.reason, args.notes)
        else:
            status = lifecycle.set_pending(args.bid)
    except BidReconError as exc:
        logger.error("Bid update rejected: %s", exc)
        return 1

    try:
        save_bids(Path(target), bids)
    except Exception as exc:
        logger.exception("Failed to save bids: %s", exc)
        return 1

    print(f"Bid {args.bid}: {status}")
    return 0


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> None:
    if args.bids:
        config.paths.bids = _resolve_override_path(args.bids)

    if args.line_items:
        config.paths.line_items = _resolve_override_path(args.line_items)

    if getattr(args, "takeoff", None):
        config.paths.takeoff = _resolve_override_path(args.takeoff)

    if getattr(args, "suggestion_provider", None):
        config.comparison.suggestion_provider = args.suggestion_provider

    if getattr(args, "output_dir", None):
        config.output.directory = _resolve_override_path(args.output_dir)


def _find_bid(bids: Iterable[Bid], bid_id: str) -> Optional[Bid]:
    for bid in bids:
        if bid.id == bid_id:
            return bid
    return None


def _resolve_override_path(path: Path) -> Path:
    path = Path(path).expanduser()
    if path.is_absolute():
        return path
    return (Path.cwd() / path).resolve()


def _print_summary(result: ReconciliationResult, currency: Optional[str]) -> None:
    metrics = result.metrics
    suffix = f" {currency}" if currency else ""
    label = result.subject.bidder_name or result.subject.id
    print(f"Reconciliation of bid {label} ({result.mode}){' [cached]' if result.cached else ''}")
    if result.stale:
        print("Cached result was computed from older inputs; rerun with --force-refresh.")
    if result.advisory:
        print(result.advisory)
    print(f"  Takeoff total:  {_format_float(metrics.takeoff_total)}{suffix}")
    print(f"  Bid total:      {_format_float(metrics.bid_total)}{suffix}")
    print(f"  Matched:        {metrics.matched_count}/{metrics.selected_count} ({metrics.match_percentage}%)")
    print(f"  Discrepancies:  {metrics.discrepancy_count}")
    print(f"  {result.analysis.summary}")
    for recommendation in result.analysis.recommendations:
        print(f"  - {recommendation}")


def _format_float(value: Optional[float]) -> str:
    try:
        if value is None or (isinstance(value, float) and np.isnan(value)):
            return "-"
        return f"{float(value):,.2f}"
    except Exception:  # pragma: no cover - formatting fallback
        return str(value)


if __name__ == "__main__":  # pragma: no cover - manual execution entry point
    raise SystemExit(main())
