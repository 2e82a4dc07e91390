"""Bid reconciliation core.

This package matches subcontractor bids against the takeoff estimate of a job
or against sibling bids of the same trade, classifies the discrepancies,
aggregates the numbers shown next to a reconciliation and caches the result.
It also owns the pending / accepted / declined lifecycle of a bid. The command
line interface distributed with this repository is one consumer; any service
layer can build on the same functions.
"""

from .ai import AIMatchAdapter, AIMatchService, OpenAIMatchService
from .cache import CacheKey, ReconciliationCache, SQLiteReconciliationCache, create_cache
from .candidates import UNKNOWN_TRADE, derive_trade, filter_sibling_bids, filter_takeoff_items
from .config import AppConfig, load_config
from .discrepancy import DiscrepancyThresholds, detect_discrepancies
from .errors import BidReconError, InputError, UpstreamError
from .heuristic import heuristic_match
from .lifecycle import BidLifecycle, accept, decline, set_pending
from .metrics import aggregate_metrics
from .models import Bid, BidLineItem, Discrepancy, MatchResult, TakeoffItem
from .reconciler import ReconciliationResult, Reconciler

__all__ = [
    "AIMatchAdapter",
    "AIMatchService",
    "AppConfig",
    "Bid",
    "BidLifecycle",
    "BidLineItem",
    "BidReconError",
    "CacheKey",
    "Discrepancy",
    "DiscrepancyThresholds",
    "InputError",
    "MatchResult",
    "OpenAIMatchService",
    "ReconciliationCache",
    "ReconciliationResult",
    "Reconciler",
    "SQLiteReconciliationCache",
    "TakeoffItem",
    "UNKNOWN_TRADE",
    "UpstreamError",
    "accept",
    "aggregate_metrics",
    "create_cache",
    "decline",
    "derive_trade",
    "detect_discrepancies",
    "filter_sibling_bids",
    "filter_takeoff_items",
    "heuristic_match",
    "load_config",
    "set_pending",
]
