"""Exception types raised by the reconciliation core."""

from __future__ import annotations


class BidReconError(Exception):
    """Base class for all reconciliation errors."""


class InputError(BidReconError, ValueError):
    """Malformed or missing input. Raised before anything is applied."""


class UpstreamError(BidReconError, RuntimeError):
    """The external matching service failed or timed out."""


__all__ = ["BidReconError", "InputError", "UpstreamError"]
