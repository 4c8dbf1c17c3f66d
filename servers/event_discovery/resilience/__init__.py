"""Source health tracking for crawl targets."""

from .health import FAILURE_THRESHOLD, SourceHealthTracker, apply_outcome, is_due

__all__ = [
    "FAILURE_THRESHOLD",
    "SourceHealthTracker",
    "apply_outcome",
    "is_due",
]
