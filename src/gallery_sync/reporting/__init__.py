"""Progress tracking for gallery sync runs."""

from gallery_sync.reporting.progress import PROGRESS_CACHE_KEY, ProgressTracker, ScaledProgress

__all__ = [
    "PROGRESS_CACHE_KEY",
    "ProgressTracker",
    "ScaledProgress",
]
