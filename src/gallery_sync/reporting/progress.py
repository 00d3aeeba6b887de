"""Progress tracking for sync operations.

The progress slot lives in the store's TTL cache so a caller in another
invocation can poll it while a stage runs. Console runs can additionally
mirror it to a tqdm bar.
"""

from collections import deque
from datetime import UTC, datetime
from typing import Any

from tqdm import tqdm

from gallery_sync.migration.store import ContentStore
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)

PROGRESS_CACHE_KEY = "sync_progress"


class ProgressTracker:
    """Single shared progress slot: {active, percentage, message, stage, timestamp}.

    While a run is active, reported percentages never go backwards.
    """

    def __init__(self, store: ContentStore, ttl: int = 300, enable_bar: bool = False):
        """Initialize progress tracker.

        Args:
            store: Content store holding the cache slot
            ttl: Lifetime of the slot in seconds
            enable_bar: Mirror updates to a tqdm progress bar
        """
        self.store = store
        self.ttl = ttl
        self.enable_bar = enable_bar
        self.bar: tqdm | None = None
        self.history: deque[float] = deque(maxlen=1000)
        self._percentage = 0.0

    def _write(self, active: bool, percentage: float, message: str, stage: str | None) -> None:
        slot = {
            "active": active,
            "percentage": round(percentage, 2),
            "message": message,
            "stage": stage,
            "timestamp": datetime.now(UTC).isoformat(),
        }
        self.store.set_cached(PROGRESS_CACHE_KEY, slot, ttl=self.ttl)
        self.history.append(slot["percentage"])

        if self.bar is not None:
            self.bar.n = slot["percentage"]
            self.bar.set_description_str(message[:60])
            self.bar.refresh()

    def start(self, message: str = "Starting", stage: str | None = None) -> None:
        """Begin a new run at 0%."""
        self._percentage = 0.0
        self.history.clear()
        if self.enable_bar and self.bar is None:
            self.bar = tqdm(
                total=100,
                unit="%",
                leave=True,
                bar_format="{desc}: {percentage:3.0f}%|{bar}| [{elapsed}]",
            )
        self._write(True, 0.0, message, stage)
        logger.info("progress_started", stage=stage, message=message)

    def update(self, percentage: float, message: str, stage: str | None = None) -> None:
        """Publish progress; values below the current percentage are raised to it."""
        percentage = max(self._percentage, min(100.0, float(percentage)))
        self._percentage = percentage
        self._write(True, percentage, message, stage)

    def complete(self, message: str = "Completed", stage: str | None = None) -> None:
        self._percentage = 100.0
        self._write(False, 100.0, message, stage)
        self._close_bar()
        logger.info("progress_completed", stage=stage, message=message)

    def halt(self, message: str, stage: str | None = None) -> None:
        """End the run without completing it (failure or stop); percentage freezes."""
        self._write(False, self._percentage, message, stage)
        self._close_bar()
        logger.info("progress_halted", stage=stage, percentage=self._percentage, message=message)

    def get(self) -> dict[str, Any]:
        """Current slot, or an inactive zero slot when none is cached."""
        slot = self.store.get_cached(PROGRESS_CACHE_KEY)
        if not slot:
            return {"active": False, "percentage": 0, "message": "", "stage": None, "timestamp": None}
        return slot

    def reset(self) -> None:
        self._percentage = 0.0
        self.store.delete_cached(PROGRESS_CACHE_KEY)

    def scaled(self, start: float, end: float, stage: str) -> "ScaledProgress":
        """View that maps a stage's own 0-100% into [start, end] of this tracker."""
        return ScaledProgress(self, start, end, stage)

    def _close_bar(self) -> None:
        if self.bar is not None:
            self.bar.close()
            self.bar = None


class ScaledProgress:
    """Progress sink for one stage inside a larger run."""

    def __init__(self, tracker: ProgressTracker, start: float, end: float, stage: str):
        self.tracker = tracker
        self.start = start
        self.end = end
        self.stage = stage

    def update(self, percentage: float, message: str) -> None:
        fraction = max(0.0, min(100.0, float(percentage))) / 100.0
        self.tracker.update(self.start + fraction * (self.end - self.start), message, self.stage)
