import logging
import time
from collections import deque
from threading import Lock
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_THRESHOLDS = {
    "RECEIPT_SHEETS_WRITE_FAILED": 5,
    "RECEIPT_ACCOUNTANT_WRITE_FAILED": 5,
    "RECEIPT_CORRUPT_DRAFT": 1,
    "RECEIPT_LEDGER_WRITE_FAILED": 3,
    "RECEIPT_STATS_CONFLICT_EXHAUSTED": 3,
    "RECEIPT_RATE_UNAVAILABLE": 10,
}


class AuditAlertTracker:
    """Sliding-window counter per receipt fault action.

    Emits an ``ALERT`` warning each time an action reaches a multiple of its
    threshold inside the window. Unknown actions are ignored.
    """

    def __init__(
        self,
        window_seconds: int,
        thresholds: dict[str, int],
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window_seconds = window_seconds
        self._thresholds = dict(thresholds)
        self._buckets: dict[str, deque[float]] = {}
        self._lock = Lock()
        self._clock = clock

    def _prune(self, bucket: deque[float], now: float) -> None:
        cutoff = now - self._window_seconds
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    def record(self, action: str, metadata: Optional[dict] = None) -> bool:
        """Count one occurrence; return True when this one raised an alert."""
        limit = self._thresholds.get(action)
        if not limit:
            return False
        now = self._clock()
        with self._lock:
            bucket = self._buckets.setdefault(action, deque())
            self._prune(bucket, now)
            bucket.append(now)
            count = len(bucket)

        if count % limit != 0:
            return False
        logger.warning(
            "ALERT audit_action=%s count=%s window_seconds=%s metadata=%s",
            action,
            count,
            self._window_seconds,
            metadata or {},
        )
        return True

    def count(self, action: str) -> int:
        with self._lock:
            bucket = self._buckets.get(action)
            if bucket is None:
                return 0
            self._prune(bucket, self._clock())
            if not bucket:
                del self._buckets[action]
                return 0
            return len(bucket)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


alert_tracker = AuditAlertTracker(DEFAULT_WINDOW_SECONDS, DEFAULT_THRESHOLDS)
