"""Liveness tracking for the price feed."""

import logging
from typing import Optional

from .util import now_s

logger = logging.getLogger(__name__)


class FeedHealthTracker:
    """
    Tracks liveness/staleness of the price feed.

    Used by the feed watchdog to force a reconnect when a connection
    is open but silent, and by the status endpoint.
    """

    def __init__(self, stale_threshold_s: float = 30.0):
        """
        Initialize the health tracker.

        Args:
            stale_threshold_s: Seconds without a tick after which the feed is stale
        """
        self.stale_threshold_s = stale_threshold_s
        self._last_tick_ts: Optional[float] = None

    @property
    def last_tick_ts(self) -> Optional[float]:
        """Monotonic instant of the last tick."""
        return self._last_tick_ts

    def update_on_tick(self, ts: float) -> None:
        self._last_tick_ts = ts

    def mark_connected(self, ts: Optional[float] = None) -> None:
        """Restart the staleness clock on a fresh connection."""
        self._last_tick_ts = now_s() if ts is None else ts

    def age_s(self, now: Optional[float] = None) -> float:
        """
        Seconds since the last tick.

        Returns:
            Age in seconds, or infinity if no tick was ever received
        """
        if self._last_tick_ts is None:
            return float("inf")
        if now is None:
            now = now_s()
        return now - self._last_tick_ts

    def is_stale(self, now: Optional[float] = None) -> bool:
        return self.age_s(now) > self.stale_threshold_s
