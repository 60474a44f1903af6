"""Time-to-live cache of ledger trade statistics."""

import asyncio
import logging
from typing import Callable, Optional

from .errors import LedgerError
from .ledger import Ledger
from .types import ExpiryClass, OptionSide, StatBucket
from .util import now_s

logger = logging.getLogger(__name__)


class StatisticsCache:
    """
    Read-only cache of StatBuckets keyed by (expiry, strike offset, side).

    Refreshed from the ledger when older than the TTL. A failed refresh
    keeps the previous contents and is retried on the next call after
    the TTL.
    """

    def __init__(
        self,
        ledger: Optional[Ledger],
        ttl_s: float = 30.0,
        clock: Callable[[], float] = now_s,
    ):
        self._ledger = ledger
        self._ttl_s = ttl_s
        self._clock = clock
        self._buckets: dict[tuple[ExpiryClass, float, OptionSide], StatBucket] = {}
        self._last_fetch: Optional[float] = None
        self._lock = asyncio.Lock()
        self._fetch_count = 0
        self._error_count = 0

    @property
    def ttl_s(self) -> float:
        return self._ttl_s

    @property
    def fetch_count(self) -> int:
        return self._fetch_count

    def age_s(self) -> float:
        if self._last_fetch is None:
            return float("inf")
        return self._clock() - self._last_fetch

    def is_stale(self) -> bool:
        return self.age_s() >= self._ttl_s

    async def refresh_if_stale(self) -> bool:
        """
        Refresh from the ledger if the TTL has elapsed.

        Returns:
            True if a refresh happened and succeeded
        """
        if not self.is_stale():
            return False
        if self._ledger is None:
            return False

        async with self._lock:
            # Another caller may have refreshed while we waited
            if not self.is_stale():
                return False

            # Stamp before fetching so a failing ledger is polled once per TTL
            self._last_fetch = self._clock()
            try:
                buckets = await self._ledger.fetch_statistics()
            except LedgerError as e:
                self._error_count += 1
                logger.warning(f"Failed to fetch statistics, keeping cached values: {e}")
                return False
            except Exception as e:
                self._error_count += 1
                logger.exception(f"Unexpected error fetching statistics, keeping cached values: {e!r}")
                return False

            self.load(buckets)
            self._fetch_count += 1
            logger.info(f"Fetched {len(buckets)} trade statistics entries")
            return True

    def load(self, buckets: list[StatBucket]) -> None:
        """Replace the cache contents."""
        self._buckets = {b.key: b for b in buckets}

    def get(
        self,
        expiry_class: ExpiryClass,
        strike_offset: float,
        side: OptionSide,
    ) -> Optional[StatBucket]:
        return self._buckets.get((expiry_class, float(strike_offset), side))

    def __len__(self) -> int:
        return len(self._buckets)

    @property
    def stats(self) -> dict:
        return {
            "buckets": len(self._buckets),
            "age_s": self.age_s(),
            "fetch_count": self._fetch_count,
            "error_count": self._error_count,
        }
