"""Bounded ring buffer of price samples."""

from collections import deque
from typing import Optional

from .types import PriceSample


class PriceSampleBuffer:
    """
    Holds the most recent PriceSamples, oldest evicted first.

    Only the tick-processing path appends. Readers get tuple snapshots,
    so a reader never observes the buffer changing underneath it.
    """

    def __init__(self, capacity: int = 200):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._samples: deque[PriceSample] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._samples.maxlen

    def __len__(self) -> int:
        return len(self._samples)

    def append(self, sample: PriceSample) -> None:
        self._samples.append(sample)

    def latest(self) -> Optional[PriceSample]:
        """Most recent sample, or None if empty."""
        return self._samples[-1] if self._samples else None

    def snapshot(self, last_n: Optional[int] = None) -> tuple[PriceSample, ...]:
        """
        Copy of the buffer contents in arrival order.

        Args:
            last_n: Only return the most recent n samples
        """
        samples = tuple(self._samples)
        if last_n is not None:
            return samples[-last_n:] if last_n > 0 else ()
        return samples

    def since(self, ts: float) -> tuple[PriceSample, ...]:
        """Samples with ts >= the given monotonic instant."""
        return tuple(s for s in self._samples if s.ts >= ts)

    def clear(self) -> None:
        self._samples.clear()
