"""Short-window trend analysis."""

import logging
import math
from typing import Optional

from .sample_buffer import PriceSampleBuffer
from .types import PriceSample, TrendDirection, TrendSnapshot
from .volatility import DEFAULT_VOLATILITY_PCT, VolatilityEstimator

logger = logging.getLogger(__name__)


class TrendAnalyzer:
    """
    Directional trend over the most recent samples.

    Computes:
    - Linearly weighted moving average (smoothing aid only)
    - Window volatility as coefficient of variation, in percent
    - Percent change first -> last, compared against a dynamic threshold
      max(threshold_floor, volatility_pct * threshold_vol_scale / 100)
    - Strength: min(|change| / strength_scale, 1)
    - Confidence: share of consecutive moves agreeing with the direction
    """

    def __init__(
        self,
        buffer: PriceSampleBuffer,
        volatility: Optional[VolatilityEstimator] = None,
        window: int = 15,
        min_samples: int = 10,
        threshold_floor: float = 0.002,
        threshold_vol_scale: float = 0.5,
        strength_scale: float = 0.01,
    ):
        self._buffer = buffer
        self._volatility = volatility
        self._window = window
        self._min_samples = min_samples
        self._threshold_floor = threshold_floor
        self._threshold_vol_scale = threshold_vol_scale
        self._strength_scale = strength_scale

    @property
    def min_samples(self) -> int:
        return self._min_samples

    def has_enough_data(self) -> bool:
        return len(self._buffer) >= self._min_samples

    def _fallback_volatility(self) -> float:
        if self._volatility is not None:
            return self._volatility.current_volatility_pct()
        return DEFAULT_VOLATILITY_PCT

    def analyze(self) -> TrendSnapshot:
        """Compute a fresh TrendSnapshot from the current window."""
        recent = self._buffer.snapshot(self._window)
        if len(recent) < self._min_samples:
            return TrendSnapshot(
                direction=TrendDirection.NEUTRAL,
                strength=0.0,
                confidence=0.0,
                volatility_pct=self._fallback_volatility(),
            )
        return self.analyze_window(recent)

    def analyze_window(self, recent: tuple[PriceSample, ...]) -> TrendSnapshot:
        prices = [s.price for s in recent]
        n = len(prices)

        weighted_sum = sum(p * (i + 1) for i, p in enumerate(prices))
        weight_sum = n * (n + 1) / 2
        wma = weighted_sum / weight_sum

        mean = sum(prices) / n
        variance = sum((p - mean) ** 2 for p in prices) / n
        volatility_pct = math.sqrt(variance) / mean * 100

        first = prices[0]
        percent_change = (prices[-1] - first) / first
        threshold = max(
            self._threshold_floor,
            volatility_pct * self._threshold_vol_scale / 100,
        )

        if percent_change > threshold:
            direction = TrendDirection.UP
        elif percent_change < -threshold:
            direction = TrendDirection.DOWN
        else:
            direction = TrendDirection.NEUTRAL

        strength = min(abs(percent_change) / self._strength_scale, 1.0)

        consistent = 0
        for prev, cur in zip(prices, prices[1:]):
            move = cur - prev
            if (direction == TrendDirection.UP and move > 0) or (
                direction == TrendDirection.DOWN and move < 0
            ):
                consistent += 1
        confidence = consistent / (n - 1)

        return TrendSnapshot(
            direction=direction,
            strength=strength,
            confidence=confidence,
            volatility_pct=volatility_pct,
            wma=wma,
        )

    def describe(self) -> str:
        """Human-readable trend summary for display."""
        trend = self.analyze()
        pct = f"{trend.strength * 100:.0f}%"
        if trend.direction == TrendDirection.UP:
            return f"Uptrend detected ({pct} strength) - favoring calls"
        if trend.direction == TrendDirection.DOWN:
            return f"Downtrend detected ({pct} strength) - favoring puts"
        return "Market is stable"
