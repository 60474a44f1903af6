"""EWMA volatility estimator."""

import logging
import math
from typing import Optional

from .types import PriceSample, VolatilityState

logger = logging.getLogger(__name__)

# Reported before the first log-return exists (percent)
DEFAULT_VOLATILITY_PCT = 0.3


class VolatilityEstimator:
    """
    Exponentially-weighted variance of tick log-returns.

    For each sample after the first:
        r = ln(price / previous_price)
        var = lambda * var + (1 - lambda) * r^2

    The first return seeds the variance with r^2. Volatility is reported
    as sqrt(var) * 100, in percent per tick (not annualized; the horizons
    here are seconds).
    """

    def __init__(
        self,
        decay: float = 0.94,
        default_volatility_pct: float = DEFAULT_VOLATILITY_PCT,
    ):
        """
        Initialize the estimator.

        Args:
            decay: EWMA decay constant lambda, close to 1
            default_volatility_pct: Conservative value reported before data exists
        """
        if not 0.0 < decay < 1.0:
            raise ValueError("decay must be in (0, 1)")
        self._decay = decay
        self._default_volatility_pct = default_volatility_pct
        self._state = VolatilityState()
        self._last_price: Optional[float] = None
        self._sample_count = 0

    @property
    def decay(self) -> float:
        return self._decay

    @property
    def sample_count(self) -> int:
        return self._sample_count

    @property
    def state(self) -> VolatilityState:
        """Copy of the current state."""
        return VolatilityState(
            ewma_variance=self._state.ewma_variance,
            initialized=self._state.initialized,
        )

    def on_sample(self, price: float) -> None:
        """Update from a new price. Non-positive prices are ignored."""
        if not price > 0:
            return

        if self._last_price is not None:
            r = math.log(price / self._last_price)
            r2 = r * r
            if not self._state.initialized:
                self._state.ewma_variance = r2
                self._state.initialized = True
            else:
                self._state.ewma_variance = (
                    self._decay * self._state.ewma_variance + (1 - self._decay) * r2
                )

        self._last_price = price
        self._sample_count += 1

    def on_price_sample(self, sample: PriceSample) -> None:
        """Feed processor hook."""
        self.on_sample(sample.price)

    def current_volatility_pct(self) -> float:
        """Current volatility in percent, or the default before two samples exist."""
        if not self._state.initialized:
            return self._default_volatility_pct
        return math.sqrt(self._state.ewma_variance) * 100

    def reset(self) -> None:
        """Clear all state (explicit session reset only)."""
        logger.info("VolatilityEstimator: reset")
        self._state = VolatilityState()
        self._last_price = None
        self._sample_count = 0
