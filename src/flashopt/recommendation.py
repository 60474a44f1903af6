"""
Recommendation engine.

Scores every (expiry, strike offset) combination for the side implied by
the current trend and returns the best one. Base win rates come from
ledger statistics when there is enough data, Laplace-smoothed counts when
there is a little, and a hard-coded prior otherwise.
"""

import logging
import math
from typing import Optional

from .statistics import StatisticsCache
from .trend import TrendAnalyzer
from .types import (
    BaseRate,
    Confidence,
    ExpiryClass,
    OptionSide,
    RateSource,
    Recommendation,
    RecommendationBreakdown,
    StatBucket,
    TrendDirection,
    TrendSnapshot,
    EXPIRY_CLASSES,
    STRIKE_OFFSETS,
)
from .util import clamp
from .volatility import VolatilityEstimator

logger = logging.getLogger(__name__)

# Prior win rates when no usable statistics exist
DEFAULT_WIN_RATES: dict[ExpiryClass, dict[float, float]] = {
    ExpiryClass.S5: {2.5: 0.60, 5.0: 0.55, 10.0: 0.42, 15.0: 0.28},
    ExpiryClass.S10: {2.5: 0.65, 5.0: 0.60, 10.0: 0.47, 15.0: 0.33},
    ExpiryClass.S15: {2.5: 0.70, 5.0: 0.65, 10.0: 0.52, 15.0: 0.38},
}

# Never claim better odds than this
WIN_RATE_CAP = 0.72

RELIABLE_SAMPLE_SIZE = 20
SMOOTHING_MIN_SAMPLES = 5
FULL_CONFIDENCE_SAMPLES = 50

# Volatility bands (percent, EWMA)
LOW_VOLATILITY_PCT = 0.3
HIGH_VOLATILITY_PCT = 0.6
LOW_VOLATILITY_SLOPE = 0.5
MAX_LOW_VOLATILITY_BOOST = 0.15
HIGH_VOLATILITY_SLOPE = 0.3
MAX_HIGH_VOLATILITY_PENALTY = 0.30

TREND_BONUS_SLOPE = 0.1
MAX_TREND_BONUS = 0.1

DEFAULT_DATA_PENALTY = 0.05

CONFIDENCE_WEIGHTS = {
    Confidence.HIGH: 1.2,
    Confidence.MEDIUM: 1.0,
    Confidence.LOW: 0.8,
}

CONSERVATIVE_DEFAULT = (OptionSide.CALL, ExpiryClass.S15, 2.5)


def resolve_base_rate(
    bucket: Optional[StatBucket],
    expiry_class: ExpiryClass,
    strike_offset: float,
) -> BaseRate:
    """Pick the base win rate: real data > smoothed > default."""
    if bucket is not None and bucket.total_trades >= RELIABLE_SAMPLE_SIZE:
        return BaseRate(bucket.win_rate, RateSource.REAL, bucket.total_trades)

    if bucket is not None and bucket.total_trades >= SMOOTHING_MIN_SAMPLES:
        smoothed = (bucket.wins + 1) / (bucket.wins + bucket.losses + 2)
        return BaseRate(smoothed, RateSource.SMOOTHED, bucket.total_trades)

    rate = DEFAULT_WIN_RATES.get(expiry_class, {}).get(float(strike_offset), 0.5)
    return BaseRate(rate, RateSource.DEFAULT, 0)


def volatility_multiplier(volatility_pct: float) -> float:
    """
    Relative adjustment for market volatility.

    Low volatility boosts by at most MAX_LOW_VOLATILITY_BOOST; high
    volatility penalizes by up to MAX_HIGH_VOLATILITY_PENALTY, which is
    larger.
    """
    if volatility_pct < LOW_VOLATILITY_PCT:
        boost = (LOW_VOLATILITY_PCT - volatility_pct) * LOW_VOLATILITY_SLOPE
        return 1.0 + min(boost, MAX_LOW_VOLATILITY_BOOST)
    if volatility_pct > HIGH_VOLATILITY_PCT:
        penalty = (volatility_pct - HIGH_VOLATILITY_PCT) * HIGH_VOLATILITY_SLOPE
        return 1.0 - min(penalty, MAX_HIGH_VOLATILITY_PENALTY)
    return 1.0


def trend_bonus(trend: TrendSnapshot) -> float:
    """Relative bonus for a directional trend, 0 when neutral."""
    if trend.direction == TrendDirection.NEUTRAL:
        return 0.0
    return min(trend.strength * TREND_BONUS_SLOPE, MAX_TREND_BONUS)


def classify_confidence(
    vol_multiplier: float,
    base: BaseRate,
    trend_strength: float,
) -> tuple[Confidence, float]:
    """
    Confidence bucket from volatility, data reliability and trend strength.

    Returns:
        (Confidence, score)
    """
    if base.source == RateSource.DEFAULT:
        reliability = 0.5
    else:
        reliability = min(1.0, base.sample_size / FULL_CONFIDENCE_SAMPLES)

    score = (vol_multiplier + reliability + trend_strength) / 3

    if score >= 0.8 and base.sample_size >= 30:
        return Confidence.HIGH, score
    if score >= 0.6 and base.sample_size >= 15:
        return Confidence.MEDIUM, score
    return Confidence.LOW, score


def side_for_trend(trend: TrendSnapshot) -> OptionSide:
    """Puts in a downtrend, calls otherwise."""
    if trend.direction == TrendDirection.DOWN:
        return OptionSide.PUT
    return OptionSide.CALL


class RecommendationEngine:
    """
    Scores trade parameter combinations by estimated win rate.

    score = adjusted_rate * confidence_weight; the strict maximum wins,
    so earlier combinations win ties.
    """

    def __init__(
        self,
        volatility: VolatilityEstimator,
        trend: TrendAnalyzer,
        stats: StatisticsCache,
        win_rate_cap: float = WIN_RATE_CAP,
    ):
        self._volatility = volatility
        self._trend = trend
        self._stats = stats
        self._win_rate_cap = win_rate_cap

    @property
    def win_rate_cap(self) -> float:
        return self._win_rate_cap

    def score(
        self,
        expiry_class: ExpiryClass,
        strike_offset: float,
        side: OptionSide,
        trend: TrendSnapshot,
        volatility_pct: float,
    ) -> Recommendation:
        """Score one combination, with a full adjustment breakdown."""
        base = resolve_base_rate(
            self._stats.get(expiry_class, strike_offset, side),
            expiry_class,
            strike_offset,
        )
        base_rate = base.rate if math.isfinite(base.rate) else 0.0

        vol_mult = volatility_multiplier(volatility_pct)
        vol_adj = base_rate * (vol_mult - 1.0)
        trend_adj = base_rate * trend_bonus(trend)
        default_penalty = -DEFAULT_DATA_PENALTY if base.source == RateSource.DEFAULT else 0.0

        uncapped = base_rate + vol_adj + trend_adj + default_penalty
        adjusted = clamp(uncapped, 0.0, self._win_rate_cap)

        confidence, confidence_score = classify_confidence(vol_mult, base, trend.strength)
        weight = CONFIDENCE_WEIGHTS[confidence]
        score = adjusted * weight

        breakdown = RecommendationBreakdown(
            base_rate=base_rate,
            rate_source=base.source,
            volatility_pct=volatility_pct,
            volatility_adjustment=vol_adj,
            trend_adjustment=trend_adj,
            default_data_penalty=default_penalty,
            uncapped_rate=uncapped,
            capped=uncapped > self._win_rate_cap,
            confidence_score=confidence_score,
            confidence_weight=weight,
            score=score,
        )

        return Recommendation(
            side=side,
            strike_offset=float(strike_offset),
            expiry_class=expiry_class,
            win_rate_estimate=adjusted,
            confidence=confidence,
            sample_size=base.sample_size,
            rate_source=base.source,
            reasoning=self._reasoning(base, trend, volatility_pct),
            breakdown=breakdown,
        )

    @staticmethod
    def _reasoning(base: BaseRate, trend: TrendSnapshot, volatility_pct: float) -> str:
        if base.source == RateSource.REAL:
            text = f"Based on {base.sample_size} real trades ({base.rate * 100:.1f}% win rate)"
        elif base.source == RateSource.SMOOTHED:
            text = f"Based on {base.sample_size} trades with smoothing"
        else:
            text = "Using default win rates"

        if trend.direction == TrendDirection.UP:
            text += f" + Uptrend detected ({trend.strength * 100:.0f}% strength)"
        elif trend.direction == TrendDirection.DOWN:
            text += f" + Downtrend detected ({trend.strength * 100:.0f}% strength)"

        return text + f" + Volatility: {volatility_pct:.3f}%"

    def score_all(self, trend: Optional[TrendSnapshot] = None) -> list[Recommendation]:
        """Score every expiry x strike combination for the trend side."""
        trend = trend or self._trend.analyze()
        side = side_for_trend(trend)
        volatility_pct = self._volatility.current_volatility_pct()

        return [
            self.score(expiry_class, strike_offset, side, trend, volatility_pct)
            for expiry_class in EXPIRY_CLASSES
            for strike_offset in STRIKE_OFFSETS
        ]

    def conservative_default(self, reasoning: str) -> Recommendation:
        side, expiry_class, strike_offset = CONSERVATIVE_DEFAULT
        return Recommendation(
            side=side,
            strike_offset=strike_offset,
            expiry_class=expiry_class,
            win_rate_estimate=min(DEFAULT_WIN_RATES[expiry_class][strike_offset], self._win_rate_cap),
            confidence=Confidence.LOW,
            sample_size=0,
            rate_source=RateSource.DEFAULT,
            reasoning=reasoning,
        )

    async def recommend(self) -> Recommendation:
        """Best-scoring recommendation for current market conditions."""
        if not self._trend.has_enough_data():
            return self.conservative_default(
                "Insufficient price data - using conservative defaults"
            )

        await self._stats.refresh_if_stale()

        best: Optional[Recommendation] = None
        for candidate in self.score_all():
            if best is None or candidate.breakdown.score > best.breakdown.score:
                best = candidate

        if best is None or best.breakdown.score <= 0:
            return self.conservative_default(
                "Conservative default - longer expiry, small strike offset"
            )

        logger.debug(
            f"Recommendation: {best.side.value} {best.expiry_class.value} "
            f"offset={best.strike_offset} rate={best.win_rate_estimate:.3f} "
            f"confidence={best.confidence.value}"
        )
        return best
