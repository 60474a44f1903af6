"""Type definitions for the flashopt engine."""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Optional

from .errors import ErrorCode, InvalidTradeRequest


class OptionSide(Enum):
    """Option side. CALL wins above the strike, PUT wins below it."""
    CALL = "call"
    PUT = "put"


class ExpiryClass(Enum):
    """Ultra-short expiry durations."""
    S5 = "5s"
    S10 = "10s"
    S15 = "15s"

    @property
    def seconds(self) -> int:
        """Nominal timer length in seconds."""
        return int(self.value.rstrip("s"))


# Strike distance in dollars from the entry price
STRIKE_OFFSETS: tuple[float, ...] = (2.5, 5.0, 10.0, 15.0)

EXPIRY_CLASSES: tuple[ExpiryClass, ...] = (ExpiryClass.S5, ExpiryClass.S10, ExpiryClass.S15)

MAX_CONTRACTS = 1000


class TradePhase(Enum):
    """
    Lifecycle phases of a trade.

    IDLE:      No trade, placement allowed
    PLACING:   Waiting for the ledger to accept the placement
    ACTIVE:    Accepted, expiry timer running
    SETTLING:  Expiry fired, waiting for a fresh price
    SETTLED:   Result computed (terminal, displayed until timeout)
    FAILED:    Unrecoverable error (terminal)

    State transitions:
        IDLE → PLACING → ACTIVE → SETTLING → SETTLED → IDLE
        PLACING → FAILED → IDLE (ledger rejection)
        SETTLING → FAILED → IDLE (no fresh price)
        ACTIVE → SETTLED → IDLE (early close, no payout)
    """
    IDLE = "idle"
    PLACING = "placing"
    ACTIVE = "active"
    SETTLING = "settling"
    SETTLED = "settled"
    FAILED = "failed"

    @property
    def in_flight(self) -> bool:
        """Whether this phase blocks a new placement."""
        return self in (TradePhase.PLACING, TradePhase.ACTIVE, TradePhase.SETTLING)


class SettlementOutcome(Enum):
    """Settlement outcome. Ties resolve to LOSS."""
    WIN = "win"
    LOSS = "loss"


class TrendDirection(Enum):
    """Short-window trend direction."""
    UP = "up"
    DOWN = "down"
    NEUTRAL = "neutral"


class Confidence(Enum):
    """Recommendation confidence bucket."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RateSource(Enum):
    """Where a base win rate came from."""
    REAL = "real"  # Enough trades to trust the empirical rate
    SMOOTHED = "smoothed"  # Few trades, Laplace-smoothed
    DEFAULT = "default"  # No usable data, hard-coded prior


@dataclass(frozen=True, slots=True)
class PriceSample:
    """A single price observation. ts is a monotonic instant in seconds."""
    price: float
    ts: float


@dataclass(frozen=True, slots=True)
class PriceTick:
    """
    Normalized tick delivered to subscribers.

    change_amount/change_pct are relative to the previous tick (0 for the first).
    """
    product_id: str
    price: float
    ts: float  # Monotonic receive instant
    wall_ts_ms: int  # Wall clock receive time
    change_amount: float = 0.0
    change_pct: float = 0.0
    volume: float = 0.0
    high_24h: Optional[float] = None
    low_24h: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "price": self.price,
            "wall_ts_ms": self.wall_ts_ms,
            "change": {"amount": self.change_amount, "percentage": self.change_pct},
            "volume": self.volume,
            "high_24h": self.high_24h,
            "low_24h": self.low_24h,
        }


@dataclass(slots=True)
class VolatilityState:
    """EWMA variance of log-returns. Owned by VolatilityEstimator."""
    ewma_variance: float = 0.0
    initialized: bool = False


@dataclass(frozen=True, slots=True)
class TrendSnapshot:
    """Trend analysis result, recomputed on each query."""
    direction: TrendDirection
    strength: float  # [0, 1]
    confidence: float  # [0, 1]
    volatility_pct: float
    wma: Optional[float] = None  # Linearly weighted moving average of the window


@dataclass(frozen=True, slots=True)
class TradeParameters:
    """
    Parameters of one trade. Immutable once created.

    strike_price is derived from entry_price and strike_offset.
    """
    side: OptionSide
    strike_offset: float
    expiry_class: ExpiryClass
    contract_count: int
    entry_price: float

    @property
    def strike_price(self) -> float:
        if self.side == OptionSide.CALL:
            return self.entry_price + self.strike_offset
        return self.entry_price - self.strike_offset

    @classmethod
    def create(
        cls,
        side,
        strike_offset,
        expiry_class,
        contract_count,
        entry_price: float,
    ) -> "TradeParameters":
        """
        Validate and normalize raw request values.

        Accepts enum members or their string values ("call", "5s").

        Raises:
            InvalidTradeRequest: on unknown side/strike/expiry or bad count/price
        """
        try:
            side = side if isinstance(side, OptionSide) else OptionSide(str(side).lower())
        except ValueError:
            raise InvalidTradeRequest(f"Unknown side: {side!r}")

        try:
            expiry_class = (
                expiry_class if isinstance(expiry_class, ExpiryClass)
                else ExpiryClass(str(expiry_class))
            )
        except ValueError:
            raise InvalidTradeRequest(f"Unknown expiry class: {expiry_class!r}")

        try:
            offset = float(strike_offset)
        except (TypeError, ValueError):
            raise InvalidTradeRequest(f"Strike offset is not a number: {strike_offset!r}")
        if offset not in STRIKE_OFFSETS:
            raise InvalidTradeRequest(
                f"Strike offset {offset} not in {list(STRIKE_OFFSETS)}"
            )

        if isinstance(contract_count, bool) or not isinstance(contract_count, int):
            raise InvalidTradeRequest(f"Contract count must be an integer: {contract_count!r}")
        if contract_count < 1 or contract_count > MAX_CONTRACTS:
            raise InvalidTradeRequest(
                f"Contract count must be between 1 and {MAX_CONTRACTS}"
            )

        if entry_price is None or entry_price <= 0:
            raise InvalidTradeRequest(f"Entry price must be positive: {entry_price!r}")

        return cls(
            side=side,
            strike_offset=offset,
            expiry_class=expiry_class,
            contract_count=contract_count,
            entry_price=float(entry_price),
        )

    def to_dict(self) -> dict:
        return {
            "side": self.side.value,
            "strike_offset": self.strike_offset,
            "expiry": self.expiry_class.value,
            "contract_count": self.contract_count,
            "entry_price": self.entry_price,
            "strike_price": self.strike_price,
        }


@dataclass(frozen=True, slots=True)
class SettlementResult:
    """
    Outcome of one trade.

    Invariant: profit == payout - premium.
    """
    outcome: SettlementOutcome
    final_price: float
    payout: Decimal
    profit: Decimal
    premium: Decimal
    table_version: str
    early_close: bool = False

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "final_price": self.final_price,
            "payout": str(self.payout),
            "profit": str(self.profit),
            "premium": str(self.premium),
            "table_version": self.table_version,
            "early_close": self.early_close,
        }


@dataclass(slots=True)
class TradeState:
    """
    State of the session's trade. Only TradeLifecycleController writes it;
    everyone else receives copies.
    """
    phase: TradePhase = TradePhase.IDLE
    trade_id: Optional[str] = None
    parameters: Optional[TradeParameters] = None
    started_at: Optional[float] = None  # Monotonic instant of acceptance
    expires_at: Optional[float] = None
    settlement: Optional[SettlementResult] = None
    error: Optional[ErrorCode] = None
    message: Optional[str] = None

    def copy(self) -> "TradeState":
        return replace(self)

    def remaining_s(self, now: float) -> float:
        """Seconds until expiry (0 when expired or not active)."""
        if self.expires_at is None or self.phase != TradePhase.ACTIVE:
            return 0.0
        return max(0.0, self.expires_at - now)

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "trade_id": self.trade_id,
            "parameters": self.parameters.to_dict() if self.parameters else None,
            "settlement": self.settlement.to_dict() if self.settlement else None,
            "error": self.error.value if self.error else None,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class TradeResult:
    """Result value returned by trade operations."""
    ok: bool
    state: TradeState
    error: Optional[ErrorCode] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, state: TradeState) -> "TradeResult":
        return cls(ok=True, state=state)

    @classmethod
    def failure(cls, state: TradeState, error: ErrorCode, message: str) -> "TradeResult":
        return cls(ok=False, state=state, error=error, message=message)


@dataclass(frozen=True, slots=True)
class PlacementAck:
    """Ledger answer to a placement request."""
    accepted: bool
    trade_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True, slots=True)
class StatBucket:
    """Aggregate win/loss counts for one (expiry, strike offset, side) key."""
    expiry_class: ExpiryClass
    strike_offset: float
    side: OptionSide
    total_trades: int
    wins: int
    losses: int
    ties: int = 0
    win_rate: float = 0.0
    last_updated: int = 0

    @property
    def key(self) -> tuple[ExpiryClass, float, OptionSide]:
        return (self.expiry_class, self.strike_offset, self.side)


@dataclass(frozen=True, slots=True)
class BaseRate:
    """Resolved base win rate, tagged with its source."""
    rate: float
    source: RateSource
    sample_size: int = 0


@dataclass(frozen=True, slots=True)
class RecommendationBreakdown:
    """Every adjustment applied on the way from base rate to estimate."""
    base_rate: float
    rate_source: RateSource
    volatility_pct: float
    volatility_adjustment: float
    trend_adjustment: float
    default_data_penalty: float
    uncapped_rate: float
    capped: bool
    confidence_score: float
    confidence_weight: float
    score: float


@dataclass(frozen=True, slots=True)
class Recommendation:
    """Best-scoring trade parameters. Never persisted."""
    side: OptionSide
    strike_offset: float
    expiry_class: ExpiryClass
    win_rate_estimate: float
    confidence: Confidence
    sample_size: int
    rate_source: RateSource
    reasoning: str
    breakdown: Optional[RecommendationBreakdown] = None

    def to_dict(self) -> dict:
        data = {
            "side": self.side.value,
            "strike_offset": self.strike_offset,
            "expiry": self.expiry_class.value,
            "win_rate_estimate": self.win_rate_estimate,
            "confidence": self.confidence.value,
            "sample_size": self.sample_size,
            "rate_source": self.rate_source.value,
            "reasoning": self.reasoning,
        }
        if self.breakdown is not None:
            b = self.breakdown
            data["breakdown"] = {
                "base_rate": b.base_rate,
                "rate_source": b.rate_source.value,
                "volatility_pct": b.volatility_pct,
                "volatility_adjustment": b.volatility_adjustment,
                "trend_adjustment": b.trend_adjustment,
                "default_data_penalty": b.default_data_penalty,
                "uncapped_rate": b.uncapped_rate,
                "capped": b.capped,
                "confidence_score": b.confidence_score,
                "confidence_weight": b.confidence_weight,
                "score": b.score,
            }
        return data


@dataclass(slots=True)
class FeedHealth:
    """WebSocket feed health state."""
    connected: bool = False
    permanently_disconnected: bool = False
    last_tick_ts: Optional[float] = None  # Monotonic
    last_tick_wall_ms: Optional[int] = None
    reconnect_count: int = 0
    consecutive_failures: int = 0
    last_backoff_s: Optional[float] = None
    last_error: Optional[str] = None
    tick_count: int = 0
    dropped_count: int = 0
    reconnect_delays: list[float] = field(default_factory=list)
