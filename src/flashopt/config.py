"""Configuration for the flashopt engine."""

import os
from dataclasses import dataclass, field

from .errors import ConfigurationError
from .types import EXPIRY_CLASSES, ExpiryClass


@dataclass
class EngineConfig:
    """
    Configuration container for the engine service.

    Loaded from environment variables with sensible defaults.
    """
    # Price feed
    feed_ws_url: str = "wss://ws-feed.exchange.coinbase.com"
    product_id: str = "BTC-USD"
    backoff_base_s: float = 1.0  # First reconnect delay, doubled per attempt
    max_reconnect_attempts: int = 5  # Beyond this the feed gives up until restart
    open_timeout_s: float = 10.0
    stale_reconnect_s: float = 30.0  # Force reconnect if no tick for this long
    sample_buffer_size: int = 200
    subscriber_queue_size: int = 1000

    # Estimators
    ewma_lambda: float = 0.94
    trend_window: int = 15
    trend_min_samples: int = 10

    # Trade lifecycle
    expiry_durations: dict = field(default_factory=lambda: {
        ec: float(ec.seconds) for ec in EXPIRY_CLASSES
    })
    settlement_wait_s: float = 10.0  # Max wait for a fresh price at expiry
    result_display_s: float = 5.0  # Settled/failed state shown before returning to idle
    countdown_interval_s: float = 1.0

    # Recommendation
    stats_ttl_s: float = 30.0

    # External ledger
    ledger_url: str = "http://localhost:8000"
    ledger_timeout_s: float = 10.0

    # HTTP status server
    http_host: str = "127.0.0.1"
    http_port: int = 8080

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Load configuration from environment variables."""
        scale = float(os.getenv("EXPIRY_TIME_SCALE", "1.0"))
        expiry_durations = {
            ec: float(ec.seconds) * scale for ec in EXPIRY_CLASSES
        }

        return cls(
            feed_ws_url=os.getenv("FEED_WS_URL", "wss://ws-feed.exchange.coinbase.com"),
            product_id=os.getenv("FEED_PRODUCT_ID", "BTC-USD"),
            backoff_base_s=float(os.getenv("FEED_BACKOFF_BASE_S", "1.0")),
            max_reconnect_attempts=int(os.getenv("FEED_MAX_RECONNECT_ATTEMPTS", "5")),
            open_timeout_s=float(os.getenv("FEED_OPEN_TIMEOUT_S", "10.0")),
            stale_reconnect_s=float(os.getenv("FEED_STALE_RECONNECT_S", "30.0")),
            sample_buffer_size=int(os.getenv("SAMPLE_BUFFER_SIZE", "200")),
            subscriber_queue_size=int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "1000")),
            ewma_lambda=float(os.getenv("EWMA_LAMBDA", "0.94")),
            trend_window=int(os.getenv("TREND_WINDOW", "15")),
            trend_min_samples=int(os.getenv("TREND_MIN_SAMPLES", "10")),
            expiry_durations=expiry_durations,
            settlement_wait_s=float(os.getenv("SETTLEMENT_WAIT_S", "10.0")),
            result_display_s=float(os.getenv("RESULT_DISPLAY_S", "5.0")),
            countdown_interval_s=float(os.getenv("COUNTDOWN_INTERVAL_S", "1.0")),
            stats_ttl_s=float(os.getenv("STATS_TTL_S", "30.0")),
            ledger_url=os.getenv("LEDGER_URL", "http://localhost:8000"),
            ledger_timeout_s=float(os.getenv("LEDGER_TIMEOUT_S", "10.0")),
            http_host=os.getenv("HTTP_HOST", "127.0.0.1"),
            http_port=int(os.getenv("HTTP_PORT", "8080")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def expiry_seconds(self, expiry_class: ExpiryClass) -> float:
        """Timer length for an expiry class."""
        return self.expiry_durations.get(expiry_class, float(expiry_class.seconds))

    def validate(self) -> None:
        """Validate configuration values."""
        if not self.product_id:
            raise ConfigurationError("product_id must not be empty")

        if self.backoff_base_s <= 0:
            raise ConfigurationError("backoff_base_s must be positive")

        if self.max_reconnect_attempts < 0:
            raise ConfigurationError("max_reconnect_attempts must be >= 0")

        if self.sample_buffer_size < self.trend_window:
            raise ConfigurationError("sample_buffer_size must hold at least one trend window")

        if not 0.0 < self.ewma_lambda < 1.0:
            raise ConfigurationError("ewma_lambda must be in (0, 1)")

        if self.trend_min_samples < 2 or self.trend_min_samples > self.trend_window:
            raise ConfigurationError("trend_min_samples must be in [2, trend_window]")

        for ec in EXPIRY_CLASSES:
            if self.expiry_seconds(ec) <= 0:
                raise ConfigurationError(f"expiry duration for {ec.value} must be positive")

        if self.settlement_wait_s <= 0:
            raise ConfigurationError("settlement_wait_s must be positive")

        if self.stats_ttl_s <= 0:
            raise ConfigurationError("stats_ttl_s must be positive")

        if self.http_port < 1 or self.http_port > 65535:
            raise ConfigurationError("http_port must be between 1 and 65535")
