"""Engine service wiring and process entry point."""

import asyncio
import logging
import signal
from typing import Optional

from .config import EngineConfig
from .feed import FeedConnector, Subscription, TickCallback
from .ledger import HttpLedgerClient, Ledger
from .lifecycle import TradeLifecycleController
from .recommendation import RecommendationEngine
from .recorder import SettlementRecorder
from .sample_buffer import PriceSampleBuffer
from .settlement import SettlementEngine
from .statistics import StatisticsCache
from .status_server import StatusServer
from .trend import TrendAnalyzer
from .types import Recommendation, TradeResult, TradeState
from .util import setup_logging
from .volatility import VolatilityEstimator

logger = logging.getLogger(__name__)


class EngineService:
    """
    Explicitly constructed engine instance; consumers hold a reference.

    Component graph:
    FeedConnector --> PriceSampleBuffer --> TrendAnalyzer --┐
          |                                                 ├--> RecommendationEngine
          └--> VolatilityEstimator -------------------------┘          ^
          |                                                           |
          └--> TradeLifecycleController --> SettlementEngine    StatisticsCache
                        |                                             ^
                        └--> SettlementRecorder --> Ledger -----------┘
    """

    def __init__(self, config: EngineConfig, ledger: Optional[Ledger] = None):
        """
        Initialize the service. Nothing connects until start().

        Args:
            config: Engine configuration
            ledger: Ledger implementation; defaults to HttpLedgerClient(config.ledger_url)
        """
        config.validate()
        self.config = config

        self.buffer = PriceSampleBuffer(capacity=config.sample_buffer_size)
        self.feed = FeedConnector(
            product_id=config.product_id,
            ws_url=config.feed_ws_url,
            buffer=self.buffer,
            backoff_base_s=config.backoff_base_s,
            max_reconnect_attempts=config.max_reconnect_attempts,
            open_timeout_s=config.open_timeout_s,
            stale_reconnect_s=config.stale_reconnect_s,
            subscriber_queue_size=config.subscriber_queue_size,
        )

        self.volatility = VolatilityEstimator(decay=config.ewma_lambda)
        self.feed.add_processor(self.volatility.on_price_sample)

        self.trend = TrendAnalyzer(
            self.buffer,
            volatility=self.volatility,
            window=config.trend_window,
            min_samples=config.trend_min_samples,
        )

        self.ledger = ledger or HttpLedgerClient(
            config.ledger_url, timeout_s=config.ledger_timeout_s
        )
        self.settlement = SettlementEngine()
        self.recorder = SettlementRecorder(self.ledger)
        self.controller = TradeLifecycleController(
            feed=self.feed,
            ledger=self.ledger,
            engine=self.settlement,
            recorder=self.recorder,
            config=config,
        )

        self.stats = StatisticsCache(self.ledger, ttl_s=config.stats_ttl_s)
        self.recommender = RecommendationEngine(self.volatility, self.trend, self.stats)

    async def start(self) -> None:
        logger.info(f"Starting engine for {self.config.product_id}")
        self.feed.start()

    async def stop(self) -> None:
        logger.info("Stopping engine...")
        await self.controller.shutdown()
        self.feed.unsubscribe_all()
        await self.feed.stop()
        if isinstance(self.ledger, HttpLedgerClient):
            await self.ledger.close()
        logger.info("Engine stopped")

    # ------------------------------------------------------------------
    # Presentation-layer API
    # ------------------------------------------------------------------

    async def place_trade(self, side, strike_offset, expiry_class, contract_count) -> TradeResult:
        return await self.controller.place_trade(side, strike_offset, expiry_class, contract_count)

    def close_trade_early(self) -> TradeResult:
        return self.controller.close_trade_early()

    async def get_recommendation(self) -> Recommendation:
        return await self.recommender.recommend()

    def get_current_price(self) -> Optional[float]:
        return self.feed.current_price()

    def subscribe(self, callback: TickCallback) -> Subscription:
        return self.feed.subscribe(callback)

    def get_trade_state(self) -> TradeState:
        return self.controller.state

    def reset_session(self) -> bool:
        """
        Clear estimator state. Refused while a trade is in flight.

        Returns:
            True if the reset happened
        """
        if self.controller.phase.in_flight:
            logger.warning("Session reset refused: trade in flight")
            return False
        self.buffer.clear()
        self.volatility.reset()
        return True


class EngineApp:
    """Runs an EngineService and its status server until a shutdown signal."""

    def __init__(self, config: EngineConfig):
        self.config = config
        self.service = EngineService(config)
        self.server = StatusServer(self.service, host=config.http_host, port=config.http_port)
        self._shutdown_event = asyncio.Event()
        self._status_task: Optional[asyncio.Task] = None

    async def _log_status(self) -> None:
        """Periodic one-line status log."""
        while not self._shutdown_event.is_set():
            await asyncio.sleep(10.0)
            feed = self.service.feed
            price = feed.current_price()
            logger.info(
                f"price={price if price is not None else 'n/a'} "
                f"connected={feed.is_connected()} "
                f"vol={self.service.volatility.current_volatility_pct():.4f}% "
                f"trend={self.service.trend.describe()} "
                f"trade={self.service.controller.phase.value}"
            )
            if feed.permanently_disconnected:
                logger.error("Price feed permanently disconnected; restart required")

    async def run(self) -> None:
        """
        Run until SIGINT/SIGTERM.
        """
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._shutdown_event.set)

        try:
            await self.server.start()
            await self.service.start()
            self._status_task = asyncio.create_task(self._log_status(), name="status_log")
            await self._shutdown_event.wait()
        finally:
            if self._status_task:
                self._status_task.cancel()
            await self.service.stop()
            await self.server.stop()


def main() -> None:
    """Entry point for the application."""
    config = EngineConfig.from_env()
    setup_logging("flashopt", level=config.log_level)

    logger.info(
        f"Starting with config: product={config.product_id}, "
        f"ledger={config.ledger_url}, port={config.http_port}"
    )

    app = EngineApp(config)
    asyncio.run(app.run())


if __name__ == "__main__":
    main()
