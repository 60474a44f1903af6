"""Coinbase ticker WebSocket feed."""

import asyncio
import inspect
import logging
from typing import Callable, Optional

import orjson
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .health import FeedHealthTracker
from .sample_buffer import PriceSampleBuffer
from .types import FeedHealth, PriceSample, PriceTick
from .util import now_s, wall_ms

logger = logging.getLogger(__name__)

COINBASE_WS_URL = "wss://ws-feed.exchange.coinbase.com"

TickCallback = Callable[[PriceTick], object]
SampleProcessor = Callable[[PriceSample], None]


class ExponentialBackoff:
    """
    Exponential backoff with an attempt ceiling.

    Delays are base, 2*base, 4*base, ... with no jitter, so consecutive
    delays are strictly increasing. After max_attempts delays the backoff
    is exhausted.
    """

    def __init__(self, base_seconds: float = 1.0, max_attempts: int = 5):
        self.base_seconds = base_seconds
        self.max_attempts = max_attempts
        self._attempts = 0

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def exhausted(self) -> bool:
        return self._attempts >= self.max_attempts

    def next_delay(self) -> float:
        """Get next delay and count the attempt."""
        delay = self.base_seconds * (2 ** self._attempts)
        self._attempts += 1
        return delay

    def reset(self) -> None:
        """Reset attempt counter."""
        self._attempts = 0


class Subscription:
    """
    One subscriber's tick channel.

    The tick path only enqueues; a per-subscriber task drains the queue
    and invokes the callback, so a slow or failing subscriber never
    holds up tick processing. With callback=None the owner reads
    `queue` directly.
    """

    def __init__(
        self,
        connector: "FeedConnector",
        callback: Optional[TickCallback],
        maxsize: int = 1000,
    ):
        self.queue: asyncio.Queue[PriceTick] = asyncio.Queue(maxsize=maxsize)
        self._connector = connector
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self.dropped = 0
        self.delivered = 0
        self.errors = 0
        self.active = True

    def offer(self, tick: PriceTick) -> bool:
        """Enqueue without blocking; drop the tick if the queue is full."""
        try:
            self.queue.put_nowait(tick)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped % 100 == 1:
                logger.warning(f"Subscriber queue full, dropped {self.dropped} ticks")
            return False

    def start(self) -> None:
        """Start the delivery task (needs a running loop)."""
        if self._callback is None or (self._task and not self._task.done()):
            return
        self._task = asyncio.get_running_loop().create_task(
            self._deliver(), name="feed_subscriber"
        )

    async def _deliver(self) -> None:
        while True:
            tick = await self.queue.get()
            try:
                result = self._callback(tick)
                if inspect.isawaitable(result):
                    await result
                self.delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.errors += 1
                logger.warning(f"Error in price subscriber: {e}")

    def unsubscribe(self) -> None:
        """Detach from the feed and stop delivery."""
        if not self.active:
            return
        self.active = False
        self._connector._remove_subscription(self)
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None


class FeedConnector:
    """
    Single persistent connection to the Coinbase ticker channel.

    Every valid tick is appended to the sample buffer, run through the
    registered sample processors (estimators) synchronously and in
    registration order, then offered to each subscriber's queue.

    Reconnects with exponential backoff; after max_reconnect_attempts
    consecutive failures it reports permanently disconnected and stays
    down until restart().
    """

    def __init__(
        self,
        product_id: str = "BTC-USD",
        ws_url: str = COINBASE_WS_URL,
        buffer: Optional[PriceSampleBuffer] = None,
        backoff_base_s: float = 1.0,
        max_reconnect_attempts: int = 5,
        open_timeout_s: float = 10.0,
        stale_reconnect_s: float = 30.0,
        subscriber_queue_size: int = 1000,
    ):
        self.product_id = product_id
        self._ws_url = ws_url
        self.buffer = buffer if buffer is not None else PriceSampleBuffer()
        self._open_timeout_s = open_timeout_s
        self._subscriber_queue_size = subscriber_queue_size

        self._backoff = ExponentialBackoff(backoff_base_s, max_reconnect_attempts)
        self._health_tracker = FeedHealthTracker(stale_threshold_s=stale_reconnect_s)
        self.health = FeedHealth()

        self._processors: list[SampleProcessor] = []
        self._subscribers: list[Subscription] = []

        # Connection state
        self._ws = None
        self._connected = False
        self._running = False
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        self._last_price: Optional[float] = None
        self._tick_event = asyncio.Event()
        self._error_count = 0

    # ------------------------------------------------------------------
    # Consumer API
    # ------------------------------------------------------------------

    def current_price(self) -> Optional[float]:
        """Latest valid price, or None before the first tick."""
        return self._last_price

    def is_connected(self) -> bool:
        return self._connected

    @property
    def permanently_disconnected(self) -> bool:
        return self.health.permanently_disconnected

    def latest_sample(self) -> Optional[PriceSample]:
        return self.buffer.latest()

    def price_history(self, seconds: float) -> tuple[PriceSample, ...]:
        """Buffered samples from the last `seconds`."""
        return self.buffer.since(now_s() - seconds)

    def add_processor(self, processor: SampleProcessor) -> None:
        """Register a synchronous per-sample hook on the tick path."""
        self._processors.append(processor)

    def subscribe(self, callback: TickCallback) -> Subscription:
        """
        Subscribe to normalized ticks.

        Args:
            callback: Called with each PriceTick; may be sync or async

        Returns:
            Subscription handle; call unsubscribe() to stop delivery
        """
        sub = Subscription(self, callback, maxsize=self._subscriber_queue_size)
        self._subscribers.append(sub)
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Started by start()
            return sub
        sub.start()
        return sub

    def subscribe_queue(self) -> Subscription:
        """Subscribe with a bare queue the caller drains itself."""
        sub = Subscription(self, None, maxsize=self._subscriber_queue_size)
        self._subscribers.append(sub)
        return sub

    def _remove_subscription(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def unsubscribe_all(self) -> None:
        for sub in list(self._subscribers):
            sub.unsubscribe()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def wait_for_price(
        self,
        not_before: float,
        timeout: float,
    ) -> Optional[PriceSample]:
        """
        Wait for a sample timestamped at or after `not_before`.

        Args:
            not_before: Monotonic instant the sample must not precede
            timeout: Maximum seconds to wait

        Returns:
            The earliest buffered sample at or after `not_before`, or None on timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            qualifying = self.buffer.since(not_before)
            if qualifying:
                return qualifying[0]

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None

            event = self._tick_event
            try:
                await asyncio.wait_for(event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return None

    # ------------------------------------------------------------------
    # Tick path
    # ------------------------------------------------------------------

    def parse_message(self, raw) -> Optional[dict]:
        """
        Parse a raw WebSocket message into ticker fields.

        Returns:
            Dict with price/volume/high/low for our product, or None
        """
        try:
            msg = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            self._error_count += 1
            self.health.last_error = f"parse: {e}"
            return None

        if not isinstance(msg, dict):
            return None

        msg_type = msg.get("type")
        if msg_type == "error":
            self._error_count += 1
            self.health.last_error = str(msg.get("message", "error"))
            logger.warning(f"Feed error message: {msg.get('message')} {msg.get('reason', '')}")
            return None

        if msg_type != "ticker" or msg.get("product_id") != self.product_id:
            return None

        try:
            price = float(msg["price"])
        except (KeyError, ValueError, TypeError) as e:
            self._error_count += 1
            self.health.last_error = f"ticker_parse: {e}"
            return None

        return {
            "price": price,
            "volume": _float_or(msg.get("last_size"), 0.0),
            "high_24h": _float_or(msg.get("high_24h"), None),
            "low_24h": _float_or(msg.get("low_24h"), None),
        }

    def handle_message(self, raw) -> Optional[PriceTick]:
        fields = self.parse_message(raw)
        if fields is None:
            return None
        return self.ingest(**fields)

    def ingest(
        self,
        price: float,
        volume: float = 0.0,
        high_24h: Optional[float] = None,
        low_24h: Optional[float] = None,
        ts: Optional[float] = None,
    ) -> Optional[PriceTick]:
        """
        Process one tick. Non-positive prices are discarded.

        Returns:
            The normalized PriceTick, or None if the price was rejected
        """
        if not price > 0:
            return None

        ts = now_s() if ts is None else ts
        previous = self._last_price

        if previous is not None and previous > 0:
            change_amount = price - previous
            change_pct = change_amount / previous * 100
        else:
            change_amount = 0.0
            change_pct = 0.0

        sample = PriceSample(price=price, ts=ts)
        self.buffer.append(sample)
        self._last_price = price

        self._health_tracker.update_on_tick(ts)
        self.health.last_tick_ts = ts
        self.health.last_tick_wall_ms = wall_ms()
        self.health.tick_count += 1

        for processor in self._processors:
            try:
                processor(sample)
            except Exception as e:
                logger.warning(f"Error in sample processor: {e}")

        tick = PriceTick(
            product_id=self.product_id,
            price=price,
            ts=ts,
            wall_ts_ms=self.health.last_tick_wall_ms,
            change_amount=change_amount,
            change_pct=change_pct,
            volume=volume,
            high_24h=high_24h if high_24h is not None else price,
            low_24h=low_24h if low_24h is not None else price,
        )

        for sub in list(self._subscribers):
            if not sub.offer(tick):
                self.health.dropped_count += 1

        # Wake waiters and arm a fresh event for the next tick
        event = self._tick_event
        self._tick_event = asyncio.Event()
        event.set()

        if previous is not None and abs(change_amount) >= 0.01:
            logger.debug(f"Price update: {previous:.2f} -> {price:.2f}")

        return tick

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _subscribe_message(self) -> bytes:
        return orjson.dumps({
            "type": "subscribe",
            "product_ids": [self.product_id],
            "channels": ["ticker"],
        })

    async def _connect(self):
        """Open the WebSocket connection."""
        return await websockets.connect(
            self._ws_url,
            ping_interval=20,
            ping_timeout=60,
            open_timeout=self._open_timeout_s,
            max_size=2**20,
            compression=None,
        )

    async def _connect_and_stream(self) -> None:
        logger.info(f"Connecting to {self._ws_url} for {self.product_id}...")
        self._ws = await self._connect()

        self._connected = True
        self.health.connected = True
        self.health.consecutive_failures = 0
        self.health.reconnect_delays.clear()
        self._backoff.reset()
        self._health_tracker.mark_connected()
        logger.info(f"Connected to price feed for {self.product_id}")

        await self._ws.send(self._subscribe_message().decode())

        watchdog = asyncio.create_task(self._watchdog(), name="feed_watchdog")
        try:
            async for message in self._ws:
                if not self._running:
                    break
                self.handle_message(message)
        finally:
            watchdog.cancel()

    async def _watchdog(self) -> None:
        """Close a connection that is open but no longer delivering ticks."""
        interval = max(0.1, min(5.0, self._health_tracker.stale_threshold_s / 3))
        while True:
            await asyncio.sleep(interval)
            if self._connected and self._health_tracker.is_stale():
                logger.warning(
                    f"No price updates for {self._health_tracker.age_s():.0f}s, reconnecting"
                )
                if self._ws is not None:
                    await self._ws.close()
                return

    async def _close(self) -> None:
        self._connected = False
        self.health.connected = False

        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"Error closing feed connection: {e!r}")
            self._ws = None

    async def _wait_backoff(self, delay: float) -> bool:
        """Sleep for the backoff delay. Returns True if stop() interrupted it."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(self) -> None:
        """
        Main loop: connect, stream, reconnect with backoff.

        Returns when stopped or when the reconnect ceiling is reached.
        """
        self._running = True
        self.health.permanently_disconnected = False

        while self._running:
            try:
                await self._connect_and_stream()
            except ConnectionClosed as e:
                logger.warning(f"Feed connection closed: {e}")
                self.health.last_error = str(e)
            except asyncio.CancelledError:
                break
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning(f"Feed connection failed: {e!r}")
                self.health.last_error = repr(e)
            except Exception as e:
                logger.warning(f"Feed error: {e!r}")
                self.health.last_error = repr(e)
            finally:
                await self._close()

            if not self._running:
                break

            if self._backoff.exhausted:
                self.health.permanently_disconnected = True
                logger.error(
                    f"Max reconnection attempts ({self._backoff.max_attempts}) reached, "
                    "price feed unavailable"
                )
                break

            delay = self._backoff.next_delay()
            self.health.reconnect_count += 1
            self.health.consecutive_failures += 1
            self.health.last_backoff_s = delay
            self.health.reconnect_delays.append(delay)
            logger.info(
                f"Reconnecting in {delay:.1f}s "
                f"(attempt {self._backoff.attempts}/{self._backoff.max_attempts})"
            )

            if await self._wait_backoff(delay):
                break

        self._running = False
        logger.info("Price feed stopped")

    def start(self) -> asyncio.Task:
        """Start the feed loop as a background task."""
        if self._task and not self._task.done():
            logger.warning("Price feed already running")
            return self._task

        self._stop_event.clear()
        for sub in self._subscribers:
            sub.start()
        self._task = asyncio.get_running_loop().create_task(self.run(), name="price_feed")
        return self._task

    async def stop(self) -> None:
        """Stop the feed. Cancels any pending backoff wait immediately."""
        self._running = False
        self._stop_event.set()
        await self._close()

        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def restart(self) -> asyncio.Task:
        """Restart after a stop or permanent disconnect."""
        await self.stop()
        self._backoff.reset()
        self.health.permanently_disconnected = False
        self.health.consecutive_failures = 0
        return self.start()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stats(self) -> dict:
        """Get feed statistics."""
        return {
            "product_id": self.product_id,
            "connected": self._connected,
            "permanently_disconnected": self.health.permanently_disconnected,
            "tick_count": self.health.tick_count,
            "dropped_count": self.health.dropped_count,
            "error_count": self._error_count,
            "last_error": self.health.last_error,
            "reconnect_count": self.health.reconnect_count,
            "subscribers": len(self._subscribers),
            "buffered_samples": len(self.buffer),
            "tick_age_s": self._health_tracker.age_s(),
        }


def _float_or(value, default):
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
