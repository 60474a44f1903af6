"""Test doubles shared across the test modules."""

import asyncio
from typing import Callable, Optional

from flashopt.config import EngineConfig
from flashopt.errors import LedgerError
from flashopt.feed import FeedConnector
from flashopt.ledger import Ledger
from flashopt.types import EXPIRY_CLASSES, PlacementAck, StatBucket


class FakeLedger(Ledger):
    """In-memory ledger with switchable failure modes."""

    def __init__(
        self,
        accept: bool = True,
        reason: str = "insufficient balance",
        record_error: Optional[str] = None,
        stats: Optional[list[StatBucket]] = None,
        fetch_error: Optional[str] = None,
    ):
        self.accept = accept
        self.reason = reason
        self.record_error = record_error
        self.stats = stats or []
        self.fetch_error = fetch_error

        self.placed = []
        self.recorded = []
        self.fetch_calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.on_place: Optional[Callable[[], None]] = None
        self._next_id = 0

    async def place_trade(self, parameters):
        self.placed.append(parameters)
        if self.gate is not None:
            await self.gate.wait()
        if self.on_place is not None:
            self.on_place()
        if not self.accept:
            return PlacementAck(accepted=False, reason=self.reason)
        self._next_id += 1
        return PlacementAck(accepted=True, trade_id=f"T{self._next_id}")

    async def record_settlement(self, trade_id, result):
        if self.record_error:
            raise LedgerError(self.record_error)
        self.recorded.append((trade_id, result))

    async def fetch_statistics(self):
        self.fetch_calls += 1
        if self.fetch_error:
            raise LedgerError(self.fetch_error)
        return list(self.stats)


class LiveFeed(FeedConnector):
    """FeedConnector fed by ingest() with a settable connectivity flag."""

    def __init__(self, connected: bool = True, **kwargs):
        super().__init__(**kwargs)
        self.connected = connected

    def is_connected(self) -> bool:
        return self.connected


class FakeWebSocket:
    """Stands in for a websockets connection: yields canned messages, then ends."""

    def __init__(self, messages):
        self.messages = list(messages)
        self.sent = []
        self.closed = False

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message


def fast_config(**overrides) -> EngineConfig:
    """Config with sub-second timers for lifecycle tests."""
    values = dict(
        expiry_durations={ec: 0.05 for ec in EXPIRY_CLASSES},
        settlement_wait_s=0.2,
        result_display_s=0.15,
        countdown_interval_s=0.01,
    )
    values.update(overrides)
    return EngineConfig(**values)


async def wait_until(predicate, timeout: float = 1.0) -> bool:
    """Poll predicate until true or timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.005)
    return predicate()
