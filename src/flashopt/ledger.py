"""
External ledger interface.

The ledger owns trade records and aggregate statistics. This module only
defines the narrow interface the engine needs, plus an HTTP client for a
REST ledger.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp
import orjson

from .errors import LedgerError
from .types import (
    ExpiryClass,
    OptionSide,
    PlacementAck,
    SettlementResult,
    StatBucket,
    TradeParameters,
)

logger = logging.getLogger(__name__)


class Ledger(ABC):
    """Narrow interface to the trade ledger."""

    @abstractmethod
    async def place_trade(self, parameters: TradeParameters) -> PlacementAck:
        """
        Ask the ledger to accept a trade.

        Returns:
            PlacementAck with accepted=False and a reason on refusal

        Raises:
            LedgerError: if the ledger could not be reached
        """
        ...

    @abstractmethod
    async def record_settlement(self, trade_id: str, result: SettlementResult) -> None:
        """
        Record a settlement result.

        Raises:
            LedgerError: if recording failed
        """
        ...

    @abstractmethod
    async def fetch_statistics(self) -> list[StatBucket]:
        """
        Fetch aggregate win/loss statistics.

        Raises:
            LedgerError: if the statistics could not be fetched
        """
        ...


def to_cents(value) -> int:
    """Convert a money or price value to integer cents."""
    return int(round(float(value) * 100))


def parse_stat_bucket(raw: dict) -> Optional[StatBucket]:
    """
    Parse one statistics entry from the ledger's JSON schema.

    Returns:
        StatBucket, or None if the entry is malformed
    """
    try:
        total = int(raw["total_trades"])
        wins = int(raw["wins"])
        losses = int(raw["losses"])
        win_rate = raw.get("win_rate")
        return StatBucket(
            expiry_class=ExpiryClass(str(raw["expiry"])),
            strike_offset=float(raw["strike_offset"]),
            side=OptionSide(str(raw["option_type"]).lower()),
            total_trades=total,
            wins=wins,
            losses=losses,
            ties=int(raw.get("ties", 0)),
            win_rate=float(win_rate) if win_rate is not None else (wins / total if total else 0.0),
            last_updated=int(raw.get("last_updated", 0)),
        )
    except (KeyError, ValueError, TypeError) as e:
        logger.warning(f"Skipping malformed statistics entry: {e}")
        return None


class HttpLedgerClient(Ledger):
    """
    Client for a REST ledger service.

    Endpoints:
    - POST /trades                      -> {"accepted": bool, "trade_id": str, "reason": str}
    - POST /trades/{trade_id}/settlement
    - GET  /statistics                  -> [{"expiry", "strike_offset", "option_type", ...}]

    Money and prices travel as integer cents.
    """

    def __init__(self, base_url: str, timeout_s: float = 10.0):
        """
        Initialize the ledger client.

        Args:
            base_url: Ledger API base URL
            timeout_s: Total request timeout
        """
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure HTTP session is created."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def place_trade(self, parameters: TradeParameters) -> PlacementAck:
        session = await self._ensure_session()
        url = f"{self._base_url}/trades"
        body = {
            "option_type": parameters.side.value,
            "strike_offset": parameters.strike_offset,
            "expiry": parameters.expiry_class.value,
            "contract_count": parameters.contract_count,
            "entry_price_cents": to_cents(parameters.entry_price),
        }

        try:
            async with session.post(
                url,
                data=orjson.dumps(body),
                headers={"Content-Type": "application/json"},
            ) as resp:
                text = await resp.text()
                if resp.status >= 500:
                    raise LedgerError(f"Place trade failed: {resp.status} - {text}")
                if resp.status != 200:
                    return PlacementAck(accepted=False, reason=f"HTTP {resp.status}: {text}")
                data = orjson.loads(text)
        except aiohttp.ClientError as e:
            raise LedgerError(f"Place trade request failed: {e}")
        except asyncio.TimeoutError:
            raise LedgerError(f"Place trade timed out after {self._timeout_s}s")
        except orjson.JSONDecodeError as e:
            raise LedgerError(f"Place trade returned invalid JSON: {e}")

        if not isinstance(data, dict):
            raise LedgerError(f"Unexpected placement payload: {type(data).__name__}")

        if data.get("accepted") and data.get("trade_id") is not None:
            return PlacementAck(accepted=True, trade_id=str(data["trade_id"]))
        return PlacementAck(accepted=False, reason=data.get("reason", "rejected"))

    async def record_settlement(self, trade_id: str, result: SettlementResult) -> None:
        session = await self._ensure_session()
        url = f"{self._base_url}/trades/{trade_id}/settlement"
        body = {
            "outcome": result.outcome.value,
            "payout_cents": to_cents(result.payout),
            "profit_cents": to_cents(result.profit),
            "final_price_cents": to_cents(result.final_price),
            "early_close": result.early_close,
            "table_version": result.table_version,
        }

        try:
            async with session.post(
                url,
                data=orjson.dumps(body),
                headers={"Content-Type": "application/json"},
            ) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise LedgerError(f"Record settlement failed: {resp.status} - {text}")
        except aiohttp.ClientError as e:
            raise LedgerError(f"Record settlement request failed: {e}")
        except asyncio.TimeoutError:
            raise LedgerError(f"Record settlement timed out after {self._timeout_s}s")

    async def fetch_statistics(self) -> list[StatBucket]:
        session = await self._ensure_session()
        url = f"{self._base_url}/statistics"

        try:
            async with session.get(url) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise LedgerError(f"Fetch statistics failed: {resp.status} - {text}")
                data = orjson.loads(await resp.read())
        except aiohttp.ClientError as e:
            raise LedgerError(f"Fetch statistics request failed: {e}")
        except asyncio.TimeoutError:
            raise LedgerError(f"Fetch statistics timed out after {self._timeout_s}s")
        except orjson.JSONDecodeError as e:
            raise LedgerError(f"Statistics returned invalid JSON: {e}")

        if isinstance(data, dict):
            data = data.get("statistics", [])
        if not isinstance(data, list):
            raise LedgerError(f"Unexpected statistics payload: {type(data).__name__}")

        buckets = []
        for raw in data:
            if not isinstance(raw, dict):
                logger.warning(f"Skipping non-object statistics entry: {raw!r}")
                continue
            bucket = parse_stat_bucket(raw)
            if bucket is not None:
                buckets.append(bucket)
        return buckets
