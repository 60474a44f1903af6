"""
Settlement recording.

Forwards locally computed settlement results to the ledger. Failures are
logged and kept in history; they never change the result shown to the user.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional

from .errors import LedgerError
from .ledger import Ledger
from .types import SettlementOutcome, SettlementResult
from .util import wall_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SettlementRecord:
    """One attempt to record a settlement."""
    trade_id: str
    result: SettlementResult
    wall_ts_ms: int
    success: bool
    error: Optional[str] = None


class SettlementRecorder:
    """
    Records settlements to the ledger, one attempt per trade.

    Keeps a bounded history of attempts for metrics.
    """

    def __init__(self, ledger: Ledger, history_size: int = 1000):
        self._ledger = ledger
        self._history: deque[SettlementRecord] = deque(maxlen=history_size)
        self._total = 0
        self._successful = 0

    @staticmethod
    def validate(trade_id: str, result: SettlementResult) -> Optional[str]:
        """Return an error message if the result is not recordable."""
        if not trade_id:
            return "missing trade id"
        if result.outcome not in (SettlementOutcome.WIN, SettlementOutcome.LOSS):
            return f"invalid outcome {result.outcome!r}"
        if result.payout < 0:
            return f"invalid payout {result.payout}"
        if result.profit != result.payout - result.premium:
            return "profit does not equal payout minus premium"
        if not result.final_price > 0:
            return f"invalid final price {result.final_price}"
        return None

    async def record(self, trade_id: str, result: SettlementResult) -> bool:
        """
        Record a settlement. Never raises.

        Returns:
            True if the ledger acknowledged the record
        """
        self._total += 1
        error = self.validate(trade_id, result)

        if error is None:
            try:
                await self._ledger.record_settlement(trade_id, result)
            except LedgerError as e:
                error = str(e)
            except Exception as e:
                error = f"unexpected: {e!r}"

        success = error is None
        self._history.append(SettlementRecord(
            trade_id=trade_id,
            result=result,
            wall_ts_ms=wall_ms(),
            success=success,
            error=error,
        ))

        if success:
            self._successful += 1
            logger.info(f"Settlement recorded: trade={trade_id} outcome={result.outcome.value}")
        else:
            logger.warning(
                f"Settlement recording failed for trade {trade_id}: {error} "
                "(local result stands)"
            )
        return success

    def history(self, limit: int = 100) -> list[SettlementRecord]:
        """Most recent records first."""
        return list(reversed(self._history))[:limit]

    @property
    def metrics(self) -> dict:
        failed = self._total - self._successful
        last = self._history[-1].wall_ts_ms if self._history else None
        return {
            "total_settlements": self._total,
            "successful_settlements": self._successful,
            "failed_settlements": failed,
            "success_rate": self._successful / max(1, self._total),
            "last_settlement_ms": last,
        }
