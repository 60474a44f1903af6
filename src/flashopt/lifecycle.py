"""
Trade lifecycle controller.

Owns the session's single TradeState and drives it through
IDLE → PLACING → ACTIVE → SETTLING → SETTLED/FAILED → IDLE.

Three independently owned timers exist per trade:
- expiry: one loop.call_later handle, fires once at expires_at
- countdown: a task publishing remaining seconds for display
- result display: returns a SETTLED/FAILED state to IDLE
Cancelling any one of them never touches the others.
"""

import asyncio
import logging
import math
from dataclasses import replace
from typing import Callable, Optional

from .config import EngineConfig
from .errors import ErrorCode, InvalidTradeRequest, LedgerError
from .feed import FeedConnector
from .ledger import Ledger
from .recorder import SettlementRecorder
from .settlement import SettlementEngine
from .types import (
    PlacementAck,
    SettlementResult,
    TradeParameters,
    TradePhase,
    TradeResult,
    TradeState,
)
from .util import now_s

logger = logging.getLogger(__name__)

StateListener = Callable[[TradeState], None]
CountdownListener = Callable[[str, int], None]


class TradeLifecycleController:
    """
    Single writer of the session's TradeState.

    Callers submit requests through place_trade() / close_trade_early()
    and receive TradeResult values; errors are never raised across this
    API.
    """

    def __init__(
        self,
        feed: FeedConnector,
        ledger: Ledger,
        engine: Optional[SettlementEngine] = None,
        recorder: Optional[SettlementRecorder] = None,
        config: Optional[EngineConfig] = None,
    ):
        self._feed = feed
        self._ledger = ledger
        self._engine = engine or SettlementEngine()
        self._recorder = recorder or SettlementRecorder(ledger)
        self._config = config or EngineConfig()

        self._state = TradeState()
        self._last_terminal: Optional[TradeState] = None

        self._expiry_handle: Optional[asyncio.TimerHandle] = None
        self._reset_handle: Optional[asyncio.TimerHandle] = None
        self._countdown_task: Optional[asyncio.Task] = None
        self._settle_task: Optional[asyncio.Task] = None
        self._record_tasks: set[asyncio.Task] = set()

        self._state_listeners: list[StateListener] = []
        self._countdown_listeners: list[CountdownListener] = []

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def state(self) -> TradeState:
        """Copy of the current state."""
        return self._state.copy()

    @property
    def phase(self) -> TradePhase:
        return self._state.phase

    @property
    def last_terminal(self) -> Optional[TradeState]:
        """Copy of the most recent SETTLED or FAILED state."""
        return self._last_terminal.copy() if self._last_terminal else None

    @property
    def has_pending_expiry(self) -> bool:
        return self._expiry_handle is not None

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_countdown_listener(self, listener: CountdownListener) -> None:
        """Listener receives (trade_id, whole seconds remaining)."""
        self._countdown_listeners.append(listener)

    def _notify(self, state: Optional[TradeState] = None) -> None:
        snapshot = (state or self._state).copy()
        for listener in self._state_listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Error in trade state listener: {e}")

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------

    async def place_trade(
        self,
        side,
        strike_offset,
        expiry_class,
        contract_count,
    ) -> TradeResult:
        """
        Request a new trade.

        Rejected without touching state when a trade is already in flight,
        when no live price exists, or when parameters are invalid.
        """
        if self._state.phase.in_flight:
            return TradeResult.failure(
                self._state.copy(),
                ErrorCode.DUPLICATE_PLACEMENT,
                f"Trade already {self._state.phase.value}",
            )

        quote_price = self._feed.current_price()
        if quote_price is None or not self._feed.is_connected():
            return TradeResult.failure(
                self._state.copy(),
                ErrorCode.FEED_UNAVAILABLE,
                "No live price available",
            )

        try:
            params = TradeParameters.create(
                side, strike_offset, expiry_class, contract_count, entry_price=quote_price
            )
        except InvalidTradeRequest as e:
            return TradeResult.failure(
                self._state.copy(), ErrorCode.INVALID_TRADE_REQUEST, str(e)
            )

        # A displayed result from the previous trade is replaced
        self._cancel_reset_timer()
        self._state = TradeState(phase=TradePhase.PLACING, parameters=params)
        self._notify()
        logger.info(
            f"Placing trade: {params.side.value} {params.expiry_class.value} "
            f"offset={params.strike_offset} contracts={params.contract_count}"
        )

        try:
            ack = await self._ledger.place_trade(params)
        except asyncio.CancelledError:
            # Caller gave up; the ledger answer is unknown, so no trade is tracked
            logger.warning("Trade placement cancelled, returning to idle")
            self._state = TradeState()
            self._notify()
            raise
        except LedgerError as e:
            ack = PlacementAck(accepted=False, reason=str(e))
        except Exception as e:
            logger.exception("Unexpected ledger error during placement")
            ack = PlacementAck(accepted=False, reason=f"unexpected: {e!r}")

        if not ack.accepted or not ack.trade_id:
            return self._fail_placement(params, ack.reason or "rejected")

        # Entry is the price at the moment of acceptance
        accepted_at = now_s()
        entry_price = self._feed.current_price() or quote_price
        params = replace(params, entry_price=entry_price)
        duration = self._config.expiry_seconds(params.expiry_class)

        self._state = TradeState(
            phase=TradePhase.ACTIVE,
            trade_id=ack.trade_id,
            parameters=params,
            started_at=accepted_at,
            expires_at=accepted_at + duration,
        )

        loop = asyncio.get_running_loop()
        self._expiry_handle = loop.call_later(duration, self._on_expiry, ack.trade_id)
        self._countdown_task = loop.create_task(
            self._run_countdown(ack.trade_id), name=f"countdown-{ack.trade_id}"
        )

        logger.info(
            f"Trade {ack.trade_id} active: entry={entry_price:.2f} "
            f"strike={params.strike_price:.2f} expires in {duration:.1f}s"
        )
        self._notify()
        return TradeResult.success(self._state.copy())

    def _fail_placement(self, params: TradeParameters, reason: str) -> TradeResult:
        failed = TradeState(
            phase=TradePhase.FAILED,
            parameters=params,
            error=ErrorCode.LEDGER_REJECTED,
            message=reason,
        )
        logger.warning(f"Trade placement rejected: {reason}")
        self._last_terminal = failed
        self._notify(failed)

        # Back to idle with selections cleared
        self._state = TradeState()
        self._notify()
        return TradeResult.failure(failed.copy(), ErrorCode.LEDGER_REJECTED, reason)

    # ------------------------------------------------------------------
    # Expiry and settlement
    # ------------------------------------------------------------------

    def _on_expiry(self, trade_id: str) -> None:
        self._expiry_handle = None
        if self._state.trade_id != trade_id or self._state.phase != TradePhase.ACTIVE:
            return

        self._state.phase = TradePhase.SETTLING
        logger.info(f"Trade {trade_id} expired, settling")
        self._notify()
        self._settle_task = asyncio.get_running_loop().create_task(
            self._settle(trade_id), name=f"settle-{trade_id}"
        )

    async def _settle(self, trade_id: str) -> None:
        state = self._state
        sample = await self._feed.wait_for_price(
            not_before=state.expires_at,
            timeout=self._config.settlement_wait_s,
        )

        if self._state is not state or state.phase != TradePhase.SETTLING:
            return

        self._stop_countdown()

        if sample is None:
            state.phase = TradePhase.FAILED
            state.error = ErrorCode.SETTLEMENT_STALE
            state.message = (
                f"No price at or after expiry within {self._config.settlement_wait_s:.1f}s"
            )
            logger.error(f"Trade {trade_id} unresolved: {state.message}")
            self._finish(state)
            return

        result = self._engine.settle(state.parameters, sample.price)
        state.phase = TradePhase.SETTLED
        state.settlement = result
        logger.info(
            f"Trade {trade_id} settled: {result.outcome.value} final={sample.price:.2f} "
            f"strike={state.parameters.strike_price:.2f} payout={result.payout} "
            f"profit={result.profit}"
        )
        self._finish(state)
        self._record(trade_id, result)

    def close_trade_early(self) -> TradeResult:
        """
        Close the active trade before expiry. The premium is forfeited.
        """
        state = self._state
        if state.phase != TradePhase.ACTIVE:
            return TradeResult.failure(
                state.copy(),
                ErrorCode.NO_ACTIVE_TRADE,
                f"No active trade to close (phase={state.phase.value})",
            )

        self._cancel_expiry_timer()
        self._stop_countdown()

        price = self._feed.current_price() or state.parameters.entry_price
        result = self._engine.early_close(state.parameters, price)
        state.phase = TradePhase.SETTLED
        state.settlement = result
        logger.info(f"Trade {state.trade_id} closed early, premium forfeited")

        self._finish(state)
        self._record(state.trade_id, result)
        return TradeResult.success(state.copy())

    def _finish(self, state: TradeState) -> None:
        """Publish a terminal state and arm the return-to-idle timer."""
        self._last_terminal = state.copy()
        self._notify()
        self._cancel_reset_timer()
        self._reset_handle = asyncio.get_running_loop().call_later(
            self._config.result_display_s, self._reset_to_idle, state.trade_id
        )

    def _reset_to_idle(self, trade_id: Optional[str]) -> None:
        self._reset_handle = None
        if self._state.trade_id != trade_id or self._state.phase.in_flight:
            return
        self._state = TradeState()
        self._notify()

    def _record(self, trade_id: str, result: SettlementResult) -> None:
        """Fire-and-forget ledger recording."""
        task = asyncio.get_running_loop().create_task(
            self._recorder.record(trade_id, result), name=f"record-{trade_id}"
        )
        self._record_tasks.add(task)
        task.add_done_callback(self._record_tasks.discard)

    # ------------------------------------------------------------------
    # Countdown display
    # ------------------------------------------------------------------

    async def _run_countdown(self, trade_id: str) -> None:
        interval = self._config.countdown_interval_s
        while True:
            remaining = self._state.remaining_s(now_s())
            whole = int(math.ceil(remaining))
            for listener in self._countdown_listeners:
                try:
                    listener(trade_id, whole)
                except Exception as e:
                    logger.warning(f"Error in countdown listener: {e}")
            if remaining <= 0 or self._state.trade_id != trade_id:
                return
            await asyncio.sleep(min(interval, remaining))

    # ------------------------------------------------------------------
    # Timer ownership
    # ------------------------------------------------------------------

    def _cancel_expiry_timer(self) -> None:
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None

    def _stop_countdown(self) -> None:
        if self._countdown_task is not None and not self._countdown_task.done():
            self._countdown_task.cancel()
        self._countdown_task = None

    def _cancel_reset_timer(self) -> None:
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None

    async def shutdown(self) -> None:
        """Cancel all timers and wait for pending ledger records."""
        self._cancel_expiry_timer()
        self._stop_countdown()
        self._cancel_reset_timer()

        if self._settle_task is not None and not self._settle_task.done():
            self._settle_task.cancel()
            try:
                await self._settle_task
            except asyncio.CancelledError:
                pass
        self._settle_task = None

        if self._record_tasks:
            await asyncio.gather(*self._record_tasks, return_exceptions=True)
