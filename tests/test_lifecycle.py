"""Tests for the trade lifecycle controller."""

import asyncio
from decimal import Decimal

import pytest

from flashopt.errors import ErrorCode
from flashopt.lifecycle import TradeLifecycleController
from flashopt.types import EXPIRY_CLASSES, SettlementOutcome, TradePhase

from helpers import FakeLedger, LiveFeed, fast_config, wait_until


def make_controller(ledger=None, price=100_000.0, connected=True, **config):
    feed = LiveFeed(connected=connected)
    if price is not None:
        feed.ingest(price)
    ledger = ledger or FakeLedger()
    controller = TradeLifecycleController(feed, ledger, config=fast_config(**config))
    return controller, feed, ledger


class TestPlacement:
    """Tests for placement requests."""

    @pytest.mark.asyncio
    async def test_place_trade_becomes_active(self):
        ctl, feed, ledger = make_controller()
        states = []
        ctl.add_state_listener(states.append)

        result = await ctl.place_trade("call", 5, "5s", 2)

        assert result.ok
        assert result.state.phase == TradePhase.ACTIVE
        assert result.state.trade_id == "T1"
        assert result.state.parameters.strike_price == 100_005.0
        assert ctl.has_pending_expiry
        assert [s.phase for s in states] == [TradePhase.PLACING, TradePhase.ACTIVE]
        assert len(ledger.placed) == 1
        await ctl.shutdown()

    @pytest.mark.asyncio
    async def test_entry_price_taken_at_acceptance(self):
        ctl, feed, ledger = make_controller()
        ledger.on_place = lambda: feed.ingest(100_001.0)

        result = await ctl.place_trade("put", 2.5, "10s", 1)

        assert result.state.parameters.entry_price == 100_001.0
        assert result.state.parameters.strike_price == 99_998.5
        # The ledger saw the quote price
        assert ledger.placed[0].entry_price == 100_000.0
        await ctl.shutdown()

    @pytest.mark.asyncio
    async def test_duplicate_placement_rejected(self):
        ctl, feed, ledger = make_controller()
        ledger.gate = asyncio.Event()

        first = asyncio.create_task(ctl.place_trade("call", 5, "5s", 1))
        await wait_until(lambda: ctl.phase == TradePhase.PLACING)

        second = await ctl.place_trade("put", 10, "15s", 3)
        assert not second.ok
        assert second.error == ErrorCode.DUPLICATE_PLACEMENT
        assert ctl.phase == TradePhase.PLACING

        ledger.gate.set()
        assert (await first).ok
        assert len(ledger.placed) == 1

        third = await ctl.place_trade("call", 5, "5s", 1)
        assert third.error == ErrorCode.DUPLICATE_PLACEMENT
        assert ctl.state.trade_id == "T1"
        await ctl.shutdown()

    @pytest.mark.asyncio
    async def test_cancelled_placement_returns_to_idle(self):
        ctl, feed, ledger = make_controller()
        ledger.gate = asyncio.Event()
        states = []
        ctl.add_state_listener(states.append)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(ctl.place_trade("call", 5, "5s", 1), timeout=0.05)

        assert ctl.phase == TradePhase.IDLE
        assert ctl.state.parameters is None
        assert not ctl.has_pending_expiry
        assert [s.phase for s in states] == [TradePhase.PLACING, TradePhase.IDLE]

        ledger.gate.set()
        result = await ctl.place_trade("put", 10, "15s", 2)
        assert result.ok
        assert result.state.phase == TradePhase.ACTIVE
        await ctl.shutdown()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("args", [
        ("call", 7, "5s", 1),
        ("call", 5, "30s", 1),
        ("straddle", 5, "5s", 1),
        ("call", 5, "5s", 0),
        ("call", 5, "5s", 1001),
        ("call", 5, "5s", 1.5),
    ])
    async def test_invalid_request_leaves_state_untouched(self, args):
        ctl, feed, ledger = make_controller()
        result = await ctl.place_trade(*args)
        assert not result.ok
        assert result.error == ErrorCode.INVALID_TRADE_REQUEST
        assert ctl.phase == TradePhase.IDLE
        assert ledger.placed == []

    @pytest.mark.asyncio
    async def test_feed_unavailable_without_price(self):
        ctl, feed, ledger = make_controller(price=None)
        result = await ctl.place_trade("call", 5, "5s", 1)
        assert result.error == ErrorCode.FEED_UNAVAILABLE
        assert ctl.phase == TradePhase.IDLE
        assert ledger.placed == []

    @pytest.mark.asyncio
    async def test_feed_unavailable_when_disconnected(self):
        ctl, feed, ledger = make_controller(connected=False)
        result = await ctl.place_trade("call", 5, "5s", 1)
        assert result.error == ErrorCode.FEED_UNAVAILABLE
        assert ctl.phase == TradePhase.IDLE

    @pytest.mark.asyncio
    async def test_ledger_rejection_returns_to_idle(self):
        ctl, feed, ledger = make_controller(ledger=FakeLedger(accept=False))
        states = []
        ctl.add_state_listener(states.append)

        result = await ctl.place_trade("call", 5, "5s", 1)

        assert not result.ok
        assert result.error == ErrorCode.LEDGER_REJECTED
        assert result.message == "insufficient balance"
        assert ctl.phase == TradePhase.IDLE
        assert ctl.state.parameters is None
        assert ctl.last_terminal.phase == TradePhase.FAILED
        assert [s.phase for s in states] == [
            TradePhase.PLACING, TradePhase.FAILED, TradePhase.IDLE,
        ]
        assert not ctl.has_pending_expiry


class TestSettlement:
    """Tests for expiry-driven settlement."""

    @pytest.mark.asyncio
    async def test_call_wins_at_expiry(self):
        ctl, feed, ledger = make_controller()
        await ctl.place_trade("call", 5, "5s", 2)

        assert await wait_until(lambda: ctl.phase == TradePhase.SETTLING)
        feed.ingest(100_010.0)
        assert await wait_until(lambda: ctl.phase == TradePhase.SETTLED)

        settled = ctl.last_terminal
        assert settled.settlement.outcome == SettlementOutcome.WIN
        assert settled.settlement.payout == Decimal("8.00")
        assert settled.settlement.profit == Decimal("6.00")
        assert settled.settlement.final_price == 100_010.0

        assert await wait_until(lambda: len(ledger.recorded) == 1)
        assert ledger.recorded[0][0] == "T1"
        await ctl.shutdown()

    @pytest.mark.asyncio
    async def test_price_before_expiry_not_used(self):
        """Test a tick that precedes expiry never settles the trade."""
        ctl, feed, ledger = make_controller()
        await ctl.place_trade("call", 5, "5s", 1)
        feed.ingest(100_050.0)

        assert await wait_until(lambda: ctl.phase == TradePhase.SETTLING)
        feed.ingest(99_990.0)
        assert await wait_until(lambda: ctl.phase == TradePhase.SETTLED)
        assert ctl.last_terminal.settlement.outcome == SettlementOutcome.LOSS
        assert ctl.last_terminal.settlement.final_price == 99_990.0
        await ctl.shutdown()

    @pytest.mark.asyncio
    async def test_stale_settlement_fails(self):
        ctl, feed, ledger = make_controller(settlement_wait_s=0.05)
        await ctl.place_trade("put", 5, "5s", 1)

        assert await wait_until(lambda: ctl.phase == TradePhase.FAILED)
        failed = ctl.last_terminal
        assert failed.error == ErrorCode.SETTLEMENT_STALE
        assert failed.settlement is None
        await asyncio.sleep(0.02)
        assert ledger.recorded == []
        await ctl.shutdown()

    @pytest.mark.asyncio
    async def test_ledger_record_failure_keeps_result(self):
        ledger = FakeLedger(record_error="ledger down")
        ctl, feed, ledger = make_controller(ledger=ledger)
        await ctl.place_trade("put", 5, "5s", 3)

        assert await wait_until(lambda: ctl.phase == TradePhase.SETTLING)
        feed.ingest(99_000.0)
        assert await wait_until(lambda: ctl.phase == TradePhase.SETTLED)
        await ctl.shutdown()

        assert ctl.last_terminal.settlement.outcome == SettlementOutcome.WIN
        assert ctl.last_terminal.settlement.payout == Decimal("12.00")
        assert ctl._recorder.metrics["failed_settlements"] == 1

    @pytest.mark.asyncio
    async def test_returns_to_idle_after_display(self):
        ctl, feed, ledger = make_controller()
        await ctl.place_trade("call", 5, "5s", 1)
        assert await wait_until(lambda: ctl.phase == TradePhase.SETTLING)
        feed.ingest(100_000.0)
        assert await wait_until(lambda: ctl.phase == TradePhase.SETTLED)

        assert await wait_until(lambda: ctl.phase == TradePhase.IDLE)
        assert ctl.state.trade_id is None
        assert ctl.last_terminal.phase == TradePhase.SETTLED

    @pytest.mark.asyncio
    async def test_new_trade_replaces_displayed_result(self):
        ctl, feed, ledger = make_controller(result_display_s=5.0)
        await ctl.place_trade("call", 5, "5s", 1)
        assert await wait_until(lambda: ctl.phase == TradePhase.SETTLING)
        feed.ingest(100_000.0)
        assert await wait_until(lambda: ctl.phase == TradePhase.SETTLED)

        result = await ctl.place_trade("put", 5, "5s", 1)
        assert result.ok
        assert result.state.trade_id == "T2"
        await ctl.shutdown()


class TestEarlyClose:
    """Tests for manual close before expiry."""

    @pytest.mark.asyncio
    async def test_early_close_cancels_expiry(self):
        ctl, feed, ledger = make_controller()
        await ctl.place_trade("call", 5, "5s", 4)

        result = ctl.close_trade_early()

        assert result.ok
        assert result.state.phase == TradePhase.SETTLED
        assert result.state.settlement.early_close
        assert result.state.settlement.payout == Decimal("0")
        assert result.state.settlement.profit == Decimal("-4")
        assert not ctl.has_pending_expiry

        # Expiry would have fired by now
        await asyncio.sleep(0.1)
        feed.ingest(100_100.0)
        await asyncio.sleep(0.02)
        assert ctl.last_terminal.settlement.early_close
        assert len(ledger.recorded) == 1
        await ctl.shutdown()

    def test_close_without_trade(self):
        ctl, feed, ledger = make_controller()
        result = ctl.close_trade_early()
        assert not result.ok
        assert result.error == ErrorCode.NO_ACTIVE_TRADE


class TestTimers:
    """Tests for independent timer ownership."""

    @pytest.mark.asyncio
    async def test_countdown_reports_remaining(self):
        ctl, feed, ledger = make_controller(
            expiry_durations={ec: 0.1 for ec in EXPIRY_CLASSES},
        )
        ticks = []
        ctl.add_countdown_listener(lambda trade_id, remaining: ticks.append(remaining))
        await ctl.place_trade("call", 5, "5s", 1)

        assert await wait_until(lambda: ticks and ticks[-1] == 0)
        assert ticks[0] == 1
        assert ctl.phase == TradePhase.SETTLING
        await ctl.shutdown()

    @pytest.mark.asyncio
    async def test_stopping_countdown_does_not_move_expiry(self):
        ctl, feed, ledger = make_controller()

        def broken(trade_id, remaining):
            raise RuntimeError("display failure")

        ctl.add_countdown_listener(broken)
        await ctl.place_trade("call", 5, "5s", 1)
        expires_at = ctl.state.expires_at

        ctl._stop_countdown()
        assert ctl.has_pending_expiry

        assert await wait_until(lambda: ctl.phase == TradePhase.SETTLING)
        assert ctl.state.expires_at == expires_at
        await ctl.shutdown()
