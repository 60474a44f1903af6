"""Tests for the settlement engine and payout table."""

from decimal import Decimal

import pytest

from flashopt.settlement import (
    PAYOUT_TABLE_V1,
    PAYOUT_TABLE_VERSION,
    SettlementEngine,
    is_win,
)
from flashopt.types import (
    ExpiryClass,
    OptionSide,
    SettlementOutcome,
    TradeParameters,
    EXPIRY_CLASSES,
    STRIKE_OFFSETS,
)


def make_params(side="call", offset=5, expiry="5s", count=1, entry=100_000.0):
    return TradeParameters.create(side, offset, expiry, count, entry_price=entry)


class TestPayoutTable:
    """The table is priced economics and must match exactly."""

    def test_exact_values(self):
        """Test every multiplier against the published table."""
        expected = {
            "5s": ["3.33", "4.00", "10.00", "20.00"],
            "10s": ["2.86", "3.33", "6.67", "13.33"],
            "15s": ["2.50", "2.86", "5.00", "10.00"],
        }
        engine = SettlementEngine()
        for expiry, values in expected.items():
            for offset, value in zip(STRIKE_OFFSETS, values):
                assert engine.multiplier(ExpiryClass(expiry), offset) == Decimal(value)

    def test_every_cell_priced(self):
        """Test the table covers the full expiry x strike grid."""
        for ec in EXPIRY_CLASSES:
            assert set(PAYOUT_TABLE_V1[ec]) == set(STRIKE_OFFSETS)

    def test_winning_payout_fidelity(self):
        """Test payout = contracts x multiplier for every cell and both sides."""
        engine = SettlementEngine()
        for ec in EXPIRY_CLASSES:
            for offset in STRIKE_OFFSETS:
                for side, final in ((OptionSide.CALL, 100_100.0), (OptionSide.PUT, 99_900.0)):
                    params = make_params(side, offset, ec, count=7)
                    result = engine.settle(params, final)
                    assert result.outcome == SettlementOutcome.WIN
                    assert result.payout == 7 * PAYOUT_TABLE_V1[ec][offset]
                    assert result.profit == result.payout - Decimal(7)

    def test_losing_payout_is_zero(self):
        """Test losses pay exactly zero and cost the full premium."""
        engine = SettlementEngine()
        for ec in EXPIRY_CLASSES:
            for offset in STRIKE_OFFSETS:
                result = engine.settle(make_params("call", offset, ec, count=3), 99_000.0)
                assert result.outcome == SettlementOutcome.LOSS
                assert result.payout == Decimal("0")
                assert result.profit == Decimal("-3")


class TestSettle:
    """Tests for win/loss determination."""

    def test_example_scenario_win(self):
        """Test entry 100000, call, +5, 5s settles a win at 100010."""
        params = make_params("call", 5, "5s", count=2)
        assert params.strike_price == 100_005.0
        result = SettlementEngine().settle(params, 100_010.0)
        assert result.outcome == SettlementOutcome.WIN
        assert result.payout == Decimal("8.00")
        assert result.profit == Decimal("6.00")
        assert result.final_price == 100_010.0
        assert result.table_version == PAYOUT_TABLE_VERSION

    def test_example_scenario_loss(self):
        """Test the same trade settles a loss at the entry price."""
        params = make_params("call", 5, "5s", count=2)
        result = SettlementEngine().settle(params, 100_000.0)
        assert result.outcome == SettlementOutcome.LOSS
        assert result.payout == Decimal("0")
        assert result.profit == Decimal("-2")

    def test_put_strike_below_entry(self):
        """Test put strike is entry minus offset."""
        params = make_params("put", 10, "10s")
        assert params.strike_price == 99_990.0
        engine = SettlementEngine()
        assert engine.settle(params, 99_989.99).outcome == SettlementOutcome.WIN
        assert engine.settle(params, 99_990.01).outcome == SettlementOutcome.LOSS

    def test_tie_is_loss_for_both_sides(self):
        """Test exact equality with the strike is a loss for call and put."""
        engine = SettlementEngine()
        call = make_params("call", 2.5, "15s")
        put = make_params("put", 2.5, "15s")
        assert engine.settle(call, call.strike_price).outcome == SettlementOutcome.LOSS
        assert engine.settle(put, put.strike_price).outcome == SettlementOutcome.LOSS

    @pytest.mark.parametrize("final", [100_005.01, 100_050.0, 250_000.0])
    def test_call_above_strike_wins(self, final):
        assert is_win(OptionSide.CALL, 100_005.0, final)
        assert not is_win(OptionSide.PUT, 100_005.0, final)

    @pytest.mark.parametrize("final", [100_004.99, 99_000.0, 1.0])
    def test_put_below_strike_wins(self, final):
        assert is_win(OptionSide.PUT, 100_005.0, final)
        assert not is_win(OptionSide.CALL, 100_005.0, final)

    def test_idempotent(self):
        """Test identical inputs give identical results."""
        engine = SettlementEngine()
        params = make_params("put", 15, "10s", count=13)
        first = engine.settle(params, 99_980.0)
        second = engine.settle(params, 99_980.0)
        assert first == second
        assert str(first.payout) == str(second.payout)
        assert first.payout == Decimal("173.29")

    def test_profit_invariant(self):
        """Test profit == payout - premium on both outcomes."""
        engine = SettlementEngine()
        params = make_params("call", 10, "5s", count=4)
        for final in (100_011.0, 100_000.0):
            result = engine.settle(params, final)
            assert result.profit == result.payout - result.premium
            assert result.premium == Decimal(4)


class TestEarlyCloseAndQuote:
    """Tests for early close, quotes and validation."""

    def test_early_close_forfeits_premium(self):
        result = SettlementEngine().early_close(make_params(count=5), 100_020.0)
        assert result.outcome == SettlementOutcome.LOSS
        assert result.payout == Decimal("0")
        assert result.profit == Decimal("-5")
        assert result.early_close is True

    def test_quote(self):
        quote = SettlementEngine().quote(make_params("call", 15, "5s", count=3))
        assert quote.multiplier == Decimal("20.00")
        assert quote.payout_if_win == Decimal("60.00")
        assert quote.profit_if_win == Decimal("57.00")
        assert quote.loss_if_lose == Decimal("-3")

    def test_trade_cost_btc(self):
        engine = SettlementEngine()
        assert engine.trade_cost_btc(50, 100_000.0) == pytest.approx(0.0005)
        with pytest.raises(ValueError):
            engine.trade_cost_btc(1, 0.0)

    def test_validate_trade_balance(self):
        engine = SettlementEngine()
        params = make_params(count=100)
        ok = engine.validate_trade(params, balance_btc=0.01, btc_price=100_000.0)
        assert ok.valid
        assert ok.trade_cost_btc == pytest.approx(0.001)

        short = engine.validate_trade(params, balance_btc=0.0005, btc_price=100_000.0)
        assert not short.valid
        assert "Insufficient balance" in short.error

    def test_validate_without_balance(self):
        assert SettlementEngine().validate_trade(make_params()).valid
