"""
Settlement engine.

Pure functions of (TradeParameters, final price) against a versioned payout
table. One contract costs one unit of premium; the table holds the total
return per contract on a win.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .types import (
    ExpiryClass,
    OptionSide,
    SettlementOutcome,
    SettlementResult,
    TradeParameters,
    MAX_CONTRACTS,
    STRIKE_OFFSETS,
)

logger = logging.getLogger(__name__)

PAYOUT_TABLE_VERSION = "2024-payout-v1"

# Total return per contract on a win, by expiry and strike offset.
# These are the product's priced economics: do not round or recompute.
PAYOUT_TABLE_V1: dict[ExpiryClass, dict[float, Decimal]] = {
    ExpiryClass.S5: {
        2.5: Decimal("3.33"),
        5.0: Decimal("4.00"),
        10.0: Decimal("10.00"),
        15.0: Decimal("20.00"),
    },
    ExpiryClass.S10: {
        2.5: Decimal("2.86"),
        5.0: Decimal("3.33"),
        10.0: Decimal("6.67"),
        15.0: Decimal("13.33"),
    },
    ExpiryClass.S15: {
        2.5: Decimal("2.50"),
        5.0: Decimal("2.86"),
        10.0: Decimal("5.00"),
        15.0: Decimal("10.00"),
    },
}

PREMIUM_PER_CONTRACT = Decimal("1")


@dataclass(frozen=True, slots=True)
class PayoutQuote:
    """Potential outcome of a trade, shown before placement."""
    premium: Decimal
    payout_if_win: Decimal
    profit_if_win: Decimal
    loss_if_lose: Decimal
    multiplier: Decimal


@dataclass(frozen=True, slots=True)
class TradeValidation:
    """Result of a pre-trade validation."""
    valid: bool
    trade_cost_btc: Optional[float] = None
    error: Optional[str] = None


def is_win(side: OptionSide, strike_price: float, final_price: float) -> bool:
    """Win predicate. Exact equality is never a win."""
    if side == OptionSide.CALL:
        return final_price > strike_price
    return final_price < strike_price


class SettlementEngine:
    """
    Computes outcome, payout and profit for a trade.

    Stateless apart from the immutable table it is built with; calling
    settle() twice with the same inputs returns equal results.
    """

    def __init__(
        self,
        table: Optional[dict[ExpiryClass, dict[float, Decimal]]] = None,
        table_version: str = PAYOUT_TABLE_VERSION,
        premium_per_contract: Decimal = PREMIUM_PER_CONTRACT,
    ):
        self._table = table if table is not None else PAYOUT_TABLE_V1
        self.table_version = table_version
        self.premium_per_contract = premium_per_contract

    def multiplier(self, expiry_class: ExpiryClass, strike_offset: float) -> Decimal:
        """
        Win multiplier for a table cell.

        Raises:
            KeyError: if the combination is not priced
        """
        return self._table[expiry_class][float(strike_offset)]

    def premium_for(self, contract_count: int) -> Decimal:
        return self.premium_per_contract * contract_count

    def settle(self, parameters: TradeParameters, final_price: float) -> SettlementResult:
        """Settle a trade at expiry."""
        premium = self.premium_for(parameters.contract_count)

        if is_win(parameters.side, parameters.strike_price, final_price):
            payout = self.multiplier(parameters.expiry_class, parameters.strike_offset) * (
                parameters.contract_count
            )
            outcome = SettlementOutcome.WIN
        else:
            payout = Decimal("0")
            outcome = SettlementOutcome.LOSS

        return SettlementResult(
            outcome=outcome,
            final_price=final_price,
            payout=payout,
            profit=payout - premium,
            premium=premium,
            table_version=self.table_version,
        )

    def early_close(self, parameters: TradeParameters, price: float) -> SettlementResult:
        """Result of a manual close before expiry: premium forfeited."""
        premium = self.premium_for(parameters.contract_count)
        return SettlementResult(
            outcome=SettlementOutcome.LOSS,
            final_price=price,
            payout=Decimal("0"),
            profit=-premium,
            premium=premium,
            table_version=self.table_version,
            early_close=True,
        )

    def quote(self, parameters: TradeParameters) -> PayoutQuote:
        premium = self.premium_for(parameters.contract_count)
        multiplier = self.multiplier(parameters.expiry_class, parameters.strike_offset)
        payout = multiplier * parameters.contract_count
        return PayoutQuote(
            premium=premium,
            payout_if_win=payout,
            profit_if_win=payout - premium,
            loss_if_lose=-premium,
            multiplier=multiplier,
        )

    def trade_cost_btc(self, contract_count: int, btc_price: float) -> float:
        """Premium converted to BTC at the given price."""
        if btc_price <= 0:
            raise ValueError("btc_price must be positive")
        return float(self.premium_for(contract_count)) / btc_price

    def validate_trade(
        self,
        parameters: TradeParameters,
        balance_btc: Optional[float] = None,
        btc_price: Optional[float] = None,
    ) -> TradeValidation:
        """
        Check a trade against the table and, optionally, a BTC balance.

        Args:
            parameters: Trade to check
            balance_btc: Available balance; skipped when None
            btc_price: Price used to convert the premium to BTC
        """
        if parameters.contract_count < 1 or parameters.contract_count > MAX_CONTRACTS:
            return TradeValidation(False, error=f"Contract count must be between 1 and {MAX_CONTRACTS}")

        if parameters.strike_offset not in STRIKE_OFFSETS:
            return TradeValidation(False, error=f"Unknown strike offset {parameters.strike_offset}")

        try:
            self.multiplier(parameters.expiry_class, parameters.strike_offset)
        except KeyError:
            return TradeValidation(False, error="No payout for this expiry/strike combination")

        price = btc_price if btc_price is not None else parameters.entry_price
        cost = self.trade_cost_btc(parameters.contract_count, price)

        if balance_btc is not None and cost > balance_btc:
            return TradeValidation(
                False,
                trade_cost_btc=cost,
                error=f"Insufficient balance. Required: {cost:.8f} BTC",
            )

        return TradeValidation(True, trade_cost_btc=cost)
