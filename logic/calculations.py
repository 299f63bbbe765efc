"""
Profit math for LONG and SHORT positions.

LONG positions are bought with USD, so their profit is measured in USD:
  netExitValue = amount × exitPrice × (100 − exitFee) / 100
  profitUSD    = netExitValue − sumPlusFee

SHORT positions sell coin and buy it back later, so their profit is measured
in coin units:
  buyBackPriceWithFee = buyBackPrice × (100 + buyBackFee) / 100
  coinsBoughtBack     = sumPlusFeeReceived / buyBackPriceWithFee
  profitCoins         = coinsBoughtBack − soldAmount

All fee arguments are percentages (1 means 1%).
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Union

from database.models import TradeType

from .errors import InvariantViolationError


def _finite(**values: float) -> None:
    for name, v in values.items():
        try:
            ok = math.isfinite(float(v))
        except (TypeError, ValueError):
            ok = False
        if not ok:
            raise InvariantViolationError(f"{name} must be a finite number, got {v!r}")


def long_profit_usd(amount: float, sum_plus_fee: float, exit_price: float, exit_fee_percent: float) -> float:
    """USD profit of a LONG position (negative for a loss).

    >>> round(long_profit_usd(0.01, 1010, 110000, 1), 2)
    79.0
    """
    _finite(amount=amount, sum_plus_fee=sum_plus_fee, exit_price=exit_price, exit_fee_percent=exit_fee_percent)
    net_exit_value = amount * exit_price * (100 - exit_fee_percent) / 100
    return net_exit_value - sum_plus_fee


def long_profit_percent(entry_price: float, exit_price: float, entry_fee_percent: float, exit_fee_percent: float) -> float:
    """Price change in percent minus both fees.

    Fees are subtracted additively, not compounded.
    """
    _finite(entry_price=entry_price, exit_price=exit_price,
            entry_fee_percent=entry_fee_percent, exit_fee_percent=exit_fee_percent)
    if entry_price <= 0:
        raise InvariantViolationError(f"entry_price must be positive, got {entry_price}")
    price_change_percent = (exit_price / entry_price - 1) * 100
    return price_change_percent - entry_fee_percent - exit_fee_percent


def coins_bought_back(sum_plus_fee_received: float, buy_back_price: float, buy_back_fee_percent: float) -> float:
    """Coins the SHORT's sale proceeds buy back at the exit price (fee included)."""
    _finite(sum_plus_fee_received=sum_plus_fee_received, buy_back_price=buy_back_price,
            buy_back_fee_percent=buy_back_fee_percent)
    buy_back_price_with_fee = buy_back_price * (100 + buy_back_fee_percent) / 100
    if buy_back_price_with_fee <= 0:
        raise InvariantViolationError(f"buy-back price must be positive, got {buy_back_price}")
    return sum_plus_fee_received / buy_back_price_with_fee


def short_profit_coins(sold_amount: float, sum_plus_fee_received: float, buy_back_price: float, buy_back_fee_percent: float) -> float:
    """Coin profit of a SHORT: positive when the price dropped enough to cover fees."""
    _finite(sold_amount=sold_amount)
    return coins_bought_back(sum_plus_fee_received, buy_back_price, buy_back_fee_percent) - sold_amount


def short_profit_percent(sold_amount: float, coins_back: float) -> float:
    _finite(sold_amount=sold_amount, coins_back=coins_back)
    if sold_amount <= 0:
        raise InvariantViolationError(f"sold_amount must be positive, got {sold_amount}")
    return (coins_back / sold_amount - 1) * 100


def recalculate_long_entry_price(sum_plus_fee: float, new_total_amount: float) -> float:
    """Effective entry price of a LONG whose coin amount moved while its cost stayed put."""
    _finite(sum_plus_fee=sum_plus_fee, new_total_amount=new_total_amount)
    if new_total_amount <= 0:
        raise InvariantViolationError(
            f"cannot recalculate entry price for non-positive amount ({new_total_amount})"
        )
    return sum_plus_fee / new_total_amount


# ---------------------------------------------------------------------------
# Tagged profit values: USD and coin profits never share a number.
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UsdProfit:
    value: float
    percent: float
    kind: str = "usd"


@dataclass(frozen=True)
class CoinProfit:
    symbol: str
    value: float
    percent: float
    kind: str = "coins"


Profit = Union[UsdProfit, CoinProfit]


def profit_basis(trade) -> tuple[float, float]:
    """(amount, sum_plus_fee) that a trade's own exit should be measured on.

    A trade that spawned partial-close fragments only owns its remainder; the
    closed portions are counted through the fragments.
    """
    amount = float(trade.amount or 0.0)
    cost = float(trade.sum_plus_fee or 0.0)
    original = trade.original_amount
    remaining = trade.remaining_amount
    if (
        not trade.is_partial_close
        and original is not None
        and remaining is not None
        and float(original) > 0
        and float(remaining) < float(original)
    ):
        proportion = float(remaining) / float(original)
        return float(remaining), cost * proportion
    return amount, cost


def trade_profit(trade, exit_price: Optional[float] = None, exit_fee: Optional[float] = None) -> Optional[Profit]:
    """Profit of a trade at its own exit (or at the given price), None without a price."""
    price = trade.exit_price if exit_price is None else exit_price
    fee = trade.exit_fee if exit_fee is None else exit_fee
    if price is None:
        return None
    fee = float(fee or 0.0)
    amount, cost = profit_basis(trade)

    if trade.trade_type == TradeType.SHORT:
        back = coins_bought_back(cost, float(price), fee)
        pct = short_profit_percent(amount, back) if amount > 0 else 0.0
        return CoinProfit(symbol=str(trade.coin_symbol), value=back - amount, percent=pct)

    usd = long_profit_usd(amount, cost, float(price), fee)
    pct = long_profit_percent(float(trade.entry_price), float(price), float(trade.entry_fee or 0.0), fee)
    return UsdProfit(value=usd, percent=pct)
