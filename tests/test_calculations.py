import math

import pytest

from database.models import TradeStatus, TradeType
from logic.calculations import (
    CoinProfit,
    UsdProfit,
    coins_bought_back,
    long_profit_percent,
    long_profit_usd,
    profit_basis,
    recalculate_long_entry_price,
    short_profit_coins,
    short_profit_percent,
    trade_profit,
)
from logic.errors import InvariantViolationError


def test_long_profit_usd_scenario():
    assert long_profit_usd(0.01, 1010, 110000, 1) == pytest.approx(79.0)


def test_long_loss_is_negative():
    # 0.01 × 90000 × 0.99 = 891
    assert long_profit_usd(0.01, 1010, 90000, 1) == pytest.approx(-119.0)


def test_long_profit_percent_subtracts_fees_additively():
    assert long_profit_percent(100000, 110000, 1, 1) == pytest.approx(8.0)
    assert long_profit_percent(100000, 100000, 0.5, 0.5) == pytest.approx(-1.0)


def test_short_profit_coins_scenario():
    # buy-back price with fee = 101000
    assert coins_bought_back(54450, 100000, 1) == pytest.approx(54450 / 101000)
    assert short_profit_coins(0.5, 54450, 100000, 1) == pytest.approx(0.0391, abs=1e-4)


def test_short_profit_percent():
    assert short_profit_percent(0.5, 0.55) == pytest.approx(10.0)
    with pytest.raises(InvariantViolationError):
        short_profit_percent(0, 0.1)


@pytest.mark.parametrize(
    "amount,cost,exit_price,fee",
    [
        (0.01, 1010, 110000, 1),
        (0.01, 1010, 101000, 0),
        (2.5, 5000, 1999, 0.1),
        (1.0, 100, 100, 0),
        (0.3, 30000, 120000, 0.6),
    ],
)
def test_long_profit_sign_matches_exit_value(amount, cost, exit_price, fee):
    profit = long_profit_usd(amount, cost, exit_price, fee)
    net_exit = exit_price * amount * (100 - fee) / 100
    assert (profit > 0) == (net_exit > cost)


@pytest.mark.parametrize(
    "sold,proceeds,price,fee",
    [
        (0.5, 54450, 100000, 1),
        (0.5, 54450, 110000, 1),
        (1.0, 2000, 2000, 0),
        (3.0, 9000, 2900, 0.25),
    ],
)
def test_short_profit_sign_matches_coins_back(sold, proceeds, price, fee):
    profit = short_profit_coins(sold, proceeds, price, fee)
    back = proceeds / (price * (100 + fee) / 100)
    assert (profit > 0) == (back > sold)


def test_recalculate_entry_price():
    assert recalculate_long_entry_price(101000, 1.0391) == pytest.approx(97199.5, rel=1e-4)


@pytest.mark.parametrize("amount", [0, -1.0])
def test_recalculate_entry_price_rejects_non_positive_amount(amount):
    with pytest.raises(InvariantViolationError):
        recalculate_long_entry_price(1000, amount)


def test_non_finite_inputs_fail_loudly():
    with pytest.raises(InvariantViolationError):
        long_profit_usd(math.nan, 1010, 110000, 1)
    with pytest.raises(InvariantViolationError):
        coins_bought_back(1000, math.inf, 1)


def test_profit_basis_uses_remaining_share(trade_factory):
    t = trade_factory(amount=1.0, sum_plus_fee=1000.0, remaining_amount=0.4)
    amount, cost = profit_basis(t)
    assert amount == pytest.approx(0.4)
    assert cost == pytest.approx(400.0)


def test_profit_basis_of_fragment_is_its_own_amount(trade_factory):
    fragment = trade_factory(
        amount=0.6, sum_plus_fee=600.0, original_amount=1.0, remaining_amount=0.0, is_partial_close=True,
    )
    assert profit_basis(fragment) == (0.6, 600.0)


def test_trade_profit_long_is_usd(trade_factory):
    t = trade_factory(status=TradeStatus.CLOSED, exit_price=110000.0, exit_fee=1.0)
    profit = trade_profit(t)
    assert isinstance(profit, UsdProfit)
    assert profit.kind == "usd"
    assert profit.value == pytest.approx(79.0)
    assert profit.percent == pytest.approx(8.0)


def test_trade_profit_short_is_coins(trade_factory):
    t = trade_factory(
        trade_type=TradeType.SHORT,
        status=TradeStatus.CLOSED,
        entry_price=110000.0,
        amount=0.5,
        sum_plus_fee=54450.0,
        exit_price=100000.0,
        exit_fee=1.0,
    )
    profit = trade_profit(t)
    assert isinstance(profit, CoinProfit)
    assert profit.kind == "coins"
    assert profit.symbol == "BTC"
    assert profit.value == pytest.approx(0.0391, abs=1e-4)
    assert profit.percent == pytest.approx((54450 / 101000 / 0.5 - 1) * 100)


def test_trade_profit_without_price_is_none(trade_factory):
    assert trade_profit(trade_factory()) is None
    assert trade_profit(trade_factory(), exit_price=110000.0, exit_fee=1.0).value == pytest.approx(79.0)
