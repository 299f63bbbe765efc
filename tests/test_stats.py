from datetime import datetime

import pytest

from database.models import TradeStatus, TradeType
from logic.calculations import CoinProfit, UsdProfit
from logic.stats import fees_paid, open_positions, portfolio_stats, unrealized_profit


def _closed_long(factory, tid, exit_price, day, symbol="BTC", **kw):
    return factory(
        id=tid,
        coin_symbol=symbol,
        status=TradeStatus.CLOSED,
        exit_price=exit_price,
        exit_fee=1.0,
        close_date=datetime(2025, 1, day),
        **kw,
    )


def _closed_short(factory, tid, exit_price, symbol="BTC", **kw):
    return factory(
        id=tid,
        coin_symbol=symbol,
        trade_type=TradeType.SHORT,
        status=TradeStatus.CLOSED,
        entry_price=110000.0,
        amount=0.5,
        sum_plus_fee=54450.0,
        exit_price=exit_price,
        exit_fee=1.0,
        close_date=datetime(2025, 1, 20),
        **kw,
    )


def test_empty_portfolio():
    s = portfolio_stats([])
    assert s.total_profit_usd == 0
    assert s.win_rate == 0
    assert s.short.total_profit_coins == {}
    assert s.best_trade is None
    assert s.top_profitable == []
    assert s.cumulative_profit == []
    assert s.counts.open == s.counts.filled == s.counts.closed == 0


def test_long_totals_and_win_rate(trade_factory):
    trades = [
        _closed_long(trade_factory, "a", 110000.0, 3),  # +79
        _closed_long(trade_factory, "b", 90000.0, 5),  # -119
        _closed_long(trade_factory, "c", 120000.0, 4),  # +178
    ]
    s = portfolio_stats(trades)

    assert s.long.total_trades == 3
    assert s.long.total_profit_usd == pytest.approx(138.0)
    assert s.long.win_rate == pytest.approx(200 / 3)
    assert s.long.avg_profit_usd == pytest.approx(46.0)
    assert s.total_roi == pytest.approx(138.0 / 3030 * 100)

    assert s.best_trade.trade_id == "c"
    assert s.worst_trade.trade_id == "b"
    assert [r.trade_id for r in s.top_profitable] == ["c", "a", "b"]
    assert [r.trade_id for r in s.top_losing] == ["b", "a", "c"]

    # ordered by close date: a (3rd), c (4th), b (5th)
    assert [p.date for p in s.cumulative_profit] == ["2025-01-03", "2025-01-04", "2025-01-05"]
    assert [p.profit for p in s.cumulative_profit] == pytest.approx([79.0, 257.0, 138.0])


def test_short_profit_stays_in_coins_per_symbol(trade_factory):
    trades = [
        _closed_short(trade_factory, "s1", 100000.0),
        _closed_short(trade_factory, "s2", 100000.0),
        _closed_short(trade_factory, "e1", 100000.0, symbol="ETH"),
        _closed_long(trade_factory, "l1", 110000.0, 3),
    ]
    s = portfolio_stats(trades)

    per_trade = 54450 / 101000 - 0.5
    assert set(s.short.total_profit_coins) == {"BTC", "ETH"}
    assert s.short.total_profit_coins["BTC"] == pytest.approx(2 * per_trade)
    assert s.short.total_profit_coins["ETH"] == pytest.approx(per_trade)
    assert s.short.avg_profit_coins["BTC"] == pytest.approx(per_trade)
    assert s.short.win_rate == pytest.approx(100.0)
    assert s.short.total_trades == 3
    # USD totals only carry LONG results.
    assert s.total_profit_usd == pytest.approx(79.0)
    assert all(isinstance(r.profit, UsdProfit) for r in s.top_profitable)


def test_averaging_shorts_are_reported_separately(trade_factory):
    trades = [
        _closed_short(trade_factory, "s1", 100000.0),
        _closed_short(trade_factory, "avg", 120000.0, is_averaging_short=True),
    ]
    s = portfolio_stats(trades)
    assert s.short.total_trades == 1
    assert s.averaging.total_trades == 1
    assert s.averaging.total_profit_coins["BTC"] < 0
    assert s.averaging.win_rate == 0
    assert s.fees.averaging > 0
    assert s.fees.total == pytest.approx(s.fees.standard + s.fees.averaging)
    assert s.counts.closed == 1


def test_partially_closed_parent_is_not_double_counted(trade_factory):
    # 1.0 BTC for 100000; 0.4 closed through a fragment, the remaining 0.6 closed on the parent.
    parent = trade_factory(
        id="p",
        amount=1.0,
        sum_plus_fee=100000.0,
        remaining_amount=0.6,
        status=TradeStatus.CLOSED,
        exit_price=110000.0,
        exit_fee=0.0,
        close_date=datetime(2025, 1, 9),
    )
    fragment = trade_factory(
        id="f",
        amount=0.4,
        sum_plus_fee=40000.0,
        original_amount=1.0,
        remaining_amount=0.0,
        is_partial_close=True,
        closed_amount=0.4,
        parent_trade_id="p",
        status=TradeStatus.CLOSED,
        exit_price=110000.0,
        exit_fee=0.0,
        close_date=datetime(2025, 1, 8),
    )
    s = portfolio_stats([parent, fragment])
    # 1.0 BTC bought for 100000 and sold for 110000 in total.
    assert s.total_profit_usd == pytest.approx(10000.0)


def test_split_originals_and_exhausted_parents_are_skipped(trade_factory):
    original = trade_factory(id="o", status=TradeStatus.CLOSED, is_split=True, close_date=datetime(2025, 1, 2))
    exhausted = trade_factory(id="x", status=TradeStatus.CLOSED, remaining_amount=0.0)
    fragment = _closed_long(trade_factory, "frag", 110000.0, 3, split_from_trade_id="o")
    s = portfolio_stats([original, exhausted, fragment])
    assert s.long.total_trades == 1
    assert s.counts.closed == 1


def test_counts_by_status(trade_factory):
    trades = [
        trade_factory(id="o1", status=TradeStatus.OPEN),
        trade_factory(id="f1"),
        trade_factory(id="f2"),
        _closed_long(trade_factory, "c1", 110000.0, 3),
    ]
    s = portfolio_stats(trades)
    assert (s.counts.open, s.counts.filled, s.counts.closed) == (1, 2, 1)


def test_performance_by_coin_sorted_by_usd(trade_factory):
    trades = [
        _closed_long(trade_factory, "b1", 90000.0, 3),
        _closed_long(trade_factory, "e1", 110000.0, 4, symbol="ETH"),
        _closed_short(trade_factory, "es", 100000.0, symbol="ETH"),
    ]
    s = portfolio_stats(trades)
    assert [c.coin_symbol for c in s.performance_by_coin] == ["ETH", "BTC"]
    eth = s.performance_by_coin[0]
    assert eth.trades_count == 2
    assert eth.total_profit_usd == pytest.approx(79.0)
    assert eth.total_profit_coins == pytest.approx(54450 / 101000 - 0.5)
    assert eth.best_trade.trade_id == "e1"


def test_fees_paid(trade_factory):
    t = _closed_long(trade_factory, "a", 110000.0, 3)
    # 1% of 1010 entry + 1% of 0.01 × 110000 exit
    assert fees_paid(t) == pytest.approx(10.1 + 11.0)


def test_unrealized_profit(trade_factory):
    long_ = trade_factory()
    profit = unrealized_profit(long_, 110000.0, 1.0)
    assert isinstance(profit, UsdProfit)
    assert profit.value == pytest.approx(79.0)
    assert unrealized_profit(trade_factory(status=TradeStatus.OPEN), 110000.0) is None


def test_open_positions(trade_factory):
    trades = [
        trade_factory(id="l1"),
        trade_factory(
            id="s1", trade_type=TradeType.SHORT, amount=0.5, sum_plus_fee=54450.0, entry_price=110000.0,
        ),
        trade_factory(id="e1", coin_symbol="ETH"),
    ]
    result = open_positions(trades, {"btc": 110000.0}, exit_fee=1.0)
    assert {p.trade_id for p in result.positions} == {"l1", "s1"}
    assert result.unrealized_usd == pytest.approx(79.0)
    short_profit = next(p.profit for p in result.positions if p.trade_id == "s1")
    assert isinstance(short_profit, CoinProfit)
    assert result.unrealized_coins["BTC"] == pytest.approx(54450 / 111100 - 0.5)
