"""
Portfolio statistics.

LONG results are measured in USD, SHORT results in coins of their own symbol;
the two are reported side by side and never added together. Averaging SHORTs
(internal moves used to lower a LONG's entry price) get their own section and
stay out of the headline numbers.

Only CLOSED trades with an exit price count as results. Split originals are
skipped (their fragments carry the value), and so are parents whose whole
amount was closed through partial-close fragments.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import pandas as pd

from database.models import Trade, TradeStatus, TradeType

from .calculations import Profit, profit_basis, trade_profit

TOP_N = 5

_COLUMNS = [
    "trade_id", "coin_symbol", "trade_type", "averaging", "close_date",
    "profit", "percent", "cost", "fees", "result",
]


# ---------------------------------------------------------------------------
# Result containers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TradeResult:
    trade_id: str
    coin_symbol: str
    trade_type: TradeType
    close_date: Optional[datetime]
    profit: Profit


@dataclass
class LongStats:
    total_profit_usd: float = 0.0
    win_rate: float = 0.0
    avg_profit_usd: float = 0.0
    avg_profit_percent: float = 0.0
    total_trades: int = 0


@dataclass
class ShortStats:
    # symbol -> coins; never summed across symbols
    total_profit_coins: Dict[str, float] = field(default_factory=dict)
    avg_profit_coins: Dict[str, float] = field(default_factory=dict)
    win_rate: float = 0.0
    avg_profit_percent: float = 0.0
    total_trades: int = 0


@dataclass
class AveragingStats:
    total_profit_coins: Dict[str, float] = field(default_factory=dict)
    win_rate: float = 0.0
    avg_profit_percent: float = 0.0
    total_trades: int = 0


@dataclass
class CoinPerformance:
    coin_symbol: str
    trades_count: int
    win_rate: float
    total_profit_usd: float
    total_profit_coins: float
    avg_profit_percent: float
    best_trade: Optional[TradeResult] = None
    worst_trade: Optional[TradeResult] = None


@dataclass(frozen=True)
class CumulativePoint:
    date: str  # YYYY-MM-DD
    profit: float


@dataclass
class FeeTotals:
    standard: float = 0.0
    averaging: float = 0.0

    @property
    def total(self) -> float:
        return self.standard + self.averaging


@dataclass
class TradeCounts:
    open: int = 0
    filled: int = 0
    closed: int = 0


@dataclass
class PortfolioStats:
    total_profit_usd: float = 0.0
    avg_profit_usd: float = 0.0
    avg_profit_percent: float = 0.0
    win_rate: float = 0.0
    total_roi: float = 0.0
    fees: FeeTotals = field(default_factory=FeeTotals)
    counts: TradeCounts = field(default_factory=TradeCounts)
    long: LongStats = field(default_factory=LongStats)
    short: ShortStats = field(default_factory=ShortStats)
    averaging: AveragingStats = field(default_factory=AveragingStats)
    performance_by_coin: List[CoinPerformance] = field(default_factory=list)
    best_trade: Optional[TradeResult] = None
    worst_trade: Optional[TradeResult] = None
    top_profitable: List[TradeResult] = field(default_factory=list)
    top_losing: List[TradeResult] = field(default_factory=list)
    cumulative_profit: List[CumulativePoint] = field(default_factory=list)


@dataclass(frozen=True)
class PositionValue:
    trade_id: str
    coin_symbol: str
    trade_type: TradeType
    amount: float
    current_price: float
    profit: Profit


@dataclass
class OpenPositions:
    unrealized_usd: float = 0.0
    unrealized_coins: Dict[str, float] = field(default_factory=dict)
    positions: List[PositionValue] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def is_result(trade: Trade) -> bool:
    """True for records whose exit is a realized result of its own."""
    return (
        trade.status == TradeStatus.CLOSED
        and not trade.is_split
        and trade.exit_price is not None
    )


def fees_paid(trade: Trade) -> float:
    """Entry fee on the cost basis plus exit fee on the exit value."""
    amount, cost = profit_basis(trade)
    fees = cost * float(trade.entry_fee or 0.0) / 100
    if trade.exit_price is not None:
        fees += amount * float(trade.exit_price) * float(trade.exit_fee or 0.0) / 100
    return fees


def _results_frame(trades: Iterable[Trade]) -> pd.DataFrame:
    rows = []
    for t in trades:
        if not is_result(t):
            continue
        profit = trade_profit(t)
        _, cost = profit_basis(t)
        rows.append({
            "trade_id": t.id,
            "coin_symbol": t.coin_symbol,
            "trade_type": t.trade_type.value,
            "averaging": bool(t.is_averaging_short) and t.trade_type == TradeType.SHORT,
            "close_date": t.close_date,
            "profit": profit.value,
            "percent": profit.percent,
            "cost": cost,
            "fees": fees_paid(t),
            "result": TradeResult(
                trade_id=t.id,
                coin_symbol=t.coin_symbol,
                trade_type=t.trade_type,
                close_date=t.close_date,
                profit=profit,
            ),
        })
    df = pd.DataFrame(rows, columns=_COLUMNS)
    return df.astype({
        "averaging": bool,
        "profit": float,
        "percent": float,
        "cost": float,
        "fees": float,
        "close_date": "datetime64[ns]",
    })


def _win_rate(profits: pd.Series) -> float:
    if profits.empty:
        return 0.0
    return float((profits > 0).mean() * 100)


def _mean(values: pd.Series) -> float:
    return float(values.mean()) if not values.empty else 0.0


def _coins_by_symbol(df: pd.DataFrame, how: str) -> Dict[str, float]:
    if df.empty:
        return {}
    grouped = df.groupby("coin_symbol")["profit"].agg(how)
    return {str(k): float(v) for k, v in grouped.items()}


def _long_stats(longs: pd.DataFrame) -> LongStats:
    total = float(longs["profit"].sum())
    n = len(longs)
    return LongStats(
        total_profit_usd=total,
        win_rate=_win_rate(longs["profit"]),
        avg_profit_usd=total / n if n else 0.0,
        avg_profit_percent=_mean(longs["percent"]),
        total_trades=n,
    )


def _short_stats(shorts: pd.DataFrame) -> ShortStats:
    return ShortStats(
        total_profit_coins=_coins_by_symbol(shorts, "sum"),
        avg_profit_coins=_coins_by_symbol(shorts, "mean"),
        win_rate=_win_rate(shorts["profit"]),
        avg_profit_percent=_mean(shorts["percent"]),
        total_trades=len(shorts),
    )


def _averaging_stats(averaging: pd.DataFrame) -> AveragingStats:
    return AveragingStats(
        total_profit_coins=_coins_by_symbol(averaging, "sum"),
        win_rate=_win_rate(averaging["profit"]),
        avg_profit_percent=_mean(averaging["percent"]),
        total_trades=len(averaging),
    )


def _performance_by_coin(standard: pd.DataFrame) -> List[CoinPerformance]:
    out = []
    for symbol, group in standard.groupby("coin_symbol"):
        longs = group[group["trade_type"] == TradeType.LONG.value]
        shorts = group[group["trade_type"] == TradeType.SHORT.value]
        best = worst = None
        if not longs.empty:
            best = longs.loc[longs["profit"].idxmax(), "result"]
            worst = longs.loc[longs["profit"].idxmin(), "result"]
        out.append(
            CoinPerformance(
                coin_symbol=str(symbol),
                trades_count=len(group),
                win_rate=_win_rate(group["profit"]),
                total_profit_usd=float(longs["profit"].sum()),
                total_profit_coins=float(shorts["profit"].sum()),
                avg_profit_percent=_mean(group["percent"]),
                best_trade=best,
                worst_trade=worst,
            )
        )
    out.sort(key=lambda c: c.total_profit_usd, reverse=True)
    return out


def _cumulative(longs: pd.DataFrame) -> List[CumulativePoint]:
    ordered = longs.dropna(subset=["close_date"]).sort_values(["close_date", "trade_id"], kind="mergesort")
    if ordered.empty:
        return []
    running = ordered["profit"].cumsum()
    dates = ordered["close_date"].dt.strftime("%Y-%m-%d")
    return [CumulativePoint(date=d, profit=float(p)) for d, p in zip(dates, running)]


def _counts(trades: List[Trade]) -> TradeCounts:
    counts = TradeCounts()
    for t in trades:
        if t.is_split or (t.trade_type == TradeType.SHORT and t.is_averaging_short):
            continue
        if t.status == TradeStatus.OPEN:
            counts.open += 1
        elif t.status == TradeStatus.FILLED:
            counts.filled += 1
        elif is_result(t):
            counts.closed += 1
    return counts


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def portfolio_stats(trades: Iterable[Trade]) -> PortfolioStats:
    """Roll up every trade of one portfolio."""
    trades = list(trades)
    df = _results_frame(trades)

    is_long = df["trade_type"] == TradeType.LONG.value
    longs = df[is_long]
    shorts = df[~is_long & ~df["averaging"]]
    averaging = df[~is_long & df["averaging"]]
    standard = df[~df["averaging"]]

    long_stats = _long_stats(longs)
    invested = float(longs["cost"].sum())

    stats = PortfolioStats(
        total_profit_usd=long_stats.total_profit_usd,
        avg_profit_usd=long_stats.avg_profit_usd,
        avg_profit_percent=_mean(standard["percent"]),
        win_rate=_win_rate(standard["profit"]),
        total_roi=(long_stats.total_profit_usd / invested * 100) if invested > 0 else 0.0,
        fees=FeeTotals(
            standard=float(standard["fees"].sum()),
            averaging=float(averaging["fees"].sum()),
        ),
        counts=_counts(trades),
        long=long_stats,
        short=_short_stats(shorts),
        averaging=_averaging_stats(averaging),
        performance_by_coin=_performance_by_coin(standard),
        cumulative_profit=_cumulative(longs),
    )

    if not longs.empty:
        stats.best_trade = longs.loc[longs["profit"].idxmax(), "result"]
        stats.worst_trade = longs.loc[longs["profit"].idxmin(), "result"]
        stats.top_profitable = list(longs.nlargest(TOP_N, "profit")["result"])
        stats.top_losing = list(longs.nsmallest(TOP_N, "profit")["result"])
    return stats


def unrealized_profit(trade: Trade, current_price: float, exit_fee: float = 0.0) -> Optional[Profit]:
    """Profit a FILLED trade would realize if closed now; None otherwise."""
    if trade.status != TradeStatus.FILLED or current_price is None:
        return None
    return trade_profit(trade, exit_price=float(current_price), exit_fee=float(exit_fee or 0.0))


def open_positions(trades: Iterable[Trade], prices: Dict[str, float], exit_fee: float = 0.0) -> OpenPositions:
    """Mark every FILLED trade to the given prices (symbol -> USD).

    Trades whose symbol has no price are left out.
    """
    result = OpenPositions()
    quotes = {str(k).upper(): v for k, v in (prices or {}).items()}
    for t in trades:
        price = quotes.get(str(t.coin_symbol).upper())
        if price is None:
            continue
        profit = unrealized_profit(t, price, exit_fee)
        if profit is None:
            continue
        amount, _ = profit_basis(t)
        result.positions.append(
            PositionValue(
                trade_id=t.id,
                coin_symbol=t.coin_symbol,
                trade_type=t.trade_type,
                amount=amount,
                current_price=float(price),
                profit=profit,
            )
        )
        if t.trade_type == TradeType.SHORT:
            result.unrealized_coins[t.coin_symbol] = result.unrealized_coins.get(t.coin_symbol, 0.0) + profit.value
        else:
            result.unrealized_usd += profit.value
    return result
