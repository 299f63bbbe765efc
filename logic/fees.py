"""Exchange maker-fee tiers by 30-day trading volume.

The accounting engines never look fees up themselves; callers (the API)
use this module to suggest a fee percentage and pass it in.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from database.models import TradeStatus


@dataclass(frozen=True)
class FeeLevel:
    level: str
    maker_fee: float  # percent
    min_volume: float  # USD


@dataclass(frozen=True)
class NextFeeLevel:
    level: str
    min_volume: float
    remaining: float


@dataclass(frozen=True)
class FeeCalculation:
    level: str
    fee_percent: float
    current_volume: float
    next_level: Optional[NextFeeLevel]


FEE_LEVELS: tuple[FeeLevel, ...] = (
    FeeLevel("Intro 1", 0.600, 0),
    FeeLevel("Intro 2", 0.400, 10_000),
    FeeLevel("Advanced 1", 0.250, 25_000),
    FeeLevel("Advanced 2", 0.125, 75_000),
    FeeLevel("Advanced 3", 0.075, 250_000),
    FeeLevel("VIP 1", 0.060, 500_000),
    FeeLevel("VIP 2", 0.050, 1_000_000),
    FeeLevel("VIP 3", 0.040, 5_000_000),
    FeeLevel("VIP 4", 0.025, 10_000_000),
    FeeLevel("VIP 5", 0.010, 20_000_000),
    FeeLevel("VIP 6", 0.000, 50_000_000),
    FeeLevel("VIP 7", 0.000, 100_000_000),
    FeeLevel("VIP 8", 0.000, 250_000_000),
)


def fee_level(volume: float) -> FeeCalculation:
    volume = float(volume or 0.0)
    index = 0
    for i, lvl in enumerate(FEE_LEVELS):
        if volume >= lvl.min_volume:
            index = i
    current = FEE_LEVELS[index]

    nxt = None
    if index < len(FEE_LEVELS) - 1:
        n = FEE_LEVELS[index + 1]
        nxt = NextFeeLevel(level=n.level, min_volume=n.min_volume, remaining=n.min_volume - volume)
    return FeeCalculation(level=current.level, fee_percent=current.maker_fee, current_volume=volume, next_level=nxt)


def thirty_day_volume(trades: Iterable, now: datetime, exclude_id: Optional[str] = None) -> float:
    """Sum of sum_plus_fee over FILLED/CLOSED trades filled or closed in the last 30 days."""
    since = now - timedelta(days=30)
    total = 0.0
    for t in trades:
        if exclude_id and str(t.id) == str(exclude_id):
            continue
        if t.status not in (TradeStatus.FILLED, TradeStatus.CLOSED):
            continue
        recent = (t.filled_date is not None and t.filled_date >= since) or (
            t.close_date is not None and t.close_date >= since
        )
        if recent:
            total += float(t.sum_plus_fee or 0.0)
    return total
