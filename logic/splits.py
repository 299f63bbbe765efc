"""Split one FILLED trade into 2-5 independent FILLED trades.

The original is retired (``is_split=True``, CLOSED) and replaced by its
fragments, which share a ``split_group_id`` and point back to it through
``split_from_trade_id``. Every fragment but the last gets
``amount × entry_price`` of cost (or its proportional share when that would
leave nothing for the last one); the last one takes whatever is left so the
fragments' ``sum_plus_fee`` adds up to the original exactly.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Sequence

from database.models import Trade, TradeStatus

from . import ledger
from .errors import TradeValidationError

logger = logging.getLogger(__name__)

MIN_PARTS = 2
MAX_PARTS = 5


def validate_split(trade: Trade, amounts: Sequence[float], tolerance: float) -> list[float]:
    if trade.status != TradeStatus.FILLED:
        raise TradeValidationError(f"only FILLED trades can be split (trade {trade.id} is {trade.status.value})")
    if ledger.is_linked_short(trade):
        raise TradeValidationError("a SHORT opened from a LONG position cannot be split")
    if trade.is_partial_close or ledger.has_partial_history(trade):
        raise TradeValidationError(f"trade {trade.id} has partial closes and cannot be split")

    parts = list(amounts or [])
    if not MIN_PARTS <= len(parts) <= MAX_PARTS:
        raise TradeValidationError(f"split needs between {MIN_PARTS} and {MAX_PARTS} parts (got {len(parts)})")
    parts = [ledger.require_positive(f"split amount #{i + 1}", a) for i, a in enumerate(parts)]

    total = float(trade.amount)
    if abs(sum(parts) - total) > tolerance:
        raise TradeValidationError(
            f"split amounts ({sum(parts)}) must equal trade amount ({total} {trade.coin_symbol})"
        )
    return parts


def split_costs(trade: Trade, parts: Sequence[float]) -> list[float]:
    """`sum_plus_fee` of each part; the last part takes the remainder.

    Parts are priced at `amount × entry_price`. When that leaves the last part
    with no cost (a SHORT's net proceeds sit below amount × price), the cost is
    shared in proportion to the amounts instead.
    """
    total_cost = float(trade.sum_plus_fee)
    costs = [a * float(trade.entry_price) for a in parts[:-1]]
    if total_cost - sum(costs) <= 0:
        total = float(trade.amount)
        costs = [total_cost * a / total for a in parts[:-1]]
    costs.append(total_cost - sum(costs))
    return costs


def split(
    trade: Trade,
    amounts: Sequence[float],
    *,
    fragment_ids: Sequence[str],
    split_group_id: str,
    now: datetime,
    tolerance: float,
) -> list[Trade]:
    """Split `trade` and return the new fragments in the order of `amounts`.

    Nothing is modified unless every check passes.
    """
    parts = validate_split(trade, amounts, tolerance)
    if len(fragment_ids) != len(parts):
        raise TradeValidationError(f"expected {len(parts)} fragment ids, got {len(fragment_ids)}")

    costs = split_costs(trade, parts)

    fragments = []
    for fid, amount, cost in zip(fragment_ids, parts, costs):
        fragments.append(
            Trade(
                id=str(fid),
                portfolio_id=trade.portfolio_id,
                coin_symbol=trade.coin_symbol,
                trade_type=trade.trade_type,
                status=TradeStatus.FILLED,
                entry_price=trade.entry_price,
                deposit_percent=trade.deposit_percent,
                entry_fee=trade.entry_fee,
                sum_plus_fee=cost,
                amount=amount,
                exit_price=None,
                exit_fee=None,
                open_date=trade.open_date,
                filled_date=trade.filled_date,
                close_date=None,
                initial_entry_price=trade.entry_price,
                initial_amount=amount,
                original_amount=amount,
                remaining_amount=amount,
                is_partial_close=False,
                closed_amount=None,
                parent_trade_id=None,
                reserved_cost_basis=None,
                is_averaging_short=bool(trade.is_averaging_short),
                is_split=False,
                split_from_trade_id=trade.id,
                split_group_id=str(split_group_id),
            )
        )

    trade.is_split = True
    trade.status = TradeStatus.CLOSED
    trade.close_date = now
    logger.info("split %s into %d parts (group %s)", trade.id, len(fragments), split_group_id)
    return fragments
