"""Trade records and their OPEN → FILLED → CLOSED lifecycle.

These functions work on `database.models.Trade` instances in memory: they
validate first and mutate only once every check has passed, so a rejected
call never leaves a half-updated record behind. Persisting the result is
the caller's job (see `logic.services`).
"""
from __future__ import annotations

import math
import os
from datetime import datetime
from typing import Optional

from database.models import Trade, TradeStatus, TradeType

from .errors import EntryFieldsImmutableError, TradeValidationError


def default_decimal_places() -> int:
    try:
        return int(os.getenv("DEFAULT_DECIMAL_PLACES", "8"))
    except Exception:
        return 8


def tolerance_for(decimal_places: Optional[int]) -> float:
    """Half a unit of the coin's last decimal place."""
    dp = default_decimal_places() if decimal_places is None else int(decimal_places)
    return 0.5 * 10 ** (-dp)


def coin_tolerance(portfolio, symbol: str) -> float:
    coin = portfolio.coin(symbol) if portfolio is not None else None
    dp = coin.get("decimalPlaces") if coin else None
    return tolerance_for(dp)


def require_positive(name: str, value) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise TradeValidationError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(v) or v <= 0:
        raise TradeValidationError(f"{name} must be positive (got {value})")
    return v


def require_percent(name: str, value) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise TradeValidationError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(v) or v < 0 or v > 100:
        raise TradeValidationError(f"{name} must be between 0 and 100 (got {value})")
    return v


def is_linked_short(trade: Trade) -> bool:
    """A SHORT that borrowed its coin from a parent LONG (not a partial-close fragment)."""
    return (
        trade.trade_type == TradeType.SHORT
        and bool(trade.parent_trade_id)
        and not trade.is_partial_close
    )


def has_partial_history(trade: Trade) -> bool:
    original = trade.original_amount
    remaining = trade.remaining_amount
    if original is None or remaining is None:
        return False
    return float(remaining) < float(original)


def new_trade(
    *,
    trade_id: str,
    portfolio_id: str,
    coin_symbol: str,
    entry_price: float,
    amount: float,
    sum_plus_fee: float,
    open_date: datetime,
    entry_fee: float = 0.0,
    deposit_percent: float = 0.0,
    trade_type: TradeType = TradeType.LONG,
    status: TradeStatus = TradeStatus.OPEN,
    filled_date: Optional[datetime] = None,
    parent_trade_id: Optional[str] = None,
    initial_entry_price: Optional[float] = None,
    initial_amount: Optional[float] = None,
    reserved_cost_basis: Optional[float] = None,
    is_averaging_short: bool = False,
) -> Trade:
    """Build a new trade record.

    `initial_entry_price`/`initial_amount` default to the entry values; they
    are written here once and never again.
    """
    symbol = str(coin_symbol or "").strip().upper()
    if not symbol:
        raise TradeValidationError("coin symbol is required")
    entry_price = require_positive("entry price", entry_price)
    amount = require_positive("amount", amount)
    sum_plus_fee = require_positive("sum plus fee", sum_plus_fee)
    entry_fee = require_percent("entry fee", entry_fee)
    deposit_percent = require_percent("deposit percent", deposit_percent)
    if status == TradeStatus.CLOSED:
        raise TradeValidationError("a trade cannot be created CLOSED")
    if status == TradeStatus.FILLED and filled_date is None:
        filled_date = open_date

    return Trade(
        id=str(trade_id),
        portfolio_id=str(portfolio_id),
        coin_symbol=symbol,
        trade_type=trade_type,
        status=status,
        entry_price=entry_price,
        deposit_percent=deposit_percent,
        entry_fee=entry_fee,
        sum_plus_fee=sum_plus_fee,
        amount=amount,
        exit_price=None,
        exit_fee=None,
        open_date=open_date,
        filled_date=filled_date,
        close_date=None,
        initial_entry_price=float(entry_price if initial_entry_price is None else initial_entry_price),
        initial_amount=float(amount if initial_amount is None else initial_amount),
        original_amount=amount,
        remaining_amount=amount,
        is_partial_close=False,
        closed_amount=None,
        parent_trade_id=parent_trade_id,
        reserved_cost_basis=reserved_cost_basis,
        is_averaging_short=bool(is_averaging_short),
        is_split=False,
        split_from_trade_id=None,
        split_group_id=None,
    )


def fill(
    trade: Trade,
    actual_sum_plus_fee: float,
    actual_amount: float,
    filled_date: datetime,
    *,
    entry_price: Optional[float] = None,
) -> Trade:
    """OPEN → FILLED with the values the exchange confirmed."""
    if trade.status != TradeStatus.OPEN:
        raise TradeValidationError(f"only OPEN trades can be filled (trade {trade.id} is {trade.status.value})")
    sum_plus_fee = require_positive("sum plus fee", actual_sum_plus_fee)
    amount = require_positive("amount", actual_amount)
    price = require_positive("entry price", entry_price) if entry_price is not None else None

    trade.sum_plus_fee = sum_plus_fee
    trade.amount = amount
    # Nothing has been partially closed while OPEN.
    trade.original_amount = amount
    trade.remaining_amount = amount
    if price is not None:
        trade.entry_price = price
    trade.filled_date = filled_date
    trade.status = TradeStatus.FILLED
    return trade


def _check_entry_edits(trade: Trade, entry_price, amount, sum_plus_fee, entry_fee, deposit_percent, open_date) -> dict:
    edits = {
        k: v
        for k, v in (
            ("entry_price", entry_price),
            ("amount", amount),
            ("sum_plus_fee", sum_plus_fee),
            ("entry_fee", entry_fee),
            ("deposit_percent", deposit_percent),
            ("open_date", open_date),
        )
        if v is not None
    }
    if not edits:
        return {}
    if trade.status == TradeStatus.CLOSED:
        raise EntryFieldsImmutableError(
            f"entry fields immutable: trade {trade.id} is CLOSED (attempted {', '.join(sorted(edits))})"
        )
    if "entry_price" in edits:
        edits["entry_price"] = require_positive("entry price", entry_price)
    if "sum_plus_fee" in edits:
        edits["sum_plus_fee"] = require_positive("sum plus fee", sum_plus_fee)
    if "entry_fee" in edits:
        edits["entry_fee"] = require_percent("entry fee", entry_fee)
    if "deposit_percent" in edits:
        edits["deposit_percent"] = require_percent("deposit percent", deposit_percent)
    if "amount" in edits:
        edits["amount"] = require_positive("amount", amount)
        if is_linked_short(trade):
            raise TradeValidationError("amount of a SHORT linked to a LONG can only change through fill")
        if has_partial_history(trade):
            raise TradeValidationError(
                f"cannot change amount after partial closes (remaining {trade.remaining_amount} of {trade.original_amount})"
            )
    return edits


def _apply_entry_edits(trade: Trade, edits: dict) -> None:
    for k, v in edits.items():
        setattr(trade, k, v)
    if "amount" in edits:
        # Editing the amount replaces the whole position.
        trade.original_amount = edits["amount"]
        trade.remaining_amount = edits["amount"]


def edit_trade(
    trade: Trade,
    *,
    entry_price: Optional[float] = None,
    amount: Optional[float] = None,
    sum_plus_fee: Optional[float] = None,
    entry_fee: Optional[float] = None,
    deposit_percent: Optional[float] = None,
    open_date: Optional[datetime] = None,
    filled_date: Optional[datetime] = None,
) -> Trade:
    edits = _check_entry_edits(trade, entry_price, amount, sum_plus_fee, entry_fee, deposit_percent, open_date)
    _apply_entry_edits(trade, edits)
    if filled_date is not None:
        trade.filled_date = filled_date
    return trade


def close(
    trade: Trade,
    exit_price: float,
    exit_fee: float,
    close_date: datetime,
    *,
    entry_price: Optional[float] = None,
    amount: Optional[float] = None,
    sum_plus_fee: Optional[float] = None,
) -> Trade:
    """FILLED → CLOSED.

    Entry corrections passed together with the close are applied first; on a
    trade that is already CLOSED they raise `EntryFieldsImmutableError`.
    """
    edits = _check_entry_edits(trade, entry_price, amount, sum_plus_fee, None, None, None)
    if trade.status != TradeStatus.FILLED:
        raise TradeValidationError(f"only FILLED trades can be closed (trade {trade.id} is {trade.status.value})")
    exit_price = require_positive("exit price", exit_price)
    exit_fee = require_percent("exit fee", exit_fee)

    _apply_entry_edits(trade, edits)
    trade.exit_price = exit_price
    trade.exit_fee = exit_fee
    trade.close_date = close_date
    trade.status = TradeStatus.CLOSED
    return trade


def partial_close(
    trade: Trade,
    closed_amount: float,
    exit_price: float,
    exit_fee: float,
    close_date: datetime,
    *,
    fragment_id: str,
    tolerance: float,
) -> Trade:
    """Close part of a FILLED trade.

    Returns the new CLOSED fragment; the source trade only has its
    `remaining_amount` decremented (and flips to CLOSED once nothing is left).
    """
    if trade.status != TradeStatus.FILLED:
        raise TradeValidationError(
            f"only FILLED trades can be partially closed (trade {trade.id} is {trade.status.value})"
        )
    if trade.is_partial_close:
        raise TradeValidationError("a partial-close record cannot be closed again")
    closed_amount = require_positive("amount to close", closed_amount)
    exit_price = require_positive("exit price", exit_price)
    exit_fee = require_percent("exit fee", exit_fee)

    original = float(trade.original_amount if trade.original_amount is not None else trade.amount)
    remaining = float(trade.remaining_amount if trade.remaining_amount is not None else trade.amount)
    if closed_amount > remaining + tolerance:
        raise TradeValidationError(
            f"cannot close more than remaining amount ({remaining} {trade.coin_symbol})"
        )
    closed_amount = min(closed_amount, remaining)

    # Proportions always use the original size, never the remainder.
    proportion = closed_amount / original
    reserved = None
    if trade.reserved_cost_basis is not None:
        reserved = float(trade.reserved_cost_basis) * proportion

    fragment = Trade(
        id=str(fragment_id),
        portfolio_id=trade.portfolio_id,
        coin_symbol=trade.coin_symbol,
        trade_type=trade.trade_type,
        status=TradeStatus.CLOSED,
        entry_price=trade.entry_price,
        deposit_percent=trade.deposit_percent,
        entry_fee=trade.entry_fee,
        sum_plus_fee=float(trade.sum_plus_fee) * proportion,
        amount=closed_amount,
        exit_price=exit_price,
        exit_fee=exit_fee,
        open_date=trade.open_date,
        filled_date=trade.filled_date,
        close_date=close_date,
        initial_entry_price=trade.initial_entry_price,
        initial_amount=closed_amount,
        original_amount=original,
        remaining_amount=0.0,
        is_partial_close=True,
        closed_amount=closed_amount,
        parent_trade_id=trade.id,
        reserved_cost_basis=reserved,
        is_averaging_short=bool(trade.is_averaging_short),
        is_split=False,
        split_from_trade_id=None,
        split_group_id=None,
    )

    new_remaining = remaining - closed_amount
    if new_remaining <= tolerance:
        trade.remaining_amount = 0.0
        trade.status = TradeStatus.CLOSED
        trade.close_date = close_date
    else:
        trade.remaining_amount = new_remaining
    return fragment


def ensure_no_open_shorts(trade: Trade, open_shorts, action: str) -> None:
    """Reject `action` on a LONG that still has coin lent out to SHORTs."""
    active = [s for s in open_shorts if s.status != TradeStatus.CLOSED and not s.is_partial_close]
    if active:
        ids = ", ".join(sorted(str(s.id) for s in active))
        raise TradeValidationError(
            f"cannot {action} trade {trade.id}: {len(active)} open SHORT(s) linked to it ({ids})"
        )


def ensure_deletable(trade: Trade, open_shorts=()) -> None:
    ensure_no_open_shorts(trade, open_shorts, "delete")
