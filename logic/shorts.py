"""
SHORT positions backed by a parent LONG.

Opening a SHORT sells coin out of a LONG: the parent's amount and cost basis
shrink by the same proportion (its entry price does not move) and the SHORT
remembers the cost basis it carried away in `reserved_cost_basis`.

Closing the SHORT buys coin back with the sale proceeds. The bought-back coin
and the reserved cost basis both go back to the parent, whose entry price is
then recalculated as sum_plus_fee / amount. A profitable SHORT returns more
coin than it sold, which lowers the parent's entry price; a losing one raises it.

Example (1% fees both ways):
  parent LONG  1.0 BTC for 101000 USD
  SHORT        sells 0.5 BTC at 110000 → 54450 USD proceeds
               parent now 0.5 BTC / 50500 USD
  close SHORT  buy back at 100000 → 54450 / 101000 = 0.5391 BTC
               parent now 1.0391 BTC / 101000 USD → entry ≈ 97199

The parent's initial_entry_price / initial_amount are never written here.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from database.models import Trade, TradeStatus, TradeType

from . import ledger
from .calculations import coins_bought_back, profit_basis, recalculate_long_entry_price
from .errors import TradeNotFoundError, TradeValidationError

logger = logging.getLogger(__name__)


def _check_parent(parent: Optional[Trade], parent_id: Optional[str] = None) -> Trade:
    if parent is None:
        raise TradeNotFoundError(f"parent trade {parent_id} not found" if parent_id else "parent trade not found")
    if parent.trade_type != TradeType.LONG:
        raise TradeValidationError(f"parent trade {parent.id} is not a LONG position")
    if parent.status not in (TradeStatus.OPEN, TradeStatus.FILLED):
        raise TradeValidationError(f"parent trade {parent.id} is already closed")
    return parent


def _rebase_parent(parent: Trade) -> None:
    if parent.amount > 0:
        parent.entry_price = recalculate_long_entry_price(parent.sum_plus_fee, parent.amount)
    # No partial closes yet (checked on open), so remaining follows amount.
    parent.original_amount = parent.amount
    parent.remaining_amount = parent.amount


def _reserve(parent: Trade, amount: float, tolerance: float) -> float:
    """Move `amount` coin and its share of cost basis out of the parent."""
    if amount >= parent.amount - tolerance:
        reduced = float(parent.sum_plus_fee)
        parent.amount = 0.0
        parent.sum_plus_fee = 0.0
    else:
        proportion = amount / parent.amount
        reduced = float(parent.sum_plus_fee) * proportion
        parent.amount = parent.amount - amount
        parent.sum_plus_fee = parent.sum_plus_fee - reduced
    # Coin and cost leave at the same ratio, so entry_price stays as it is.
    parent.original_amount = parent.amount
    parent.remaining_amount = parent.amount
    return reduced


def _restore(parent: Trade, amount: float, cost_basis: float) -> None:
    """Exact undo of `_reserve`: entry_price is left alone."""
    parent.amount = parent.amount + amount
    parent.sum_plus_fee = parent.sum_plus_fee + cost_basis
    parent.original_amount = parent.amount
    parent.remaining_amount = parent.amount


def _return_to_parent(parent: Trade, coins_back: float, cost_basis: float) -> None:
    parent.amount = parent.amount + coins_back
    parent.sum_plus_fee = parent.sum_plus_fee + cost_basis
    _rebase_parent(parent)


def available_pool(portfolio, symbol: str, open_standalone_shorts: Iterable[Trade] = ()) -> float:
    """Initial coin held outside any LONG, minus what open standalone SHORTs already sold."""
    pool = portfolio.initial_coin_amount(symbol) if portfolio is not None else None
    if pool is None:
        raise TradeValidationError(
            f"SHORT without a parent trade needs initial {str(symbol).upper()} coins on the portfolio"
        )
    sold = 0.0
    for t in open_standalone_shorts:
        if t.status == TradeStatus.CLOSED or t.parent_trade_id or t.is_partial_close:
            continue
        sold += float(t.remaining_amount if t.remaining_amount is not None else t.amount)
    return max(pool - sold, 0.0)


def open_short(
    *,
    short_id: str,
    portfolio,
    parent: Optional[Trade],
    amount: float,
    sale_price: float,
    sale_fee: float,
    open_date: datetime,
    tolerance: float,
    coin_symbol: Optional[str] = None,
    sum_plus_fee: Optional[float] = None,
    deposit_percent: Optional[float] = None,
    status: TradeStatus = TradeStatus.OPEN,
    filled_date: Optional[datetime] = None,
    is_averaging_short: bool = False,
    open_standalone_shorts: Iterable[Trade] = (),
) -> Trade:
    """Create a SHORT and, when it has a parent LONG, reserve its coin there.

    Without a parent the SHORT sells from the portfolio's initial coins and
    no other record changes.
    """
    if parent is not None:
        _check_parent(parent)
        if ledger.has_partial_history(parent):
            raise TradeValidationError(f"cannot open a SHORT against partially closed trade {parent.id}")
        symbol = str(coin_symbol or parent.coin_symbol).strip().upper()
        if symbol != parent.coin_symbol:
            raise TradeValidationError(
                f"SHORT coin {symbol} does not match parent trade coin {parent.coin_symbol}"
            )
        available = float(parent.amount)
    else:
        symbol = str(coin_symbol or "").strip().upper()
        if not symbol:
            raise TradeValidationError("coin symbol is required for a SHORT without a parent trade")
        available = available_pool(portfolio, symbol, open_standalone_shorts)

    try:
        amount = float(amount)
    except (TypeError, ValueError):
        raise TradeValidationError(f"amount must be a number, got {amount!r}")
    if amount <= 0:
        raise TradeValidationError(f"amount must be positive (got {amount})")
    if amount > available + tolerance:
        raise TradeValidationError(f"cannot sell more than available amount ({available} {symbol})")
    amount = min(amount, available)

    if sum_plus_fee is None:
        sum_plus_fee = amount * float(sale_price) * (100 - float(sale_fee)) / 100
    if deposit_percent is None:
        deposit_percent = (amount / available * 100) if available > 0 else 0.0

    if parent is not None:
        initial_entry_price, initial_amount = parent.initial_entry_price, parent.initial_amount
    else:
        initial_entry_price, initial_amount = None, None

    # Validates every input before the parent is touched.
    short = ledger.new_trade(
        trade_id=short_id,
        portfolio_id=parent.portfolio_id if parent is not None else portfolio.id,
        coin_symbol=symbol,
        entry_price=sale_price,
        amount=amount,
        sum_plus_fee=sum_plus_fee,
        open_date=open_date,
        entry_fee=sale_fee,
        deposit_percent=min(max(deposit_percent, 0.0), 100.0),
        trade_type=TradeType.SHORT,
        status=status,
        filled_date=filled_date,
        parent_trade_id=parent.id if parent is not None else None,
        initial_entry_price=initial_entry_price,
        initial_amount=initial_amount,
        is_averaging_short=is_averaging_short,
    )

    if parent is not None:
        short.reserved_cost_basis = _reserve(parent, amount, tolerance)
        logger.info(
            "SHORT %s reserved %s %s from %s (parent amount=%s sum_plus_fee=%s)",
            short.id, amount, symbol, parent.id, parent.amount, parent.sum_plus_fee,
        )
    return short


def refill_short(
    short: Trade,
    parent: Optional[Trade],
    actual_sum_plus_fee: float,
    actual_amount: float,
    filled_date: datetime,
    *,
    tolerance: float,
    entry_price: Optional[float] = None,
) -> Trade:
    """Fill a linked SHORT, moving the amount difference between SHORT and parent."""
    if short.status != TradeStatus.OPEN:
        raise TradeValidationError(f"only OPEN trades can be filled (trade {short.id} is {short.status.value})")
    _check_parent(parent, short.parent_trade_id)
    actual_amount = ledger.require_positive("amount", actual_amount)
    ledger.require_positive("sum plus fee", actual_sum_plus_fee)
    if entry_price is not None:
        ledger.require_positive("entry price", entry_price)

    delta = actual_amount - float(short.amount)
    if delta > tolerance:
        if delta > parent.amount + tolerance:
            raise TradeValidationError(
                f"cannot sell more than available amount ({parent.amount + short.amount} {short.coin_symbol})"
            )
        short.reserved_cost_basis = float(short.reserved_cost_basis or 0.0) + _reserve(parent, delta, tolerance)
    elif delta < -tolerance:
        release = -delta
        reserved = float(short.reserved_cost_basis or 0.0)
        share = reserved * release / float(short.amount)
        short.reserved_cost_basis = reserved - share
        _restore(parent, release, share)

    return ledger.fill(short, actual_sum_plus_fee, actual_amount, filled_date, entry_price=entry_price)


def coin_flow(short: Trade, fragments: Iterable[Trade] = ()) -> tuple[float, float]:
    """(coins sold, coins handed back) between a SHORT and its parent so far.

    `fragments` are the SHORT's own partial-close fragments.
    """
    sold = float(short.original_amount if short.original_amount is not None else short.amount)
    returned = 0.0
    for f in fragments:
        if f.exit_price is not None:
            returned += coins_bought_back(f.sum_plus_fee, f.exit_price, f.exit_fee or 0.0)
    if short.status == TradeStatus.CLOSED and short.exit_price is not None:
        _, proceeds = profit_basis(short)
        returned += coins_bought_back(proceeds, short.exit_price, short.exit_fee or 0.0)
    return sold, returned


def fill_parent(
    parent: Trade,
    actual_sum_plus_fee: float,
    actual_amount: float,
    filled_date: datetime,
    *,
    coins_sold: float,
    coins_returned: float,
    entry_price: Optional[float] = None,
) -> Trade:
    """Fill an OPEN LONG whose SHORTs have all been closed already.

    The SHORTs moved coin relative to the planned amount, so the difference
    between the confirmed and the planned amount is applied on top of the
    current amount. Cost basis came back whole, so `sum_plus_fee` is simply
    the confirmed value. The entry price is then recalculated.
    """
    if parent.status != TradeStatus.OPEN:
        raise TradeValidationError(f"only OPEN trades can be filled (trade {parent.id} is {parent.status.value})")
    actual_amount = ledger.require_positive("amount", actual_amount)
    current = float(parent.amount)
    planned = current + coins_sold - coins_returned
    amount = current + (actual_amount - planned)
    if amount <= 0:
        raise TradeValidationError(
            f"filled amount ({actual_amount} {parent.coin_symbol}) leaves nothing of trade {parent.id} "
            f"after its SHORTs (planned {planned})"
        )

    ledger.fill(parent, actual_sum_plus_fee, actual_amount, filled_date, entry_price=entry_price)
    parent.amount = amount
    _rebase_parent(parent)
    logger.info(
        "filled %s after closed SHORTs: planned %s, confirmed %s, amount now %s (entry %s)",
        parent.id, planned, actual_amount, parent.amount, parent.entry_price,
    )
    return parent


def close_short(
    short: Trade,
    parent: Optional[Trade],
    buy_back_price: float,
    buy_back_fee: float,
    close_date: datetime,
) -> float:
    """Close a linked SHORT and hand the bought-back coin to its parent.

    Returns the coins bought back. A SHORT that was partially closed before
    only buys back (and returns cost basis for) its remaining share.
    """
    if not ledger.is_linked_short(short):
        raise TradeValidationError(f"trade {short.id} is not a SHORT linked to a LONG")
    _check_parent(parent, short.parent_trade_id)
    amount, proceeds = profit_basis(short)
    original = float(short.original_amount or short.amount)
    reserved_share = float(short.reserved_cost_basis or 0.0) * (amount / original if original > 0 else 1.0)

    ledger.close(short, buy_back_price, buy_back_fee, close_date)
    coins_back = coins_bought_back(proceeds, short.exit_price, short.exit_fee)
    _return_to_parent(parent, coins_back, reserved_share)
    logger.info(
        "SHORT %s closed: %s %s back to %s (parent amount=%s entry=%s)",
        short.id, coins_back, short.coin_symbol, parent.id, parent.amount, parent.entry_price,
    )
    return coins_back


def partial_close_short(
    short: Trade,
    parent: Optional[Trade],
    closed_amount: float,
    buy_back_price: float,
    buy_back_fee: float,
    close_date: datetime,
    *,
    fragment_id: str,
    tolerance: float,
) -> tuple[Trade, float]:
    """Buy back part of a linked SHORT; only that fragment's coin goes to the parent."""
    if not ledger.is_linked_short(short):
        raise TradeValidationError(f"trade {short.id} is not a SHORT linked to a LONG")
    _check_parent(parent, short.parent_trade_id)

    fragment = ledger.partial_close(
        short, closed_amount, buy_back_price, buy_back_fee, close_date,
        fragment_id=fragment_id, tolerance=tolerance,
    )
    coins_back = coins_bought_back(fragment.sum_plus_fee, fragment.exit_price, fragment.exit_fee)
    _return_to_parent(parent, coins_back, float(fragment.reserved_cost_basis or 0.0))
    logger.info(
        "SHORT %s partially closed (%s of %s): %s %s back to %s",
        short.id, fragment.closed_amount, short.original_amount, coins_back, short.coin_symbol, parent.id,
    )
    return fragment, coins_back


def release_short(short: Trade, parent: Optional[Trade]) -> float:
    """Undo the reservation of a linked SHORT that is being deleted before it closed.

    The still-open coin and its share of reserved cost basis go back to the
    parent. Returns the coin amount released.
    """
    if not ledger.is_linked_short(short) or short.status == TradeStatus.CLOSED:
        return 0.0
    _check_parent(parent, short.parent_trade_id)
    original = float(short.original_amount or short.amount)
    remaining = float(short.remaining_amount if short.remaining_amount is not None else short.amount)
    share = float(short.reserved_cost_basis or 0.0) * (remaining / original if original > 0 else 1.0)
    _restore(parent, remaining, share)
    logger.info("SHORT %s released %s %s back to %s", short.id, remaining, short.coin_symbol, parent.id)
    return remaining
