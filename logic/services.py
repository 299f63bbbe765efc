import logging
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Callable, Optional

import pandas as pd
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from database.locks import trade_locks
from database.models import Portfolio, Trade, TradeStatus, TradeType, get_engine
from database.store import SqlTradeStore

from . import ledger, shorts, splits, stats
from .calculations import trade_profit
from .errors import TradeNotFoundError, TradeValidationError
from .fees import fee_level, thirty_day_volume

logger = logging.getLogger(__name__)

# NOTE: create engine/session per-call so the current `DATABASE_URL` is
# respected at runtime.

# Tests monkeypatch these with an in-memory engine and its Session factory.
engine = None
Session = None


def get_session():
    """New SQLAlchemy Session bound to the patched engine or `get_engine()`."""
    if Session is not None:
        return Session()
    _engine = engine if engine is not None else get_engine()
    return sessionmaker(bind=_engine)()


def _engine():
    return engine if engine is not None else get_engine()


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_datetime(value, default: Optional[datetime] = None) -> Optional[datetime]:
    if value is None:
        return default
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    ts = pd.to_datetime(value, utc=True)
    return ts.tz_convert(None).to_pydatetime()


def normalize_trade_type(trade_type) -> TradeType:
    if isinstance(trade_type, TradeType):
        return trade_type
    s = str(trade_type or "").strip().upper()
    if not s:
        return TradeType.LONG
    if s not in TradeType.__members__:
        raise TradeValidationError(f"unknown trade type: {trade_type!r}")
    return TradeType[s]


def normalize_status(status) -> TradeStatus:
    if isinstance(status, TradeStatus):
        return status
    s = str(status or "").strip().upper()
    if not s:
        return TradeStatus.OPEN
    if s not in TradeStatus.__members__:
        raise TradeValidationError(f"unknown trade status: {status!r}")
    return TradeStatus[s]


def trade_to_dict(trade: Trade) -> dict:
    out = {c: getattr(trade, c) for c in Trade.__table__.columns.keys()}
    out["trade_type"] = trade.trade_type.value
    out["status"] = trade.status.value
    profit = trade_profit(trade) if trade.status == TradeStatus.CLOSED else None
    out["profit"] = asdict(profit) if profit is not None else None
    return out


def portfolio_to_dict(portfolio: Portfolio) -> dict:
    return {
        "id": portfolio.id,
        "user_id": portfolio.user_id,
        "name": portfolio.name,
        "total_deposit": portfolio.total_deposit,
        "coins": list(portfolio.coins or []),
        "initial_coins": list(portfolio.initial_coins or []) or None,
        "created_at": portfolio.created_at,
    }


# ---------------------------------------------------------------------------
# Portfolios
# ---------------------------------------------------------------------------

def _normalize_coins(coins) -> list:
    out = []
    seen = set()
    for c in coins or []:
        symbol = str(c.get("symbol") or "").strip().upper()
        if not symbol:
            raise TradeValidationError("coin symbol is required")
        if symbol in seen:
            raise TradeValidationError(f"coin {symbol} is listed twice")
        seen.add(symbol)
        try:
            percentage = float(c.get("percentage", 0))
            decimals = int(c.get("decimalPlaces", ledger.default_decimal_places()))
        except (TypeError, ValueError):
            raise TradeValidationError(f"invalid settings for coin {symbol}")
        if percentage < 0 or percentage > 100:
            raise TradeValidationError(f"percentage of {symbol} must be between 0 and 100 (got {percentage})")
        if decimals < 0 or decimals > 8:
            raise TradeValidationError(f"decimal places of {symbol} must be between 0 and 8 (got {decimals})")
        out.append({"symbol": symbol, "percentage": percentage, "decimalPlaces": decimals})
    if not out:
        raise TradeValidationError("a portfolio needs at least one coin")
    total = sum(c["percentage"] for c in out)
    if abs(total - 100) > 0.01:
        raise TradeValidationError(f"coin percentages must total 100 (got {total})")
    return out


def _normalize_initial_coins(initial_coins) -> Optional[list]:
    if not initial_coins:
        return None
    out = []
    for c in initial_coins:
        symbol = str(c.get("symbol") or "").strip().upper()
        if not symbol:
            raise TradeValidationError("initial coin symbol is required")
        try:
            amount = float(c.get("amount", 0))
        except (TypeError, ValueError):
            raise TradeValidationError(f"initial amount of {symbol} must be a number")
        if amount < 0:
            raise TradeValidationError(f"initial amount of {symbol} cannot be negative (got {amount})")
        out.append({"symbol": symbol, "amount": amount})
    return out


def create_portfolio(
    name,
    coins,
    total_deposit=0.0,
    initial_coins=None,
    user_id=None,
    portfolio_id=None,
    now=None,
) -> dict:
    name = str(name or "").strip()
    if not name:
        raise TradeValidationError("portfolio name is required")
    try:
        deposit = float(total_deposit or 0.0)
    except (TypeError, ValueError):
        raise TradeValidationError(f"total deposit must be a number, got {total_deposit!r}")
    if deposit < 0:
        raise TradeValidationError(f"total deposit cannot be negative (got {deposit})")
    portfolio = Portfolio(
        id=str(portfolio_id or _new_id()),
        user_id=str(user_id) if user_id is not None else None,
        name=name,
        total_deposit=deposit,
        coins=_normalize_coins(coins),
        initial_coins=_normalize_initial_coins(initial_coins),
        created_at=_to_datetime(now, _utcnow()),
    )
    session = get_session()
    try:
        session.add(portfolio)
        session.commit()
        logger.info("created portfolio %s (%s)", portfolio.id, portfolio.name)
        return portfolio_to_dict(portfolio)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _require_portfolio(store: SqlTradeStore, portfolio_id) -> Portfolio:
    portfolio = store.find_portfolio(portfolio_id)
    if portfolio is None:
        raise TradeNotFoundError(f"portfolio {portfolio_id} not found")
    return portfolio


def get_portfolio(portfolio_id) -> dict:
    session = get_session()
    try:
        return portfolio_to_dict(_require_portfolio(SqlTradeStore(session), portfolio_id))
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Trades
# ---------------------------------------------------------------------------

def _require_trade(store: SqlTradeStore, trade_id, for_update: bool = True) -> Trade:
    trade = store.find_by_id(trade_id, for_update=for_update)
    if trade is None:
        raise TradeNotFoundError(f"trade {trade_id} not found")
    return trade


def _require_coin(portfolio: Portfolio, symbol) -> str:
    sym = str(symbol or "").strip().upper()
    if portfolio.coin(sym) is None:
        raise TradeValidationError(f"coin {sym or symbol!r} is not configured on portfolio {portfolio.id}")
    return sym


def _linked_shorts(store: SqlTradeStore, trade: Trade) -> list:
    if trade.trade_type != TradeType.LONG:
        return []
    return store.find_many(parent_trade_id=trade.id, trade_type=TradeType.SHORT, is_partial_close=False)


def _open_linked_shorts(store: SqlTradeStore, trade: Trade) -> list:
    return [s for s in _linked_shorts(store, trade) if s.status != TradeStatus.CLOSED]


def _peek_parent_id(trade_id) -> Optional[str]:
    """Parent LONG of a linked SHORT (parent ids never change once written)."""
    session = get_session()
    try:
        trade = SqlTradeStore(session).find_by_id(trade_id)
        if trade is not None and ledger.is_linked_short(trade):
            return trade.parent_trade_id
        return None
    finally:
        session.close()


def create_trade(
    portfolio_id,
    coin_symbol,
    entry_price,
    amount,
    sum_plus_fee,
    entry_fee=0.0,
    deposit_percent=0.0,
    trade_type="LONG",
    status="OPEN",
    open_date=None,
    filled_date=None,
    parent_trade_id=None,
    is_averaging_short=False,
    trade_id=None,
    now=None,
) -> dict:
    """Create a trade. SHORTs go through `open_short` so their coin is reserved."""
    ttype = normalize_trade_type(trade_type)
    if ttype == TradeType.SHORT:
        return open_short(
            portfolio_id,
            amount=amount,
            sale_price=entry_price,
            sale_fee=entry_fee,
            parent_trade_id=parent_trade_id,
            coin_symbol=coin_symbol,
            sum_plus_fee=sum_plus_fee,
            deposit_percent=deposit_percent,
            status=status,
            open_date=open_date,
            filled_date=filled_date,
            is_averaging_short=is_averaging_short,
            trade_id=trade_id,
            now=now,
        )
    if parent_trade_id:
        raise TradeValidationError("only SHORT trades can have a parent trade")

    session = get_session()
    try:
        store = SqlTradeStore(session)
        portfolio = _require_portfolio(store, portfolio_id)
        symbol = _require_coin(portfolio, coin_symbol)
        opened = _to_datetime(open_date, _to_datetime(now, _utcnow()))
        trade = ledger.new_trade(
            trade_id=trade_id or _new_id(),
            portfolio_id=portfolio.id,
            coin_symbol=symbol,
            entry_price=entry_price,
            amount=amount,
            sum_plus_fee=sum_plus_fee,
            open_date=opened,
            entry_fee=entry_fee,
            deposit_percent=deposit_percent,
            trade_type=ttype,
            status=normalize_status(status),
            filled_date=_to_datetime(filled_date),
        )
        store.insert(trade)
        session.commit()
        logger.info("created %s", trade)
        return trade_to_dict(trade)
    except TradeValidationError as e:
        session.rollback()
        logger.warning("create trade rejected: %s", e)
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def open_short(
    portfolio_id,
    amount,
    sale_price,
    sale_fee=0.0,
    parent_trade_id=None,
    coin_symbol=None,
    sum_plus_fee=None,
    deposit_percent=None,
    status="OPEN",
    open_date=None,
    filled_date=None,
    is_averaging_short=False,
    trade_id=None,
    now=None,
) -> dict:
    """Open a SHORT against a parent LONG or, without one, the portfolio's initial coins."""
    if parent_trade_id:
        lock_key = str(parent_trade_id)
    else:
        lock_key = f"pool:{portfolio_id}:{str(coin_symbol or '').strip().upper()}"

    with trade_locks(lock_key):
        session = get_session()
        try:
            store = SqlTradeStore(session)
            portfolio = _require_portfolio(store, portfolio_id)
            parent = None
            pool_shorts = ()
            if parent_trade_id:
                parent = store.find_by_id(parent_trade_id, for_update=True)
                if parent is None:
                    raise TradeNotFoundError(f"parent trade {parent_trade_id} not found")
                if parent.portfolio_id != portfolio.id:
                    raise TradeValidationError(
                        f"parent trade {parent.id} belongs to another portfolio"
                    )
            else:
                symbol = _require_coin(portfolio, coin_symbol)
                pool_shorts = store.find_many(
                    portfolio_id=portfolio.id, coin_symbol=symbol, trade_type=TradeType.SHORT,
                )
            symbol = _require_coin(portfolio, coin_symbol or (parent.coin_symbol if parent else None))

            short = shorts.open_short(
                short_id=trade_id or _new_id(),
                portfolio=portfolio,
                parent=parent,
                amount=amount,
                sale_price=sale_price,
                sale_fee=sale_fee,
                open_date=_to_datetime(open_date, _to_datetime(now, _utcnow())),
                tolerance=ledger.coin_tolerance(portfolio, symbol),
                coin_symbol=symbol,
                sum_plus_fee=sum_plus_fee,
                deposit_percent=deposit_percent,
                status=normalize_status(status),
                filled_date=_to_datetime(filled_date),
                is_averaging_short=is_averaging_short,
                open_standalone_shorts=pool_shorts,
            )
            store.insert(short)
            if parent is not None:
                store.update(parent)
            session.commit()
            logger.info("opened %s", short)
            return trade_to_dict(short)
        except TradeValidationError as e:
            session.rollback()
            logger.warning("open SHORT rejected: %s", e)
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def fill_trade(trade_id, sum_plus_fee, amount, filled_date=None, entry_price=None, now=None) -> dict:
    parent_id = _peek_parent_id(trade_id)
    with trade_locks(trade_id, parent_id):
        session = get_session()
        try:
            store = SqlTradeStore(session)
            trade = _require_trade(store, trade_id)
            when = _to_datetime(filled_date, _to_datetime(now, _utcnow()))
            if ledger.is_linked_short(trade):
                parent = store.find_by_id(trade.parent_trade_id, for_update=True)
                portfolio = _require_portfolio(store, trade.portfolio_id)
                shorts.refill_short(
                    trade, parent, sum_plus_fee, amount, when,
                    tolerance=ledger.coin_tolerance(portfolio, trade.coin_symbol),
                    entry_price=entry_price,
                )
                store.update(parent)
            else:
                linked = _linked_shorts(store, trade)
                ledger.ensure_no_open_shorts(trade, linked, "fill")
                if linked:
                    sold = returned = 0.0
                    for s in linked:
                        fragments = store.find_many(parent_trade_id=s.id, is_partial_close=True)
                        s_sold, s_returned = shorts.coin_flow(s, fragments)
                        sold += s_sold
                        returned += s_returned
                    shorts.fill_parent(
                        trade, sum_plus_fee, amount, when,
                        coins_sold=sold, coins_returned=returned, entry_price=entry_price,
                    )
                else:
                    ledger.fill(trade, sum_plus_fee, amount, when, entry_price=entry_price)
            store.update(trade)
            session.commit()
            logger.info("filled %s", trade)
            return trade_to_dict(trade)
        except TradeValidationError as e:
            session.rollback()
            logger.warning("fill rejected for %s: %s", trade_id, e)
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def close_trade(
    trade_id,
    exit_price,
    exit_fee=0.0,
    close_date=None,
    entry_price=None,
    amount=None,
    sum_plus_fee=None,
    now=None,
) -> dict:
    """Close a FILLED trade. A linked SHORT hands its bought-back coin to the parent LONG."""
    parent_id = _peek_parent_id(trade_id)
    with trade_locks(trade_id, parent_id):
        session = get_session()
        try:
            store = SqlTradeStore(session)
            trade = _require_trade(store, trade_id)
            when = _to_datetime(close_date, _to_datetime(now, _utcnow()))
            if ledger.is_linked_short(trade):
                ledger.edit_trade(trade, entry_price=entry_price, amount=amount, sum_plus_fee=sum_plus_fee)
                parent = store.find_by_id(trade.parent_trade_id, for_update=True)
                shorts.close_short(trade, parent, exit_price, exit_fee, when)
                store.update(parent)
            else:
                ledger.ensure_no_open_shorts(trade, _open_linked_shorts(store, trade), "close")
                ledger.close(
                    trade, exit_price, exit_fee, when,
                    entry_price=entry_price, amount=amount, sum_plus_fee=sum_plus_fee,
                )
            store.update(trade)
            session.commit()
            logger.info("closed %s at %s", trade, trade.exit_price)
            return trade_to_dict(trade)
        except TradeValidationError as e:
            session.rollback()
            logger.warning("close rejected for %s: %s", trade_id, e)
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def partial_close_trade(
    trade_id,
    amount,
    exit_price,
    exit_fee=0.0,
    close_date=None,
    fragment_id=None,
    now=None,
) -> dict:
    """Close `amount` of a FILLED trade.

    Returns ``{"trade": <source trade>, "fragment": <new CLOSED record>}``.
    """
    parent_id = _peek_parent_id(trade_id)
    with trade_locks(trade_id, parent_id):
        session = get_session()
        try:
            store = SqlTradeStore(session)
            trade = _require_trade(store, trade_id)
            portfolio = _require_portfolio(store, trade.portfolio_id)
            tolerance = ledger.coin_tolerance(portfolio, trade.coin_symbol)
            when = _to_datetime(close_date, _to_datetime(now, _utcnow()))
            fid = fragment_id or _new_id()
            if ledger.is_linked_short(trade):
                parent = store.find_by_id(trade.parent_trade_id, for_update=True)
                fragment, _ = shorts.partial_close_short(
                    trade, parent, amount, exit_price, exit_fee, when,
                    fragment_id=fid, tolerance=tolerance,
                )
                store.update(parent)
            else:
                ledger.ensure_no_open_shorts(trade, _open_linked_shorts(store, trade), "partially close")
                fragment = ledger.partial_close(
                    trade, amount, exit_price, exit_fee, when,
                    fragment_id=fid, tolerance=tolerance,
                )
            store.insert(fragment)
            store.update(trade)
            session.commit()
            logger.info(
                "partially closed %s %s of %s (remaining %s)",
                trade.id, fragment.closed_amount, trade.original_amount, trade.remaining_amount,
            )
            return {"trade": trade_to_dict(trade), "fragment": trade_to_dict(fragment)}
        except TradeValidationError as e:
            session.rollback()
            logger.warning("partial close rejected for %s: %s", trade_id, e)
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def split_trade(
    trade_id,
    amounts,
    now=None,
    id_factory: Optional[Callable[[], str]] = None,
) -> dict:
    """Split a FILLED trade into 2-5 FILLED trades.

    Returns ``{"original": ..., "fragments": [...], "split_group_id": ...}``.
    """
    make_id = id_factory or _new_id
    with trade_locks(trade_id):
        session = get_session()
        try:
            store = SqlTradeStore(session)
            trade = _require_trade(store, trade_id)
            ledger.ensure_no_open_shorts(trade, _open_linked_shorts(store, trade), "split")
            portfolio = _require_portfolio(store, trade.portfolio_id)
            tolerance = ledger.coin_tolerance(portfolio, trade.coin_symbol)
            parts = splits.validate_split(trade, amounts, tolerance)

            group_id = str(make_id())
            fragment_ids = [str(make_id()) for _ in parts]
            fragments = splits.split(
                trade, parts,
                fragment_ids=fragment_ids,
                split_group_id=group_id,
                now=_to_datetime(now, _utcnow()),
                tolerance=tolerance,
            )
            for f in fragments:
                store.insert(f)
            store.update(trade)
            session.commit()
            return {
                "original": trade_to_dict(trade),
                "fragments": [trade_to_dict(f) for f in fragments],
                "split_group_id": group_id,
            }
        except TradeValidationError as e:
            session.rollback()
            logger.warning("split rejected for %s: %s", trade_id, e)
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def edit_trade(
    trade_id,
    entry_price=None,
    amount=None,
    sum_plus_fee=None,
    entry_fee=None,
    deposit_percent=None,
    open_date=None,
    filled_date=None,
) -> dict:
    with trade_locks(trade_id):
        session = get_session()
        try:
            store = SqlTradeStore(session)
            trade = _require_trade(store, trade_id)
            if amount is not None or sum_plus_fee is not None:
                linked = _linked_shorts(store, trade)
                ledger.ensure_no_open_shorts(trade, linked, "resize")
                if linked:
                    # Closed SHORTs already moved coin and cost; a new size would erase that.
                    raise TradeValidationError(
                        f"cannot resize trade {trade.id}: SHORT trades have been opened against it"
                    )
            ledger.edit_trade(
                trade,
                entry_price=entry_price,
                amount=amount,
                sum_plus_fee=sum_plus_fee,
                entry_fee=entry_fee,
                deposit_percent=deposit_percent,
                open_date=_to_datetime(open_date),
                filled_date=_to_datetime(filled_date),
            )
            store.update(trade)
            session.commit()
            logger.info("edited %s", trade)
            return trade_to_dict(trade)
        except TradeValidationError as e:
            session.rollback()
            logger.warning("edit rejected for %s: %s", trade_id, e)
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def delete_trade(trade_id) -> bool:
    """Delete a trade. An open linked SHORT first gives its coin back to the parent."""
    parent_id = _peek_parent_id(trade_id)
    with trade_locks(trade_id, parent_id):
        session = get_session()
        try:
            store = SqlTradeStore(session)
            trade = _require_trade(store, trade_id)
            ledger.ensure_deletable(trade, _open_linked_shorts(store, trade))
            if ledger.is_linked_short(trade) and trade.status != TradeStatus.CLOSED:
                parent = store.find_by_id(trade.parent_trade_id, for_update=True)
                shorts.release_short(trade, parent)
                store.update(parent)
            store.delete(trade.id)
            session.commit()
            logger.info("deleted trade %s", trade_id)
            return True
        except TradeValidationError as e:
            session.rollback()
            logger.warning("delete rejected for %s: %s", trade_id, e)
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def get_trade(trade_id) -> dict:
    session = get_session()
    try:
        return trade_to_dict(_require_trade(SqlTradeStore(session), trade_id, for_update=False))
    finally:
        session.close()


def list_trades(portfolio_id, status=None, trade_type=None, coin_symbol=None) -> list:
    filters = {"portfolio_id": str(portfolio_id)}
    if status is not None:
        filters["status"] = normalize_status(status)
    if trade_type is not None:
        filters["trade_type"] = normalize_trade_type(trade_type)
    if coin_symbol:
        filters["coin_symbol"] = str(coin_symbol).strip().upper()
    session = get_session()
    try:
        store = SqlTradeStore(session)
        _require_portfolio(store, portfolio_id)
        return [trade_to_dict(t) for t in store.find_many(**filters)]
    finally:
        session.close()


def load_trades(portfolio_id=None) -> pd.DataFrame:
    """Trades as a DataFrame, newest first. Empty DataFrame when there are none."""
    if portfolio_id is None:
        trades = pd.read_sql(text("SELECT * FROM trades ORDER BY open_date DESC, id"), _engine())
    else:
        trades = pd.read_sql(
            text("SELECT * FROM trades WHERE portfolio_id = :pid ORDER BY open_date DESC, id"),
            _engine(),
            params={"pid": str(portfolio_id)},
        )
    for col in ("open_date", "filled_date", "close_date"):
        if col in trades.columns:
            trades[col] = pd.to_datetime(trades[col], errors="coerce")
    # SQLite hands booleans back as 0/1.
    for col in ("is_partial_close", "is_averaging_short", "is_split"):
        if col in trades.columns:
            trades[col] = trades[col].astype(bool)
    return trades


# ---------------------------------------------------------------------------
# Read-only rollups
# ---------------------------------------------------------------------------

def _portfolio_trades(portfolio_id) -> list:
    session = get_session()
    try:
        store = SqlTradeStore(session)
        _require_portfolio(store, portfolio_id)
        trades = store.find_many(portfolio_id=str(portfolio_id))
        session.expunge_all()
        return trades
    finally:
        session.close()


def portfolio_stats(portfolio_id) -> stats.PortfolioStats:
    return stats.portfolio_stats(_portfolio_trades(portfolio_id))


def open_positions(portfolio_id, prices, exit_fee=0.0) -> stats.OpenPositions:
    return stats.open_positions(_portfolio_trades(portfolio_id), prices, exit_fee)


def calculate_fee(portfolio_id, fee_type="entry", trade_id=None, now=None):
    """Exchange fee tier from the portfolio's 30-day volume.

    For an entry fee the trade being entered is left out of the volume.
    """
    fee_type = str(fee_type or "entry").strip().lower()
    if fee_type not in ("entry", "exit"):
        raise TradeValidationError(f"fee type must be 'entry' or 'exit' (got {fee_type!r})")
    exclude = trade_id if fee_type == "entry" else None
    volume = thirty_day_volume(_portfolio_trades(portfolio_id), _to_datetime(now, _utcnow()), exclude_id=exclude)
    return fee_level(volume)
