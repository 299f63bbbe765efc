from __future__ import annotations

from typing import Optional, Protocol

from sqlalchemy.orm import Session

from .models import Portfolio, Trade


class TradeStore(Protocol):
    """Persistence boundary the accounting services work against.

    Records are linked by plain ids (``parent_trade_id``,
    ``split_from_trade_id``), so every lookup goes through `find_by_id`.
    """

    def find_by_id(self, trade_id: str, *, for_update: bool = False) -> Optional[Trade]: ...

    def insert(self, trade: Trade) -> Trade: ...

    def update(self, trade: Trade) -> Trade: ...

    def delete(self, trade_id: str) -> None: ...

    def find_many(self, **filters) -> list[Trade]: ...

    def find_portfolio(self, portfolio_id: str) -> Optional[Portfolio]: ...


class SqlTradeStore:
    """`TradeStore` over an open SQLAlchemy session.

    The store never commits; the caller owns the transaction.
    """

    def __init__(self, session: Session):
        self.session = session

    def find_by_id(self, trade_id: str, *, for_update: bool = False) -> Optional[Trade]:
        if not trade_id:
            return None
        q = self.session.query(Trade).filter(Trade.id == str(trade_id))
        if for_update:
            q = q.with_for_update()
        return q.first()

    def insert(self, trade: Trade) -> Trade:
        self.session.add(trade)
        self.session.flush()
        return trade

    def update(self, trade: Trade) -> Trade:
        self.session.add(trade)
        self.session.flush()
        return trade

    def delete(self, trade_id: str) -> None:
        trade = self.find_by_id(trade_id)
        if trade is not None:
            self.session.delete(trade)
            self.session.flush()

    def find_many(self, **filters) -> list[Trade]:
        """Equality filters on Trade columns, e.g. ``find_many(portfolio_id="p1", status=TradeStatus.FILLED)``."""
        q = self.session.query(Trade)
        for name, value in filters.items():
            column = getattr(Trade, name, None)
            if column is None:
                raise ValueError(f"unknown trade field: {name}")
            q = q.filter(column == value)
        return q.order_by(Trade.open_date.desc(), Trade.id).all()

    def find_portfolio(self, portfolio_id: str) -> Optional[Portfolio]:
        if not portfolio_id:
            return None
        return self.session.query(Portfolio).filter(Portfolio.id == str(portfolio_id)).first()
