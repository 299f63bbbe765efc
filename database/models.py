from __future__ import annotations

import os
from functools import lru_cache

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, Float, ForeignKey, Index, String, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
import enum
from datetime import datetime


Base = declarative_base()

# --- ENUMS ---
class TradeType(enum.Enum):
    LONG = "LONG"
    SHORT = "SHORT"

class TradeStatus(enum.Enum):
    OPEN = "OPEN"
    FILLED = "FILLED"
    CLOSED = "CLOSED"

# --- TABLES ---
class Portfolio(Base):
    __tablename__ = 'portfolios'
    id = Column(String, primary_key=True)
    # Owner id; ownership checks live in the HTTP layer.
    user_id = Column(String, nullable=True, index=True)
    name = Column(String, nullable=False)
    total_deposit = Column(Float, nullable=False, default=0.0)
    # [{"symbol": "BTC", "percentage": 60, "decimalPlaces": 8}, ...]
    coins = Column(JSON, nullable=False, default=list)
    # [{"symbol": "BTC", "amount": 0.5}, ...] coin held outside any LONG trade
    initial_coins = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def coin(self, symbol: str) -> dict | None:
        sym = str(symbol or "").strip().upper()
        for c in self.coins or []:
            if str(c.get("symbol", "")).upper() == sym:
                return c
        return None

    def initial_coin_amount(self, symbol: str) -> float | None:
        sym = str(symbol or "").strip().upper()
        for c in self.initial_coins or []:
            if str(c.get("symbol", "")).upper() == sym:
                return float(c.get("amount") or 0.0)
        return None


class Trade(Base):
    __tablename__ = 'trades'
    id = Column(String, primary_key=True)
    portfolio_id = Column(String, ForeignKey('portfolios.id'), nullable=False, index=True)
    coin_symbol = Column(String, nullable=False)
    trade_type = Column(Enum(TradeType), nullable=False, default=TradeType.LONG)
    status = Column(Enum(TradeStatus), nullable=False, default=TradeStatus.OPEN, index=True)
    # Entry economics. For SHORT, entry_price is the sale price and
    # sum_plus_fee the sale proceeds.
    entry_price = Column(Float, nullable=False)
    deposit_percent = Column(Float, nullable=False, default=0.0)
    entry_fee = Column(Float, nullable=False, default=0.0)
    sum_plus_fee = Column(Float, nullable=False)
    amount = Column(Float, nullable=False)
    # Exit economics (closing only)
    exit_price = Column(Float, nullable=True)
    exit_fee = Column(Float, nullable=True)
    open_date = Column(DateTime, nullable=False)
    filled_date = Column(DateTime, nullable=True)
    close_date = Column(DateTime, nullable=True)
    # Write-once provenance: never touched after insert.
    initial_entry_price = Column(Float, nullable=False)
    initial_amount = Column(Float, nullable=False)
    # Partial-close tracking
    original_amount = Column(Float, nullable=False)
    remaining_amount = Column(Float, nullable=False)
    is_partial_close = Column(Boolean, nullable=False, default=False)
    closed_amount = Column(Float, nullable=True)
    # Plain id back-reference (partial-close source or SHORT parent LONG).
    parent_trade_id = Column(String, nullable=True, index=True)
    # Cost basis a linked SHORT moved out of its parent LONG.
    reserved_cost_basis = Column(Float, nullable=True)
    is_averaging_short = Column(Boolean, nullable=False, default=False)
    # Split tracking
    is_split = Column(Boolean, nullable=False, default=False)
    split_from_trade_id = Column(String, nullable=True)
    split_group_id = Column(String, nullable=True, index=True)

    def __repr__(self) -> str:
        return (
            f"<Trade {self.id} {self.trade_type.value if self.trade_type else '?'} "
            f"{self.coin_symbol} {self.status.value if self.status else '?'} amount={self.amount}>"
        )


Index("ix_trades_portfolio_status", Trade.portfolio_id, Trade.status)
Index("ix_trades_portfolio_coin", Trade.portfolio_id, Trade.coin_symbol)


# Database Connection Setup
@lru_cache(maxsize=1)
def get_engine() -> Engine:
    url = os.getenv("DATABASE_URL", "sqlite:///coin_journal.db")

    if url.startswith("sqlite"):
        # Use NullPool for sqlite to avoid cross-thread pooling issues in dev.
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=NullPool,
        )

    # Postgres / MySQL / etc.
    pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
    max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    pool_timeout = int(os.getenv("DB_POOL_TIMEOUT", "30"))

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
    )


def reset_engine_cache() -> None:
    """Clear cached engine (useful for tests)."""
    get_engine.cache_clear()

def init_db():
    engine = get_engine()
    url = os.getenv("DATABASE_URL", "sqlite:///coin_journal.db")
    auto_default = "1" if url.startswith("sqlite") else "0"
    auto_create = os.getenv("AUTO_CREATE_DB", auto_default)
    if str(auto_create).strip() in {"1", "true", "TRUE", "yes", "YES"}:
        Base.metadata.create_all(engine)
    return engine
