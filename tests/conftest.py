from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import models as dbmodels
from database.models import Trade, TradeStatus, TradeType
import logic.services as services


@pytest.fixture(scope='function')
def db_engine_and_session(monkeypatch):
    """Provide an in-memory SQLite engine and Session for tests and patch services to use them."""
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Session = sessionmaker(bind=engine)
    # Create tables
    dbmodels.Base.metadata.create_all(engine)

    # Monkeypatch the services module to use this engine/session
    monkeypatch.setattr(services, 'engine', engine)
    monkeypatch.setattr(services, 'Session', Session)

    yield engine, Session
    engine.dispose()


@pytest.fixture
def portfolio(db_engine_and_session):
    return services.create_portfolio(
        "Main",
        [
            {"symbol": "BTC", "percentage": 60, "decimalPlaces": 8},
            {"symbol": "ETH", "percentage": 40, "decimalPlaces": 6},
        ],
        total_deposit=10000,
        initial_coins=[{"symbol": "ETH", "amount": 2.0}],
        portfolio_id="p1",
    )


def make_trade(**overrides) -> Trade:
    """In-memory FILLED LONG trade (0.01 BTC @ 100000, 1010 USD with fee)."""
    fields = dict(
        id="t1",
        portfolio_id="p1",
        coin_symbol="BTC",
        trade_type=TradeType.LONG,
        status=TradeStatus.FILLED,
        entry_price=100000.0,
        deposit_percent=10.0,
        entry_fee=1.0,
        sum_plus_fee=1010.0,
        amount=0.01,
        exit_price=None,
        exit_fee=None,
        open_date=datetime(2025, 1, 1),
        filled_date=datetime(2025, 1, 1),
        close_date=None,
        initial_entry_price=100000.0,
        initial_amount=0.01,
        original_amount=0.01,
        remaining_amount=0.01,
        is_partial_close=False,
        closed_amount=None,
        parent_trade_id=None,
        reserved_cost_basis=None,
        is_averaging_short=False,
        is_split=False,
        split_from_trade_id=None,
        split_group_id=None,
    )
    fields.update(overrides)
    # Amount overrides carry over to the tracking fields unless given too.
    if "amount" in overrides:
        for k in ("original_amount", "remaining_amount", "initial_amount"):
            if k not in overrides:
                fields[k] = overrides["amount"]
    return Trade(**fields)


@pytest.fixture
def trade_factory():
    return make_trade
