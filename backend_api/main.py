from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from database.models import init_db
from logic import services
from logic.errors import InvariantViolationError, TradeNotFoundError, TradeValidationError

from .schemas import (
    FeeLevelOut,
    PortfolioCreateRequest,
    ShortOpenRequest,
    TradeCloseRequest,
    TradeCreateRequest,
    TradeFillRequest,
    TradePartialCloseRequest,
    TradeSplitRequest,
    TradeUpdateRequest,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Coin Journal API", version="1.0.0")

# CORS: default to permissive for local dev, but allow locking down via env.
_cors_origins_raw = os.getenv("CORS_ALLOW_ORIGINS", "*")
_cors_origins = [o.strip() for o in _cors_origins_raw.split(",") if o.strip()]
_cors_is_wildcard = len(_cors_origins) == 1 and _cors_origins[0] == "*"
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    # Credentials cannot be used with wildcard origins.
    allow_credentials=False if _cors_is_wildcard else True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def _startup() -> None:
    init_db()


def _df_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    if df is None or df.empty:
        return []
    out: List[Dict[str, Any]] = []
    for rec in df.to_dict(orient="records"):
        cleaned: Dict[str, Any] = {}
        for k, v in rec.items():
            if v is pd.NaT or (isinstance(v, float) and pd.isna(v)):
                cleaned[k] = None
            elif isinstance(v, (pd.Timestamp, datetime)):
                cleaned[k] = pd.to_datetime(v).to_pydatetime().isoformat()
            else:
                cleaned[k] = v
        out.append(cleaned)
    return out


def _call(fn, *args, **kwargs):
    """Run a service call, mapping engine errors to HTTP status codes."""
    try:
        return fn(*args, **kwargs)
    except TradeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TradeValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InvariantViolationError as e:
        logger.error("invariant violated in %s: %s", getattr(fn, "__name__", fn), e)
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


# --- Portfolios ---

@app.post("/portfolios")
def create_portfolio(req: PortfolioCreateRequest) -> Dict[str, Any]:
    return _call(
        services.create_portfolio,
        req.name,
        [c.model_dump() for c in req.coins],
        total_deposit=req.total_deposit,
        initial_coins=[c.model_dump() for c in req.initial_coins] if req.initial_coins else None,
        user_id=req.user_id,
    )


@app.get("/portfolios/{portfolio_id}")
def get_portfolio(portfolio_id: str) -> Dict[str, Any]:
    return _call(services.get_portfolio, portfolio_id)


@app.get("/portfolios/{portfolio_id}/trades", response_model=List[Dict[str, Any]])
def list_trades(
    portfolio_id: str,
    status: Optional[str] = None,
    trade_type: Optional[str] = None,
    coin_symbol: Optional[str] = None,
) -> List[Dict[str, Any]]:
    return _call(services.list_trades, portfolio_id, status=status, trade_type=trade_type, coin_symbol=coin_symbol)


@app.get("/portfolios/{portfolio_id}/export", response_model=List[Dict[str, Any]])
def export_trades(portfolio_id: str) -> List[Dict[str, Any]]:
    _call(services.get_portfolio, portfolio_id)
    return _df_records(services.load_trades(portfolio_id))


@app.post("/portfolios/{portfolio_id}/trades")
def create_trade(portfolio_id: str, req: TradeCreateRequest) -> Dict[str, Any]:
    return _call(
        services.create_trade,
        portfolio_id,
        req.coin_symbol,
        req.entry_price,
        req.amount,
        req.sum_plus_fee,
        entry_fee=req.entry_fee,
        deposit_percent=req.deposit_percent,
        trade_type=req.trade_type,
        status=req.status,
        open_date=req.open_date,
        filled_date=req.filled_date,
        parent_trade_id=req.parent_trade_id,
        is_averaging_short=req.is_averaging_short,
    )


@app.post("/portfolios/{portfolio_id}/shorts")
def open_short(portfolio_id: str, req: ShortOpenRequest) -> Dict[str, Any]:
    return _call(
        services.open_short,
        portfolio_id,
        amount=req.amount,
        sale_price=req.sale_price,
        sale_fee=req.sale_fee,
        parent_trade_id=req.parent_trade_id,
        coin_symbol=req.coin_symbol,
        sum_plus_fee=req.sum_plus_fee,
        deposit_percent=req.deposit_percent,
        status=req.status,
        open_date=req.open_date,
        filled_date=req.filled_date,
        is_averaging_short=req.is_averaging_short,
    )


@app.get("/portfolios/{portfolio_id}/stats")
def portfolio_stats(portfolio_id: str) -> Dict[str, Any]:
    result = _call(services.portfolio_stats, portfolio_id)
    out = asdict(result)
    out["fees"]["total"] = result.fees.total
    return out


@app.get("/portfolios/{portfolio_id}/calculate-fee", response_model=FeeLevelOut)
def calculate_fee(
    portfolio_id: str,
    type: str = Query("entry"),
    trade_id: Optional[str] = Query(None, alias="tradeId"),
) -> FeeLevelOut:
    res = _call(services.calculate_fee, portfolio_id, fee_type=type, trade_id=trade_id)
    nxt = res.next_level
    return FeeLevelOut(
        level=res.level,
        fee_percent=res.fee_percent,
        current_volume=res.current_volume,
        next_level=nxt.level if nxt else None,
        next_level_min_volume=nxt.min_volume if nxt else None,
        next_level_remaining=nxt.remaining if nxt else None,
    )


# --- Trades ---

@app.get("/trades/{trade_id}")
def get_trade(trade_id: str) -> Dict[str, Any]:
    return _call(services.get_trade, trade_id)


@app.put("/trades/{trade_id}")
def update_trade(trade_id: str, req: TradeUpdateRequest) -> Dict[str, Any]:
    return _call(services.edit_trade, trade_id, **req.model_dump())


@app.post("/trades/{trade_id}/fill")
def fill_trade(trade_id: str, req: TradeFillRequest) -> Dict[str, Any]:
    return _call(
        services.fill_trade,
        trade_id,
        req.sum_plus_fee,
        req.amount,
        filled_date=req.filled_date,
        entry_price=req.entry_price,
    )


@app.post("/trades/{trade_id}/close")
def close_trade(trade_id: str, req: TradeCloseRequest) -> Dict[str, Any]:
    return _call(
        services.close_trade,
        trade_id,
        req.exit_price,
        exit_fee=req.exit_fee,
        close_date=req.close_date,
        entry_price=req.entry_price,
        amount=req.amount,
        sum_plus_fee=req.sum_plus_fee,
    )


@app.post("/trades/{trade_id}/partial-close")
def partial_close_trade(trade_id: str, req: TradePartialCloseRequest) -> Dict[str, Any]:
    return _call(
        services.partial_close_trade,
        trade_id,
        req.amount,
        req.exit_price,
        exit_fee=req.exit_fee,
        close_date=req.close_date,
    )


@app.post("/trades/{trade_id}/split")
def split_trade(trade_id: str, req: TradeSplitRequest) -> Dict[str, Any]:
    return _call(services.split_trade, trade_id, req.amounts)


@app.delete("/trades/{trade_id}")
def delete_trade(trade_id: str) -> Dict[str, str]:
    _call(services.delete_trade, trade_id)
    return {"status": "ok"}
