from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class CoinConfig(BaseModel):
    symbol: str = Field(min_length=1)
    percentage: float
    decimalPlaces: int = 8


class InitialCoin(BaseModel):
    symbol: str = Field(min_length=1)
    amount: float


class PortfolioCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    coins: List[CoinConfig]
    total_deposit: float = 0.0
    initial_coins: Optional[List[InitialCoin]] = None
    user_id: Optional[str] = None


class TradeCreateRequest(BaseModel):
    coin_symbol: str
    entry_price: float
    amount: float
    sum_plus_fee: float
    entry_fee: float = 0.0
    deposit_percent: float = 0.0
    trade_type: str = "LONG"
    status: str = "OPEN"
    open_date: Optional[datetime] = None
    filled_date: Optional[datetime] = None
    parent_trade_id: Optional[str] = None
    is_averaging_short: bool = False


class ShortOpenRequest(BaseModel):
    amount: float
    sale_price: float
    sale_fee: float = 0.0
    parent_trade_id: Optional[str] = None
    coin_symbol: Optional[str] = None
    # Sale proceeds; defaults to amount × sale_price net of the sale fee.
    sum_plus_fee: Optional[float] = None
    deposit_percent: Optional[float] = None
    status: str = "OPEN"
    open_date: Optional[datetime] = None
    filled_date: Optional[datetime] = None
    is_averaging_short: bool = False


class TradeFillRequest(BaseModel):
    sum_plus_fee: float
    amount: float
    filled_date: Optional[datetime] = None
    entry_price: Optional[float] = None


class TradeCloseRequest(BaseModel):
    exit_price: float
    exit_fee: float = 0.0
    close_date: Optional[datetime] = None
    entry_price: Optional[float] = None
    amount: Optional[float] = None
    sum_plus_fee: Optional[float] = None


class TradePartialCloseRequest(BaseModel):
    amount: float
    exit_price: float
    exit_fee: float = 0.0
    close_date: Optional[datetime] = None


class TradeSplitRequest(BaseModel):
    amounts: List[float]


class TradeUpdateRequest(BaseModel):
    entry_price: Optional[float] = None
    amount: Optional[float] = None
    sum_plus_fee: Optional[float] = None
    entry_fee: Optional[float] = None
    deposit_percent: Optional[float] = None
    open_date: Optional[datetime] = None
    filled_date: Optional[datetime] = None


class FeeLevelOut(BaseModel):
    level: str
    fee_percent: float
    current_volume: float
    next_level: Optional[str] = None
    next_level_min_volume: Optional[float] = None
    next_level_remaining: Optional[float] = None
