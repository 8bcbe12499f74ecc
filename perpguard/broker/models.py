"""Broker data models — typed representations of exchange API objects."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Candle:
    """A single candlestick bar."""

    time: int  # open time, epoch milliseconds
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class Balance:
    """USDT margin balance of the futures account."""

    free: float
    total: float


@dataclass(frozen=True)
class ExchangePosition:
    """A live exposure as reported by the exchange."""

    symbol: str  # pair notation, e.g. "BTC/USDT"
    contracts: float
    entry_price: float
    mark_price: float
    notional: float
    leverage: float
    liquidation_price: Optional[float] = None
    initial_margin: float = 0.0
    unrealized_pnl: float = 0.0


@dataclass(frozen=True)
class OrderResult:
    """Fill report for a submitted order."""

    order_id: str
    symbol: str
    side: str
    order_type: str
    amount: float
    filled: float
    average_price: Optional[float]
    status: str
    stop_price: Optional[float] = None
    reduce_only: bool = False


@dataclass(frozen=True)
class OpenOrder:
    """A resting order (protection orders are STOP_MARKET / TAKE_PROFIT_MARKET)."""

    order_id: str
    symbol: str
    order_type: str
    side: str
    stop_price: Optional[float]
    reduce_only: bool


@dataclass(frozen=True)
class OpenInterest:
    amount: float


@dataclass(frozen=True)
class FundingRate:
    rate: float
    next_funding_time: Optional[int] = None
