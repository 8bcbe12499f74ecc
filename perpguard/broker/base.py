"""Exchange gateway protocol.

The narrow client-side contract the core depends on.  ``BinanceFuturesClient``
implements it against the live API, ``DryRunGateway`` wraps any
implementation and simulates the order-mutating calls.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from perpguard.broker.models import (
    Balance,
    Candle,
    ExchangePosition,
    FundingRate,
    OpenInterest,
    OpenOrder,
    OrderResult,
)
from perpguard.models.instrument import Instrument


STOP_MARKET = "STOP_MARKET"
TAKE_PROFIT_MARKET = "TAKE_PROFIT_MARKET"
PROTECTION_ORDER_TYPES = frozenset({STOP_MARKET, TAKE_PROFIT_MARKET})


@runtime_checkable
class ExchangeGateway(Protocol):
    """Interface every exchange gateway must satisfy.

    All calls may raise ``GatewayError``; none return silent defaults.
    """

    async def fetch_balance(self) -> Balance: ...

    async def fetch_positions(
        self, instruments: list[Instrument]
    ) -> list[ExchangePosition]: ...

    async def fetch_ticker(self, instrument: Instrument) -> float: ...

    async def fetch_ohlcv(
        self, instrument: Instrument, timeframe: str, limit: int
    ) -> list[Candle]: ...

    async def fetch_open_interest(self, instrument: Instrument) -> OpenInterest: ...

    async def fetch_funding_rate(self, instrument: Instrument) -> FundingRate: ...

    async def set_leverage(self, leverage: int, instrument: Instrument) -> None: ...

    async def create_market_order(
        self,
        instrument: Instrument,
        side: str,
        amount: float,
        reduce_only: bool = False,
    ) -> OrderResult: ...

    async def create_order(
        self,
        instrument: Instrument,
        order_type: str,
        side: str,
        stop_price: float,
        reduce_only: bool = True,
    ) -> OrderResult: ...

    async def fetch_open_orders(self, instrument: Instrument) -> list[OpenOrder]: ...

    async def cancel_order(self, order_id: str, instrument: Instrument) -> None: ...
