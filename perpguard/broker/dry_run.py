"""Dry-run gateway — simulated order flow over a real market-data source.

Market reads (candles, ticker, open interest, funding) pass straight
through to the wrapped gateway.  Every order-mutating call is filled at the
current ticker price with a synthetic ``DRY_RUN_`` order id, and simulated
exposures and protection orders are kept in memory so the rest of the
engine sees a consistent exchange.  The reported balance is the real one
adjusted by simulated P&L and the margin held by simulated exposures.
Exposures still open in the ledger can be handed in at start-up so a
restarted dry run resumes where it left off.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterable

from perpguard.broker.base import STOP_MARKET, TAKE_PROFIT_MARKET, ExchangeGateway
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
from perpguard.models.ledger import Position

logger = logging.getLogger("perpguard.broker")

DRY_RUN_PREFIX = "DRY_RUN_"


def _synthetic_order_id() -> str:
    return f"{DRY_RUN_PREFIX}{uuid.uuid4().hex[:16]}"


@dataclass
class _SimulatedExposure:
    contracts: float = 0.0
    entry_price: float = 0.0
    leverage: int = 1
    protection: dict[str, OpenOrder] = field(default_factory=dict)


class DryRunGateway:
    """Wraps an ``ExchangeGateway`` and simulates all order calls.

    Args:
        inner: The gateway used for market data and the starting balance.
        maintenance_margin_rate: Used to report an approximate liquidation
            price on simulated positions.
        open_positions: Ledger positions still open from an earlier run;
            each is re-created as a simulated exposure with its stop-loss
            and take-profit orders.
    """

    def __init__(
        self,
        inner: ExchangeGateway,
        maintenance_margin_rate: float = 0.004,
        open_positions: Iterable[Position] = (),
    ) -> None:
        self._inner = inner
        self._mmr = maintenance_margin_rate
        self._exposures: dict[Instrument, _SimulatedExposure] = {}
        self._realized_pnl = 0.0
        for position in open_positions:
            self._restore(position)

    def _exposure(self, instrument: Instrument) -> _SimulatedExposure:
        return self._exposures.setdefault(instrument, _SimulatedExposure())

    def _restore(self, position: Position) -> None:
        instrument = Instrument.parse(position.symbol)
        exp = self._exposure(instrument)
        exp.contracts = position.entry_amount
        exp.entry_price = position.entry_price
        exp.leverage = position.entry_leverage or 1
        for order_type, stop in (
            (STOP_MARKET, position.current_stop_loss),
            (TAKE_PROFIT_MARKET, position.current_take_profit),
        ):
            if stop is None:
                continue
            order_id = _synthetic_order_id()
            exp.protection[order_id] = OpenOrder(
                order_id=order_id,
                symbol=instrument.pair,
                order_type=order_type,
                side="sell",
                stop_price=stop,
                reduce_only=True,
            )
        logger.info(
            "[DRY_RUN] restored %s %.8f @ %.4f (%dx) from ledger position %d",
            instrument.pair, exp.contracts, exp.entry_price, exp.leverage, position.id,
        )

    # ── Balance ──────────────────────────────────────────────────────────

    async def fetch_balance(self) -> Balance:
        """Real balance plus simulated P&L, less margin held by simulated exposures."""
        balance = await self._inner.fetch_balance()
        unrealized = 0.0
        margin = 0.0
        for inst, exp in self._exposures.items():
            if exp.contracts <= 0:
                continue
            mark = await self._inner.fetch_ticker(inst)
            unrealized += (mark - exp.entry_price) * exp.contracts
            margin += exp.contracts * mark / exp.leverage
        total = balance.total + self._realized_pnl + unrealized
        free = balance.free + self._realized_pnl + unrealized - margin
        return Balance(free=max(0.0, free), total=total)

    # ── Pass-through reads ───────────────────────────────────────────────

    async def fetch_ticker(self, instrument: Instrument) -> float:
        return await self._inner.fetch_ticker(instrument)

    async def fetch_ohlcv(self, instrument: Instrument, timeframe: str, limit: int) -> list[Candle]:
        return await self._inner.fetch_ohlcv(instrument, timeframe, limit)

    async def fetch_open_interest(self, instrument: Instrument) -> OpenInterest:
        return await self._inner.fetch_open_interest(instrument)

    async def fetch_funding_rate(self, instrument: Instrument) -> FundingRate:
        return await self._inner.fetch_funding_rate(instrument)

    # ── Simulated state ──────────────────────────────────────────────────

    async def fetch_positions(self, instruments: list[Instrument]) -> list[ExchangePosition]:
        """Simulated exposures marked to the current ticker."""
        positions: list[ExchangePosition] = []
        for inst in instruments:
            exp = self._exposures.get(inst)
            if exp is None or exp.contracts <= 0:
                continue
            mark = await self._inner.fetch_ticker(inst)
            notional = exp.contracts * mark
            positions.append(
                ExchangePosition(
                    symbol=inst.pair,
                    contracts=exp.contracts,
                    entry_price=exp.entry_price,
                    mark_price=mark,
                    notional=notional,
                    leverage=float(exp.leverage),
                    liquidation_price=exp.entry_price * (1 - 1 / exp.leverage + self._mmr),
                    initial_margin=notional / exp.leverage,
                    unrealized_pnl=(mark - exp.entry_price) * exp.contracts,
                )
            )
        return positions

    async def fetch_open_orders(self, instrument: Instrument) -> list[OpenOrder]:
        exp = self._exposures.get(instrument)
        return list(exp.protection.values()) if exp else []

    # ── Simulated mutations ──────────────────────────────────────────────

    async def set_leverage(self, leverage: int, instrument: Instrument) -> None:
        self._exposure(instrument).leverage = int(leverage)
        logger.info("[DRY_RUN] set leverage %dx on %s", leverage, instrument.pair)

    async def create_market_order(
        self,
        instrument: Instrument,
        side: str,
        amount: float,
        reduce_only: bool = False,
    ) -> OrderResult:
        """Fill the whole amount at the current ticker price."""
        price = await self._inner.fetch_ticker(instrument)
        exp = self._exposure(instrument)
        side = side.lower()

        if side == "buy" and not reduce_only:
            total = exp.contracts + amount
            exp.entry_price = (
                (exp.entry_price * exp.contracts + price * amount) / total
            )
            exp.contracts = total
        elif side == "sell":
            sold = min(amount, exp.contracts)
            self._realized_pnl += (price - exp.entry_price) * sold
            exp.contracts = max(0.0, exp.contracts - amount)
            if exp.contracts == 0:
                exp.entry_price = 0.0

        order_id = _synthetic_order_id()
        logger.info(
            "[DRY_RUN] market %s %.8f %s @ %.4f (id=%s)",
            side, amount, instrument.pair, price, order_id,
        )
        return OrderResult(
            order_id=order_id,
            symbol=instrument.pair,
            side=side,
            order_type="MARKET",
            amount=amount,
            filled=amount,
            average_price=price,
            status="FILLED",
            reduce_only=reduce_only,
        )

    async def create_order(
        self,
        instrument: Instrument,
        order_type: str,
        side: str,
        stop_price: float,
        reduce_only: bool = True,
        amount: float | None = None,
    ) -> OrderResult:
        order_id = _synthetic_order_id()
        order = OpenOrder(
            order_id=order_id,
            symbol=instrument.pair,
            order_type=order_type,
            side=side.lower(),
            stop_price=stop_price,
            reduce_only=reduce_only,
        )
        self._exposure(instrument).protection[order_id] = order
        logger.info(
            "[DRY_RUN] %s %s %s stop=%.4f (id=%s)",
            order_type, side, instrument.pair, stop_price, order_id,
        )
        return OrderResult(
            order_id=order_id,
            symbol=instrument.pair,
            side=side.lower(),
            order_type=order_type,
            amount=amount or 0.0,
            filled=0.0,
            average_price=None,
            status="NEW",
            stop_price=stop_price,
            reduce_only=reduce_only,
        )

    async def cancel_order(self, order_id: str, instrument: Instrument) -> None:
        exp = self._exposures.get(instrument)
        if exp is not None:
            exp.protection.pop(order_id, None)
        logger.info("[DRY_RUN] cancel %s on %s", order_id, instrument.pair)
