"""Execution engine — admits, executes and records one decision per trade.

Owns every Position and Trade mutation.  Trade lifecycle:
PENDING → EXECUTING → FILLED | PARTIAL | FAILED.  Guard rejections and
gateway faults both end in FAILED with a recorded reason; neither is
raised to the caller.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from perpguard.broker.base import (
    PROTECTION_ORDER_TYPES,
    STOP_MARKET,
    TAKE_PROFIT_MARKET,
    ExchangeGateway,
)
from perpguard.config import SafetyLimits
from perpguard.execution.guards import BUY_GUARDS, BuyContext, Guard, run_guards
from perpguard.models.decision import Decision, Operation
from perpguard.models.instrument import Instrument
from perpguard.models.ledger import ExecutionResult, PositionStatus, TradeStatus
from perpguard.repos.position_repo import PositionRepo
from perpguard.repos.trade_repo import TradeRepo
from perpguard.risk.account_profile import AccountRiskProfile

logger = logging.getLogger("perpguard.executor")

NO_POSITION_HOLD_NOTE = "No open position to update. Treated as Wait."
_FULL_EXIT_PCT = 100.0
_FILL_TOLERANCE = 1e-9


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(now: datetime) -> datetime:
    """Most recent Sunday 00:00 in *now*'s timezone."""
    days_since_sunday = (now.weekday() + 1) % 7
    return start_of_day(now) - timedelta(days=days_since_sunday)


class ExecutionEngine:
    """Runs the buy / sell / hold pipelines against a gateway.

    The engine is mode-agnostic: pass a ``DryRunGateway`` to simulate
    fills with identical ledger transitions.

    Args:
        gateway: Exchange gateway (live or dry-run).
        position_repo: Position ledger.
        trade_repo: Trade ledger.
        limits: Safety limits for the buy guards.
        guards: Ordered buy guards.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        position_repo: PositionRepo,
        trade_repo: TradeRepo,
        limits: SafetyLimits = SafetyLimits(),
        guards: tuple[Guard, ...] = BUY_GUARDS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._gateway = gateway
        self._positions = position_repo
        self._trades = trade_repo
        self._limits = limits
        self._guards = guards
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cycle_notional = 0.0
        self._cycle_margin = 0.0

    def begin_cycle(self) -> None:
        """Reset exposure admitted since the cycle's account snapshot."""
        self._cycle_notional = 0.0
        self._cycle_margin = 0.0

    # ── Dispatch ─────────────────────────────────────────────────────────

    async def execute(
        self,
        trade_id: int,
        instrument: Instrument,
        decision: Decision,
        profile: AccountRiskProfile,
    ) -> ExecutionResult:
        """Run *decision* for the PENDING trade *trade_id*.

        Never raises for guard rejections or gateway faults; both are
        recorded on the trade and returned as a failed result.
        """
        self._trades.update_trade(trade_id, status=TradeStatus.EXECUTING)
        logger.info(
            "Trade %d %s %s executing", trade_id, decision.operation.value, instrument.pair
        )
        try:
            if decision.operation is Operation.BUY:
                return await self._buy(trade_id, instrument, decision, profile)
            if decision.operation is Operation.SELL:
                return await self._sell(trade_id, instrument, decision)
            return await self._hold(trade_id, instrument, decision)
        except Exception as exc:
            logger.exception("Trade %d %s failed with an error", trade_id, instrument.pair)
            return self._fail(trade_id, f"{type(exc).__name__}: {exc}")

    def _fail(self, trade_id: int, reason: str) -> ExecutionResult:
        self._trades.update_trade(trade_id, status=TradeStatus.FAILED, error=reason)
        logger.warning("Trade %d FAILED: %s", trade_id, reason)
        return ExecutionResult(success=False, error=reason)

    def _now(self) -> str:
        return self._clock().isoformat()

    # ── Buy ──────────────────────────────────────────────────────────────

    def build_buy_context(
        self,
        instrument: Instrument,
        decision: Decision,
        entry_price: float,
        profile: AccountRiskProfile,
    ) -> BuyContext:
        now = self._clock()
        daily = self._positions.list_closed_since(start_of_day(now))
        weekly = self._positions.list_closed_since(start_of_week(now))
        return BuyContext(
            symbol=instrument.pair,
            entry_price=entry_price,
            amount=decision.buy.amount,
            leverage=decision.buy.leverage,
            stop_loss=decision.stop_loss,
            take_profit=decision.take_profit,
            free_cash=profile.available_cash - self._cycle_margin,
            total_equity=profile.total_equity,
            open_position=self._positions.get_open_position(instrument.pair),
            live_notional=profile.risk.total_notional + self._cycle_notional,
            daily_realized_pnl=sum(p.realized_pnl for p in daily),
            weekly_realized_pnl=sum(p.realized_pnl for p in weekly),
            max_risk_fraction=min(self._limits.max_risk_fraction, profile.max_risk_fraction),
            limits=self._limits,
        )

    async def _buy(
        self,
        trade_id: int,
        instrument: Instrument,
        decision: Decision,
        profile: AccountRiskProfile,
    ) -> ExecutionResult:
        price = await self._gateway.fetch_ticker(instrument)
        ctx = self.build_buy_context(instrument, decision, price, profile)
        outcome = run_guards(self._guards, ctx)
        if not outcome.passed:
            return self._fail(trade_id, f"{outcome.failed_guard}: {outcome.reason}")

        await self._gateway.set_leverage(ctx.leverage, instrument)
        order = await self._gateway.create_market_order(
            instrument, "buy", ctx.amount, reduce_only=False
        )
        if order.filled <= 0:
            return self._fail(trade_id, f"Buy order {order.order_id} was not filled ({order.status})")

        fill_price = order.average_price or price
        position_id = self._positions.create_position(
            symbol=instrument.pair,
            entry_price=fill_price,
            entry_amount=order.filled,
            entry_leverage=ctx.leverage,
            entry_order_id=order.order_id,
            stop_loss=ctx.stop_loss,
            take_profit=ctx.take_profit,
            opened_at=self._now(),
        )
        self._cycle_notional += order.filled * fill_price
        self._cycle_margin += order.filled * fill_price / ctx.leverage

        status = TradeStatus.FILLED if order.filled >= ctx.amount else TradeStatus.PARTIAL
        self._trades.update_trade(
            trade_id,
            status=status,
            exchange_order_id=order.order_id,
            executed_price=fill_price,
            executed_amount=order.filled,
            executed_at=self._now(),
            position_id=position_id,
        )
        logger.info(
            "Trade %d BUY %s %.8f @ %.4f %dx -> position %d (%s)",
            trade_id, instrument.pair, order.filled, fill_price, ctx.leverage,
            position_id, status.value,
        )

        protection_error = None
        if ctx.stop_loss is not None or ctx.take_profit is not None:
            try:
                await self._replace_protection(instrument, ctx.stop_loss, ctx.take_profit)
            except Exception as exc:
                protection_error = f"Protection orders failed: {exc}"
                logger.error("Trade %d %s: %s", trade_id, instrument.pair, protection_error)
                self._trades.update_trade(trade_id, error=protection_error)

        return ExecutionResult(
            success=True,
            order_id=order.order_id,
            executed_price=fill_price,
            executed_amount=order.filled,
            error=protection_error,
        )

    # ── Sell ─────────────────────────────────────────────────────────────

    async def _sell(self, trade_id: int, instrument: Instrument, decision: Decision) -> ExecutionResult:
        position = self._positions.get_open_position(instrument.pair)
        if position is None:
            return self._fail(trade_id, f"No open position for {instrument.pair}")

        percentage = decision.sell.percentage
        full_exit = percentage >= _FULL_EXIT_PCT
        amount = position.entry_amount if full_exit else position.entry_amount * percentage / 100.0
        order = await self._gateway.create_market_order(
            instrument, "sell", amount, reduce_only=True
        )
        if order.filled <= 0:
            return self._fail(trade_id, f"Sell order {order.order_id} was not filled ({order.status})")

        exit_price = order.average_price or await self._gateway.fetch_ticker(instrument)
        filled = min(order.filled, position.entry_amount)
        pnl = (exit_price - position.entry_price) * filled * position.entry_leverage
        realized = position.realized_pnl + pnl
        remaining = position.entry_amount - filled
        # A short fill on a full exit leaves the remainder open
        closed = full_exit and remaining <= position.entry_amount * _FILL_TOLERANCE

        if closed:
            self._positions.update_position(
                position.id,
                status=PositionStatus.CLOSED,
                exit_price=exit_price,
                exit_amount=position.entry_amount,
                exit_order_id=order.order_id,
                exit_reason="MANUAL",
                realized_pnl=realized,
                closed_at=self._now(),
            )
            logger.info(
                "Trade %d SELL %s closed position %d: %.8f @ %.4f pnl=%.4f total=%.4f",
                trade_id, instrument.pair, position.id, filled, exit_price, pnl, realized,
            )
        else:
            self._positions.update_position(
                position.id,
                entry_amount=remaining,
                realized_pnl=realized,
            )
            logger.info(
                "Trade %d SELL %s reduced position %d by %.8f @ %.4f pnl=%.4f remaining=%.8f",
                trade_id, instrument.pair, position.id, filled, exit_price, pnl, remaining,
            )

        status = (
            TradeStatus.PARTIAL
            if order.filled < amount * (1 - _FILL_TOLERANCE)
            else TradeStatus.FILLED
        )
        self._trades.update_trade(
            trade_id,
            status=status,
            exchange_order_id=order.order_id,
            executed_price=exit_price,
            executed_amount=filled,
            executed_at=self._now(),
            position_id=position.id,
        )

        cleanup_error = None
        if closed:
            try:
                await self._cancel_protection(instrument)
            except Exception as exc:
                cleanup_error = f"Protection cleanup failed: {exc}"
                logger.error("Trade %d %s: %s", trade_id, instrument.pair, cleanup_error)
                self._trades.update_trade(trade_id, error=cleanup_error)

        return ExecutionResult(
            success=True,
            order_id=order.order_id,
            executed_price=exit_price,
            executed_amount=filled,
            error=cleanup_error,
        )

    # ── Hold ─────────────────────────────────────────────────────────────

    async def _hold(self, trade_id: int, instrument: Instrument, decision: Decision) -> ExecutionResult:
        adjust = decision.adjust_profit
        if adjust is None or adjust.is_empty:
            self._trades.update_trade(trade_id, status=TradeStatus.FILLED, executed_at=self._now())
            logger.info("Trade %d HOLD %s: no adjustment", trade_id, instrument.pair)
            return ExecutionResult(success=True)

        position = self._positions.get_open_position(instrument.pair)
        if position is None:
            self._trades.update_trade(
                trade_id,
                status=TradeStatus.FILLED,
                executed_at=self._now(),
                error=NO_POSITION_HOLD_NOTE,
            )
            logger.info("Trade %d HOLD %s: %s", trade_id, instrument.pair, NO_POSITION_HOLD_NOTE)
            return ExecutionResult(success=True, error=NO_POSITION_HOLD_NOTE)

        stop_loss = adjust.stop_loss if adjust.stop_loss is not None else position.current_stop_loss
        take_profit = (
            adjust.take_profit if adjust.take_profit is not None else position.current_take_profit
        )
        await self._replace_protection(instrument, stop_loss, take_profit)

        changes = {}
        if adjust.stop_loss is not None:
            changes["current_stop_loss"] = adjust.stop_loss
        if adjust.take_profit is not None:
            changes["current_take_profit"] = adjust.take_profit
        self._positions.update_position(position.id, **changes)
        self._trades.update_trade(
            trade_id,
            status=TradeStatus.FILLED,
            executed_at=self._now(),
            position_id=position.id,
        )
        logger.info(
            "Trade %d HOLD %s: protection now SL=%s TP=%s",
            trade_id, instrument.pair, stop_loss, take_profit,
        )
        return ExecutionResult(success=True)

    # ── Protection orders ────────────────────────────────────────────────

    async def _cancel_protection(self, instrument: Instrument) -> None:
        for order in await self._gateway.fetch_open_orders(instrument):
            if order.order_type in PROTECTION_ORDER_TYPES:
                await self._gateway.cancel_order(order.order_id, instrument)

    async def _replace_protection(
        self,
        instrument: Instrument,
        stop_loss: Optional[float],
        take_profit: Optional[float],
    ) -> None:
        """Cancel existing protection orders, then place the given levels."""
        await self._cancel_protection(instrument)
        if stop_loss is not None:
            await self._gateway.create_order(
                instrument, STOP_MARKET, "sell", stop_loss, reduce_only=True
            )
        if take_profit is not None:
            await self._gateway.create_order(
                instrument, TAKE_PROFIT_MARKET, "sell", take_profit, reduce_only=True
            )
