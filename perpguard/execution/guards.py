"""Buy admission pipeline — ordered guard predicates and their interpreter.

Each guard is a pure function of a ``BuyContext``.  ``run_guards`` evaluates
them strictly in order and stops at the first failure, returning the trail
of checks that ran.  Guards never raise for policy violations; a failed
verdict carries the human-readable reason recorded on the trade.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from perpguard.config import SafetyLimits
from perpguard.models.ledger import Position

logger = logging.getLogger("perpguard.guards")

# Absorbs float noise when a value lands exactly on a configured boundary
_EPSILON = 1e-9


@dataclass(frozen=True)
class BuyContext:
    """Everything the guards need, assembled once before evaluation."""

    symbol: str
    entry_price: float
    amount: float
    leverage: int
    stop_loss: Optional[float]
    take_profit: Optional[float]
    free_cash: float
    total_equity: float
    open_position: Optional[Position]
    live_notional: float
    daily_realized_pnl: float
    weekly_realized_pnl: float
    max_risk_fraction: float
    limits: SafetyLimits

    @property
    def notional(self) -> float:
        return self.amount * self.entry_price

    @property
    def margin(self) -> float:
        return self.notional / self.leverage if self.leverage > 0 else self.notional

    @property
    def liquidation_price(self) -> float:
        """Long-only approximation ignoring funding and margin tiers."""
        return self.entry_price * (
            1 - 1 / self.leverage + self.limits.maintenance_margin_rate
        )


@dataclass(frozen=True)
class GuardVerdict:
    passed: bool
    reason: str = ""


PASS = GuardVerdict(True)


def _fail(reason: str) -> GuardVerdict:
    return GuardVerdict(False, reason)


@dataclass(frozen=True)
class Guard:
    name: str
    check: Callable[[BuyContext], GuardVerdict]


@dataclass(frozen=True)
class GuardCheck:
    name: str
    passed: bool
    reason: str = ""


@dataclass(frozen=True)
class PipelineOutcome:
    passed: bool
    checks: tuple[GuardCheck, ...]
    failed_guard: Optional[str] = None
    reason: Optional[str] = None


# ── Guards (evaluated in this order) ─────────────────────────────────────


def check_no_open_position(ctx: BuyContext) -> GuardVerdict:
    if ctx.open_position is not None:
        return _fail(
            f"Position already open for {ctx.symbol} (id={ctx.open_position.id})"
        )
    return PASS


def check_leverage_bounds(ctx: BuyContext) -> GuardVerdict:
    lo, hi = ctx.limits.min_leverage, ctx.limits.max_leverage
    if not lo <= ctx.leverage <= hi:
        return _fail(f"Leverage {ctx.leverage}x outside allowed range [{lo}, {hi}]")
    return PASS


def check_min_notional(ctx: BuyContext) -> GuardVerdict:
    if ctx.notional < ctx.limits.min_trade_notional:
        return _fail(
            f"Notional {ctx.notional:.2f} below minimum {ctx.limits.min_trade_notional:.2f} USDT"
        )
    return PASS


def check_cash_reserve(ctx: BuyContext) -> GuardVerdict:
    if ctx.total_equity <= 0:
        return _fail("No equity available")
    remaining = ctx.free_cash - ctx.margin
    required = ctx.limits.min_cash_reserve * ctx.total_equity
    if remaining < required - _EPSILON:
        return _fail(
            f"Margin {ctx.margin:.2f} leaves {remaining:.2f} free cash, "
            f"below reserve {required:.2f}"
        )
    return PASS


def check_position_concentration(ctx: BuyContext) -> GuardVerdict:
    if ctx.total_equity <= 0:
        return _fail("No equity available")
    cap = ctx.limits.max_position_fraction * ctx.total_equity
    if ctx.margin > cap + _EPSILON:
        return _fail(f"Margin {ctx.margin:.2f} exceeds single-position cap {cap:.2f}")
    return PASS


def check_stop_take_sides(ctx: BuyContext) -> GuardVerdict:
    if ctx.stop_loss is not None and ctx.stop_loss >= ctx.entry_price:
        return _fail(
            f"Stop-loss {ctx.stop_loss:.4f} must be below entry {ctx.entry_price:.4f}"
        )
    if ctx.take_profit is not None and ctx.take_profit <= ctx.entry_price:
        return _fail(
            f"Take-profit {ctx.take_profit:.4f} must be above entry {ctx.entry_price:.4f}"
        )
    return PASS


def check_loss_limits(ctx: BuyContext) -> GuardVerdict:
    if ctx.total_equity <= 0:
        return _fail("No equity available")
    daily_floor = -ctx.limits.max_daily_loss * ctx.total_equity
    if ctx.daily_realized_pnl < daily_floor:
        return _fail(
            f"Daily loss limit reached ({ctx.daily_realized_pnl:.2f} < {daily_floor:.2f})"
        )
    weekly_floor = -ctx.limits.max_weekly_loss * ctx.total_equity
    if ctx.weekly_realized_pnl < weekly_floor:
        return _fail(
            f"Weekly loss limit reached ({ctx.weekly_realized_pnl:.2f} < {weekly_floor:.2f})"
        )
    return PASS


def check_portfolio_leverage(ctx: BuyContext) -> GuardVerdict:
    if ctx.total_equity <= 0:
        return _fail("No equity available")
    leverage = (ctx.live_notional + ctx.notional) / ctx.total_equity
    if leverage > ctx.limits.max_portfolio_leverage + _EPSILON:
        return _fail(
            f"Portfolio leverage {leverage:.2f}x would exceed "
            f"{ctx.limits.max_portfolio_leverage:.2f}x"
        )
    return PASS


def check_risk_per_trade(ctx: BuyContext) -> GuardVerdict:
    if ctx.stop_loss is None:
        return PASS
    if ctx.total_equity <= 0:
        return _fail("No equity available")
    risk = abs(ctx.entry_price - ctx.stop_loss) * ctx.amount * ctx.leverage
    fraction = risk / ctx.total_equity
    if fraction > ctx.max_risk_fraction + _EPSILON:
        return _fail(
            f"Risk {risk:.2f} is {fraction * 100:.2f}% of equity, "
            f"above {ctx.max_risk_fraction * 100:.2f}%"
        )
    return PASS


def check_reward_risk(ctx: BuyContext) -> GuardVerdict:
    if ctx.stop_loss is None or ctx.take_profit is None:
        return PASS
    risk = ctx.entry_price - ctx.stop_loss
    reward = ctx.take_profit - ctx.entry_price
    ratio = reward / risk if risk > 0 else 0.0
    if ratio < ctx.limits.min_reward_risk - _EPSILON:
        return _fail(
            f"Reward/risk {ratio:.2f} below minimum {ctx.limits.min_reward_risk:.2f}"
        )
    return PASS


def check_liquidation_buffer(ctx: BuyContext) -> GuardVerdict:
    liq = ctx.liquidation_price
    if ctx.stop_loss is not None and ctx.stop_loss <= liq:
        return _fail(
            f"Stop-loss {ctx.stop_loss:.4f} at or below liquidation price {liq:.4f}"
        )
    buffer = (ctx.entry_price - liq) / ctx.entry_price
    if buffer <= ctx.limits.liquidation_buffer:
        return _fail(
            f"Liquidation buffer {buffer * 100:.1f}% not above "
            f"{ctx.limits.liquidation_buffer * 100:.1f}%"
        )
    return PASS


BUY_GUARDS: tuple[Guard, ...] = (
    Guard("no_open_position", check_no_open_position),
    Guard("leverage_bounds", check_leverage_bounds),
    Guard("min_notional", check_min_notional),
    Guard("cash_reserve", check_cash_reserve),
    Guard("position_concentration", check_position_concentration),
    Guard("stop_take_sides", check_stop_take_sides),
    Guard("loss_limits", check_loss_limits),
    Guard("portfolio_leverage", check_portfolio_leverage),
    Guard("risk_per_trade", check_risk_per_trade),
    Guard("reward_risk", check_reward_risk),
    Guard("liquidation_buffer", check_liquidation_buffer),
)


def run_guards(guards: tuple[Guard, ...], ctx: BuyContext) -> PipelineOutcome:
    """Evaluate *guards* in order, stopping at the first failure."""
    checks: list[GuardCheck] = []
    for guard in guards:
        verdict = guard.check(ctx)
        checks.append(GuardCheck(guard.name, verdict.passed, verdict.reason))
        if not verdict.passed:
            logger.warning(
                "%s guard %s failed: %s", ctx.symbol, guard.name, verdict.reason
            )
            return PipelineOutcome(
                passed=False,
                checks=tuple(checks),
                failed_guard=guard.name,
                reason=verdict.reason,
            )
        logger.debug("%s guard %s passed", ctx.symbol, guard.name)
    logger.info("%s passed all %d buy guards", ctx.symbol, len(checks))
    return PipelineOutcome(passed=True, checks=tuple(checks))
