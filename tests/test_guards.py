"""Tests for the buy admission pipeline — each guard and the interpreter."""

import pytest

from perpguard.config import SafetyLimits
from perpguard.execution.guards import (
    BUY_GUARDS,
    PASS,
    BuyContext,
    Guard,
    GuardVerdict,
    run_guards,
)
from perpguard.models.ledger import Position, PositionStatus


# ── Helpers ──────────────────────────────────────────────────────────────


def _ctx(**overrides) -> BuyContext:
    """A $500 NORMAL-mode account buying 0.002 BTC at 50 000 with 5x.

    Passes every guard; risk lands exactly on the 2 % budget.
    """
    defaults = dict(
        symbol="BTC/USDT",
        entry_price=50_000.0,
        amount=0.002,
        leverage=5,
        stop_loss=49_000.0,
        take_profit=52_000.0,
        free_cash=500.0,
        total_equity=500.0,
        open_position=None,
        live_notional=0.0,
        daily_realized_pnl=0.0,
        weekly_realized_pnl=0.0,
        max_risk_fraction=0.02,
        limits=SafetyLimits(),
    )
    defaults.update(overrides)
    return BuyContext(**defaults)


def _open_position() -> Position:
    return Position(
        id=7,
        symbol="BTC/USDT",
        status=PositionStatus.OPEN,
        entry_price=48_000.0,
        entry_amount=0.001,
        entry_leverage=3,
        entry_order_id="abc",
        opened_at="2025-01-01T00:00:00+00:00",
    )


def _failed_guard(ctx: BuyContext):
    return run_guards(BUY_GUARDS, ctx).failed_guard


# ── Tests ────────────────────────────────────────────────────────────────


class TestBaselineScenario:
    def test_passes_all_guards(self):
        outcome = run_guards(BUY_GUARDS, _ctx())
        assert outcome.passed is True
        assert outcome.failed_guard is None
        assert [c.name for c in outcome.checks] == [g.name for g in BUY_GUARDS]

    def test_context_derived_values(self):
        ctx = _ctx()
        assert ctx.notional == pytest.approx(100.0)
        assert ctx.margin == pytest.approx(20.0)
        assert ctx.liquidation_price == pytest.approx(40_200.0)

    def test_guard_order(self):
        assert [g.name for g in BUY_GUARDS] == [
            "no_open_position",
            "leverage_bounds",
            "min_notional",
            "cash_reserve",
            "position_concentration",
            "stop_take_sides",
            "loss_limits",
            "portfolio_leverage",
            "risk_per_trade",
            "reward_risk",
            "liquidation_buffer",
        ]


class TestIndividualGuards:
    def test_open_position_blocks(self):
        outcome = run_guards(BUY_GUARDS, _ctx(open_position=_open_position()))
        assert outcome.failed_guard == "no_open_position"
        assert "id=7" in outcome.reason
        assert len(outcome.checks) == 1

    @pytest.mark.parametrize("leverage", [0, 21, -1])
    def test_leverage_out_of_range(self, leverage):
        outcome = run_guards(BUY_GUARDS, _ctx(leverage=leverage))
        assert outcome.failed_guard == "leverage_bounds"
        assert len(outcome.checks) == 2

    @pytest.mark.parametrize("leverage", [1, 20])
    def test_leverage_bounds_inclusive(self, leverage):
        ctx = _ctx(leverage=leverage, stop_loss=None, take_profit=None, amount=0.0004)
        assert _failed_guard(ctx) != "leverage_bounds"

    def test_min_notional(self):
        assert _failed_guard(_ctx(amount=0.0001)) == "min_notional"

    def test_cash_reserve(self):
        # margin 20 leaves 120 < 25 % of 500
        assert _failed_guard(_ctx(free_cash=140.0)) == "cash_reserve"

    def test_no_equity(self):
        outcome = run_guards(BUY_GUARDS, _ctx(total_equity=0.0))
        assert outcome.failed_guard == "cash_reserve"
        assert outcome.reason == "No equity available"

    def test_position_concentration(self):
        # margin 300 > 50 % of 500 while free cash is ample
        ctx = _ctx(amount=0.03, free_cash=2_000.0)
        assert _failed_guard(ctx) == "position_concentration"

    def test_stop_above_entry(self):
        assert _failed_guard(_ctx(stop_loss=50_000.0)) == "stop_take_sides"

    def test_take_profit_below_entry(self):
        assert _failed_guard(_ctx(take_profit=49_999.0)) == "stop_take_sides"

    def test_daily_loss_limit(self):
        assert _failed_guard(_ctx(daily_realized_pnl=-30.0)) == "loss_limits"

    def test_weekly_loss_limit(self):
        ctx = _ctx(daily_realized_pnl=-10.0, weekly_realized_pnl=-60.0)
        outcome = run_guards(BUY_GUARDS, ctx)
        assert outcome.failed_guard == "loss_limits"
        assert "Weekly" in outcome.reason

    def test_portfolio_leverage_ceiling(self):
        assert _failed_guard(_ctx(live_notional=2_450.0)) == "portfolio_leverage"

    def test_portfolio_leverage_at_ceiling_passes(self):
        assert _failed_guard(_ctx(live_notional=2_400.0)) is None

    def test_risk_per_trade(self):
        # risk 20 on 500 = 4 %
        outcome = run_guards(BUY_GUARDS, _ctx(stop_loss=48_000.0, take_profit=54_000.0))
        assert outcome.failed_guard == "risk_per_trade"
        assert "4.00%" in outcome.reason

    def test_risk_budget_follows_profile(self):
        assert _failed_guard(_ctx(max_risk_fraction=0.015)) == "risk_per_trade"

    def test_reward_risk(self):
        assert _failed_guard(_ctx(take_profit=51_000.0)) == "reward_risk"

    def test_liquidation_buffer_too_thin(self):
        ctx = _ctx(leverage=20, amount=0.0005, max_risk_fraction=0.05)
        outcome = run_guards(BUY_GUARDS, ctx)
        assert outcome.failed_guard == "liquidation_buffer"
        assert "buffer" in outcome.reason

    def test_stop_below_liquidation(self):
        ctx = _ctx(
            leverage=10,
            amount=0.0004,
            stop_loss=45_000.0,
            take_profit=60_000.0,
            max_risk_fraction=0.05,
        )
        outcome = run_guards(BUY_GUARDS, ctx)
        assert outcome.failed_guard == "liquidation_buffer"
        assert "liquidation price" in outcome.reason

    def test_no_protection_levels(self):
        assert _failed_guard(_ctx(stop_loss=None, take_profit=None)) is None


class TestInterpreter:
    def test_short_circuits_on_first_failure(self):
        calls: list[str] = []

        def _record(name, verdict):
            def check(ctx):
                calls.append(name)
                return verdict
            return Guard(name, check)

        guards = (
            _record("first", PASS),
            _record("second", GuardVerdict(False, "nope")),
            _record("third", PASS),
        )
        outcome = run_guards(guards, _ctx())
        assert calls == ["first", "second"]
        assert outcome.passed is False
        assert outcome.failed_guard == "second"
        assert outcome.reason == "nope"
        assert [c.passed for c in outcome.checks] == [True, False]

    def test_custom_limits(self):
        limits = SafetyLimits(max_leverage=3)
        assert _failed_guard(_ctx(limits=limits)) == "leverage_bounds"
