"""Performance and risk statistics — pure functions over closed positions.

Sharpe annualisation uses a fixed ``sqrt(TRADES_PER_YEAR)`` scaling rather
than the observed trade frequency; treat the result as a relative score.
"""

import math
from dataclasses import dataclass

import numpy as np

from perpguard.broker.models import ExchangePosition
from perpguard.models.ledger import Position
from perpguard.risk.drawdown import DrawdownTracker


MIN_TRADES_FOR_SHARPE = 5
RISK_FREE_RATE_PER_TRADE = 0.0001
TRADES_PER_YEAR = 100

_LEVERAGE_MEDIUM = 3.0
_LEVERAGE_HIGH = 5.0
_LIQ_DISTANCE_MEDIUM = 0.2
_LIQ_DISTANCE_HIGH = 0.1


@dataclass(frozen=True)
class PerformanceMetrics:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0  # positive magnitude
    largest_win: float = 0.0
    largest_loss: float = 0.0  # positive magnitude
    consecutive_wins: int = 0
    consecutive_losses: int = 0
    max_drawdown: float = 0.0  # fraction of running peak
    current_drawdown: float = 0.0


@dataclass(frozen=True)
class RiskMetrics:
    total_notional: float = 0.0
    portfolio_leverage: float = 0.0
    margin_used_pct: float = 0.0  # fraction of total equity
    available_margin_pct: float = 1.0
    liquidation_risk: str = "low"  # "low", "medium", "high"


def _pnls(closed: list[Position]) -> list[float]:
    return [p.realized_pnl or 0.0 for p in closed]


def per_trade_returns(closed: list[Position], initial_capital: float) -> list[float]:
    """Each trade's P&L relative to the capital available before it.

    Capital compounds from *initial_capital*; trades taken while capital
    is not positive are skipped.
    """
    returns: list[float] = []
    capital = initial_capital
    for pnl in _pnls(closed):
        if capital > 0:
            returns.append(pnl / capital)
            capital += pnl
    return returns


def calculate_sharpe_ratio(closed: list[Position], initial_capital: float) -> float:
    """Annualised per-trade Sharpe ratio from closed positions.

    ``(mean − RISK_FREE_RATE_PER_TRADE) / σ × sqrt(TRADES_PER_YEAR)`` using
    the population standard deviation.  Returns 0.0 with fewer than
    ``MIN_TRADES_FOR_SHARPE`` usable returns or zero variance.
    """
    if len(closed) < MIN_TRADES_FOR_SHARPE:
        return 0.0
    returns = per_trade_returns(closed, initial_capital)
    if len(returns) < MIN_TRADES_FOR_SHARPE:
        return 0.0

    arr = np.asarray(returns, dtype=float)
    std = float(arr.std())
    if std == 0:
        return 0.0
    return (float(arr.mean()) - RISK_FREE_RATE_PER_TRADE) / std * math.sqrt(TRADES_PER_YEAR)


def calculate_performance(closed: list[Position], initial_capital: float) -> PerformanceMetrics:
    """Summary statistics over closed positions ordered by close time.

    Drawdowns are measured on the equity curve
    ``initial_capital + cumulative realised P&L``.
    """
    pnls = _pnls(closed)
    if not pnls:
        return PerformanceMetrics()

    arr = np.asarray(pnls, dtype=float)
    wins = arr[arr > 0]
    losses = arr[arr < 0]
    gross_win = float(wins.sum())
    gross_loss = float(abs(losses.sum()))

    max_wins = max_losses = streak_w = streak_l = 0
    for pnl in pnls:
        if pnl > 0:
            streak_w += 1
            streak_l = 0
            max_wins = max(max_wins, streak_w)
        elif pnl < 0:
            streak_l += 1
            streak_w = 0
            max_losses = max(max_losses, streak_l)

    max_dd = 0.0
    current_dd = 0.0
    if initial_capital > 0:
        tracker = DrawdownTracker(initial_capital)
        for equity in initial_capital + np.cumsum(arr):
            tracker.update(float(equity))
        max_dd = tracker.max_drawdown
        current_dd = tracker.drawdown

    return PerformanceMetrics(
        total_trades=len(pnls),
        winning_trades=int(wins.size),
        losing_trades=int(losses.size),
        win_rate=wins.size / len(pnls),
        profit_factor=gross_win / gross_loss if gross_loss > 0 else 0.0,
        average_win=float(wins.mean()) if wins.size else 0.0,
        average_loss=float(abs(losses.mean())) if losses.size else 0.0,
        largest_win=float(wins.max()) if wins.size else 0.0,
        largest_loss=float(abs(losses.min())) if losses.size else 0.0,
        consecutive_wins=max_wins,
        consecutive_losses=max_losses,
        max_drawdown=max_dd,
        current_drawdown=current_dd,
    )


def calculate_risk_metrics(positions: list[ExchangePosition], total_equity: float) -> RiskMetrics:
    """Exposure, margin usage and a three-tier liquidation-risk label."""
    total_notional = sum(abs(p.notional) for p in positions)
    margin_used = sum(p.initial_margin for p in positions)
    leverage = total_notional / total_equity if total_equity > 0 else 0.0
    margin_pct = margin_used / total_equity if total_equity > 0 else 0.0

    risk = "low"
    if leverage > _LEVERAGE_MEDIUM:
        risk = "medium"
    if leverage > _LEVERAGE_HIGH:
        risk = "high"

    for p in positions:
        if not p.liquidation_price or not p.mark_price:
            continue
        distance = abs(p.mark_price - p.liquidation_price) / p.mark_price
        if distance < _LIQ_DISTANCE_HIGH:
            risk = "high"
        elif distance < _LIQ_DISTANCE_MEDIUM and risk != "high":
            risk = "medium"

    return RiskMetrics(
        total_notional=total_notional,
        portfolio_leverage=leverage,
        margin_used_pct=margin_pct,
        available_margin_pct=1.0 - margin_pct,
        liquidation_risk=risk,
    )
