"""Account risk profiler — one read-only snapshot of account posture per cycle."""

import logging
from dataclasses import dataclass, field

from perpguard.broker.base import ExchangeGateway
from perpguard.broker.models import ExchangePosition
from perpguard.models.instrument import Instrument
from perpguard.repos.position_repo import PositionRepo
from perpguard.risk.performance import (
    PerformanceMetrics,
    RiskMetrics,
    calculate_performance,
    calculate_risk_metrics,
    calculate_sharpe_ratio,
)
from perpguard.risk.trading_mode import (
    DEFAULT_TRADING_MODES,
    TradingMode,
    TradingModeTable,
)

logger = logging.getLogger("perpguard.risk")


@dataclass(frozen=True)
class AccountRiskProfile:
    trading_mode: TradingMode
    max_risk_pct: float  # percent of equity per trade
    max_leverage: int
    max_positions: int
    sharpe_ratio: float
    performance: PerformanceMetrics
    risk: RiskMetrics
    total_equity: float
    available_cash: float
    current_total_return: float
    positions_value: float = 0.0
    positions: tuple[ExchangePosition, ...] = field(default_factory=tuple)

    @property
    def max_risk_fraction(self) -> float:
        return self.max_risk_pct / 100.0


class AccountRiskProfiler:
    """Builds an ``AccountRiskProfile`` from the gateway and the ledger.

    Args:
        gateway: Source of live balance and exposures.
        position_repo: Ledger of closed positions (read fresh on every call).
        initial_capital: Capital the total return is measured against.
        modes: Trading-mode table.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        position_repo: PositionRepo,
        initial_capital: float,
        modes: TradingModeTable = DEFAULT_TRADING_MODES,
    ) -> None:
        if initial_capital <= 0:
            raise ValueError(f"initial_capital must be positive, got {initial_capital}")
        self._gateway = gateway
        self._position_repo = position_repo
        self._initial_capital = initial_capital
        self._modes = modes

    async def build_profile(self, instruments: list[Instrument]) -> AccountRiskProfile:
        balance = await self._gateway.fetch_balance()
        positions = await self._gateway.fetch_positions(instruments)
        closed = self._position_repo.list_closed_positions()

        total_return = (balance.total - self._initial_capital) / self._initial_capital
        rule = self._modes.select(total_return)

        profile = AccountRiskProfile(
            trading_mode=rule.mode,
            max_risk_pct=rule.max_risk_pct,
            max_leverage=rule.max_leverage,
            max_positions=rule.max_positions,
            sharpe_ratio=calculate_sharpe_ratio(closed, self._initial_capital),
            performance=calculate_performance(closed, self._initial_capital),
            risk=calculate_risk_metrics(positions, balance.total),
            total_equity=balance.total,
            available_cash=balance.free,
            current_total_return=total_return,
            positions_value=sum(p.initial_margin + p.unrealized_pnl for p in positions),
            positions=tuple(positions),
        )
        logger.info(
            "Account: equity=%.2f free=%.2f return=%.2f%% mode=%s sharpe=%.2f "
            "leverage=%.2fx liq_risk=%s",
            profile.total_equity,
            profile.available_cash,
            total_return * 100,
            profile.trading_mode.value,
            profile.sharpe_ratio,
            profile.risk.portfolio_leverage,
            profile.risk.liquidation_risk,
        )
        return profile
