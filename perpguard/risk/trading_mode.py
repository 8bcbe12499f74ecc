"""Trading-mode selection — account return since inception → risk budget."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TradingMode(str, Enum):
    SURVIVAL = "SURVIVAL"
    DEFENSIVE = "DEFENSIVE"
    NORMAL = "NORMAL"
    OFFENSIVE = "OFFENSIVE"
    AGGRESSIVE = "AGGRESSIVE"


@dataclass(frozen=True)
class TradingModeRule:
    """One row: applies when return < ``return_below`` (``None`` = always)."""

    mode: TradingMode
    return_below: Optional[float]  # fraction, e.g. -0.10
    max_risk_pct: float  # percent of equity per trade
    max_leverage: int
    max_positions: int


@dataclass(frozen=True)
class TradingModeTable:
    """Ordered rules, most defensive first; first match wins."""

    rules: tuple[TradingModeRule, ...]

    def __post_init__(self) -> None:
        if not self.rules or self.rules[-1].return_below is not None:
            raise ValueError("The last trading-mode rule must be a catch-all")

    def select(self, total_return: float) -> TradingModeRule:
        for rule in self.rules:
            if rule.return_below is None or total_return < rule.return_below:
                return rule
        return self.rules[-1]


DEFAULT_TRADING_MODES = TradingModeTable(
    rules=(
        TradingModeRule(TradingMode.SURVIVAL, -0.10, 0.5, 2, 1),
        TradingModeRule(TradingMode.DEFENSIVE, -0.05, 1.5, 3, 2),
        TradingModeRule(TradingMode.NORMAL, 0.10, 2.0, 5, 3),
        TradingModeRule(TradingMode.OFFENSIVE, 0.20, 2.5, 7, 4),
        TradingModeRule(TradingMode.AGGRESSIVE, None, 3.0, 10, 5),
    )
)
