"""Ledger records — positions and trades as stored in SQLite."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    LIQUIDATED = "LIQUIDATED"


class TradeStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    FILLED = "FILLED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


@dataclass(frozen=True)
class Position:
    """One market exposure.  ``entry_amount`` shrinks on partial exits."""

    id: int
    symbol: str
    status: PositionStatus
    entry_price: float
    entry_amount: float
    entry_leverage: int
    entry_order_id: Optional[str]
    opened_at: str
    current_stop_loss: Optional[float] = None
    current_take_profit: Optional[float] = None
    exit_price: Optional[float] = None
    exit_amount: Optional[float] = None
    exit_order_id: Optional[str] = None
    exit_reason: Optional[str] = None
    realized_pnl: float = 0.0
    closed_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def notional(self) -> float:
        return self.entry_price * self.entry_amount

    @property
    def margin(self) -> float:
        return self.notional / self.entry_leverage if self.entry_leverage else self.notional


@dataclass(frozen=True)
class Trade:
    """One attempted action and its outcome."""

    id: int
    symbol: str
    operation: str  # "Buy", "Sell" or "Hold"
    status: TradeStatus
    created_at: str
    pricing: Optional[float] = None
    amount: Optional[float] = None
    leverage: Optional[int] = None
    percentage: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    exchange_order_id: Optional[str] = None
    executed_price: Optional[float] = None
    executed_amount: Optional[float] = None
    executed_at: Optional[str] = None
    error: Optional[str] = None
    position_id: Optional[int] = None
    chat: str = ""
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome handed back to the caller for logging and notification."""

    success: bool
    order_id: Optional[str] = None
    executed_price: Optional[float] = None
    executed_amount: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "order_id": self.order_id,
            "executed_price": self.executed_price,
            "executed_amount": self.executed_amount,
            "error": self.error,
        }
