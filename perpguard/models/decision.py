"""Advisor decision schema — strict validation at the input boundary.

The advisor returns a JSON object; anything that does not match this schema
is rejected with ``DecisionValidationError`` before a trade reaches the
admission pipeline.
"""

import json
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from perpguard.errors import DecisionValidationError


class Operation(str, Enum):
    BUY = "Buy"
    SELL = "Sell"
    HOLD = "Hold"


class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)


class BuyParams(_Schema):
    """Requested entry.  Leverage bounds are enforced by the guard pipeline."""

    pricing: float = Field(gt=0)
    amount: float = Field(gt=0)
    leverage: int


class SellParams(_Schema):
    percentage: float = Field(gt=0, le=100)


class AdjustProfitParams(_Schema):
    stop_loss: Optional[float] = Field(default=None, gt=0, alias="stopLoss")
    take_profit: Optional[float] = Field(default=None, gt=0, alias="takeProfit")

    @property
    def is_empty(self) -> bool:
        return self.stop_loss is None and self.take_profit is None


class Decision(_Schema):
    """One proposed action for one instrument."""

    operation: Operation
    buy: Optional[BuyParams] = None
    sell: Optional[SellParams] = None
    adjust_profit: Optional[AdjustProfitParams] = Field(
        default=None, alias="adjustProfit"
    )
    chat: str = ""

    @model_validator(mode="after")
    def _require_operation_payload(self) -> "Decision":
        if self.operation is Operation.BUY and self.buy is None:
            raise ValueError("Buy decision is missing the 'buy' object")
        if self.operation is Operation.SELL and self.sell is None:
            raise ValueError("Sell decision is missing the 'sell' object")
        return self

    @property
    def stop_loss(self) -> Optional[float]:
        return self.adjust_profit.stop_loss if self.adjust_profit else None

    @property
    def take_profit(self) -> Optional[float]:
        return self.adjust_profit.take_profit if self.adjust_profit else None


def parse_decision(raw) -> Decision:
    """Validate a raw advisor response into a ``Decision``.

    Accepts a JSON string, bytes, or an already-decoded mapping.  No
    free-text extraction is attempted: the payload must be a single JSON
    object matching the schema.

    Raises:
        DecisionValidationError: On malformed JSON, schema violations, or a
            Buy/Sell decision without its operation-specific object.
    """
    try:
        if isinstance(raw, (str, bytes, bytearray)):
            return Decision.model_validate_json(raw)
        if isinstance(raw, dict):
            return Decision.model_validate(raw)
    except ValidationError as exc:
        raise DecisionValidationError(_summarise(exc)) from exc
    raise DecisionValidationError(
        f"Decision must be a JSON object, got {type(raw).__name__}"
    )


def _summarise(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "decision"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def decision_to_json(decision: Decision) -> str:
    """Serialise a decision back to its wire (camelCase) form."""
    return json.dumps(decision.model_dump(mode="json", by_alias=True, exclude_none=True))
