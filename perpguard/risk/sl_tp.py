"""Suggested stop-loss and take-profit for a long entry — pure math, no I/O.

Stop-loss:
    The higher (closer to price) of pivot S1 and ``price − 1.5 × ATR``,
    ignoring an S1 that is not below price.

Take-profit:
    The tighter of pivot R1 and ``price + 2 × ATR``, but never less than
    a 1.5 : 1 reward target measured from the chosen stop.
"""

from dataclasses import dataclass

from perpguard.strategy.models import PivotPoints


@dataclass(frozen=True)
class SuggestedLevelConfig:
    atr_stop_mult: float = 1.5
    atr_target_mult: float = 2.0
    min_reward_risk: float = 1.5


@dataclass(frozen=True)
class RiskLevels:
    """Computed stop-loss and take-profit for a trade."""

    sl: float
    tp: float
    sl_source: str  # "pivot" or "atr"
    tp_source: str  # "pivot", "atr" or "min_rr"


def calculate_suggested_levels(
    price: float,
    atr: float,
    pivots: PivotPoints,
    config: SuggestedLevelConfig = SuggestedLevelConfig(),
) -> RiskLevels:
    """Derive protective levels for a long position at *price*.

    Args:
        price: Current price (assumed entry).
        atr: Current ATR(14) on the swing timeframe.
        pivots: Pivot points from the previous completed swing bar.
        config: ATR multipliers and the minimum reward-to-risk target.

    Raises:
        ValueError: If *price* is not positive or *atr* is negative.
    """
    if price <= 0:
        raise ValueError(f"price must be positive, got {price}")
    if atr < 0:
        raise ValueError(f"atr must be non-negative, got {atr}")

    atr_stop = price - config.atr_stop_mult * atr
    # A pivot at or above price cannot protect a long
    if atr_stop <= pivots.s1 < price:
        sl, sl_source = pivots.s1, "pivot"
    else:
        sl, sl_source = atr_stop, "atr"

    risk = price - sl
    min_target = price + risk * config.min_reward_risk
    atr_target = price + config.atr_target_mult * atr
    if pivots.r1 <= atr_target:
        structural, tp_source = pivots.r1, "pivot"
    else:
        structural, tp_source = atr_target, "atr"

    if min_target > structural:
        return RiskLevels(sl=sl, tp=min_target, sl_source=sl_source, tp_source="min_rr")
    return RiskLevels(sl=sl, tp=structural, sl_source=sl_source, tp_source=tp_source)
