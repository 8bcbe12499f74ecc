"""Confluence scoring — additive weighted rules over multi-timeframe signals.

Pure math, no I/O.  Each rule adds its weight to the bullish or bearish
side and appends a human-readable factor; the net score maps to a
recommendation bucket.
"""

from dataclasses import dataclass

from perpguard.strategy.models import (
    ConfluenceScore,
    Divergence,
    PivotPoints,
    Recommendation,
    StochRSIPoint,
)


@dataclass(frozen=True)
class ConfluenceWeights:
    """Rule weights and thresholds.  Weights are policy; tune here only."""

    trend_alignment: float = 2.0
    daily_trend: float = 1.5
    adx_strength: float = 1.5
    rsi_extreme: float = 1.0
    stoch_rsi_cross: float = 1.0
    volume_surge: float = 0.5
    funding_skew: float = 0.5
    divergence: float = 1.5
    pivot_proximity: float = 1.0
    bollinger_extreme: float = 0.5

    adx_strong: float = 25.0
    adx_weak: float = 20.0
    rsi_oversold: float = 30.0
    rsi_overbought: float = 70.0
    stoch_oversold: float = 20.0
    stoch_overbought: float = 80.0
    volume_surge_ratio: float = 1.2
    funding_crowded_long: float = 0.0005
    funding_crowded_short: float = -0.0001
    pivot_near_above: float = 0.01  # fraction of price
    pivot_near_below: float = -0.005
    percent_b_low: float = 0.2
    percent_b_high: float = 0.8

    strong_buy_at: float = 5.0
    buy_at: float = 2.0
    sell_at: float = -2.0
    strong_sell_at: float = -5.0


DEFAULT_WEIGHTS = ConfluenceWeights()


@dataclass(frozen=True)
class ConfluenceInputs:
    """Current-bar values feeding the rule set."""

    price: float
    swing_ema_20: float
    swing_ema_50: float
    adx: float
    rsi: float
    stoch_rsi: StochRSIPoint
    volume_ratio: float
    funding_rate: float
    divergence: Divergence
    daily_trend: str
    pivots: PivotPoints
    percent_b: float


def classify_net_score(net: float, weights: ConfluenceWeights = DEFAULT_WEIGHTS) -> Recommendation:
    """Map bullish − bearish to a recommendation bucket."""
    if net >= weights.strong_buy_at:
        return Recommendation.STRONG_BUY
    if net >= weights.buy_at:
        return Recommendation.BUY
    if net <= weights.strong_sell_at:
        return Recommendation.STRONG_SELL
    if net <= weights.sell_at:
        return Recommendation.SELL
    return Recommendation.NEUTRAL


def calculate_confluence(
    inputs: ConfluenceInputs,
    weights: ConfluenceWeights = DEFAULT_WEIGHTS,
) -> ConfluenceScore:
    """Score one instrument with the fixed rule set."""
    w = weights
    bullish = 0.0
    bearish = 0.0
    factors: list[str] = []

    uptrend = inputs.swing_ema_20 > inputs.swing_ema_50

    # 1. Swing trend alignment
    if inputs.swing_ema_20 > inputs.swing_ema_50:
        bullish += w.trend_alignment
        factors.append("4H trend: bullish (EMA20 > EMA50)")
    elif inputs.swing_ema_20 < inputs.swing_ema_50:
        bearish += w.trend_alignment
        factors.append("4H trend: bearish (EMA20 < EMA50)")

    # 2. Daily confirmation
    if inputs.daily_trend == "up":
        bullish += w.daily_trend
        factors.append("Daily trend: bullish")
    elif inputs.daily_trend == "down":
        bearish += w.daily_trend
        factors.append("Daily trend: bearish")

    # 3. ADX strength on the trend side
    if inputs.adx > w.adx_strong:
        if uptrend:
            bullish += w.adx_strength
        else:
            bearish += w.adx_strength
        factors.append(
            f"ADX: {inputs.adx:.1f} (strong {'bullish' if uptrend else 'bearish'} trend)"
        )
    elif inputs.adx < w.adx_weak:
        factors.append(f"ADX: {inputs.adx:.1f} (weak / range-bound)")

    # 4. RSI extremes
    if inputs.rsi < w.rsi_oversold:
        bullish += w.rsi_extreme
        factors.append(f"RSI: {inputs.rsi:.1f} (oversold)")
    elif inputs.rsi > w.rsi_overbought:
        bearish += w.rsi_extreme
        factors.append(f"RSI: {inputs.rsi:.1f} (overbought)")

    # 5. StochRSI crossover out of an extreme
    k, d = inputs.stoch_rsi.k, inputs.stoch_rsi.d
    if k < w.stoch_oversold and k > d:
        bullish += w.stoch_rsi_cross
        factors.append("StochRSI: bullish crossover from oversold")
    elif k > w.stoch_overbought and k < d:
        bearish += w.stoch_rsi_cross
        factors.append("StochRSI: bearish crossover from overbought")

    # 6. Volume surge backs the prevailing trend
    if inputs.volume_ratio > w.volume_surge_ratio:
        if uptrend:
            bullish += w.volume_surge
        else:
            bearish += w.volume_surge
        factors.append(f"Volume: {inputs.volume_ratio * 100:.0f}% of average (surge)")

    # 7. Funding skew
    if inputs.funding_rate > w.funding_crowded_long:
        bearish += w.funding_skew
        factors.append(f"Funding: {inputs.funding_rate * 100:.3f}% (crowded longs)")
    elif inputs.funding_rate < w.funding_crowded_short:
        bullish += w.funding_skew
        factors.append(f"Funding: {inputs.funding_rate * 100:.3f}% (shorts paying)")

    # 8. Regular divergence, scaled by strength
    div = inputs.divergence
    if div.kind == "bullish":
        bullish += w.divergence * div.strength
        factors.append(f"Divergence: bullish (strength {div.strength * 100:.0f}%)")
    elif div.kind == "bearish":
        bearish += w.divergence * div.strength
        factors.append(f"Divergence: bearish (strength {div.strength * 100:.0f}%)")

    # 9. Pivot proximity
    if inputs.price > 0:
        dist_s1 = (inputs.price - inputs.pivots.s1) / inputs.price
        dist_r1 = (inputs.pivots.r1 - inputs.price) / inputs.price
        if w.pivot_near_below < dist_s1 < w.pivot_near_above:
            bullish += w.pivot_proximity
            factors.append(f"Price at support S1: {inputs.pivots.s1:.2f}")
        elif w.pivot_near_below < dist_r1 < w.pivot_near_above:
            bearish += w.pivot_proximity
            factors.append(f"Price at resistance R1: {inputs.pivots.r1:.2f}")

    # 10. Bollinger %B
    if inputs.percent_b < w.percent_b_low:
        bullish += w.bollinger_extreme
        factors.append("Price near lower Bollinger band")
    elif inputs.percent_b > w.percent_b_high:
        bearish += w.bollinger_extreme
        factors.append("Price near upper Bollinger band")

    return ConfluenceScore(
        bullish_points=bullish,
        bearish_points=bearish,
        factors=tuple(factors),
        recommendation=classify_net_score(bullish - bearish, w),
    )
