"""Technical indicators — pure functions over price series, no I/O.

Every series function returns a list shorter than its input by the warm-up
window: the first element corresponds to the first bar where the indicator
is fully defined, the last element to the latest bar.  Inputs too short for
a single value produce an empty list.  Invalid periods and mismatched input
lengths raise ``ValueError``.
"""

import math
from typing import Optional

from perpguard.strategy.models import (
    BollingerPoint,
    Divergence,
    MACDPoint,
    PivotPoints,
    SqueezeResult,
    StochRSIPoint,
)


ADX_STRONG_TREND = 25.0
ADX_RANGE_BOUND = 20.0


def _check_period(name: str, period: int) -> None:
    if period < 1:
        raise ValueError(f"{name} period must be >= 1, got {period}")


def _check_lengths(*series: list[float]) -> None:
    lengths = {len(s) for s in series}
    if len(lengths) > 1:
        raise ValueError(f"Input series lengths differ: {sorted(lengths)}")


def _sma(values: list[float], period: int) -> list[float]:
    if len(values) < period:
        return []
    window_sum = sum(values[:period])
    out = [window_sum / period]
    for i in range(period, len(values)):
        window_sum += values[i] - values[i - period]
        out.append(window_sum / period)
    return out


def _true_ranges(high: list[float], low: list[float], close: list[float]) -> list[float]:
    """True range for every bar that has a previous close."""
    return [
        max(
            high[i] - low[i],
            abs(high[i] - close[i - 1]),
            abs(low[i] - close[i - 1]),
        )
        for i in range(1, len(close))
    ]


# ── Moving averages ──────────────────────────────────────────────────────


def calculate_ema(values: list[float], period: int) -> list[float]:
    """Calculate an Exponential Moving Average series.

    ``EMA_today = value × k + EMA_yesterday × (1 - k)`` with
    ``k = 2 / (period + 1)``, seeded with the SMA of the first *period*
    values.  Returns ``len(values) - period + 1`` values.
    """
    _check_period("EMA", period)
    if len(values) < period:
        return []

    k = 2.0 / (period + 1)
    ema = [sum(values[:period]) / period]
    for v in values[period:]:
        ema.append(v * k + ema[-1] * (1 - k))
    return ema


def calculate_macd(
    values: list[float],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> list[MACDPoint]:
    """MACD line (fast EMA − slow EMA), its signal EMA, and the histogram.

    Points start where the signal line is first defined.
    """
    _check_period("MACD fast", fast)
    _check_period("MACD signal", signal)
    if fast >= slow:
        raise ValueError(f"MACD fast period ({fast}) must be < slow period ({slow})")

    slow_ema = calculate_ema(values, slow)
    if not slow_ema:
        return []
    fast_ema = calculate_ema(values, fast)[slow - fast:]
    macd_line = [f - s for f, s in zip(fast_ema, slow_ema)]

    signal_line = calculate_ema(macd_line, signal)
    aligned = macd_line[signal - 1:]
    return [
        MACDPoint(macd=m, signal=s, histogram=m - s)
        for m, s in zip(aligned, signal_line)
    ]


# ── RSI ──────────────────────────────────────────────────────────────────


def calculate_rsi(values: list[float], period: int = 14) -> list[float]:
    """Calculate Wilder's Relative Strength Index.

    Algorithm (Wilder-smoothed):
        1. delta = value[i] - value[i-1]
        2. Separate gains (positive) and losses (|negative|).
        3. Seed average gain/loss = SMA of first *period* deltas.
        4. Subsequent: avg = (prev_avg × (period-1) + current) / period
        5. RSI = 100 - 100 / (1 + avg_gain / avg_loss)

    Returns ``len(values) - period`` values.
    """
    _check_period("RSI", period)
    if len(values) < period + 1:
        return []

    deltas = [values[i] - values[i - 1] for i in range(1, len(values))]
    gains = [max(d, 0.0) for d in deltas]
    losses = [abs(min(d, 0.0)) for d in deltas]

    def _rsi_from_avgs(ag: float, al: float) -> float:
        if al == 0:
            return 100.0 if ag > 0 else 50.0
        return 100.0 - 100.0 / (1.0 + ag / al)

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    rsi = [_rsi_from_avgs(avg_gain, avg_loss)]

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        rsi.append(_rsi_from_avgs(avg_gain, avg_loss))

    return rsi


def calculate_stoch_rsi(
    values: list[float],
    rsi_period: int = 14,
    stoch_period: int = 14,
    k_period: int = 3,
    d_period: int = 3,
) -> list[StochRSIPoint]:
    """Stochastic oscillator applied to RSI.

    ``stoch = (rsi − min(rsi, n)) / (max(rsi, n) − min(rsi, n)) × 100``;
    %K is the SMA of stoch over *k_period*, %D the SMA of %K over
    *d_period*.  A flat RSI window yields 0.
    """
    for name, p in (("StochRSI stoch", stoch_period), ("StochRSI k", k_period), ("StochRSI d", d_period)):
        _check_period(name, p)

    rsi = calculate_rsi(values, rsi_period)
    if len(rsi) < stoch_period:
        return []

    stoch: list[float] = []
    for i in range(stoch_period - 1, len(rsi)):
        window = rsi[i - stoch_period + 1 : i + 1]
        lo, hi = min(window), max(window)
        stoch.append(0.0 if hi == lo else (rsi[i] - lo) / (hi - lo) * 100.0)

    k_line = _sma(stoch, k_period)
    d_line = _sma(k_line, d_period)
    if not d_line:
        return []

    stoch_aligned = stoch[k_period - 1 + d_period - 1:]
    k_aligned = k_line[d_period - 1:]
    return [
        StochRSIPoint(stoch_rsi=s, k=k, d=d)
        for s, k, d in zip(stoch_aligned, k_aligned, d_line)
    ]


def detect_rsi_divergence(
    prices: list[float],
    rsi: list[float],
    lookback: int = 14,
) -> Divergence:
    """Compare the two halves of the last *lookback* bars.

    - bullish: lower price low, higher RSI low
    - bearish: higher price high, lower RSI high
    - hidden_bullish: higher price low, lower RSI low
    - hidden_bearish: lower price high, higher RSI high

    Regular divergence strength is ``min(1, (price_delta + rsi_delta/100) × 2)``
    with the price delta relative to the first-half extreme; hidden
    divergence strength is ``min(1, |rsi_delta| / 20)``.
    """
    _check_period("divergence lookback", lookback)
    if len(prices) < lookback or len(rsi) < lookback or lookback < 2:
        return Divergence(kind=None, strength=0.0)

    recent_prices = prices[-lookback:]
    recent_rsi = rsi[-lookback:]
    half = lookback // 2

    price_min1, price_min2 = min(recent_prices[:half]), min(recent_prices[half:])
    price_max1, price_max2 = max(recent_prices[:half]), max(recent_prices[half:])
    rsi_min1, rsi_min2 = min(recent_rsi[:half]), min(recent_rsi[half:])
    rsi_max1, rsi_max2 = max(recent_rsi[:half]), max(recent_rsi[half:])

    if price_min2 < price_min1 and rsi_min2 > rsi_min1:
        price_change = (price_min1 - price_min2) / price_min1
        rsi_change = (rsi_min2 - rsi_min1) / 100.0
        return Divergence("bullish", min(1.0, (price_change + rsi_change) * 2))

    if price_max2 > price_max1 and rsi_max2 < rsi_max1:
        price_change = (price_max2 - price_max1) / price_max1
        rsi_change = (rsi_max1 - rsi_max2) / 100.0
        return Divergence("bearish", min(1.0, (price_change + rsi_change) * 2))

    if price_min2 > price_min1 and rsi_min2 < rsi_min1:
        return Divergence("hidden_bullish", min(1.0, abs(rsi_min1 - rsi_min2) / 20.0))

    if price_max2 < price_max1 and rsi_max2 > rsi_max1:
        return Divergence("hidden_bearish", min(1.0, abs(rsi_max2 - rsi_max1) / 20.0))

    return Divergence(kind=None, strength=0.0)


def calculate_momentum_acceleration(rsi: list[float], period: int = 5) -> list[float]:
    """Rate of change of RSI momentum.

    ``(rsi[i] − rsi[i−1]) − (rsi[i−1] − rsi[i−period]) / (period − 1)``
    """
    if period < 2:
        raise ValueError(f"Acceleration period must be >= 2, got {period}")
    if len(rsi) < period + 1:
        return []
    return [
        (rsi[i] - rsi[i - 1]) - (rsi[i - 1] - rsi[i - period]) / (period - 1)
        for i in range(period, len(rsi))
    ]


# ── Volatility ───────────────────────────────────────────────────────────


def calculate_atr(
    high: list[float],
    low: list[float],
    close: list[float],
    period: int = 14,
) -> list[float]:
    """Calculate Wilder's Average True Range.

    ``TR = max(high − low, |high − prev_close|, |low − prev_close|)``;
    seeded with the SMA of the first *period* true ranges, then
    ``ATR = (prev × (period − 1) + TR) / period``.

    Returns ``len(close) - period`` values.
    """
    _check_period("ATR", period)
    _check_lengths(high, low, close)
    true_ranges = _true_ranges(high, low, close)
    if len(true_ranges) < period:
        return []

    atr = [sum(true_ranges[:period]) / period]
    for tr in true_ranges[period:]:
        atr.append((atr[-1] * (period - 1) + tr) / period)
    return atr


def calculate_adx(
    high: list[float],
    low: list[float],
    close: list[float],
    period: int = 14,
) -> list[float]:
    """Calculate the Average Directional Index (ADX).

    Algorithm:
        1. +DM / -DM directional movement per bar.
        2. Wilder-smooth +DM, -DM, and TR over *period*.
        3. +DI = 100 × smoothed_+DM / smoothed_TR
        4. -DI = 100 × smoothed_-DM / smoothed_TR
        5. DX = 100 × |+DI − −DI| / (+DI + −DI)
        6. ADX = Wilder-smoothed DX over *period*.

    Values above ``ADX_STRONG_TREND`` denote a strong trend, below
    ``ADX_RANGE_BOUND`` a range-bound market.  Needs ``2 × period`` bars.
    """
    _check_period("ADX", period)
    _check_lengths(high, low, close)
    n = len(close)
    if n < 2 * period:
        return []

    plus_dm: list[float] = []
    minus_dm: list[float] = []
    for i in range(1, n):
        up_move = high[i] - high[i - 1]
        down_move = low[i - 1] - low[i]
        plus_dm.append(up_move if (up_move > down_move and up_move > 0) else 0.0)
        minus_dm.append(down_move if (down_move > up_move and down_move > 0) else 0.0)
    true_ranges = _true_ranges(high, low, close)

    def _dx(s_pdm: float, s_mdm: float, s_tr: float) -> float:
        if s_tr == 0:
            return 0.0
        plus_di = 100.0 * s_pdm / s_tr
        minus_di = 100.0 * s_mdm / s_tr
        di_sum = plus_di + minus_di
        if di_sum == 0:
            return 0.0
        return 100.0 * abs(plus_di - minus_di) / di_sum

    s_pdm = sum(plus_dm[:period])
    s_mdm = sum(minus_dm[:period])
    s_tr = sum(true_ranges[:period])
    dx_values = [_dx(s_pdm, s_mdm, s_tr)]

    for i in range(period, len(true_ranges)):
        s_pdm = s_pdm - s_pdm / period + plus_dm[i]
        s_mdm = s_mdm - s_mdm / period + minus_dm[i]
        s_tr = s_tr - s_tr / period + true_ranges[i]
        dx_values.append(_dx(s_pdm, s_mdm, s_tr))

    if len(dx_values) < period:
        return []

    adx = [sum(dx_values[:period]) / period]
    for dx in dx_values[period:]:
        adx.append((adx[-1] * (period - 1) + dx) / period)
    return adx


def calculate_bollinger(
    values: list[float],
    period: int = 20,
    std_dev: float = 2.0,
) -> list[BollingerPoint]:
    """Calculate Bollinger Bands with bandwidth and %B.

    Middle = SMA(*period*), bands at ±*std_dev* population σ.
    Bandwidth is 0 when the middle band is not positive; %B is 0.5 when
    the bands collapse onto the middle.
    """
    _check_period("Bollinger", period)
    if len(values) < period:
        return []

    points: list[BollingerPoint] = []
    for i in range(period - 1, len(values)):
        window = values[i - period + 1 : i + 1]
        sma = sum(window) / period
        sigma = math.sqrt(sum((x - sma) ** 2 for x in window) / period)
        upper = sma + std_dev * sigma
        lower = sma - std_dev * sigma
        band_range = upper - lower
        points.append(
            BollingerPoint(
                upper=upper,
                middle=sma,
                lower=lower,
                bandwidth=band_range / sma if sma > 0 else 0.0,
                percent_b=(values[i] - lower) / band_range if band_range > 0 else 0.5,
            )
        )
    return points


def detect_bollinger_squeeze(bandwidths: list[float], lookback: int = 20) -> SqueezeResult:
    """Flag a squeeze when current bandwidth < 0.7 × its trailing average.

    The percentile is the rank of the current bandwidth within the window
    (50 when there is not enough history).
    """
    _check_period("squeeze lookback", lookback)
    if len(bandwidths) < lookback:
        return SqueezeResult(is_squeeze=False, percentile=50.0)

    recent = bandwidths[-lookback:]
    current = recent[-1]
    average = sum(recent) / len(recent)
    ordered = sorted(recent)
    rank = next(i for i, b in enumerate(ordered) if b >= current)
    return SqueezeResult(
        is_squeeze=current < average * 0.7,
        percentile=rank / len(ordered) * 100.0,
    )


def calculate_volatility_regime(
    atr: list[float],
    prices: list[float],
    lookback: int = 14,
) -> str:
    """Classify ATR-as-%-of-price against its trailing average.

    ``low`` < 0.5×avg ≤ ``normal`` < 1.2×avg ≤ ``high`` < 2×avg ≤ ``extreme``.
    The last *lookback* values of each series are paired bar for bar.
    """
    _check_period("volatility lookback", lookback)
    if len(atr) < lookback or len(prices) < lookback:
        return "normal"

    atr_pct = [
        a / p * 100.0 if p else 0.0
        for a, p in zip(atr[-lookback:], prices[-lookback:])
    ]
    current = atr_pct[-1]
    average = sum(atr_pct) / len(atr_pct)

    if current < average * 0.5:
        return "low"
    if current < average * 1.2:
        return "normal"
    if current < average * 2:
        return "high"
    return "extreme"


# ── Volume ───────────────────────────────────────────────────────────────


def calculate_vwap(
    high: list[float],
    low: list[float],
    close: list[float],
    volume: list[float],
) -> list[float]:
    """Cumulative VWAP from the start of the series (no session reset)."""
    _check_lengths(high, low, close, volume)

    vwap: list[float] = []
    cumulative_tpv = 0.0
    cumulative_volume = 0.0
    for h, l, c, v in zip(high, low, close, volume):
        typical = (h + l + c) / 3
        cumulative_tpv += typical * v
        cumulative_volume += v
        vwap.append(cumulative_tpv / cumulative_volume if cumulative_volume > 0 else typical)
    return vwap


def calculate_obv(close: list[float], volume: list[float]) -> list[float]:
    """On-balance volume starting at 0 on the first bar."""
    _check_lengths(close, volume)
    if len(close) < 2:
        return []

    obv = [0.0]
    for i in range(1, len(close)):
        if close[i] > close[i - 1]:
            obv.append(obv[-1] + volume[i])
        elif close[i] < close[i - 1]:
            obv.append(obv[-1] - volume[i])
        else:
            obv.append(obv[-1])
    return obv


def calculate_obv_trend(obv: list[float], period: int = 10) -> str:
    """``rising`` / ``falling`` / ``neutral`` from the last step of EMA(OBV).

    The change is relative to ``|previous|`` (or 1 when previous is 0),
    with a 1 % deadband.
    """
    _check_period("OBV trend", period)
    if len(obv) < period + 1:
        return "neutral"

    ema = calculate_ema(obv, period)
    current, previous = ema[-1], ema[-2]
    change = (current - previous) / (abs(previous) or 1.0)
    if change > 0.01:
        return "rising"
    if change < -0.01:
        return "falling"
    return "neutral"


# ── Levels ───────────────────────────────────────────────────────────────


def calculate_pivot_points(high: float, low: float, close: float) -> PivotPoints:
    """Classic pivots from one completed bar.

    pivot = (H + L + C) / 3, R1 = 2P − L, S1 = 2P − H,
    R2 = P + (H − L), S2 = P − (H − L).
    """
    pivot = (high + low + close) / 3
    return PivotPoints(
        pivot=pivot,
        r1=2 * pivot - low,
        r2=pivot + (high - low),
        s1=2 * pivot - high,
        s2=pivot - (high - low),
    )


def last(series: list, default: Optional[float] = None):
    """Latest value of a trimmed series, or *default* when it is empty."""
    return series[-1] if series else default
