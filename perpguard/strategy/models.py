"""Strategy data models — typed representations for indicator and signal outputs."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class MACDPoint:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerPoint:
    upper: float
    middle: float
    lower: float
    bandwidth: float  # (upper - lower) / middle
    percent_b: float  # (price - lower) / (upper - lower)


@dataclass(frozen=True)
class StochRSIPoint:
    stoch_rsi: float
    k: float
    d: float


@dataclass(frozen=True)
class Divergence:
    kind: Optional[str]  # "bullish", "bearish", "hidden_bullish", "hidden_bearish"
    strength: float  # 0..1


@dataclass(frozen=True)
class SqueezeResult:
    is_squeeze: bool
    percentile: float


@dataclass(frozen=True)
class PivotPoints:
    """Classic floor pivots from one completed bar."""

    pivot: float
    r1: float
    r2: float
    s1: float
    s2: float


class Recommendation(str, Enum):
    STRONG_BUY = "STRONG_BUY"
    BUY = "BUY"
    NEUTRAL = "NEUTRAL"
    SELL = "SELL"
    STRONG_SELL = "STRONG_SELL"


@dataclass(frozen=True)
class ConfluenceScore:
    """Weighted bullish/bearish evidence and the resulting recommendation."""

    bullish_points: float
    bearish_points: float
    factors: tuple[str, ...]
    recommendation: Recommendation

    @property
    def net_score(self) -> float:
        return self.bullish_points - self.bearish_points


@dataclass(frozen=True)
class VolatilityMetrics:
    regime: str  # "low", "normal", "high", "extreme"
    bb_bandwidth: float
    bb_percent_b: float
    is_squeeze: bool
    squeeze_percentile: float


@dataclass(frozen=True)
class MomentumMetrics:
    stoch_rsi: StochRSIPoint
    divergence: Divergence
    macd_histogram: float
    macd_histogram_trend: str  # "rising", "falling", "neutral"
    rsi_acceleration: float


@dataclass(frozen=True)
class VolumeMetrics:
    vwap: float
    price_vs_vwap: str  # "above", "below", "at"
    obv: float
    obv_trend: str
    volume_ratio: float
    current_volume: float
    average_volume: float


@dataclass(frozen=True)
class IntradayContext:
    """Short-timeframe series, last few values only."""

    prices: tuple[float, ...]
    ema_20: tuple[float, ...]
    macd: tuple[float, ...]
    rsi_7: tuple[float, ...]
    rsi_14: tuple[float, ...]


@dataclass(frozen=True)
class SwingContext:
    ema_20: float
    ema_50: float
    atr_3: float
    atr_14: float
    adx_14: float
    rsi_14: float
    pivot_points: PivotPoints


@dataclass(frozen=True)
class DailyContext:
    trend: str  # "up", "down", "sideways"
    ema_20: float
    ema_50: float
    adx: float
    pivot_points: Optional[PivotPoints]


@dataclass(frozen=True)
class MarketState:
    """Everything the advisor and the engine know about one instrument."""

    symbol: str
    current_price: float
    open_interest: float
    funding_rate: float
    intraday: IntradayContext
    swing: SwingContext
    daily: DailyContext
    volatility: VolatilityMetrics
    momentum: MomentumMetrics
    volume: VolumeMetrics
    confluence: ConfluenceScore
    suggested_stop_loss: float
    suggested_take_profit: float
    warnings: tuple[str, ...] = field(default_factory=tuple)
