"""Market signal aggregator — multi-timeframe indicator snapshot per instrument.

Fetches intraday, swing and daily candles through the gateway, runs the
indicator library over each and condenses the result into a
``MarketState`` with a confluence score and suggested protective levels.
"""

import asyncio
import logging
from dataclasses import dataclass

from perpguard.broker.base import ExchangeGateway
from perpguard.errors import GatewayError
from perpguard.models.instrument import Instrument
from perpguard.risk.sl_tp import SuggestedLevelConfig, calculate_suggested_levels
from perpguard.strategy import indicators as ind
from perpguard.strategy.confluence import (
    DEFAULT_WEIGHTS,
    ConfluenceInputs,
    ConfluenceWeights,
    calculate_confluence,
)
from perpguard.strategy.models import (
    DailyContext,
    IntradayContext,
    MarketState,
    MomentumMetrics,
    StochRSIPoint,
    SwingContext,
    VolatilityMetrics,
    VolumeMetrics,
)

logger = logging.getLogger("perpguard.market")


@dataclass(frozen=True)
class Timeframes:
    """Which candles to fetch and how many."""

    intraday: str = "1m"
    intraday_limit: int = 100
    swing: str = "4h"
    swing_limit: int = 100
    daily: str = "1d"
    daily_limit: int = 50
    series_tail: int = 10  # intraday values exposed to the advisor


_DAILY_TREND_BAND = 0.002
_VWAP_BAND = 0.001


def _tail(series: list[float], n: int) -> tuple[float, ...]:
    return tuple(series[-n:])


def _daily_trend(ema_20: float | None, ema_50: float | None) -> str:
    if ema_20 is None or ema_50 is None:
        return "sideways"
    if ema_20 > ema_50 * (1 + _DAILY_TREND_BAND):
        return "up"
    if ema_20 < ema_50 * (1 - _DAILY_TREND_BAND):
        return "down"
    return "sideways"


class MarketSignalAggregator:
    """Builds a ``MarketState`` for one instrument per call.

    Args:
        gateway: Any ``ExchangeGateway`` (or compatible duck-type / mock).
        weights: Confluence rule weights and thresholds.
        levels: Multipliers for the suggested stop-loss / take-profit.
        timeframes: Candle timeframes and counts to fetch.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        weights: ConfluenceWeights = DEFAULT_WEIGHTS,
        levels: SuggestedLevelConfig = SuggestedLevelConfig(),
        timeframes: Timeframes = Timeframes(),
    ) -> None:
        self._gateway = gateway
        self._weights = weights
        self._levels = levels
        self._tf = timeframes

    async def _fetch_aux(self, instrument: Instrument) -> tuple[float, float, list[str]]:
        """Open interest and funding rate; failures degrade to 0 with a warning."""
        warnings: list[str] = []
        open_interest = 0.0
        funding = 0.0
        try:
            open_interest = (await self._gateway.fetch_open_interest(instrument)).amount
        except GatewayError as exc:
            logger.warning("%s: open interest unavailable (%s)", instrument.pair, exc)
            warnings.append("open interest unavailable")
        try:
            funding = (await self._gateway.fetch_funding_rate(instrument)).rate
        except GatewayError as exc:
            logger.warning("%s: funding rate unavailable (%s)", instrument.pair, exc)
            warnings.append("funding rate unavailable")
        return open_interest, funding, warnings

    async def evaluate(self, instrument: Instrument) -> MarketState:
        """Fetch data and compute the full snapshot for *instrument*.

        Raises:
            GatewayError: If candles cannot be fetched.
            ValueError: If the swing series is too short for pivots.
        """
        tf = self._tf
        intraday, swing, daily = await asyncio.gather(
            self._gateway.fetch_ohlcv(instrument, tf.intraday, tf.intraday_limit),
            self._gateway.fetch_ohlcv(instrument, tf.swing, tf.swing_limit),
            self._gateway.fetch_ohlcv(instrument, tf.daily, tf.daily_limit),
        )
        if len(swing) < 2 or not intraday:
            raise ValueError(
                f"{instrument.pair}: not enough candles "
                f"({len(intraday)} {tf.intraday}, {len(swing)} {tf.swing})"
            )
        open_interest, funding, warnings = await self._fetch_aux(instrument)

        closes_i = [c.close for c in intraday]
        closes_s = [c.close for c in swing]
        highs_s = [c.high for c in swing]
        lows_s = [c.low for c in swing]
        volumes_s = [c.volume for c in swing]
        closes_d = [c.close for c in daily]
        highs_d = [c.high for c in daily]
        lows_d = [c.low for c in daily]

        price = closes_i[-1]

        # Intraday
        rsi7_i = ind.calculate_rsi(closes_i, 7)
        rsi14_i = ind.calculate_rsi(closes_i, 14)
        intraday_ctx = IntradayContext(
            prices=_tail(closes_i, tf.series_tail),
            ema_20=_tail(ind.calculate_ema(closes_i, 20), tf.series_tail),
            macd=_tail([p.macd for p in ind.calculate_macd(closes_i)], tf.series_tail),
            rsi_7=_tail(rsi7_i, tf.series_tail),
            rsi_14=_tail(rsi14_i, tf.series_tail),
        )

        # Swing
        atr14_s = ind.calculate_atr(highs_s, lows_s, closes_s, 14)
        rsi14_s = ind.calculate_rsi(closes_s, 14)
        adx14_s = ind.calculate_adx(highs_s, lows_s, closes_s, 14)
        pivots = ind.calculate_pivot_points(highs_s[-2], lows_s[-2], closes_s[-2])
        swing_ctx = SwingContext(
            ema_20=ind.last(ind.calculate_ema(closes_s, 20), 0.0),
            ema_50=ind.last(ind.calculate_ema(closes_s, 50), 0.0),
            atr_3=ind.last(ind.calculate_atr(highs_s, lows_s, closes_s, 3), 0.0),
            atr_14=ind.last(atr14_s, 0.0),
            adx_14=ind.last(adx14_s, 0.0),
            rsi_14=ind.last(rsi14_s, 50.0),
            pivot_points=pivots,
        )

        # Daily
        daily_ema20 = ind.last(ind.calculate_ema(closes_d, 20))
        daily_ema50 = ind.last(ind.calculate_ema(closes_d, 50))
        daily_ctx = DailyContext(
            trend=_daily_trend(daily_ema20, daily_ema50),
            ema_20=daily_ema20 or 0.0,
            ema_50=daily_ema50 or 0.0,
            adx=ind.last(ind.calculate_adx(highs_d, lows_d, closes_d, 14), 0.0),
            pivot_points=(
                ind.calculate_pivot_points(highs_d[-2], lows_d[-2], closes_d[-2])
                if len(daily) >= 2 else None
            ),
        )

        # Volatility
        bollinger = ind.calculate_bollinger(closes_s, 20, 2.0)
        current_bb = bollinger[-1] if bollinger else None
        squeeze = ind.detect_bollinger_squeeze([b.bandwidth for b in bollinger])
        volatility = VolatilityMetrics(
            regime=ind.calculate_volatility_regime(atr14_s, closes_s),
            bb_bandwidth=current_bb.bandwidth if current_bb else 0.0,
            bb_percent_b=current_bb.percent_b if current_bb else 0.5,
            is_squeeze=squeeze.is_squeeze,
            squeeze_percentile=squeeze.percentile,
        )

        # Momentum
        stoch = ind.last(ind.calculate_stoch_rsi(closes_s)) or StochRSIPoint(50.0, 50.0, 50.0)
        divergence = ind.detect_rsi_divergence(closes_s, rsi14_s, 14)
        macd_s = ind.calculate_macd(closes_s)
        histogram = macd_s[-1].histogram if macd_s else 0.0
        prev_histogram = macd_s[-2].histogram if len(macd_s) >= 2 else 0.0
        if histogram > prev_histogram:
            histogram_trend = "rising"
        elif histogram < prev_histogram:
            histogram_trend = "falling"
        else:
            histogram_trend = "neutral"
        momentum = MomentumMetrics(
            stoch_rsi=stoch,
            divergence=divergence,
            macd_histogram=histogram,
            macd_histogram_trend=histogram_trend,
            rsi_acceleration=ind.last(ind.calculate_momentum_acceleration(rsi14_s), 0.0),
        )

        # Volume
        vwap = ind.last(ind.calculate_vwap(highs_s, lows_s, closes_s, volumes_s), closes_s[-1])
        if price > vwap * (1 + _VWAP_BAND):
            price_vs_vwap = "above"
        elif price < vwap * (1 - _VWAP_BAND):
            price_vs_vwap = "below"
        else:
            price_vs_vwap = "at"
        obv = ind.calculate_obv(closes_s, volumes_s)
        average_volume = sum(volumes_s) / len(volumes_s)
        volume_ratio = volumes_s[-1] / average_volume if average_volume > 0 else 1.0
        volume = VolumeMetrics(
            vwap=vwap,
            price_vs_vwap=price_vs_vwap,
            obv=ind.last(obv, 0.0),
            obv_trend=ind.calculate_obv_trend(obv),
            volume_ratio=volume_ratio,
            current_volume=volumes_s[-1],
            average_volume=average_volume,
        )

        confluence = calculate_confluence(
            ConfluenceInputs(
                price=price,
                swing_ema_20=swing_ctx.ema_20,
                swing_ema_50=swing_ctx.ema_50,
                adx=swing_ctx.adx_14,
                rsi=swing_ctx.rsi_14,
                stoch_rsi=stoch,
                volume_ratio=volume_ratio,
                funding_rate=funding,
                divergence=divergence,
                daily_trend=daily_ctx.trend,
                pivots=pivots,
                percent_b=volatility.bb_percent_b,
            ),
            self._weights,
        )
        levels = calculate_suggested_levels(price, swing_ctx.atr_14, pivots, self._levels)

        logger.info(
            "%s confluence: bullish=%.2f bearish=%.2f net=%.2f -> %s | %s",
            instrument.pair,
            confluence.bullish_points,
            confluence.bearish_points,
            confluence.net_score,
            confluence.recommendation.value,
            "; ".join(confluence.factors) or "no factors",
        )

        return MarketState(
            symbol=instrument.pair,
            current_price=price,
            open_interest=open_interest,
            funding_rate=funding,
            intraday=intraday_ctx,
            swing=swing_ctx,
            daily=daily_ctx,
            volatility=volatility,
            momentum=momentum,
            volume=volume,
            confluence=confluence,
            suggested_stop_loss=levels.sl,
            suggested_take_profit=levels.tp,
            warnings=tuple(warnings),
        )
