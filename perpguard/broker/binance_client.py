"""Binance USDⓈ-M futures REST API async client.

Handles all communication with the exchange: candle fetching, account
queries, leverage, order placement and protection-order management.
Signed endpoints use HMAC-SHA256 over the query string.
"""

import asyncio
import hashlib
import hmac
import logging
import math
import time
import urllib.parse
from typing import Optional

import httpx

from perpguard.broker.models import (
    Balance,
    Candle,
    ExchangePosition,
    FundingRate,
    OpenInterest,
    OpenOrder,
    OrderResult,
)
from perpguard.config import Config
from perpguard.errors import GatewayError
from perpguard.models.instrument import Instrument

logger = logging.getLogger("perpguard.broker")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}
_RECV_WINDOW_MS = 10_000

# (quantity decimals, price decimals) per contract
_PRECISION: dict[Instrument, tuple[int, int]] = {
    Instrument.BTC: (3, 1),
    Instrument.ETH: (3, 2),
    Instrument.BNB: (2, 2),
    Instrument.SOL: (0, 2),
    Instrument.DOGE: (0, 5),
}

_TIMEFRAMES = {"1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "3d", "1w"}


def _format_decimal(value: float, decimals: int) -> str:
    """Floor *value* to *decimals* places and render without exponent."""
    factor = 10 ** decimals
    floored = math.floor(value * factor + 1e-9) / factor
    return f"{floored:.{decimals}f}"


class BinanceFuturesClient:
    """Async client wrapping the Binance USDⓈ-M futures REST API."""

    def __init__(self, config: Config) -> None:
        self._base_url = config.binance_base_url
        self._api_key = config.binance_api_key
        self._api_secret = config.binance_api_secret
        self._headers = {"X-MBX-APIKEY": config.binance_api_key}

    # ── Signing ──────────────────────────────────────────────────────────

    def _sign(self, params: dict) -> str:
        """Return the signed query string for *params*."""
        params = {**params, "timestamp": int(time.time() * 1000), "recvWindow": _RECV_WINDOW_MS}
        qs = urllib.parse.urlencode(params)
        sig = hmac.new(
            self._api_secret.encode(), qs.encode(), hashlib.sha256
        ).hexdigest()
        return f"{qs}&signature={sig}"

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        signed: bool = False,
        retry: bool = True,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504) and rate-limits
        (429).  Everything else raises ``GatewayError`` immediately.

        With ``retry=False`` the request is sent exactly once and any fault
        raises ``GatewayError``.  Order placement uses this: a request that
        timed out may already have been filled.
        """
        last_exc: Optional[Exception] = None
        attempts = _MAX_RETRIES if retry else 1

        for attempt in range(attempts):
            # Re-sign each attempt so the timestamp stays inside recvWindow
            if signed:
                qs = self._sign(params or {})
            else:
                qs = urllib.parse.urlencode(params or {})
            url = f"{self._base_url}{path}"
            if qs:
                url = f"{url}?{qs}"

            try:
                async with httpx.AsyncClient() as client:
                    resp = await getattr(client, method)(
                        url,
                        headers=self._headers,
                        timeout=30.0,
                    )

                if resp.status_code in _RETRYABLE_STATUS_CODES and not retry:
                    raise GatewayError(
                        f"Binance {method.upper()} {path} returned {resp.status_code}; not re-sent",
                        status_code=resp.status_code,
                    )
                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "Binance %s %s returned %d, retry %d/%d in %.1fs",
                        method.upper(), path, resp.status_code,
                        attempt + 1, _MAX_RETRIES, delay,
                    )
                    await asyncio.sleep(delay)
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    continue

                resp.raise_for_status()
                return resp

            except httpx.HTTPStatusError as exc:
                raise GatewayError(
                    f"Binance {method.upper()} {path} failed: {_error_message(exc.response)}",
                    status_code=exc.response.status_code,
                ) from exc
            except httpx.TransportError as exc:
                if not retry:
                    raise GatewayError(
                        f"Binance {method.upper()} {path} outcome unknown ({exc!r}); not re-sent"
                    ) from exc
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Binance %s %s transport error (%s), retry %d/%d in %.1fs",
                    method.upper(), path, exc,
                    attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        status = None
        if isinstance(last_exc, httpx.HTTPStatusError):
            status = last_exc.response.status_code
        raise GatewayError(
            f"Binance {method.upper()} {path} failed after {attempts} attempts: {last_exc}",
            status_code=status,
        ) from last_exc

    # ── Account ──────────────────────────────────────────────────────────

    async def fetch_balance(self) -> Balance:
        """Free and total USDT margin balance."""
        resp = await self._request_with_retry("get", "/fapi/v2/account", signed=True)
        acct = resp.json()
        return Balance(
            free=float(acct["availableBalance"]),
            total=float(acct["totalMarginBalance"]),
        )

    async def fetch_positions(self, instruments: list[Instrument]) -> list[ExchangePosition]:
        """Return non-zero exposures for *instruments*."""
        resp = await self._request_with_retry("get", "/fapi/v2/positionRisk", signed=True)

        by_symbol = {i.exchange_symbol: i for i in instruments}
        positions: list[ExchangePosition] = []
        for p in resp.json():
            inst = by_symbol.get(p["symbol"])
            contracts = float(p.get("positionAmt", "0"))
            if inst is None or contracts == 0:
                continue
            notional = abs(float(p.get("notional", "0")))
            leverage = float(p.get("leverage", "1")) or 1.0
            liq = float(p.get("liquidationPrice", "0"))
            positions.append(
                ExchangePosition(
                    symbol=inst.pair,
                    contracts=abs(contracts),
                    entry_price=float(p.get("entryPrice", "0")),
                    mark_price=float(p.get("markPrice", "0")),
                    notional=notional,
                    leverage=leverage,
                    liquidation_price=liq if liq > 0 else None,
                    initial_margin=notional / leverage,
                    unrealized_pnl=float(p.get("unRealizedProfit", "0")),
                )
            )
        return positions

    # ── Market data ──────────────────────────────────────────────────────

    async def fetch_ticker(self, instrument: Instrument) -> float:
        """Last traded price."""
        resp = await self._request_with_retry(
            "get", "/fapi/v1/ticker/price", params={"symbol": instrument.exchange_symbol}
        )
        return float(resp.json()["price"])

    async def fetch_ohlcv(
        self,
        instrument: Instrument,
        timeframe: str,
        limit: int = 100,
    ) -> list[Candle]:
        """Fetch candlestick data.

        Args:
            instrument: contract to query.
            timeframe: e.g. ``"1m"``, ``"4h"``, ``"1d"``
            limit: number of candles to request (max 1500)

        Returns:
            List of ``Candle`` objects ordered oldest-first.
        """
        if timeframe not in _TIMEFRAMES:
            raise ValueError(f"Unsupported timeframe '{timeframe}'")
        resp = await self._request_with_retry(
            "get",
            "/fapi/v1/klines",
            params={
                "symbol": instrument.exchange_symbol,
                "interval": timeframe,
                "limit": limit,
            },
        )
        return [
            Candle(
                time=int(k[0]),
                open=float(k[1]),
                high=float(k[2]),
                low=float(k[3]),
                close=float(k[4]),
                volume=float(k[5]),
            )
            for k in resp.json()
        ]

    async def fetch_open_interest(self, instrument: Instrument) -> OpenInterest:
        resp = await self._request_with_retry(
            "get", "/fapi/v1/openInterest", params={"symbol": instrument.exchange_symbol}
        )
        return OpenInterest(amount=float(resp.json()["openInterest"]))

    async def fetch_funding_rate(self, instrument: Instrument) -> FundingRate:
        resp = await self._request_with_retry(
            "get", "/fapi/v1/premiumIndex", params={"symbol": instrument.exchange_symbol}
        )
        data = resp.json()
        return FundingRate(
            rate=float(data["lastFundingRate"]),
            next_funding_time=data.get("nextFundingTime"),
        )

    # ── Orders ───────────────────────────────────────────────────────────

    async def set_leverage(self, leverage: int, instrument: Instrument) -> None:
        await self._request_with_retry(
            "post",
            "/fapi/v1/leverage",
            params={"symbol": instrument.exchange_symbol, "leverage": int(leverage)},
            signed=True,
            retry=False,
        )

    async def create_market_order(
        self,
        instrument: Instrument,
        side: str,
        amount: float,
        reduce_only: bool = False,
    ) -> OrderResult:
        """Submit a market order and return its fill report."""
        qty_decimals, _ = _PRECISION[instrument]
        params = {
            "symbol": instrument.exchange_symbol,
            "side": side.upper(),
            "type": "MARKET",
            "quantity": _format_decimal(amount, qty_decimals),
            "newOrderRespType": "RESULT",
        }
        if reduce_only:
            params["reduceOnly"] = "true"

        resp = await self._request_with_retry(
            "post", "/fapi/v1/order", params=params, signed=True, retry=False
        )
        return _parse_order(resp.json(), instrument)

    async def create_order(
        self,
        instrument: Instrument,
        order_type: str,
        side: str,
        stop_price: float,
        reduce_only: bool = True,
        amount: Optional[float] = None,
    ) -> OrderResult:
        """Place a STOP_MARKET or TAKE_PROFIT_MARKET protection order.

        Without *amount* the order closes the whole position on trigger.
        """
        qty_decimals, price_decimals = _PRECISION[instrument]
        params = {
            "symbol": instrument.exchange_symbol,
            "side": side.upper(),
            "type": order_type,
            "stopPrice": _format_decimal(stop_price, price_decimals),
            "workingType": "MARK_PRICE",
        }
        if amount is None:
            params["closePosition"] = "true"
        else:
            params["quantity"] = _format_decimal(amount, qty_decimals)
            if reduce_only:
                params["reduceOnly"] = "true"

        resp = await self._request_with_retry(
            "post", "/fapi/v1/order", params=params, signed=True, retry=False
        )
        return _parse_order(resp.json(), instrument)

    async def fetch_open_orders(self, instrument: Instrument) -> list[OpenOrder]:
        resp = await self._request_with_retry(
            "get",
            "/fapi/v1/openOrders",
            params={"symbol": instrument.exchange_symbol},
            signed=True,
        )
        orders: list[OpenOrder] = []
        for o in resp.json():
            stop = float(o.get("stopPrice", "0"))
            orders.append(
                OpenOrder(
                    order_id=str(o["orderId"]),
                    symbol=instrument.pair,
                    order_type=o["type"],
                    side=o["side"].lower(),
                    stop_price=stop if stop > 0 else None,
                    reduce_only=bool(o.get("reduceOnly", False) or o.get("closePosition", False)),
                )
            )
        return orders

    async def cancel_order(self, order_id: str, instrument: Instrument) -> None:
        await self._request_with_retry(
            "delete",
            "/fapi/v1/order",
            params={"symbol": instrument.exchange_symbol, "orderId": order_id},
            signed=True,
        )


# ── Helpers ──────────────────────────────────────────────────────────────


def _error_message(resp: httpx.Response) -> str:
    """Extract Binance's ``{"code", "msg"}`` error body, falling back to text."""
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code} {resp.text[:200]}"
    if isinstance(body, dict) and "msg" in body:
        return f"{body['msg']} (code {body.get('code')})"
    return f"HTTP {resp.status_code}"


def _parse_order(data: dict, instrument: Instrument) -> OrderResult:
    avg = float(data.get("avgPrice", "0") or 0)
    stop = float(data.get("stopPrice", "0") or 0)
    return OrderResult(
        order_id=str(data["orderId"]),
        symbol=instrument.pair,
        side=data.get("side", "").lower(),
        order_type=data.get("type", ""),
        amount=float(data.get("origQty", "0") or 0),
        filled=float(data.get("executedQty", "0") or 0),
        average_price=avg if avg > 0 else None,
        status=data.get("status", ""),
        stop_price=stop if stop > 0 else None,
        reduce_only=bool(data.get("reduceOnly", False)),
    )
