"""Tests for perpguard.broker — Binance futures client with mocked HTTP, and the dry-run gateway."""

import asyncio
import hashlib
import hmac
import urllib.parse

import httpx
import pytest

from perpguard.broker.base import STOP_MARKET, TAKE_PROFIT_MARKET
from perpguard.broker.binance_client import BinanceFuturesClient
from perpguard.broker.dry_run import DRY_RUN_PREFIX, DryRunGateway
from perpguard.broker.models import Balance, Candle, OpenInterest, FundingRate
from perpguard.config import Config
from perpguard.errors import GatewayError
from perpguard.models.instrument import Instrument
from perpguard.models.ledger import Position, PositionStatus


def _make_config(environment: str = "testnet") -> Config:
    return Config(
        binance_api_key="test-key",
        binance_api_secret="test-secret",
        binance_environment=environment,
        trading_symbols=("BTC/USDT",),
        initial_capital=500.0,
        dry_run=True,
        db_path="data/perpguard.db",
        log_level="INFO",
        health_port=8080,
        poll_interval_seconds=300,
        cycle_timeout_seconds=300.0,
    )


def _query(url: str) -> dict:
    return dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(url).query))


# ── Mock Binance responses ───────────────────────────────────────────────

MOCK_ACCOUNT_RESPONSE = {
    "availableBalance": "412.50",
    "totalMarginBalance": "505.25",
    "assets": [],
}

MOCK_POSITION_RISK_RESPONSE = [
    {
        "symbol": "BTCUSDT",
        "positionAmt": "0.002",
        "entryPrice": "50000.0",
        "markPrice": "50500.0",
        "unRealizedProfit": "1.00",
        "liquidationPrice": "40200.5",
        "leverage": "5",
        "notional": "101.0",
    },
    {
        "symbol": "ETHUSDT",
        "positionAmt": "0",
        "entryPrice": "0.0",
        "markPrice": "2500.0",
        "unRealizedProfit": "0",
        "liquidationPrice": "0",
        "leverage": "10",
        "notional": "0",
    },
    {
        "symbol": "XRPUSDT",
        "positionAmt": "100",
        "entryPrice": "0.5",
        "markPrice": "0.5",
        "unRealizedProfit": "0",
        "liquidationPrice": "0",
        "leverage": "2",
        "notional": "50",
    },
]

MOCK_KLINES_RESPONSE = [
    [1736899200000, "50000.0", "50500.0", "49800.0", "50200.0", "123.4", 1736899259999],
    [1736899260000, "50200.0", "50300.0", "50100.0", "50250.0", "98.1", 1736899319999],
]

MOCK_ORDER_RESPONSE = {
    "orderId": 8389765519,
    "symbol": "BTCUSDT",
    "status": "FILLED",
    "side": "BUY",
    "type": "MARKET",
    "origQty": "0.002",
    "executedQty": "0.002",
    "avgPrice": "50010.5",
    "reduceOnly": False,
}

MOCK_STOP_RESPONSE = {
    "orderId": 8389765520,
    "symbol": "BTCUSDT",
    "status": "NEW",
    "side": "SELL",
    "type": "STOP_MARKET",
    "origQty": "0",
    "executedQty": "0",
    "avgPrice": "0",
    "stopPrice": "49000.0",
    "reduceOnly": True,
}

MOCK_OPEN_ORDERS_RESPONSE = [
    {
        "orderId": 1,
        "type": "STOP_MARKET",
        "side": "SELL",
        "stopPrice": "49000.0",
        "reduceOnly": True,
        "closePosition": True,
    },
    {
        "orderId": 2,
        "type": "LIMIT",
        "side": "BUY",
        "stopPrice": "0",
        "reduceOnly": False,
        "closePosition": False,
    },
]


# ── Binance client ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_signed_request(monkeypatch):
    """Signed calls carry timestamp, recvWindow, an HMAC signature and the API key header."""
    client = BinanceFuturesClient(_make_config())
    captured = {}

    async def _mock_get(self, url, *, headers=None, timeout=None):
        captured["url"] = url
        captured["headers"] = headers
        return httpx.Response(200, json=MOCK_ACCOUNT_RESPONSE, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)

    balance = await client.fetch_balance()
    assert balance == Balance(free=412.5, total=505.25)

    url = captured["url"]
    assert url.startswith("https://testnet.binancefuture.com/fapi/v2/account?")
    assert captured["headers"]["X-MBX-APIKEY"] == "test-key"

    query = urllib.parse.urlsplit(url).query
    unsigned, _, signature = query.rpartition("&signature=")
    expected = hmac.new(b"test-secret", unsigned.encode(), hashlib.sha256).hexdigest()
    assert signature == expected
    params = _query(url)
    assert "timestamp" in params
    assert params["recvWindow"] == "10000"


@pytest.mark.asyncio
async def test_fetch_positions_filters_and_parses(monkeypatch):
    client = BinanceFuturesClient(_make_config())

    async def _mock_get(self, url, *, headers=None, timeout=None):
        return httpx.Response(200, json=MOCK_POSITION_RISK_RESPONSE, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)

    positions = await client.fetch_positions([Instrument.BTC, Instrument.ETH])
    assert len(positions) == 1
    pos = positions[0]
    assert pos.symbol == "BTC/USDT"
    assert pos.contracts == pytest.approx(0.002)
    assert pos.notional == pytest.approx(101.0)
    assert pos.leverage == pytest.approx(5.0)
    assert pos.initial_margin == pytest.approx(20.2)
    assert pos.liquidation_price == pytest.approx(40200.5)
    assert pos.unrealized_pnl == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_fetch_ohlcv(monkeypatch):
    client = BinanceFuturesClient(_make_config())
    captured = {}

    async def _mock_get(self, url, *, headers=None, timeout=None):
        captured["url"] = url
        return httpx.Response(200, json=MOCK_KLINES_RESPONSE, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)

    candles = await client.fetch_ohlcv(Instrument.BTC, "1m", 2)
    assert candles[0] == Candle(
        time=1736899200000, open=50000.0, high=50500.0, low=49800.0, close=50200.0, volume=123.4
    )
    assert candles[1].close == pytest.approx(50250.0)
    params = _query(captured["url"])
    assert params == {"symbol": "BTCUSDT", "interval": "1m", "limit": "2"}


@pytest.mark.asyncio
async def test_fetch_ohlcv_rejects_unknown_timeframe():
    client = BinanceFuturesClient(_make_config())
    with pytest.raises(ValueError):
        await client.fetch_ohlcv(Instrument.BTC, "7m", 10)


@pytest.mark.asyncio
async def test_open_interest_and_funding(monkeypatch):
    client = BinanceFuturesClient(_make_config())

    async def _mock_get(self, url, *, headers=None, timeout=None):
        if "/openInterest" in url:
            body = {"symbol": "ETHUSDT", "openInterest": "152340.117"}
        else:
            body = {"symbol": "ETHUSDT", "lastFundingRate": "0.00010000", "nextFundingTime": 1736928000000}
        return httpx.Response(200, json=body, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)

    assert await client.fetch_open_interest(Instrument.ETH) == OpenInterest(amount=152340.117)
    assert await client.fetch_funding_rate(Instrument.ETH) == FundingRate(
        rate=0.0001, next_funding_time=1736928000000
    )


@pytest.mark.asyncio
async def test_market_order_params(monkeypatch):
    """Quantity is floored to contract precision; reduce-only is flagged."""
    client = BinanceFuturesClient(_make_config())
    captured = {}

    async def _mock_post(self, url, *, headers=None, timeout=None):
        captured["params"] = _query(url)
        return httpx.Response(200, json=MOCK_ORDER_RESPONSE, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

    order = await client.create_market_order(Instrument.BTC, "sell", 0.0029, reduce_only=True)
    params = captured["params"]
    assert params["symbol"] == "BTCUSDT"
    assert params["side"] == "SELL"
    assert params["type"] == "MARKET"
    assert params["quantity"] == "0.002"
    assert params["reduceOnly"] == "true"

    assert order.order_id == "8389765519"
    assert order.filled == pytest.approx(0.002)
    assert order.average_price == pytest.approx(50010.5)
    assert order.status == "FILLED"


@pytest.mark.asyncio
async def test_protection_order_closes_position(monkeypatch):
    client = BinanceFuturesClient(_make_config())
    captured = {}

    async def _mock_post(self, url, *, headers=None, timeout=None):
        captured["params"] = _query(url)
        return httpx.Response(200, json=MOCK_STOP_RESPONSE, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

    order = await client.create_order(Instrument.BTC, STOP_MARKET, "sell", 49_000.04)
    params = captured["params"]
    assert params["type"] == "STOP_MARKET"
    assert params["stopPrice"] == "49000.0"
    assert params["closePosition"] == "true"
    assert "quantity" not in params
    assert order.stop_price == pytest.approx(49_000.0)
    assert order.average_price is None


@pytest.mark.asyncio
async def test_open_orders_and_cancel(monkeypatch):
    client = BinanceFuturesClient(_make_config())
    deleted = []

    async def _mock_get(self, url, *, headers=None, timeout=None):
        return httpx.Response(200, json=MOCK_OPEN_ORDERS_RESPONSE, request=httpx.Request("GET", url))

    async def _mock_delete(self, url, *, headers=None, timeout=None):
        deleted.append(_query(url)["orderId"])
        return httpx.Response(200, json={"orderId": 1}, request=httpx.Request("DELETE", url))

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
    monkeypatch.setattr(httpx.AsyncClient, "delete", _mock_delete)

    orders = await client.fetch_open_orders(Instrument.BTC)
    assert [o.order_type for o in orders] == ["STOP_MARKET", "LIMIT"]
    assert orders[0].reduce_only is True
    assert orders[0].stop_price == pytest.approx(49_000.0)
    assert orders[1].stop_price is None

    await client.cancel_order("1", Instrument.BTC)
    assert deleted == ["1"]


@pytest.mark.asyncio
async def test_rejected_order_raises_without_retry(monkeypatch):
    client = BinanceFuturesClient(_make_config())
    calls = []

    async def _mock_post(self, url, *, headers=None, timeout=None):
        calls.append(url)
        return httpx.Response(
            400,
            json={"code": -2019, "msg": "Margin is insufficient."},
            request=httpx.Request("POST", url),
        )

    monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

    with pytest.raises(GatewayError) as exc_info:
        await client.create_market_order(Instrument.BTC, "buy", 0.002)
    assert exc_info.value.status_code == 400
    assert "Margin is insufficient" in str(exc_info.value)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_transient_errors_retry_then_succeed(monkeypatch):
    client = BinanceFuturesClient(_make_config())
    statuses = [503, 429]
    delays = []

    async def _mock_get(self, url, *, headers=None, timeout=None):
        status = statuses.pop(0) if statuses else 200
        body = {"symbol": "BTCUSDT", "price": "50123.4"} if status == 200 else {}
        return httpx.Response(status, json=body, request=httpx.Request("GET", url))

    async def _no_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
    monkeypatch.setattr(asyncio, "sleep", _no_sleep)

    assert await client.fetch_ticker(Instrument.BTC) == pytest.approx(50123.4)
    assert delays == [2.0, 4.0]


@pytest.mark.asyncio
async def test_retries_exhausted(monkeypatch):
    client = BinanceFuturesClient(_make_config())

    async def _mock_get(self, url, *, headers=None, timeout=None):
        return httpx.Response(502, json={}, request=httpx.Request("GET", url))

    async def _no_sleep(delay):
        pass

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
    monkeypatch.setattr(asyncio, "sleep", _no_sleep)

    with pytest.raises(GatewayError) as exc_info:
        await client.fetch_ticker(Instrument.BTC)
    assert exc_info.value.status_code == 502
    assert "after 3 attempts" in str(exc_info.value)


@pytest.mark.asyncio
async def test_order_timeout_not_resent(monkeypatch):
    """A timed-out order may already be live on the exchange; it is sent once."""
    client = BinanceFuturesClient(_make_config())
    posts = []
    delays = []

    async def _mock_post(self, url, *, headers=None, timeout=None):
        posts.append(url)
        raise httpx.ReadTimeout("read timed out")

    async def _no_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)
    monkeypatch.setattr(asyncio, "sleep", _no_sleep)

    with pytest.raises(GatewayError, match="not re-sent"):
        await client.create_market_order(Instrument.BTC, "buy", 0.002)
    assert len(posts) == 1
    assert delays == []


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [502, 503, 429])
async def test_order_server_error_not_resent(monkeypatch, status):
    client = BinanceFuturesClient(_make_config())
    posts = []

    async def _mock_post(self, url, *, headers=None, timeout=None):
        posts.append(_query(url)["type"])
        return httpx.Response(status, json={}, request=httpx.Request("POST", url))

    async def _no_sleep(delay):
        raise AssertionError("order requests must not back off and retry")

    monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)
    monkeypatch.setattr(asyncio, "sleep", _no_sleep)

    with pytest.raises(GatewayError) as exc_info:
        await client.create_order(Instrument.BTC, STOP_MARKET, "sell", 49_000.0)
    assert exc_info.value.status_code == status
    assert posts == ["STOP_MARKET"]


@pytest.mark.asyncio
async def test_set_leverage_sent_once(monkeypatch):
    client = BinanceFuturesClient(_make_config())
    posts = []

    async def _mock_post(self, url, *, headers=None, timeout=None):
        posts.append(url)
        raise httpx.ConnectError("connection reset")

    monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

    with pytest.raises(GatewayError):
        await client.set_leverage(5, Instrument.BTC)
    assert len(posts) == 1


def test_environment_switching():
    """Testnet URL for testnet, production URL for live."""
    assert BinanceFuturesClient(_make_config("testnet"))._base_url == "https://testnet.binancefuture.com"
    assert BinanceFuturesClient(_make_config("live"))._base_url == "https://fapi.binance.com"


# ── Dry-run gateway ──────────────────────────────────────────────────────


class MarketData:
    """Read-only market source; any order call is a test failure."""

    def __init__(self, price: float = 50_000.0) -> None:
        self.price = price

    async def fetch_balance(self):
        return Balance(free=500.0, total=500.0)

    async def fetch_ticker(self, instrument):
        return self.price

    async def create_market_order(self, *args, **kwargs):
        raise AssertionError("dry run must not place real orders")

    async def create_order(self, *args, **kwargs):
        raise AssertionError("dry run must not place real orders")

    async def cancel_order(self, *args, **kwargs):
        raise AssertionError("dry run must not cancel real orders")


class TestDryRunGateway:
    @pytest.mark.asyncio
    async def test_market_order_fills_at_ticker(self):
        gateway = DryRunGateway(MarketData(50_000.0))
        await gateway.set_leverage(5, Instrument.BTC)
        order = await gateway.create_market_order(Instrument.BTC, "buy", 0.002)

        assert order.order_id.startswith(DRY_RUN_PREFIX)
        assert order.filled == pytest.approx(0.002)
        assert order.average_price == pytest.approx(50_000.0)
        assert order.status == "FILLED"

    @pytest.mark.asyncio
    async def test_simulated_exposure(self):
        market = MarketData(50_000.0)
        gateway = DryRunGateway(market)
        await gateway.set_leverage(5, Instrument.BTC)
        await gateway.create_market_order(Instrument.BTC, "buy", 0.002)
        market.price = 51_000.0

        [pos] = await gateway.fetch_positions([Instrument.BTC, Instrument.ETH])
        assert pos.symbol == "BTC/USDT"
        assert pos.contracts == pytest.approx(0.002)
        assert pos.notional == pytest.approx(102.0)
        assert pos.initial_margin == pytest.approx(20.4)
        assert pos.unrealized_pnl == pytest.approx(2.0)

        await gateway.create_market_order(Instrument.BTC, "sell", 0.002, reduce_only=True)
        assert await gateway.fetch_positions([Instrument.BTC]) == []

    @pytest.mark.asyncio
    async def test_protection_orders_tracked(self):
        gateway = DryRunGateway(MarketData())
        sl = await gateway.create_order(Instrument.BTC, STOP_MARKET, "sell", 49_000.0)
        await gateway.create_order(Instrument.BTC, TAKE_PROFIT_MARKET, "sell", 52_000.0)

        orders = await gateway.fetch_open_orders(Instrument.BTC)
        assert sorted(o.order_type for o in orders) == [STOP_MARKET, TAKE_PROFIT_MARKET]

        await gateway.cancel_order(sl.order_id, Instrument.BTC)
        [remaining] = await gateway.fetch_open_orders(Instrument.BTC)
        assert remaining.order_type == TAKE_PROFIT_MARKET
        assert await gateway.fetch_open_orders(Instrument.ETH) == []

    @pytest.mark.asyncio
    async def test_balance_reflects_simulated_fills(self):
        market = MarketData(50_000.0)
        gateway = DryRunGateway(market)
        await gateway.set_leverage(5, Instrument.BTC)
        await gateway.create_market_order(Instrument.BTC, "buy", 0.02)

        # 1 000 notional at 5x holds 200 of margin
        balance = await gateway.fetch_balance()
        assert balance.free == pytest.approx(300.0)
        assert balance.total == pytest.approx(500.0)

        market.price = 51_000.0
        balance = await gateway.fetch_balance()
        assert balance.total == pytest.approx(520.0)
        assert balance.free == pytest.approx(520.0 - 204.0)

        await gateway.create_market_order(Instrument.BTC, "sell", 0.01, reduce_only=True)
        await gateway.create_market_order(Instrument.BTC, "sell", 0.01, reduce_only=True)
        balance = await gateway.fetch_balance()
        assert balance.free == pytest.approx(520.0)
        assert balance.total == pytest.approx(520.0)

    @pytest.mark.asyncio
    async def test_restores_open_ledger_positions(self):
        position = Position(
            id=7,
            symbol="BTC/USDT",
            status=PositionStatus.OPEN,
            entry_price=50_000.0,
            entry_amount=0.02,
            entry_leverage=5,
            entry_order_id="DRY_RUN_abc",
            opened_at="2025-01-15T12:00:00+00:00",
            current_stop_loss=49_000.0,
            current_take_profit=52_000.0,
        )
        gateway = DryRunGateway(MarketData(50_000.0), open_positions=[position])

        [pos] = await gateway.fetch_positions([Instrument.BTC, Instrument.ETH])
        assert pos.contracts == pytest.approx(0.02)
        assert pos.entry_price == pytest.approx(50_000.0)
        assert pos.leverage == pytest.approx(5.0)
        assert (await gateway.fetch_balance()).free == pytest.approx(300.0)

        orders = await gateway.fetch_open_orders(Instrument.BTC)
        assert sorted((o.order_type, o.stop_price) for o in orders) == [
            (STOP_MARKET, 49_000.0),
            (TAKE_PROFIT_MARKET, 52_000.0),
        ]
        assert all(o.order_id.startswith(DRY_RUN_PREFIX) and o.reduce_only for o in orders)

    @pytest.mark.asyncio
    async def test_reads_pass_through(self):
        gateway = DryRunGateway(MarketData(42.0))
        assert await gateway.fetch_ticker(Instrument.SOL) == pytest.approx(42.0)
        assert await gateway.fetch_balance() == Balance(free=500.0, total=500.0)
