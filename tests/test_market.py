from __future__ import annotations

import asyncio
import sys
from pathlib import Path

_SRC = Path(__file__).resolve().parents[1] / "src"
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest
from fakes import FakeExchange, FakeFactory, eventually

from futures_gateway.config import CallKind, Credentials, MarketVariant, Settings
from futures_gateway.errors import CredentialError, KeepAliveError, UnsupportedOperationError
from futures_gateway.records import OrderUpdate
from futures_gateway.usdm.market import FuturesMarket
from futures_gateway.usdm.sessions import SubscriptionState


LIVE_STREAM = "wss://fstream.binance.com/ws"
LISTEN_KEY = "pqia91ma19a5s61cv6a81va65sdf19v8a65a1a5s61cv6a81va65sdf19v8a65a1"


def _market(
    exchange: FakeExchange | None = None,
    factory: FakeFactory | None = None,
    credentials: Credentials | None = None,
    **kwargs: object,
) -> FuturesMarket:
    return FuturesMarket(
        credentials,
        http_client=(exchange or FakeExchange()).client(),
        transport_factory=factory or FakeFactory(),
        clock=lambda: 1_700_000_000_000,
        **kwargs,  # type: ignore[arg-type]
    )


class TestStreams:
    def test_stream_paths(self) -> None:
        async def scenario() -> None:
            factory = FakeFactory()
            market = _market(factory=factory)
            cb = lambda record: None  # noqa: E731

            await market.subscribe_mark_price(cb)
            await market.subscribe_mini_ticker(cb)
            await market.subscribe_kline("BTCUSDT", "1m", cb)
            await market.subscribe_symbol("ETHUSDT", cb)
            await market.subscribe_symbol_book("BNBUSDT", cb)
            await eventually(lambda: factory.calls == 5)

            assert sorted(t.uri for t in factory.opened) == sorted(
                [
                    f"{LIVE_STREAM}/!markPrice@arr",
                    f"{LIVE_STREAM}/!miniTicker@arr",
                    f"{LIVE_STREAM}/btcusdt@kline_1m",
                    f"{LIVE_STREAM}/ethusdt@miniTicker",
                    f"{LIVE_STREAM}/bnbusdt@bookTicker",
                ]
            )
            await market.aclose()
            assert len(market.registry) == 0
            assert all(t.closed for t in factory.opened)

        asyncio.run(scenario())

    def test_mark_price_is_keyed_by_symbol(self) -> None:
        async def scenario() -> None:
            frame = '[{"e":"markPriceUpdate","s":"BTCUSDT","p":"50000.1"},{"e":"markPriceUpdate","s":"ETHUSDT","p":"3000.2"}]'
            factory = FakeFactory({f"{LIVE_STREAM}/!markPrice@arr": [frame]})
            market = _market(factory=factory)
            got: list[dict[str, dict[str, str]]] = []

            handle = await market.subscribe_mark_price(got.append)
            await eventually(lambda: len(got) == 1)

            assert got[0]["ETHUSDT"]["p"] == "3000.2"
            assert market.state(handle) is SubscriptionState.STREAMING
            await market.unsubscribe(handle)
            assert market.state(handle) is SubscriptionState.CLOSED
            await market.aclose()

        asyncio.run(scenario())

    def test_bad_frame_reports_through_on_error(self) -> None:
        async def scenario() -> None:
            factory = FakeFactory({f"{LIVE_STREAM}/btcusdt@bookTicker": ["{truncated"]})
            market = _market(factory=factory)
            errors: list[Exception] = []

            handle = await market.subscribe_symbol_book("BTCUSDT", lambda r: None, on_error=errors.append)
            await eventually(lambda: market.state(handle) is SubscriptionState.BROKEN)

            assert len(errors) == 1
            assert market.error(handle) is errors[0]
            await market.aclose()

        asyncio.run(scenario())


class TestRest:
    def test_taker_volume_unsupported_on_test_market(self) -> None:
        async def scenario() -> None:
            exchange = FakeExchange()
            market = _market(exchange, variant=MarketVariant.TEST)
            with pytest.raises(UnsupportedOperationError):
                await market.taker_buy_sell_volume({"symbol": "BTCUSDT", "period": "5m"})
            assert exchange.requests == []
            await market.aclose()

        asyncio.run(scenario())

    def test_taker_volume_on_live_market(self) -> None:
        async def scenario() -> None:
            exchange = FakeExchange()
            exchange.route(
                "GET",
                "/futures/data/takerlongshortRatio",
                json_body=[{"buySellRatio": "1.5586", "buyVol": "387.3300", "sellVol": "248.5030", "timestamp": 1585614900000}],
            )
            market = _market(exchange)
            result = await market.taker_buy_sell_volume({"symbol": "BTCUSDT", "period": "5m"})
            assert result.valid
            assert result.entries[0]["timestamp"] == "1585614900000"
            await market.aclose()

        asyncio.run(scenario())

    def test_receive_window_applies_to_one_call_kind(self) -> None:
        async def scenario() -> None:
            exchange = FakeExchange()
            exchange.route("POST", "/fapi/v1/order", json_body={"orderId": 1})
            exchange.route("DELETE", "/fapi/v1/order", json_body={"orderId": 1})
            market = _market(exchange, credentials=Credentials("key", "secret"))

            market.set_receive_window(CallKind.NEW_ORDER, 2500)
            await market.new_order({"symbol": "BTCUSDT", "side": "BUY", "type": "MARKET", "quantity": "0.001"})
            await market.cancel_order({"symbol": "BTCUSDT", "orderId": 1})

            (placed,) = exchange.calls("POST", "/fapi/v1/order")
            (cancelled,) = exchange.calls("DELETE", "/fapi/v1/order")
            assert "recvWindow=2500" in placed.url.query.decode()
            assert "recvWindow=5000" in cancelled.url.query.decode()
            assert market.receive_window(CallKind.ALL_ORDERS) == 5000
            await market.aclose()

        asyncio.run(scenario())

    def test_signed_call_without_credentials(self) -> None:
        async def scenario() -> None:
            exchange = FakeExchange()
            market = _market(exchange)
            with pytest.raises(CredentialError):
                await market.new_order({"symbol": "BTCUSDT"})
            assert exchange.requests == []

            market.set_credentials(Credentials("key", "secret"))
            exchange.route("GET", "/fapi/v2/balance", json_body=[{"asset": "USDT", "balance": "1"}])
            balance = await market.account_balance()
            assert balance.balances["USDT"]["balance"] == "1"
            await market.aclose()

        asyncio.run(scenario())

    def test_rejected_order_is_a_value(self) -> None:
        async def scenario() -> None:
            exchange = FakeExchange()
            exchange.route("POST", "/fapi/v1/order", status=400, json_body={"code": -1102, "msg": "Mandatory parameter"})
            market = _market(exchange, credentials=Credentials("key", "secret"))

            result = await market.new_order({"symbol": "BTCUSDT"})
            assert not result.valid
            assert "-1102" in result.error
            await market.aclose()

        asyncio.run(scenario())

    def test_ping_reports_latency(self) -> None:
        async def scenario() -> None:
            exchange = FakeExchange()
            exchange.route("GET", "/fapi/v1/ping", json_body={})
            async with _market(exchange) as market:
                latency = await market.ping()
            assert isinstance(latency, float)
            assert latency >= 0.0

        asyncio.run(scenario())


class TestUserData:
    def _exchange(self, renew_status: int = 200) -> FakeExchange:
        exchange = FakeExchange()
        exchange.route("POST", "/fapi/v1/listenKey", json_body={"listenKey": LISTEN_KEY})
        exchange.route("PUT", "/fapi/v1/listenKey", status=renew_status, json_body={})
        exchange.route("DELETE", "/fapi/v1/listenKey", json_body={})
        return exchange

    def test_lifecycle_shares_one_listen_key(self) -> None:
        async def scenario() -> None:
            exchange = self._exchange()
            factory = FakeFactory()
            market = _market(exchange, factory, Credentials("key", "secret"))
            first: list[object] = []
            second: list[object] = []

            h1 = await market.subscribe_user_data(first.append)
            h2 = await market.subscribe_user_data(second.append)
            assert len(exchange.calls("POST", "/fapi/v1/listenKey")) == 1
            assert market.registry.session_for(h1) is market.registry.session_for(h2)
            assert await market.registry.wait_streaming(h1, timeout=1.0)
            assert factory.opened[0].uri == f"{LIVE_STREAM}/{LISTEN_KEY}"

            factory.opened[0].push(
                {"e": "ORDER_TRADE_UPDATE", "E": 1568879465651, "T": 1568879465650, "o": {"s": "BTCUSDT", "X": "NEW"}}
            )
            await eventually(lambda: len(first) == 1 and len(second) == 1)
            assert isinstance(first[0], OrderUpdate)
            assert first[0].order["X"] == "NEW"

            await market.unsubscribe(h1)
            assert exchange.calls("DELETE", "/fapi/v1/listenKey") == []
            await market.unsubscribe(h2)
            assert len(exchange.calls("DELETE", "/fapi/v1/listenKey")) == 1
            assert factory.opened[0].closed
            await market.aclose()

        asyncio.run(scenario())

    def test_user_data_requires_api_key(self) -> None:
        async def scenario() -> None:
            exchange = self._exchange()
            market = _market(exchange)
            with pytest.raises(CredentialError):
                await market.subscribe_user_data(lambda r: None)
            assert exchange.requests == []
            await market.aclose()

        asyncio.run(scenario())

    def test_renewal_is_sent_with_api_key_only(self) -> None:
        async def scenario() -> None:
            exchange = self._exchange()
            market = _market(exchange, FakeFactory(), Credentials("key", "secret"), keepalive_seconds=0.01)

            handle = await market.subscribe_user_data(lambda r: None)
            await eventually(lambda: len(exchange.calls("PUT", "/fapi/v1/listenKey")) >= 2)

            renewal = exchange.calls("PUT", "/fapi/v1/listenKey")[0]
            assert renewal.headers["X-MBX-APIKEY"] == "key"
            assert b"signature" not in renewal.url.query
            assert market.state(handle) is SubscriptionState.STREAMING
            await market.aclose()

        asyncio.run(scenario())

    def test_failed_renewal_breaks_stream_once(self) -> None:
        async def scenario() -> None:
            exchange = self._exchange(renew_status=400)
            factory = FakeFactory()
            market = _market(exchange, factory, Credentials("key", "secret"), keepalive_seconds=0.01)
            errors: list[Exception] = []

            handle = await market.subscribe_user_data(lambda r: None, on_error=errors.append)
            await eventually(lambda: market.state(handle) is SubscriptionState.BROKEN)
            await asyncio.sleep(0.05)

            assert len(errors) == 1
            assert isinstance(errors[0], KeepAliveError)
            assert market.user_data_error is errors[0]
            assert len(exchange.calls("PUT", "/fapi/v1/listenKey")) == 1
            assert factory.opened[0].closed

            await market.unsubscribe(handle)
            assert market.state(handle) is SubscriptionState.CLOSED
            await market.aclose()

        asyncio.run(scenario())


def test_from_settings_uses_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FUTURES_ENV", "testnet")
    monkeypatch.setenv("FUTURES_API_KEY", "env-key")
    monkeypatch.setenv("FUTURES_SECRET_KEY", "env-secret")
    monkeypatch.setenv("RECEIVE_WINDOW_MS", "7000")
    monkeypatch.delenv("FUTURES_REST_URL", raising=False)
    monkeypatch.delenv("FUTURES_STREAM_URL", raising=False)

    settings = Settings()
    market = FuturesMarket.from_settings(settings, transport_factory=FakeFactory())

    assert market.variant is MarketVariant.TEST
    assert market.endpoints.rest_url == "https://testnet.binancefuture.com"
    assert market.stream_uri("btcusdt@bookTicker") == "wss://stream.binancefuture.com/ws/btcusdt@bookTicker"
    assert market.credentials is not None and market.credentials.api_key == "env-key"
    assert market.receive_window(CallKind.NEW_ORDER) == 7000
