"""USD-margined futures market access.

``FuturesMarket`` composes the request signer, REST gateway, session
registry and listen-key keep-alive into one object::

    async with FuturesMarket(Credentials(api_key, secret_key)) as market:
        handle = await market.subscribe_mark_price(on_prices)
        result = await market.new_order({"symbol": "BTCUSDT", "side": "BUY", ...})
        if not result.valid:
            print(result.error)
        await market.unsubscribe(handle)

Stream callbacks run on the session's receive loop; keep them short.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

import httpx

from futures_gateway.config import (
    UNSUPPORTED_CALLS,
    CallKind,
    Credentials,
    MarketEndpoints,
    MarketVariant,
    ReceiveWindowTable,
    Settings,
    env_defaults,
)
from futures_gateway.errors import (
    CredentialError,
    GatewayConnectionError,
    KeepAliveError,
    UnsupportedOperationError,
)
from futures_gateway.records import (
    AccountBalance,
    AccountInformation,
    AllOrdersResult,
    CancelOrderResult,
    KlineCandlestick,
    ListenKeyResult,
    NewOrderResult,
    StreamRecord,
    TakerBuySellVolume,
)
from futures_gateway.usdm.client import RestGateway
from futures_gateway.usdm.decoder import FLAT, KEYED_BY_SYMBOL, USER_DATA, DecodeSpec
from futures_gateway.usdm.keepalive import KeepAliveTimer
from futures_gateway.usdm.sessions import (
    Callback,
    ErrorCallback,
    SessionRegistry,
    SubscriptionHandle,
    SubscriptionState,
)
from futures_gateway.usdm.signing import QueryParams, RequestSigner, now_ms
from futures_gateway.usdm.transport import TransportFactory, websocket_factory


log = logging.getLogger(__name__)

USER_DATA_KEY = "user-data"


class FuturesMarket:
    def __init__(
        self,
        credentials: Credentials | None = None,
        *,
        variant: MarketVariant = MarketVariant.LIVE,
        endpoints: MarketEndpoints | None = None,
        receive_windows: ReceiveWindowTable | None = None,
        transport_factory: TransportFactory | None = None,
        http_client: httpx.AsyncClient | None = None,
        http_timeout_seconds: float = 10.0,
        connect_attempts: int = 3,
        close_timeout_seconds: float = 5.0,
        keepalive_seconds: float = 1800.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.variant = variant
        self.endpoints = endpoints or env_defaults(variant)
        self.receive_windows = receive_windows or ReceiveWindowTable()
        self.keepalive_seconds = keepalive_seconds

        self._signer = RequestSigner(self.receive_windows, credentials, clock=clock)
        self._gateway = RestGateway(
            base_url=self.endpoints.rest_url,
            signer=self._signer,
            timeout_seconds=http_timeout_seconds,
        )
        if http_client is not None:
            self._gateway.use_client(http_client)
        self._registry = SessionRegistry(
            transport_factory,
            connect_attempts=connect_attempts,
            close_timeout_seconds=close_timeout_seconds,
        )

        self._keepalive = KeepAliveTimer()
        self._listen_key: str | None = None
        self._user_data_handles: set[int] = set()
        self._user_data_lock = asyncio.Lock()
        self.user_data_error: KeepAliveError | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: object) -> "FuturesMarket":
        kwargs: dict[str, object] = {
            "credentials": settings.credentials,
            "variant": settings.variant,
            "endpoints": settings.endpoints,
            "receive_windows": ReceiveWindowTable(settings.receive_window_ms),
            "transport_factory": websocket_factory(open_timeout=settings.connect_timeout_seconds),
            "http_timeout_seconds": settings.http_timeout_seconds,
            "connect_attempts": settings.connect_attempts,
            "close_timeout_seconds": settings.unsubscribe_timeout_seconds,
            "keepalive_seconds": settings.listen_key_keepalive_seconds,
        }
        kwargs.update(overrides)
        return cls(**kwargs)  # type: ignore[arg-type]

    async def __aenter__(self) -> "FuturesMarket":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.unsubscribe_all()
        await self._gateway.aclose()

    # -------- Configuration --------

    @property
    def credentials(self) -> Credentials | None:
        return self._signer.credentials

    def set_credentials(self, credentials: Credentials | None) -> None:
        """Replace the API key pair. Only the key is needed for unsigned calls."""
        self._signer.credentials = credentials

    def set_receive_window(self, call: CallKind, window_ms: int) -> None:
        self.receive_windows.set(call, window_ms)

    def receive_window(self, call: CallKind) -> int:
        return self.receive_windows.get(call)

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def state(self, handle: SubscriptionHandle) -> SubscriptionState:
        return self._registry.state(handle)

    def error(self, handle: SubscriptionHandle) -> Exception | None:
        return self._registry.error(handle)

    def _require(self, call: CallKind) -> None:
        if call in UNSUPPORTED_CALLS[self.variant]:
            raise UnsupportedOperationError(f"{call.value} is unavailable on the {self.variant.value} market")

    # -------- Streams --------

    def stream_uri(self, path: str) -> str:
        return f"{self.endpoints.stream_url}/ws/{path}"

    async def _subscribe(
        self,
        path: str,
        spec: DecodeSpec,
        callback: Callback,
        kind: str,
        on_error: ErrorCallback | None,
        shared_key: str | None = None,
    ) -> SubscriptionHandle:
        return await self._registry.subscribe(
            self.stream_uri(path),
            spec,
            callback,
            kind=kind,
            on_error=on_error,
            shared_key=shared_key,
        )

    async def subscribe_mark_price(
        self, callback: Callable[[StreamRecord], None], *, on_error: ErrorCallback | None = None
    ) -> SubscriptionHandle:
        """Mark price for every symbol, delivered as a KeyedRecord per frame."""
        return await self._subscribe("!markPrice@arr", KEYED_BY_SYMBOL, callback, "mark_price", on_error)

    async def subscribe_mini_ticker(
        self, callback: Callable[[StreamRecord], None], *, on_error: ErrorCallback | None = None
    ) -> SubscriptionHandle:
        """Mini ticker for every symbol, delivered as a KeyedRecord per frame (1s updates)."""
        return await self._subscribe("!miniTicker@arr", KEYED_BY_SYMBOL, callback, "mini_ticker", on_error)

    async def subscribe_kline(
        self,
        symbol: str,
        interval: str,
        callback: Callable[[StreamRecord], None],
        *,
        on_error: ErrorCallback | None = None,
    ) -> SubscriptionHandle:
        path = f"{symbol.lower()}@kline_{interval}"
        return await self._subscribe(path, FLAT, callback, "kline", on_error)

    async def subscribe_symbol(
        self, symbol: str, callback: Callable[[StreamRecord], None], *, on_error: ErrorCallback | None = None
    ) -> SubscriptionHandle:
        return await self._subscribe(f"{symbol.lower()}@miniTicker", FLAT, callback, "symbol", on_error)

    async def subscribe_symbol_book(
        self, symbol: str, callback: Callable[[StreamRecord], None], *, on_error: ErrorCallback | None = None
    ) -> SubscriptionHandle:
        return await self._subscribe(f"{symbol.lower()}@bookTicker", FLAT, callback, "symbol_book", on_error)

    async def subscribe_user_data(
        self, callback: Callable[[StreamRecord], None], *, on_error: ErrorCallback | None = None
    ) -> SubscriptionHandle:
        """Order and account events for this API key.

        The first subscriber mints a listen key and starts renewing it;
        later subscribers share the same session. A failed renewal breaks
        the subscription and is passed to ``on_error``.
        """
        async with self._user_data_lock:
            if self._listen_key is None:
                self._listen_key = await self._create_listen_key()
                self.user_data_error = None
                self._keepalive.start(
                    self.keepalive_seconds,
                    self._renew_listen_key,
                    on_failure=self._on_keepalive_failure,
                )
            handle = await self._subscribe(
                self._listen_key, USER_DATA, callback, "user_data", on_error, shared_key=USER_DATA_KEY
            )
            self._user_data_handles.add(handle.id)
            return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        await self._registry.unsubscribe(handle)
        if handle.id in self._user_data_handles:
            async with self._user_data_lock:
                self._user_data_handles.discard(handle.id)
                if not self._user_data_handles:
                    await self._release_listen_key()

    async def unsubscribe_all(self) -> None:
        for handle in self._registry.handles():
            await self.unsubscribe(handle)

    # -------- Listen key --------

    async def _create_listen_key(self) -> str:
        credentials = self.credentials
        if credentials is None or not credentials.api_key:
            raise CredentialError("user data stream requires an API key")
        result = await self._gateway.call(CallKind.LISTEN_KEY, "POST", signed=False)
        if not isinstance(result, ListenKeyResult) or not result.valid or not result.listen_key:
            raise KeepAliveError(f"could not create listen key: {result.error or 'empty key'}")
        log.info("listen key created")
        return result.listen_key

    async def _renew_listen_key(self) -> bool:
        # Renewal is sent unsigned, with only the API key header.
        result = await self._gateway.call(CallKind.LISTEN_KEY, "PUT", signed=False)
        return result.valid

    async def _on_keepalive_failure(self, error: KeepAliveError) -> None:
        self.user_data_error = error
        self._listen_key = None
        for handle in self._registry.handles():
            if handle.id in self._user_data_handles:
                await self._registry.break_session(handle, error)

    async def _release_listen_key(self) -> None:
        await self._keepalive.stop()
        listen_key, self._listen_key = self._listen_key, None
        if listen_key is None:
            return
        try:
            result = await self._gateway.call(CallKind.LISTEN_KEY, "DELETE", signed=False)
        except GatewayConnectionError as e:
            # The exchange drops an unrenewed key on its own.
            log.warning("listen key delete failed: %s", e)
            return
        if not result.valid:
            log.warning("listen key delete rejected: %s", result.error)
        else:
            log.info("listen key deleted")

    # -------- REST --------

    async def ping(self) -> float:
        """Round trip of a ping request, in milliseconds."""
        start = time.perf_counter()
        await self._gateway.call(CallKind.PING, "GET", signed=False)
        return (time.perf_counter() - start) * 1000.0

    async def new_order(self, params: QueryParams) -> NewOrderResult:
        """Place an order. A successful order also appears later on the user data stream."""
        self._require(CallKind.NEW_ORDER)
        return await self._gateway.call(CallKind.NEW_ORDER, "POST", signed=True, params=params)  # type: ignore[return-value]

    async def cancel_order(self, params: QueryParams) -> CancelOrderResult:
        self._require(CallKind.CANCEL_ORDER)
        return await self._gateway.call(CallKind.CANCEL_ORDER, "DELETE", signed=True, params=params)  # type: ignore[return-value]

    async def all_orders(self, params: QueryParams) -> AllOrdersResult:
        self._require(CallKind.ALL_ORDERS)
        return await self._gateway.call(CallKind.ALL_ORDERS, "GET", signed=True, params=params)  # type: ignore[return-value]

    async def account_information(self) -> AccountInformation:
        self._require(CallKind.ACCOUNT_INFO)
        return await self._gateway.call(CallKind.ACCOUNT_INFO, "GET", signed=True)  # type: ignore[return-value]

    async def account_balance(self) -> AccountBalance:
        self._require(CallKind.ACCOUNT_BALANCE)
        return await self._gateway.call(CallKind.ACCOUNT_BALANCE, "GET", signed=True)  # type: ignore[return-value]

    async def klines(self, params: QueryParams) -> KlineCandlestick:
        """Kline candles. LIMIT drives the request weight; the exchange default is 500."""
        self._require(CallKind.KLINE_CANDLES)
        return await self._gateway.call(CallKind.KLINE_CANDLES, "GET", signed=False, params=params)  # type: ignore[return-value]

    async def taker_buy_sell_volume(self, params: QueryParams) -> TakerBuySellVolume:
        self._require(CallKind.TAKER_BUY_SELL_VOLUME)
        return await self._gateway.call(
            CallKind.TAKER_BUY_SELL_VOLUME, "GET", signed=False, params=params
        )  # type: ignore[return-value]
