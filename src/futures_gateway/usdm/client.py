from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from futures_gateway.config import REST_PATHS, CallKind, Settings
from futures_gateway.errors import GatewayConnectionError, ProtocolError
from futures_gateway.records import (
    AccountBalance,
    AccountInformation,
    AllOrdersResult,
    CancelOrderResult,
    KlineCandlestick,
    ListenKeyResult,
    NewOrderResult,
    PingResult,
    RestResult,
    TakerBuySellVolume,
    to_flat_record,
)
from futures_gateway.usdm.signing import QueryParams, RequestSigner


log = logging.getLogger(__name__)

Method = Literal["GET", "POST", "PUT", "DELETE"]

API_KEY_HEADER = "X-MBX-APIKEY"
CLIENT_ID_HEADER = "client_SDK_Version"
CLIENT_ID = "futures_gateway_py"

KLINE_FIELDS = (
    "openTime",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "closeTime",
    "quoteAssetVolume",
    "numberOfTrades",
    "takerBuyBaseAssetVolume",
    "takerBuyQuoteAssetVolume",
    "ignore",
)


def _is_retryable_exception(exc: BaseException) -> bool:
    # Only network-level failures; an HTTP status is an answer, not a fault.
    return isinstance(exc, httpx.TransportError)


# -------- Extractors: JSON body -> typed result --------


def _expect(body: Any, kind: type, call: CallKind) -> Any:
    if not isinstance(body, kind):
        raise ProtocolError(f"{call.value}: expected JSON {kind.__name__}, got {type(body).__name__}")
    return body


def _records(body: Any, call: CallKind) -> list[dict[str, str]]:
    items = _expect(body, list, call)
    return [to_flat_record(_expect(item, dict, call)) for item in items]


def _keyed(items: list[dict[str, str]], key: str, call: CallKind) -> dict[str, dict[str, str]]:
    out: dict[str, dict[str, str]] = {}
    for item in items:
        if key not in item:
            raise ProtocolError(f"{call.value}: element without '{key}' field")
        out[item[key]] = item
    return out


def _extract_account_info(body: Any) -> AccountInformation:
    call = CallKind.ACCOUNT_INFO
    obj = _expect(body, dict, call)
    scalars = {k: v for k, v in obj.items() if not isinstance(v, (list, dict))}
    assets = _records(obj.get("assets", []), call)
    return AccountInformation(
        data=to_flat_record(scalars),
        assets=_keyed(assets, "asset", call),
        positions=_records(obj.get("positions", []), call),
    )


def _extract_klines(body: Any) -> KlineCandlestick:
    call = CallKind.KLINE_CANDLES
    candles = []
    for row in _expect(body, list, call):
        row = _expect(row, list, call)
        candles.append(to_flat_record(dict(zip(KLINE_FIELDS, row))))
    return KlineCandlestick(candles=candles)


def _extract_listen_key(body: Any) -> ListenKeyResult:
    obj = _expect(body, dict, CallKind.LISTEN_KEY)
    return ListenKeyResult(listen_key=str(obj.get("listenKey", "")))


EXTRACTORS: dict[CallKind, Callable[[Any], RestResult]] = {
    CallKind.PING: lambda body: PingResult(),
    CallKind.LISTEN_KEY: _extract_listen_key,
    CallKind.NEW_ORDER: lambda body: NewOrderResult(response=to_flat_record(_expect(body, dict, CallKind.NEW_ORDER))),
    CallKind.CANCEL_ORDER: lambda body: CancelOrderResult(
        response=to_flat_record(_expect(body, dict, CallKind.CANCEL_ORDER))
    ),
    CallKind.ALL_ORDERS: lambda body: AllOrdersResult(orders=_records(body, CallKind.ALL_ORDERS)),
    CallKind.ACCOUNT_INFO: _extract_account_info,
    CallKind.ACCOUNT_BALANCE: lambda body: AccountBalance(
        balances=_keyed(_records(body, CallKind.ACCOUNT_BALANCE), "asset", CallKind.ACCOUNT_BALANCE)
    ),
    CallKind.KLINE_CANDLES: _extract_klines,
    CallKind.TAKER_BUY_SELL_VOLUME: lambda body: TakerBuySellVolume(
        entries=_records(body, CallKind.TAKER_BUY_SELL_VOLUME)
    ),
}

RESULT_TYPES: dict[CallKind, type[RestResult]] = {
    CallKind.PING: PingResult,
    CallKind.LISTEN_KEY: ListenKeyResult,
    CallKind.NEW_ORDER: NewOrderResult,
    CallKind.CANCEL_ORDER: CancelOrderResult,
    CallKind.ALL_ORDERS: AllOrdersResult,
    CallKind.ACCOUNT_INFO: AccountInformation,
    CallKind.ACCOUNT_BALANCE: AccountBalance,
    CallKind.KLINE_CANDLES: KlineCandlestick,
    CallKind.TAKER_BUY_SELL_VOLUME: TakerBuySellVolume,
}


def invalid_result(call: CallKind, error: str) -> RestResult:
    return RESULT_TYPES[call](valid=False, error=error)


@dataclass
class RestGateway:
    base_url: str
    signer: RequestSigner
    timeout_seconds: float = 10.0
    get_attempts: int = 3

    _client: httpx.AsyncClient | None = None
    _owns_client: bool = field(default=True, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings, signer: RequestSigner) -> "RestGateway":
        return cls(
            base_url=settings.endpoints.rest_url,
            signer=signer,
            timeout_seconds=settings.http_timeout_seconds,
        )

    def use_client(self, client: httpx.AsyncClient) -> None:
        """Dispatch over an externally owned client (closed by its owner)."""
        self._client = client
        self._owns_client = False

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
            self._owns_client = True
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            CLIENT_ID_HEADER: CLIENT_ID,
        }
        credentials = self.signer.credentials
        if credentials is not None and credentials.api_key:
            headers[API_KEY_HEADER] = credentials.api_key
        return headers

    def url_for(self, call: CallKind, query: str) -> str:
        url = f"{self.base_url}{REST_PATHS[call]}"
        return f"{url}?{query}" if query else url

    async def _send(self, method: Method, url: str) -> httpx.Response:
        # Only idempotent reads are retried; a resent order could fill twice.
        attempts = self.get_attempts if method == "GET" else 1
        client = self._get_client()
        try:
            async for attempt in AsyncRetrying(
                wait=wait_exponential_jitter(initial=0.2, max=2.0),
                stop=stop_after_attempt(attempts),
                retry=retry_if_exception(_is_retryable_exception),
                reraise=True,
            ):
                with attempt:
                    resp = await client.request(method, url, headers=self._headers())
        except httpx.TimeoutException as e:
            raise GatewayConnectionError(f"{method} {url} timed out") from e
        except httpx.TransportError as e:
            raise GatewayConnectionError(f"{method} {url} failed: {e}") from e
        return resp

    async def call(
        self,
        call: CallKind,
        method: Method,
        *,
        signed: bool,
        params: QueryParams | None = None,
    ) -> RestResult:
        """Issue one REST call and map the response into the call's result type.

        Non-OK statuses return an invalid result carrying the raw body.
        An OK status with a body that does not parse raises ``ProtocolError``.
        """
        query = self.signer.build_query(params, call, signed)
        url = self.url_for(call, query)
        resp = await self._send(method, url)

        if resp.status_code != httpx.codes.OK:
            body = resp.text or f"HTTP {resp.status_code}"
            log.warning("%s %s rejected: status=%s body=%s", method, REST_PATHS[call], resp.status_code, body)
            return invalid_result(call, body)

        text = resp.text
        try:
            payload = json.loads(text) if text.strip() else {}
        except ValueError as e:
            raise ProtocolError(f"{call.value}: malformed JSON body: {text[:200]!r}") from e
        return EXTRACTORS[call](payload)
