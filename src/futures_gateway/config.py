from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

from futures_gateway.errors import CredentialError


DEFAULT_RECEIVE_WINDOW_MS = 5000


class Settings(BaseSettings):
    # Logging
    log_level: str = "INFO"

    # Exchange
    futures_env: str = Field(default="live", validation_alias="FUTURES_ENV")
    futures_rest_url: str | None = Field(default=None, validation_alias="FUTURES_REST_URL")
    futures_stream_url: str | None = Field(default=None, validation_alias="FUTURES_STREAM_URL")
    futures_api_key: str | None = Field(default=None, validation_alias="FUTURES_API_KEY")
    futures_secret_key: str | None = Field(default=None, validation_alias="FUTURES_SECRET_KEY")

    # Transport
    http_timeout_seconds: float = Field(default=10.0, validation_alias="HTTP_TIMEOUT_SECONDS")
    connect_attempts: int = Field(default=3, validation_alias="CONNECT_ATTEMPTS")
    connect_timeout_seconds: float = Field(default=10.0, validation_alias="CONNECT_TIMEOUT_SECONDS")
    unsubscribe_timeout_seconds: float = Field(default=5.0, validation_alias="UNSUBSCRIBE_TIMEOUT_SECONDS")

    # User data stream
    listen_key_keepalive_seconds: float = Field(default=1800.0, validation_alias="LISTEN_KEY_KEEPALIVE_SECONDS")
    receive_window_ms: int = Field(default=DEFAULT_RECEIVE_WINDOW_MS, validation_alias="RECEIVE_WINDOW_MS")

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }

    @property
    def variant(self) -> "MarketVariant":
        return MarketVariant.from_name(self.futures_env)

    @property
    def endpoints(self) -> "MarketEndpoints":
        defaults = env_defaults(self.futures_env)
        return MarketEndpoints(
            rest_url=(self.futures_rest_url or defaults.rest_url).rstrip("/"),
            stream_url=(self.futures_stream_url or defaults.stream_url).rstrip("/"),
        )

    @property
    def credentials(self) -> "Credentials | None":
        if not self.futures_api_key:
            return None
        return Credentials(api_key=self.futures_api_key, secret_key=self.futures_secret_key or "")

    @classmethod
    def load(cls) -> "Settings":
        load_dotenv(override=False)
        return cls()


class MarketVariant(str, Enum):
    LIVE = "live"
    TEST = "test"

    @classmethod
    def from_name(cls, name: str) -> "MarketVariant":
        name = name.lower().strip()
        if name in {"live", "prod", "production"}:
            return cls.LIVE
        if name in {"test", "testnet"}:
            return cls.TEST
        raise ValueError(f"Unknown FUTURES_ENV: {name}")


@dataclass(frozen=True)
class MarketEndpoints:
    rest_url: str
    stream_url: str


def env_defaults(env: str | MarketVariant) -> MarketEndpoints:
    variant = env if isinstance(env, MarketVariant) else MarketVariant.from_name(env)
    if variant is MarketVariant.TEST:
        return MarketEndpoints(
            rest_url="https://testnet.binancefuture.com",
            stream_url="wss://stream.binancefuture.com",
        )
    return MarketEndpoints(
        rest_url="https://fapi.binance.com",
        stream_url="wss://fstream.binance.com",
    )


class CallKind(str, Enum):
    NEW_ORDER = "new_order"
    LISTEN_KEY = "listen_key"
    CANCEL_ORDER = "cancel_order"
    ALL_ORDERS = "all_orders"
    ACCOUNT_INFO = "account_info"
    ACCOUNT_BALANCE = "account_balance"
    TAKER_BUY_SELL_VOLUME = "taker_buy_sell_volume"
    KLINE_CANDLES = "kline_candles"
    PING = "ping"


REST_PATHS: Mapping[CallKind, str] = MappingProxyType(
    {
        CallKind.NEW_ORDER: "/fapi/v1/order",
        CallKind.LISTEN_KEY: "/fapi/v1/listenKey",
        CallKind.CANCEL_ORDER: "/fapi/v1/order",
        CallKind.ALL_ORDERS: "/fapi/v1/allOrders",
        CallKind.ACCOUNT_INFO: "/fapi/v2/account",
        CallKind.ACCOUNT_BALANCE: "/fapi/v2/balance",
        CallKind.TAKER_BUY_SELL_VOLUME: "/futures/data/takerlongshortRatio",
        CallKind.KLINE_CANDLES: "/fapi/v1/klines",
        CallKind.PING: "/fapi/v1/ping",
    }
)

# Calls a variant does not offer. Consulted at the call site.
UNSUPPORTED_CALLS: Mapping[MarketVariant, frozenset[CallKind]] = MappingProxyType(
    {
        MarketVariant.LIVE: frozenset(),
        MarketVariant.TEST: frozenset({CallKind.TAKER_BUY_SELL_VOLUME}),
    }
)


@dataclass(frozen=True)
class Credentials:
    """API key pair. Replaced as a whole, never mutated field by field."""

    api_key: str
    secret_key: str = ""

    def __post_init__(self) -> None:
        if self.secret_key and not self.api_key:
            raise CredentialError("secret key supplied without an API key")

    @property
    def can_sign(self) -> bool:
        return bool(self.api_key and self.secret_key)

    def __repr__(self) -> str:
        return f"Credentials(api_key={self.api_key[:4]}..., secret_key={'***' if self.secret_key else ''})"


class ReceiveWindowTable:
    """Receive window (ms) per call kind.

    Every ``CallKind`` always has an entry. Writers swap in a fresh mapping
    under a lock so readers only ever see a complete table.
    """

    def __init__(self, default_ms: int = DEFAULT_RECEIVE_WINDOW_MS) -> None:
        _check_window(default_ms)
        self._lock = threading.Lock()
        self._windows: Mapping[CallKind, int] = MappingProxyType({kind: default_ms for kind in CallKind})

    def get(self, kind: CallKind) -> int:
        return self._windows[kind]

    def set(self, kind: CallKind, window_ms: int) -> None:
        _check_window(window_ms)
        with self._lock:
            updated = dict(self._windows)
            updated[CallKind(kind)] = int(window_ms)
            self._windows = MappingProxyType(updated)

    def snapshot(self) -> dict[CallKind, int]:
        return dict(self._windows)


def _check_window(window_ms: int) -> None:
    if int(window_ms) <= 0:
        raise ValueError(f"receive window must be positive, got {window_ms}")
