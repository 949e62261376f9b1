from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping

from cryptography.hazmat.primitives import hashes, hmac

from futures_gateway.config import CallKind, Credentials, ReceiveWindowTable
from futures_gateway.errors import CredentialError


QueryParams = Mapping[str, object] | Iterable[tuple[str, object]]


def now_ms() -> int:
    return int(time.time() * 1000)


def create_signature(secret_key: str, payload: str) -> str:
    """Hex-encoded HMAC-SHA256 of ``payload`` keyed by ``secret_key``."""
    mac = hmac.HMAC(secret_key.encode("utf-8"), hashes.SHA256())
    mac.update(payload.encode("utf-8"))
    return mac.finalize().hex()


def _pairs(params: QueryParams | None) -> list[tuple[str, object]]:
    if params is None:
        return []
    if isinstance(params, Mapping):
        return list(params.items())
    return list(params)


def _format_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class RequestSigner:
    """Builds canonical query strings, appending a signature for signed calls.

    Pairs keep the caller's order. Signed queries get
    ``recvWindow=<window>&timestamp=<ms>`` appended before the HMAC is
    computed, then ``&signature=<hex>``.
    """

    def __init__(
        self,
        receive_windows: ReceiveWindowTable,
        credentials: Credentials | None = None,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.receive_windows = receive_windows
        self._credentials = credentials
        self._clock = clock

    @property
    def credentials(self) -> Credentials | None:
        return self._credentials

    @credentials.setter
    def credentials(self, value: Credentials | None) -> None:
        # Whole-object swap; readers see either the old or the new pair.
        self._credentials = value

    def build_query(
        self,
        params: QueryParams | None,
        call: CallKind,
        signed: bool,
        *,
        timestamp_ms: int | None = None,
    ) -> str:
        parts = [f"{key}={_format_value(value)}" for key, value in _pairs(params)]
        if not signed:
            return "&".join(parts)

        credentials = self._credentials
        if credentials is None or not credentials.can_sign:
            raise CredentialError(f"{call.value} requires a signature but no secret key is configured")

        ts = self._clock() if timestamp_ms is None else timestamp_ms
        parts.append(f"recvWindow={self.receive_windows.get(call)}")
        parts.append(f"timestamp={ts}")
        query = "&".join(parts)
        return f"{query}&signature={create_signature(credentials.secret_key, query)}"
