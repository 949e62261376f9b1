"""Turn raw stream frames into canonical records.

Three frame shapes are understood:

- ``FLAT``: one JSON object -> ``FlatRecord``.
- ``KEYED``: a JSON array of objects, each carrying an identifying field
  (``s``, the symbol, by default) -> ``KeyedRecord``.
- ``EVENT``: a user-data object with an ``e`` discriminator -> a typed
  user-data event. Unknown discriminators become ``UnrecognizedEvent``.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from futures_gateway.errors import ProtocolError
from futures_gateway.records import (
    AccountUpdate,
    FlatRecord,
    KeyedRecord,
    ListenKeyExpired,
    MarginCall,
    OrderUpdate,
    StreamRecord,
    UnrecognizedEvent,
    UserDataEvent,
    stringify,
    to_flat_record,
)


class FrameShape(str, Enum):
    FLAT = "flat"
    KEYED = "keyed"
    EVENT = "event"


@dataclass(frozen=True)
class DecodeSpec:
    shape: FrameShape
    key_field: str = "s"


FLAT = DecodeSpec(FrameShape.FLAT)
KEYED_BY_SYMBOL = DecodeSpec(FrameShape.KEYED, key_field="s")
USER_DATA = DecodeSpec(FrameShape.EVENT, key_field="e")


def _parse(raw: str | bytes) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError("frame is not valid UTF-8") from e
    try:
        return json.loads(raw)
    except ValueError as e:
        raise ProtocolError(f"frame is not valid JSON: {raw[:200]!r}") from e
    except RecursionError as e:
        raise ProtocolError("frame is nested too deeply to decode") from e


def _object(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ProtocolError(f"{what}: expected a JSON object, got {type(value).__name__}")
    return value


def _int(obj: dict[str, Any], key: str) -> int:
    try:
        return int(obj.get(key, 0))
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"field '{key}' is not an integer: {obj.get(key)!r}") from e


def decode_flat(payload: Any) -> FlatRecord:
    return to_flat_record(_object(payload, "flat frame"))


def decode_keyed(payload: Any, key_field: str) -> KeyedRecord:
    if not isinstance(payload, list):
        raise ProtocolError(f"keyed frame: expected a JSON array, got {type(payload).__name__}")
    out: KeyedRecord = {}
    for element in payload:
        obj = _object(element, "keyed frame element")
        if key_field not in obj:
            raise ProtocolError(f"keyed frame element has no '{key_field}' field")
        out[stringify(obj[key_field])] = to_flat_record(obj)
    return out


# -------- User-data events --------


def _order_update(obj: dict[str, Any]) -> OrderUpdate:
    return OrderUpdate(
        event_time=_int(obj, "E"),
        transaction_time=_int(obj, "T"),
        order=to_flat_record(_object(obj.get("o"), "ORDER_TRADE_UPDATE.o")),
    )


def _account_update(obj: dict[str, Any]) -> AccountUpdate:
    account = _object(obj.get("a"), "ACCOUNT_UPDATE.a")
    balances = [_object(b, "ACCOUNT_UPDATE.a.B[]") for b in account.get("B") or []]
    positions = [_object(p, "ACCOUNT_UPDATE.a.P[]") for p in account.get("P") or []]
    return AccountUpdate(
        event_time=_int(obj, "E"),
        transaction_time=_int(obj, "T"),
        reason=stringify(account.get("m", "")),
        balances=decode_keyed(balances, "a"),
        positions=[to_flat_record(p) for p in positions],
    )


def _margin_call(obj: dict[str, Any]) -> MarginCall:
    positions = [_object(p, "MARGIN_CALL.p[]") for p in obj.get("p") or []]
    return MarginCall(
        event_time=_int(obj, "E"),
        cross_wallet_balance=stringify(obj.get("cw", "")),
        positions=[to_flat_record(p) for p in positions],
    )


def _listen_key_expired(obj: dict[str, Any]) -> ListenKeyExpired:
    return ListenKeyExpired(event_time=_int(obj, "E"))


EVENT_HANDLERS: dict[str, Callable[[dict[str, Any]], UserDataEvent]] = {
    "ORDER_TRADE_UPDATE": _order_update,
    "ACCOUNT_UPDATE": _account_update,
    "MARGIN_CALL": _margin_call,
    "listenKeyExpired": _listen_key_expired,
}


def decode_event(payload: Any, discriminator: str = "e") -> UserDataEvent:
    obj = _object(payload, "user data frame")
    if discriminator not in obj:
        raise ProtocolError(f"user data frame has no '{discriminator}' discriminator")
    event_type = stringify(obj[discriminator])
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        return UnrecognizedEvent(event_type=event_type, record=to_flat_record(obj))
    return handler(obj)


def decode(raw: str | bytes, spec: DecodeSpec) -> StreamRecord:
    payload = _parse(raw)
    if spec.shape is FrameShape.FLAT:
        return decode_flat(payload)
    if spec.shape is FrameShape.KEYED:
        return decode_keyed(payload, spec.key_field)
    return decode_event(payload, spec.key_field)
