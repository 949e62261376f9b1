"""Canonical record shapes delivered to callers.

Streaming frames collapse to one of two string-valued shapes:

- ``FlatRecord``: field-key -> field-value for a single event.
- ``KeyedRecord``: outer key (usually a symbol) -> ``FlatRecord``.

The privileged user-data stream produces typed events instead, and REST
calls produce typed results carrying a validity flag plus the raw error
body when the exchange rejected the call.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union


FlatRecord = dict[str, str]
KeyedRecord = dict[str, FlatRecord]


def stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    # Numbers, booleans, null and nested objects keep their JSON spelling.
    return json.dumps(value, separators=(",", ":"))


def to_flat_record(obj: dict[str, Any]) -> FlatRecord:
    return {str(k): stringify(v) for k, v in obj.items()}


# -------- User-data events --------


@dataclass(frozen=True)
class OrderUpdate:
    event_time: int
    transaction_time: int
    order: FlatRecord


@dataclass(frozen=True)
class AccountUpdate:
    event_time: int
    transaction_time: int
    reason: str
    balances: KeyedRecord
    positions: list[FlatRecord]


@dataclass(frozen=True)
class MarginCall:
    event_time: int
    cross_wallet_balance: str
    positions: list[FlatRecord]


@dataclass(frozen=True)
class ListenKeyExpired:
    event_time: int


@dataclass(frozen=True)
class UnrecognizedEvent:
    """An event whose discriminator is not known; kept so protocol drift is visible."""

    event_type: str
    record: FlatRecord


UserDataEvent = Union[OrderUpdate, AccountUpdate, MarginCall, ListenKeyExpired, UnrecognizedEvent]

StreamRecord = Union[FlatRecord, KeyedRecord, UserDataEvent]


# -------- REST results --------


@dataclass
class RestResult:
    """Base for every REST result.

    An exchange-side rejection is an expected outcome, so it is reported
    through ``valid``/``error`` rather than raised.
    """

    valid: bool = True
    error: str = ""


@dataclass
class PingResult(RestResult):
    pass


@dataclass
class ListenKeyResult(RestResult):
    listen_key: str = ""


@dataclass
class NewOrderResult(RestResult):
    response: FlatRecord = field(default_factory=dict)


@dataclass
class CancelOrderResult(RestResult):
    response: FlatRecord = field(default_factory=dict)


@dataclass
class AllOrdersResult(RestResult):
    orders: list[FlatRecord] = field(default_factory=list)


@dataclass
class AccountInformation(RestResult):
    data: FlatRecord = field(default_factory=dict)
    assets: KeyedRecord = field(default_factory=dict)
    positions: list[FlatRecord] = field(default_factory=list)


@dataclass
class AccountBalance(RestResult):
    balances: KeyedRecord = field(default_factory=dict)


@dataclass
class KlineCandlestick(RestResult):
    candles: list[FlatRecord] = field(default_factory=list)


@dataclass
class TakerBuySellVolume(RestResult):
    entries: list[FlatRecord] = field(default_factory=list)
