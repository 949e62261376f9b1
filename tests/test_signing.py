from __future__ import annotations

import hashlib
import hmac
import itertools
import sys
from pathlib import Path

_SRC = Path(__file__).resolve().parents[1] / "src"
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest

from futures_gateway.config import CallKind, Credentials, ReceiveWindowTable
from futures_gateway.errors import CredentialError
from futures_gateway.usdm.signing import RequestSigner, create_signature


SECRET = "NhqPtmdSJYdKjVHjA7PZj4Mge3R5YNiP1e3UZjInClVN65XAbvqqM6A7H5fATj0j"
TS = 1_499_827_319_559


def _reference(secret: str, query: str) -> str:
    return hmac.new(secret.encode(), query.encode(), hashlib.sha256).hexdigest()


def _signer(secret: str = SECRET, windows: ReceiveWindowTable | None = None) -> RequestSigner:
    return RequestSigner(windows or ReceiveWindowTable(), Credentials(api_key="key", secret_key=secret), clock=lambda: TS)


def test_unsigned_query_keeps_caller_order() -> None:
    signer = RequestSigner(ReceiveWindowTable())
    query = signer.build_query([("symbol", "BTCUSDT"), ("interval", "1m"), ("limit", 5)], CallKind.KLINE_CANDLES, False)
    assert query == "symbol=BTCUSDT&interval=1m&limit=5"


def test_unsigned_query_without_params_is_empty() -> None:
    signer = RequestSigner(ReceiveWindowTable())
    assert signer.build_query(None, CallKind.PING, False) == ""


def test_signed_query_matches_exchange_documented_example() -> None:
    params = [
        ("symbol", "LTCBTC"),
        ("side", "BUY"),
        ("type", "LIMIT"),
        ("timeInForce", "GTC"),
        ("quantity", "1"),
        ("price", "0.1"),
    ]
    query = _signer().build_query(params, CallKind.NEW_ORDER, True)
    payload = "symbol=LTCBTC&side=BUY&type=LIMIT&timeInForce=GTC&quantity=1&price=0.1&recvWindow=5000&timestamp=1499827319559"
    assert query == f"{payload}&signature=c8db56825ae71d6d79447849e617115f4a920fa2acdcab2b053c4b2838bd6b71"


def test_signature_matches_reference_hmac_for_every_ordering() -> None:
    pairs = [("symbol", "BTCUSDT"), ("side", "SELL"), ("quantity", "0.010")]
    signer = _signer()
    for ordering in itertools.permutations(pairs):
        query = signer.build_query(list(ordering), CallKind.NEW_ORDER, True)
        payload, _, signature = query.rpartition("&signature=")
        assert payload.startswith("&".join(f"{k}={v}" for k, v in ordering))
        assert signature == _reference(SECRET, payload)
        # Same input, same timestamp: byte-identical output.
        assert signer.build_query(list(ordering), CallKind.NEW_ORDER, True) == query


def test_explicit_timestamp_overrides_clock() -> None:
    query = _signer().build_query({"symbol": "BTCUSDT"}, CallKind.ALL_ORDERS, True, timestamp_ms=42)
    assert "&timestamp=42&signature=" in query


def test_mapping_params_and_booleans() -> None:
    signer = RequestSigner(ReceiveWindowTable())
    query = signer.build_query({"reduceOnly": True, "closePosition": False}, CallKind.NEW_ORDER, False)
    assert query == "reduceOnly=true&closePosition=false"


def test_create_signature_is_hex_sha256() -> None:
    sig = create_signature("secret", "a=1")
    assert sig == _reference("secret", "a=1")
    assert len(sig) == 64


def test_signed_without_credentials_raises() -> None:
    signer = RequestSigner(ReceiveWindowTable())
    with pytest.raises(CredentialError):
        signer.build_query({"symbol": "BTCUSDT"}, CallKind.NEW_ORDER, True)


def test_signed_with_api_key_only_raises() -> None:
    signer = RequestSigner(ReceiveWindowTable(), Credentials(api_key="key"))
    with pytest.raises(CredentialError):
        signer.build_query({"symbol": "BTCUSDT"}, CallKind.NEW_ORDER, True)


def test_credentials_swap_is_whole_object() -> None:
    signer = RequestSigner(ReceiveWindowTable(), Credentials(api_key="key", secret_key="one"), clock=lambda: TS)
    first = signer.build_query(None, CallKind.ACCOUNT_INFO, True)
    signer.credentials = Credentials(api_key="key", secret_key="two")
    second = signer.build_query(None, CallKind.ACCOUNT_INFO, True)
    assert first.split("&signature=")[0] == second.split("&signature=")[0]
    assert first != second


def test_secret_without_api_key_is_rejected() -> None:
    with pytest.raises(CredentialError):
        Credentials(api_key="", secret_key="secret")


def test_receive_window_change_is_local_to_call_kind() -> None:
    windows = ReceiveWindowTable()
    signer = _signer(windows=windows)
    windows.set(CallKind.NEW_ORDER, 1500)

    assert "recvWindow=1500&" in signer.build_query(None, CallKind.NEW_ORDER, True)
    for kind in CallKind:
        if kind is not CallKind.NEW_ORDER:
            assert windows.get(kind) == 5000
    assert "recvWindow=5000&" in signer.build_query(None, CallKind.CANCEL_ORDER, True)


def test_receive_window_rejects_non_positive() -> None:
    windows = ReceiveWindowTable()
    with pytest.raises(ValueError):
        windows.set(CallKind.NEW_ORDER, 0)
    assert windows.get(CallKind.NEW_ORDER) == 5000


def test_receive_window_tables_are_independent() -> None:
    a = ReceiveWindowTable()
    b = ReceiveWindowTable()
    a.set(CallKind.ALL_ORDERS, 9000)
    assert b.get(CallKind.ALL_ORDERS) == 5000
    assert a.snapshot()[CallKind.ALL_ORDERS] == 9000
