"""
USD-margined futures adapter: signing, REST, streams and the market facade.
"""

from futures_gateway.usdm.client import RestGateway
from futures_gateway.usdm.decoder import FLAT, KEYED_BY_SYMBOL, USER_DATA, DecodeSpec, FrameShape, decode
from futures_gateway.usdm.keepalive import KeepAliveTimer
from futures_gateway.usdm.market import FuturesMarket
from futures_gateway.usdm.sessions import SessionRegistry, SubscriptionHandle, SubscriptionState
from futures_gateway.usdm.signing import RequestSigner, create_signature
from futures_gateway.usdm.transport import StreamTransport, TransportClosed, websocket_factory

__all__ = [
    # REST
    "RequestSigner",
    "create_signature",
    "RestGateway",
    # Streams
    "DecodeSpec",
    "FrameShape",
    "FLAT",
    "KEYED_BY_SYMBOL",
    "USER_DATA",
    "decode",
    "SessionRegistry",
    "SubscriptionHandle",
    "SubscriptionState",
    "StreamTransport",
    "TransportClosed",
    "websocket_factory",
    "KeepAliveTimer",
    # Facade
    "FuturesMarket",
]
