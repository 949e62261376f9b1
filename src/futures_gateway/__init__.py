# futures_gateway - streaming and REST gateway for USD-margined futures

from futures_gateway.config import CallKind, Credentials, MarketVariant, ReceiveWindowTable, Settings
from futures_gateway.errors import (
    CredentialError,
    GatewayConnectionError,
    GatewayError,
    KeepAliveError,
    ProtocolError,
    UnsupportedOperationError,
)
from futures_gateway.usdm.market import FuturesMarket
from futures_gateway.usdm.sessions import SubscriptionHandle, SubscriptionState

__all__ = [
    "CallKind",
    "Credentials",
    "MarketVariant",
    "ReceiveWindowTable",
    "Settings",
    "GatewayError",
    "GatewayConnectionError",
    "ProtocolError",
    "CredentialError",
    "KeepAliveError",
    "UnsupportedOperationError",
    "FuturesMarket",
    "SubscriptionHandle",
    "SubscriptionState",
]
