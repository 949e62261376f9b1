from __future__ import annotations


class GatewayError(Exception):
    """Base class for every error raised by futures_gateway."""


class GatewayConnectionError(GatewayError, ConnectionError):
    """The transport could not connect, or a call timed out."""


class ProtocolError(GatewayError):
    """A frame or response body could not be parsed into the expected shape."""


class CredentialError(GatewayError):
    """A signed operation was attempted without the required secret."""


class KeepAliveError(GatewayError):
    """Renewing the user-data listen key failed."""


class UnsupportedOperationError(GatewayError):
    """The selected market variant does not offer this operation."""
