"""Exception types raised by relay clients."""
from __future__ import annotations


class RelayClientError(Exception):
    """Base exception type for exceptions raised by relay clients."""

    pass


class RelayNotConnectedError(RelayClientError):
    """Exception raised if a client is not connected to a relay server."""

    pass


class RelayHandshakeError(RelayClientError):
    """Exception raised if the relay server does not greet a new client."""

    pass
