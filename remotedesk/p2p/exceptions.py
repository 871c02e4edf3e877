"""Exception types for peering errors."""
from __future__ import annotations


class PeerConnectionError(Exception):
    """Error connecting to a peer desktop."""

    pass


class PeerConnectionTimeoutError(PeerConnectionError):
    """Timeout waiting on peer to peer connection to establish."""

    pass


class PeerNegotiationError(PeerConnectionError):
    """Peer sent a session description or candidate that cannot be used."""

    pass
