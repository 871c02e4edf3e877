"""Signaling relay server and client.

The [`RelayServer`][remotedesk.relay.server.RelayServer] brokers session
setup between desktops by forwarding negotiation payloads to a single peer
or to the other members of a room. The
[`RelayClient`][remotedesk.relay.client.RelayClient] is the desktop side of
that exchange.
"""
from __future__ import annotations
