"""Peer-to-peer connections negotiated through the relay server.

Peer connections are established using
[aiortc](https://aiortc.readthedocs.io/){target=_blank}, an asyncio WebRTC
implementation. Once connected, the control channel protocol in
[`remotedesk.control`][remotedesk.control] runs over the connection's
data channel.
"""
from __future__ import annotations
