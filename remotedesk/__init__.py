"""RemoteDesk: peer-to-peer remote desktop signaling and control."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('remotedesk')
