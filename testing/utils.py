"""Network helpers for tests that run a real relay server."""
from __future__ import annotations

import socket


def open_port(host: str = '') -> int:
    """Return a port that is free to bind to on `host`.

    Source: https://stackoverflow.com/questions/2838244
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        s.listen(1)
        return s.getsockname()[1]
