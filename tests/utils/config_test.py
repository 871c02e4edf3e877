from __future__ import annotations

import io
import pathlib

import pydantic
import pytest
from pydantic import BaseModel

from remotedesk.utils.config import load
from remotedesk.utils.config import loads


class _Stun(BaseModel):
    urls: list[str]
    timeout: float = 5.0


class _Viewer(BaseModel):
    relay: str
    user_id: str | None = None
    fullscreen: bool = False
    stun: _Stun


EXPECTED = _Viewer(
    relay='wss://relay.example.com/ws',
    fullscreen=True,
    stun=_Stun(urls=['stun:stun.l.google.com:19302'], timeout=2.5),
)
VIEWER_TOML = """\
relay = "wss://relay.example.com/ws"
fullscreen = true

[stun]
urls = ["stun:stun.l.google.com:19302"]
timeout = 2.5
"""


def test_load_from_file(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'viewer.toml'
    filepath.write_text(VIEWER_TOML)

    with open(filepath, 'rb') as f:
        assert load(_Viewer, f) == EXPECTED


def test_load_from_bytes_stream() -> None:
    stream = io.BytesIO(VIEWER_TOML.encode())
    assert load(_Viewer, stream) == EXPECTED


def test_loads_is_strict() -> None:
    data = VIEWER_TOML.replace('fullscreen = true', 'fullscreen = "yes"')
    with pytest.raises(pydantic.ValidationError):
        loads(_Viewer, data)


def test_loads_missing_table() -> None:
    with pytest.raises(pydantic.ValidationError):
        loads(_Viewer, 'relay = "ws://localhost:5005/ws"\n')


def test_loads_invalid_toml() -> None:
    with pytest.raises(ValueError):
        loads(_Viewer, 'relay = ')
