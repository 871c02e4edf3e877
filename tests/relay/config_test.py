from __future__ import annotations

import logging
import pathlib

import pydantic
import pytest

from remotedesk.relay.config import DEFAULT_HOST
from remotedesk.relay.config import DEFAULT_PORT
from remotedesk.relay.config import RelayLoggingConfig
from remotedesk.relay.config import RelayServingConfig


def test_logging_config_default() -> None:
    config = RelayLoggingConfig()
    assert config.default_level == logging.INFO
    assert config.websockets_level == logging.WARNING


def test_serving_config_default() -> None:
    config = RelayServingConfig()
    assert config.host == DEFAULT_HOST == '0.0.0.0'
    assert config.port == DEFAULT_PORT == 5005
    assert config.ws_path == '/ws'


def test_read_from_config_file_empty(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'relay.toml'
    filepath.write_text('')

    config = RelayServingConfig.from_toml(filepath)
    assert config == RelayServingConfig()


def test_read_from_config_file(tmp_path: pathlib.Path) -> None:
    data = """\
host = "localhost"
port = 1234
ws_path = "/signal"
certfile = "/path/to/cert.pem"
keyfile = "/path/to/privkey.pem"
max_message_bytes = 65536

[logging]
log_dir = "/path/to/log/dir"
default_level = "DEBUG"
websockets_level = "INFO"
current_client_interval = 3
current_client_limit = 5
"""

    filepath = tmp_path / 'relay.toml'
    with open(filepath, 'w') as f:
        f.write(data)

    config = RelayServingConfig.from_toml(filepath)

    assert config.host == 'localhost'
    assert config.port == 1234
    assert config.ws_path == '/signal'
    assert config.certfile == '/path/to/cert.pem'
    assert config.keyfile == '/path/to/privkey.pem'
    assert config.max_message_bytes == 65536

    assert config.logging.log_dir == '/path/to/log/dir'
    assert config.logging.default_level == 'DEBUG'
    assert config.logging.websockets_level == 'INFO'
    assert config.logging.current_client_interval == 3
    assert config.logging.current_client_limit == 5


def test_read_from_config_file_unknown_key(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'relay.toml'
    filepath.write_text('[serving]\nport = 1234\n')

    with pytest.raises(pydantic.ValidationError):
        RelayServingConfig.from_toml(filepath)


def test_read_from_config_file_wrong_type(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'relay.toml'
    filepath.write_text('port = "1234"\n')

    with pytest.raises(pydantic.ValidationError):
        RelayServingConfig.from_toml(filepath)


def test_update_from_env() -> None:
    config = RelayServingConfig()
    config.update_from_env({'HOST': '127.0.0.1', 'PORT': '8080'})
    assert config.host == '127.0.0.1'
    assert config.port == 8080


def test_update_from_env_unset_or_empty() -> None:
    config = RelayServingConfig(host='example.com', port=1234)
    config.update_from_env({'HOST': '', 'OTHER': 'value'})
    assert config.host == 'example.com'
    assert config.port == 1234


def test_update_from_env_bad_port() -> None:
    config = RelayServingConfig()
    with pytest.raises(ValueError, match='PORT must be an integer'):
        config.update_from_env({'PORT': 'abc'})


def test_update_from_process_env(monkeypatch) -> None:
    monkeypatch.setenv('PORT', '6006')
    monkeypatch.delenv('HOST', raising=False)
    config = RelayServingConfig()
    config.update_from_env()
    assert config.port == 6006
    assert config.host == DEFAULT_HOST
