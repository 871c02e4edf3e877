from __future__ import annotations

import asyncio
import logging
import os
import pathlib
import ssl
import subprocess
from typing import Any
from unittest import mock

import click.testing
import pytest
import websockets.exceptions

from remotedesk.relay.client import RelayClient
from remotedesk.relay.config import RelayServingConfig
from remotedesk.relay.messages import RoomCreated
from remotedesk.relay.run import cli
from remotedesk.relay.run import LOG_FILE_NAME
from remotedesk.relay.run import periodic_client_logger
from remotedesk.relay.run import server_ssl_context
from remotedesk.relay.server import RelayServer
from testing.relay_server import mock_websocket
from testing.ssl import TLSFiles
from testing.utils import open_port


async def _log_for(
    server: RelayServer,
    seconds: float,
    **kwargs: Any,
) -> None:
    task = periodic_client_logger(server, 0.001, **kwargs)
    await asyncio.sleep(seconds)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio()
async def test_periodic_client_logger_lists_clients(caplog) -> None:
    caplog.set_level(logging.INFO)
    server = RelayServer()
    first = server.registry.register(mock_websocket())
    second = server.registry.register(mock_websocket())
    server.create_room(first)

    await _log_for(server, 0.01)

    messages = [r.message for r in caplog.records if r.levelno == logging.INFO]
    summary = next(m for m in messages if m.startswith('Connected clients'))
    assert summary.startswith('Connected clients: 2, rooms: 1')
    assert summary.index(first.peer_id) < summary.index(second.peer_id)


@pytest.mark.asyncio()
async def test_periodic_client_logger_over_limit(caplog) -> None:
    caplog.set_level(logging.DEBUG)
    server = RelayServer()
    connection = server.registry.register(mock_websocket())

    await _log_for(server, 0.01, limit=1, level=logging.DEBUG)

    assert any('Connected clients: 1' in r.message for r in caplog.records)
    assert not any(connection.peer_id in r.message for r in caplog.records)


def _invoke_cli(
    args: list[str],
    env: dict[str, str | None] | None = None,
) -> tuple[click.testing.Result, list[RelayServingConfig]]:
    configs: list[RelayServingConfig] = []

    async def _record(config: RelayServingConfig) -> None:
        configs.append(config)

    env = {'HOST': None, 'PORT': None, **(env or {})}
    with mock.patch('remotedesk.relay.run.serve', side_effect=_record):
        result = click.testing.CliRunner().invoke(cli, args, env=env)
    return result, configs


def test_cli_defaults() -> None:
    result, configs = _invoke_cli([])

    assert result.exit_code == 0
    assert configs == [RelayServingConfig()]


def test_cli_options_override_env(tmp_path: pathlib.Path) -> None:
    log_dir = tmp_path / 'logs'

    result, configs = _invoke_cli(
        [
            '--host',
            'relay.example.com',
            '--port',
            '1234',
            '--log-dir',
            str(log_dir),
            '--log-level',
            'warning',
        ],
        env={'HOST': 'env-host', 'PORT': '9999'},
    )

    assert result.exit_code == 0
    (config,) = configs
    assert config.host == 'relay.example.com'
    assert config.port == 1234
    assert config.logging.log_dir == str(log_dir)
    assert config.logging.default_level == logging.WARNING
    assert log_dir.is_dir()


def test_cli_env_overrides_config_file(tmp_path: pathlib.Path) -> None:
    config_path = tmp_path / 'relay.toml'
    config_path.write_text('host = "file-host"\nport = 1111\n')

    result, configs = _invoke_cli(
        ['--config', str(config_path)],
        env={'PORT': '2222'},
    )

    assert result.exit_code == 0
    (config,) = configs
    assert config.host == 'file-host'
    assert config.port == 2222


def test_cli_rejects_bad_port_env() -> None:
    result, configs = _invoke_cli([], env={'PORT': 'not-a-port'})

    assert result.exit_code != 0
    assert 'PORT must be an integer' in result.output
    assert configs == []


def test_cli_writes_log_file(tmp_path: pathlib.Path) -> None:
    command = [
        'remotedesk-relay',
        '--host',
        '127.0.0.1',
        '--port',
        str(open_port()),
        '--log-dir',
        str(tmp_path),
        '--log-level',
        'INFO',
    ]
    with subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    ) as process:
        assert process.stdout is not None
        for line in process.stdout:  # pragma: no branch
            if 'Relay server listening on port' in line:
                break
        process.terminate()
        process.wait(5)

    log_text = (tmp_path / LOG_FILE_NAME).read_text()
    assert 'Relay server listening on port' in log_text
    assert 'DEBUG' not in log_text


async def _connect_when_up(address: str, deadline: float) -> RelayClient:
    client = RelayClient(
        address,
        reconnect_task=False,
        verify_certificate=False,
    )
    loop = asyncio.get_running_loop()
    while True:
        try:
            await client.connect(retry=False)
        except OSError:  # pragma: no cover
            if loop.time() > deadline:
                raise
            await asyncio.sleep(0.05)
        else:
            return client


@pytest.mark.parametrize('use_ssl', (True, False))
@pytest.mark.timeout(10)
@pytest.mark.asyncio()
async def test_serve_in_subprocess(
    use_ssl: bool,
    tls_files: TLSFiles,
    tmp_path: pathlib.Path,
) -> None:
    port = open_port()
    lines = ['host = "127.0.0.1"', f'port = {port}']
    if use_ssl:
        lines.append(f'certfile = "{tls_files.certfile}"')
        lines.append(f'keyfile = "{tls_files.keyfile}"')
    config_path = tmp_path / 'relay.toml'
    config_path.write_text('\n'.join(lines) + '\n')

    scheme = 'wss' if use_ssl else 'ws'
    address = f'{scheme}://127.0.0.1:{port}/ws'

    process = subprocess.Popen(
        ['remotedesk-relay', '--config', str(config_path)],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        env={k: v for k, v in os.environ.items() if k not in ('HOST', 'PORT')},
    )
    try:
        deadline = asyncio.get_running_loop().time() + 5
        client = await _connect_when_up(address, deadline)
        assert client.peer_id is not None

        await client.create_room()
        reply = await asyncio.wait_for(client.recv(), 1)
        assert isinstance(reply, RoomCreated)

        # SIGTERM stops the relay which closes every websocket
        process.terminate()
        with pytest.raises(websockets.exceptions.ConnectionClosed):
            await asyncio.wait_for(client.websocket.recv(), 5)
        await client.close()
        assert process.wait(5) == 0
    finally:
        if process.poll() is None:  # pragma: no cover
            process.kill()
            process.wait()


def test_server_ssl_context(tls_files: TLSFiles) -> None:
    assert server_ssl_context(RelayServingConfig()) is None

    config = RelayServingConfig(
        certfile=tls_files.certfile,
        keyfile=tls_files.keyfile,
    )
    context = server_ssl_context(config)
    assert context is not None
    assert context.protocol == ssl.PROTOCOL_TLS_SERVER
