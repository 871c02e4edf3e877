"""Relay server entry points.

`remotedesk-relay` is installed as a console script which invokes
[`cli()`][remotedesk.relay.run.cli]. Settings are layered: the optional
TOML file, then the `HOST` and `PORT` environment variables, then the CLI
flags.
"""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import ssl
import sys

import click
from websockets.asyncio.server import serve as websockets_serve

from remotedesk.relay.config import RelayLoggingConfig
from remotedesk.relay.config import RelayServingConfig
from remotedesk.relay.server import RelayServer
from remotedesk.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

LOG_FORMAT = (
    '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: %(message)s'
)
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
LOG_FILE_NAME = 'relay.log'


def _level_number(level: int | str) -> int:
    return level if isinstance(level, int) else logging.getLevelName(level)


def _status_line(server: RelayServer, limit: float | None) -> str:
    connections = sorted(
        server.registry.get_connections(),
        key=lambda connection: connection.created,
    )
    line = (
        f'Connected clients: {len(connections)}, '
        f'rooms: {len(server.rooms)}, '
        f'pending pairings: {len(server.pairings)}'
    )
    if limit is None or not 0 < len(connections) < limit:
        return line
    details = '\n'.join(repr(connection) for connection in connections)
    return f'{line}\n{details}'


def periodic_client_logger(
    server: RelayServer,
    interval: float = 60,
    limit: float | None = 60,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Log a summary of the relay state at a fixed interval.

    Each entry has the number of connected clients, rooms and pending
    pairing intents. While fewer than `limit` clients are connected the
    entry also lists every connection, oldest first.

    Args:
        server: Relay server to summarize.
        interval: Seconds between entries.
        limit: Client count below which connections are listed
            individually. `None` disables the listing.
        level: Level the entries are logged at.

    Returns:
        Background task which logs until cancelled.
    """

    async def _log_forever() -> None:
        while True:
            await asyncio.sleep(interval)
            logger.log(level, _status_line(server, limit))

    return spawn_guarded_background_task(
        _log_forever,
        name='relay-server-client-logger',
    )


def server_ssl_context(config: RelayServingConfig) -> ssl.SSLContext | None:
    """Build the TLS context for `wss://` or `None` to serve plain `ws://`."""
    if config.certfile is None:
        return None
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(config.certfile, keyfile=config.keyfile)
    return context


async def serve(config: RelayServingConfig) -> None:
    """Run a relay server until SIGINT or SIGTERM.

    Websocket connections on
    [`RelayServingConfig.ws_path`][remotedesk.relay.config.RelayServingConfig]
    are handled by
    [`RelayServer.handler()`][remotedesk.relay.server.RelayServer.handler];
    any other request on the port is answered by
    [`RelayServer.process_request()`][remotedesk.relay.server.RelayServer.process_request].

    Note:
        Logging is not configured here. Call
        [`configure_logging()`][remotedesk.relay.run.configure_logging]
        first to apply `config.logging`.

    Args:
        config: Serving configuration.
    """
    server = RelayServer(
        ws_path=config.ws_path,
        max_message_bytes=config.max_message_bytes,
    )
    ssl_context = server_ssl_context(config)

    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set_result, None)

    status_task: asyncio.Task[None] | None = None
    if config.logging.current_client_interval is not None:  # pragma: no branch
        status_task = periodic_client_logger(
            server,
            config.logging.current_client_interval,
            config.logging.current_client_limit,
            level=_level_number(config.logging.default_level),
        )

    logger.info(
        f'Relay serving configuration:\n{pprint.pformat(config, indent=2)}',
    )

    scheme = 'ws' if ssl_context is None else 'wss'
    async with websockets_serve(
        server.handler,
        config.host,
        config.port,
        process_request=server.process_request,
        ssl=ssl_context,
        logger=None,
    ):
        logger.info(f'Relay server listening on port {config.port}')
        logger.info(
            f'Websocket endpoint: {scheme}://{config.host}:{config.port}'
            f'{config.ws_path} (ctrl-C to stop)',
        )
        await stop

    if status_task is not None:  # pragma: no branch
        status_task.cancel()
        try:
            await status_task
        except asyncio.CancelledError:
            pass

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.remove_signal_handler(signum)

    logger.info('Relay server shutdown')


def configure_logging(config: RelayLoggingConfig) -> None:
    """Configure the root and `websockets` loggers.

    Records go to stdout and, if `config.log_dir` is set, to a file in that
    directory which is rotated weekly on Sunday at midnight.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.log_dir is not None:
        os.makedirs(config.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.log_dir, LOG_FILE_NAME),
                when='W6',
                atTime=datetime.time(0, 0, 0),
            ),
        )

    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        level=config.default_level,
        handlers=handlers,
    )
    logging.getLogger('websockets').setLevel(config.websockets_level)


@click.command()
@click.option('--config', '-c', 'config_path', help='TOML config file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option('--log-dir', metavar='PATH', help='Directory for log files.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Root logger level.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Serve the RemoteDesk signaling relay.

    Desktops use the relay to find each other by room or by user ID and to
    exchange the WebRTC offers, answers and ICE candidates needed to open a
    direct connection. Without `--config` the defaults of
    [`RelayServingConfig`][remotedesk.relay.config.RelayServingConfig] are
    used. `HOST` and `PORT` from the environment take precedence over the
    file and the options below take precedence over both.
    """
    if config_path is None:
        config = RelayServingConfig()
    else:
        config = RelayServingConfig.from_toml(config_path)

    try:
        config.update_from_env()
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(log_level.upper())

    configure_logging(config.logging)
    asyncio.run(serve(config))
