"""Relay server configuration file parsing."""

from __future__ import annotations

import logging
import os
import pathlib
import sys
from typing import Mapping

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from remotedesk.utils.config import load

DEFAULT_HOST = '0.0.0.0'
DEFAULT_PORT = 5005
HOST_ENV_VAR = 'HOST'
PORT_ENV_VAR = 'PORT'


class RelayLoggingConfig(BaseModel):
    """Relay logging configuration.

    Attributes:
        log_dir: Default logging directory.
        default_level: Default logging level for the root logger.
        websockets_level: Log level for the `websockets` logger. Websockets
            logs with much higher frequency so it is suggested to set this
            to `WARNING` or higher.
        current_client_interval: Optional seconds between logging the
            number of currently connected clients and rooms.
        current_client_limit: Max threshold for enumerating the
            detailed list of connected clients. If `None`, no detailed
            list will be logged.
    """

    model_config = ConfigDict(extra='forbid')

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    current_client_interval: int | None = 60
    current_client_limit: int | None = 32


class RelayServingConfig(BaseModel):
    """Relay serving configuration.

    Attributes:
        host: Network interface the server binds to.
        port: Network port the server binds to.
        ws_path: HTTP path clients open the websocket connection on. Other
            paths are reserved for the HTTP health and status routes.
        certfile: Certificate file (PEM format) use to enable TLS.
        keyfile: Private key file. If not specified, the key will be
            taken from the certfile.
        logging: Logging configuration.
        max_message_bytes: Maximum size in bytes of messages received by
            the relay server.
    """

    model_config = ConfigDict(extra='forbid')

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    ws_path: str = '/ws'
    certfile: str | None = None
    keyfile: str | None = None
    logging: RelayLoggingConfig = Field(default_factory=RelayLoggingConfig)
    max_message_bytes: int | None = None

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse an TOML config file.

        Example:
            ```toml title="relay.toml"
            host = "0.0.0.0"
            port = 5005
            certfile = "/path/to/cert.pem"
            keyfile = "/path/to/privkey.pem"

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"
            websockets_level = "WARNING"
            current_client_interval = 60
            current_client_limit = 32
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)

    def update_from_env(
        self,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """Override the host and port with environment variables.

        Reads `HOST` and `PORT`, the convention of most container and
        platform-as-a-service hosts.

        Args:
            environ: Mapping to read instead of `os.environ`.

        Raises:
            ValueError: If `PORT` is set but is not an integer.
        """
        environ = os.environ if environ is None else environ
        host = environ.get(HOST_ENV_VAR)
        port = environ.get(PORT_ENV_VAR)
        if host:
            self.host = host
        if port:
            try:
                self.port = int(port)
            except ValueError as e:
                raise ValueError(
                    f'{PORT_ENV_VAR} must be an integer. Got {port!r}.',
                ) from e
