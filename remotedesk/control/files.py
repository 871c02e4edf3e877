"""File transfer over the control channel.

A transfer is a `file-meta` message, any number of binary chunks, and a
`file-end` message. Only the total length is checked when the transfer
ends; there is no checksum and lost or corrupted chunks are not detected.
"""
from __future__ import annotations

import asyncio
import logging
import os
import pathlib
from typing import Generator
from typing import Protocol

from remotedesk.control.exceptions import FileTransferError
from remotedesk.control.messages import FileMeta

logger = logging.getLogger(__name__)

CHUNK_SIZE = 16 * 1024


class FileSaver(Protocol):
    """Collaborator which decides where received files are written."""

    def open_save_dialog(self, suggested_name: str) -> str | None:
        """Get the path to save a file to or `None` to discard it."""
        ...

    def write_file(self, path: str, data: bytes) -> None:
        """Write the received file."""
        ...


class DirectoryFileSaver:
    """Save received files into a directory without asking.

    The suggested name is reduced to its final path component and a
    numeric suffix is added instead of overwriting an existing file.

    Args:
        directory: Directory to save files in. Created if missing.
    """

    def __init__(self, directory: str | pathlib.Path) -> None:
        self.directory = pathlib.Path(directory)

    def open_save_dialog(self, suggested_name: str) -> str | None:
        name = os.path.basename(suggested_name.replace('\\', '/'))
        if name in ('', '.', '..'):
            name = 'received-file'

        path = self.directory / name
        stem, suffix = path.stem, path.suffix
        index = 1
        while path.exists():
            path = self.directory / f'{stem} ({index}){suffix}'
            index += 1
        return str(path)

    def write_file(self, path: str, data: bytes) -> None:
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'wb') as f:
            f.write(data)


def read_file(path: str | pathlib.Path) -> bytes:
    """Read a file to send.

    Raises:
        FileTransferError: If the file cannot be read.
    """
    try:
        with open(path, 'rb') as f:
            return f.read()
    except OSError as e:
        raise FileTransferError(f'Failed to read {path}: {e}') from e


def iter_file_chunks(
    data: bytes,
    size: int = CHUNK_SIZE,
) -> Generator[bytes, None, None]:
    """Generate chunks from file data.

    Args:
        data: File data to chunk.
        size: Maximum size of each chunk.

    Yields:
        Consecutive chunks of `data`.
    """
    if size <= 0:
        raise ValueError(f'Chunk size must be positive. Got {size}.')
    for start in range(0, len(data), size):
        yield data[start : start + size]


class FileReceiver:
    """Receive-side state of a file transfer.

    Args:
        saver: Collaborator the assembled file is handed to.
    """

    def __init__(self, saver: FileSaver) -> None:
        self._saver = saver
        self._meta: FileMeta | None = None
        self._chunks: list[bytes] = []
        self._received = 0

    @property
    def active(self) -> bool:
        """A transfer has started and not yet ended."""
        return self._meta is not None

    def _reset(self) -> None:
        self._meta = None
        self._chunks = []
        self._received = 0

    def start(self, meta: FileMeta) -> None:
        """Start a transfer, discarding any unfinished one."""
        if self._meta is not None:
            logger.warning(
                f'Discarding unfinished transfer of {self._meta.name} '
                f'({self._received}/{self._meta.size} bytes)',
            )
        self._reset()
        self._meta = meta
        logger.info(f'Receiving {meta.name} ({meta.size} bytes)')

    def add_chunk(self, data: bytes) -> None:
        """Append a chunk to the active transfer."""
        if self._meta is None:
            logger.debug(
                f'Ignoring {len(data)} byte chunk without a transfer',
            )
            return
        self._chunks.append(data)
        self._received += len(data)

    async def finish(self) -> str | None:
        """Assemble the active transfer and hand it to the saver.

        Returns:
            Path the file was written to or `None` if there was no active
            transfer, the length did not match, the save was declined, or
            the saver failed. Saver errors are logged and not raised.
        """
        meta = self._meta
        if meta is None:
            logger.debug('Ignoring file-end without a transfer')
            return None

        data = b''.join(self._chunks)
        self._reset()

        if len(data) != meta.size:
            logger.error(
                f'Discarding {meta.name}: expected {meta.size} bytes but '
                f'received {len(data)}',
            )
            return None

        try:
            path = await asyncio.to_thread(
                self._saver.open_save_dialog,
                meta.name,
            )
            if path is None:
                logger.info(f'Save of {meta.name} was declined')
                return None
            await asyncio.to_thread(self._saver.write_file, path, data)
        except Exception:
            logger.exception(f'Failed to save {meta.name}')
            return None

        logger.info(f'Saved {meta.name} to {path}')
        return path
