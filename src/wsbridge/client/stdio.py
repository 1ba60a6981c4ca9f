"""Async access to the process's standard input and output.

Pipes, sockets and terminals are attached to the event loop directly.
Anything else, such as a regular file (``wsbridge URL < dump.bin``) or
``/dev/null``, cannot be watched by epoll, so it is read in a worker thread
and written synchronously.
"""

from __future__ import annotations

import asyncio
import os
import stat
import sys
from typing import BinaryIO, Protocol

import structlog

logger = structlog.get_logger()


class LocalReader(Protocol):
    async def read(self) -> bytes:
        """Return the next chunk, or b"" at end of input."""
        ...

    def release(self) -> None:
        """Hand the underlying stream back in the state it was found."""


class LocalWriter(Protocol):
    async def write(self, data: bytes) -> None:
        """Write all of ``data``."""
        ...

    def release(self) -> None:
        """Hand the underlying stream back in the state it was found."""


class _AttachedPipe:
    """An event-loop transport over a duplicate of a caller's descriptor.

    The loop switches the open file description to non-blocking mode. That
    description is shared with whoever else holds it (the login shell, for a
    terminal), so ``release`` puts the original mode back.
    """

    def __init__(self, transport: asyncio.BaseTransport, fd: int, was_blocking: bool) -> None:
        self._transport = transport
        self._fd = fd
        self._was_blocking = was_blocking

    def release(self) -> None:
        self._transport.close()
        try:
            os.set_blocking(self._fd, self._was_blocking)
        except OSError as e:
            logger.debug("Could not restore blocking mode", fd=self._fd, error=str(e))


class PipeReader(_AttachedPipe):
    def __init__(
        self,
        reader: asyncio.StreamReader,
        chunk_size: int,
        transport: asyncio.BaseTransport,
        fd: int,
        was_blocking: bool,
    ) -> None:
        super().__init__(transport, fd, was_blocking)
        self._reader = reader
        self._chunk_size = chunk_size

    async def read(self) -> bytes:
        return await self._reader.read(self._chunk_size)


class FileReader(LocalReader):
    def __init__(self, stream: BinaryIO, chunk_size: int) -> None:
        self._stream = stream
        self._chunk_size = chunk_size

    async def read(self) -> bytes:
        return await asyncio.to_thread(self._stream.read, self._chunk_size)


class PipeWriter(_AttachedPipe):
    def __init__(self, writer: asyncio.StreamWriter, fd: int, was_blocking: bool) -> None:
        super().__init__(writer.transport, fd, was_blocking)
        self._writer = writer

    async def write(self, data: bytes) -> None:
        self._writer.write(data)
        await self._writer.drain()


class FileWriter(LocalWriter):
    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    async def write(self, data: bytes) -> None:
        self._stream.write(data)
        self._stream.flush()


def _can_attach(stream: BinaryIO) -> bool:
    """True for descriptors epoll can watch: pipes, sockets and terminals.

    Regular files and other character devices such as /dev/null are refused
    by epoll, so they go through the blocking adapters.
    """
    try:
        mode = os.fstat(stream.fileno()).st_mode
    except (OSError, ValueError):
        return False
    return stat.S_ISFIFO(mode) or stat.S_ISSOCK(mode) or stream.isatty()


def _duplicate(stream: BinaryIO, mode: str) -> tuple[BinaryIO, int, bool]:
    fd = stream.fileno()
    return os.fdopen(os.dup(fd), mode, buffering=0), fd, os.get_blocking(fd)


async def open_stdin(chunk_size: int, stream: BinaryIO | None = None) -> LocalReader:
    stream = stream if stream is not None else sys.stdin.buffer
    if not _can_attach(stream):
        return FileReader(stream, chunk_size)

    loop = asyncio.get_running_loop()
    pipe, fd, was_blocking = _duplicate(stream, "rb")
    reader = asyncio.StreamReader(limit=max(chunk_size, 2**16))
    protocol = asyncio.StreamReaderProtocol(reader)
    try:
        transport, _ = await loop.connect_read_pipe(lambda: protocol, pipe)
    except BaseException:
        pipe.close()
        raise
    return PipeReader(reader, chunk_size, transport, fd, was_blocking)


async def open_stdout(stream: BinaryIO | None = None) -> LocalWriter:
    stream = stream if stream is not None else sys.stdout.buffer
    if not _can_attach(stream):
        return FileWriter(stream)

    loop = asyncio.get_running_loop()
    pipe, fd, was_blocking = _duplicate(stream, "wb")
    try:
        transport, protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, pipe
        )
    except BaseException:
        pipe.close()
        raise
    writer = asyncio.StreamWriter(transport, protocol, None, loop)
    return PipeWriter(writer, fd, was_blocking)
