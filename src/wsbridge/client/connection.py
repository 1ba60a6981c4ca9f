"""The established tunnel connection."""

from __future__ import annotations

import structlog
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed
from websockets.frames import CloseCode

logger = structlog.get_logger()


def is_normal_closure(error: BaseException) -> bool:
    """True if the peer ended the session with close code 1000."""
    if not isinstance(error, ConnectionClosed):
        return False
    return error.rcvd is not None and error.rcvd.code == CloseCode.NORMAL_CLOSURE


class DuplexConnection:
    """One WebSocket carrying the tunnel in both directions.

    Receiving and sending may run concurrently from different tasks. Closing
    belongs to the shutdown coordinator and happens at most once; later calls
    are ignored.
    """

    def __init__(self, ws: ClientConnection, url: str) -> None:
        self._ws = ws
        self.url = url
        self._closed = False
        self.bytes_sent = 0
        self.bytes_received = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def recv(self) -> bytes | str:
        """Return the next message: bytes for binary frames, str for text.

        Raises:
            ConnectionClosed: When the connection ends, normally or not
        """
        message = await self._ws.recv()
        self.bytes_received += len(message)
        return message

    async def send(self, data: bytes) -> None:
        """Send one binary message."""
        await self._ws.send(data)
        self.bytes_sent += len(data)

    async def close_normal(self, timeout: float) -> None:
        """Send a normal-closure close frame and wait up to ``timeout`` for the peer.

        A close that is already in flight, or a connection that is already
        closed, is not an error.
        """
        if self._closed:
            logger.debug("Close already requested", url=self.url)
            return
        self._closed = True
        self._ws.close_timeout = timeout
        try:
            await self._ws.close(CloseCode.NORMAL_CLOSURE)
        except ConnectionClosed:
            logger.debug("Close already sent", url=self.url)

    def abort(self) -> None:
        """Drop the connection without a close handshake."""
        if self._closed:
            return
        self._closed = True
        transport = self._ws.transport
        if transport is not None:
            transport.abort()
