"""Full-duplex bridge between local stdio and the tunnel connection.

Two tasks move bytes, one per direction, sharing one cancellation event:

    stdin  --read-->  local_to_remote  --send-->  connection
    stdout <--write-- remote_to_local  <--recv--  connection

End of stdin is the expected way out: the coordinator sends a normal-closure
close frame and the run succeeds. A normal closure from the remote ends only
the remote-to-local task. Anything else in either direction raises the
cancellation event and the run fails.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum

import structlog
from websockets.exceptions import ConnectionClosed

from wsbridge.client.connection import DuplexConnection, is_normal_closure
from wsbridge.client.stdio import LocalReader, LocalWriter
from wsbridge.core.exceptions import (
    ProtocolViolation,
    ProtocolViolationKind,
    StreamError,
    StreamErrorKind,
    WsbridgeError,
)

logger = structlog.get_logger()


class DirectionState(Enum):
    RUNNING = "running"
    EOF = "eof"
    REMOTE_CLOSED = "remote_closed"
    FAILED = "failed"


class ShutdownState(Enum):
    RUNNING = "running"
    LOCAL_EOF_PENDING_CLOSE = "local_eof_pending_close"
    REMOTE_CLOSED = "remote_closed"
    FATAL_ERROR = "fatal_error"
    CLOSED = "closed"


@dataclass
class BridgeState:
    local_to_remote: DirectionState = DirectionState.RUNNING
    remote_to_local: DirectionState = DirectionState.RUNNING


@dataclass(frozen=True)
class BridgeOutcome:
    """How the bridge ended. Only ``cancelled`` decides the exit status."""

    state: ShutdownState
    directions: BridgeState
    cancelled: bool
    error: WsbridgeError | None = None
    bytes_sent: int = 0
    bytes_received: int = 0

    @property
    def exit_code(self) -> int:
        return 1 if self.cancelled else 0


@dataclass
class ShutdownCoordinator:
    """Drives the close handshake and records whether the run failed.

    The coordinator is the only thing that closes the connection.
    """

    connection: DuplexConnection
    write_timeout: float
    state: ShutdownState = ShutdownState.RUNNING
    error: WsbridgeError | None = None
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def closing(self) -> bool:
        return self.state in (ShutdownState.LOCAL_EOF_PENDING_CLOSE, ShutdownState.CLOSED)

    def _transition(self, new: ShutdownState) -> None:
        if self.state is not new:
            logger.debug("Shutdown state changed", old=self.state.value, new=new.value)
            self.state = new

    def remote_closed(self) -> None:
        if self.state is ShutdownState.RUNNING:
            self._transition(ShutdownState.REMOTE_CLOSED)

    def fail(self, error: WsbridgeError) -> None:
        """Raise the cancellation signal. Only the first error is kept."""
        if self.cancelled.is_set():
            logger.debug("Further error after cancellation", error=error.message)
            return
        self.error = error
        self._transition(ShutdownState.FATAL_ERROR)
        self.cancelled.set()
        logger.debug("Tunnel cancelled", code=error.code, error=error.message)

    async def close_after_eof(self) -> None:
        """Send the close frame once local input is exhausted.

        A failed send is logged but does not change the outcome.
        """
        self._transition(ShutdownState.LOCAL_EOF_PENDING_CLOSE)
        try:
            await self.connection.close_normal(self.write_timeout)
        except (OSError, TimeoutError) as e:
            logger.error("Error sending 'close' message", error=str(e))
        self._transition(ShutdownState.CLOSED)

    def finish(self) -> None:
        if self.state is ShutdownState.FATAL_ERROR:
            self.connection.abort()
            self._transition(ShutdownState.CLOSED)


class StreamBridge:
    """Runs both directions until the tunnel ends and reports the outcome."""

    def __init__(
        self,
        connection: DuplexConnection,
        reader: LocalReader,
        writer: LocalWriter,
        write_timeout: float,
    ) -> None:
        self._connection = connection
        self._reader = reader
        self._writer = writer
        self._write_timeout = write_timeout
        self._state = BridgeState()
        self._coordinator = ShutdownCoordinator(connection, write_timeout)

    @property
    def coordinator(self) -> ShutdownCoordinator:
        return self._coordinator

    @property
    def state(self) -> BridgeState:
        return self._state

    async def run(self) -> BridgeOutcome:
        coordinator = self._coordinator
        remote = asyncio.create_task(self._remote_to_local(), name="wsbridge-remote-to-local")
        local = asyncio.create_task(self._local_to_remote(), name="wsbridge-local-to-remote")
        cancelled = asyncio.create_task(coordinator.cancelled.wait())

        try:
            await asyncio.wait({local, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            if not coordinator.cancelled.is_set():
                await coordinator.close_after_eof()
                # Deliver whatever arrived before the peer's close frame.
                await asyncio.wait({remote, cancelled}, timeout=self._write_timeout,
                                   return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (remote, local, cancelled):
                task.cancel()
            await asyncio.gather(remote, local, cancelled, return_exceptions=True)
            coordinator.finish()

        outcome = BridgeOutcome(
            state=coordinator.state,
            directions=self._state,
            cancelled=coordinator.cancelled.is_set(),
            error=coordinator.error,
            bytes_sent=self._connection.bytes_sent,
            bytes_received=self._connection.bytes_received,
        )
        logger.debug(
            "Bridge finished",
            state=outcome.state.value,
            exit_code=outcome.exit_code,
            bytes_sent=outcome.bytes_sent,
            bytes_received=outcome.bytes_received,
        )
        return outcome

    async def _remote_to_local(self) -> None:
        while True:
            try:
                message = await self._connection.recv()
            except ConnectionClosed as e:
                if is_normal_closure(e) or self._coordinator.closing:
                    logger.debug("Remote closed the tunnel", code=e.rcvd.code if e.rcvd else None)
                    self._state.remote_to_local = DirectionState.REMOTE_CLOSED
                    self._coordinator.remote_closed()
                    return
                self._remote_failed(StreamError(
                    StreamErrorKind.REMOTE_RECEIVE_FAILURE,
                    f"Receiving from websocket: {e}",
                ))
                return
            except Exception as e:
                self._remote_failed(StreamError(
                    StreamErrorKind.REMOTE_RECEIVE_FAILURE,
                    f"Receiving from websocket: {e}",
                ))
                return

            if not isinstance(message, bytes):
                self._remote_failed(ProtocolViolation(
                    ProtocolViolationKind.NON_BINARY_MESSAGE,
                    "Non-binary websocket message received",
                ))
                return

            try:
                await self._writer.write(message)
            except Exception as e:
                logger.error("Writing to stdout failed", error=str(e))
                self._remote_failed(StreamError(
                    StreamErrorKind.LOCAL_WRITE_FAILURE,
                    f"Writing to stdout: {e}",
                ))
                return

    def _remote_failed(self, error: WsbridgeError) -> None:
        self._state.remote_to_local = DirectionState.FAILED
        self._coordinator.fail(error)

    async def _local_to_remote(self) -> None:
        while True:
            try:
                chunk = await self._reader.read()
            except Exception as e:
                self._local_failed(StreamError(
                    StreamErrorKind.LOCAL_READ_FAILURE,
                    f"Reading from stdin: {e}",
                ))
                return

            if not chunk:
                logger.debug("Local input reached EOF")
                self._state.local_to_remote = DirectionState.EOF
                return

            try:
                await self._connection.send(chunk)
            except Exception as e:
                self._local_failed(StreamError(
                    StreamErrorKind.REMOTE_SEND_FAILURE,
                    f"Sending to websocket: {e}",
                ))
                return

    def _local_failed(self, error: WsbridgeError) -> None:
        self._state.local_to_remote = DirectionState.FAILED
        self._coordinator.fail(error)
