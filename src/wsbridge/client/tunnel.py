"""Tunnel client: dial once, bridge stdio, report how it ended."""

from __future__ import annotations

from enum import Enum
from typing import Any

import structlog

from wsbridge.client.bridge import BridgeOutcome, StreamBridge
from wsbridge.client.connection import DuplexConnection
from wsbridge.client.dialer import DialConfig, build_dial_config, establish
from wsbridge.client.stdio import LocalReader, LocalWriter, open_stdin, open_stdout
from wsbridge.core.config import TunnelSettings

logger = structlog.get_logger()


class ConnectionState(Enum):
    """Client connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class TunnelClient:
    """One-shot client carrying a byte stream over a single WebSocket.

    There is no reconnect: if the dial or the tunnel fails the run is over.
    """

    def __init__(self, settings: TunnelSettings) -> None:
        self.settings = settings
        self._state = ConnectionState.DISCONNECTED
        self._dial_config: DialConfig | None = None
        self._connection: DuplexConnection | None = None
        self._outcome: BridgeOutcome | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stats(self) -> dict[str, Any]:
        connection = self._connection
        return {
            "state": self._state.value,
            "url": self.settings.url,
            "bytes_sent": connection.bytes_sent if connection else 0,
            "bytes_received": connection.bytes_received if connection else 0,
        }

    def _set_state(self, state: ConnectionState) -> None:
        if self._state != state:
            logger.debug("State changed", old=self._state.value, new=state.value)
            self._state = state

    async def connect(self) -> DuplexConnection:
        """Build the dial configuration and open the tunnel.

        Raises:
            SecretError: If a credential spec cannot be resolved
            ConfigError: If a URL or the client certificate is unusable
            DialError: If the WebSocket upgrade fails
        """
        self._set_state(ConnectionState.CONNECTING)
        try:
            self._dial_config = build_dial_config(self.settings)
            self._connection = await establish(self._dial_config, verbose=self.settings.verbose)
        except BaseException:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        self._set_state(ConnectionState.CONNECTED)
        return self._connection

    async def run(
        self,
        reader: LocalReader | None = None,
        writer: LocalWriter | None = None,
    ) -> BridgeOutcome:
        """Bridge local input/output with the tunnel until it ends.

        Defaults to the process's stdin and stdout.
        """
        if self._connection is None:
            raise RuntimeError("Not connected")

        opened: list[LocalReader | LocalWriter] = []
        try:
            if reader is None:
                reader = await open_stdin(self.settings.chunk_size)
                opened.append(reader)
            if writer is None:
                writer = await open_stdout()
                opened.append(writer)
        except BaseException:
            logger.debug("Local streams unavailable, dropping the tunnel")
            self._release(opened)
            self._connection.abort()
            self._set_state(ConnectionState.CLOSED)
            raise

        bridge = StreamBridge(self._connection, reader, writer, self.settings.write_timeout)
        try:
            self._outcome = await bridge.run()
        finally:
            self._release(opened)
            self._set_state(ConnectionState.CLOSED)
        return self._outcome

    @staticmethod
    def _release(streams: list[LocalReader | LocalWriter]) -> None:
        for stream in streams:
            stream.release()
