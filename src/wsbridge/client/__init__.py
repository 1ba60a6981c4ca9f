"""Tunnel client."""

from .bridge import BridgeOutcome, ShutdownCoordinator, ShutdownState, StreamBridge
from .connection import DuplexConnection
from .dialer import DialConfig, build_dial_config, establish
from .tunnel import TunnelClient

__all__ = [
    "BridgeOutcome",
    "DialConfig",
    "DuplexConnection",
    "ShutdownCoordinator",
    "ShutdownState",
    "StreamBridge",
    "TunnelClient",
    "build_dial_config",
    "establish",
]
