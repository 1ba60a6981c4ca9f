"""Core."""

from .config import TunnelSettings, load_config_from_file, parse_duration
from .exceptions import (
    ConfigError,
    ConfigErrorKind,
    DialError,
    DialErrorKind,
    ProtocolViolation,
    ProtocolViolationKind,
    SecretError,
    SecretErrorKind,
    StreamError,
    StreamErrorKind,
    WsbridgeError,
    format_error_for_user,
)

__all__ = [
    # Config
    "TunnelSettings",
    "load_config_from_file",
    "parse_duration",
    # Errors
    "WsbridgeError",
    "SecretError",
    "SecretErrorKind",
    "ConfigError",
    "ConfigErrorKind",
    "DialError",
    "DialErrorKind",
    "ProtocolViolation",
    "ProtocolViolationKind",
    "StreamError",
    "StreamErrorKind",
    "format_error_for_user",
]
