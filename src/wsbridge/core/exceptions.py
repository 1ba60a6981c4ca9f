"""Error types for wsbridge.

Every failure the client can hit is one of these. Core code raises them and
the CLI decides the exit status; nothing below the CLI terminates the process.
"""

from __future__ import annotations

from enum import Enum


class WsbridgeError(Exception):
    """Base class for all wsbridge errors."""

    def __init__(self, message: str, code: str = "error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class SecretErrorKind(Enum):
    INSECURE_PERMISSIONS = "insecure_permissions"
    IO_FAILURE = "io_failure"
    MALFORMED_FORMAT = "malformed_format"


class SecretError(WsbridgeError):
    """A credential spec could not be resolved.

    Secret values are never part of the message.
    """

    def __init__(self, kind: SecretErrorKind, message: str) -> None:
        super().__init__(message, code=f"secret_{kind.value}")
        self.kind = kind


class ConfigErrorKind(Enum):
    URL_PARSE_FAILURE = "url_parse_failure"
    CERTIFICATE_LOAD_FAILURE = "certificate_load_failure"


class ConfigError(WsbridgeError):
    """The dial configuration could not be assembled."""

    def __init__(self, kind: ConfigErrorKind, message: str) -> None:
        super().__init__(message, code=f"config_{kind.value}")
        self.kind = kind


class DialErrorKind(Enum):
    HTTP_REJECTION = "http_rejection"
    TRANSPORT_REJECTION = "transport_rejection"


class DialError(WsbridgeError):
    """The WebSocket upgrade failed.

    ``HTTP_REJECTION`` means an HTTP response other than 101 came back, from
    the endpoint or from the forward proxy. ``status`` and ``reason`` are set;
    ``body`` is set only when verbose diagnostics were requested.
    ``TRANSPORT_REJECTION`` means no HTTP response was obtained at all.
    """

    def __init__(
        self,
        kind: DialErrorKind,
        url: str,
        *,
        status: int | None = None,
        reason: str | None = None,
        body: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.kind = kind
        self.url = url
        self.status = status
        self.reason = reason
        self.body = body
        self.cause = cause

        if kind is DialErrorKind.HTTP_REJECTION:
            message = f"Dial to {url!r} rejected: HTTP error: {status} {reason or ''}".rstrip()
            if body is not None:
                message += f"\nBody:\n{body}"
        else:
            message = f"Dial to {url!r} failed: {cause}"
        super().__init__(message, code=f"dial_{kind.value}")


class ProtocolViolationKind(Enum):
    NON_BINARY_MESSAGE = "non_binary_message"


class ProtocolViolation(WsbridgeError):
    """The remote sent something the tunnel does not carry."""

    def __init__(self, kind: ProtocolViolationKind, message: str) -> None:
        super().__init__(message, code=f"protocol_{kind.value}")
        self.kind = kind


class StreamErrorKind(Enum):
    LOCAL_READ_FAILURE = "local_read_failure"
    LOCAL_WRITE_FAILURE = "local_write_failure"
    REMOTE_RECEIVE_FAILURE = "remote_receive_failure"
    REMOTE_SEND_FAILURE = "remote_send_failure"


class StreamError(WsbridgeError):
    """One direction of the bridge failed for a reason other than a clean end."""

    def __init__(self, kind: StreamErrorKind, message: str) -> None:
        super().__init__(message, code=f"stream_{kind.value}")
        self.kind = kind


def format_error_for_user(error: BaseException) -> str:
    """Render an exception as a single human-readable string."""
    if isinstance(error, WsbridgeError):
        return error.message

    if isinstance(error, TimeoutError):
        return "Operation timed out"

    if isinstance(error, OSError):
        detail = error.strerror or str(error)
        if error.filename:
            return f"{detail}: {error.filename}"
        return detail

    text = str(error)
    return text if text else type(error).__name__
