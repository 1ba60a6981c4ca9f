"""Basic-auth credentials given inline or through a secret file.

A credential spec is either ``user:pass`` or ``@path``. A secret file must not
be writable or executable by anyone but its owner, and must hold exactly one
``user:pass`` line (surrounding whitespace is ignored).
"""

from __future__ import annotations

import base64
import os
import stat
from dataclasses import dataclass, field

import structlog

from wsbridge.core.exceptions import SecretError, SecretErrorKind

logger = structlog.get_logger()

FILE_MARKER = "@"
REQUIRED_MODE = 0o600
# Owner execute plus every group and other bit.
FORBIDDEN_MODE_BITS = 0o177

AUTH_HEADER = "Authorization"


@dataclass(frozen=True)
class Credential:
    username: str
    password: str = field(repr=False)

    def basic_auth_header(self) -> str:
        encoded = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
        return f"Basic {encoded}"


def is_file_reference(spec: str) -> bool:
    return spec.startswith(FILE_MARKER)


def read_secret_file(path: str) -> str:
    """Return the stripped contents of a secret file after checking its mode.

    Raises:
        SecretError: If the file cannot be stat'ed or read, or if its mode
            grants more than owner read/write
    """
    try:
        st = os.stat(path)
    except OSError as e:
        raise SecretError(
            SecretErrorKind.IO_FAILURE,
            f"Cannot stat secret file {path!r}: {e.strerror or e}",
        ) from e

    mode = stat.S_IMODE(st.st_mode) & 0o777
    if mode & FORBIDDEN_MODE_BITS:
        raise SecretError(
            SecretErrorKind.INSECURE_PERMISSIONS,
            f"Valid permissions for {path!r} is {REQUIRED_MODE:04o}, was {mode:04o}",
        )

    try:
        with open(path, encoding="utf-8") as f:
            content = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise SecretError(
            SecretErrorKind.IO_FAILURE,
            f"Cannot read secret file {path!r}: {e}",
        ) from e

    logger.debug("Read secret file", path=path)
    return content.strip()


def resolve_credential(spec: str) -> Credential:
    """Turn a credential spec into a username/password pair.

    Nothing is cached; a file reference is re-checked and re-read on every call.

    Raises:
        SecretError: If the file is unusable or the secret is not ``user:pass``
    """
    secret = read_secret_file(spec[len(FILE_MARKER):]) if is_file_reference(spec) else spec

    # Passwords containing ':' are not supported.
    parts = secret.split(":")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise SecretError(
            SecretErrorKind.MALFORMED_FORMAT,
            "Invalid secrets format, want <username>:<password>",
        )

    return Credential(username=parts[0], password=parts[1])
