"""Configuration types with environment variable support.

All settings can be configured via environment variables with the WSBRIDGE_ prefix.
Example: WSBRIDGE_WRITE_TIMEOUT=30s bounds the close handshake to 30 seconds.
"""

from __future__ import annotations

import math
import re
import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_OPEN_TIMEOUT = 10.0
DEFAULT_CHUNK_SIZE = 32 * 1024

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str | float | int) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) or Go-style duration strings such as
    ``10s``, ``500ms`` or ``1m30s``.

    Raises:
        ValueError: If the value is not a valid, non-negative duration
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            seconds = 0.0
            pos = 0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    raise ValueError(f"Invalid duration: {value!r}") from None
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos == 0 or pos != len(text):
                raise ValueError(f"Invalid duration: {value!r}") from None

    if not math.isfinite(seconds):
        raise ValueError(f"Invalid duration: {value!r}")
    if seconds < 0:
        raise ValueError(f"Duration must not be negative: {value!r}")
    return seconds


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            data = tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    # Flag-style names (write-timeout) map onto field names (write_timeout).
    return {str(key).replace("-", "_"): value for key, value in data.items()}


class TunnelSettings(BaseSettings):
    """Everything one run of the client needs.

    Built once at startup from defaults, WSBRIDGE_* environment variables,
    an optional config file and the command line, then never changed.
    """

    model_config = SettingsConfigDict(
        env_prefix="WSBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    url: str | None = Field(
        default=None,
        description="Target ws:// or wss:// URL.",
    )
    write_timeout: float = Field(
        default=DEFAULT_WRITE_TIMEOUT,
        description="Bound on sending the close control message (seconds).",
    )
    open_timeout: float | None = Field(
        default=DEFAULT_OPEN_TIMEOUT,
        description="Opening handshake timeout (seconds). 0 or None disables it.",
    )
    auth: str | None = Field(
        default=None,
        repr=False,
        description="Endpoint basic auth, as user:pass or @filename.",
    )
    fproxy: str | None = Field(
        default=None,
        description="Forward proxy URL.",
    )
    fpauth: str | None = Field(
        default=None,
        repr=False,
        description="Forward proxy basic auth, as user:pass or @filename.",
    )
    cert: str | None = Field(
        default=None,
        description="Client certificate file.",
    )
    key: str | None = Field(
        default=None,
        description="Client certificate key file.",
    )
    verbose: bool = Field(
        default=False,
        description="Verbose diagnostics, including HTTP bodies on dial rejection.",
    )
    insecure_conn: bool = Field(
        default=False,
        description="Skip TLS certificate validation.",
    )
    chunk_size: int = Field(
        default=DEFAULT_CHUNK_SIZE,
        gt=0,
        description="Maximum bytes read from stdin per message.",
    )
    log_level: str = Field(
        default="warning",
        description="Log level: debug, info, warning or error.",
    )

    @field_validator("write_timeout", mode="before")
    @classmethod
    def _parse_write_timeout(cls, value: Any) -> float:
        return parse_duration(value)

    @field_validator("open_timeout", mode="before")
    @classmethod
    def _parse_open_timeout(cls, value: Any) -> float | None:
        if value is None or value == "":
            return None
        seconds = parse_duration(value)
        return seconds or None

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.lower()
        if level not in ("debug", "info", "warning", "error"):
            raise ValueError(f"Unknown log level: {value!r}")
        return level

    @property
    def effective_log_level(self) -> str:
        return "debug" if self.verbose else self.log_level
