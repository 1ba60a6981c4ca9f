"""wsbridge CLI - Command line interface.

stdout belongs to the tunnel, so every diagnostic goes to stderr.
"""

from __future__ import annotations

import asyncio
import logging
import sys

import click
import structlog
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from wsbridge import __version__
from wsbridge.client.bridge import BridgeOutcome
from wsbridge.client.tunnel import TunnelClient
from wsbridge.core.config import TunnelSettings, load_config_from_file
from wsbridge.core.exceptions import WsbridgeError, format_error_for_user

console = Console(stderr=True)
logger = structlog.get_logger()


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def print_error(error: BaseException) -> None:
    code = error.code if isinstance(error, WsbridgeError) else type(error).__name__
    console.print(
        Panel(
            Text(format_error_for_user(error), style="red"),
            title=f"Error: {code}",
            border_style="red",
        )
    )


async def run_tunnel(settings: TunnelSettings) -> BridgeOutcome:
    client = TunnelClient(settings)
    await client.connect()
    outcome = await client.run()
    logger.info("Tunnel closed", **client.stats)
    return outcome


def run(settings: TunnelSettings) -> int:
    """Run one tunnel session and return the process exit status."""
    try:
        outcome = asyncio.run(run_tunnel(settings))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        return 1
    except Exception as e:
        print_error(e)
        return 1

    if outcome.error is not None:
        print_error(outcome.error)
    return outcome.exit_code


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("url")
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Path to YAML or TOML config file",
)
@click.option(
    "--write-timeout", "--write_timeout",
    "write_timeout",
    default=None,
    help="Timeout for sending the close message, e.g. 10s or 500ms (default: 10s)",
)
@click.option(
    "--open-timeout", "--open_timeout",
    "open_timeout",
    default=None,
    help="Timeout for the opening handshake, 0 to disable (default: 10s)",
)
@click.option(
    "--auth",
    default=None,
    help="HTTP Basic Auth in @<filename> or <username>:<password> format.",
)
@click.option("--fproxy", default=None, help="Forward Proxy URL")
@click.option(
    "--fpauth",
    default=None,
    help="Forward Proxy Basic Auth in @<filename> or <username>:<password> format.",
)
@click.option("--cert", default=None, help="Certificate Auth File")
@click.option("--key", default=None, help="Certificate Key File")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option(
    "--insecure-conn", "--insecure_conn",
    "insecure_conn",
    is_flag=True,
    help="Skip certificate validation",
)
@click.option(
    "--chunk-size",
    type=int,
    default=None,
    help="Maximum bytes read from stdin per message (default: 32768)",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Log level (default: warning, use --verbose for debug)",
)
@click.version_option(__version__, prog_name="wsbridge")
def main(
    url: str,
    config_file: str | None,
    write_timeout: str | None,
    open_timeout: str | None,
    auth: str | None,
    fproxy: str | None,
    fpauth: str | None,
    cert: str | None,
    key: str | None,
    verbose: bool,
    insecure_conn: bool,
    chunk_size: int | None,
    log_level: str | None,
):
    """wsbridge - carry stdin/stdout over a WebSocket.

    Connects to URL (ws:// or wss://) and forwards stdin to it and everything
    it sends to stdout, until stdin closes.

    Examples:

        wsbridge wss://gateway.example.com/proxy/db1/22

        ssh -o 'ProxyCommand=wsbridge --auth @~/.wsbridge wss://gw/proxy/%h/%p' db1

    Every option can also be set with a WSBRIDGE_<OPTION> environment
    variable, e.g. WSBRIDGE_AUTH=@/path/to/secret.
    """
    file_config: dict = {}
    if config_file:
        try:
            file_config = load_config_from_file(config_file)
        except (OSError, ValueError) as e:
            console.print(f"Failed to load config: {e}", style="red", markup=False)
            sys.exit(1)

    options = {
        "url": url,
        "write_timeout": write_timeout,
        "open_timeout": open_timeout,
        "auth": auth,
        "fproxy": fproxy,
        "fpauth": fpauth,
        "cert": cert,
        "key": key,
        "verbose": True if verbose else None,
        "insecure_conn": True if insecure_conn else None,
        "chunk_size": chunk_size,
        "log_level": log_level,
    }
    overrides = {name: value for name, value in options.items() if value is not None}

    try:
        settings = TunnelSettings(**{**file_config, **overrides})
    except ValidationError as e:
        console.print(f"Invalid configuration: {e}", style="red", markup=False)
        sys.exit(1)

    configure_logging(settings.effective_log_level)
    if settings.verbose:
        logger.info("wsbridge", version=__version__)

    sys.exit(run(settings))


if __name__ == "__main__":
    main()
