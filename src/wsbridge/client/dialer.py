"""Dial configuration and WebSocket connection establishment."""

from __future__ import annotations

import ssl
from dataclasses import dataclass, field

import httpx
import structlog
from websockets.asyncio.client import connect
from websockets.exceptions import (
    InvalidHandshake,
    InvalidProxy,
    InvalidProxyStatus,
    InvalidStatus,
    InvalidURI,
)
from websockets.http11 import Response
from websockets.uri import parse_uri

from wsbridge import __version__
from wsbridge.client.connection import DuplexConnection
from wsbridge.core.config import TunnelSettings
from wsbridge.core.exceptions import (
    ConfigError,
    ConfigErrorKind,
    DialError,
    DialErrorKind,
)
from wsbridge.security.credentials import AUTH_HEADER, resolve_credential

logger = structlog.get_logger()

USER_AGENT = f"wsbridge/{__version__}"
PROXY_SCHEMES = ("http", "https")


@dataclass(frozen=True)
class ClientCertificate:
    cert_file: str
    key_file: str | None = None


@dataclass(frozen=True)
class DialConfig:
    """Everything needed to open the tunnel, assembled once per run."""

    target_url: str
    secure: bool
    ssl_context: ssl.SSLContext | None = field(default=None, repr=False)
    insecure_skip_verify: bool = False
    client_certificate: ClientCertificate | None = None
    proxy_url: str | None = field(default=None, repr=False)
    headers: dict[str, tuple[str, ...]] = field(default_factory=dict, repr=False)
    write_timeout: float = 10.0
    open_timeout: float | None = 10.0

    @property
    def redacted_proxy_url(self) -> str | None:
        if self.proxy_url is None:
            return None
        url = httpx.URL(self.proxy_url)
        if url.userinfo:
            url = url.copy_with(username=url.username, password="***")
        return str(url)

    def header_items(self) -> list[tuple[str, str]]:
        return [(name, value) for name, values in self.headers.items() for value in values]


def _parse_target_url(url: str) -> bool:
    """Validate a ws:// or wss:// URL and return whether it uses TLS."""
    try:
        return parse_uri(url).secure
    except InvalidURI as e:
        raise ConfigError(
            ConfigErrorKind.URL_PARSE_FAILURE,
            f"Error parsing target URL {url!r}: {e}",
        ) from e


def _build_proxy_url(proxy_url: str, auth_spec: str) -> str:
    try:
        url = httpx.URL(proxy_url)
    except httpx.InvalidURL as e:
        raise ConfigError(
            ConfigErrorKind.URL_PARSE_FAILURE,
            f"Error parsing forward proxy URL {proxy_url!r}: {e}",
        ) from e
    if url.scheme not in PROXY_SCHEMES or not url.host:
        raise ConfigError(
            ConfigErrorKind.URL_PARSE_FAILURE,
            f"Error parsing forward proxy URL {proxy_url!r}: want http:// or https:// with a host",
        )

    credential = resolve_credential(auth_spec)
    return str(url.copy_with(username=credential.username, password=credential.password))


def _build_ssl_context(
    insecure: bool,
    certificate: ClientCertificate | None,
) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    if certificate is not None:
        try:
            context.load_cert_chain(certificate.cert_file, certificate.key_file)
        except (OSError, ssl.SSLError) as e:
            raise ConfigError(
                ConfigErrorKind.CERTIFICATE_LOAD_FAILURE,
                f"Error loading client certificate {certificate.cert_file!r}: {e}",
            ) from e
    return context


def build_dial_config(settings: TunnelSettings) -> DialConfig:
    """Assemble TLS, forward proxy and auth settings into a DialConfig.

    Raises:
        ConfigError: If a URL does not parse or the client certificate fails to load
        SecretError: If a credential spec cannot be resolved
    """
    if not settings.url:
        raise ConfigError(ConfigErrorKind.URL_PARSE_FAILURE, "No target URL given")
    secure = _parse_target_url(settings.url)

    proxy_url = None
    if settings.fproxy and settings.fpauth:
        proxy_url = _build_proxy_url(settings.fproxy, settings.fpauth)
    elif settings.fproxy or settings.fpauth:
        logger.warning(
            "Forward proxy needs both a URL and credentials, ignoring it",
            fproxy=bool(settings.fproxy),
            fpauth=bool(settings.fpauth),
        )

    headers: dict[str, tuple[str, ...]] = {}
    if settings.auth:
        credential = resolve_credential(settings.auth)
        headers[AUTH_HEADER] = (credential.basic_auth_header(),)

    certificate = None
    if settings.cert:
        certificate = ClientCertificate(cert_file=settings.cert, key_file=settings.key or None)
    elif settings.key:
        logger.warning("Client key given without a certificate, ignoring it", key=settings.key)

    ssl_context = _build_ssl_context(settings.insecure_conn, certificate)
    if not secure and certificate is not None:
        logger.warning("Client certificate is not used with a ws:// URL", url=settings.url)

    return DialConfig(
        target_url=settings.url,
        secure=secure,
        ssl_context=ssl_context if secure else None,
        insecure_skip_verify=settings.insecure_conn,
        client_certificate=certificate,
        proxy_url=proxy_url,
        headers=headers,
        write_timeout=settings.write_timeout,
        open_timeout=settings.open_timeout,
    )


def _http_rejection(url: str, response: Response, verbose: bool) -> DialError:
    body = None
    if verbose:
        body = response.body.decode("utf-8", errors="replace") if response.body else ""
    return DialError(
        DialErrorKind.HTTP_REJECTION,
        url,
        status=response.status_code,
        reason=response.reason_phrase,
        body=body,
    )


async def establish(config: DialConfig, *, verbose: bool = False) -> DuplexConnection:
    """Perform the WebSocket upgrade described by ``config``.

    Raises:
        DialError: HTTP_REJECTION if the endpoint or proxy answered with a
            non-upgrade response, TRANSPORT_REJECTION if no response was obtained
    """
    url = config.target_url
    logger.debug("Dialing", url=url, proxy=config.redacted_proxy_url)

    tls_kwargs = {"ssl": config.ssl_context} if config.secure else {}
    try:
        ws = await connect(
            url,
            additional_headers=config.header_items(),
            user_agent_header=USER_AGENT,
            proxy=config.proxy_url,
            compression=None,
            open_timeout=config.open_timeout,
            ping_interval=None,
            max_size=None,
            close_timeout=config.write_timeout,
            **tls_kwargs,
        )
    except (InvalidStatus, InvalidProxyStatus) as e:
        error = _http_rejection(url, e.response, verbose)
        logger.debug("Dial rejected", url=url, status=error.status)
        raise error from e
    except (OSError, TimeoutError, InvalidHandshake, InvalidProxy) as e:
        logger.debug("Dial failed", url=url, error=str(e))
        raise DialError(DialErrorKind.TRANSPORT_REJECTION, url, cause=e) from e

    logger.info("Tunnel established", url=url)
    return DuplexConnection(ws, url)
