"""Tests for dial configuration and connection establishment."""

from __future__ import annotations

import asyncio
import base64
import os
import socket
import ssl
from http import HTTPStatus

import httpx
import pytest
from websockets.asyncio.server import serve

from wsbridge.client.dialer import USER_AGENT, build_dial_config, establish
from wsbridge.core.config import TunnelSettings
from wsbridge.core.exceptions import (
    ConfigError,
    ConfigErrorKind,
    DialError,
    DialErrorKind,
    SecretError,
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    for name in list(os.environ):
        if name.startswith("WSBRIDGE_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)


def settings(**kwargs) -> TunnelSettings:
    kwargs.setdefault("url", "wss://gateway.example.com/proxy/db1/22")
    return TunnelSettings(**kwargs)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestBuildDialConfig:
    """Tests for build_dial_config."""

    def test_minimal(self):
        """Test a bare wss URL gives a verifying TLS context and no extras."""
        config = build_dial_config(settings())
        assert config.secure is True
        assert config.ssl_context is not None
        assert config.ssl_context.verify_mode == ssl.CERT_REQUIRED
        assert config.ssl_context.check_hostname is True
        assert config.proxy_url is None
        assert config.headers == {}
        assert config.client_certificate is None

    def test_plain_ws_has_no_ssl_context(self):
        """Test ws:// URLs do not carry TLS settings."""
        config = build_dial_config(settings(url="ws://127.0.0.1:8080/"))
        assert config.secure is False
        assert config.ssl_context is None

    @pytest.mark.parametrize("url", ["http://example.com/", "example.com", "ftp://x/", "ws://"])
    def test_bad_target_url(self, url):
        """Test non-WebSocket URLs are rejected before dialing."""
        with pytest.raises(ConfigError) as exc_info:
            build_dial_config(settings(url=url))
        assert exc_info.value.kind is ConfigErrorKind.URL_PARSE_FAILURE

    def test_missing_target_url(self):
        """Test a missing URL is a configuration error."""
        with pytest.raises(ConfigError):
            build_dial_config(TunnelSettings())

    def test_insecure(self):
        """Test insecure mode turns off verification."""
        config = build_dial_config(settings(insecure_conn=True))
        assert config.insecure_skip_verify is True
        assert config.ssl_context.verify_mode == ssl.CERT_NONE
        assert config.ssl_context.check_hostname is False

    def test_basic_auth_header(self):
        """Test endpoint credentials become an Authorization header."""
        config = build_dial_config(settings(auth="alice:s3cret"))
        expected = "Basic " + base64.b64encode(b"alice:s3cret").decode()
        assert config.headers == {"Authorization": (expected,)}
        assert config.header_items() == [("Authorization", expected)]

    def test_bad_auth_fails(self):
        """Test a malformed endpoint credential stops the build."""
        with pytest.raises(SecretError):
            build_dial_config(settings(auth="alice"))

    def test_forward_proxy_with_credentials(self):
        """Test proxy credentials are embedded as userinfo."""
        config = build_dial_config(settings(fproxy="http://proxy.corp:3128", fpauth="bob:hunter2"))
        url = httpx.URL(config.proxy_url)
        assert url.host == "proxy.corp"
        assert url.port == 3128
        assert url.username == "bob"
        assert url.password == "hunter2"
        # Proxy auth is separate from endpoint auth.
        assert "Authorization" not in config.headers

    def test_forward_proxy_credentials_from_file(self, tmp_path):
        """Test proxy credentials can come from a secret file."""
        secret = tmp_path / "fp"
        secret.write_text("bob:hunter2\n")
        os.chmod(secret, 0o600)
        config = build_dial_config(settings(fproxy="http://proxy.corp:3128", fpauth=f"@{secret}"))
        assert httpx.URL(config.proxy_url).username == "bob"

    def test_redacted_proxy_url(self):
        """Test the proxy password never shows in the loggable URL."""
        config = build_dial_config(settings(fproxy="http://proxy.corp:3128", fpauth="bob:hunter2"))
        assert "hunter2" not in config.redacted_proxy_url
        assert "hunter2" not in repr(config)

    @pytest.mark.parametrize(
        "kwargs",
        [{"fproxy": "http://proxy.corp:3128"}, {"fpauth": "bob:hunter2"}],
    )
    def test_forward_proxy_needs_both(self, kwargs):
        """Test half a proxy configuration is ignored."""
        config = build_dial_config(settings(**kwargs))
        assert config.proxy_url is None

    @pytest.mark.parametrize("proxy", ["socks5://proxy:1080", "proxy-without-scheme", "http://"])
    def test_bad_proxy_url(self, proxy):
        """Test unusable proxy URLs are configuration errors."""
        with pytest.raises(ConfigError) as exc_info:
            build_dial_config(settings(fproxy=proxy, fpauth="bob:hunter2"))
        assert exc_info.value.kind is ConfigErrorKind.URL_PARSE_FAILURE

    def test_bad_client_certificate(self, tmp_path):
        """Test an unparsable certificate is a certificate load failure."""
        cert = tmp_path / "client.crt"
        key = tmp_path / "client.key"
        cert.write_text("not a certificate")
        key.write_text("not a key")
        with pytest.raises(ConfigError) as exc_info:
            build_dial_config(settings(cert=str(cert), key=str(key)))
        assert exc_info.value.kind is ConfigErrorKind.CERTIFICATE_LOAD_FAILURE

    def test_missing_client_certificate(self, tmp_path):
        """Test a missing certificate file is a certificate load failure."""
        with pytest.raises(ConfigError) as exc_info:
            build_dial_config(settings(cert=str(tmp_path / "missing.crt")))
        assert exc_info.value.kind is ConfigErrorKind.CERTIFICATE_LOAD_FAILURE

    def test_key_without_cert_ignored(self):
        """Test a lone key does not attach a certificate."""
        config = build_dial_config(settings(key="/nonexistent/client.key"))
        assert config.client_certificate is None

    def test_timeouts_carried(self):
        """Test write and open timeouts flow into the dial config."""
        config = build_dial_config(settings(write_timeout="3s", open_timeout="0"))
        assert config.write_timeout == 3.0
        assert config.open_timeout is None


async def echo(ws):
    async for message in ws:
        await ws.send(message)


class TestEstablish:
    """Tests for establish against a local WebSocket server."""

    @pytest.mark.asyncio
    async def test_success_with_auth(self):
        """Test the upgrade succeeds and sends the auth and user agent headers."""
        seen = {}

        def process_request(connection, request):
            seen["authorization"] = request.headers.get("Authorization")
            seen["user_agent"] = request.headers.get("User-Agent")

        async with serve(echo, "127.0.0.1", 0, process_request=process_request) as server:
            port = server.sockets[0].getsockname()[1]
            config = build_dial_config(
                TunnelSettings(url=f"ws://127.0.0.1:{port}/tunnel", auth="alice:s3cret")
            )
            connection = await establish(config)
            try:
                await connection.send(b"ping")
                assert await connection.recv() == b"ping"
            finally:
                await connection.close_normal(1.0)

        assert seen["authorization"] == "Basic " + base64.b64encode(b"alice:s3cret").decode()
        assert seen["user_agent"] == USER_AGENT
        assert connection.bytes_sent == 4
        assert connection.bytes_received == 4

    @pytest.mark.asyncio
    async def test_http_rejection(self):
        """Test a 403 response is an HTTP rejection with the status code."""

        def process_request(connection, request):
            return connection.respond(HTTPStatus.FORBIDDEN, "go away\n")

        async with serve(echo, "127.0.0.1", 0, process_request=process_request) as server:
            port = server.sockets[0].getsockname()[1]
            config = build_dial_config(TunnelSettings(url=f"ws://127.0.0.1:{port}/"))
            with pytest.raises(DialError) as exc_info:
                await establish(config)

        error = exc_info.value
        assert error.kind is DialErrorKind.HTTP_REJECTION
        assert error.status == 403
        assert error.body is None
        assert "403" in error.message

    @pytest.mark.asyncio
    async def test_http_rejection_verbose_body(self):
        """Test the response body is included only in verbose mode."""

        def process_request(connection, request):
            return connection.respond(HTTPStatus.FORBIDDEN, "go away\n")

        async with serve(echo, "127.0.0.1", 0, process_request=process_request) as server:
            port = server.sockets[0].getsockname()[1]
            config = build_dial_config(TunnelSettings(url=f"ws://127.0.0.1:{port}/"))
            with pytest.raises(DialError) as exc_info:
                await establish(config, verbose=True)

        assert exc_info.value.body == "go away\n"
        assert "go away" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_transport_rejection(self):
        """Test a refused connection is a transport rejection."""
        config = build_dial_config(TunnelSettings(url=f"ws://127.0.0.1:{free_port()}/"))
        with pytest.raises(DialError) as exc_info:
            await establish(config)

        error = exc_info.value
        assert error.kind is DialErrorKind.TRANSPORT_REJECTION
        assert error.status is None
        assert isinstance(error.cause, OSError)

    @pytest.mark.asyncio
    async def test_proxy_rejection(self):
        """Test a proxy refusing CONNECT is an HTTP rejection with its status."""
        requests = []

        async def refuse_connect(reader, writer):
            requests.append(await reader.readuntil(b"\r\n\r\n"))
            writer.write(
                b"HTTP/1.1 407 Proxy Authentication Required\r\n"
                b"Proxy-Authenticate: Basic realm=\"corp\"\r\n"
                b"Content-Length: 0\r\n"
                b"\r\n"
            )
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(refuse_connect, "127.0.0.1", 0)
        async with server:
            port = server.sockets[0].getsockname()[1]
            config = build_dial_config(TunnelSettings(
                url="ws://gateway.test/proxy/db1/22",
                fproxy=f"http://127.0.0.1:{port}",
                fpauth="bob:hunter2",
            ))
            with pytest.raises(DialError) as exc_info:
                await establish(config)

        error = exc_info.value
        assert error.kind is DialErrorKind.HTTP_REJECTION
        assert error.status == 407
        assert "407" in error.message

        request = requests[0].decode()
        assert request.startswith("CONNECT gateway.test:80 HTTP/1.1\r\n")
        expected = "Basic " + base64.b64encode(b"bob:hunter2").decode()
        assert f"Proxy-Authorization: {expected}" in request
