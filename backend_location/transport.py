"""
HTTP transport construction.

Builds the ``httpx`` transport shared by all HTTP backends from the TLS and
proxy settings given on the command line.
"""

from __future__ import annotations

import logging
import ssl
from dataclasses import dataclass, field

import certifi
import httpx

from backend_location.backends.http import DEFAULT_TIMEOUT

__all__ = ["TransportOptions", "build_transport", "build_ssl_context"]

logger = logging.getLogger(__name__)

# local endpoints such as a spawned rclone are never reached through a proxy
LOOPBACK_HOSTS = frozenset({"127.0.0.1", "::1", "localhost"})


@dataclass(frozen=True)
class TransportOptions:
    """
    Settings for the HTTP transport.

    Attributes:
        cacert_files: PEM files with root certificates; replace the default roots.
        tls_client_cert: PEM file holding a client certificate and its key.
        insecure_tls: Skip verification of server certificates.
        proxy: Proxy URL for all requests.
        connect_timeout: Connect timeout in seconds, None for the backend default.
        read_timeout: Read timeout in seconds, None for the backend default.
    """

    cacert_files: tuple[str, ...] = field(default_factory=tuple)
    tls_client_cert: str | None = None
    insecure_tls: bool = False
    proxy: str | None = None
    connect_timeout: float | None = None
    read_timeout: float | None = None


def build_ssl_context(options: TransportOptions) -> ssl.SSLContext:
    """Create the SSL context for the given options."""
    cafiles = options.cacert_files or (certifi.where(),)
    context = ssl.create_default_context(cafile=cafiles[0])
    for cafile in cafiles[1:]:
        context.load_verify_locations(cafile)

    if options.tls_client_cert:
        context.load_cert_chain(options.tls_client_cert)

    if options.insecure_tls:
        logger.warning("TLS certificate verification is disabled")
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    return context


class _TimeoutTransport(httpx.BaseTransport):
    """Overrides the timeouts of every request."""

    def __init__(self, inner: httpx.BaseTransport, timeout: httpx.Timeout) -> None:
        self._inner = inner
        self._timeout = timeout

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        request.extensions["timeout"] = self._timeout.as_dict()
        return self._inner.handle_request(request)

    def close(self) -> None:
        self._inner.close()


class _ProxyTransport(httpx.BaseTransport):
    """Sends requests through a proxy, except those for loopback hosts."""

    def __init__(self, proxied: httpx.BaseTransport, direct: httpx.BaseTransport) -> None:
        self.proxied = proxied
        self.direct = direct

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        if request.url.host in LOOPBACK_HOSTS:
            return self.direct.handle_request(request)
        return self.proxied.handle_request(request)

    def close(self) -> None:
        self.proxied.close()
        self.direct.close()


def build_transport(options: TransportOptions | None = None) -> httpx.BaseTransport:
    """
    Build an HTTP transport.

    Args:
        options: TLS, proxy and timeout settings; defaults if omitted.

    Returns:
        A transport without retries; retrying is left to the backends.

    Raises:
        OSError: If a certificate file cannot be read.
        ssl.SSLError: If a certificate file is invalid.
    """
    options = options or TransportOptions()

    context = build_ssl_context(options)
    transport: httpx.BaseTransport = httpx.HTTPTransport(verify=context, retries=0)
    if options.proxy:
        transport = _ProxyTransport(
            httpx.HTTPTransport(verify=context, proxy=options.proxy, retries=0), transport
        )

    if options.connect_timeout is not None or options.read_timeout is not None:
        connect = options.connect_timeout
        read = options.read_timeout
        timeout = httpx.Timeout(
            connect=DEFAULT_TIMEOUT.connect if connect is None else connect,
            read=DEFAULT_TIMEOUT.read if read is None else read,
            write=DEFAULT_TIMEOUT.write if read is None else read,
            pool=DEFAULT_TIMEOUT.pool,
        )
        transport = _TimeoutTransport(transport, timeout)

    logger.debug(
        f"Built HTTP transport (cacert={list(options.cacert_files)}, "
        f"client_cert={options.tls_client_cert is not None}, insecure={options.insecure_tls}, "
        f"proxy={options.proxy is not None})"
    )
    return transport
