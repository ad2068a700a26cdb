"""
Connection utilities for the tunnel.

Contains SSL context, timeout, and connector factory functions for both
roles, plus small helpers applied to every tunnel socket.
"""

import asyncio
import logging
import socket
import ssl
from typing import Optional
from urllib.parse import urlparse, urlunparse

import aiohttp

from .config import WS_CONNECT_TIMEOUT
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def create_client_ssl_context(
    verify: bool = True,
    ca_bundle: Optional[str] = None,
) -> ssl.SSLContext:
    """
    Create an SSL context for outbound WebSocket connections.

    Args:
        verify: Whether to verify the server certificate and hostname.
        ca_bundle: Path to an extra CA certificate file. Use this for
                   self-signed servers instead of disabling verification.

    Raises:
        ConfigurationError: If the CA bundle cannot be loaded
    """
    ssl_ctx = ssl.create_default_context()

    if not verify:
        ssl_ctx.check_hostname = False
        ssl_ctx.verify_mode = ssl.CERT_NONE
        logger.warning(
            "TLS certificate verification is DISABLED. "
            "Connections are vulnerable to interception. "
            "Use --ca-bundle for a safer alternative."
        )

    if ca_bundle:
        try:
            ssl_ctx.load_verify_locations(cafile=ca_bundle)
        except (OSError, ssl.SSLError) as e:
            raise ConfigurationError(f"Cannot load CA bundle {ca_bundle}: {e}") from e

    return ssl_ctx


def create_server_ssl_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    """
    Create an SSL context for the HTTPS/WebSocket listener.

    Raises:
        ConfigurationError: If the certificate or key cannot be loaded
    """
    ssl_ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        ssl_ctx.load_cert_chain(certfile=cert_file, keyfile=key_file)
    except (OSError, ssl.SSLError) as e:
        raise ConfigurationError(
            f"Cannot load TLS certificate {cert_file} / key {key_file}: {e}"
        ) from e
    return ssl_ctx


def create_client_timeout(
    connect_timeout: float = WS_CONNECT_TIMEOUT,
) -> aiohttp.ClientTimeout:
    """
    Create a ClientTimeout for tunnel connections.

    Only connection establishment is bounded; an established tunnel stays
    open for as long as both transports do.
    """
    return aiohttp.ClientTimeout(
        total=None,
        connect=connect_timeout,
        sock_connect=connect_timeout,
    )


def create_client_connector(ssl_context: ssl.SSLContext) -> aiohttp.TCPConnector:
    """Create a single-use TCPConnector for one tunnel connection."""
    return aiohttp.TCPConnector(ssl=ssl_context, limit=1, force_close=True)


def split_proxy_auth(proxy_url: str) -> tuple[str, Optional[aiohttp.BasicAuth]]:
    """
    Split credentials out of a proxy URL.

    Returns the URL without userinfo and the matching BasicAuth, or None when
    the URL carries no username.
    """
    parsed = urlparse(proxy_url)
    if not parsed.username:
        return proxy_url, None

    netloc = parsed.hostname or ""
    if ":" in netloc:
        netloc = f"[{netloc}]"
    if parsed.port:
        netloc += f":{parsed.port}"
    auth = aiohttp.BasicAuth(parsed.username, parsed.password or "")
    return urlunparse(parsed._replace(netloc=netloc)), auth


def proxy_auth_headers(auth: Optional[aiohttp.BasicAuth]) -> Optional[dict[str, str]]:
    """Headers carrying proxy credentials on the CONNECT request."""
    if auth is None:
        return None
    return {aiohttp.hdrs.PROXY_AUTHORIZATION: auth.encode()}


def enable_keepalive(writer: asyncio.StreamWriter) -> None:
    """Enable TCP keepalive so dead peers eventually surface as errors."""
    sock = writer.get_extra_info("socket")
    if sock is None:
        return
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
    except OSError as e:
        logger.debug(f"Cannot enable TCP keepalive: {e}")


def format_peer(peername) -> str:
    """Format a socket address tuple for log lines."""
    if isinstance(peername, tuple) and len(peername) >= 2:
        host, port = peername[0], peername[1]
        return f"[{host}]:{port}" if ":" in str(host) else f"{host}:{port}"
    return str(peername) if peername else "unknown"
