"""
Configuration for the tunnel endpoints.

Endpoint configuration is immutable for the life of the process. Defaults
that operators may want to tune without touching the command line come from
environment variables, read once at import time.
"""

import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse, urlunparse

from .errors import ConfigurationError


def get_int_env(name: str, default: int) -> int:
    """Get an integer from environment variable, with fallback to default."""
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_bool_env(name: str, default: bool) -> bool:
    """Get a boolean from environment variable."""
    value = os.environ.get(name, "").lower()
    if not value:
        return default
    return value in ("1", "true", "yes", "on")


# Fixed path on the server's HTTPS listener that accepts upgrades
UPGRADE_PATH = "/proxy"

# Largest single TCP read forwarded as one WebSocket message
CHUNK_SIZE = 32 * 1024

DEFAULT_WS_ADDR = ":8080"
DEFAULT_TCP_ADDR = ":9000"
DEFAULT_CERT_FILE = "server.crt"
DEFAULT_KEY_FILE = "server.key"

VERIFY_TLS_DEFAULT = get_bool_env("WSTUNNEL_VERIFY_TLS", True)
CA_BUNDLE_DEFAULT = os.environ.get("WSTUNNEL_CA_BUNDLE", "")
WS_CONNECT_TIMEOUT = get_int_env("WSTUNNEL_WS_CONNECT_TIMEOUT", 30)  # seconds - dial only
HEARTBEAT_INTERVAL = get_int_env("WSTUNNEL_HEARTBEAT_INTERVAL", 0)  # seconds - 0 disables pings
MAX_MESSAGE_SIZE = get_int_env("WSTUNNEL_MAX_MESSAGE_SIZE", 4 * 1024 * 1024)

# Origin policy for upgrade requests. The tunnel is not browser-facing, so
# any Origin header is accepted unless a list is configured.
ALLOW_ALL_ORIGINS: Optional[frozenset[str]] = None


@dataclass(frozen=True)
class Address:
    """A host/port pair. An empty host means all interfaces."""
    host: str
    port: int

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    @property
    def dial_host(self) -> str:
        """Host to connect to (an empty host means the local machine)."""
        return self.host or "localhost"

    @property
    def bind_host(self) -> Optional[str]:
        """Host argument for asyncio/aiohttp listeners (None = all interfaces)."""
        return self.host or None


def parse_address(value: str, require_host: bool = False) -> Address:
    """
    Parse a ``host:port`` string.

    Accepts ``host:port``, ``:port`` (all interfaces) and ``[v6addr]:port``.

    Raises:
        ConfigurationError: If the string is not a valid address
    """
    value = value.strip()
    if value.startswith("["):
        end = value.find("]")
        if end == -1 or value[end + 1:end + 2] != ":":
            raise ConfigurationError(f"Invalid address: {value!r}")
        host, port_str = value[1:end], value[end + 2:]
    elif ":" in value:
        host, port_str = value.rsplit(":", 1)
        if ":" in host:
            raise ConfigurationError(
                f"Invalid address: {value!r} (wrap IPv6 hosts in brackets)"
            )
    else:
        raise ConfigurationError(f"Invalid address: {value!r} (expected host:port)")

    try:
        port = int(port_str)
    except ValueError:
        raise ConfigurationError(f"Invalid port in address: {value!r}") from None
    if not (0 <= port <= 65535):
        raise ConfigurationError(f"Port must be in range 0-65535: {value!r}")
    if require_host and not host:
        raise ConfigurationError(f"Address needs a host: {value!r}")

    return Address(host, port)


def parse_proxy_url(proxy: str) -> str:
    """
    Validate an HTTP proxy URL and return it normalized.

    Raises:
        ConfigurationError: If the URL has no host or an unsupported scheme
    """
    parsed = urlparse(proxy.strip())
    if parsed.scheme not in ("http", "https"):
        raise ConfigurationError(
            f"Proxy URL must use http:// or https://: {redact_proxy_url(proxy)}"
        )
    if not parsed.hostname:
        raise ConfigurationError(f"Proxy URL has no host: {redact_proxy_url(proxy)}")
    try:
        parsed.port
    except ValueError:
        raise ConfigurationError(
            f"Proxy URL has an invalid port: {redact_proxy_url(proxy)}"
        ) from None
    return urlunparse(parsed)


def redact_proxy_url(url: str) -> str:
    """Redact password from a proxy URL for safe logging.

    Returns the original URL unchanged if no password is present.
    """
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username}:***@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        pass
    return url


@dataclass(frozen=True)
class ClientConfig:
    """Client role: local TCP listener, remote WebSocket to dial."""
    listen: Address
    ws_address: Address
    proxy: Optional[str] = None
    verify_tls: bool = VERIFY_TLS_DEFAULT
    ca_bundle: Optional[str] = CA_BUNDLE_DEFAULT or None
    connect_timeout: float = WS_CONNECT_TIMEOUT
    heartbeat: float = HEARTBEAT_INTERVAL

    @property
    def ws_url(self) -> str:
        target = Address(self.ws_address.dial_host, self.ws_address.port)
        return f"wss://{target}{UPGRADE_PATH}"


@dataclass(frozen=True)
class ServerConfig:
    """Server role: HTTPS/WebSocket listener, TCP target to dial."""
    listen: Address
    target: Address
    cert_file: str = DEFAULT_CERT_FILE
    key_file: str = DEFAULT_KEY_FILE
    allowed_origins: Optional[frozenset[str]] = ALLOW_ALL_ORIGINS
    heartbeat: float = HEARTBEAT_INTERVAL
    max_message_size: int = MAX_MESSAGE_SIZE

    def origin_allowed(self, origin: Optional[str]) -> bool:
        """Check an upgrade request's Origin header against the policy."""
        if self.allowed_origins is ALLOW_ALL_ORIGINS:
            return True
        return origin is not None and origin in self.allowed_origins
