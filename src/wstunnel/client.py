"""
Client endpoint.

Listens for local TCP connections and carries each one over its own
outbound WebSocket connection to ``wss://<ws-address>/proxy``, optionally
through an HTTP proxy.
"""

import asyncio
import logging
from typing import Optional

import aiohttp
from aiohttp import ClientWebSocketResponse

from .config import MAX_MESSAGE_SIZE, ClientConfig, parse_proxy_url, redact_proxy_url
from .connection import (
    create_client_connector,
    create_client_ssl_context,
    create_client_timeout,
    enable_keepalive,
    format_peer,
    proxy_auth_headers,
    split_proxy_auth,
)
from .errors import DialError
from .session import Session, SessionState

logger = logging.getLogger(__name__)


class ClientEndpoint:
    """Accepts local TCP connections and tunnels each over a new WebSocket."""

    def __init__(self, config: ClientConfig):
        """
        Initialize the client endpoint.

        Builds the TLS context and validates the proxy URL up front so that
        configuration mistakes are fatal at startup rather than per connection.

        Raises:
            ConfigurationError: If the proxy URL or CA bundle is invalid
        """
        self.config = config
        self._ssl_context = create_client_ssl_context(
            verify=config.verify_tls, ca_bundle=config.ca_bundle
        )
        self._proxy: Optional[str] = None
        self._proxy_auth: Optional[aiohttp.BasicAuth] = None
        if config.proxy:
            self._proxy, self._proxy_auth = split_proxy_auth(parse_proxy_url(config.proxy))
        self._server: Optional[asyncio.Server] = None
        self._sessions: set[Session] = set()

    @property
    def addresses(self) -> list:
        """Socket names the TCP listener is bound to."""
        if self._server is None:
            return []
        return [sock.getsockname() for sock in self._server.sockets]

    @property
    def sessions(self) -> frozenset[Session]:
        return frozenset(self._sessions)

    async def start(self) -> None:
        """Bind the TCP listener. Bind failures propagate as OSError."""
        listen = self.config.listen
        self._server = await asyncio.start_server(
            self._handle_connection, listen.bind_host, listen.port
        )
        addrs = ", ".join(format_peer(addr) for addr in self.addresses)
        logger.info(f"TCP listener started on {addrs}")
        logger.debug(
            f"Client configuration: WebSocket URL={self.config.ws_url}, "
            f"Proxy={redact_proxy_url(self.config.proxy) if self.config.proxy else None}, "
            f"Verify TLS={self.config.verify_tls}"
        )

    async def stop(self) -> None:
        """Close the listener and every live session."""
        if self._server is None:
            return
        self._server.close()
        await asyncio.gather(
            *(session.close() for session in list(self._sessions)),
            return_exceptions=True,
        )
        await self._server.wait_closed()
        self._server = None
        logger.info("TCP listener stopped")

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Run one session for an accepted TCP connection."""
        peer = format_peer(writer.get_extra_info("peername"))
        session = Session(peer)
        session.attach_tcp(reader, writer)
        enable_keepalive(writer)
        self._sessions.add(session)
        logger.debug(f"[{session.id}] New TCP connection accepted from {peer}")

        try:
            async with aiohttp.ClientSession(
                connector=create_client_connector(self._ssl_context),
                timeout=create_client_timeout(self.config.connect_timeout),
            ) as http:
                try:
                    ws = await self._dial(http, session)
                except DialError as e:
                    logger.error(f"[{session.id}] WebSocket connection failed: {e}")
                    return

                if session.state is SessionState.CLOSED:
                    # stop() ran while we were dialing
                    await ws.close()
                    return

                session.attach_ws(ws)
                logger.info(
                    f"[{session.id}] WebSocket connection established with "
                    f"{self.config.ws_address} for {peer}"
                )
                await session.run()
        except Exception as e:
            logger.error(f"[{session.id}] Session error: {type(e).__name__}: {e}")
        finally:
            await session.close()
            self._sessions.discard(session)

    async def _dial(
        self,
        http: aiohttp.ClientSession,
        session: Session,
    ) -> ClientWebSocketResponse:
        """
        Open the WebSocket half of a session.

        Raises:
            DialError: If the connection or the upgrade handshake fails
        """
        url = self.config.ws_url
        logger.debug(f"[{session.id}] Attempting WebSocket connection to {url}")
        if self._proxy:
            logger.debug(f"[{session.id}] Using proxy: {redact_proxy_url(self._proxy)}")

        try:
            return await http.ws_connect(
                url,
                proxy=self._proxy,
                proxy_headers=proxy_auth_headers(self._proxy_auth),
                heartbeat=self.config.heartbeat or None,
                compress=0,
                max_msg_size=MAX_MESSAGE_SIZE,
            )
        except aiohttp.WSServerHandshakeError as e:
            raise DialError(url, f"handshake failed ({e.status}): {e.message}") from e
        except asyncio.TimeoutError:
            raise DialError(
                url, f"timed out after {self.config.connect_timeout}s"
            ) from None
        except (aiohttp.ClientError, OSError) as e:
            raise DialError(url, f"{type(e).__name__}: {e}") from e
