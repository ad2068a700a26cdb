"""
Server endpoint.

Serves HTTPS with a single WebSocket upgrade path. Every upgraded
connection gets its own TCP connection to the configured target.
"""

import asyncio
import logging
from typing import Optional

from aiohttp import web

from .config import UPGRADE_PATH, ServerConfig
from .connection import create_server_ssl_context, enable_keepalive, format_peer
from .errors import DialError
from .session import Session, SessionState

logger = logging.getLogger(__name__)


class ServerEndpoint:
    """Accepts WebSocket upgrades over TLS and forwards each to the TCP target."""

    def __init__(self, config: ServerConfig):
        self.config = config
        self._runner: Optional[web.AppRunner] = None
        self._sessions: set[Session] = set()

    @property
    def addresses(self) -> list:
        """Socket names the HTTPS listener is bound to."""
        if self._runner is None:
            return []
        return list(self._runner.addresses)

    @property
    def sessions(self) -> frozenset[Session]:
        return frozenset(self._sessions)

    def create_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application()
        # Any method on the upgrade path is an upgrade attempt
        app.router.add_route("*", UPGRADE_PATH, self.handle_upgrade)
        app.on_shutdown.append(self._close_sessions)
        return app

    async def start(self) -> None:
        """
        Load the TLS certificate and bind the HTTPS listener.

        Raises:
            ConfigurationError: If the certificate or key cannot be loaded
                (raised before anything is bound)
            OSError: If the listen address cannot be bound
        """
        ssl_context = create_server_ssl_context(self.config.cert_file, self.config.key_file)

        self._runner = web.AppRunner(self.create_app(), access_log=None)
        await self._runner.setup()
        listen = self.config.listen
        site = web.TCPSite(
            self._runner, listen.bind_host, listen.port, ssl_context=ssl_context
        )
        try:
            await site.start()
        except OSError:
            await self._runner.cleanup()
            self._runner = None
            raise

        addrs = ", ".join(format_peer(addr) for addr in self.addresses)
        logger.info(f"WebSocket server starting on {addrs}")
        logger.debug(
            f"Server configuration: TCP address={self.config.target}, "
            f"Cert={self.config.cert_file}, Key={self.config.key_file}, "
            f"Origins={'any' if self.config.allowed_origins is None else sorted(self.config.allowed_origins)}"
        )

    async def stop(self) -> None:
        """Close live sessions and shut the HTTPS listener down."""
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        logger.info("WebSocket server stopped")

    async def _close_sessions(self, app: web.Application) -> None:
        await asyncio.gather(
            *(session.close() for session in list(self._sessions)),
            return_exceptions=True,
        )

    async def handle_upgrade(self, request: web.Request) -> web.StreamResponse:
        """Upgrade one request and bridge it to a fresh TCP connection."""
        peer = request.remote or "unknown"
        logger.debug(f"New WebSocket connection request from {peer}")

        origin = request.headers.get("Origin")
        if not self.config.origin_allowed(origin):
            logger.warning(f"WebSocket upgrade rejected for {peer}: origin {origin!r} not allowed")
            return web.Response(status=403, text="Origin not allowed")

        ws = web.WebSocketResponse(
            compress=False,
            max_msg_size=self.config.max_message_size,
            heartbeat=self.config.heartbeat or None,
        )
        if not ws.can_prepare(request):
            logger.error(f"WebSocket upgrade failed for {peer}: not a WebSocket request")
            return web.Response(status=400, text="WebSocket upgrade required")
        await ws.prepare(request)

        session = Session(peer)
        session.attach_ws(ws)
        self._sessions.add(session)
        logger.info(f"[{session.id}] WebSocket connection established with {peer}")

        try:
            try:
                reader, writer = await self._dial_target(session)
            except DialError as e:
                logger.error(f"[{session.id}] TCP connection failed: {e}")
                return ws

            if session.state is SessionState.CLOSED:
                # stop() ran while we were dialing
                writer.close()
                return ws

            session.attach_tcp(reader, writer)
            logger.info(f"[{session.id}] TCP connection established with {self.config.target}")
            await session.run()
        except Exception as e:
            logger.error(f"[{session.id}] Session error: {type(e).__name__}: {e}")
        finally:
            await session.close()
            self._sessions.discard(session)

        return ws

    async def _dial_target(
        self,
        session: Session,
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """
        Open the TCP half of a session.

        Raises:
            DialError: If the target refuses or cannot be reached
        """
        target = self.config.target
        logger.debug(f"[{session.id}] Attempting TCP connection to {target}")
        try:
            reader, writer = await asyncio.open_connection(target.dial_host, target.port)
        except OSError as e:
            raise DialError(str(target), f"{type(e).__name__}: {e}") from e
        enable_keepalive(writer)
        return reader, writer
