"""
Session lifecycle.

A Session pairs exactly one TCP stream with exactly one WebSocket. It starts
Pending while only one side exists, becomes Active once both are attached,
and ends Closed after the bridge returns. Both streams are always closed
together, and closing is idempotent.
"""

import asyncio
import enum
import logging
import secrets
from typing import Optional

from .bridge import WebSocket, bridge
from .errors import TunnelError

logger = logging.getLogger(__name__)

# Upper bound on the WebSocket closing handshake during teardown
CLOSE_TIMEOUT = 2.0


class SessionState(enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


class Session:
    """One forwarding pairing between a TCP stream and a WebSocket."""

    def __init__(self, peer: str):
        self.id = secrets.token_hex(4)
        self.peer = peer
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.ws: Optional[WebSocket] = None
        self._closed = False

    def __repr__(self) -> str:
        return f"<Session {self.id} {self.peer} {self.state.value}>"

    @property
    def state(self) -> SessionState:
        if self._closed:
            return SessionState.CLOSED
        if self.writer is not None and self.ws is not None:
            return SessionState.ACTIVE
        return SessionState.PENDING

    def attach_tcp(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Attach the TCP half."""
        self._check_pending()
        self.reader = reader
        self.writer = writer

    def attach_ws(self, ws: WebSocket) -> None:
        """Attach the WebSocket half."""
        self._check_pending()
        self.ws = ws

    def _check_pending(self) -> None:
        if self.state is not SessionState.PENDING:
            raise TunnelError(f"Session {self.id} is {self.state.value}, cannot attach")

    async def run(self) -> BaseException:
        """
        Bridge the two streams until one direction fails, then close both.

        Returns:
            The error that ended the session
        """
        if self.state is not SessionState.ACTIVE:
            raise TunnelError(f"Session {self.id} is {self.state.value}, cannot run")

        try:
            error = await bridge(self.reader, self.writer, self.ws, name=self.id)
            logger.info(f"[{self.id}] Connection closed: {error}")
            return error
        finally:
            await self.close()

    async def close(self) -> None:
        """Close both streams. Safe to call repeatedly and from any state."""
        if self._closed:
            return
        self._closed = True

        try:
            if self.ws is not None and not self.ws.closed:
                try:
                    await asyncio.wait_for(self.ws.close(), timeout=CLOSE_TIMEOUT)
                except asyncio.TimeoutError:
                    logger.debug(f"[{self.id}] WebSocket close handshake timed out")
                except Exception as e:
                    logger.debug(f"[{self.id}] WebSocket close error: {type(e).__name__}: {e}")
        finally:
            # Runs even if we are cancelled during the close handshake
            if self.writer is not None:
                self.writer.close()

        if self.writer is not None:
            try:
                await self.writer.wait_closed()
            except Exception as e:
                logger.debug(f"[{self.id}] TCP close error: {type(e).__name__}: {e}")

        logger.debug(f"[{self.id}] Session closed")
