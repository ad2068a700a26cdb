"""
Byte bridge between one TCP stream and one WebSocket.

Each TCP read (up to CHUNK_SIZE bytes) becomes exactly one binary WebSocket
message, and each received WebSocket message is written to TCP in full.
The bridge returns as soon as either direction fails.
"""

import asyncio
import logging
from typing import Union

from aiohttp import ClientWebSocketResponse, WSMsgType, web

from .config import CHUNK_SIZE
from .errors import StreamClosed
from .logs import TRACE

logger = logging.getLogger(__name__)

WebSocket = Union[ClientWebSocketResponse, web.WebSocketResponse]

TCP_TO_WS = "tcp->ws"
WS_TO_TCP = "ws->tcp"

_CLOSE_TYPES = (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED)


async def _tcp_to_ws(reader: asyncio.StreamReader, ws: WebSocket, name: str) -> None:
    logger.debug(f"[{name}] Starting TCP -> WebSocket forwarding")
    while True:
        data = await reader.read(CHUNK_SIZE)
        if not data:
            raise StreamClosed(TCP_TO_WS, "end of stream")
        logger.log(TRACE, f"[{name}] Read {len(data)} bytes from TCP connection")
        await ws.send_bytes(data)
        logger.log(TRACE, f"[{name}] Forwarded {len(data)} bytes to WebSocket")


async def _ws_to_tcp(ws: WebSocket, writer: asyncio.StreamWriter, name: str) -> None:
    logger.debug(f"[{name}] Starting WebSocket -> TCP forwarding")
    while True:
        msg = await ws.receive()
        if msg.type == WSMsgType.BINARY:
            data = msg.data
        elif msg.type == WSMsgType.TEXT:
            data = msg.data.encode("utf-8")
        elif msg.type in _CLOSE_TYPES:
            reason = f"close code {msg.data}" if msg.type == WSMsgType.CLOSE else "closed"
            raise StreamClosed(WS_TO_TCP, reason)
        elif msg.type == WSMsgType.ERROR:
            raise StreamClosed(WS_TO_TCP, f"error: {ws.exception()}")
        else:
            # ping/pong are answered by aiohttp
            continue

        logger.log(TRACE, f"[{name}] Read {len(data)} bytes from WebSocket")
        writer.write(data)
        await writer.drain()
        logger.log(TRACE, f"[{name}] Forwarded {len(data)} bytes to TCP")


async def bridge(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    ws: WebSocket,
    name: str = "bridge",
) -> BaseException:
    """
    Copy bytes between a TCP stream and a WebSocket until one side fails.

    Args:
        reader: TCP stream reader
        writer: TCP stream writer
        ws: Connected client WebSocket or prepared server WebSocket
        name: Label used in log lines

    Returns:
        The error that ended the first direction to fail. The other
        direction has been cancelled and unwound by the time this returns.
        Closing the streams is left to the caller.
    """
    tcp_to_ws = asyncio.create_task(_tcp_to_ws(reader, ws, name), name=f"{name} {TCP_TO_WS}")
    ws_to_tcp = asyncio.create_task(_ws_to_tcp(ws, writer, name), name=f"{name} {WS_TO_TCP}")
    directions = (tcp_to_ws, ws_to_tcp)

    try:
        done, _ = await asyncio.wait(directions, return_when=asyncio.FIRST_COMPLETED)
    finally:
        # Runs on normal return and on cancellation of the bridge itself
        for task in directions:
            if not task.done():
                task.cancel()
        await asyncio.gather(*directions, return_exceptions=True)

    first = tcp_to_ws if tcp_to_ws in done else ws_to_tcp
    error = first.exception() or StreamClosed(first.get_name())
    logger.debug(f"[{name}] {first.get_name()} ended: {type(error).__name__}: {error}")
    return error
