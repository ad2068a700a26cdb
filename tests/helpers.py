"""Shared test helpers: certificates, fake streams, echo and proxy servers."""

import asyncio
import contextlib
import datetime
import ipaddress
import socket
from pathlib import Path
from types import SimpleNamespace
from typing import Optional

from aiohttp import WSMsgType

from wstunnel.client import ClientEndpoint
from wstunnel.config import Address, ClientConfig, ServerConfig
from wstunnel.server import ServerEndpoint


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


def make_tls_files(directory: Path) -> SimpleNamespace:
    """Write a CA certificate and a CA-signed server certificate/key for
    localhost and 127.0.0.1. Returns their paths."""
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import ec
    from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

    now = datetime.datetime.now(datetime.timezone.utc)

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "wstunnel-test-ca")])
    ca_ski = x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key())
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(ca_ski, critical=False)
        .sign(ca_key, hashes.SHA256())
    )

    key = ec.generate_private_key(ec.SECP256R1())
    cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")]))
        .issuer_name(ca_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(
            x509.SubjectAlternativeName([
                x509.DNSName("localhost"),
                x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
            ]),
            critical=False,
        )
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ca_ski),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )

    files = SimpleNamespace(
        ca=directory / "ca.pem",
        cert=directory / "server.crt",
        key=directory / "server.key",
    )
    files.ca.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    files.cert.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    files.key.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    return files


# ---------------------------------------------------------------------------
# Fake streams
# ---------------------------------------------------------------------------


def ws_message(msg_type: WSMsgType, data=None, extra=None) -> SimpleNamespace:
    return SimpleNamespace(type=msg_type, data=data, extra=extra)


class FakeWriter:
    """Minimal fake asyncio.StreamWriter that captures written bytes."""

    def __init__(self, drain_error: Optional[BaseException] = None):
        self.buffer = bytearray()
        self.closed = False
        self.close_calls = 0
        self._drain_error = drain_error

    def write(self, data: bytes) -> None:
        self.buffer.extend(data)

    async def drain(self) -> None:
        if self._drain_error is not None:
            raise self._drain_error

    def close(self) -> None:
        self.closed = True
        self.close_calls += 1

    def is_closing(self) -> bool:
        return self.closed

    async def wait_closed(self) -> None:
        pass

    def get_extra_info(self, name, default=None):
        return default


class FakeWebSocket:
    """Fake aiohttp WebSocket fed from a queue of messages."""

    def __init__(
        self,
        messages=(),
        send_error: Optional[BaseException] = None,
        close_delay: float = 0.0,
    ):
        self.incoming: asyncio.Queue = asyncio.Queue()
        for msg in messages:
            self.incoming.put_nowait(msg)
        self.sent: list[bytes] = []
        self.closed = False
        self.close_calls = 0
        self.receive_cancelled = False
        self._send_error = send_error
        self._close_delay = close_delay

    async def send_bytes(self, data: bytes) -> None:
        if self._send_error is not None:
            raise self._send_error
        self.sent.append(bytes(data))

    async def receive(self):
        try:
            return await self.incoming.get()
        except asyncio.CancelledError:
            self.receive_cancelled = True
            raise

    async def close(self) -> bool:
        self.close_calls += 1
        if self._close_delay:
            await asyncio.sleep(self._close_delay)
        self.closed = True
        return True

    def exception(self):
        return ConnectionResetError("fake transport error")


# ---------------------------------------------------------------------------
# Servers
# ---------------------------------------------------------------------------


async def _echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except ConnectionError:
        pass
    finally:
        writer.close()


async def start_echo_server() -> asyncio.Server:
    return await asyncio.start_server(_echo, "127.0.0.1", 0)


def server_address(server: asyncio.Server) -> Address:
    host, port = server.sockets[0].getsockname()[:2]
    return Address(host, port)


def unused_port() -> int:
    """Return a local port that nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except ConnectionError:
        pass
    finally:
        writer.close()


class ConnectProxy:
    """Tiny HTTP CONNECT proxy that records each request."""

    def __init__(self):
        self.requests: list[tuple[str, str, list[bytes]]] = []
        self.server: Optional[asyncio.Server] = None

    @property
    def url(self) -> str:
        host, port = self.server.sockets[0].getsockname()[:2]
        return f"http://{host}:{port}"

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)

    def close(self) -> None:
        self.server.close()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        request_line = (await reader.readline()).decode("latin-1")
        headers = []
        while True:
            line = await reader.readline()
            if line in (b"\r\n", b"\n", b""):
                break
            headers.append(line)

        method, target, _ = request_line.split(" ", 2)
        self.requests.append((method, target, headers))
        host, port = target.rsplit(":", 1)
        try:
            up_reader, up_writer = await asyncio.open_connection(host, int(port))
        except OSError:
            writer.write(b"HTTP/1.1 502 Bad Gateway\r\n\r\n")
            await writer.drain()
            writer.close()
            return

        writer.write(b"HTTP/1.1 200 Connection Established\r\n\r\n")
        await writer.drain()
        await asyncio.gather(
            _pipe(reader, up_writer),
            _pipe(up_reader, writer),
            return_exceptions=True,
        )


# ---------------------------------------------------------------------------
# Full tunnel
# ---------------------------------------------------------------------------


@contextlib.asynccontextmanager
async def running_tunnel(target: Address, tls: SimpleNamespace, **client_options):
    """Run a server endpoint and a client endpoint pointed at it.

    Yields (server, client, client_address).
    """
    server = ServerEndpoint(ServerConfig(
        listen=Address("127.0.0.1", 0),
        target=target,
        cert_file=str(tls.cert),
        key_file=str(tls.key),
    ))
    await server.start()
    ws_port = server.addresses[0][1]

    options = {"verify_tls": True, "ca_bundle": str(tls.ca), **client_options}
    client = ClientEndpoint(ClientConfig(
        listen=Address("127.0.0.1", 0),
        ws_address=Address("127.0.0.1", ws_port),
        **options,
    ))
    try:
        await client.start()
        host, port = client.addresses[0][:2]
        yield server, client, Address(host, port)
    finally:
        await client.stop()
        await server.stop()


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
