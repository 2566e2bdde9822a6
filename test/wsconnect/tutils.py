"""
Test helpers: throwaway certificates and small local servers to connect to.
"""

from __future__ import annotations

import asyncio
import datetime
import ipaddress
import ssl
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import wsproto
import wsproto.events
import wsproto.extensions
import wsproto.utilities
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID
from cryptography.x509.oid import NameOID

from wsconnect.transport import StreamPair


def _name(cn: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, cn),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "wsconnect tests"),
        ]
    )


def create_ca(cn: str) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
    now = datetime.datetime.now(datetime.timezone.utc)
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = _name(cn)
    builder = x509.CertificateBuilder()
    builder = builder.serial_number(x509.random_serial_number())
    builder = builder.subject_name(name)
    builder = builder.issuer_name(name)
    builder = builder.not_valid_before(now - datetime.timedelta(days=2))
    builder = builder.not_valid_after(now + datetime.timedelta(days=30))
    builder = builder.public_key(private_key.public_key())
    builder = builder.add_extension(
        x509.BasicConstraints(ca=True, path_length=None), critical=True
    )
    builder = builder.add_extension(
        x509.KeyUsage(
            digital_signature=False,
            content_commitment=False,
            key_encipherment=False,
            data_encipherment=False,
            key_agreement=False,
            key_cert_sign=True,
            crl_sign=True,
            encipher_only=False,
            decipher_only=False,
        ),
        critical=True,
    )
    builder = builder.add_extension(
        x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
        critical=False,
    )
    cert = builder.sign(private_key=private_key, algorithm=hashes.SHA256())
    return private_key, cert


def create_leaf(
    ca_key: rsa.RSAPrivateKey,
    ca_cert: x509.Certificate,
    hostnames: list[str],
) -> tuple[rsa.RSAPrivateKey, x509.Certificate]:
    now = datetime.datetime.now(datetime.timezone.utc)
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    altnames: list[x509.GeneralName] = []
    for h in hostnames:
        try:
            altnames.append(x509.IPAddress(ipaddress.ip_address(h)))
        except ValueError:
            altnames.append(x509.DNSName(h))

    builder = x509.CertificateBuilder()
    builder = builder.serial_number(x509.random_serial_number())
    builder = builder.subject_name(_name(hostnames[0]))
    builder = builder.issuer_name(ca_cert.subject)
    builder = builder.not_valid_before(now - datetime.timedelta(days=2))
    builder = builder.not_valid_after(now + datetime.timedelta(days=30))
    builder = builder.public_key(private_key.public_key())
    builder = builder.add_extension(
        x509.BasicConstraints(ca=False, path_length=None), critical=True
    )
    builder = builder.add_extension(
        x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
    )
    builder = builder.add_extension(
        x509.SubjectAlternativeName(altnames), critical=False
    )
    builder = builder.add_extension(
        x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
        critical=False,
    )
    cert = builder.sign(private_key=ca_key, algorithm=hashes.SHA256())
    return private_key, cert


@dataclass
class Certs:
    ca_file: Path
    cert_file: Path
    key_file: Path

    def server_context(self) -> ssl.SSLContext:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.load_cert_chain(certfile=self.cert_file, keyfile=self.key_file)
        return ctx


def write_certs(directory: Path, hostnames: list[str]) -> Certs:
    ca_key, ca_cert = create_ca("wsconnect test CA")
    key, cert = create_leaf(ca_key, ca_cert, hostnames)

    ca_file = directory / "ca.pem"
    ca_file.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    cert_file = directory / "cert.pem"
    cert_file.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_file = directory / "key.pem"
    key_file.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
    )
    return Certs(ca_file, cert_file, key_file)


Responder = Callable[[str | bytes], list]


def echo(message: str | bytes) -> list:
    return [message]


class TcpServer:
    """
    A local TCP server. Subclasses implement `handle`.

    All connections are closed when leaving the context manager.
    """

    def __init__(self, ssl_context: ssl.SSLContext | None = None):
        self.ssl_context = ssl_context
        self.received = bytearray()
        self.data_received = asyncio.Event()
        self.eof = asyncio.Event()
        self.handled = asyncio.Event()
        """Set once a connection handler has finished."""
        self.connections = 0
        self._writers: set[asyncio.StreamWriter] = set()
        self.server: asyncio.Server | None = None

    async def __aenter__(self):
        self.server = await asyncio.start_server(
            self._handle, "127.0.0.1", 0, ssl=self.ssl_context
        )
        self._port = self.server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc):
        assert self.server
        self.server.close()
        for w in self._writers:
            w.close()
        await self.server.wait_closed()

    @property
    def port(self) -> int:
        assert self.server
        return self._port

    async def open_connection(self) -> StreamPair:
        reader, writer = await asyncio.open_connection("127.0.0.1", self.port)
        return StreamPair(reader, writer)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.connections += 1
        self._writers.add(writer)
        try:
            await self.handle(reader, writer)
        except (OSError, ssl.SSLError):
            pass
        finally:
            writer.close()
            self.handled.set()

    async def read(self, reader: asyncio.StreamReader) -> bytes:
        data = await reader.read(65535)
        if data:
            self.received.extend(data)
            self.data_received.set()
        else:
            self.eof.set()
        return data

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        raise NotImplementedError


class SilentServer(TcpServer):
    """Reads everything until EOF, never writes."""

    async def handle(self, reader, writer):
        while await self.read(reader):
            pass


class EchoServer(TcpServer):
    """Echoes raw bytes."""

    async def handle(self, reader, writer):
        while data := await self.read(reader):
            writer.write(data)
            await writer.drain()


class ReplyServer(TcpServer):
    """Sends a fixed reply as soon as something has been received, then closes."""

    def __init__(self, reply: bytes, ssl_context: ssl.SSLContext | None = None):
        super().__init__(ssl_context)
        self.reply = reply

    async def handle(self, reader, writer):
        if await self.read(reader):
            writer.write(self.reply)
            await writer.drain()


class WsServer(TcpServer):
    """
    A WebSocket server based on wsproto.

    Incoming messages are passed to `responder`, which returns a list of messages (or wsproto events)
    to send back. By default, messages are echoed.
    """

    def __init__(
        self,
        ssl_context: ssl.SSLContext | None = None,
        *,
        responder: Responder = echo,
        reject: int | None = None,
    ):
        super().__init__(ssl_context)
        self.responder = responder
        self.reject = reject
        self.requests: list[wsproto.events.Request] = []
        self.close_events: list[wsproto.events.CloseConnection] = []
        self.pings: list[bytes] = []
        self.pongs: list[bytes] = []

    def _send(self, ws: wsproto.WSConnection, item) -> bytes:
        if isinstance(item, str):
            return ws.send(wsproto.events.TextMessage(data=item))
        elif isinstance(item, bytes):
            return ws.send(wsproto.events.BytesMessage(data=item))
        else:
            return ws.send(item)

    async def handle(self, reader, writer):
        ws = wsproto.WSConnection(wsproto.ConnectionType.SERVER)
        buf: list = []
        done = False
        while not done:
            data = await self.read(reader)
            if not data:
                break
            try:
                ws.receive_data(data)
            except wsproto.utilities.RemoteProtocolError:
                break
            for event in ws.events():
                if isinstance(event, wsproto.events.Request):
                    self.requests.append(event)
                    if self.reject:
                        writer.write(
                            ws.send(
                                wsproto.events.RejectConnection(
                                    status_code=self.reject,
                                    headers=[(b"content-type", b"text/plain")],
                                    has_body=True,
                                )
                            )
                        )
                        writer.write(ws.send(wsproto.events.RejectData(data=b"go away")))
                        done = True
                    else:
                        extensions = [
                            wsproto.extensions.PerMessageDeflate()
                            for ext in event.extensions
                            if str(ext).startswith("permessage-deflate")
                        ]
                        writer.write(
                            ws.send(
                                wsproto.events.AcceptConnection(
                                    subprotocol=event.subprotocols[0]
                                    if event.subprotocols
                                    else None,
                                    extensions=extensions,
                                    extra_headers=[(b"x-server", b"wsconnect-tests")],
                                )
                            )
                        )
                elif isinstance(event, wsproto.events.Message):
                    buf.append(event.data)
                    if event.message_finished:
                        if isinstance(event.data, str):
                            message: str | bytes = "".join(buf)
                        else:
                            message = b"".join(buf)
                        buf = []
                        for item in self.responder(message):
                            writer.write(self._send(ws, item))
                elif isinstance(event, wsproto.events.Ping):
                    self.pings.append(bytes(event.payload))
                    writer.write(ws.send(event.response()))
                elif isinstance(event, wsproto.events.Pong):
                    self.pongs.append(bytes(event.payload))
                elif isinstance(event, wsproto.events.CloseConnection):
                    self.close_events.append(event)
                    if ws.state is wsproto.ConnectionState.REMOTE_CLOSING:
                        writer.write(ws.send(event.response()))
                    done = True
            await writer.drain()
