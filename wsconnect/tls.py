"""
The OpenSSL transport backend.

TLS is run through pyOpenSSL's memory BIOs on top of the caller's stream, which means that the TLS variant
of a transport wraps exactly the same stream object as the plain variant would have.
Importing this module links the TLS backend; see `wsconnect.backends`.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
import threading
from collections.abc import Iterable
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import BinaryIO

import certifi
from cryptography import x509
from OpenSSL import SSL

from wsconnect.exceptions import UpgradeError
from wsconnect.exceptions import UrlError
from wsconnect.transport import PlainTransport
from wsconnect.transport import READ_SIZE
from wsconnect.transport import Stream
from wsconnect.transport import Transport
from wsconnect.url import Mode

logger = logging.getLogger(__name__)


class Version(Enum):
    UNBOUNDED = 0
    TLS1 = SSL.TLS1_VERSION
    TLS1_1 = SSL.TLS1_1_VERSION
    TLS1_2 = SSL.TLS1_2_VERSION
    TLS1_3 = SSL.TLS1_3_VERSION


class Verify(Enum):
    VERIFY_NONE = SSL.VERIFY_NONE
    VERIFY_PEER = SSL.VERIFY_PEER


DEFAULT_MIN_VERSION = Version.TLS1_2
DEFAULT_MAX_VERSION = Version.UNBOUNDED
DEFAULT_OPTIONS = SSL.OP_NO_COMPRESSION

# Matching on the CN is disabled in both Chrome and Firefox, so we disable it, too.
# https://www.chromestatus.com/feature/4981025180483584
# X509_CHECK_FLAG_NEVER_CHECK_SUBJECT is not available in LibreSSL.
DEFAULT_HOSTFLAGS = (
    SSL._lib.X509_CHECK_FLAG_NO_PARTIAL_WILDCARDS  # type: ignore
    | getattr(SSL._lib, "X509_CHECK_FLAG_NEVER_CHECK_SUBJECT", 0)  # type: ignore
)


class MasterSecretLogger:
    """Appends TLS key material to a file in NSS key log format, e.g. for Wireshark."""

    def __init__(self, filename: Path):
        self.filename = filename.expanduser()
        self.f: BinaryIO | None = None
        self.lock = threading.Lock()

    # required for functools.wraps, which pyOpenSSL uses.
    __name__ = "MasterSecretLogger"

    def __call__(self, connection: SSL.Connection, keymaterial: bytes) -> None:
        with self.lock:
            if self.f is None:
                self.filename.parent.mkdir(parents=True, exist_ok=True)
                self.f = self.filename.open("ab")
                self.f.write(b"\n")
            self.f.write(keymaterial + b"\n")
            self.f.flush()

    def close(self):
        with self.lock:
            if self.f is not None:
                self.f.close()
                self.f = None


def make_master_secret_logger(filename: str | None) -> MasterSecretLogger | None:
    if filename:
        return MasterSecretLogger(Path(filename))
    return None


log_master_secret = make_master_secret_logger(
    os.getenv("WSCONNECT_SSLKEYLOGFILE") or os.getenv("SSLKEYLOGFILE")
)


@lru_cache(256)
def create_client_context(
    *,
    verify: Verify,
    ca_file: str | None,
    ca_path: str | None,
    client_cert: str | None,
    min_version: Version,
    max_version: Version,
    cipher_list: tuple[str, ...] | None,
) -> SSL.Context:
    """
    Create an OpenSSL client context. Contexts are cached, callers must not modify them.

    If neither `ca_file` nor `ca_path` is given, certifi's CA bundle is used as trust store.
    """
    context = SSL.Context(SSL.TLS_CLIENT_METHOD)

    try:
        context.set_min_proto_version(min_version.value)
        context.set_max_proto_version(max_version.value)
    except SSL.Error as e:
        raise RuntimeError(
            f"Error setting TLS versions ({min_version=}, {max_version=}). "
            "The version you specified may be unavailable in your libssl."
        ) from e

    context.set_options(DEFAULT_OPTIONS)

    if cipher_list is not None:
        try:
            context.set_cipher_list(b":".join(x.encode() for x in cipher_list))
        except SSL.Error as e:
            raise RuntimeError(f"SSL cipher specification error: {e}") from e

    context.set_verify(verify.value, None)

    if ca_file is None and ca_path is None:
        ca_file = certifi.where()
    try:
        context.load_verify_locations(ca_file, ca_path)
    except SSL.Error as e:
        raise RuntimeError(
            f"Cannot load trusted certificates ({ca_file=}, {ca_path=})."
        ) from e

    if client_cert:
        try:
            context.use_privatekey_file(client_cert)
            context.use_certificate_chain_file(client_cert)
        except SSL.Error as e:
            raise RuntimeError(f"Cannot load TLS client certificate: {e}") from e

    if log_master_secret:
        context.set_keylog_callback(log_master_secret)

    return context


class TlsConnector:
    """
    Controls how the TLS handshake is performed.

    Either pass an existing `OpenSSL.SSL.Context`, which is used as-is,
    or let the connector build one from the keyword arguments.
    `TlsConnector()` verifies the server certificate against certifi's CA bundle.
    """

    context: SSL.Context
    alpn_protocols: tuple[bytes, ...]

    def __init__(
        self,
        context: SSL.Context | None = None,
        *,
        verify: bool = True,
        ca_file: str | os.PathLike | None = None,
        ca_path: str | os.PathLike | None = None,
        client_cert: str | os.PathLike | None = None,
        min_version: Version = DEFAULT_MIN_VERSION,
        max_version: Version = DEFAULT_MAX_VERSION,
        cipher_list: Iterable[str] | None = None,
        alpn_protocols: Iterable[bytes] = (),
    ):
        if context is None:
            context = create_client_context(
                verify=Verify.VERIFY_PEER if verify else Verify.VERIFY_NONE,
                ca_file=os.fspath(ca_file) if ca_file else None,
                ca_path=os.fspath(ca_path) if ca_path else None,
                client_cert=os.fspath(client_cert) if client_cert else None,
                min_version=min_version,
                max_version=max_version,
                cipher_list=tuple(cipher_list) if cipher_list is not None else None,
            )
        self.context = context
        self.alpn_protocols = tuple(alpn_protocols)

    def __repr__(self):
        return f"TlsConnector({self.context!r})"

    def connection(self, domain: str) -> SSL.Connection:
        """
        Create a client-side OpenSSL connection for the given domain.
        The domain is used both for SNI and for certificate hostname validation.
        """
        conn = SSL.Connection(self.context)

        # https://wiki.openssl.org/index.php/Hostname_validation
        param = SSL._lib.SSL_get0_param(conn._ssl)  # type: ignore
        SSL._lib.X509_VERIFY_PARAM_set_hostflags(param, DEFAULT_HOSTFLAGS)  # type: ignore
        try:
            ip: bytes = ipaddress.ip_address(domain).packed
        except ValueError:
            try:
                host_name = domain.encode("idna")
            except UnicodeError as e:
                raise UrlError(f"Invalid host name: {domain!r}") from e
            conn.set_tlsext_host_name(host_name)
            ok = SSL._lib.X509_VERIFY_PARAM_set1_host(  # type: ignore
                param, host_name, len(host_name)
            )
            SSL._openssl_assert(ok == 1)  # type: ignore
        else:
            # RFC 6066: Literal IPv4 and IPv6 addresses are not permitted in "HostName",
            # so we don't call set_tlsext_host_name.
            ok = SSL._lib.X509_VERIFY_PARAM_set1_ip(param, ip, len(ip))  # type: ignore
            SSL._openssl_assert(ok == 1)  # type: ignore

        if self.alpn_protocols:
            conn.set_alpn_protos(list(self.alpn_protocols))

        conn.set_connect_state()
        return conn


class TlsTransport(Transport):
    """Encrypts everything written to and decrypts everything read from the underlying stream."""

    mode = Mode.TLS
    tls: SSL.Connection
    """The OpenSSL connection object"""

    def __init__(self, stream: Stream, tls: SSL.Connection):
        super().__init__(stream)
        self.tls = tls

    async def handshake(self) -> None:
        """
        Run the TLS client handshake to completion.

        *Raises:*
         - UpgradeError, if the handshake fails.
         - OSError, if the underlying stream fails.
        """
        data = b""
        while True:
            try:
                self.tls.do_handshake()
            except SSL.WantReadError:
                await self._flush()
                data = await self.stream.read(READ_SIZE)
                if not data:
                    raise UpgradeError("Connection closed during TLS handshake.")
                self.tls.bio_write(data)
            except SSL.Error as e:
                raise UpgradeError(handshake_error_message(self.tls, e, data), e) from e
            else:
                await self._flush()
                return

    async def _flush(self) -> None:
        """Send everything OpenSSL wants to send."""
        pending = False
        while True:
            try:
                data = self.tls.bio_read(READ_SIZE)
            except SSL.WantReadError:
                break  # Okay, nothing more waiting to be sent.
            else:
                self.stream.write(data)
                pending = True
        if pending:
            async with self._drain_lock:
                await self.stream.drain()

    async def read(self, n: int = READ_SIZE) -> bytes:
        while True:
            try:
                return self.tls.recv(n)
            except SSL.WantReadError:
                pass
            except SSL.ZeroReturnError:
                logger.debug(f"close_notify received on {self!r}")
                return b""
            except SSL.Error as e:
                logger.warning(f"TLS Error: {e}")
                return b""
            # OpenSSL may need to answer post-handshake messages, e.g. key updates.
            await self._flush()
            data = await self.stream.read(READ_SIZE)
            if not data:
                return b""
            self.tls.bio_write(data)

    async def write(self, data: bytes) -> None:
        try:
            self.tls.sendall(data)
        except SSL.Error as e:
            raise BrokenPipeError(f"Cannot send data over TLS: {e}") from e
        await self._flush()

    async def close(self) -> None:
        if not self.stream.is_closing():
            try:
                self.tls.shutdown()
                await self._flush()
            except (SSL.Error, OSError) as e:
                logger.debug(f"Unclean TLS shutdown on {self!r}: {e}")
        await super().close()

    @property
    def tls_version(self) -> str:
        return self.tls.get_protocol_version_name()

    @property
    def cipher(self) -> str | None:
        return self.tls.get_cipher_name()

    @property
    def alpn(self) -> bytes | None:
        return self.tls.get_alpn_proto_negotiated() or None

    @property
    def certificate_list(self) -> list[x509.Certificate]:
        """The certificate chain presented by the server, leaf first."""
        return [c.to_cryptography() for c in self.tls.get_peer_cert_chain() or []]


def handshake_error_message(tls: SSL.Connection, e: SSL.Error, data: bytes) -> str:
    """Turn an OpenSSL handshake error into a human-readable message."""
    last_err = e.args and isinstance(e.args[0], list) and e.args[0] and e.args[0][-1]
    if last_err in [
        ("SSL routines", "tls_process_server_certificate", "certificate verify failed"),
        ("SSL routines", "", "certificate verify failed"),  # OpenSSL 3+
    ]:
        verify_result = SSL._lib.SSL_get_verify_result(tls._ssl)  # type: ignore
        error = SSL._ffi.string(  # type: ignore
            SSL._lib.X509_verify_cert_error_string(verify_result)  # type: ignore
        ).decode()
        return f"Certificate verify failed: {error}"
    elif (
        last_err
        in [
            ("SSL routines", "ssl3_get_record", "wrong version number"),
            ("SSL routines", "", "wrong version number"),  # OpenSSL 3+
            ("SSL routines", "", "packet length too long"),  # OpenSSL 3+
            ("SSL routines", "", "record layer failure"),  # OpenSSL 3+
        ]
        and data[:4].isascii()
    ):
        return "The remote server does not speak TLS."
    elif last_err in [
        ("SSL routines", "ssl3_read_bytes", "tlsv1 alert protocol version"),
        ("SSL routines", "", "tlsv1 alert protocol version"),  # OpenSSL 3+
    ]:
        return "The remote server and wsconnect cannot agree on a TLS version to use."
    else:
        return f"OpenSSL {e!r}"


async def wrap_stream(
    stream: Stream,
    domain: str,
    mode: Mode,
    connector: TlsConnector | None = None,
) -> Transport:
    """
    Wrap a raw stream into a transport, performing the TLS handshake if the mode requires it.

    If the TLS handshake fails or is cancelled, the raw stream is closed and never handed out.

    *Raises:*
     - UpgradeError, if the TLS handshake fails.
    """
    if mode is Mode.PLAIN:
        return PlainTransport(stream)

    connector = connector or TlsConnector()
    transport = TlsTransport(stream, connector.connection(domain))
    try:
        await transport.handshake()
    except asyncio.CancelledError:
        logger.debug(f"TLS handshake with {domain} cancelled, closing stream.")
        transport.abort()
        raise
    except UpgradeError as e:
        logger.warning(f"TLS handshake with {domain} failed. {e}")
        transport.abort()
        raise
    except OSError as e:
        logger.warning(f"TLS handshake with {domain} failed. {e}")
        transport.abort()
        raise UpgradeError(f"Connection error during TLS handshake: {e}", e) from e

    logger.debug(
        f"tls established: {domain} "
        f"({transport.tls_version}, {transport.cipher}, alpn={transport.alpn!r})"
    )
    return transport
