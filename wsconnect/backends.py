"""
Select which transport backends are linked into this deployment.

The plain backend is always available. The TLS backend (`wsconnect.tls`, based on pyOpenSSL) is linked
unless the deployment opts out, either by setting `WSCONNECT_TLS_BACKEND=none` in the environment
or by calling `configure(tls_backend="none")` once at start-up. Without a TLS backend, OpenSSL is never
imported, and every TLS request fails with `EncryptionUnavailable` before its stream is touched.
"""

from __future__ import annotations

import importlib
import logging
import os
import typing
from collections.abc import Awaitable
from collections.abc import Callable

from wsconnect.exceptions import EncryptionUnavailable
from wsconnect.transport import PlainTransport
from wsconnect.transport import Stream
from wsconnect.transport import Transport
from wsconnect.url import Mode

if typing.TYPE_CHECKING:
    from wsconnect.tls import TlsConnector

logger = logging.getLogger(__name__)

TLS_BACKEND_ENV = "WSCONNECT_TLS_BACKEND"

TLS_BACKENDS: dict[str, str | None] = {
    "openssl": "wsconnect.tls",
    "none": None,
}

WrapStream = Callable[[Stream, str, Mode, "TlsConnector | None"], Awaitable[Transport]]


async def wrap_plain_stream(
    stream: Stream,
    domain: str,
    mode: Mode,
    connector: TlsConnector | None = None,
) -> Transport:
    """
    Wrap a raw stream when no TLS backend is linked.

    *Raises:*
     - EncryptionUnavailable, if the mode requires TLS. The stream is left untouched.
    """
    if mode is Mode.PLAIN:
        return PlainTransport(stream)
    raise EncryptionUnavailable("TLS support not compiled in.")


_tls_backend: str
_wrap_stream: WrapStream


def configure(tls_backend: str) -> None:
    """
    Link the given TLS backend (`"openssl"` or `"none"`).

    This is a deployment decision. It is meant to be called once at start-up, not per connection.
    """
    global _tls_backend, _wrap_stream
    try:
        module_name = TLS_BACKENDS[tls_backend]
    except KeyError:
        raise ValueError(
            f"Unknown TLS backend: {tls_backend!r} "
            f"(expected one of {', '.join(TLS_BACKENDS)})"
        ) from None
    if module_name is None:
        _wrap_stream = wrap_plain_stream
    else:
        _wrap_stream = importlib.import_module(module_name).wrap_stream
    _tls_backend = tls_backend
    logger.debug(f"TLS backend: {tls_backend}")


def tls_backend() -> str:
    """The name of the TLS backend that is currently linked."""
    return _tls_backend


def tls_available() -> bool:
    return TLS_BACKENDS[_tls_backend] is not None


def ensure_available(mode: Mode) -> None:
    """
    *Raises:*
     - EncryptionUnavailable, if the mode cannot be served by the linked backends.
    """
    if mode is Mode.TLS and not tls_available():
        raise EncryptionUnavailable("TLS support not compiled in.")


async def wrap_stream(
    stream: Stream,
    domain: str,
    mode: Mode,
    connector: TlsConnector | None = None,
) -> Transport:
    """Wrap a raw stream into a transport using the linked backends."""
    return await _wrap_stream(stream, domain, mode, connector)


configure(os.getenv(TLS_BACKEND_ENV, "openssl"))
