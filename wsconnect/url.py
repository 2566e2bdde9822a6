"""
Resolve how a WebSocket URL must be connected to.

This module never performs I/O. Both `url_mode` and `domain` must be called before a stream is touched,
so that an invalid URL never results in a half-opened connection.
"""

import enum
import urllib.parse
from functools import lru_cache

from wsconnect.exceptions import UrlError


class Mode(enum.Enum):
    """Whether the byte stream must be upgraded to TLS before the WebSocket handshake."""

    PLAIN = "plain"
    TLS = "tls"


SCHEMES: dict[str, Mode] = {
    "ws": Mode.PLAIN,
    "wss": Mode.TLS,
}

DEFAULT_PORTS: dict[str, int] = {
    "ws": 80,
    "wss": 443,
}


@lru_cache(256)
def _split(url: str) -> urllib.parse.SplitResult:
    try:
        parts = urllib.parse.urlsplit(url)
        # .port raises on invalid port numbers, so we check it right away.
        parts.port
    except ValueError as e:
        raise UrlError(f"Invalid URL {url!r}: {e}") from e
    return parts


def url_mode(url: str) -> Mode:
    """
    Returns the transport mode for a WebSocket URL:
    `wss://` requires TLS, `ws://` does not.

    *Raises:*
     - UrlError, if the URL scheme is not a WebSocket scheme.
    """
    scheme = _split(url).scheme
    try:
        return SCHEMES[scheme]
    except KeyError:
        raise UrlError(f"Unsupported URL scheme: {scheme or '<none>'}") from None


def domain(url: str) -> str:
    """
    Returns the host of a URL, which is used for SNI and certificate validation.
    IPv6 addresses are returned without brackets.

    *Raises:*
     - UrlError, if there is no host name in the URL.
    """
    host = _split(url).hostname
    if not host:
        raise UrlError("No host name in the URL.")
    return host


def port(url: str) -> int:
    """Returns the explicit port of a URL, or the default port of its scheme."""
    parts = _split(url)
    if parts.port is not None:
        return parts.port
    try:
        return DEFAULT_PORTS[parts.scheme]
    except KeyError:
        raise UrlError(f"Unsupported URL scheme: {parts.scheme or '<none>'}") from None


def target(url: str) -> str:
    """Returns the request target (path and query) to be used in the opening handshake."""
    parts = _split(url)
    path = parts.path or "/"
    if parts.query:
        path += f"?{parts.query}"
    return path


def authority(url: str) -> str:
    """
    Returns the value for the Host header: the host, followed by the port if it is not the scheme's default.
    """
    parts = _split(url)
    host = domain(url)
    if ":" in host:
        host = f"[{host}]"
    if parts.port is not None and parts.port != DEFAULT_PORTS.get(parts.scheme):
        return f"{host}:{parts.port}"
    return host
