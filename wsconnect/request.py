from __future__ import annotations

from collections.abc import Iterable
from collections.abc import Sequence
from dataclasses import dataclass

from wsconnect import url as wsurl
from wsconnect.exceptions import UrlError

# wsproto generates these itself, passing them as extra headers would duplicate them.
_RESERVED_HEADERS = frozenset(
    {
        "host",
        "upgrade",
        "connection",
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-protocol",
        "sec-websocket-extensions",
    }
)


@dataclass(frozen=True)
class Request:
    """
    A WebSocket client request: the URL to connect to and any additional handshake headers.

    The request is only ever read by wsconnect.
    """

    url: str
    headers: Sequence[tuple[str, str]] = ()
    """Additional headers sent with the opening handshake."""
    subprotocols: Sequence[str] = ()
    """Subprotocols offered to the server, in order of preference."""

    def __post_init__(self):
        object.__setattr__(self, "headers", tuple(self.headers))
        object.__setattr__(self, "subprotocols", tuple(self.subprotocols))

    @property
    def host(self) -> str:
        return wsurl.authority(self.url)

    @property
    def target(self) -> str:
        return wsurl.target(self.url)

    def extra_headers(self) -> list[tuple[bytes, bytes]]:
        """Headers to pass on to the handshake, as bytes."""
        return [
            (k.encode(), v.encode())
            for k, v in self.headers
            if k.lower() not in _RESERVED_HEADERS
        ]


def as_request(
    request: Request | str | bytes,
    headers: Iterable[tuple[str, str]] | None = None,
) -> Request:
    """
    Convert a URL or an existing request into a `Request`.

    >>> as_request("wss://example.com/chat")
    Request(url='wss://example.com/chat', headers=(), subprotocols=())
    """
    if isinstance(request, Request):
        if headers:
            return Request(
                request.url, (*request.headers, *headers), request.subprotocols
            )
        return request
    if isinstance(request, bytes):
        try:
            request = request.decode("ascii")
        except UnicodeDecodeError as e:
            raise UrlError(f"Invalid URL {request!r}: not ASCII.") from e
    if isinstance(request, str):
        return Request(request, tuple(headers or ()))
    raise TypeError(f"Cannot create a WebSocket request from {request!r}.")
