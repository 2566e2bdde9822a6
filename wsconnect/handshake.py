"""
Drive the WebSocket opening handshake over a resolved transport.

All protocol logic is wsproto's. This module only moves bytes between the transport and
wsproto, and turns wsproto's handshake events into a `Response`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from dataclasses import field

import h11
import wsproto
import wsproto.events
import wsproto.extensions
import wsproto.utilities

from wsconnect.exceptions import HandshakeRejected
from wsconnect.exceptions import ProtocolError
from wsconnect.options import WebSocketConfig
from wsconnect.request import Request
from wsconnect.request import as_request
from wsconnect.transport import Transport
from wsconnect.websocket import WebSocketStream

logger = logging.getLogger(__name__)


@dataclass
class Response:
    """The server's answer to the opening handshake."""

    status_code: int
    headers: list[tuple[bytes, bytes]] = field(default_factory=list)
    """
    Response headers as reported by wsproto. For accepted connections, the headers
    that wsproto consumes itself (Upgrade, Connection, Sec-WebSocket-*) are not included.
    """
    body: bytes = b""
    subprotocol: str | None = None
    """The subprotocol selected by the server, if any."""
    extensions: list[str] = field(default_factory=list)
    """Names of the extensions the server accepted."""

    def header(self, name: str) -> str | None:
        """Returns the first value of the given header (case-insensitive), or None."""
        name_b = name.lower().encode()
        for k, v in self.headers:
            if k.lower() == name_b:
                return v.decode("latin-1")
        return None

    @property
    def is_upgrade(self) -> bool:
        return self.status_code == 101


async def client_async(
    request: Request | str,
    transport: Transport,
    config: WebSocketConfig | None = None,
) -> tuple[WebSocketStream, Response]:
    """
    Perform the WebSocket opening handshake over an established transport.

    The transport is consumed: on success it belongs to the returned `WebSocketStream`,
    on failure it is closed.

    *Raises:*
     - HandshakeRejected, if the server does not switch protocols.
     - ProtocolError, if wsproto reports a protocol violation or the connection is closed mid-handshake.
    """
    request = as_request(request)
    config = config or WebSocketConfig()

    extensions: list[wsproto.extensions.Extension] = []
    if config.compression:
        extensions.append(wsproto.extensions.PerMessageDeflate())

    ws = wsproto.WSConnection(wsproto.ConnectionType.CLIENT)
    try:
        data = ws.send(
            wsproto.events.Request(
                host=request.host,
                target=request.target,
                extra_headers=[
                    (k.encode(), v.encode()) for k, v in config.extra_headers
                ]
                + request.extra_headers(),
                subprotocols=list(request.subprotocols),
                extensions=extensions,
            )
        )
        logger.debug(f"sending WebSocket handshake for {request.url}")
        await transport.write(data)
        response = await _receive_response(ws, transport, config)
    except asyncio.CancelledError:
        transport.abort()
        raise
    except ProtocolError as e:
        logger.debug(f"WebSocket handshake for {request.url} failed: {e}")
        transport.abort()
        raise
    except (wsproto.utilities.ProtocolError, h11.ProtocolError) as e:
        transport.abort()
        raise ProtocolError(f"WebSocket handshake failed: {e}", e) from e
    except OSError as e:
        transport.abort()
        raise ProtocolError(
            f"Connection error during WebSocket handshake: {e}", e
        ) from e

    logger.debug(
        f"WebSocket connection to {request.url} established (subprotocol: {response.subprotocol})"
    )
    return WebSocketStream(transport, ws, config), response


async def _receive_response(
    ws: wsproto.WSConnection,
    transport: Transport,
    config: WebSocketConfig,
) -> Response:
    rejection: Response | None = None
    body = bytearray()
    while True:
        for event in ws.events():
            if isinstance(event, wsproto.events.AcceptConnection):
                return Response(
                    status_code=101,
                    headers=list(event.extra_headers),
                    subprotocol=event.subprotocol,
                    extensions=[ext.name for ext in event.extensions],
                )
            elif isinstance(event, wsproto.events.RejectConnection):
                rejection = Response(
                    status_code=event.status_code,
                    headers=list(event.headers),
                )
                if not event.has_body:
                    raise HandshakeRejected(rejection)
            elif isinstance(event, wsproto.events.RejectData):
                if rejection is None:
                    raise ProtocolError("Unexpected handshake body.")
                body.extend(event.data)
                if event.body_finished:
                    rejection.body = bytes(body)
                    raise HandshakeRejected(rejection)
            else:  # pragma: no cover
                raise AssertionError(f"Unexpected handshake event: {event}")

        data = await transport.read(config.read_size)
        if not data:
            if rejection:
                rejection.body = bytes(body)
                raise HandshakeRejected(rejection)
            raise ProtocolError("Connection closed during WebSocket handshake.")
        ws.receive_data(data)
