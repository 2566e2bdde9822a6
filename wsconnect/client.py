"""
Entry points for establishing WebSocket client connections.

    request ──► domain/mode ──► transport (plain or TLS) ──► opening handshake ──► WebSocketStream

Each step strictly follows the previous one. Nothing is retried and no timeouts are applied;
wrap calls into `asyncio.timeout` / `asyncio.wait_for` if required.
"""

from __future__ import annotations

import asyncio
import logging

from wsconnect import backends
from wsconnect import url as wsurl
from wsconnect.handshake import Response
from wsconnect.handshake import client_async
from wsconnect.options import ConnectOptions
from wsconnect.request import Request
from wsconnect.request import as_request
from wsconnect.transport import Stream
from wsconnect.transport import StreamPair
from wsconnect.transport import as_stream
from wsconnect.websocket import WebSocketStream

logger = logging.getLogger(__name__)


async def client_async_tls(
    request: Request | str,
    stream: Stream | tuple[asyncio.StreamReader, asyncio.StreamWriter],
    options: ConnectOptions | None = None,
) -> tuple[WebSocketStream, Response]:
    """
    Perform a WebSocket handshake over an already-connected stream,
    upgrading the stream to TLS first if the URL scheme requires it.

    The stream is only touched once the URL has been validated and the transport mode is known
    to be available. From then on it is owned by wsconnect: it either ends up in the returned
    `WebSocketStream` or is closed.

    *Raises:*
     - UrlError, if the URL is invalid. The stream is left untouched.
     - EncryptionUnavailable, if TLS is required but not linked. The stream is left untouched.
     - UpgradeError, if the TLS handshake fails.
     - ProtocolError, if the WebSocket handshake fails.
    """
    request = as_request(request)
    options = options or ConnectOptions()

    # Domain and mode are resolved before any I/O happens.
    domain = wsurl.domain(request.url)
    mode = wsurl.url_mode(request.url)
    logger.debug(f"{request.url}: {mode.value} connection to {domain}")

    transport = await backends.wrap_stream(
        as_stream(stream), domain, mode, options.connector
    )
    return await client_async(request, transport, options.websocket)


async def connect(
    request: Request | str,
    options: ConnectOptions | None = None,
) -> tuple[WebSocketStream, Response]:
    """
    Open a TCP connection to the host and port of the request URL and perform the WebSocket handshake on it.

    The socket is closed if any later step fails.
    """
    request = as_request(request)
    domain = wsurl.domain(request.url)
    mode = wsurl.url_mode(request.url)
    port = wsurl.port(request.url)
    backends.ensure_available(mode)

    logger.info(f"connecting to {domain}:{port}")
    reader, writer = await asyncio.open_connection(domain, port)
    stream = StreamPair(reader, writer)
    try:
        return await client_async_tls(request, stream, options)
    except BaseException:
        stream.close()
        raise
