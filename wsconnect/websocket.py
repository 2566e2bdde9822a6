"""
The framed WebSocket connection handed out after a successful opening handshake.

Framing, masking and the closing handshake are wsproto's. `WebSocketStream` reads from and writes to
the transport on wsproto's behalf, reassembles fragmented messages, answers pings and enforces the size
limits of `WebSocketConfig`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from types import TracebackType

import wsproto
import wsproto.events
import wsproto.utilities
from wsproto import ConnectionState
from wsproto.frame_protocol import CloseReason

from wsconnect.exceptions import ConnectionClosed
from wsconnect.options import WebSocketConfig
from wsconnect.transport import Transport

logger = logging.getLogger(__name__)

Data = str | bytes


class WebSocketStream:
    """
    A negotiated WebSocket client connection.

    >>> async for message in ws:
    >>>     await ws.send(message)
    """

    transport: Transport
    ws: wsproto.WSConnection
    config: WebSocketConfig
    close_code: int | None
    """The close code received from or sent to the server, or None if the connection is still open."""
    close_reason: str | None

    def __init__(
        self,
        transport: Transport,
        ws: wsproto.WSConnection,
        config: WebSocketConfig | None = None,
    ):
        self.transport = transport
        self.ws = ws
        self.config = config or WebSocketConfig()
        self.close_code = None
        self.close_reason = None

        self._messages: deque[Data] = deque()
        self._frame_buf: list[Data] = []
        self._message_size = 0
        self._frame_size = 0
        self._read_lock = asyncio.Lock()

    def __repr__(self):
        return f"WebSocketStream<{self.ws.state.name}, {self.transport!r}>"

    @property
    def closed(self) -> bool:
        return self.close_code is not None

    async def send(self, message: Data) -> None:
        """Send a text (`str`) or binary (`bytes`) message."""
        if isinstance(message, str):
            event = wsproto.events.TextMessage(data=message)
        else:
            event = wsproto.events.BytesMessage(data=bytes(message))
        await self._send(event)

    async def ping(self, payload: bytes = b"") -> None:
        await self._send(wsproto.events.Ping(payload=payload))

    async def recv(self) -> Data:
        """
        Receive the next complete message.

        *Raises:*
         - ConnectionClosed, once the connection has been closed and all buffered messages have been received.
        """
        async with self._read_lock:
            while True:
                await self._process_events()
                if self._messages:
                    return self._messages.popleft()
                if self.closed:
                    assert self.close_code is not None
                    raise ConnectionClosed(self.close_code, self.close_reason)
                await self._receive()

    async def close(self, code: int = CloseReason.NORMAL_CLOSURE, reason: str | None = None) -> None:
        """
        Run the closing handshake and close the transport.

        This waits for the server's close frame; wrap this call into a timeout if the server may not respond.
        """
        try:
            if self.ws.state is ConnectionState.OPEN:
                await self._send(wsproto.events.CloseConnection(code=code, reason=reason))
            async with self._read_lock:
                while self.ws.state is ConnectionState.LOCAL_CLOSING:
                    await self._receive()
                    await self._process_events()
        except (OSError, ConnectionClosed):
            pass
        finally:
            if self.close_code is None:
                self.close_code = code
                self.close_reason = reason
            await self.transport.close()

    async def _send(self, event: wsproto.events.Event) -> None:
        try:
            data = self.ws.send(event)
        except wsproto.utilities.LocalProtocolError as e:
            raise ConnectionClosed(
                self.close_code or CloseReason.ABNORMAL_CLOSURE, self.close_reason
            ) from e
        await self.transport.write(data)

    async def _receive(self) -> None:
        try:
            data = await self.transport.read(self.config.read_size)
        except OSError as e:
            logger.debug(f"Error reading from {self.transport!r}: {e}")
            data = b""
        if self.ws.state is ConnectionState.CLOSED:
            if self.close_code is None:
                self.close_code = CloseReason.ABNORMAL_CLOSURE
            return
        self.ws.receive_data(data or None)

    async def _process_events(self) -> None:
        for event in self.ws.events():
            if isinstance(event, wsproto.events.Message):
                if not self._on_message(event):
                    logger.warning(
                        f"Incoming WebSocket message exceeds size limit, closing {self.transport!r}."
                    )
                    await self._fail(CloseReason.MESSAGE_TOO_BIG, "Message too big")
                    break
            elif isinstance(event, wsproto.events.Ping):
                if self.ws.state is ConnectionState.OPEN:
                    await self._send(event.response())
            elif isinstance(event, wsproto.events.Pong):
                logger.debug(f"Received WebSocket pong (payload: {bytes(event.payload)!r})")
            elif isinstance(event, wsproto.events.CloseConnection):
                logger.debug(f"Received WebSocket close ({event.code}: {event.reason!r})")
                if self.ws.state in {ConnectionState.OPEN, ConnectionState.REMOTE_CLOSING}:
                    try:
                        await self._send(event.response())
                    except (OSError, ConnectionClosed):
                        pass
                if self.close_code is None:
                    self.close_code = event.code
                    self.close_reason = event.reason
                await self.transport.close()
            else:  # pragma: no cover
                raise AssertionError(f"Unexpected WebSocket event: {event}")

    def _on_message(self, event: wsproto.events.Message) -> bool:
        """Buffer a message fragment. Returns False if a size limit has been exceeded."""
        size = len(event.data)
        self._frame_size += size
        self._message_size += size
        if (
            self.config.max_frame_size is not None
            and self._frame_size > self.config.max_frame_size
        ) or (
            self.config.max_message_size is not None
            and self._message_size > self.config.max_message_size
        ):
            return False

        self._frame_buf.append(event.data)
        if event.frame_finished:
            self._frame_size = 0
        if event.message_finished:
            if isinstance(event.data, str):
                message: Data = "".join(self._frame_buf)  # type: ignore
            else:
                message = b"".join(self._frame_buf)  # type: ignore
            self._messages.append(message)
            self._frame_buf = []
            self._message_size = 0
        return True

    async def _fail(self, code: int, reason: str) -> None:
        """Send a close frame without waiting for the answer and abort the transport."""
        self.close_code = code
        self.close_reason = reason
        if self.ws.state is ConnectionState.OPEN:
            try:
                await self._send(wsproto.events.CloseConnection(code=code, reason=reason))
            except OSError:
                pass
        self.transport.abort()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Data:
        try:
            return await self.recv()
        except ConnectionClosed:
            raise StopAsyncIteration

    async def __aenter__(self) -> WebSocketStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
