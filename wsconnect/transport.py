"""
A uniform read/write/close surface over a byte stream that may or may not be protected by TLS.

    ┌──────────────────────┐
    │  WebSocketStream     │  (framed, negotiated connection)
    ├──────────────────────┤
    │  Transport           │  PlainTransport | TlsTransport
    ├──────────────────────┤
    │  Stream              │  (raw bytes, supplied by the caller)
    └──────────────────────┘

Everything above the transport is written once against `Transport`. Exactly one variant wraps a given stream,
and its `mode` always matches the `Mode` the URL resolved to. The TLS variant lives in `wsconnect.tls`
so that deployments without TLS support never import OpenSSL.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from typing import Protocol
from typing import runtime_checkable

from wsconnect.url import Mode

logger = logging.getLogger(__name__)

READ_SIZE = 65535


@runtime_checkable
class Stream(Protocol):
    """An already-connected, bidirectional byte stream."""

    async def read(self, n: int = -1) -> bytes:
        ...

    def write(self, data: bytes) -> None:
        ...

    async def drain(self) -> None:
        ...

    def close(self) -> None:
        ...

    def is_closing(self) -> bool:
        ...

    async def wait_closed(self) -> None:
        ...

    def get_extra_info(self, name: str, default: Any = None) -> Any:
        ...


@dataclass
class StreamPair:
    """Adapts an asyncio `(StreamReader, StreamWriter)` pair to the `Stream` protocol."""

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter

    async def read(self, n: int = -1) -> bytes:
        return await self.reader.read(n)

    def write(self, data: bytes) -> None:
        self.writer.write(data)

    async def drain(self) -> None:
        await self.writer.drain()

    def close(self) -> None:
        self.writer.close()

    def is_closing(self) -> bool:
        return self.writer.is_closing()

    async def wait_closed(self) -> None:
        await self.writer.wait_closed()

    def get_extra_info(self, name: str, default: Any = None) -> Any:
        return self.writer.get_extra_info(name, default)


def as_stream(stream: Stream | tuple[asyncio.StreamReader, asyncio.StreamWriter]) -> Stream:
    if isinstance(stream, tuple):
        return StreamPair(*stream)
    return stream


class Transport(metaclass=abc.ABCMeta):
    """
    A byte stream that is either used as-is (`PlainTransport`) or protected by TLS (`TlsTransport`).

    A transport exclusively owns its underlying stream. Closing the transport releases the stream
    and, if present, the TLS session state.
    """

    mode: Mode
    stream: Stream

    def __init__(self, stream: Stream):
        self.stream = stream
        # workaround for https://bugs.python.org/issue29930
        self._drain_lock = asyncio.Lock()

    @abc.abstractmethod
    async def read(self, n: int = READ_SIZE) -> bytes:
        """Read up to n bytes. Returns b"" once the peer has closed the stream."""

    @abc.abstractmethod
    async def write(self, data: bytes) -> None:
        """Write all of data and wait until it has been handed to the stream."""

    async def close(self) -> None:
        """Close the transport. Calling this more than once is harmless."""
        self.abort()
        try:
            await self.stream.wait_closed()
        except OSError:
            pass

    def abort(self) -> None:
        """Close the underlying stream without waiting."""
        if not self.stream.is_closing():
            logger.debug(f"closing {self!r}")
            self.stream.close()

    def is_closing(self) -> bool:
        return self.stream.is_closing()

    def get_extra_info(self, name: str, default: Any = None) -> Any:
        return self.stream.get_extra_info(name, default)

    async def _send(self, data: bytes) -> None:
        self.stream.write(data)
        async with self._drain_lock:
            await self.stream.drain()

    def __repr__(self):
        peer = self.get_extra_info("peername")
        return f"{type(self).__name__}({peer!r})"


class PlainTransport(Transport):
    """Passes all bytes through unchanged."""

    mode = Mode.PLAIN

    async def read(self, n: int = READ_SIZE) -> bytes:
        return await self.stream.read(n)

    async def write(self, data: bytes) -> None:
        await self._send(data)
