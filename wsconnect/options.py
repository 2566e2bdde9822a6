from __future__ import annotations

import typing
from collections.abc import Sequence
from dataclasses import dataclass

if typing.TYPE_CHECKING:
    from wsconnect.tls import TlsConnector

# Same limits as most WebSocket clients use by default.
DEFAULT_MAX_MESSAGE_SIZE = 64 << 20
DEFAULT_MAX_FRAME_SIZE = 16 << 20
DEFAULT_READ_SIZE = 65535


@dataclass(frozen=True)
class WebSocketConfig:
    """Parameters for the WebSocket connection, passed on unchanged to the handshake."""

    max_message_size: int | None = DEFAULT_MAX_MESSAGE_SIZE
    """Maximum size of a reassembled incoming message in bytes. `None` means unlimited."""
    max_frame_size: int | None = DEFAULT_MAX_FRAME_SIZE
    """Maximum size of a single incoming frame in bytes. `None` means unlimited."""
    read_size: int = DEFAULT_READ_SIZE
    """Number of bytes requested from the transport per read."""
    compression: bool = False
    """Offer the permessage-deflate extension to the server."""
    extra_headers: Sequence[tuple[str, str]] = ()
    """Headers added to every opening handshake made with this configuration."""

    def __post_init__(self):
        for name in ("max_message_size", "max_frame_size"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive or None, not {value}.")
        if self.read_size <= 0:
            raise ValueError(f"read_size must be positive, not {self.read_size}.")
        object.__setattr__(self, "extra_headers", tuple(self.extra_headers))


@dataclass(frozen=True)
class ConnectOptions:
    """
    Optional parameters for establishing a connection.

    Both fields default to `None`, in which case the TLS backend and the WebSocket handshake
    use their defaults (`TlsConnector()` and `WebSocketConfig()`).
    """

    connector: TlsConnector | None = None
    websocket: WebSocketConfig | None = None
