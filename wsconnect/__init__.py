"""
wsconnect establishes WebSocket client connections over caller-supplied streams,
upgrading them to TLS when the URL scheme asks for it.

The TLS backend lives in `wsconnect.tls` and is not imported here,
see `wsconnect.backends` for deployments without TLS support.
"""

from wsconnect.client import client_async_tls
from wsconnect.client import connect
from wsconnect.exceptions import ConnectionClosed
from wsconnect.exceptions import EncryptionUnavailable
from wsconnect.exceptions import HandshakeRejected
from wsconnect.exceptions import ProtocolError
from wsconnect.exceptions import UpgradeError
from wsconnect.exceptions import UrlError
from wsconnect.exceptions import WsConnectException
from wsconnect.handshake import Response
from wsconnect.handshake import client_async
from wsconnect.options import ConnectOptions
from wsconnect.options import WebSocketConfig
from wsconnect.request import Request
from wsconnect.transport import PlainTransport
from wsconnect.transport import Transport
from wsconnect.url import Mode
from wsconnect.websocket import WebSocketStream

__all__ = [
    "client_async",
    "client_async_tls",
    "connect",
    "ConnectionClosed",
    "ConnectOptions",
    "EncryptionUnavailable",
    "HandshakeRejected",
    "Mode",
    "PlainTransport",
    "ProtocolError",
    "Request",
    "Response",
    "Transport",
    "UpgradeError",
    "UrlError",
    "WebSocketConfig",
    "WebSocketStream",
    "WsConnectException",
]
