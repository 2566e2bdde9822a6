"""
Every exception raised by wsconnect while establishing a connection is a subclass of
`WsConnectException`, so that callers can tell a malformed URL apart from a rejected
handshake or a deployment without TLS support:

- `UrlError` and `EncryptionUnavailable` are raised before any I/O takes place.
- `UpgradeError` is raised if the TLS handshake fails.
- `ProtocolError` wraps whatever the WebSocket handshake library raised.

Underlying causes are always chained (`raise ... from cause`) and also available as `.cause`.
"""

from __future__ import annotations

import typing

if typing.TYPE_CHECKING:
    from wsconnect.handshake import Response


class WsConnectException(Exception):
    """
    Base class for all exceptions thrown by wsconnect.
    """

    def __init__(self, message=None):
        super().__init__(message)


class UrlError(WsConnectException, ValueError):
    """The URL has an unsupported scheme or no host."""


class EncryptionUnavailable(WsConnectException):
    """
    TLS was requested, but no TLS backend is linked into this deployment.
    """


class UpgradeError(WsConnectException):
    """
    The TLS handshake failed. The raw stream has been closed.
    """

    cause: BaseException | None

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class ProtocolError(WsConnectException):
    """
    The WebSocket opening handshake failed. The transport has been closed.
    """

    cause: BaseException | None

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class HandshakeRejected(ProtocolError):
    """
    The server replied to the opening handshake with something other than `101 Switching Protocols`.
    """

    response: Response

    def __init__(self, response: Response):
        super().__init__(
            f"WebSocket handshake rejected with status {response.status_code}."
        )
        self.response = response

    @property
    def status_code(self) -> int:
        return self.response.status_code


class ConnectionClosed(WsConnectException):
    """
    Raised when using a WebSocket connection that has already been closed.
    """

    code: int
    reason: str | None

    def __init__(self, code: int, reason: str | None = None):
        msg = f"WebSocket connection closed (code {code})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.code = code
        self.reason = reason
