# =============================================================================
# ChatSync Client -- Error Types
# =============================================================================

from __future__ import annotations

from typing import Any


class ChatSyncError(Exception):
    """Base exception for all chatsync client errors."""


class TransportError(ChatSyncError):
    """The realtime transport failed to open or dropped.

    Always recoverable: the connection manager turns it into a
    reconnect and never raises it to consumers.
    """


class NotConnectedError(ChatSyncError):
    """A frame was sent while the channel was not authenticated."""


class AuthRejectedError(ChatSyncError):
    """The server answered the auth frame with ``auth_failed``."""

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(f"Realtime auth rejected: {reason or 'no reason given'}")


class ProtocolError(ChatSyncError):
    """Malformed inbound frame."""


class ShutdownError(ChatSyncError):
    """The connection manager was shut down and cannot be reused."""


class RequestError(ChatSyncError):
    """Base class for failures of the authenticated request layer.

    Attributes:
        status: HTTP status code (0 when no response was received).
        body: Parsed JSON error body, or ``None``.
    """

    def __init__(self, status: int, message: str, body: Any = None) -> None:
        self.status = status
        self.body = body
        super().__init__(message)


class UnauthenticatedError(RequestError):
    """The session could not be refreshed; the user must log in again."""

    def __init__(self, body: Any = None) -> None:
        super().__init__(401, "API 401: Unauthorized", body)


class RequestFailedError(RequestError):
    """Any other non-2xx response."""

    def __init__(self, status: int, reason: str = "", body: Any = None) -> None:
        self.reason = reason
        super().__init__(status, f"API {status}: {reason}", body)
