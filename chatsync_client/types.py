# =============================================================================
# ChatSync Client -- Type Definitions
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .constants import RECONNECT_FACTOR, RECONNECT_MAX_DELAY, RECONNECT_MIN_DELAY


class ConnectionState(str, Enum):
    """Realtime channel lifecycle state.

    Typical flow: DISCONNECTED -> CONNECTING -> AWAITING_AUTH -> AUTHENTICATED.
    RECONNECTING is entered on any transport failure; DISCONNECTED is
    re-entered only on auth rejection or an explicit disconnect/shutdown.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_AUTH = "awaiting_auth"
    AUTHENTICATED = "authenticated"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True, slots=True)
class SessionCredential:
    """Bearer token for the realtime handshake and REST calls.

    Attributes:
        token: Opaque bearer token issued by the login flow.
        csrf_token: CSRF token, when not read from the cookie jar.
    """

    token: str
    csrf_token: str | None = None


@dataclass
class ReconnectConfig:
    """Configuration for automatic reconnection.

    Attributes:
        min_delay: Delay in seconds before the first retry, and the value
            the delay resets to after every successful authentication.
        max_delay: Upper bound for the delay in seconds.
        factor: Multiplier applied after each consecutive failure.
        jitter: Randomize each sleep by +/-10% to avoid thundering herd.
    """

    min_delay: float = RECONNECT_MIN_DELAY
    max_delay: float = RECONNECT_MAX_DELAY
    factor: float = RECONNECT_FACTOR
    jitter: bool = False


@dataclass
class ConnectionStats:
    """Counters for a single connection manager."""

    frames_received: int = 0
    frames_sent: int = 0
    reconnect_count: int = 0
    auth_count: int = 0
    authenticated_since: float | None = None
    last_reconnect_delay: float | None = None
