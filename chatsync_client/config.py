# =============================================================================
# ChatSync Client -- Configuration
# =============================================================================

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from .constants import (
    AUTH_TIMEOUT,
    CONNECTION_TIMEOUT,
    CSRF_COOKIE_NAME,
    DEFAULT_API_BASE_URL,
    DEFAULT_WS_URL,
    PENDING_MUTATION_TIMEOUT,
    REFRESH_PATH,
    REQUEST_TIMEOUT,
    SWEEP_INTERVAL,
)
from .types import ReconnectConfig

ENV_WS_URL = "CHATSYNC_WS_URL"
ENV_API_BASE_URL = "CHATSYNC_API_BASE_URL"
ENV_RECONNECT_MIN_DELAY = "CHATSYNC_RECONNECT_MIN_DELAY"
ENV_RECONNECT_MAX_DELAY = "CHATSYNC_RECONNECT_MAX_DELAY"


@dataclass
class ClientConfig:
    """Settings for :class:`~chatsync_client.client.AsyncChatClient`.

    Attributes:
        ws_url: Realtime endpoint.
        api_base_url: REST API root.
        reconnect: Backoff settings for the realtime channel.
        connect_timeout: Seconds allowed for the transport to open.
        auth_timeout: Seconds allowed for the server's auth reply.
        request_timeout: Per-request REST timeout.
        pending_timeout: Age after which an unconfirmed optimistic
            mutation is superseded by a refetch.
        sweep_interval: Seconds between pending-mutation sweeps.
        csrf_cookie_name: Cookie holding the CSRF token.
        refresh_path: Session refresh endpoint.
    """

    ws_url: str = DEFAULT_WS_URL
    api_base_url: str = DEFAULT_API_BASE_URL
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    connect_timeout: float = CONNECTION_TIMEOUT
    auth_timeout: float = AUTH_TIMEOUT
    request_timeout: float = REQUEST_TIMEOUT
    pending_timeout: float = PENDING_MUTATION_TIMEOUT
    sweep_interval: float = SWEEP_INTERVAL
    csrf_cookie_name: str = CSRF_COOKIE_NAME
    refresh_path: str = REFRESH_PATH

    def __post_init__(self) -> None:
        if self.reconnect.min_delay <= 0:
            raise ValueError("reconnect.min_delay must be positive")
        if self.reconnect.max_delay < self.reconnect.min_delay:
            raise ValueError("reconnect.max_delay must be >= reconnect.min_delay")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ClientConfig:
        """Build a config from ``CHATSYNC_*`` environment variables.

        Unset variables keep their defaults.

        Raises:
            ValueError: A delay variable is not a number.
        """
        env = os.environ if environ is None else environ
        reconnect = ReconnectConfig()
        if env.get(ENV_RECONNECT_MIN_DELAY):
            reconnect.min_delay = _float(env, ENV_RECONNECT_MIN_DELAY)
        if env.get(ENV_RECONNECT_MAX_DELAY):
            reconnect.max_delay = _float(env, ENV_RECONNECT_MAX_DELAY)
        return cls(
            ws_url=env.get(ENV_WS_URL) or DEFAULT_WS_URL,
            api_base_url=env.get(ENV_API_BASE_URL) or DEFAULT_API_BASE_URL,
            reconnect=reconnect,
        )


def _float(env: Mapping[str, str], name: str) -> float:
    try:
        return float(env[name])
    except ValueError:
        raise ValueError(f"{name} must be a number, got {env[name]!r}") from None
