# =============================================================================
# ChatSync Client -- Subscription Registry
# =============================================================================
#
# The desired set of channels, independent of connection state.  Every
# transition into AUTHENTICATED replays the whole set, so consumers never
# resubscribe by hand after a reconnect.
# =============================================================================

from __future__ import annotations

from collections.abc import Coroutine
from typing import Any

from ._logging import logger
from .connection import ConnectionManager
from .constants import FRAME_SUBSCRIBE, FRAME_UNSUBSCRIBE
from .errors import NotConnectedError
from .types import ConnectionState


class SubscriptionRegistry:
    """Tracks the channels the application cares about.

    ``subscribe`` and ``unsubscribe`` are idempotent.  While the channel
    is down they only change the desired set; the set is sent on the
    next authentication.

    Args:
        connection: The manager to send frames through.  The registry
            registers itself as a state listener.
    """

    def __init__(self, connection: ConnectionManager) -> None:
        self._connection = connection
        self._channels: set[str] = set()
        # Channels already sent a subscribe frame on the current session
        self._sent: set[str] = set()
        self._replay_count = 0
        connection.add_state_listener(self._on_state_change)

    # -- Properties -----------------------------------------------------------

    @property
    def channels(self) -> frozenset[str]:
        return frozenset(self._channels)

    @property
    def replay_count(self) -> int:
        return self._replay_count

    def __contains__(self, channel: object) -> bool:
        return channel in self._channels

    def __len__(self) -> int:
        return len(self._channels)

    # -- Subscribe / Unsubscribe ----------------------------------------------

    async def subscribe(self, channel: str) -> None:
        """Add *channel* to the desired set and, if authenticated, send it."""
        if channel in self._channels:
            return
        self._channels.add(channel)
        await self._send_subscribe(channel)

    async def unsubscribe(self, channel: str) -> None:
        """Remove *channel*.  Non-member channels are a no-op."""
        if channel not in self._channels:
            return
        self._channels.discard(channel)
        was_sent = channel in self._sent
        self._sent.discard(channel)
        if not was_sent or not self._connection.is_authenticated:
            return
        try:
            await self._connection.send({"type": FRAME_UNSUBSCRIBE, "channel": channel})
        except NotConnectedError as exc:
            logger.debug("Unsubscribe of %s not sent: %s", channel, exc)

    async def replay(self) -> int:
        """Send one subscribe frame per desired channel not yet sent.

        Returns the number of frames sent.
        """
        channels = [c for c in self._channels if c not in self._sent]
        self._replay_count += 1
        logger.info("Replaying %d subscriptions", len(channels))
        sent = 0
        for channel in channels:
            if not self._connection.is_authenticated:
                logger.debug("Replay interrupted; %d channels pending", len(channels) - sent)
                break
            if await self._send_subscribe(channel):
                sent += 1
        return sent

    # -- Internal -------------------------------------------------------------

    async def _send_subscribe(self, channel: str) -> bool:
        if not self._connection.is_authenticated:
            logger.debug("Subscription to %s deferred until authenticated", channel)
            return False
        if channel in self._sent or channel not in self._channels:
            return False
        self._sent.add(channel)
        try:
            await self._connection.send({"type": FRAME_SUBSCRIBE, "channel": channel})
        except NotConnectedError as exc:
            self._sent.discard(channel)
            logger.debug("Subscription to %s deferred: %s", channel, exc)
            return False
        return True

    def _on_state_change(self, state: ConnectionState) -> Coroutine[Any, Any, int] | None:
        if state != ConnectionState.AUTHENTICATED:
            # a new session starts with nothing subscribed server-side
            self._sent.clear()
            return None
        return self.replay()
