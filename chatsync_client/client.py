# =============================================================================
# ChatSync Client -- Async Client
# =============================================================================
#
# Primary public API.  One explicitly owned handle wiring the request
# layer, the realtime channel, subscriptions, event dispatch and the
# optimistic cache together.  Async context manager.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import httpx

from ._logging import logger
from .api import ApiClient, CredentialStore, CursorPage
from .cache import CacheEntry, CacheKey, QueryCache, conversation_channel, messages_key
from .codec import PassthroughCodec, PayloadCodec
from .config import ClientConfig
from .connection import ConnectionManager, Connector, StateListener
from .constants import MESSAGES_FETCH_LIMIT, MESSAGES_PATH
from .dispatcher import EventDispatcher, Listener
from .errors import AuthRejectedError
from .events import ServerEvent
from .reconciler import (
    Fetcher,
    Merge,
    Reconciler,
    Snapshot,
    Transform,
    merge_reactions,
    upsert_item,
)
from .subscriptions import SubscriptionRegistry
from .types import ConnectionState, SessionCredential

_MESSAGE_EVENTS = ("new_message", "message_updated", "message_deleted")


class AsyncChatClient:
    """Realtime chat synchronization client.

    Args:
        config: Endpoints and timing.  Defaults to :class:`ClientConfig`.
        credential: Session credential from the login flow.
        connector: Transport factory, for tests or custom websockets
            options.
        http_transport: Optional httpx transport for the request layer.
        payload_codec: Opaque message content codec.  Never invoked by
            the client itself.
        on_auth_failed: Called when the realtime server rejects the
            credential.  The channel stays down until :meth:`connect`.
        on_session_expired: Called once when a REST session refresh
            fails.  The application should force a logout.

    Example::

        async with AsyncChatClient(ClientConfig.from_env(), credential) as client:
            @client.on("new_message")
            def handle(event: MessageEvent) -> None:
                print(event.conversation_id, event.message)

            await client.watch_conversation(42)
            print(client.messages(42))
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        credential: SessionCredential | None = None,
        *,
        connector: Connector | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        payload_codec: PayloadCodec | None = None,
        on_auth_failed: Callable[[AuthRejectedError], Any] | None = None,
        on_session_expired: Callable[[], Any] | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._credentials = CredentialStore(credential)
        self._payload_codec = payload_codec or PassthroughCodec()
        self._on_auth_failed = on_auth_failed

        self._api = ApiClient(
            self._config.api_base_url,
            credentials=self._credentials,
            csrf_cookie_name=self._config.csrf_cookie_name,
            refresh_path=self._config.refresh_path,
            on_session_expired=on_session_expired,
            timeout=self._config.request_timeout,
            transport=http_transport,
        )
        self._dispatcher = EventDispatcher()
        self._connection = ConnectionManager(
            self._config.ws_url,
            reconnect=self._config.reconnect,
            connector=connector,
            connect_timeout=self._config.connect_timeout,
            auth_timeout=self._config.auth_timeout,
            on_event=self._dispatcher.emit,
            on_auth_failed=self._handle_auth_failed,
            credential_provider=self._credentials.get,
        )
        self._subscriptions = SubscriptionRegistry(self._connection)
        self._cache = QueryCache()
        self._reconciler = Reconciler(
            self._cache, pending_timeout=self._config.pending_timeout
        )

        self._authenticated_once = False
        self._sweep_task: asyncio.Task[None] | None = None
        self._bind_default_events()
        self._connection.add_state_listener(self._on_state_change)

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> AsyncChatClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.shutdown()

    # -- Connect / Shutdown ---------------------------------------------------

    async def connect(
        self,
        credential: SessionCredential | None = None,
        *,
        wait: bool = True,
        timeout: float | None = None,
    ) -> bool:
        """Open the realtime channel.

        With *wait*, blocks until the channel authenticates, is rejected,
        or *timeout* passes (default: connect plus auth timeout).  A
        failed open is retried in the background either way.

        Returns:
            True if the channel is authenticated.

        Raises:
            ValueError: No credential was given or stored.
            ShutdownError: The client was shut down.
        """
        if credential is not None:
            self._api.set_credential(credential)
        credential = self._credentials.credential
        if credential is None:
            raise ValueError("connect() requires a session credential")

        await self._connection.connect(credential)
        if not wait:
            return self._connection.is_authenticated
        if timeout is None:
            timeout = self._config.connect_timeout + self._config.auth_timeout
        return await self._connection.wait_authenticated(timeout)

    async def disconnect(self) -> None:
        """Close the channel; a later :meth:`connect` resumes."""
        await self._connection.disconnect()

    async def shutdown(self) -> None:
        """Tear everything down.  The client cannot be reused."""
        self._stop_sweeper()
        await self._connection.shutdown()
        await self._api.aclose()
        await self._reconciler.drain()
        await self._dispatcher.drain()
        logger.info("Client shut down")

    async def close(self) -> None:
        """Alias for shutdown."""
        await self.shutdown()

    # -- Properties -----------------------------------------------------------

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def is_online(self) -> bool:
        """True while the realtime channel is authenticated."""
        return self._connection.is_authenticated

    @property
    def api(self) -> ApiClient:
        return self._api

    @property
    def cache(self) -> QueryCache:
        return self._cache

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    @property
    def codec(self) -> PayloadCodec:
        return self._payload_codec

    @property
    def subscriptions(self) -> frozenset[str]:
        return self._subscriptions.channels

    def add_state_listener(self, listener: StateListener) -> None:
        """Observe connectivity, e.g. for an offline indicator."""
        self._connection.add_state_listener(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        self._connection.remove_state_listener(listener)

    # -- Subscriptions --------------------------------------------------------

    async def subscribe(self, channel: str) -> None:
        await self._subscriptions.subscribe(channel)

    async def unsubscribe(self, channel: str) -> None:
        await self._subscriptions.unsubscribe(channel)

    # -- Events ---------------------------------------------------------------

    def on(self, event_type: str, listener: Listener | None = None) -> Any:
        """Register a listener, or return a decorator without one."""
        return self._dispatcher.on(event_type, listener)

    def on_any(self, listener: Listener) -> Listener:
        return self._dispatcher.on_any(listener)

    def off(self, event_type: str, listener: Listener) -> None:
        self._dispatcher.off(event_type, listener)

    def off_any(self, listener: Listener) -> None:
        self._dispatcher.off_any(listener)

    # -- Optimistic state -----------------------------------------------------

    def apply_optimistic(
        self, cache_key: CacheKey, transform: Transform, *, correlation_id: str | None = None
    ) -> str:
        return self._reconciler.apply_optimistic(
            cache_key, transform, correlation_id=correlation_id
        )

    def reconcile(self, cache_key: CacheKey, event: ServerEvent) -> bool:
        return self._reconciler.reconcile(cache_key, event)

    def invalidate(self, cache_key: CacheKey) -> asyncio.Task[CacheEntry | None] | None:
        return self._reconciler.invalidate(cache_key)

    def rollback(self, correlation_id: str) -> bool:
        return self._reconciler.rollback(correlation_id)

    async def mutate(
        self,
        cache_key: CacheKey,
        transform: Transform,
        request: Callable[[], Awaitable[Any]],
        *,
        correlation_id: str | None = None,
    ) -> Any:
        return await self._reconciler.mutate(
            cache_key, transform, request, correlation_id=correlation_id
        )

    def register_fetcher(
        self, cache_key: CacheKey, fetcher: Fetcher, *, merge: Merge | None = None
    ) -> None:
        self._reconciler.register_fetcher(cache_key, fetcher, merge=merge)

    def bind(
        self,
        event_type: str,
        key_for: Callable[[ServerEvent], CacheKey | None],
        merge: Merge | None = None,
    ) -> Callable[[ServerEvent], None]:
        """Reconcile *event_type* events into the cache key *key_for* names."""
        return self._reconciler.bind(self._dispatcher, event_type, key_for, merge)

    # -- Conversations --------------------------------------------------------

    async def watch_conversation(
        self, conversation_id: Any, *, path: str | None = None
    ) -> CacheEntry | None:
        """Subscribe to a conversation and load its messages.

        The message list is kept in the cache under
        :func:`~chatsync_client.cache.messages_key` and refetched after
        every reconnect.
        """
        cache_key = messages_key(conversation_id)
        path = path or MESSAGES_PATH.format(conversation_id=conversation_id)

        async def fetch(_key: CacheKey) -> Snapshot:
            body = await self._api.get(path, params={"limit": MESSAGES_FETCH_LIMIT})
            if isinstance(body, dict):
                return Snapshot(CursorPage.from_dict(body).data)
            return Snapshot(list(body or ()))

        self._reconciler.register_fetcher(cache_key, fetch)
        await self._subscriptions.subscribe(conversation_channel(conversation_id))
        return await self._reconciler.refresh(cache_key)

    async def unwatch_conversation(self, conversation_id: Any) -> None:
        await self._subscriptions.unsubscribe(conversation_channel(conversation_id))
        self._reconciler.unregister_fetcher(messages_key(conversation_id))
        self._cache.remove(messages_key(conversation_id))

    def messages(self, conversation_id: Any) -> list[Any]:
        """Visible messages of a watched conversation."""
        return self._cache.items(messages_key(conversation_id))

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Return client statistics."""
        stats = self._connection.stats
        return {
            "state": self._connection.state.value,
            "is_online": self.is_online,
            "subscriptions": sorted(self._subscriptions.channels),
            "subscription_replays": self._subscriptions.replay_count,
            "frames_received": stats.frames_received,
            "frames_sent": stats.frames_sent,
            "reconnect_count": stats.reconnect_count,
            "auth_count": stats.auth_count,
            "last_reconnect_delay": stats.last_reconnect_delay,
            "reconnect_delay": self._connection.reconnect_delay,
            "session_refreshes": self._api.refresh_count,
            "dispatcher": self._dispatcher.get_stats(),
            "reconciler": self._reconciler.get_stats(),
        }

    # -- Internal -------------------------------------------------------------

    def _bind_default_events(self) -> None:
        def cached_messages_key(event: ServerEvent) -> CacheKey | None:
            conversation_id = getattr(event, "conversation_id", None)
            if conversation_id is None:
                return None
            cache_key = messages_key(conversation_id)
            return cache_key if cache_key in self._cache else None

        for event_type in _MESSAGE_EVENTS:
            self._reconciler.bind(
                self._dispatcher, event_type, cached_messages_key, upsert_item
            )
        self._reconciler.bind(
            self._dispatcher, "reaction_updated", cached_messages_key, merge_reactions
        )

    def _on_state_change(self, state: ConnectionState) -> None:
        if state == ConnectionState.AUTHENTICATED:
            if self._authenticated_once:
                # events pushed while offline are not redelivered
                tasks = self._reconciler.invalidate_all()
                logger.info("Re-authenticated; refetching %d cache entries", len(tasks))
            self._authenticated_once = True
            self._start_sweeper()
        elif state == ConnectionState.DISCONNECTED:
            self._stop_sweeper()

    def _handle_auth_failed(self, error: AuthRejectedError) -> Any:
        if self._on_auth_failed is None:
            return None
        return self._on_auth_failed(error)

    def _start_sweeper(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    def _stop_sweeper(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweep_interval)
            self._reconciler.sweep()
