# =============================================================================
# ChatSync Client -- Connection Manager
# =============================================================================
#
# Owns the single realtime transport: open, auth handshake, liveness,
# reconnect with exponential backoff.
#
#   DISCONNECTED --connect()--> CONNECTING --open--> AWAITING_AUTH
#   AWAITING_AUTH --authenticated--> AUTHENTICATED
#   AWAITING_AUTH --auth_failed--> DISCONNECTED (no reconnect)
#   any transport failure --> RECONNECTING --timer--> CONNECTING
#   any state --shutdown()--> DISCONNECTED (final)
# =============================================================================

from __future__ import annotations

import asyncio
import random
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

import websockets
import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from ._logging import logger
from .constants import (
    AUTH_TIMEOUT,
    CLIENT_VERSION,
    CONNECTION_TIMEOUT,
    FRAME_AUTH_FAILED,
    FRAME_AUTHENTICATED,
    HEARTBEAT_INTERVAL,
    IDLE_TIMEOUT,
    MAX_MESSAGE_SIZE,
    WS_CLOSE_NORMAL,
)
from .errors import (
    AuthRejectedError,
    NotConnectedError,
    ProtocolError,
    ShutdownError,
    TransportError,
)
from .events import ServerEvent
from .protocol import ControlFrame, FrameCodec
from .types import ConnectionState, ConnectionStats, ReconnectConfig, SessionCredential


class Transport(Protocol):
    """The subset of a websockets client connection the manager uses."""

    async def send(self, message: str) -> None: ...

    async def close(self, code: int = WS_CLOSE_NORMAL, reason: str = "") -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[str], Awaitable[Transport]]
StateListener = Callable[[ConnectionState], Any]


async def open_websocket(url: str) -> websockets.asyncio.client.ClientConnection:
    """Default connector: a websockets client with protocol-level ping/pong.

    Raises:
        TransportError: The TCP connection or the HTTP upgrade failed.
    """
    try:
        return await websockets.asyncio.client.connect(
            url,
            max_size=MAX_MESSAGE_SIZE,
            open_timeout=None,  # asyncio.wait_for handles timeout
            ping_interval=HEARTBEAT_INTERVAL,
            ping_timeout=IDLE_TIMEOUT,
            user_agent_header=f"chatsync-client/{CLIENT_VERSION}",
        )
    except (OSError, InvalidHandshake) as exc:
        raise TransportError(f"Cannot open {url}: {exc}") from exc


class ConnectionManager:
    """Manages the realtime transport lifecycle.

    Exactly one transport is live at a time.  Transport failures are
    never raised to callers; they always lead to ``RECONNECTING``.  Only
    an ``auth_failed`` reply stops reconnection, and it is reported via
    *on_auth_failed*.

    Send policy: :meth:`send` rejects frames immediately with
    :class:`NotConnectedError` unless the channel is ``AUTHENTICATED``.
    Nothing is buffered; subscriptions are replayed on every
    authentication and cached state is refetched instead.

    Args:
        url: WebSocket endpoint, e.g. ``"wss://example.com/ws"``.
        reconnect: Backoff configuration.
        connector: Coroutine function opening a transport for a URL.
            Defaults to :func:`open_websocket`.
        connect_timeout: Seconds allowed for the transport to open.
        auth_timeout: Seconds allowed for the server's auth reply.
        on_event: Called with every decoded event while authenticated.
        on_auth_failed: Called with :class:`AuthRejectedError` when the
            server rejects the credential.
        credential_provider: Returns the current session credential.  When
            given, every open reads it so a token refreshed over REST is
            used by the next reconnect.
    """

    def __init__(
        self,
        url: str,
        *,
        reconnect: ReconnectConfig | None = None,
        connector: Connector | None = None,
        codec: FrameCodec | None = None,
        connect_timeout: float = CONNECTION_TIMEOUT,
        auth_timeout: float = AUTH_TIMEOUT,
        on_event: Callable[[ServerEvent], Any] | None = None,
        on_auth_failed: Callable[[AuthRejectedError], Any] | None = None,
        credential_provider: Callable[[], SessionCredential | None] | None = None,
    ) -> None:
        self._url = url
        self._reconnect_cfg = reconnect or ReconnectConfig()
        self._connector: Connector = connector or open_websocket
        self._codec = codec or FrameCodec()
        self._connect_timeout = connect_timeout
        self._auth_timeout = auth_timeout

        # Callbacks
        self._on_event = on_event
        self._on_auth_failed = on_auth_failed
        self._credential_provider = credential_provider
        self._state_listeners: list[StateListener] = []
        self._auth_waiters: list[asyncio.Future[bool]] = []

        # State
        self._state = ConnectionState.DISCONNECTED
        self._credential: SessionCredential | None = None
        self._transport: Transport | None = None
        self._delay = self._reconnect_cfg.min_delay
        self._generation = 0
        self._shut_down = False
        self._stats = ConnectionStats()

        # Tasks
        self._recv_task: asyncio.Task[None] | None = None
        self._auth_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # -- Properties -----------------------------------------------------------

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state == ConnectionState.AUTHENTICATED and self._transport is not None

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    @property
    def reconnect_delay(self) -> float:
        """Delay the next reconnect attempt will wait."""
        return min(self._delay, self._reconnect_cfg.max_delay)

    @property
    def stats(self) -> ConnectionStats:
        return self._stats

    # -- Observers ------------------------------------------------------------

    def add_state_listener(self, listener: StateListener) -> None:
        """Register a callback invoked with every new state.

        Coroutines returned by the listener are scheduled as tasks.
        """
        if listener not in self._state_listeners:
            self._state_listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._state_listeners:
            self._state_listeners.remove(listener)

    async def wait_authenticated(self, timeout: float | None = None) -> bool:
        """Wait until the channel is authenticated.

        Returns False on timeout, on auth rejection, or when the manager
        is disconnected before authenticating.
        """
        if self.is_authenticated:
            return True
        if self._state == ConnectionState.DISCONNECTED:
            return False
        waiter: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._auth_waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            return False
        finally:
            if waiter in self._auth_waiters:
                self._auth_waiters.remove(waiter)

    # -- Connect / Disconnect -------------------------------------------------

    async def connect(self, credential: SessionCredential) -> None:
        """Open the channel and send the auth frame.

        A pending backoff timer or live transport is torn down first.
        Returns once the auth frame has been sent or, if the transport
        could not be opened, once a reconnect has been scheduled.

        Raises:
            ShutdownError: If :meth:`shutdown` was called.
        """
        if self._shut_down:
            raise ShutdownError("ConnectionManager has been shut down")

        self._credential = credential
        self._cancel_reconnect()
        self._cancel_auth_timeout()
        await self._close_transport("Reconnecting")
        self._delay = self._reconnect_cfg.min_delay
        await self._open()

    async def disconnect(self) -> None:
        """Close the transport without reconnecting.  ``connect`` may follow."""
        self._generation += 1  # in-flight opens become stale
        self._cancel_reconnect()
        self._cancel_auth_timeout()
        await self._close_transport("Client disconnect")
        self._set_state(ConnectionState.DISCONNECTED)

    async def shutdown(self) -> None:
        """Disconnect and refuse any further ``connect``."""
        self._shut_down = True
        await self.disconnect()
        self._credential = None
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        self._background_tasks.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- Send -----------------------------------------------------------------

    async def send(self, frame: dict[str, Any]) -> None:
        """Send a frame on the authenticated channel.

        Raises:
            NotConnectedError: If the channel is not ``AUTHENTICATED`` or
                the transport closed during the send.
        """
        transport = self._transport
        if self._state != ConnectionState.AUTHENTICATED or transport is None:
            raise NotConnectedError(
                f"Cannot send '{frame.get('type')}' while {self._state.value}"
            )
        data = self._codec.encode(frame)
        try:
            await transport.send(data)
        except (ConnectionClosed, OSError) as exc:
            raise NotConnectedError(f"Transport closed during send: {exc}") from exc
        self._stats.frames_sent += 1

    # -- Internal: open / handshake -------------------------------------------

    async def _open(self) -> None:
        self._generation += 1
        generation = self._generation
        credential = self._current_credential()
        if credential is None:
            return
        self._set_state(ConnectionState.CONNECTING)

        try:
            transport = await asyncio.wait_for(
                self._connector(self._url), timeout=self._connect_timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if generation != self._generation or self._shut_down:
                return
            logger.warning("Failed to open transport: %s", exc or type(exc).__name__)
            self._schedule_reconnect()
            return

        if generation != self._generation or self._shut_down:
            await self._safe_close(transport, "Superseded")
            return

        self._transport = transport
        self._set_state(ConnectionState.AWAITING_AUTH)
        self._recv_task = asyncio.create_task(self._recv_loop(transport))

        try:
            await transport.send(self._codec.auth(credential.token))
        except Exception as exc:
            logger.warning("Failed to send auth frame: %s", exc)
            self._on_transport_lost(transport)
            return
        self._stats.frames_sent += 1

        if self._transport is transport and self._state == ConnectionState.AWAITING_AUTH:
            self._auth_task = asyncio.create_task(self._auth_timeout_after(transport))

    async def _auth_timeout_after(self, transport: Transport) -> None:
        try:
            await asyncio.sleep(self._auth_timeout)
        except asyncio.CancelledError:
            return
        self._auth_task = None
        if transport is self._transport and self._state == ConnectionState.AWAITING_AUTH:
            logger.warning("No auth reply within %.1fs, reconnecting", self._auth_timeout)
            self._on_transport_lost(transport)

    def _current_credential(self) -> SessionCredential | None:
        if self._credential is None:
            return None  # never connected, or shut down
        if self._credential_provider is not None:
            fresh = self._credential_provider()
            if fresh is not None and fresh != self._credential:
                logger.debug("Using refreshed credential for the channel")
                self._credential = fresh
        return self._credential

    def _on_auth_accepted(self) -> None:
        if self._state != ConnectionState.AWAITING_AUTH:
            logger.debug("Ignoring 'authenticated' in state %s", self._state.value)
            return
        self._cancel_auth_timeout()
        self._delay = self._reconnect_cfg.min_delay
        self._stats.auth_count += 1
        self._stats.authenticated_since = time.monotonic()
        logger.info("Realtime channel authenticated")
        self._set_state(ConnectionState.AUTHENTICATED)

    def _on_auth_rejected(self, frame: ControlFrame) -> None:
        reason = frame.payload.get("reason") or frame.payload.get("message")
        logger.error("Realtime auth rejected: %s", reason)

        transport = self._transport
        self._transport = None
        self._recv_task = None  # the caller is the receive loop; it ends on close
        self._cancel_auth_timeout()
        if transport is not None:
            self._fire_task(self._safe_close(transport, "Auth failed"))
        self._set_state(ConnectionState.DISCONNECTED)

        if self._on_auth_failed is not None:
            try:
                result = self._on_auth_failed(AuthRejectedError(reason))
                if asyncio.iscoroutine(result):
                    self._fire_task(result)
            except Exception:
                logger.exception("on_auth_failed callback error")

    # -- Internal: receive loop -----------------------------------------------

    async def _recv_loop(self, transport: Transport) -> None:
        """Read frames until the transport closes."""
        try:
            async for message in transport:
                if transport is not self._transport:
                    return
                self._handle_raw_message(message)
        except asyncio.CancelledError:
            return
        except ConnectionClosed as exc:
            logger.info("Transport closed: %s", exc)
        except Exception as exc:
            logger.warning("Receive loop error: %s", exc)
        else:
            logger.info("Transport closed by peer")
        self._on_transport_lost(transport)

    def _handle_raw_message(self, data: str | bytes) -> None:
        self._stats.frames_received += 1
        try:
            frame = self._codec.decode(data)
        except ProtocolError as exc:
            logger.warning("Dropping malformed frame: %s", exc)
            return

        if isinstance(frame, ControlFrame):
            if frame.type == FRAME_AUTHENTICATED:
                self._on_auth_accepted()
            elif frame.type == FRAME_AUTH_FAILED:
                self._on_auth_rejected(frame)
            return

        if self._state != ConnectionState.AUTHENTICATED:
            logger.debug("Ignoring '%s' received before authentication", frame.type)
            return
        if self._on_event is not None:
            self._on_event(frame)

    # -- Internal: reconnection -----------------------------------------------

    def _on_transport_lost(self, transport: Transport) -> None:
        """Route a dead transport to RECONNECTING."""
        if transport is not self._transport:
            return  # already replaced or torn down
        self._transport = None
        recv_task = self._recv_task
        self._recv_task = None
        if recv_task is not None and recv_task is not asyncio.current_task():
            recv_task.cancel()
        self._cancel_auth_timeout()
        self._fire_task(self._safe_close(transport, "Transport lost"))

        if self._shut_down or self._state == ConnectionState.DISCONNECTED:
            return
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        """Schedule a reconnection attempt with backoff."""
        if self._shut_down or self._credential is None:
            return
        self._cancel_reconnect()

        cfg = self._reconnect_cfg
        delay = min(self._delay, cfg.max_delay)
        self._delay = min(delay * cfg.factor, cfg.max_delay)

        sleep_for = delay
        if cfg.jitter:
            sleep_for = max(0.0, delay + delay * 0.2 * (random.random() - 0.5))

        self._stats.reconnect_count += 1
        self._stats.last_reconnect_delay = delay
        self._stats.authenticated_since = None
        self._set_state(ConnectionState.RECONNECTING)
        logger.info(
            "Reconnecting in %.1fs (attempt %d)", sleep_for, self._stats.reconnect_count
        )
        self._reconnect_task = asyncio.ensure_future(self._reconnect_after(sleep_for))

    async def _reconnect_after(self, delay: float) -> None:
        """Wait, then try to reconnect."""
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        self._reconnect_task = None
        if self._shut_down or self._credential is None:
            return
        await self._open()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task:
            self._reconnect_task.cancel()
            self._reconnect_task = None

    def _cancel_auth_timeout(self) -> None:
        if self._auth_task:
            self._auth_task.cancel()
            self._auth_task = None

    async def _close_transport(self, reason: str) -> None:
        transport = self._transport
        self._transport = None
        recv_task = self._recv_task
        self._recv_task = None
        if recv_task is not None and recv_task is not asyncio.current_task():
            recv_task.cancel()
            await asyncio.gather(recv_task, return_exceptions=True)
        if transport is not None:
            await self._safe_close(transport, reason)

    async def _safe_close(self, transport: Transport, reason: str) -> None:
        try:
            await transport.close(WS_CLOSE_NORMAL, reason)
        except Exception as exc:
            logger.debug("Transport close failed: %s", exc)

    # -- State management -----------------------------------------------------

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state == self._state:
            return
        old = self._state
        self._state = new_state
        logger.debug("State: %s -> %s", old.value, new_state.value)

        if new_state in (ConnectionState.AUTHENTICATED, ConnectionState.DISCONNECTED):
            authenticated = new_state == ConnectionState.AUTHENTICATED
            for waiter in self._auth_waiters:
                if not waiter.done():
                    waiter.set_result(authenticated)

        for listener in list(self._state_listeners):
            try:
                result = listener(new_state)
                if asyncio.iscoroutine(result):
                    self._fire_task(result)
            except Exception:
                logger.exception("State listener error on %s", new_state.value)
