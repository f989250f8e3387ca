"""Tests for ConnectionManager (in-memory transport)."""

import asyncio
from unittest.mock import MagicMock

import pytest
import websockets.asyncio.client

from chatsync_client import __version__
from chatsync_client.api import CredentialStore
from chatsync_client.connection import ConnectionManager, open_websocket
from chatsync_client.errors import (
    AuthRejectedError,
    NotConnectedError,
    ShutdownError,
    TransportError,
)
from chatsync_client.events import MessageEvent
from chatsync_client.types import ConnectionState, ReconnectConfig, SessionCredential
from tests.fakes import FakeConnector, wait_until

CREDENTIAL = SessionCredential(token="test-token")


def _manager(connector, reconnect=None, **kwargs) -> ConnectionManager:
    return ConnectionManager(
        "ws://test/ws",
        reconnect=reconnect or ReconnectConfig(min_delay=0.01, max_delay=0.04),
        connector=connector,
        **kwargs,
    )


class TestHandshake:
    @pytest.mark.asyncio
    async def test_initial_state(self, connector):
        manager = _manager(connector)
        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.is_authenticated is False

    @pytest.mark.asyncio
    async def test_connect_sends_auth_frame_first(self, connector):
        manager = _manager(connector)
        await manager.connect(CREDENTIAL)
        assert connector.current.sent[0] == {"type": "auth", "token": "test-token"}
        assert await manager.wait_authenticated(1.0) is True
        assert manager.state == ConnectionState.AUTHENTICATED
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_state_sequence(self, connector):
        manager = _manager(connector)
        states = []
        manager.add_state_listener(states.append)
        await manager.connect(CREDENTIAL)
        await manager.wait_authenticated(1.0)
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.AWAITING_AUTH,
            ConnectionState.AUTHENTICATED,
        ]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_auth_rejected_disconnects_without_reconnect(self):
        connector = FakeConnector(auth_reply="auth_failed")
        on_auth_failed = MagicMock()
        manager = _manager(connector, on_auth_failed=on_auth_failed)

        await manager.connect(CREDENTIAL)
        assert await manager.wait_authenticated(1.0) is False
        assert manager.state == ConnectionState.DISCONNECTED

        on_auth_failed.assert_called_once()
        assert isinstance(on_auth_failed.call_args[0][0], AuthRejectedError)

        await asyncio.sleep(0.05)
        assert connector.attempts == 1
        assert manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_auth_timeout_triggers_reconnect(self):
        connector = FakeConnector(auth_reply=None)
        manager = _manager(connector, auth_timeout=0.02)
        await manager.connect(CREDENTIAL)
        await wait_until(lambda: connector.attempts >= 2)
        assert manager.stats.reconnect_count >= 1
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_events_routed_after_auth(self, connector):
        received = []
        manager = _manager(connector, on_event=received.append)
        await manager.connect(CREDENTIAL)
        await manager.wait_authenticated(1.0)

        connector.current.push(
            {"type": "new_message", "conversationId": 7, "message": {"id": 1}}
        )
        await wait_until(lambda: received)
        assert isinstance(received[0], MessageEvent)
        assert received[0].conversation_id == "7"
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_malformed_frame_dropped(self, connector):
        received = []
        manager = _manager(connector, on_event=received.append)
        await manager.connect(CREDENTIAL)
        await manager.wait_authenticated(1.0)

        connector.current.push("not json")
        connector.current.push({"type": "typing", "conversationId": 1})
        await wait_until(lambda: received)
        assert [e.type for e in received] == ["typing"]
        assert manager.state == ConnectionState.AUTHENTICATED
        await manager.shutdown()


class TestSend:
    @pytest.mark.asyncio
    async def test_send_rejected_when_disconnected(self, connector):
        manager = _manager(connector)
        with pytest.raises(NotConnectedError):
            await manager.send({"type": "subscribe", "channel": "conv:1"})

    @pytest.mark.asyncio
    async def test_send_rejected_while_awaiting_auth(self):
        connector = FakeConnector(auth_reply=None)
        manager = _manager(connector)
        await manager.connect(CREDENTIAL)
        assert manager.state == ConnectionState.AWAITING_AUTH
        with pytest.raises(NotConnectedError):
            await manager.send({"type": "subscribe", "channel": "conv:1"})
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_send_when_authenticated(self, connector):
        manager = _manager(connector)
        await manager.connect(CREDENTIAL)
        await manager.wait_authenticated(1.0)
        await manager.send({"type": "subscribe", "channel": "conv:1"})
        assert connector.current.frames("subscribe") == [
            {"type": "subscribe", "channel": "conv:1"}
        ]
        assert manager.stats.frames_sent == 2
        await manager.shutdown()


class TestReconnect:
    @pytest.mark.asyncio
    async def test_drop_routes_to_reconnecting(self, connector, fast_reconnect):
        manager = _manager(connector, fast_reconnect)
        states = []
        manager.add_state_listener(states.append)
        await manager.connect(CREDENTIAL)
        await manager.wait_authenticated(1.0)

        connector.current.drop()
        await wait_until(lambda: len(connector.sockets) == 2 and manager.is_authenticated)
        assert ConnectionState.RECONNECTING in states
        assert manager.stats.auth_count == 2
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_backoff_doubles_and_caps(self, connector, fast_reconnect):
        manager = _manager(connector, fast_reconnect)
        delays = []

        def record(state):
            if state == ConnectionState.RECONNECTING:
                delays.append(manager.stats.last_reconnect_delay)

        manager.add_state_listener(record)
        await manager.connect(CREDENTIAL)
        await manager.wait_authenticated(1.0)

        connector.fail_times = 3
        connector.current.drop()
        await wait_until(lambda: len(connector.sockets) == 2 and manager.is_authenticated)
        assert delays == [0.01, 0.02, 0.04, 0.04]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_backoff_resets_after_auth(self, fast_reconnect):
        connector = FakeConnector(fail_times=2)
        manager = _manager(connector, fast_reconnect)
        await manager.connect(CREDENTIAL)
        await wait_until(lambda: manager.is_authenticated)
        assert manager.reconnect_delay == fast_reconnect.min_delay
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_backoff_timer(self):
        connector = FakeConnector(fail_times=100)
        manager = _manager(connector, ReconnectConfig(min_delay=0.05, max_delay=0.05))
        await manager.connect(CREDENTIAL)
        assert manager.state == ConnectionState.RECONNECTING

        await manager.shutdown()
        await asyncio.sleep(0.1)
        assert connector.attempts == 1
        assert manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_cancels_pending_timer(self):
        connector = FakeConnector(fail_times=1)
        manager = _manager(connector, ReconnectConfig(min_delay=10.0, max_delay=10.0))
        await manager.connect(CREDENTIAL)
        assert manager.state == ConnectionState.RECONNECTING

        await manager.connect(CREDENTIAL)
        assert await manager.wait_authenticated(1.0) is True
        assert connector.attempts == 2
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_connect_after_shutdown_raises(self, connector):
        manager = _manager(connector)
        await manager.shutdown()
        with pytest.raises(ShutdownError):
            await manager.connect(CREDENTIAL)

    @pytest.mark.asyncio
    async def test_disconnect_then_connect(self, connector):
        manager = _manager(connector)
        await manager.connect(CREDENTIAL)
        await manager.wait_authenticated(1.0)
        await manager.disconnect()
        assert manager.state == ConnectionState.DISCONNECTED
        assert connector.sockets[0].closed is True

        await manager.connect(CREDENTIAL)
        assert await manager.wait_authenticated(1.0) is True
        await manager.shutdown()


class TestDefaultConnector:
    @pytest.mark.asyncio
    async def test_user_agent_carries_package_version(self, monkeypatch):
        seen = {}

        async def capture(url, **kwargs):
            seen.update(kwargs)
            return MagicMock()

        monkeypatch.setattr(websockets.asyncio.client, "connect", capture)
        await open_websocket("ws://test/ws")
        assert seen["user_agent_header"] == f"chatsync-client/{__version__}"

    @pytest.mark.asyncio
    async def test_open_failure_becomes_transport_error(self, monkeypatch):
        async def refuse(url, **kwargs):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(websockets.asyncio.client, "connect", refuse)
        with pytest.raises(TransportError):
            await open_websocket("ws://test/ws")

    @pytest.mark.asyncio
    async def test_manager_retries_after_transport_error(self, monkeypatch, fast_reconnect):
        async def refuse(url, **kwargs):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(websockets.asyncio.client, "connect", refuse)
        manager = ConnectionManager("ws://test/ws", reconnect=fast_reconnect)
        await manager.connect(CREDENTIAL)
        assert manager.state == ConnectionState.RECONNECTING
        await manager.shutdown()


class TestCredentialProvider:
    @pytest.mark.asyncio
    async def test_reconnect_uses_refreshed_credential(self, connector, fast_reconnect):
        store = CredentialStore(CREDENTIAL)
        manager = _manager(connector, fast_reconnect, credential_provider=store.get)
        await manager.connect(CREDENTIAL)
        await manager.wait_authenticated(1.0)

        store.set(SessionCredential(token="new-token"))
        connector.current.drop()
        await wait_until(lambda: len(connector.sockets) == 2 and manager.is_authenticated)

        assert connector.sockets[0].frames("auth") == [{"type": "auth", "token": "test-token"}]
        assert connector.current.frames("auth") == [{"type": "auth", "token": "new-token"}]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_cleared_store_keeps_last_credential(self, connector, fast_reconnect):
        store = CredentialStore(CREDENTIAL)
        manager = _manager(connector, fast_reconnect, credential_provider=store.get)
        await manager.connect(CREDENTIAL)
        await manager.wait_authenticated(1.0)

        store.clear()
        connector.current.drop()
        await wait_until(lambda: len(connector.sockets) == 2 and manager.is_authenticated)
        assert connector.current.frames("auth") == [{"type": "auth", "token": "test-token"}]
        await manager.shutdown()
