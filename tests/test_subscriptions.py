"""Tests for SubscriptionRegistry replay and idempotence."""

import pytest

from chatsync_client.connection import ConnectionManager
from chatsync_client.subscriptions import SubscriptionRegistry
from chatsync_client.types import SessionCredential
from tests.fakes import wait_until

CREDENTIAL = SessionCredential(token="test-token")


def _setup(connector, reconnect):
    manager = ConnectionManager("ws://test/ws", reconnect=reconnect, connector=connector)
    return manager, SubscriptionRegistry(manager)


def _channels(sock, frame_type="subscribe"):
    return [f["channel"] for f in sock.frames(frame_type)]


class TestDesiredSet:
    @pytest.mark.asyncio
    async def test_subscribe_while_disconnected_only_records(self, connector, fast_reconnect):
        manager, registry = _setup(connector, fast_reconnect)
        await registry.subscribe("conv:1")
        assert "conv:1" in registry
        assert connector.attempts == 0

    @pytest.mark.asyncio
    async def test_unsubscribe_non_member_is_noop(self, connector, fast_reconnect):
        manager, registry = _setup(connector, fast_reconnect)
        await registry.unsubscribe("conv:404")
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_unsubscribe_while_disconnected_is_not_replayed(
        self, connector, fast_reconnect
    ):
        manager, registry = _setup(connector, fast_reconnect)
        await registry.subscribe("conv:1")
        await registry.subscribe("conv:2")
        await registry.unsubscribe("conv:2")

        await manager.connect(CREDENTIAL)
        await wait_until(lambda: registry.replay_count == 1 and connector.current.frames("subscribe"))
        assert _channels(connector.current) == ["conv:1"]
        assert connector.current.frames("unsubscribe") == []
        await manager.shutdown()


class TestReplay:
    @pytest.mark.asyncio
    async def test_replayed_set_equals_desired_set(self, connector, fast_reconnect):
        manager, registry = _setup(connector, fast_reconnect)
        for channel in ("conv:1", "conv:2", "user:9"):
            await registry.subscribe(channel)

        await manager.connect(CREDENTIAL)
        await wait_until(lambda: len(connector.current.frames("subscribe")) == 3)
        assert set(_channels(connector.current)) == {"conv:1", "conv:2", "user:9"}
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_reconnect_replays_exactly_once(self, connector, fast_reconnect):
        manager, registry = _setup(connector, fast_reconnect)
        await manager.connect(CREDENTIAL)
        await manager.wait_authenticated(1.0)
        await registry.subscribe("conv:42")
        assert _channels(connector.current) == ["conv:42"]

        connector.fail_times = 2
        connector.current.drop()
        await wait_until(
            lambda: len(connector.sockets) == 2 and registry.replay_count == 2
        )
        await wait_until(lambda: connector.current.frames("subscribe"))
        assert _channels(connector.current) == ["conv:42"]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_set_changes_while_down_are_reflected(self, connector, fast_reconnect):
        manager, registry = _setup(connector, fast_reconnect)
        await manager.connect(CREDENTIAL)
        await manager.wait_authenticated(1.0)
        await registry.subscribe("conv:1")
        await registry.subscribe("conv:2")

        connector.fail_times = 1
        connector.current.drop()
        await wait_until(lambda: not manager.is_authenticated)
        await registry.unsubscribe("conv:1")
        await registry.subscribe("conv:3")

        await wait_until(lambda: len(connector.sockets) == 2 and registry.replay_count == 2)
        await wait_until(lambda: len(connector.current.frames("subscribe")) == 2)
        assert set(_channels(connector.current)) == {"conv:2", "conv:3"}
        assert registry.channels == frozenset({"conv:2", "conv:3"})
        await manager.shutdown()


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_double_subscribe_single_unsubscribe(self, connector, fast_reconnect):
        manager, registry = _setup(connector, fast_reconnect)
        await manager.connect(CREDENTIAL)
        await manager.wait_authenticated(1.0)

        await registry.subscribe("conv:7")
        await registry.subscribe("conv:7")
        await registry.unsubscribe("conv:7")

        assert "conv:7" not in registry
        assert _channels(connector.current) == ["conv:7"]
        assert _channels(connector.current, "unsubscribe") == ["conv:7"]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_subscribe_during_replay_sends_once(self, connector, fast_reconnect):
        manager, registry = _setup(connector, fast_reconnect)
        await registry.subscribe("conv:5")
        await manager.connect(CREDENTIAL)
        await manager.wait_authenticated(1.0)
        # the replay task may not have run yet
        await registry.subscribe("conv:5")
        await wait_until(lambda: registry.replay_count == 1)
        assert _channels(connector.current) == ["conv:5"]
        await manager.shutdown()
