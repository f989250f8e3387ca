"""Tests for EventDispatcher."""

import pytest

from chatsync_client.dispatcher import EventDispatcher
from chatsync_client.events import ServerEvent, decode_event


def _event(event_type="new_message", **payload) -> ServerEvent:
    return decode_event({"type": event_type, **payload})


class TestRegistration:
    def test_on_and_emit(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.on("new_message", received.append)
        event = _event()
        dispatcher.emit(event)
        assert received == [event]

    def test_decorator_form(self):
        dispatcher = EventDispatcher()
        received = []

        @dispatcher.on("typing")
        def handle(event):
            received.append(event.type)

        dispatcher.emit(_event("typing"))
        assert received == ["typing"]

    def test_only_matching_type(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.on("presence", received.append)
        dispatcher.emit(_event("typing"))
        assert received == []

    def test_off(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.on("typing", received.append)
        dispatcher.off("typing", received.append)
        dispatcher.emit(_event("typing"))
        assert received == []
        assert dispatcher.listener_count("typing") == 0

    def test_off_unknown_is_ignored(self):
        dispatcher = EventDispatcher()
        dispatcher.off("typing", print)

    def test_duplicate_registration_delivers_once(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.on("typing", received.append)
        dispatcher.on("typing", received.append)
        dispatcher.emit(_event("typing"))
        assert len(received) == 1

    def test_wildcard_after_typed(self):
        dispatcher = EventDispatcher()
        order = []
        dispatcher.on_any(lambda e: order.append("any"))
        dispatcher.on("typing", lambda e: order.append("typed"))
        dispatcher.emit(_event("typing"))
        assert order == ["typed", "any"]


class TestDelivery:
    def test_delivery_in_arrival_order(self):
        dispatcher = EventDispatcher()
        received = []
        dispatcher.on_any(lambda e: received.append(e.payload["n"]))
        for n in range(5):
            dispatcher.emit(_event("typing", n=n))
        assert received == [0, 1, 2, 3, 4]

    def test_failing_listener_isolated(self):
        dispatcher = EventDispatcher()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        dispatcher.on("typing", broken)
        dispatcher.on("typing", received.append)
        dispatcher.emit(_event("typing"))
        dispatcher.emit(_event("typing"))
        assert len(received) == 2
        assert dispatcher.get_stats()["listener_errors"] == 2

    def test_listener_added_during_emit_waits_for_next_event(self):
        dispatcher = EventDispatcher()
        late = []

        def adder(event):
            dispatcher.on("typing", late.append)

        dispatcher.on("typing", adder)
        dispatcher.emit(_event("typing"))
        assert late == []
        dispatcher.emit(_event("typing"))
        assert len(late) == 1

    @pytest.mark.asyncio
    async def test_async_listener_scheduled(self):
        dispatcher = EventDispatcher()
        received = []

        async def handle(event):
            received.append(event.type)

        dispatcher.on("typing", handle)
        dispatcher.emit(_event("typing"))
        await dispatcher.drain()
        assert received == ["typing"]

    @pytest.mark.asyncio
    async def test_async_listener_error_logged(self):
        dispatcher = EventDispatcher()

        async def broken(event):
            raise RuntimeError("boom")

        dispatcher.on("typing", broken)
        dispatcher.emit(_event("typing"))
        await dispatcher.drain()
        assert dispatcher.get_stats()["listener_errors"] == 1
