"""
Tests for backend events, the listener registry and the event waiter.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from mythproto.core.events import (
    BackendEvent,
    ClientErrorEvent,
    Event,
    EventWaiter,
    ListenerRegistry,
    parse_event,
)
from mythproto.protocol.errors import MalformedFrame
from mythproto.protocol.frame import Frame
from mythproto.protocol.versions import ProtocolVersion

V77 = ProtocolVersion.get(77)


# -----------------------------------------------------------------------------
# Helper Functions
# -----------------------------------------------------------------------------


def backend_event(*fields: str, version: ProtocolVersion = V77) -> BackendEvent:
    event = parse_event(Frame(("BACKEND_MESSAGE", *fields), version))
    assert isinstance(event, BackendEvent)
    return event


def error_event(message: str = "Connection closed by backend") -> ClientErrorEvent:
    event = parse_event(Frame(("CLIENT_MESSAGE", "BackendConnectionError", message), V77))
    assert isinstance(event, ClientErrorEvent)
    return event


# -----------------------------------------------------------------------------
# Parsing Tests
# -----------------------------------------------------------------------------


class TestParseEvent:
    """Tests for parse_event."""

    def test_simple_event(self) -> None:
        event = backend_event("SCHEDULE_CHANGE", "empty")
        assert event.name == "SCHEDULE_CHANGE"
        assert event.arguments == []
        assert event.extra == ["empty"]
        assert event.known
        assert event.supported

    def test_event_arguments(self) -> None:
        event = backend_event("RECORDING_LIST_CHANGE ADD 1004 2011-01-01T12:00:00", "empty")
        assert event.arguments == ["ADD", "1004", "2011-01-01T12:00:00"]

    def test_system_event(self) -> None:
        event = backend_event("SYSTEM_EVENT REC_STARTED CARDID 1 SENDER mythbox")
        assert event.system_event == "REC_STARTED"
        assert backend_event("SCHEDULE_CHANGE").system_event is None

    def test_unknown_event(self) -> None:
        event = backend_event("SOMETHING_NEW")
        assert not event.known
        assert not event.supported

    def test_unsupported_in_version(self) -> None:
        event = backend_event("FILE_WRITTEN /x.mpg 100", version=ProtocolVersion.get(76))
        assert event.known
        assert not event.supported

    def test_client_error(self) -> None:
        frame = Frame(
            ("CLIENT_MESSAGE", "BackendConnectionError", "read failed", "ConnectionResetError", "reset"),
            V77,
        )
        event = parse_event(frame)
        assert isinstance(event, ClientErrorEvent)
        assert event.error_type == "BackendConnectionError"
        assert event.message == "read failed"
        assert event.causes == [("ConnectionResetError", "reset")]
        assert event.to_dict()["causes"] == [["ConnectionResetError", "reset"]]

    def test_not_an_event(self) -> None:
        with pytest.raises(MalformedFrame):
            parse_event(Frame(("OK",), V77))


# -----------------------------------------------------------------------------
# Registry Tests
# -----------------------------------------------------------------------------


class TestListenerRegistry:
    """Tests for ListenerRegistry."""

    @pytest.mark.asyncio
    async def test_dispatch_to_sync_and_async(self) -> None:
        registry = ListenerRegistry()
        sync_listener = MagicMock(return_value=None)
        async_listener = AsyncMock()
        registry.add(sync_listener)
        registry.add(async_listener)

        event = backend_event("SCHEDULE_CHANGE")
        delivered = await registry.dispatch(event)

        assert delivered == 2
        sync_listener.assert_called_once_with(event)
        async_listener.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_failing_listener_isolated(self, caplog: pytest.LogCaptureFixture) -> None:
        registry = ListenerRegistry()
        received: list[Event] = []

        def broken(event: Event) -> None:
            raise RuntimeError("listener bug")

        registry.add(broken)
        registry.add(received.append)

        with caplog.at_level(logging.ERROR):
            delivered = await registry.dispatch(backend_event("SCHEDULE_CHANGE"))

        assert delivered == 1
        assert len(received) == 1
        assert "listener bug" in caplog.text

    @pytest.mark.asyncio
    async def test_remove_during_dispatch(self) -> None:
        registry = ListenerRegistry()
        calls: list[str] = []

        def once(event: Event) -> None:
            calls.append("once")
            registry.remove(once)

        registry.add(once)
        registry.add(lambda event: calls.append("always"))

        await registry.dispatch(backend_event("SCHEDULE_CHANGE"))
        await registry.dispatch(backend_event("SCHEDULE_CHANGE"))

        assert calls == ["once", "always", "always"]

    def test_add_is_idempotent(self) -> None:
        registry = ListenerRegistry()
        listener = MagicMock()
        registry.add(listener)
        registry.add(listener)
        assert len(registry) == 1
        assert listener in registry
        assert registry.remove(listener)
        assert not registry.remove(listener)


# -----------------------------------------------------------------------------
# Waiter Tests
# -----------------------------------------------------------------------------


class TestEventWaiter:
    """Tests for the one-shot EventWaiter."""

    @pytest.mark.asyncio
    async def test_resolves_on_match(self) -> None:
        registry = ListenerRegistry()
        waiter = EventWaiter(registry, lambda e: e.name == "SCHEDULE_CHANGE")
        assert len(registry) == 1

        await registry.dispatch(backend_event("RECORDING_LIST_CHANGE"))
        assert not waiter.done
        match = backend_event("SCHEDULE_CHANGE")
        await registry.dispatch(match)

        assert await waiter.wait(timeout=1) is match
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_timeout_unregisters(self) -> None:
        registry = ListenerRegistry()
        waiter = EventWaiter(registry, lambda e: False)

        with pytest.raises(TimeoutError):
            await waiter.wait(timeout=0.01)
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_cancel_unregisters(self) -> None:
        registry = ListenerRegistry()
        waiter = EventWaiter(registry, lambda e: False)

        assert waiter.cancel()
        assert waiter.cancelled
        assert len(registry) == 0
        with pytest.raises(asyncio.CancelledError):
            await waiter.wait(timeout=1)

    @pytest.mark.asyncio
    async def test_connection_error_fails_waiter(self) -> None:
        registry = ListenerRegistry()
        waiter = EventWaiter(registry, lambda e: e.name == "SCHEDULE_CHANGE")

        await registry.dispatch(error_event())

        with pytest.raises(ConnectionError, match="Connection closed by backend"):
            await waiter.wait(timeout=1)
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_error_ignored_when_not_failing(self) -> None:
        registry = ListenerRegistry()
        waiter = EventWaiter(registry, lambda e: e.name == "SCHEDULE_CHANGE", fail_on_error=False)

        await registry.dispatch(error_event())
        assert not waiter.done
        waiter.cancel()
