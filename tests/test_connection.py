"""
Tests for BackendConnection.

These tests run against the in-process FakeBackend from conftest and cover
version negotiation, command gating, event mode and shutdown.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from mythproto.core.events import ClientErrorEvent, Event, EventWaiter
from mythproto.protocol.commands import build_request
from mythproto.protocol.connection import BackendConnection, ConnectionState
from mythproto.protocol.errors import (
    BackendConnectionError,
    NegotiationFailed,
    ProtocolViolation,
    UnsupportedCommand,
)
from mythproto.protocol.frame import Frame
from mythproto.protocol.versions import ProtocolVersion

from conftest import FakeBackend, FakeSession

V77 = ProtocolVersion.get(77)


# -----------------------------------------------------------------------------
# Helper Functions
# -----------------------------------------------------------------------------


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def connect(backend: FakeBackend, **kwargs: object) -> BackendConnection:
    kwargs.setdefault("read_timeout", 1.0)
    kwargs.setdefault("connect_timeout", 1.0)
    return BackendConnection(backend.host, backend.port, **kwargs)  # type: ignore[arg-type]


def playback_ann(version: ProtocolVersion = V77) -> Frame:
    return build_request(version, "ANN", ["Playback", "testclient", 0])


async def announced(backend: FakeBackend, **kwargs: object) -> BackendConnection:
    conn = connect(backend, **kwargs)
    await conn.open()
    response = await conn.send_request(playback_ann(conn.version))
    assert response.fields == ("OK",)
    return conn


async def event_handler(backend: FakeBackend, session: FakeSession, fields: list[str]) -> None:
    """Wrap the QUERY_HOSTNAME answer between two backend events."""
    if fields[0] == "QUERY_HOSTNAME":
        await session.send("BACKEND_MESSAGE", "SCHEDULE_CHANGE", "empty")
        await session.send("mythbox")
        await session.send("BACKEND_MESSAGE", "RECORDING_LIST_CHANGE ADD 1004", "empty")
    else:
        await session.send("OK")


async def hangup_handler(backend: FakeBackend, session: FakeSession, fields: list[str]) -> None:
    """Drop the connection instead of answering QUERY_HOSTNAME."""
    if fields[0] == "QUERY_HOSTNAME":
        session.close()
    else:
        await session.send("OK")


async def slow_handler(backend: FakeBackend, session: FakeSession, fields: list[str]) -> None:
    if fields[0] == "QUERY_HOSTNAME":
        await asyncio.sleep(0.2)
        await session.send("mythbox")
    else:
        await session.send("OK")


# -----------------------------------------------------------------------------
# Negotiation Tests
# -----------------------------------------------------------------------------


class TestNegotiation:
    """Tests for the version handshake."""

    async def test_accepts_first_offer(self, make_backend) -> None:
        backend = await make_backend(accept_version=88)
        conn = connect(backend)
        assert await conn.open() == ProtocolVersion.get(88)
        assert conn.state is ConnectionState.OPEN
        assert backend.commands() == ["MYTH_PROTO_VERSION 88 XmasGift"]
        await conn.close()

    async def test_retries_with_backend_version(self, fake_backend: FakeBackend) -> None:
        conn = connect(fake_backend)
        version = await conn.open()

        assert version == V77
        assert conn.version == V77
        assert fake_backend.commands() == [
            "MYTH_PROTO_VERSION 88 XmasGift",
            "MYTH_PROTO_VERSION 77 WindMark",
        ]
        # The rejected socket is dropped and a fresh one used for the retry.
        assert len(fake_backend.sessions) == 2
        await conn.close()

    async def test_starts_from_configured_version(self, fake_backend: FakeBackend) -> None:
        conn = connect(fake_backend, version=77)
        await conn.open()
        assert fake_backend.commands() == ["MYTH_PROTO_VERSION 77 WindMark"]
        await conn.close()

    async def test_old_backend_without_token(self, make_backend) -> None:
        backend = await make_backend(accept_version=50)
        conn = connect(backend)
        assert (await conn.open()).number == 50
        assert backend.commands()[-1] == "MYTH_PROTO_VERSION 50"
        await conn.close()

    async def test_no_lower_version_left(self, make_backend) -> None:
        backend = await make_backend(accept_version=0)
        conn = connect(backend)
        with pytest.raises(NegotiationFailed):
            await conn.open()
        assert conn.state is ConnectionState.CLOSED

    async def test_upgrades_to_backend_version(self, make_backend) -> None:
        backend = await make_backend(accept_version=77)
        conn = connect(backend, version=70)

        assert await conn.open() == V77
        assert backend.commands() == [
            "MYTH_PROTO_VERSION 70 53153836",
            "MYTH_PROTO_VERSION 77 WindMark",
        ]
        await conn.close()

    async def test_repeated_version_stops_negotiation(self, make_backend) -> None:
        # Rejects everything, always naming 77.
        backend = await make_backend(accept_version=1, reject_version=77)
        conn = connect(backend)

        with pytest.raises(NegotiationFailed, match="already tried"):
            await conn.open()
        assert backend.commands() == [
            "MYTH_PROTO_VERSION 88 XmasGift",
            "MYTH_PROTO_VERSION 77 WindMark",
        ]
        assert conn.state is ConnectionState.CLOSED

    async def test_unknown_backend_version(self, make_backend) -> None:
        backend = await make_backend(accept_version=1234)
        conn = connect(backend)
        with pytest.raises(ProtocolViolation):
            await conn.open()
        assert conn.state is ConnectionState.CLOSED

    async def test_connection_refused(self, make_backend) -> None:
        backend = await make_backend()
        port = backend.port
        await backend.stop()

        conn = BackendConnection("127.0.0.1", port, connect_timeout=1.0)
        with pytest.raises(BackendConnectionError):
            await conn.open()
        assert conn.state is ConnectionState.CLOSED

    async def test_open_twice_is_harmless(self, fake_backend: FakeBackend) -> None:
        conn = connect(fake_backend)
        await conn.open()
        assert await conn.open() == V77
        assert len(fake_backend.sessions) == 2
        await conn.close()


# -----------------------------------------------------------------------------
# Gating Tests
# -----------------------------------------------------------------------------


class TestGating:
    """Tests for the rules enforced by write_request."""

    async def test_command_before_ann(self, fake_backend: FakeBackend) -> None:
        conn = connect(fake_backend)
        await conn.open()

        with pytest.raises(ProtocolViolation, match="ANN command not sent"):
            await conn.write_request(build_request(V77, "QUERY_HOSTNAME"))
        assert not conn.announced
        await conn.close()

    async def test_ann_twice(self, fake_backend: FakeBackend) -> None:
        conn = await announced(fake_backend)
        assert conn.announced
        assert conn.state is ConnectionState.ANNOUNCED

        with pytest.raises(ProtocolViolation, match="ANN command already sent"):
            await conn.write_request(playback_ann())
        await conn.close()

    async def test_unsupported_command(self, fake_backend: FakeBackend) -> None:
        conn = await announced(fake_backend)
        sent = len(fake_backend.requests)

        with pytest.raises(UnsupportedCommand):
            await conn.write_request(build_request(V77, "QUERY_GENPIXMAP"))
        assert len(fake_backend.requests) == sent
        await conn.close()

    async def test_wrong_frame_version(self, fake_backend: FakeBackend) -> None:
        conn = await announced(fake_backend)
        with pytest.raises(ProtocolViolation, match="wrong version"):
            await conn.write_request(build_request(ProtocolVersion.get(76), "QUERY_HOSTNAME"))
        await conn.close()

    async def test_request_response(self, make_backend) -> None:
        backend = await make_backend(handler=slow_handler)
        conn = await announced(backend)
        response = await conn.send_request(build_request(V77, "QUERY_HOSTNAME"))
        assert response.fields == ("mythbox",)
        assert response.version == V77
        await conn.close()

    async def test_closed_connection(self, fake_backend: FakeBackend) -> None:
        conn = connect(fake_backend)
        with pytest.raises(BackendConnectionError):
            await conn.write_request(build_request(V77, "ANN", ["Playback", "x", 0]))


# -----------------------------------------------------------------------------
# Direct Mode Read-Ahead Tests
# -----------------------------------------------------------------------------


class TestCanReadResponse:
    """Tests for can_read_response without event mode."""

    async def test_reports_pending_response(self, make_backend) -> None:
        backend = await make_backend(handler=slow_handler)
        conn = await announced(backend)

        await conn.write_request(build_request(V77, "QUERY_HOSTNAME"))
        assert not conn.can_read_response()
        await wait_until(conn.can_read_response)

        response = await conn.read_response()
        assert response.fields == ("mythbox",)
        await conn.close()

    async def test_event_mode_refused_while_reading_ahead(self, make_backend) -> None:
        backend = await make_backend(handler=slow_handler)
        conn = await announced(backend)

        await conn.write_request(build_request(V77, "QUERY_HOSTNAME"))
        conn.can_read_response()
        with pytest.raises(ProtocolViolation):
            await conn.enable_event_mode()

        assert (await conn.read_response()).fields == ("mythbox",)
        await conn.close()


# -----------------------------------------------------------------------------
# Event Mode Tests
# -----------------------------------------------------------------------------


class TestEventMode:
    """Tests for event routing, listener isolation and reader failures."""

    async def test_requires_announce(self, fake_backend: FakeBackend) -> None:
        conn = connect(fake_backend)
        await conn.open()
        with pytest.raises(ProtocolViolation):
            await conn.enable_event_mode()
        await conn.close()

    async def test_enable_twice(self, fake_backend: FakeBackend) -> None:
        conn = await announced(fake_backend)
        await conn.enable_event_mode()
        assert conn.event_mode
        with pytest.raises(ProtocolViolation):
            await conn.enable_event_mode()
        await conn.close()

    async def test_events_separated_from_responses(self, make_backend) -> None:
        backend = await make_backend(handler=event_handler)
        conn = await announced(backend)

        received: list[Event] = []

        def broken(event: Event) -> None:
            raise RuntimeError("listener bug")

        conn.add_event_listener(broken)
        conn.add_event_listener(received.append)
        await conn.enable_event_mode()

        response = await conn.send_request(build_request(V77, "QUERY_HOSTNAME"))
        assert response.fields == ("mythbox",)

        await wait_until(lambda: len(received) == 2)
        assert [e.name for e in received] == ["SCHEDULE_CHANGE", "RECORDING_LIST_CHANGE"]
        assert received[1].arguments == ["ADD", "1004"]

        # The failing listener did not stop the connection.
        assert (await conn.send_request(build_request(V77, "QUERY_HOSTNAME"))).fields == ("mythbox",)
        await conn.close()

    async def test_can_read_response_in_event_mode(self, make_backend) -> None:
        backend = await make_backend(handler=event_handler)
        conn = await announced(backend)
        await conn.enable_event_mode()

        assert not conn.can_read_response()
        await conn.write_request(build_request(V77, "QUERY_HOSTNAME"))
        await wait_until(conn.can_read_response)
        assert (await conn.read_response()).fields == ("mythbox",)
        await conn.close()

    async def test_reader_failure(self, make_backend) -> None:
        backend = await make_backend(handler=hangup_handler)
        conn = await announced(backend)
        await conn.enable_event_mode()
        waiter = EventWaiter(conn.listeners, lambda e: isinstance(e, ClientErrorEvent), fail_on_error=False)

        await conn.write_request(build_request(V77, "QUERY_HOSTNAME"))

        with pytest.raises(BackendConnectionError):
            await conn.read_response()
        event = await waiter.wait(timeout=2)
        assert isinstance(event, ClientErrorEvent)
        assert event.error_type == "BackendConnectionError"

        # Later calls keep failing instead of hanging.
        with pytest.raises(BackendConnectionError):
            await conn.read_response()
        with pytest.raises(BackendConnectionError):
            await conn.write_request(build_request(V77, "QUERY_HOSTNAME"))
        await conn.close()

    async def test_reader_stops_without_budget(self, fake_backend: FakeBackend) -> None:
        conn = await announced(fake_backend, read_timeout=0.05)
        await conn.enable_event_mode()
        waiter = EventWaiter(conn.listeners, lambda e: isinstance(e, ClientErrorEvent), fail_on_error=False)

        event = await waiter.wait(timeout=2)
        assert event.error_type == "BackendTimeoutError"
        await conn.close()

    async def test_reader_survives_within_budget(self, fake_backend: FakeBackend) -> None:
        conn = await announced(fake_backend, read_timeout=0.05, read_budget=0.5)
        await conn.enable_event_mode()
        waiter = EventWaiter(conn.listeners, lambda e: isinstance(e, ClientErrorEvent), fail_on_error=False)

        await asyncio.sleep(0.15)
        assert not waiter.done

        event = await waiter.wait(timeout=2)
        assert event.error_type == "BackendTimeoutError"
        await conn.close()


# -----------------------------------------------------------------------------
# Close Tests
# -----------------------------------------------------------------------------


class TestClose:
    """Tests for close()."""

    async def test_sends_done(self, fake_backend: FakeBackend) -> None:
        conn = await announced(fake_backend)
        await conn.close()

        await wait_until(lambda: fake_backend.commands()[-1] == "DONE")
        assert conn.state is ConnectionState.CLOSED
        assert not conn.is_open

    async def test_close_is_idempotent(self, fake_backend: FakeBackend) -> None:
        conn = await announced(fake_backend)
        await conn.enable_event_mode()
        await conn.close()
        await conn.close()

        await wait_until(lambda: "DONE" in fake_backend.commands())
        assert fake_backend.commands().count("DONE") == 1

    async def test_close_never_opened(self) -> None:
        conn = BackendConnection("127.0.0.1", 1)
        await conn.close()
        assert conn.state is ConnectionState.CLOSED

    async def test_context_manager(self, fake_backend: FakeBackend) -> None:
        async with connect(fake_backend) as conn:
            assert conn.is_open
            assert conn.version == V77
        assert conn.state is ConnectionState.CLOSED
