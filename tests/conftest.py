"""
Shared fixtures for mythproto tests.

FakeBackend is a small in-process MythTV backend built on asyncio.start_server.
It handles the version handshake itself and hands every other request to a
test-supplied handler. Frames are encoded by hand here so the tests do not
depend on the codec they exercise.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable

import pytest_asyncio

DELIMITER = "[]:[]"


def encode(*fields: str) -> bytes:
    """Encode fields as one wire frame."""
    payload = DELIMITER.join(fields).encode("utf-8")
    return f"{len(payload):<8d}".encode("ascii") + payload


class FakeSession:
    """One client socket accepted by the fake backend."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.announce: list[str] | None = None

    async def read(self) -> list[str] | None:
        """Read one frame, or None when the client went away."""
        try:
            prefix = await self.reader.readexactly(8)
            payload = await self.reader.readexactly(int(prefix.decode("ascii").strip()))
        except (asyncio.IncompleteReadError, ConnectionError):
            return None
        return payload.decode("utf-8").split(DELIMITER)

    async def send(self, *fields: str) -> None:
        self.writer.write(encode(*fields))
        await self.writer.drain()

    async def send_raw(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    def close(self) -> None:
        self.writer.close()


Handler = Callable[["FakeBackend", FakeSession, list[str]], Awaitable[None]]


async def default_handler(backend: FakeBackend, session: FakeSession, fields: list[str]) -> None:
    """Acknowledge announcements, answer everything else with OK."""
    await session.send("OK")


class FakeBackend:
    """
    In-process backend on a random local port.

    Attributes:
        accept_version: The only protocol version the backend accepts.
        reject_version: Version named in REJECT replies (defaults to accept_version).
        handler: Coroutine called for every request after the handshake.
        requests: Every frame received, as field lists, in arrival order.
        sessions: Accepted sessions (including rejected handshakes).
    """

    def __init__(
        self,
        accept_version: int = 77,
        handler: Handler | None = None,
        reject_version: int | None = None,
    ) -> None:
        self.accept_version = accept_version
        self.reject_version = accept_version if reject_version is None else reject_version
        self.handler = handler or default_handler
        self.requests: list[list[str]] = []
        self.sessions: list[FakeSession] = []
        self.port = 0
        self._server: asyncio.Server | None = None

    @property
    def host(self) -> str:
        return "127.0.0.1"

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._serve, self.host, 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        for session in self.sessions:
            session.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    def commands(self) -> list[str]:
        """First field of every received frame."""
        return [fields[0] for fields in self.requests]

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        session = FakeSession(reader, writer)
        self.sessions.append(session)
        try:
            while True:
                fields = await session.read()
                if fields is None:
                    break
                self.requests.append(fields)

                if fields[0].startswith("MYTH_PROTO_VERSION"):
                    offered = int(fields[0].split(" ")[1])
                    if offered == self.accept_version:
                        await session.send("ACCEPT", str(offered))
                        continue
                    await session.send("REJECT", str(self.reject_version))
                    break

                if fields[0] == "DONE":
                    break
                if fields[0].startswith("ANN "):
                    session.announce = fields

                await self.handler(self, session, fields)
        except ConnectionError:
            pass
        finally:
            writer.close()


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest_asyncio.fixture
async def fake_backend() -> AsyncIterator[FakeBackend]:
    """A running fake backend accepting protocol version 77."""
    backend = FakeBackend()
    await backend.start()
    yield backend
    await backend.stop()


@pytest_asyncio.fixture
async def make_backend() -> AsyncIterator[Callable[..., Awaitable[FakeBackend]]]:
    """Factory for fake backends with custom versions or handlers."""
    started: list[FakeBackend] = []

    async def factory(
        accept_version: int = 77,
        handler: Handler | None = None,
        reject_version: int | None = None,
    ) -> FakeBackend:
        backend = FakeBackend(accept_version, handler, reject_version)
        await backend.start()
        started.append(backend)
        return backend

    yield factory

    for backend in started:
        await backend.stop()
