"""
Backend connection for the MythTV protocol.

A BackendConnection owns one TCP socket to a backend. It negotiates the
protocol version, enforces the command gating rules and, once placed into
event mode, separates unsolicited BACKEND_MESSAGE frames from command
responses.

Lifecycle:
    CLOSED -> CONNECTING -> NEGOTIATING -> OPEN -> ANNOUNCED -> CLOSED

Version negotiation:
    The client offers its newest known version. The backend replies ACCEPT
    or REJECT with its own version; on REJECT the socket is closed and the
    handshake retried with the backend's version, which may be lower or
    higher than the one offered. Negotiation fails when the backend names a
    version that was already tried or the floor version 0.

    C: MYTH_PROTO_VERSION 88 XmasGift      S: REJECT[]:[]77
    C: MYTH_PROTO_VERSION 77 WindMark      S: ACCEPT[]:[]77

Event mode:
    Two background tasks share the socket's read side. The reader task
    decodes frames and routes BACKEND_MESSAGE frames to the event queue and
    everything else to the response queue. The dispatcher task hands events
    to the registered listeners. read_response() then takes responses from
    the queue instead of the socket, so request/response calls keep working
    while events arrive in between.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from mythproto.config import (
    DEFAULT_BACKEND_PORT,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_READ_TIMEOUT,
    ClientConfig,
)
from mythproto.core.events import EventListener, ListenerRegistry, parse_event
from mythproto.protocol.commands import (
    ACCEPT,
    ANN,
    DONE,
    HANDSHAKE_COMMANDS,
    MYTH_PROTO_VERSION,
    REJECT,
    build_handshake,
    build_request,
    check_command,
    check_subcommand,
)
from mythproto.protocol.errors import (
    BackendConnectionError,
    BackendTimeoutError,
    MalformedFrame,
    NegotiationFailed,
    ProtocolViolation,
)
from mythproto.protocol.frame import Frame, client_error_frame, encode_frame, read_frame
from mythproto.protocol.versions import ProtocolVersion

logger = logging.getLogger(__name__)

# How long close() waits for the background tasks to finish (seconds).
TASK_JOIN_TIMEOUT = 2.0

# Placed on the response queue when the reader task ends.
_READER_STOPPED = object()


class ConnectionState(Enum):
    """Connection lifecycle states."""

    CLOSED = "closed"
    CONNECTING = "connecting"
    NEGOTIATING = "negotiating"
    OPEN = "open"
    ANNOUNCED = "announced"


class BackendConnection:
    """
    One protocol connection to a MythTV backend.

    Callers must not interleave writes from several tasks; the connection
    checks gating rules but does not serialize writers.

    Attributes:
        host: Backend host name or address.
        port: Backend command port.
        connect_timeout: Seconds allowed for each TCP connect.
        read_timeout: Seconds allowed for each response read, or None.
        read_budget: Idle budget of the event reader in seconds, or None.
        listeners: Event listeners notified by the dispatcher task.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_BACKEND_PORT,
        version: ProtocolVersion | int | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        read_timeout: float | None = DEFAULT_READ_TIMEOUT,
        read_budget: float | None = None,
    ) -> None:
        """
        Initialize a closed connection.

        Args:
            host: Backend host name or address.
            port: Backend command port.
            version: Version to offer first (defaults to the newest known).
            connect_timeout: Seconds allowed for each TCP connect.
            read_timeout: Seconds allowed for each response read.
            read_budget: Idle budget of the event reader, see enable_event_mode().
        """
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.read_budget = read_budget
        self.listeners = ListenerRegistry()

        self._version = ProtocolVersion.coerce(version) if version is not None else ProtocolVersion.max()
        self._state = ConnectionState.CLOSED
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._announced = False

        # Event mode
        self._responses: asyncio.Queue[object] | None = None
        self._events: asyncio.Queue[Frame] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._dispatcher_task: asyncio.Task[None] | None = None

        # Direct mode: a response being read ahead by can_read_response().
        self._prefetch: asyncio.Task[Frame] | None = None

        # Error that stopped the reader task.
        self._failure: BaseException | None = None

    @classmethod
    def from_config(cls, config: ClientConfig) -> BackendConnection:
        """Create a connection from client settings."""
        return cls(
            config.host,
            config.port,
            version=config.protocol_version,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            read_budget=config.read_budget,
        )

    def __repr__(self) -> str:
        return f"BackendConnection({self.host}:{self.port}, v{self._version}, {self._state.value})"

    async def __aenter__(self) -> BackendConnection:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def version(self) -> ProtocolVersion:
        """Negotiated version (the offered one before open())."""
        return self._version

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state in (ConnectionState.OPEN, ConnectionState.ANNOUNCED)

    @property
    def announced(self) -> bool:
        """True once ANN has been sent on this connection."""
        return self._announced

    @property
    def event_mode(self) -> bool:
        return self._responses is not None

    def add_event_listener(self, listener: EventListener) -> None:
        self.listeners.add(listener)

    def remove_event_listener(self, listener: EventListener) -> bool:
        return self.listeners.remove(listener)

    # -------------------------------------------------------------------------
    # Open / negotiate
    # -------------------------------------------------------------------------

    async def open(self) -> ProtocolVersion:
        """
        Connect and negotiate the protocol version.

        Returns:
            The negotiated version.

        Raises:
            BackendConnectionError: If the backend cannot be reached.
            NegotiationFailed: If no acceptable version is left.
            ProtocolViolation: If the backend answers the handshake oddly.
        """
        if self._state is not ConnectionState.CLOSED:
            logger.warning("Connection to %s:%d already open", self.host, self.port)
            return self._version

        offered = self._version
        tried: set[ProtocolVersion] = set()
        while True:
            tried.add(offered)
            await self._connect()
            self._state = ConnectionState.NEGOTIATING
            try:
                accepted, backend_version = await self._negotiate(offered)
            except BaseException:
                await self._close_socket()
                raise

            if accepted:
                self._version = offered
                self._state = ConnectionState.OPEN
                logger.info(
                    "Connected to %s:%d using protocol version %s",
                    self.host,
                    self.port,
                    offered,
                )
                return offered

            # The backend drops the socket after REJECT.
            await self._close_socket()

            if backend_version in tried:
                raise NegotiationFailed(
                    f"Backend rejected version {offered} and asked for {backend_version}, "
                    f"which was already tried"
                )
            if backend_version <= ProtocolVersion.min():
                raise NegotiationFailed(
                    f"Backend rejected version {offered}, no lower version left "
                    f"(backend speaks {backend_version})"
                )
            logger.warning(
                "Backend %s:%d rejected protocol version %s, retrying with %s",
                self.host,
                self.port,
                offered,
                backend_version,
            )
            offered = backend_version
            self._version = offered

    async def _connect(self) -> None:
        self._state = ConnectionState.CONNECTING
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                self.connect_timeout,
            )
        except TimeoutError as e:
            self._state = ConnectionState.CLOSED
            raise BackendTimeoutError(
                f"Timed out connecting to {self.host}:{self.port}"
            ) from e
        except OSError as e:
            self._state = ConnectionState.CLOSED
            raise BackendConnectionError(
                f"Unable to connect to {self.host}:{self.port}: {e}"
            ) from e
        logger.debug("Socket to %s:%d opened", self.host, self.port)

    async def _negotiate(self, offered: ProtocolVersion) -> tuple[bool, ProtocolVersion]:
        """
        Run one handshake round.

        Returns:
            (accepted, version the backend reported)
        """
        await self._write_frame(build_handshake(offered))
        response = await self._read_direct()

        status = response.fields[0]
        if status == ACCEPT:
            return True, offered
        if status == REJECT:
            if len(response) < 2:
                raise ProtocolViolation("REJECT without a backend version")
            try:
                number = int(response.fields[1])
            except ValueError:
                raise ProtocolViolation(
                    f"Invalid backend version in REJECT: {response.fields[1]!r}"
                ) from None
            backend_version = ProtocolVersion.find(number)
            if backend_version is None:
                raise ProtocolViolation(f"Backend speaks unknown protocol version {number}")
            return False, backend_version
        raise ProtocolViolation(f"Unexpected handshake response: {list(response.fields)}")

    # -------------------------------------------------------------------------
    # Requests and responses
    # -------------------------------------------------------------------------

    async def write_request(self, frame: Frame) -> None:
        """
        Send a request after checking the gating rules.

        Raises:
            ProtocolViolation: Command sent before ANN, ANN sent twice, or
                the frame was built for another version.
            UnsupportedCommand: The negotiated version lacks the command.
            BackendConnectionError: The connection is closed or failed.
        """
        self._ensure_usable()
        name = frame.command_name

        if not self._announced and name not in HANDSHAKE_COMMANDS:
            raise ProtocolViolation(f"Unexpected command {name}. ANN command not sent so far.")
        if self._announced and name == ANN:
            raise ProtocolViolation("ANN command already sent.")

        if name != MYTH_PROTO_VERSION:
            if frame.version != self._version:
                raise ProtocolViolation(
                    f"The request has a wrong version '{frame.version}'. "
                    f"The backend is speaking '{self._version}'."
                )
            check_command(name, self._version)
            if name == ANN:
                words = frame.fields[0].split(" ")
                if len(words) > 1:
                    check_subcommand(ANN, words[1], self._version)

        await self._write_frame(frame)

        if name == ANN:
            self._announced = True
            self._state = ConnectionState.ANNOUNCED

    async def read_response(self) -> Frame:
        """
        Read the next response frame.

        In event mode the frame comes from the response queue, otherwise
        straight from the socket.

        Raises:
            BackendTimeoutError: No response within read_timeout.
            BackendConnectionError: The connection is closed or failed.
        """
        if self._responses is not None:
            try:
                item = await asyncio.wait_for(self._responses.get(), self.read_timeout)
            except TimeoutError as e:
                raise BackendTimeoutError(
                    f"No response from {self.host}:{self.port} within {self.read_timeout}s"
                ) from e
            if item is _READER_STOPPED:
                # Leave the marker for later callers.
                self._responses.put_nowait(item)
                raise BackendConnectionError(
                    f"Connection to {self.host}:{self.port} failed: {self._failure}"
                ) from self._failure
            assert isinstance(item, Frame)
            return item

        self._ensure_usable()
        return await self._read_direct()

    async def send_request(self, frame: Frame) -> Frame:
        """Write a request and read its response."""
        await self.write_request(frame)
        return await self.read_response()

    def can_read_response(self) -> bool:
        """
        True if a complete response can be read without waiting.

        Without event mode, the first call starts reading the next frame in
        the background; read_response() then returns that frame.
        """
        if self._responses is not None:
            return not self._responses.empty()
        if self._reader is None:
            return False
        if self._prefetch is None:
            self._prefetch = asyncio.create_task(read_frame(self._reader, self._version))
        return self._prefetch.done()

    async def _read_direct(self) -> Frame:
        if self._reader is None:
            raise BackendConnectionError(f"Connection to {self.host}:{self.port} is closed")

        if self._prefetch is None:
            coro = read_frame(self._reader, self._version, timeout=self.read_timeout)
            return await self._translate(coro)

        task = self._prefetch
        try:
            frame = await self._translate(asyncio.wait_for(asyncio.shield(task), self.read_timeout))
        except BackendTimeoutError:
            # Keep the read-ahead for the next call.
            raise
        except BaseException:
            self._prefetch = None
            raise
        self._prefetch = None
        return frame

    async def _translate(self, awaitable) -> Frame:  # type: ignore[no-untyped-def]
        """Await a frame read, mapping low-level errors to protocol errors."""
        try:
            return await awaitable
        except TimeoutError as e:
            raise BackendTimeoutError(
                f"No response from {self.host}:{self.port} within {self.read_timeout}s"
            ) from e
        except (BackendConnectionError, MalformedFrame):
            raise
        except OSError as e:
            raise BackendConnectionError(
                f"Error reading from {self.host}:{self.port}: {e}"
            ) from e

    async def _write_frame(self, frame: Frame) -> None:
        if self._writer is None:
            raise BackendConnectionError(f"Connection to {self.host}:{self.port} is closed")
        data = encode_frame(frame)
        logger.debug(">> %s", frame.fields)
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as e:
            raise BackendConnectionError(
                f"Error writing to {self.host}:{self.port}: {e}"
            ) from e

    def _ensure_usable(self) -> None:
        if self._failure is not None:
            raise BackendConnectionError(
                f"Connection to {self.host}:{self.port} failed: {self._failure}"
            ) from self._failure
        if self._writer is None or self._state is ConnectionState.CLOSED:
            raise BackendConnectionError(f"Connection to {self.host}:{self.port} is closed")

    # -------------------------------------------------------------------------
    # Raw data (file transfer sockets)
    # -------------------------------------------------------------------------

    async def read_data(self, size: int, timeout: float | None = None) -> bytes:
        """
        Read up to `size` raw bytes.

        Args:
            size: Maximum number of bytes.
            timeout: Seconds to wait for data. If it expires an empty result is
                returned instead of raising.

        Raises:
            BackendConnectionError: If the stream has ended.
        """
        if self._reader is None:
            raise BackendConnectionError(f"Connection to {self.host}:{self.port} is closed")
        try:
            if timeout is None:
                data = await self._reader.read(size)
            else:
                data = await asyncio.wait_for(self._reader.read(size), timeout)
        except TimeoutError:
            return b""
        except OSError as e:
            raise BackendConnectionError(f"Error reading data from {self.host}:{self.port}: {e}") from e
        if not data and size > 0:
            raise BackendConnectionError(f"Data connection to {self.host}:{self.port} closed")
        return data

    async def read_data_exactly(self, size: int) -> bytes:
        """
        Read exactly `size` raw bytes.

        Raises:
            BackendConnectionError: If the stream ends first.
        """
        if self._reader is None:
            raise BackendConnectionError(f"Connection to {self.host}:{self.port} is closed")
        try:
            return await self._reader.readexactly(size)
        except asyncio.IncompleteReadError as e:
            raise BackendConnectionError(
                f"{size} bytes expected but only {len(e.partial)} bytes available"
            ) from e
        except OSError as e:
            raise BackendConnectionError(f"Error reading data from {self.host}:{self.port}: {e}") from e

    # -------------------------------------------------------------------------
    # Event mode
    # -------------------------------------------------------------------------

    async def enable_event_mode(self) -> None:
        """
        Start the reader and dispatcher tasks.

        Reader timeouts: each wait for a new frame is bounded by read_timeout.
        With a read_budget, a wait that expires while budget remains is
        retried; the budget is reset by every frame. Without a budget the
        first expired wait stops the reader. Either way the failure is
        reported to listeners as a ClientErrorEvent.

        Raises:
            ProtocolViolation: If ANN has not been sent, event mode is already
                on, or a read-ahead response is pending.
        """
        self._ensure_usable()
        if not self._announced:
            raise ProtocolViolation("Event mode requires an announced connection")
        if self._responses is not None:
            raise ProtocolViolation("Event mode already enabled")
        if self._prefetch is not None:
            raise ProtocolViolation("A response is still being read")

        self._responses = asyncio.Queue()
        self._events = asyncio.Queue()
        self._reader_task = asyncio.create_task(
            self._read_loop(), name=f"mythproto-reader-{self.host}:{self.port}"
        )
        self._dispatcher_task = asyncio.create_task(
            self._dispatch_loop(), name=f"mythproto-dispatcher-{self.host}:{self.port}"
        )
        logger.debug("Event mode enabled on %s:%d", self.host, self.port)

    async def _read_loop(self) -> None:
        """Route incoming frames to the event and response queues."""
        assert self._reader is not None
        assert self._responses is not None and self._events is not None
        loop = asyncio.get_running_loop()
        deadline: float | None = None

        try:
            while True:
                if self.read_budget is not None and deadline is None:
                    deadline = loop.time() + self.read_budget

                wait = self.read_timeout
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise BackendTimeoutError(
                            f"No frame from {self.host}:{self.port} within {self.read_budget}s"
                        )
                    wait = remaining if wait is None else min(wait, remaining)

                try:
                    frame = await read_frame(self._reader, self._version, timeout=wait)
                except TimeoutError as e:
                    if deadline is None:
                        raise BackendTimeoutError(
                            f"No frame from {self.host}:{self.port} within {wait}s"
                        ) from e
                    continue

                deadline = None
                if frame.is_event:
                    self._events.put_nowait(frame)
                else:
                    self._responses.put_nowait(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._state is ConnectionState.CLOSED:
                logger.debug("Reader for %s:%d stopped during close: %s", self.host, self.port, e)
            else:
                logger.exception("Reader for %s:%d stopped", self.host, self.port)
            self._failure = e
            self._events.put_nowait(client_error_frame(e, self._version))
        finally:
            self._responses.put_nowait(_READER_STOPPED)

    async def _dispatch_loop(self) -> None:
        """Hand queued events to the listeners, one at a time."""
        assert self._events is not None
        while True:
            frame = await self._events.get()
            try:
                event = parse_event(frame)
            except MalformedFrame:
                logger.warning("Dropping unparsable event frame: %s", frame.fields)
                continue
            await self.listeners.dispatch(event)

    async def _stop_tasks(self) -> None:
        tasks = [t for t in (self._reader_task, self._dispatcher_task) if t is not None]
        self._reader_task = None
        self._dispatcher_task = None
        if not tasks:
            return

        for task in tasks:
            task.cancel()
        _, pending = await asyncio.wait(tasks, timeout=TASK_JOIN_TIMEOUT)
        if pending:
            logger.warning(
                "%d background task(s) of %s:%d did not stop within %.1fs",
                len(pending),
                self.host,
                self.port,
                TASK_JOIN_TIMEOUT,
            )

    # -------------------------------------------------------------------------
    # Close
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """
        Stop background tasks, say DONE and close the socket.

        Safe to call repeatedly and after failures.
        """
        if self._writer is None and self._reader_task is None:
            self._state = ConnectionState.CLOSED
            self._responses = None
            self._events = None
            return

        was_open = self.is_open
        self._state = ConnectionState.CLOSED
        await self._stop_tasks()
        self._responses = None
        self._events = None

        if self._prefetch is not None:
            self._prefetch.cancel()
            self._prefetch = None

        if was_open and self._writer is not None:
            try:
                await self._write_frame(build_request(self._version, DONE))
            except BackendConnectionError as e:
                # The backend may already have dropped us; that is fine.
                logger.debug("DONE not delivered to %s:%d: %s", self.host, self.port, e)

        await self._close_socket()
        logger.info("Connection to %s:%d closed", self.host, self.port)

    async def _close_socket(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        self._state = ConnectionState.CLOSED
        if writer is None:
            return
        try:
            writer.close()
            await writer.wait_closed()
        except OSError as e:
            logger.debug("Error closing socket to %s:%d: %s", self.host, self.port, e)
