"""
Backend events for mythproto.

Once a connection is in event mode the backend may push BACKEND_MESSAGE
frames at any time. This module turns those frames into event objects and
fans them out to listeners.

Event types:
- BackendEvent: a BACKEND_MESSAGE pushed by the backend
  (RECORDING_LIST_CHANGE, SCHEDULE_CHANGE, SYSTEM_EVENT, ...)
- ClientErrorEvent: the connection's reader failed; no further events follow

Frame layout of a backend event:
    BACKEND_MESSAGE[]:[]<NAME> <arg> <arg>...[]:[]<extra>[]:[]...

Usage:
    async def on_event(event: BackendEvent | ClientErrorEvent) -> None:
        print(event.name)

    connection.add_event_listener(on_event)

    # Wait for one specific event
    waiter = EventWaiter(connection.listeners, lambda e: e.name == "SCHEDULE_CHANGE")
    event = await waiter.wait(timeout=30)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from mythproto.protocol.commands import BACKEND_EVENTS
from mythproto.protocol.errors import MalformedFrame
from mythproto.protocol.frame import BACKEND_MESSAGE, CLIENT_MESSAGE, Frame
from mythproto.protocol.schema import resolver

logger = logging.getLogger(__name__)

SYSTEM_EVENT = "SYSTEM_EVENT"


@dataclass
class Event:
    """Base class for events delivered to listeners."""

    name: str
    frame: Frame

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "fields": list(self.frame.fields)}


@dataclass
class BackendEvent(Event):
    """
    An unsolicited message pushed by the backend.

    Attributes:
        arguments: Space separated words following the event name.
        extra: Frame fields after the message field.
    """

    arguments: list[str] = field(default_factory=list)
    extra: list[str] = field(default_factory=list)

    @property
    def known(self) -> bool:
        """True if the event name is in the event catalogue."""
        return self.name in BACKEND_EVENTS

    @property
    def supported(self) -> bool:
        """True if the event exists in the frame's protocol version."""
        return self.known and resolver.is_supported(BACKEND_EVENTS, self.name, self.frame.version)

    @property
    def system_event(self) -> str | None:
        """Name of a SYSTEM_EVENT (e.g. "REC_STARTED"), else None."""
        if self.name == SYSTEM_EVENT and self.arguments:
            return self.arguments[0]
        return None


@dataclass
class ClientErrorEvent(Event):
    """
    The connection's reader stopped because of an error.

    Attributes:
        error_type: Exception class name.
        message: Exception message.
        causes: (type, message) of each exception in the cause chain.
    """

    error_type: str = ""
    message: str = ""
    causes: list[tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "error_type": self.error_type,
            "message": self.message,
            "causes": [list(c) for c in self.causes],
        }


def parse_event(frame: Frame) -> BackendEvent | ClientErrorEvent:
    """
    Turn an event-queue frame into an event.

    Raises:
        MalformedFrame: If the frame is neither a backend nor a client message.
    """
    marker = frame.fields[0]
    if marker == BACKEND_MESSAGE:
        message = frame.fields[1] if len(frame) > 1 else ""
        words = message.split(" ")
        return BackendEvent(
            name=words[0],
            frame=frame,
            arguments=[w for w in words[1:] if w],
            extra=list(frame.fields[2:]),
        )
    if marker == CLIENT_MESSAGE:
        rest = list(frame.fields[1:])
        error_type = rest[0] if rest else ""
        message = rest[1] if len(rest) > 1 else ""
        causes = [(rest[i], rest[i + 1] if i + 1 < len(rest) else "") for i in range(2, len(rest), 2)]
        return ClientErrorEvent(
            name=CLIENT_MESSAGE,
            frame=frame,
            error_type=error_type,
            message=message,
            causes=causes,
        )
    raise MalformedFrame(f"Not an event frame: {marker!r}")


# Listener type: plain callables and coroutine functions are both accepted.
EventListener = Callable[[Event], Awaitable[None] | None]


class ListenerRegistry:
    """
    Copy-on-write list of event listeners.

    Adding or removing listeners swaps in a new tuple, so a dispatch loop
    iterating over a snapshot is never disturbed by changes made during
    delivery (including a listener removing itself).
    """

    def __init__(self) -> None:
        self._listeners: tuple[EventListener, ...] = ()

    def __len__(self) -> int:
        return len(self._listeners)

    def __contains__(self, listener: object) -> bool:
        return listener in self._listeners

    def add(self, listener: EventListener) -> None:
        if listener not in self._listeners:
            self._listeners = (*self._listeners, listener)
            logger.debug("Added event listener %s", listener)

    def remove(self, listener: EventListener) -> bool:
        """
        Remove a listener.

        Returns True if the listener was registered.
        """
        if listener not in self._listeners:
            return False
        self._listeners = tuple(item for item in self._listeners if item != listener)
        logger.debug("Removed event listener %s", listener)
        return True

    def snapshot(self) -> tuple[EventListener, ...]:
        return self._listeners

    async def dispatch(self, event: Event) -> int:
        """
        Deliver an event to every listener registered right now.

        A failing listener is logged and does not affect the others.

        Returns:
            Number of listeners that handled the event without raising.
        """
        delivered = 0
        for listener in self.snapshot():
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception("Error in event listener %s for %s", listener, event.name)
        return delivered


class EventWaiter:
    """
    One-shot wait for the first event matching a predicate.

    The waiter registers itself on creation and unregisters on every way
    out: match, timeout, cancel, or the connection reporting an error.
    """

    def __init__(
        self,
        listeners: ListenerRegistry,
        predicate: Callable[[Event], bool],
        fail_on_error: bool = True,
    ) -> None:
        """
        Args:
            listeners: Registry of the connection to watch.
            predicate: Returns True for the awaited event.
            fail_on_error: Resolve with an error if a ClientErrorEvent arrives.
        """
        self._listeners = listeners
        self._predicate = predicate
        self._fail_on_error = fail_on_error
        self._future: asyncio.Future[Event] = asyncio.get_running_loop().create_future()
        listeners.add(self._on_event)

    def _on_event(self, event: Event) -> None:
        if self._future.done():
            return
        if self._fail_on_error and isinstance(event, ClientErrorEvent):
            self._future.set_exception(
                ConnectionError(f"Connection failed: {event.error_type}: {event.message}")
            )
            self._unregister()
        elif self._predicate(event):
            self._future.set_result(event)
            self._unregister()

    def _unregister(self) -> None:
        self._listeners.remove(self._on_event)

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def cancelled(self) -> bool:
        return self._future.cancelled()

    async def wait(self, timeout: float | None = None) -> Event:
        """
        Wait for the matching event.

        Raises:
            TimeoutError: If no match arrived in time.
            asyncio.CancelledError: If the waiter was cancelled.
            ConnectionError: If the connection reported an error first.
        """
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout)
        finally:
            self._unregister()

    def cancel(self) -> bool:
        """Cancel the wait. Returns False if it had already completed."""
        self._unregister()
        return self._future.cancel()
