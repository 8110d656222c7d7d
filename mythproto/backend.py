"""
Backend facade for mythproto.

Backend wraps one control connection and offers the handful of commands the
rest of the library needs: announcing the connection, listening for events,
opening file transfers and querying file information. Replies are decoded
through the field tables, so no caller has to know at which index a value
sits in a given protocol version.

Usage:
    async with Backend("mythbox") as backend:
        await backend.announce_monitor("NORMAL")
        await backend.enable_events()
        event = await backend.wait_for_event("SCHEDULE_CHANGE", timeout=60)
"""

from __future__ import annotations

import logging
import socket

from mythproto.config import DEFAULT_BACKEND_PORT, ClientConfig
from mythproto.core.events import Event, EventListener, EventWaiter
from mythproto.protocol.commands import (
    ANN,
    ANN_MONITOR,
    ANN_PLAYBACK,
    ANN_TYPES,
    EVENTS_MODES,
    QUERY_FILE_EXISTS,
    QUERY_HOSTNAME,
    QUERY_SG_FILEQUERY,
    STATUS_OK,
    build_request,
)
from mythproto.protocol.connection import BackendConnection
from mythproto.protocol.encoding import decode_bool
from mythproto.protocol.errors import MalformedFrame, UnsupportedCommand
from mythproto.protocol.fields import FILE_STATUS, STORAGE_GROUP_FILE
from mythproto.protocol.schema import FieldTable, resolver
from mythproto.protocol.versions import ProtocolVersion
from mythproto.streaming.transfer import FileTransfer, TransferOptions

logger = logging.getLogger(__name__)

# Storage group used when none is given.
DEFAULT_STORAGE_GROUP = "Default"

# QUERY_SG_FILEQUERY replies meaning the file was not found.
SG_NOT_FOUND = ("EMPTY LIST", "SLAVE UNREACHABLE")


class Backend:
    """
    Command layer over a single backend connection.

    Attributes:
        connection: The control connection.
        client_name: Name announced to the backend.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_BACKEND_PORT,
        version: ProtocolVersion | int | None = None,
        client_name: str | None = None,
        connection: BackendConnection | None = None,
    ) -> None:
        self.connection = connection or BackendConnection(host, port, version)
        self.client_name = client_name or socket.gethostname()
        self.events_mode: str | None = None

    @classmethod
    def from_config(cls, config: ClientConfig) -> Backend:
        """Create a backend facade from client settings."""
        return cls(
            config.host,
            config.port,
            client_name=config.client_name,
            connection=BackendConnection.from_config(config),
        )

    def __repr__(self) -> str:
        return f"Backend({self.connection!r})"

    async def __aenter__(self) -> Backend:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def version(self) -> ProtocolVersion:
        return self.connection.version

    async def open(self) -> ProtocolVersion:
        """Connect and negotiate. Returns the negotiated version."""
        return await self.connection.open()

    async def close(self) -> None:
        await self.connection.close()

    # -------------------------------------------------------------------------
    # Announce
    # -------------------------------------------------------------------------

    async def announce_playback(self, events_mode: str = "NONE") -> bool:
        """
        Announce the connection as a playback client.

        Args:
            events_mode: Member of EVENTS_MODES ("NONE", "NORMAL",
                "NON_SYSTEM", "SYSTEM_ONLY").

        Returns:
            True if the backend acknowledged the announcement. A refused
            announcement closes the connection.
        """
        return await self._announce(ANN_PLAYBACK, events_mode)

    async def announce_monitor(self, events_mode: str = "NONE") -> bool:
        """
        Announce the connection as a monitor client.

        Monitor connections exist from version 22 on; older backends get a
        playback announcement instead.
        """
        ann_type = ANN_MONITOR
        if not resolver.is_supported(ANN_TYPES, ANN_MONITOR, self.version):
            if resolver.resolve_fallback(ANN_TYPES, ANN_MONITOR, self.version) is None:
                raise UnsupportedCommand(
                    f"{ANN} {ANN_MONITOR}",
                    self.version,
                    resolver.version_range(ANN_TYPES, ANN_MONITOR),
                )
            logger.warning(
                "'ANN %s' is not supported in protocol version %s, using 'ANN %s'",
                ANN_MONITOR,
                self.version,
                ANN_PLAYBACK,
            )
            ann_type = ANN_PLAYBACK
        return await self._announce(ann_type, events_mode)

    async def _announce(self, ann_type: str, events_mode: str) -> bool:
        version = self.version
        if not resolver.is_supported(EVENTS_MODES, events_mode, version):
            logger.warning(
                "Events mode %s is not supported in protocol version %s, using NORMAL",
                events_mode,
                version,
            )
            events_mode = "NORMAL"

        request = build_request(
            version,
            ANN,
            [ann_type, self.client_name, EVENTS_MODES.ordinal(events_mode)],
        )
        await self.connection.write_request(request)

        # Route events away from the reply before reading it.
        if events_mode != "NONE":
            await self.connection.enable_event_mode()

        response = await self.connection.read_response()
        if response.fields[0].upper() != STATUS_OK:
            logger.error("Unable to announce %s connection, backend returned %s", ann_type, list(response.fields))
            # The connection cannot be announced again, so it is of no further use.
            await self.connection.close()
            return False

        self.events_mode = events_mode
        logger.info("Announced %s connection as %s", ann_type, self.client_name)
        return True

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def enable_events(self) -> None:
        """Switch to event mode if the announcement did not already."""
        if not self.connection.event_mode:
            await self.connection.enable_event_mode()

    def add_event_listener(self, listener: EventListener) -> None:
        self.connection.add_event_listener(listener)

    def remove_event_listener(self, listener: EventListener) -> bool:
        return self.connection.remove_event_listener(listener)

    async def wait_for_event(self, name: str, timeout: float | None = None) -> Event:
        """
        Wait for the next event with the given name.

        Raises:
            TimeoutError: If the event did not arrive in time.
            ConnectionError: If the connection failed while waiting.
        """
        waiter = EventWaiter(self.connection.listeners, lambda event: event.name == name)
        return await waiter.wait(timeout)

    # -------------------------------------------------------------------------
    # File transfers
    # -------------------------------------------------------------------------

    async def annotate_file_transfer(
        self,
        file_name: str,
        storage_group: str | None = None,
        options: TransferOptions | None = None,
    ) -> FileTransfer | None:
        """
        Open a file transfer for a file on this backend.

        Returns:
            The transfer, or None if the backend does not have the file.
        """
        if not file_name:
            raise ValueError("No file name specified")
        return await FileTransfer.announce(
            self.connection,
            file_name,
            storage_group,
            options,
            client_name=self.client_name,
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def query_hostname(self) -> str:
        """Host name the backend knows itself by (50 and later)."""
        response = await self.connection.send_request(build_request(self.version, QUERY_HOSTNAME))
        return response.fields[0]

    async def query_file_exists(
        self,
        file_name: str,
        storage_group: str | None = None,
    ) -> dict[str, str] | None:
        """
        Look up a file in a storage group (49 and later).

        Returns:
            FILE_STATUS members mapped to their values (a stat() of the file
            from version 59 on), or None if the file does not exist.
        """
        # The backend only wants the base name.
        base_name = file_name[file_name.rfind("/") :] if "/" in file_name else file_name
        request = build_request(
            self.version,
            QUERY_FILE_EXISTS,
            args=[base_name, storage_group or DEFAULT_STORAGE_GROUP],
        )
        response = await self.connection.send_request(request)

        exists_pos = resolver.resolve_position(FILE_STATUS, "FILE_EXISTS", self.version)
        if not decode_bool(response.fields[exists_pos]):
            return None
        return _map_fields(FILE_STATUS, resolver.active_fields(FILE_STATUS, self.version), response.fields)

    async def query_storage_group_file(
        self,
        host_name: str | None,
        storage_group: str | None,
        file_name: str,
    ) -> dict[str, str] | None:
        """
        Look up a file in a storage group of a given host (44 and later).

        Returns:
            STORAGE_GROUP_FILE members mapped to their values, or None if the
            file was not found.
        """
        if host_name is None:
            host_name = await self.query_hostname()
        request = build_request(
            self.version,
            QUERY_SG_FILEQUERY,
            args=[host_name, storage_group or DEFAULT_STORAGE_GROUP, file_name],
        )
        response = await self.connection.send_request(request)

        if response.fields[0] in SG_NOT_FOUND:
            logger.debug("Storage group file %s not found: %s", file_name, response.fields[0])
            return None

        names = resolver.active_fields(STORAGE_GROUP_FILE, self.version)
        values = response.fields
        if len(values) == len(names) - 1:
            # Plain files are reported without their type.
            values = ("file", *values)
        return _map_fields(STORAGE_GROUP_FILE, names, values)


def _map_fields(table: FieldTable, names: tuple[str, ...], values: tuple[str, ...]) -> dict[str, str]:
    if len(values) < len(names):
        raise MalformedFrame(f"Reply has {len(values)} fields, {len(names)} expected for {table.name}")
    return dict(zip(names, values))
