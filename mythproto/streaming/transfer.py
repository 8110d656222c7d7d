"""
File transfers from a MythTV backend.

A file transfer uses two sockets to the same backend:

- the control connection (usually a Playback or Monitor connection) carries
  QUERY_FILETRANSFER requests and their replies
- a dedicated data connection, announced with "ANN FileTransfer", carries
  the raw file bytes

Announce (data connection):
    C: ANN FileTransfer myhost 0 1 2000[]:[]/recording.mpg[]:[]Default
    S: OK[]:[]17[]:[]1529821184

Block transfer (control connection):
    C: QUERY_FILETRANSFER 17[]:[]REQUEST_BLOCK[]:[]65536
    (backend writes up to 65536 bytes to the data connection)
    S: 65536

The backend answers REQUEST_BLOCK only after it has written the whole block
to the data socket. A client that waits for the reply before draining the
data socket can stall the backend on a full send buffer, so read_block()
drains the data socket while polling the control connection for the reply.
"""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from mythproto.config import DEFAULT_TRANSFER_BUFFER_SIZE
from mythproto.protocol.commands import (
    ANN,
    ANN_FILE_TRANSFER,
    COMMANDS,
    FILETRANSFER_DONE,
    FILETRANSFER_IS_OPEN,
    FILETRANSFER_REOPEN,
    FILETRANSFER_REQUEST_BLOCK,
    FILETRANSFER_SEEK,
    FILETRANSFER_SET_TIMEOUT,
    QUERY_FILETRANSFER,
    QUERY_SG_FILEQUERY,
    STATUS_OK,
    build_request,
    check_subcommand,
)
from mythproto.protocol.connection import BackendConnection
from mythproto.protocol.encoding import decode_bool, decode_int64, encode_bool, encode_int64
from mythproto.protocol.errors import BackendConnectionError, MalformedFrame, TransferError
from mythproto.protocol.fields import (
    FILE_STATUS,
    FILE_TRANSFER_ACK,
    FILE_TRANSFER_ANN_ARGS,
    FILE_TRANSFER_ANN_COMMAND,
)
from mythproto.protocol.frame import Frame
from mythproto.protocol.schema import resolver
from mythproto.streaming.stream import TransferStream

if TYPE_CHECKING:
    from mythproto.backend import Backend

logger = logging.getLogger(__name__)

# How long one poll of the data socket waits while a block is pending (seconds).
DATA_POLL_INTERVAL = 0.05


class Whence(IntEnum):
    """Reference point of a seek."""

    ABSOLUTE = 0
    RELATIVE = 1
    END = 2


@dataclass
class TransferOptions:
    """
    Options sent with ANN FileTransfer.

    Attributes:
        use_read_ahead: Let the backend read ahead of requests (29 and later).
        retries: Number of retries for reads (29 to 59).
        timeout_ms: Read timeout in milliseconds (60 and later).
        write_mode: Open the file for writing (46 and later).

    Whichever of retries and timeout_ms is left out is derived from the
    other, 500 ms per retry.
    """

    use_read_ahead: bool = True
    retries: int | None = None
    timeout_ms: int | None = None
    write_mode: bool = False

    def __post_init__(self) -> None:
        if self.timeout_ms is None:
            self.timeout_ms = self.retries * 500 if self.retries is not None and self.retries > 0 else 2000
        if self.retries is None:
            self.retries = self.timeout_ms // 500 if self.timeout_ms > 500 else -1


class FileTransfer:
    """
    An open file transfer session.

    Create sessions with FileTransfer.announce(). Once done() or close() has
    been called the session cannot be used again.

    Attributes:
        control: Connection carrying QUERY_FILETRANSFER requests.
        data: Connection carrying the file bytes.
        socket_id: Backend id of the transfer.
        file_size: Declared size of the remote file in bytes.
        file_name: Remote file name.
        storage_group: Storage group of the file, if given.
    """

    def __init__(
        self,
        control: BackendConnection,
        data: BackendConnection,
        socket_id: int,
        file_size: int,
        file_name: str,
        storage_group: str | None = None,
    ) -> None:
        self.control = control
        self.data = data
        self.socket_id = socket_id
        self.file_size = file_size
        self.file_name = file_name
        self.storage_group = storage_group
        self.position = 0
        self._done = False

    def __repr__(self) -> str:
        return f"FileTransfer({self.socket_id}, {self.file_name!r}, {self.file_size} bytes)"

    async def __aenter__(self) -> FileTransfer:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def is_done(self) -> bool:
        return self._done

    # -------------------------------------------------------------------------
    # Announce
    # -------------------------------------------------------------------------

    @classmethod
    async def announce(
        cls,
        control: BackendConnection,
        file_name: str,
        storage_group: str | None = None,
        options: TransferOptions | None = None,
        client_name: str | None = None,
    ) -> FileTransfer | None:
        """
        Open a data connection and announce a file transfer on it.

        Args:
            control: Open connection to the backend holding the file.
            file_name: Remote file name (e.g. "/1004_20110101120000.mpg").
            storage_group: Storage group to search (44 and later).
            options: Transfer options (defaults to TransferOptions()).
            client_name: Name announced to the backend (defaults to the host name).

        Returns:
            The session, or None if the backend does not have the file.

        Raises:
            MalformedFrame: If the acknowledgement has the wrong shape.
            BackendConnectionError: If the data connection fails.
        """
        options = options or TransferOptions()
        client_name = client_name or socket.gethostname()

        data = BackendConnection(
            control.host,
            control.port,
            control.version,
            connect_timeout=control.connect_timeout,
            read_timeout=control.read_timeout,
        )
        await data.open()

        try:
            version = data.version
            command_values: dict[str, object] = {
                "CLIENT_HOST": client_name,
                "WRITE_MODE": encode_bool(options.write_mode),
                "READ_AHEAD": encode_bool(options.use_read_ahead),
                "RETRIES": options.retries,
                "TIMEOUT_MS": options.timeout_ms,
            }
            arg_values: dict[str, object] = {
                "FILE_NAME": file_name,
                "STORAGE_GROUP": storage_group or "",
            }
            command_args = [
                command_values[name]
                for name in resolver.active_fields(FILE_TRANSFER_ANN_COMMAND, version)
            ]
            args = [arg_values[name] for name in resolver.active_fields(FILE_TRANSFER_ANN_ARGS, version)]
            request = build_request(version, ANN, [ANN_FILE_TRANSFER, *command_args], args)
            ack = await data.send_request(request)

            if ack.fields[0] != STATUS_OK:
                logger.warning(
                    "Backend %s:%d refused transfer of %s: %s",
                    control.host,
                    control.port,
                    file_name,
                    ack.fields[0],
                )
                await data.close()
                return None

            expected = resolver.active_fields(FILE_TRANSFER_ACK, version)
            if len(ack) != len(expected):
                raise MalformedFrame(
                    f"File transfer acknowledgement has {len(ack)} fields, "
                    f"{len(expected)} expected in version {version}"
                )

            socket_id_pos = resolver.resolve_position(FILE_TRANSFER_ACK, "SOCKET_ID", version)
            socket_id = _parse_int(ack.fields[socket_id_pos])
            size_field = "FILE_SIZE" if "FILE_SIZE" in expected else "FILE_SIZE_HIGH"
            size_start = resolver.resolve_position(FILE_TRANSFER_ACK, size_field, version)
            file_size = decode_int64(ack.fields[size_start:], version)
        except BaseException:
            await data.close()
            raise

        logger.info(
            "File transfer %d opened for %s (%d bytes)",
            socket_id,
            file_name,
            file_size,
        )
        return cls(control, data, socket_id, file_size, file_name, storage_group)

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def _request(self, subcommand: str, *args: object) -> Frame:
        version = self.control.version
        check_subcommand(QUERY_FILETRANSFER, subcommand, version)
        return build_request(version, QUERY_FILETRANSFER, [self.socket_id], [subcommand, *args])

    async def _query(self, subcommand: str, *args: object) -> Frame:
        return await self.control.send_request(self._request(subcommand, *args))

    def _ensure_active(self) -> None:
        if self._done:
            raise TransferError(f"File transfer {self.socket_id} is already done")

    async def read_block(self, size: int) -> bytes:
        """
        Read the next block of the file.

        The data socket is drained while the control connection has no reply
        yet; once the reply names the block size, the rest is read exactly.

        Args:
            size: Maximum number of bytes.

        Returns:
            The block (empty at the end of the file).

        Raises:
            TransferError: On a short read, an overrun or a backend read error.
        """
        self._ensure_active()
        if size <= 0:
            return b""

        await self.control.write_request(self._request(FILETRANSFER_REQUEST_BLOCK, size))

        buffer = bytearray()
        try:
            while len(buffer) < size and not self.control.can_read_response():
                buffer += await self.data.read_data(size - len(buffer), timeout=DATA_POLL_INTERVAL)

            reply = await self.control.read_response()
            available = _parse_int(reply.fields[0])
            if available < 0:
                raise TransferError(f"Backend failed to read block of file transfer {self.socket_id}")
            if available < len(buffer):
                raise TransferError(
                    f"More data read than requested: {len(buffer)} bytes read, "
                    f"{available} bytes announced"
                )
            if available > len(buffer):
                buffer += await self.data.read_data_exactly(available - len(buffer))
        except BackendConnectionError as e:
            raise TransferError(f"File transfer {self.socket_id} failed: {e}") from e

        self.position += len(buffer)
        return bytes(buffer)

    async def request_block(self, size: int) -> int:
        """
        Request a block and wait for the reply, without reading any data.

        The caller must read the returned number of bytes from the data
        connection itself. Only safe for blocks that fit the socket buffers;
        prefer read_block().

        Returns:
            Number of bytes the backend wrote to the data connection.
        """
        self._ensure_active()
        reply = await self._query(FILETRANSFER_REQUEST_BLOCK, size)
        available = _parse_int(reply.fields[0])
        if available > 0:
            self.position += available
        return available

    async def seek(
        self,
        current_position: int,
        new_position: int,
        whence: Whence = Whence.ABSOLUTE,
    ) -> int:
        """
        Move the backend's read position.

        The request carries the new position, whence and the current
        position, in that order. Some older clients send the current position
        first; the backend reads pos, whence, curpos. Positions are sent as
        one field from version 66 on and as two 32-bit halves before.

        Args:
            current_position: Position the client has read up to.
            new_position: Target position, interpreted according to whence.
            whence: Reference point of new_position.

        Returns:
            The new absolute position.
        """
        self._ensure_active()
        version = self.control.version
        reply = await self._query(
            FILETRANSFER_SEEK,
            *encode_int64(new_position, version),
            int(whence),
            *encode_int64(current_position, version),
        )
        self.position = decode_int64(reply.fields, version)
        return self.position

    async def is_open(self) -> bool:
        """True if the backend still has the file open."""
        if self._done:
            return False
        reply = await self._query(FILETRANSFER_IS_OPEN)
        return reply.fields[0] == "1"

    async def set_timeout_mode(self, fast: bool) -> bool:
        """Switch the backend between fast and slow read timeouts (28 and later)."""
        reply = await self._query(FILETRANSFER_SET_TIMEOUT, encode_bool(fast))
        return reply.fields[0].upper() == STATUS_OK

    async def reopen(self, file_name: str) -> bool:
        """Let the backend reopen the transfer with another file (70 and later)."""
        self._ensure_active()
        reply = await self._query(FILETRANSFER_REOPEN, file_name)
        reopened = decode_bool(reply.fields[0])
        if reopened:
            self.file_name = file_name
            self.position = 0
        return reopened

    async def done(self) -> bool:
        """
        Tell the backend the transfer is complete.

        Returns:
            True if the session is done.
        """
        if self._done:
            return True
        reply = await self._query(FILETRANSFER_DONE)
        if reply.fields[0].upper() == STATUS_OK:
            self._done = True
        return self._done

    async def close(self) -> None:
        """Finish the transfer and close the data connection. Safe to repeat."""
        try:
            if not self._done and self.control.is_open:
                await self.done()
        except (BackendConnectionError, MalformedFrame) as e:
            logger.warning("Error finishing file transfer %d: %s", self.socket_id, e)
        finally:
            self._done = True
            await self.data.close()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def transfer_to(
        self,
        target: str | Path | BinaryIO,
        buffer_size: int = DEFAULT_TRANSFER_BUFFER_SIZE,
    ) -> int:
        """
        Copy the whole file to a local path or binary file object.

        The session is closed afterwards, whatever happens.

        Returns:
            Number of bytes written.

        Raises:
            FileNotFoundError: If the backend does not have the file open.
            TransferError: If the transfer breaks off.
        """
        try:
            if not await self.is_open():
                raise FileNotFoundError(f"Remote file {self.file_name} can not be opened")

            if isinstance(target, (str, Path)):
                with open(target, "wb") as f:
                    return await self._copy(f, buffer_size)
            return await self._copy(target, buffer_size)
        finally:
            await self.close()

    async def _copy(self, out: BinaryIO, buffer_size: int) -> int:
        written = 0
        while written < self.file_size:
            block = await self.read_block(min(buffer_size, self.file_size - written))
            if not block:
                raise TransferError(
                    f"Transfer of {self.file_name} ended after {written} of {self.file_size} bytes"
                )
            out.write(block)
            written += len(block)
        out.flush()
        logger.debug("Copied %d bytes of %s", written, self.file_name)
        return written

    async def update_file_size(self, backend: Backend) -> bool:
        """
        Refresh file_size, for files that are still being recorded.

        Uses QUERY_FILE_EXISTS from version 59 on and QUERY_SG_FILEQUERY from
        44 on.

        Args:
            backend: Facade of an announced control connection.

        Returns:
            True if the size could be determined.
        """
        version = backend.connection.version
        size: int | None = None

        if resolver.is_supported(FILE_STATUS, "SIZE", version):
            status = await backend.query_file_exists(self.file_name, self.storage_group)
            if status is not None:
                size = _parse_int(status["SIZE"])
        elif resolver.is_supported(COMMANDS, QUERY_SG_FILEQUERY, version):
            info = await backend.query_storage_group_file(
                backend.connection.host, self.storage_group or "", self.file_name
            )
            if info is not None:
                size = _parse_int(info["FILE_SIZE"])
        else:
            logger.warning("Protocol version %s cannot report file sizes", version)
            return False

        if size is None:
            return False
        if size != self.file_size:
            logger.debug("File size of %s changed: %d -> %d", self.file_name, self.file_size, size)
        self.file_size = size
        return True

    def open_stream(self, buffer_size: int = DEFAULT_TRANSFER_BUFFER_SIZE) -> TransferStream:
        """Buffered stream over the rest of the file."""
        return TransferStream(self, buffer_size)


def _parse_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise MalformedFrame(f"Expected a number, got {value!r}") from None
