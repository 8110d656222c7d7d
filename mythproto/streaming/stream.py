"""
Buffered read stream over a file transfer.

Usage:
    transfer = await FileTransfer.announce(connection, "/1004_20110101120000.mpg")
    async with transfer.open_stream() as stream:
        header = await stream.read(188)
        async for chunk in stream:
            out.write(chunk)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from mythproto.config import DEFAULT_TRANSFER_BUFFER_SIZE
from mythproto.protocol.errors import TransferError

if TYPE_CHECKING:
    from mythproto.streaming.transfer import FileTransfer

logger = logging.getLogger(__name__)


class TransferStream:
    """
    Reads a transfer's file through a local buffer.

    The buffer is refilled with one read_block() call whenever it runs
    empty. The stream ends exactly at the transfer's declared file size.
    Closing the stream closes the transfer.
    """

    def __init__(
        self,
        transfer: FileTransfer,
        buffer_size: int = DEFAULT_TRANSFER_BUFFER_SIZE,
    ) -> None:
        if buffer_size <= 0:
            raise ValueError(f"Invalid buffer size: {buffer_size}")
        self.transfer = transfer
        self.buffer_size = buffer_size
        self._buffer = b""
        self._offset = 0
        # Bytes received from the backend so far.
        self._fetched = transfer.position
        # Bytes handed out to the caller so far.
        self._consumed = transfer.position

    async def __aenter__(self) -> TransferStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def __aiter__(self) -> TransferStream:
        return self

    async def __anext__(self) -> bytes:
        chunk = await self.read(self.buffer_size)
        if not chunk:
            raise StopAsyncIteration
        return chunk

    @property
    def position(self) -> int:
        """Bytes consumed from the start of the file."""
        return self._consumed

    @property
    def remaining(self) -> int:
        return max(self.transfer.file_size - self._consumed, 0)

    @property
    def at_eof(self) -> bool:
        return self.remaining == 0

    async def _fill(self) -> bool:
        """Refill the buffer. Returns False at the end of the file."""
        block_size = min(self.transfer.file_size - self._fetched, self.buffer_size)
        if block_size <= 0:
            return False

        block = await self.transfer.read_block(block_size)
        if not block:
            raise TransferError(
                f"Short read of {self.transfer.file_name}: got {self._fetched} "
                f"of {self.transfer.file_size} bytes"
            )
        self._buffer = block
        self._offset = 0
        self._fetched += len(block)
        return True

    async def read(self, n: int = -1) -> bytes:
        """
        Read up to n bytes (all remaining bytes if n is negative).

        Returns:
            The data; empty at the end of the file.

        Raises:
            TransferError: If the backend delivers less than the declared size.
        """
        if n == 0:
            return b""

        parts: list[bytes] = []
        wanted = self.remaining if n < 0 else n
        while wanted > 0:
            if self._offset >= len(self._buffer):
                if not await self._fill():
                    break
            chunk = self._buffer[self._offset : self._offset + wanted]
            self._offset += len(chunk)
            self._consumed += len(chunk)
            wanted -= len(chunk)
            parts.append(chunk)
            if n >= 0:
                # One buffer's worth per call, like a socket read.
                break

        return b"".join(parts)

    async def readexactly(self, n: int) -> bytes:
        """
        Read exactly n bytes.

        Raises:
            TransferError: If the file ends first.
        """
        parts: list[bytes] = []
        missing = n
        while missing > 0:
            chunk = await self.read(missing)
            if not chunk:
                raise TransferError(
                    f"{n} bytes requested but only {n - missing} left in {self.transfer.file_name}"
                )
            parts.append(chunk)
            missing -= len(chunk)
        return b"".join(parts)

    async def close(self) -> None:
        logger.debug(
            "Closing stream of %s at %d/%d bytes",
            self.transfer.file_name,
            self._consumed,
            self.transfer.file_size,
        )
        await self.transfer.close()
