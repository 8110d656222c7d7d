"""
Frame codec for the MythTV backend protocol.

Every message on a command socket, whether request, response or unsolicited
event, is one frame.

Frame Format:
    An 8 character ASCII length field, followed by a UTF-8 payload of exactly
    that many bytes. The payload is a list of string fields joined with the
    token "[]:[]".

    [LENGTH: 8 bytes, decimal, space padded][PAYLOAD: LENGTH bytes]

    b"21      QUERY_HOSTNAME[]:[]x"

The length counts encoded bytes, not characters. Backends pad the length with
trailing spaces; leading zeros are accepted on decode as well.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from mythproto.protocol.errors import BackendConnectionError, MalformedFrame
from mythproto.protocol.versions import ProtocolVersion

logger = logging.getLogger(__name__)

# Width of the decimal length prefix.
SIZE_PREFIX_LENGTH = 8

# Separator between payload fields.
DELIMITER = "[]:[]"

# First field of an unsolicited event frame pushed by the backend.
BACKEND_MESSAGE = "BACKEND_MESSAGE"

# First field of a synthetic frame describing a client-side failure.
CLIENT_MESSAGE = "CLIENT_MESSAGE"

_MAX_PAYLOAD_LENGTH = 10**SIZE_PREFIX_LENGTH - 1


@dataclass(frozen=True)
class Frame:
    """
    One protocol message.

    Attributes:
        fields: Payload fields in wire order (at least one).
        version: Protocol version the frame was built for.
        created_at: Creation time (epoch seconds), not part of equality.
    """

    fields: tuple[str, ...]
    version: ProtocolVersion
    created_at: float = field(default_factory=time.time, compare=False)

    def __post_init__(self) -> None:
        if not isinstance(self.fields, tuple):
            object.__setattr__(self, "fields", tuple(self.fields))
        if not self.fields:
            raise ValueError("A frame needs at least one field")

    def __len__(self) -> int:
        return len(self.fields)

    def __getitem__(self, index: int) -> str:
        return self.fields[index]

    @property
    def command_name(self) -> str:
        """Name of the command: the first field up to the first space."""
        return self.fields[0].split(" ", 1)[0]

    @property
    def is_event(self) -> bool:
        return self.fields[0] == BACKEND_MESSAGE

    @property
    def is_client_error(self) -> bool:
        return self.fields[0] == CLIENT_MESSAGE


def encode_frame(frame: Frame) -> bytes:
    """
    Encode a frame for the wire.

    Raises:
        MalformedFrame: If the payload is too large for the length field.
    """
    payload = DELIMITER.join(frame.fields).encode("utf-8")
    if len(payload) > _MAX_PAYLOAD_LENGTH:
        raise MalformedFrame(f"Payload of {len(payload)} bytes does not fit the length field")
    prefix = f"{len(payload):<{SIZE_PREFIX_LENGTH}d}".encode("ascii")
    return prefix + payload


def parse_size_prefix(prefix: bytes) -> int:
    """Parse the 8-byte length field."""
    try:
        size = int(prefix.decode("ascii").strip())
    except (UnicodeDecodeError, ValueError):
        raise MalformedFrame(f"Invalid frame length field: {prefix!r}") from None
    if size < 0:
        raise MalformedFrame(f"Negative frame length: {size}")
    return size


def decode_payload(payload: bytes, version: ProtocolVersion) -> Frame:
    """Split a raw payload into a frame."""
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedFrame(f"Frame payload is not valid UTF-8: {e}") from e
    return Frame(tuple(text.split(DELIMITER)), version)


def decode_frame(data: bytes, version: ProtocolVersion) -> Frame:
    """
    Decode one complete frame from bytes.

    Args:
        data: Length prefix plus payload.
        version: Protocol version to stamp on the frame.

    Returns:
        The decoded frame.

    Raises:
        MalformedFrame: If the data is shorter than the declared length.
    """
    if len(data) < SIZE_PREFIX_LENGTH:
        raise MalformedFrame(f"Frame too short: {len(data)} bytes")
    size = parse_size_prefix(data[:SIZE_PREFIX_LENGTH])
    payload = data[SIZE_PREFIX_LENGTH : SIZE_PREFIX_LENGTH + size]
    if len(payload) < size:
        raise MalformedFrame(f"Expected {size} payload bytes, got {len(payload)}")
    return decode_payload(payload, version)


async def read_frame(
    reader: asyncio.StreamReader,
    version: ProtocolVersion,
    timeout: float | None = None,
) -> Frame:
    """
    Read exactly one frame from a stream.

    The timeout bounds the wait for the length field only. Once a frame has
    started, its payload is read to the end so a timeout can never leave the
    stream in the middle of a frame.

    Args:
        reader: Stream to read from.
        version: Protocol version to stamp on the frame.
        timeout: Seconds to wait for the frame to start, or None.

    Returns:
        The decoded frame.

    Raises:
        TimeoutError: If no complete length field arrived in time.
        BackendConnectionError: If the stream ended before a new frame.
        MalformedFrame: If the stream ended inside a frame.
    """
    try:
        if timeout is None:
            prefix = await reader.readexactly(SIZE_PREFIX_LENGTH)
        else:
            prefix = await asyncio.wait_for(reader.readexactly(SIZE_PREFIX_LENGTH), timeout)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            raise BackendConnectionError("Connection closed by backend") from e
        raise MalformedFrame(
            f"Connection closed inside a length field ({len(e.partial)} bytes)"
        ) from e

    size = parse_size_prefix(prefix)
    try:
        payload = await reader.readexactly(size)
    except asyncio.IncompleteReadError as e:
        raise MalformedFrame(
            f"Connection closed after {len(e.partial)} of {size} payload bytes"
        ) from e

    frame = decode_payload(payload, version)
    logger.debug("<< %s", frame.fields)
    return frame


def client_error_frame(error: BaseException, version: ProtocolVersion) -> Frame:
    """
    Describe a client-side failure as a frame.

    The frame reads [CLIENT_MESSAGE, type, message] followed by a type and
    message pair for every exception in the cause chain.
    """
    fields = [CLIENT_MESSAGE]
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        fields.append(type(current).__name__)
        fields.append(str(current))
        current = current.__cause__ or current.__context__
    return Frame(tuple(fields), version)
