"""
Value encoding helpers for frame fields.

Older backends cannot send 64-bit integers as one field; they split them
into a high and a low signed 32-bit half, each written in decimal. Which form
a version uses is recorded in the INT64_FIELDS table.
"""

from __future__ import annotations

from collections.abc import Sequence

from mythproto.protocol.errors import MalformedFrame
from mythproto.protocol.fields import INT64_FIELDS
from mythproto.protocol.schema import resolver
from mythproto.protocol.versions import ProtocolVersion


def _int32(value: int) -> int:
    """Reinterpret the low 32 bits of value as a signed integer."""
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def encode_int64_halves(value: int) -> tuple[str, str]:
    """Split a 64-bit integer into decimal high and low halves."""
    return str(_int32(value >> 32)), str(_int32(value))


def decode_int64_halves(high: str, low: str) -> int:
    """Join decimal high and low halves into a 64-bit integer."""
    try:
        return (int(high) << 32) | (int(low) & 0xFFFFFFFF)
    except ValueError:
        raise MalformedFrame(f"Invalid 64-bit halves: {high!r}, {low!r}") from None


def int64_width(version: ProtocolVersion) -> int:
    """Number of fields a 64-bit integer occupies in `version`."""
    return len(resolver.active_fields(INT64_FIELDS, version))


def encode_int64(value: int, version: ProtocolVersion) -> list[str]:
    """
    Encode a 64-bit integer the way `version` expects it.

    Returns:
        One field from version 66 on, two (high, low) before.
    """
    if resolver.is_supported(INT64_FIELDS, "VALUE", version):
        return [str(value)]
    return list(encode_int64_halves(value))


def decode_int64(fields: Sequence[str], version: ProtocolVersion) -> int:
    """
    Decode a 64-bit integer from the start of `fields`.

    Raises:
        MalformedFrame: If too few fields are given or they are not numbers.
    """
    width = int64_width(version)
    if len(fields) < width:
        raise MalformedFrame(f"Expected {width} fields for a 64-bit value, got {len(fields)}")
    if width == 1:
        try:
            return int(fields[0])
        except ValueError:
            raise MalformedFrame(f"Invalid 64-bit value: {fields[0]!r}") from None
    return decode_int64_halves(fields[0], fields[1])


def encode_bool(value: bool) -> str:
    return "1" if value else "0"


def decode_bool(value: str) -> bool:
    """Decode a protocol boolean ("1"/"0", also "true"/"false")."""
    value = value.strip().lower()
    if value in ("1", "true"):
        return True
    if value in ("0", "false", ""):
        return False
    try:
        return int(value) != 0
    except ValueError:
        raise MalformedFrame(f"Invalid boolean: {value!r}") from None
