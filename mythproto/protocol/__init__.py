"""
Protocol implementation for mythproto.

This package contains the MythTV backend protocol engine:
- frame: The length-prefixed frame codec
- versions: The protocol version catalogue
- schema / fields / commands: Version-ranged field and command tables
- connection: Version negotiation, command gating and event demultiplexing

Import BackendConnection from mythproto.protocol.connection.
"""

from mythproto.protocol.errors import (
    BackendConnectionError,
    BackendTimeoutError,
    MalformedFrame,
    MythProtocolError,
    NegotiationFailed,
    ProtocolViolation,
    SchemaError,
    TransferError,
    UnknownCommand,
    UnsupportedCommand,
)
from mythproto.protocol.frame import Frame
from mythproto.protocol.versions import ProtocolVersion

__all__ = [
    "Frame",
    "ProtocolVersion",
    "MythProtocolError",
    "NegotiationFailed",
    "ProtocolViolation",
    "UnsupportedCommand",
    "UnknownCommand",
    "MalformedFrame",
    "SchemaError",
    "TransferError",
    "BackendConnectionError",
    "BackendTimeoutError",
]
