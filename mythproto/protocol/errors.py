"""
Exception hierarchy for the MythTV backend protocol client.

All errors raised by the protocol engine derive from MythProtocolError so
callers can catch everything the library raises with a single clause.
Socket-level faults are additionally OSErrors, which lets code that already
handles connection failures generically keep working.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mythproto.protocol.schema import VersionRange
    from mythproto.protocol.versions import ProtocolVersion


class MythProtocolError(Exception):
    """Base exception for MythTV protocol errors."""

    pass


class NegotiationFailed(MythProtocolError):
    """No protocol version acceptable to both client and backend."""

    pass


class ProtocolViolation(MythProtocolError):
    """A command gating rule was broken or the peer answered out of protocol."""

    pass


class UnsupportedCommand(ProtocolViolation):
    """
    The command is not available in the negotiated protocol version.

    Attributes:
        command: Name of the rejected command.
        version: The connection's negotiated version.
        version_range: The range in which the command is available, if known.
    """

    def __init__(
        self,
        command: str,
        version: ProtocolVersion | None = None,
        version_range: VersionRange | None = None,
        message: str | None = None,
    ) -> None:
        self.command = command
        self.version = version
        self.version_range = version_range
        if message is None:
            message = (
                f"The command '{command}' is only supported in the "
                f"protocol-version range {version_range}, backend speaks {version}."
            )
        super().__init__(message)


class UnknownCommand(UnsupportedCommand):
    """The command name does not appear in any command table."""

    def __init__(self, command: str, version: ProtocolVersion | None = None) -> None:
        super().__init__(command, version, None, f"Unknown command '{command}'.")


class MalformedFrame(MythProtocolError):
    """A frame could not be decoded or has an unexpected shape."""

    pass


class SchemaError(MythProtocolError):
    """Unknown field table or table member."""

    pass


class TransferError(MythProtocolError):
    """Short read, overrun or size mismatch during a file transfer."""

    pass


class BackendConnectionError(MythProtocolError, OSError):
    """Socket-level failure talking to the backend (EOF, reset, refused)."""

    pass


class BackendTimeoutError(BackendConnectionError, TimeoutError):
    """A connect or read exceeded its allowed time."""

    pass
