"""
mythproto - A Python client for the MythTV backend protocol.

mythproto speaks the framed request/response protocol of MythTV backends:
it negotiates the protocol version, gates commands by the negotiated
version, delivers unsolicited backend events to listeners and streams files
from backend storage groups.
"""

__version__ = "0.1.0"
__author__ = "mythproto Contributors"
__license__ = "GPL-2.0"

from mythproto.backend import Backend
from mythproto.protocol.connection import BackendConnection
from mythproto.protocol.versions import ProtocolVersion

__all__ = ["Backend", "BackendConnection", "ProtocolVersion", "__version__"]
