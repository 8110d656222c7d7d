"""
Streaming module for mythproto.

This module transfers files from backend storage groups.

Components:
    FileTransfer: A QUERY_FILETRANSFER session over a dedicated data socket.
    TransferStream: Buffered async reader over a FileTransfer.
"""

from mythproto.streaming.stream import TransferStream
from mythproto.streaming.transfer import FileTransfer, TransferOptions, Whence

__all__ = [
    "FileTransfer",
    "TransferOptions",
    "TransferStream",
    "Whence",
]
