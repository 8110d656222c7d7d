"""
Field tables for version-dependent message shapes.

These tables are the single place where the protocol's per-version field
layout is recorded. Code that builds or parses one of these messages asks the
resolver for the active fields instead of comparing versions itself.
"""

from __future__ import annotations

from mythproto.protocol.schema import FieldSpec, FieldTable, register_table

# 64-bit integers travel as two signed 32-bit halves up to version 65 and as
# a single decimal from 66 on.
INT64_FIELDS = register_table(
    FieldTable(
        "int64",
        [
            FieldSpec("HIGH", until=65),
            FieldSpec("LOW", until=65),
            FieldSpec("VALUE", since=66),
        ],
    )
)

# Command arguments of "ANN FileTransfer <client> ...".
FILE_TRANSFER_ANN_COMMAND = register_table(
    FieldTable(
        "file_transfer_ann_command",
        [
            FieldSpec("CLIENT_HOST"),
            FieldSpec("WRITE_MODE", since=46, position=1),
            FieldSpec("READ_AHEAD", since=29),
            FieldSpec("RETRIES", since=29, until=59),
            FieldSpec("TIMEOUT_MS", since=60),
        ],
    )
)

# Request fields following the ANN FileTransfer command field.
FILE_TRANSFER_ANN_ARGS = register_table(
    FieldTable(
        "file_transfer_ann_args",
        [
            FieldSpec("FILE_NAME"),
            FieldSpec("STORAGE_GROUP", since=44),
        ],
    )
)

# Backend reply to ANN FileTransfer.
FILE_TRANSFER_ACK = register_table(
    FieldTable(
        "file_transfer_ack",
        [
            FieldSpec("STATUS"),
            FieldSpec("SOCKET_ID"),
            FieldSpec("FILE_SIZE_HIGH", until=65),
            FieldSpec("FILE_SIZE_LOW", until=65),
            FieldSpec("FILE_SIZE", since=66),
        ],
    )
)

# Reply to QUERY_FILE_EXISTS (a stat() of the file from 59 on).
FILE_STATUS = register_table(
    FieldTable(
        "file_status",
        [
            FieldSpec("FILE_EXISTS"),
            FieldSpec("FILE_PATH"),
            FieldSpec("DEV", since=59),
            FieldSpec("INO", since=59),
            FieldSpec("MODE", since=59),
            FieldSpec("NLINK", since=59),
            FieldSpec("UID", since=59),
            FieldSpec("GID", since=59),
            FieldSpec("RDEV", since=59),
            FieldSpec("SIZE", since=59),
            FieldSpec("BLKSIZE", since=59),
            FieldSpec("BLOCKS", since=59),
            FieldSpec("ATIME", since=59),
            FieldSpec("MTIME", since=59),
            FieldSpec("CTIME", since=59),
        ],
    )
)

# Reply to QUERY_SG_FILEQUERY. Plain files may be reported without FILE_TYPE.
STORAGE_GROUP_FILE = register_table(
    FieldTable(
        "storage_group_file",
        [
            FieldSpec("FILE_TYPE"),
            FieldSpec("FILE_PATH"),
            FieldSpec("LAST_MOD"),
            FieldSpec("FILE_SIZE"),
        ],
    )
)
