"""
Command catalogue for the MythTV backend protocol.

Each backend command, announce type, sub-command and event name is listed
with the inclusive range of protocol versions it exists in. The tables are
registered with the schema resolver; connections use them to refuse
commands the negotiated backend would not understand.

Command Format:
    The first frame field holds the command name followed by its space
    separated command arguments. Request arguments follow as further fields.

    ANN Playback myhost 0
    QUERY_FILETRANSFER 17[]:[]REQUEST_BLOCK[]:[]65536
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from mythproto.protocol.errors import UnknownCommand, UnsupportedCommand
from mythproto.protocol.frame import BACKEND_MESSAGE, Frame
from mythproto.protocol.schema import FieldSpec, FieldTable, VersionRange, register_table, resolver
from mythproto.protocol.versions import ProtocolVersion

logger = logging.getLogger(__name__)

# Commands used by the connection and transfer layers.
MYTH_PROTO_VERSION = "MYTH_PROTO_VERSION"
ANN = "ANN"
DONE = "DONE"
QUERY_FILETRANSFER = "QUERY_FILETRANSFER"
QUERY_FILE_EXISTS = "QUERY_FILE_EXISTS"
QUERY_SG_FILEQUERY = "QUERY_SG_FILEQUERY"
QUERY_HOSTNAME = "QUERY_HOSTNAME"

# Announce types
ANN_PLAYBACK = "Playback"
ANN_MONITOR = "Monitor"
ANN_FILE_TRANSFER = "FileTransfer"

# QUERY_FILETRANSFER sub-commands
FILETRANSFER_IS_OPEN = "IS_OPEN"
FILETRANSFER_DONE = "DONE"
FILETRANSFER_REQUEST_BLOCK = "REQUEST_BLOCK"
FILETRANSFER_SEEK = "SEEK"
FILETRANSFER_SET_TIMEOUT = "SET_TIMEOUT"
FILETRANSFER_REOPEN = "REOPEN"

# Response status words
ACCEPT = "ACCEPT"
REJECT = "REJECT"
STATUS_OK = "OK"

# Commands that may be written before ANN has been sent.
HANDSHAKE_COMMANDS = frozenset({MYTH_PROTO_VERSION, ANN, DONE})

COMMANDS = register_table(
    FieldTable(
        "commands",
        [
            FieldSpec("MYTH_PROTO_VERSION", since=1),
            FieldSpec("ANN"),
            FieldSpec("DONE"),
            FieldSpec("QUERY_RECORDINGS"),
            FieldSpec("QUERY_RECORDING", since=32),
            FieldSpec("QUERY_FREE_SPACE", since=17),
            FieldSpec("QUERY_FREE_SPACE_LIST", since=17),
            FieldSpec("QUERY_FREESPACE", until=16),
            FieldSpec("QUERY_FREE_SPACE_SUMMARY", since=32),
            FieldSpec("QUERY_LOAD", since=15),
            FieldSpec("QUERY_UPTIME", since=15),
            FieldSpec("QUERY_MEMSTATS", since=15),
            FieldSpec("QUERY_CHECKFILE"),
            FieldSpec("QUERY_GUIDEDATATHROUGH", since=15),
            FieldSpec("QUEUE_TRANSCODE", until=22),
            FieldSpec("QUEUE_TRANSCODE_STOP", until=22),
            FieldSpec("QUEUE_TRANSCODE_CUTLIST", until=22),
            FieldSpec("STOP_RECORDING"),
            FieldSpec("CHECK_RECORDING"),
            FieldSpec("DELETE_RECORDING"),
            FieldSpec("DELETE_FAILED_RECORDING", since=38, until=38),
            FieldSpec("FORCE_DELETE_RECORDING", since=16),
            FieldSpec("REACTIVATE_RECORDING", since=5, until=18),
            FieldSpec("UNDELETE_RECORDING", since=36),
            FieldSpec("RESCHEDULE_RECORDINGS", since=15),
            FieldSpec("FORGET_RECORDING"),
            FieldSpec("QUERY_GETALLPENDING"),
            FieldSpec("QUERY_GETALLSCHEDULED"),
            FieldSpec("QUERY_GETCONFLICTING"),
            FieldSpec("QUERY_GETEXPIRING", since=23),
            FieldSpec("GET_FREE_RECORDER"),
            FieldSpec("GET_FREE_RECORDER_COUNT", since=9),
            FieldSpec("GET_FREE_RECORDER_LIST", since=17),
            FieldSpec("GET_NEXT_FREE_RECORDER", since=3),
            FieldSpec("QUERY_RECORDER"),
            FieldSpec("SET_NEXT_LIVETV_DIR", since=32),
            FieldSpec("SET_CHANNEL_INFO", since=28),
            FieldSpec("QUERY_REMOTEENCODER"),
            FieldSpec("GET_RECORDER_FROM_NUM"),
            FieldSpec("GET_RECORDER_NUM"),
            FieldSpec("QUERY_FILETRANSFER"),
            FieldSpec("QUERY_GENPIXMAP", until=60),
            FieldSpec("QUERY_GENPIXMAP2", since=61),
            FieldSpec("QUERY_PIXMAP_LASTMODIFIED", since=17),
            FieldSpec("QUERY_PIXMAP_GET_IF_MODIFIED", since=49),
            FieldSpec("QUERY_ISRECORDING"),
            FieldSpec("MESSAGE"),
            FieldSpec("FILL_PROGRAM_INFO"),
            FieldSpec("LOCK_TUNER"),
            FieldSpec("FREE_TUNER"),
            FieldSpec("QUERY_IS_ACTIVE_BACKEND"),
            FieldSpec("QUERY_ACTIVE_BACKENDS", since=72),
            FieldSpec("QUERY_COMMBREAK", since=17),
            FieldSpec("QUERY_CUTLIST", since=17),
            FieldSpec("QUERY_BOOKMARK", since=17),
            FieldSpec("SET_BOOKMARK", since=17),
            FieldSpec("QUERY_SETTING", since=17),
            FieldSpec("SET_SETTING", since=17),
            FieldSpec("ALLOW_SHUTDOWN", since=19),
            FieldSpec("BLOCK_SHUTDOWN", since=19),
            FieldSpec("SHUTDOWN_NOW"),
            FieldSpec("BACKEND_MESSAGE"),
            FieldSpec("REFRESH_BACKEND", since=5),
            FieldSpec("OK", since=16),
            FieldSpec("UNKNOWN_COMMAND", since=16),
            FieldSpec("QUERY_TIME_ZONE", since=42),
            FieldSpec("QUERY_FILE_EXISTS", since=49),
            FieldSpec("QUERY_FILE_HASH", since=51),
            FieldSpec("GO_TO_SLEEP", since=45),
            FieldSpec("QUERY_HOSTNAME", since=50),
            FieldSpec("QUERY_SG_GETFILELIST", since=44),
            FieldSpec("QUERY_SG_FILEQUERY", since=44),
            FieldSpec("DOWNLOAD_FILE", since=58),
            FieldSpec("DOWNLOAD_FILE_NOW", since=58),
            FieldSpec("SCAN_VIDEOS", since=64),
            FieldSpec("DELETE_FILE", since=46),
            FieldSpec("GET_FREE_INPUT_INFO", since=87),
        ],
    )
)

ANN_TYPES = register_table(
    FieldTable(
        "ann_types",
        [
            FieldSpec("Playback"),
            FieldSpec("Frontend"),
            FieldSpec("SlaveBackend"),
            FieldSpec("MediaServer", since=68),
            FieldSpec("RingBuffer", until=19),
            FieldSpec("FileTransfer"),
            FieldSpec("Monitor", since=22, from_fallback=0),
        ],
    )
)

# Events-mode argument of ANN Playback/Monitor, sent as the member's index.
EVENTS_MODES = register_table(
    FieldTable(
        "events_modes",
        [
            FieldSpec("NONE"),
            FieldSpec("NORMAL"),
            FieldSpec("NON_SYSTEM", since=57),
            FieldSpec("SYSTEM_ONLY", since=57),
        ],
    )
)

FILE_TRANSFER_COMMANDS = register_table(
    FieldTable(
        "file_transfer_commands",
        [
            FieldSpec("IS_OPEN"),
            FieldSpec("DONE"),
            FieldSpec("REQUEST_BLOCK"),
            FieldSpec("SEEK"),
            FieldSpec("SET_TIMEOUT", since=28),
            FieldSpec("WRITE_BLOCK", since=46),
            FieldSpec("REOPEN", since=70),
        ],
    )
)

RECORDING_COMMANDS = register_table(
    FieldTable(
        "recording_commands",
        [
            FieldSpec("BASENAME", since=32),
            FieldSpec("TIMESLOT", since=32),
        ],
    )
)

REMOTE_ENCODER_COMMANDS = register_table(
    FieldTable(
        "remote_encoder_commands",
        [
            FieldSpec("GET_STATE"),
            FieldSpec("GET_FLAGS", since=37),
            FieldSpec("IS_BUSY"),
            FieldSpec("MATCHES_RECORDING"),
            FieldSpec("START_RECORDING"),
            FieldSpec("RECORD_PENDING"),
            FieldSpec("CANCEL_NEXT_RECORDING", since=37),
            FieldSpec("STOP_RECORDING", since=37),
            FieldSpec("GET_MAX_BITRATE", since=17),
            FieldSpec("GET_CURRENT_RECORDING", since=19),
            FieldSpec("GET_FREE_INPUTS", since=37),
            FieldSpec("GET_SLEEPSTATUS", since=45),
            FieldSpec("GET_RECORDING_STATUS", since=63),
        ],
    )
)

RECORDER_COMMANDS = register_table(
    FieldTable(
        "recorder_commands",
        [
            FieldSpec("IS_RECORDING"),
            FieldSpec("GET_FRAMERATE"),
            FieldSpec("GET_FRAMES_WRITTEN"),
            FieldSpec("GET_FILE_POSITION"),
            FieldSpec("GET_FREE_SPACE", until=19),
            FieldSpec("GET_MAX_BITRATE", since=17),
            FieldSpec("GET_CURRENT_RECORDING", since=19),
            FieldSpec("GET_KEYFRAME_POS"),
            FieldSpec("FILL_POSITION_MAP"),
            FieldSpec("FILL_DURATION_MAP", since=77),
            FieldSpec("SETUP_RING_BUFFER", until=19),
            FieldSpec("GET_RECORDING"),
            FieldSpec("STOP_PLAYING", until=19),
            FieldSpec("FRONTEND_READY"),
            FieldSpec("CANCEL_NEXT_RECORDING"),
            FieldSpec("SPAWN_LIVETV"),
            FieldSpec("STOP_LIVETV"),
            FieldSpec("PAUSE_RECORDER", since=18, until=18),
            FieldSpec("PAUSE"),
            FieldSpec("UNPAUSE", since=18, until=18),
            FieldSpec("FINISH_RECORDING"),
            FieldSpec("SET_LIVE_RECORDING", since=26),
            FieldSpec("TOGGLE_INPUTS", until=26),
            FieldSpec("GET_CONNECTED_INPUTS", since=27, until=36),
            FieldSpec("GET_FREE_INPUTS", since=37),
            FieldSpec("GET_INPUT", since=27),
            FieldSpec("SET_INPUT", since=27),
            FieldSpec("TOGGLE_CHANNEL_FAVORITE"),
            FieldSpec("CHANGE_CHANNEL"),
            FieldSpec("SET_CHANNEL"),
            FieldSpec("SET_SIGNAL_MONITORING_RATE", since=18),
            FieldSpec("GET_COLOUR", since=30),
            FieldSpec("GET_CONTRAST", since=30),
            FieldSpec("GET_BRIGHTNESS", since=30),
            FieldSpec("GET_HUE", since=30),
            FieldSpec("CHANGE_COLOUR"),
            FieldSpec("CHANGE_CONTRAST"),
            FieldSpec("CHANGE_BRIGHTNESS"),
            FieldSpec("CHANGE_HUE"),
            FieldSpec("CHECK_CHANNEL"),
            FieldSpec("SHOULD_SWITCH_CARD", since=17),
            FieldSpec("CHECK_CHANNEL_PREFIX"),
            FieldSpec("GET_NEXT_PROGRAM_INFO"),
            FieldSpec("GET_PROGRAM_INFO", until=20),
            FieldSpec("GET_INPUT_NAME", until=20),
            FieldSpec("GET_CHANNEL_INFO", since=28),
            FieldSpec("REQUEST_BLOCK_RINGBUF", until=19),
            FieldSpec("SEEK_RINGBUF", until=19),
            FieldSpec("DONE_RINGBUF", until=19),
        ],
    )
)

# Event names carried in the second field of a BACKEND_MESSAGE frame.
BACKEND_EVENTS = register_table(
    FieldTable(
        "backend_events",
        [
            FieldSpec("DONE_RECORDING"),
            FieldSpec("UPDATE_FILE_SIZE", since=54),
            FieldSpec("RECORDING_LIST_CHANGE"),
            FieldSpec("UPDATE_PROG_INFO", since=52),
            FieldSpec("MASTER_UPDATE_PROG_INFO", since=54, until=86),
            FieldSpec("MASTER_UPDATE_REC_INFO", since=87),
            FieldSpec("LIVETV_CHAIN", since=20),
            FieldSpec("ASK_RECORDING"),
            FieldSpec("SCHEDULE_CHANGE"),
            FieldSpec("CLEAR_SETTINGS_CACHE", since=23),
            FieldSpec("RESET_IDLETIME", since=40),
            FieldSpec("SYSTEM_EVENT"),
            FieldSpec("COMMFLAG_START"),
            FieldSpec("SHUTDOWN_COUNTDOWN"),
            FieldSpec("SHUTDOWN_NOW"),
            FieldSpec("SIGNAL"),
            FieldSpec("DOWNLOAD_FILE", since=58),
            FieldSpec("VIDEO_LIST_CHANGE", since=63),
            FieldSpec("VIDEO_LIST_NO_CHANGE", since=69),
            FieldSpec("GENERATED_PIXMAP", since=61),
            FieldSpec("FILE_WRITTEN", since=77),
        ],
    )
)

# Sub-command tables keyed by the command that carries them.
SUBCOMMAND_TABLES: dict[str, FieldTable] = {
    ANN: ANN_TYPES,
    QUERY_FILETRANSFER: FILE_TRANSFER_COMMANDS,
    "QUERY_RECORDING": RECORDING_COMMANDS,
    "QUERY_REMOTEENCODER": REMOTE_ENCODER_COMMANDS,
    "QUERY_RECORDER": RECORDER_COMMANDS,
    BACKEND_MESSAGE: BACKEND_EVENTS,
}


def command_range(name: str) -> VersionRange:
    """
    Range of versions in which a command exists.

    Raises:
        UnknownCommand: If the name is not a known command.
    """
    if name not in COMMANDS:
        raise UnknownCommand(name)
    return resolver.version_range(COMMANDS, name)


def check_command(name: str, version: ProtocolVersion) -> None:
    """
    Ensure a command may be sent to a backend speaking `version`.

    Raises:
        UnknownCommand: If the name is not a known command.
        UnsupportedCommand: If the command does not exist in `version`.
    """
    if name not in COMMANDS:
        raise UnknownCommand(name, version)
    version_range = resolver.version_range(COMMANDS, name)
    if version not in version_range:
        raise UnsupportedCommand(name, version, version_range)


def check_subcommand(command: str, name: str, version: ProtocolVersion) -> None:
    """
    Ensure a sub-command (or announce type) exists in `version`.

    Raises:
        UnknownCommand: If the command has no sub-command table or the
            table has no such member.
        UnsupportedCommand: If the sub-command does not exist in `version`.
    """
    table = SUBCOMMAND_TABLES.get(command)
    if table is None or name not in table:
        raise UnknownCommand(f"{command} {name}", version)
    version_range = resolver.version_range(table, name)
    if version not in version_range:
        raise UnsupportedCommand(f"{command} {name}", version, version_range)


def build_request(
    version: ProtocolVersion,
    command: str,
    command_args: Iterable[object] = (),
    args: Iterable[object] = (),
) -> Frame:
    """
    Build a request frame.

    Args:
        version: Version of the connection the request is meant for.
        command: Command name.
        command_args: Arguments joined into the command field with spaces.
        args: Further request fields.

    Returns:
        The request frame.
    """
    head = " ".join([command, *(str(a) for a in command_args)])
    return Frame((head, *(str(a) for a in args)), version)


def build_handshake(version: ProtocolVersion) -> Frame:
    """
    Build the MYTH_PROTO_VERSION frame offering `version`.

    Versions from 62 on append their token, as in
    "MYTH_PROTO_VERSION 77 WindMark".
    """
    command_args: list[object] = [version.number]
    if version.token is not None:
        command_args.append(version.token)
    return build_request(version, MYTH_PROTO_VERSION, command_args)
