"""
Configuration management for mythproto.

This module loads the protocol version catalogue and optional client
settings from TOML files. Nothing here is required to use the library:
every setting has a default and the version catalogue ships with the
package.
"""

from __future__ import annotations

import logging
import socket
import tomllib
from dataclasses import dataclass, field, fields
from datetime import date
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Path to the config directory
CONFIG_DIR = Path(__file__).parent

VERSIONS_FILE = CONFIG_DIR / "versions.toml"

# MythTV backends listen for protocol clients on this port by convention.
DEFAULT_BACKEND_PORT = 6543

# Connect and read timeouts used when nothing else is configured (seconds).
DEFAULT_CONNECT_TIMEOUT = 600.0
DEFAULT_READ_TIMEOUT = 600.0

# Read buffer used for file transfers (bytes).
DEFAULT_TRANSFER_BUFFER_SIZE = 128 * 1024


@dataclass(frozen=True)
class VersionEntry:
    """One row of the protocol version catalogue."""

    number: int
    token: str | None = None
    date: date | None = None
    svn_commit: str | None = None
    git_commit: str | None = None
    release: str | None = None


def load_version_table(path: Path | None = None) -> list[VersionEntry]:
    """
    Load the protocol version catalogue.

    Entries are returned in file order, which is the order versions compare in.

    Args:
        path: Alternative catalogue file (defaults to the bundled versions.toml).

    Returns:
        List of VersionEntry in declaration order.
    """
    path = path or VERSIONS_FILE
    with open(path, "rb") as f:
        data = tomllib.load(f)

    entries = [
        VersionEntry(
            number=int(row["number"]),
            token=row.get("token"),
            date=row.get("date"),
            svn_commit=row.get("svn_commit"),
            git_commit=row.get("git_commit"),
            release=row.get("release"),
        )
        for row in data.get("versions", [])
    ]
    logger.debug("Loaded %d protocol versions from %s", len(entries), path)
    return entries


@dataclass
class ClientConfig:
    """
    Connection settings for a backend client.

    Attributes:
        host: Backend host name or address.
        port: Backend command port.
        protocol_version: Version to offer first (None means the newest known).
        connect_timeout: Seconds allowed for the TCP connect.
        read_timeout: Seconds allowed for a single response read.
        read_budget: Overall idle budget for the background event reader
            (seconds, None for no budget).
        client_name: Name announced to the backend (defaults to the host name).
        transfer_buffer_size: Buffer size for file transfer streams.
    """

    host: str = "localhost"
    port: int = DEFAULT_BACKEND_PORT
    protocol_version: int | None = None
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float | None = DEFAULT_READ_TIMEOUT
    read_budget: float | None = None
    client_name: str = field(default_factory=socket.gethostname)
    transfer_buffer_size: int = DEFAULT_TRANSFER_BUFFER_SIZE

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClientConfig:
        """Build a config from a mapping, ignoring (and logging) unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key in known:
                kwargs[key] = value
            else:
                logger.warning("Ignoring unknown backend setting: %s", key)
        return cls(**kwargs)


def load_config(path: Path | str | None = None) -> ClientConfig:
    """
    Load client settings from a TOML file.

    The file holds a ``[backend]`` table whose keys match ClientConfig
    attributes. A missing path yields the defaults.

    Args:
        path: Path to the settings file, or None.

    Returns:
        The loaded ClientConfig.
    """
    if path is None:
        return ClientConfig()

    path = Path(path)
    if not path.exists():
        logger.warning("Config file not found: %s, using defaults", path)
        return ClientConfig()

    with open(path, "rb") as f:
        data = tomllib.load(f)

    config = ClientConfig.from_dict(data.get("backend", {}))
    logger.info("Loaded backend settings from %s", path)
    return config
