"""
MythTV protocol versions.

Every backend release speaks one protocol revision. The client offers the
newest revision it knows and walks down to whatever the backend accepts, so
each connection ends up with one ProtocolVersion that is then stamped on
every frame built for it.

Versions compare by their position in the catalogue (config/versions.toml),
not by number: revision 23056 belongs to the 0.23.1 fixes branch and sorts
between 56 and 57, and the LATEST marker (-1) sorts after everything.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Iterator
from datetime import date

from mythproto.config import VersionEntry, load_version_table

logger = logging.getLogger(__name__)

# Number of the marker version meaning "whatever is newest".
LATEST_NUMBER = -1

# Revisions from this one on must send a handshake token.
TOKEN_THRESHOLD = 62


@functools.total_ordering
class ProtocolVersion:
    """
    A single protocol revision.

    Instances are immutable and unique per number; use ProtocolVersion.get()
    rather than constructing them.

    Attributes:
        number: Revision number as sent in MYTH_PROTO_VERSION.
        ordinal: Position in the catalogue, used for ordering.
        token: Handshake token (revisions 62 and later), or None.
        date: Date the revision was introduced, if known.
        release: MythTV release that shipped this revision, if any.
    """

    __slots__ = ("number", "ordinal", "token", "date", "release", "svn_commit", "git_commit")

    def __init__(self, entry: VersionEntry, ordinal: int) -> None:
        self.number: int = entry.number
        self.ordinal: int = ordinal
        self.token: str | None = entry.token
        self.date: date | None = entry.date
        self.release: str | None = entry.release
        self.svn_commit: str | None = entry.svn_commit
        self.git_commit: str | None = entry.git_commit

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ProtocolVersion):
            return NotImplemented
        return self.ordinal == other.ordinal

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ProtocolVersion):
            return NotImplemented
        return self.ordinal < other.ordinal

    def __hash__(self) -> int:
        return hash(self.ordinal)

    def __str__(self) -> str:
        return str(self.number)

    def __repr__(self) -> str:
        return f"ProtocolVersion({self.number})"

    @property
    def is_latest(self) -> bool:
        return self.number == LATEST_NUMBER

    @property
    def requires_token(self) -> bool:
        """True if the handshake for this version must carry a token."""
        return self.token is not None

    @classmethod
    def get(cls, number: int) -> ProtocolVersion:
        """
        Look up a version by number.

        Raises:
            KeyError: If the number is not in the catalogue.
        """
        try:
            return _catalogue()[number]
        except KeyError:
            raise KeyError(f"Unknown protocol version: {number}") from None

    @classmethod
    def find(cls, number: int) -> ProtocolVersion | None:
        """Look up a version by number, returning None if unknown."""
        return _catalogue().get(number)

    @classmethod
    def coerce(cls, value: ProtocolVersion | int) -> ProtocolVersion:
        """Accept either a ProtocolVersion or its number."""
        if isinstance(value, ProtocolVersion):
            return value
        return cls.get(value)

    @classmethod
    def all(cls) -> Iterator[ProtocolVersion]:
        """Iterate over all versions in order, LATEST included."""
        return iter(_catalogue().values())

    @classmethod
    def latest(cls) -> ProtocolVersion:
        """The LATEST marker, greater than every real revision."""
        return cls.get(LATEST_NUMBER)

    @classmethod
    def max(cls) -> ProtocolVersion:
        """The newest real revision. This is what clients offer first."""
        return max(v for v in cls.all() if not v.is_latest)

    @classmethod
    def min(cls) -> ProtocolVersion:
        """The oldest revision, the floor for version negotiation."""
        return min(cls.all())


@functools.cache
def _catalogue() -> dict[int, ProtocolVersion]:
    """Build the number -> version map from the bundled catalogue."""
    versions: dict[int, ProtocolVersion] = {}
    for ordinal, entry in enumerate(load_version_table()):
        if entry.number in versions:
            logger.warning("Duplicate protocol version %d in catalogue", entry.number)
            continue
        versions[entry.number] = ProtocolVersion(entry, ordinal)
    return versions
