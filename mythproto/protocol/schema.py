"""
Version-ranged field tables.

The backend adds, drops and reorders fields from one protocol revision to the
next. Instead of sprinkling version comparisons through the code, every
version-dependent message shape is described once as a FieldTable: an ordered
list of named members, each with the inclusive range of versions it is sent
in. The SchemaResolver answers, for a table and a negotiated version:

- which members are on the wire and in what order (active_fields)
- whether a member exists at all (is_supported)
- where a member sits in a frame (resolve_position)
- which older or newer equivalent to use when it does not (resolve_fallback)

Commands, announce types and event names are field tables as well, so the
same resolver drives command gating on a connection.

Usage:
    FILE_STATUS = register_table(FieldTable("file_status", [
        FieldSpec("FILE_EXISTS"),
        FieldSpec("FILE_PATH"),
        FieldSpec("SIZE", since=59),
    ]))

    resolver.active_fields(FILE_STATUS, ProtocolVersion.get(58))
    # -> ("FILE_EXISTS", "FILE_PATH")
"""

from __future__ import annotations

import functools
import logging
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from mythproto.protocol.errors import SchemaError
from mythproto.protocol.versions import ProtocolVersion

logger = logging.getLogger(__name__)

# Returned by resolve_position for members not on the wire.
NOT_FOUND = -1


def _version(value: ProtocolVersion | int | None) -> ProtocolVersion | None:
    if value is None:
        return None
    return ProtocolVersion.coerce(value)


@dataclass(frozen=True)
class VersionRange:
    """
    Inclusive range of protocol versions. Either end may be open.

    Attributes:
        since: First version in the range, or None for "from the start".
        until: Last version in the range, or None for "up to the latest".
        from_fallback: Oldest version before `since` that can use an
            equivalent of the feature.
        to_fallback: Newest version after `until` that can use an
            equivalent of the feature.
    """

    since: ProtocolVersion | None = None
    until: ProtocolVersion | None = None
    from_fallback: ProtocolVersion | None = None
    to_fallback: ProtocolVersion | None = None

    @classmethod
    def of(
        cls,
        since: ProtocolVersion | int | None = None,
        until: ProtocolVersion | int | None = None,
        from_fallback: ProtocolVersion | int | None = None,
        to_fallback: ProtocolVersion | int | None = None,
    ) -> VersionRange:
        """Build a range from version numbers."""
        return cls(
            _version(since),
            _version(until),
            _version(from_fallback),
            _version(to_fallback),
        )

    def __contains__(self, version: object) -> bool:
        if not isinstance(version, ProtocolVersion):
            return False
        if self.since is not None and version < self.since:
            return False
        if self.until is not None and version > self.until:
            return False
        return True

    def fallback_for(self, version: ProtocolVersion) -> ProtocolVersion | None:
        """
        Version whose equivalent request should be built for `version`.

        Returns `version` itself when the range contains it, the matching
        fallback version when `version` lies in a fallback zone, else None.
        """
        if version in self:
            return version
        if self.since is not None and version < self.since:
            if self.from_fallback is not None and version >= self.from_fallback:
                return self.from_fallback
        elif self.until is not None and version > self.until:
            if self.to_fallback is not None and version <= self.to_fallback:
                return self.to_fallback
        return None

    @property
    def is_open(self) -> bool:
        return self.since is None and self.until is None

    def __str__(self) -> str:
        since = "-" if self.since is None else str(self.since)
        until = "-" if self.until is None else str(self.until)
        return f"[{since},{until}]"


# Range used by members without their own bounds, unless the table says otherwise.
ALL_VERSIONS = VersionRange()


@dataclass(frozen=True)
class FieldSpec:
    """
    One member of a field table.

    Versions are given as numbers so tables read like the protocol notes.

    Attributes:
        name: Symbolic member name.
        since: First version sending the member (inclusive).
        until: Last version sending the member (inclusive).
        from_fallback: See VersionRange.
        to_fallback: See VersionRange.
        position: Pinned wire index, overriding declaration order.
    """

    name: str
    since: int | None = None
    until: int | None = None
    from_fallback: int | None = None
    to_fallback: int | None = None
    position: int | None = None

    @property
    def has_range(self) -> bool:
        return self.since is not None or self.until is not None

    @functools.cached_property
    def version_range(self) -> VersionRange:
        return VersionRange.of(self.since, self.until, self.from_fallback, self.to_fallback)


class FieldTable:
    """
    Ordered set of field specs describing one message shape.

    Attributes:
        name: Unique table name, used for registration and caching.
        default_range: Range applied to members without their own bounds.
    """

    def __init__(
        self,
        name: str,
        specs: Iterable[FieldSpec],
        default_range: VersionRange = ALL_VERSIONS,
    ) -> None:
        self.name = name
        self.default_range = default_range
        self._specs = tuple(specs)
        self._by_name: dict[str, FieldSpec] = {}
        for spec in self._specs:
            if spec.name in self._by_name:
                raise SchemaError(f"Duplicate member {spec.name!r} in table {name!r}")
            self._by_name[spec.name] = spec

    def __iter__(self) -> Iterator[FieldSpec]:
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __repr__(self) -> str:
        return f"FieldTable({self.name!r}, {len(self._specs)} members)"

    def spec(self, name: str) -> FieldSpec:
        """
        Get the spec for a member.

        Raises:
            SchemaError: If the table has no such member.
        """
        try:
            return self._by_name[name]
        except KeyError:
            raise SchemaError(f"Table {self.name!r} has no member {name!r}") from None

    def ordinal(self, name: str) -> int:
        """Declaration index of a member, independent of any version."""
        return self._specs.index(self.spec(name))

    def range_of(self, name: str) -> VersionRange:
        """Range of a member, falling back to the table default."""
        spec = self.spec(name)
        if spec.has_range:
            return spec.version_range
        if spec.from_fallback is not None or spec.to_fallback is not None:
            return VersionRange(
                self.default_range.since,
                self.default_range.until,
                spec.version_range.from_fallback,
                spec.version_range.to_fallback,
            )
        return self.default_range


class SchemaResolver:
    """
    Resolves field tables against protocol versions.

    Results are cached per (table, version) and returned as tuples, so the
    resolver can be shared freely between tasks and threads.
    """

    def __init__(self) -> None:
        self._tables: dict[str, FieldTable] = {}
        self._cache: dict[tuple[str, int], tuple[str, ...]] = {}
        self._lock = threading.Lock()

    def register(self, table: FieldTable) -> FieldTable:
        """
        Register a table. Registering the same table twice is harmless.

        Raises:
            SchemaError: If a different table already uses the name.
        """
        with self._lock:
            existing = self._tables.get(table.name)
            if existing is not None and existing is not table:
                raise SchemaError(f"A different table named {table.name!r} is registered")
            self._tables[table.name] = table
        return table

    def table(self, table: FieldTable | str) -> FieldTable:
        """
        Look up a registered table by name or instance.

        Raises:
            SchemaError: If the table is not registered.
        """
        name = table.name if isinstance(table, FieldTable) else table
        registered = self._tables.get(name)
        if registered is None or (isinstance(table, FieldTable) and registered is not table):
            raise SchemaError(f"Unknown field table: {name!r}")
        return registered

    def active_fields(
        self,
        table: FieldTable | str,
        version: ProtocolVersion,
    ) -> tuple[str, ...]:
        """
        Members sent in `version`, in wire order.

        Args:
            table: Registered table or its name.
            version: Negotiated protocol version.

        Returns:
            Member names; empty if no member is active.
        """
        resolved = self.table(table)
        key = (resolved.name, version.ordinal)

        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        result = self._compute(resolved, version)
        with self._lock:
            # Another caller may have raced us; both results are identical.
            return self._cache.setdefault(key, result)

    def _compute(self, table: FieldTable, version: ProtocolVersion) -> tuple[str, ...]:
        active = [spec for spec in table if version in table.range_of(spec.name)]

        ordered = [spec.name for spec in active if spec.position is None]
        pinned = sorted(
            (spec for spec in active if spec.position is not None),
            key=lambda spec: spec.position or 0,
        )
        taken: dict[int, str] = {}
        for spec in pinned:
            index = spec.position
            assert index is not None
            if index in taken:
                logger.warning(
                    "Position %d of table %s claimed by %s and %s, keeping %s first",
                    index,
                    table.name,
                    taken[index],
                    spec.name,
                    taken[index],
                )
                index = ordered.index(taken[index]) + 1
            else:
                taken[index] = spec.name
            ordered.insert(min(index, len(ordered)), spec.name)

        return tuple(ordered)

    def version_range(self, table: FieldTable | str, member: str) -> VersionRange:
        """Range in which a member is available."""
        return self.table(table).range_of(member)

    def is_supported(
        self,
        table: FieldTable | str,
        member: str,
        version: ProtocolVersion,
    ) -> bool:
        """True if the member is on the wire in `version`."""
        return version in self.version_range(table, member)

    def resolve_position(
        self,
        table: FieldTable | str,
        member: str,
        version: ProtocolVersion,
    ) -> int:
        """
        Wire index of a member in `version`.

        Returns:
            The index, or NOT_FOUND if the member is not sent in `version`.
        """
        resolved = self.table(table)
        resolved.spec(member)
        try:
            return self.active_fields(resolved, version).index(member)
        except ValueError:
            logger.warning(
                "Member %s of table %s is not available in protocol version %s",
                member,
                resolved.name,
                version,
            )
            return NOT_FOUND

    def resolve_fallback(
        self,
        table: FieldTable | str,
        member: str,
        version: ProtocolVersion,
    ) -> ProtocolVersion | None:
        """
        Version whose equivalent request a caller should build.

        The resolver never re-issues anything itself: it returns `version`
        when the member is supported natively, the fallback version when an
        equivalent exists, or None when the member cannot be used at all.
        """
        return self.version_range(table, member).fallback_for(version)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()


# Process-wide resolver holding every table the library defines.
resolver = SchemaResolver()


def register_table(table: FieldTable) -> FieldTable:
    """Register a table with the process-wide resolver."""
    return resolver.register(table)
