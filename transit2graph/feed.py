"""
Timetable Feed Module.

This module streams the tables of a zipped General Transit Feed Specification
(GTFS) archive and builds the read-only route catalogue shared by every
region extraction.

Tables are never loaded wholesale: each one is decoded header-first in
bounded pandas chunks, so memory is governed by what the consumer keeps
rather than by the size of ``stop_times.txt``. Rows are exposed either one at
a time to a callback (:meth:`FeedStreamReader.stream`) or as string-typed
DataFrame chunks for vectorised consumers
(:meth:`FeedStreamReader.iter_chunks`).
"""

# Future annotations for type hints
from __future__ import annotations

# Standard library imports
import logging
import re
import zipfile
from collections import Counter
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from pathlib import Path
from pathlib import PurePosixPath
from types import MappingProxyType
from typing import IO
from typing import TYPE_CHECKING

# Third-party imports
import pandas as pd

# Local imports
from .config import DEFAULT_CHUNKSIZE
from .exceptions import DataQualityError
from .exceptions import SourceFormatError

# Type checking imports
if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Iterable
    from collections.abc import Iterator
    from collections.abc import Mapping
    from types import TracebackType

# Module logger configuration
logger = logging.getLogger(__name__)

__all__ = [
    "AgencyRecord",
    "FeedStreamReader",
    "RouteCatalog",
    "RouteRecord",
    "RowStats",
    "TripRecord",
    "parse_gtfs_times",
]

# GTFS times may run past midnight, e.g. 25:10:00
_GTFS_TIME = r"^\s*(\d+):(\d{2}):(\d{2})\s*$"

Row = dict[str, str | None]


# =============================================================================
# DIAGNOSTICS
# =============================================================================


@dataclass(slots=True)
class RowStats:
    """
    Running seen / kept counters for one streamed table.

    Dropped rows are tallied per reason so upstream feed anomalies can be
    diagnosed from the log without re-running the extraction. Rows that are
    kept but carry an unusable field (an unparsable time, say) are tallied
    under ``flagged``.

    Parameters
    ----------
    table : str
        Table the counters refer to.
    """

    table: str
    seen: int = 0
    kept: int = 0
    dropped: Counter[str] = field(default_factory=Counter)
    flagged: Counter[str] = field(default_factory=Counter)

    def drop(self, reason: str, count: int = 1) -> None:
        """Record ``count`` rows dropped for ``reason``."""
        if count:
            self.dropped[reason] += count

    def flag(self, reason: str, count: int = 1) -> None:
        """Record ``count`` kept rows with an unusable field."""
        if count:
            self.flagged[reason] += count

    def as_dict(self) -> dict[str, object]:
        """Return the counters as a plain dictionary."""
        return {
            "table": self.table,
            "seen": self.seen,
            "kept": self.kept,
            "dropped": dict(self.dropped),
            "flagged": dict(self.flagged),
        }

    def __str__(self) -> str:
        counts = {**self.dropped, **{f"flagged_{k}": v for k, v in self.flagged.items()}}
        reasons = ", ".join(f"{k}={v:,}" for k, v in sorted(counts.items()))
        text = f"{self.table}: seen={self.seen:,} kept={self.kept:,}"
        return f"{text} ({reasons})" if reasons else text


# =============================================================================
# ROW RECORDS
# =============================================================================


def _text(row: Row, key: str) -> str | None:
    value = row.get(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _parse_int(value: str | None) -> int | None:
    """Parse an integer code, tolerating ``"3.0"`` style values."""
    if value is None:
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    if not number.is_integer():
        return None
    return int(number)


@dataclass(frozen=True, slots=True)
class AgencyRecord:
    """One row of ``agency.txt``; the id falls back to the name."""

    agency_id: str
    name: str

    @classmethod
    def from_row(cls, row: Row) -> AgencyRecord:
        """
        Validate a raw agency row.

        Raises
        ------
        DataQualityError
            If the row has neither an id nor a name.
        """
        name = _text(row, "agency_name")
        agency_id = _text(row, "agency_id") or name
        if agency_id is None:
            raise DataQualityError("missing_id")
        return cls(agency_id, name or agency_id)


@dataclass(frozen=True, slots=True)
class RouteRecord:
    """
    One row of ``routes.txt``.

    ``route_type`` is ``None`` when the code is missing or not an integer.
    """

    route_id: str
    agency_id: str
    route_type: int | None
    short_name: str | None
    long_name: str | None

    @classmethod
    def from_row(cls, row: Row) -> RouteRecord:
        """
        Validate a raw route row.

        Raises
        ------
        DataQualityError
            If the route id is missing.
        """
        route_id = _text(row, "route_id")
        if route_id is None:
            raise DataQualityError("missing_id")
        return cls(
            route_id=route_id,
            agency_id=_text(row, "agency_id") or "",
            route_type=_parse_int(_text(row, "route_type")),
            short_name=_text(row, "route_short_name"),
            long_name=_text(row, "route_long_name"),
        )

    @property
    def line_code(self) -> str | None:
        """Public line designation: short name, else long name."""
        return self.short_name or self.long_name


@dataclass(frozen=True, slots=True)
class TripRecord:
    """One row of ``trips.txt``."""

    trip_id: str
    route_id: str

    @classmethod
    def from_row(cls, row: Row) -> TripRecord:
        """
        Validate a raw trip row.

        Raises
        ------
        DataQualityError
            If the trip or route id is missing.
        """
        trip_id = _text(row, "trip_id")
        route_id = _text(row, "route_id")
        if trip_id is None or route_id is None:
            raise DataQualityError("missing_id")
        return cls(trip_id, route_id)


def parse_gtfs_times(values: pd.Series) -> pd.Series:
    """
    Convert GTFS ``H+:MM:SS`` strings into seconds since midnight.

    Hours beyond 23 are kept as-is, so ``"25:00:00"`` becomes ``90000``.
    Missing or malformed values become ``NaN``.

    Parameters
    ----------
    values : pandas.Series
        Raw time strings.

    Returns
    -------
    pandas.Series
        Float seconds with ``NaN`` where the value could not be parsed.

    Examples
    --------
    >>> parse_gtfs_times(pd.Series(["08:00:00", "25:01:02", "bad", None])).tolist()
    [28800.0, 90062.0, nan, nan]
    """
    parts = values.astype("object").where(values.notna(), "").astype(str).str.extract(_GTFS_TIME)
    parts = parts.apply(pd.to_numeric, errors="coerce")
    return (parts[0] * 3600 + parts[1] * 60 + parts[2]).astype(float)


# =============================================================================
# STREAM READER
# =============================================================================


class FeedStreamReader:
    """
    Lazily decode the tables of a zipped GTFS feed.

    The reader holds the archive open and decodes a table each time it is
    requested, so the same table can be streamed once per region without
    keeping it in memory between passes.

    Parameters
    ----------
    source : str, pathlib.Path or binary file object
        Zip archive containing the feed tables.
    chunksize : int, default 50000
        Rows decoded per chunk.

    Raises
    ------
    FileNotFoundError
        If ``source`` is a path that does not exist.
    SourceFormatError
        If ``source`` is not a zip archive.

    Examples
    --------
    >>> with FeedStreamReader("gtfs.zip") as reader:
    ...     reader.stream("agency", print)
    """

    def __init__(self, source: str | Path | IO[bytes], chunksize: int = DEFAULT_CHUNKSIZE) -> None:
        try:
            self._zip = zipfile.ZipFile(source)
        except zipfile.BadZipFile as e:
            msg = f"Not a zip archive: {source}"
            raise SourceFormatError(msg) from e
        self.chunksize = chunksize

    def __enter__(self) -> FeedStreamReader:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying archive."""
        self._zip.close()

    @property
    def members(self) -> list[str]:
        """File members of the archive, directories excluded."""
        return [name for name in self._zip.namelist() if not name.endswith("/")]

    def resolve(self, table: str) -> str:
        """
        Find the archive member holding ``table``.

        Matching is case-insensitive on the member's base name, with or
        without the ``.txt`` extension, so ``"STOPS.TXT"`` inside a nested
        folder answers a request for ``"stops"``.

        Parameters
        ----------
        table : str
            Table name, e.g. ``"stop_times"`` or ``"stop_times.txt"``.

        Returns
        -------
        str
            Archive member name.

        Raises
        ------
        SourceFormatError
            If no member matches.
        """
        wanted = table.lower()
        if not wanted.endswith(".txt"):
            wanted += ".txt"
        for name in self.members:
            if PurePosixPath(name).name.lower() == wanted:
                return name
        msg = f"Table {wanted} not found in feed archive"
        raise SourceFormatError(msg)

    def _header(self, member: str) -> list[str]:
        with self._zip.open(member) as handle:
            try:
                header = pd.read_csv(handle, dtype=str, encoding="utf-8-sig", nrows=0)
            except pd.errors.EmptyDataError as e:
                msg = f"{member} has no header row"
                raise SourceFormatError(msg) from e
        return list(header.columns)

    def iter_chunks(
        self,
        table: str,
        columns: Iterable[str] | None = None,
        required: Iterable[str] = (),
    ) -> Iterator[pd.DataFrame]:
        """
        Yield a table as string-typed DataFrame chunks in file order.

        Column names are whitespace-stripped. Requested columns absent from
        the header are added as empty strings so consumers see a fixed shape.

        Parameters
        ----------
        table : str
            Table name.
        columns : iterable of str, optional
            Columns to decode. ``None`` decodes all.
        required : iterable of str, default ()
            Columns that must be present in the header.

        Yields
        ------
        pandas.DataFrame
            Up to ``chunksize`` rows, empty cells as ``""``.

        Raises
        ------
        SourceFormatError
            If the table is missing, has no header, or lacks a required
            column.
        """
        member = self.resolve(table)
        header = self._header(member)
        stripped = {name: name.strip() for name in header}

        missing = set(required) - set(stripped.values())
        if missing:
            msg = f"{member} is missing required column(s): {', '.join(sorted(missing))}"
            raise SourceFormatError(msg)

        wanted = list(columns) if columns is not None else None
        usecols = (
            [name for name, clean in stripped.items() if clean in wanted]
            if wanted is not None
            else None
        )

        with self._zip.open(member) as handle:
            reader = pd.read_csv(
                handle,
                dtype=str,
                encoding="utf-8-sig",
                keep_default_na=False,
                usecols=usecols,
                chunksize=self.chunksize,
            )
            with reader:
                for chunk in reader:
                    chunk = chunk.rename(columns=stripped)
                    for col in wanted or ():
                        if col not in chunk.columns:
                            chunk[col] = ""
                    yield chunk.fillna("")

    def stream(
        self,
        table: str,
        row_callback: Callable[[Row], object],
        columns: Iterable[str] | None = None,
        required: Iterable[str] = (),
    ) -> int:
        """
        Invoke ``row_callback`` once per row of ``table``, in file order.

        Each row is a dictionary keyed by column name; empty cells are
        ``None``. Only one chunk is held in memory at a time.

        Parameters
        ----------
        table : str
            Table name.
        row_callback : callable
            Called with each row.
        columns, required : iterable of str, optional
            As for :meth:`iter_chunks`.

        Returns
        -------
        int
            Number of rows delivered.

        Raises
        ------
        SourceFormatError
            If the table cannot be located or decoded.
        """
        count = 0
        for chunk in self.iter_chunks(table, columns=columns, required=required):
            for row in chunk.to_dict("records"):
                row_callback({k: (v if v != "" else None) for k, v in row.items()})
                count += 1
        return count


# =============================================================================
# ROUTE CATALOG
# =============================================================================


def _agency_accepted(name: str, patterns: Iterable[str] | None) -> bool:
    if patterns is None:
        return True
    return any(re.search(p, name, flags=re.IGNORECASE) for p in patterns)


@dataclass(frozen=True)
class RouteCatalog:
    """
    Agencies, routes and trips accepted for extraction.

    The catalogue is built once per feed and then shared, read-only, by
    every region. All lookups are read-only mapping proxies.

    Attributes
    ----------
    agency_names : Mapping[str, str]
        Agency id to display name, for every agency in the feed.
    accepted_agencies : frozenset[str]
        Agency ids whose routes are kept.
    routes : Mapping[str, RouteRecord]
        Routes of accepted agencies.
    trips : Mapping[str, TripRecord]
        Trips whose route was kept.
    stats : Mapping[str, RowStats]
        Per-table counters of the build.

    See Also
    --------
    FeedStreamReader : Supplies the tables.
    """

    agency_names: Mapping[str, str]
    accepted_agencies: frozenset[str]
    routes: Mapping[str, RouteRecord]
    trips: Mapping[str, TripRecord]
    stats: Mapping[str, RowStats]

    @classmethod
    def from_reader(
        cls,
        reader: FeedStreamReader,
        agency_allow: Iterable[str] | None = None,
    ) -> RouteCatalog:
        """
        Stream agency, routes and trips and build the catalogue.

        Parameters
        ----------
        reader : FeedStreamReader
            Open feed.
        agency_allow : iterable of str, optional
            Case-insensitive regular expressions matched against agency
            names. ``None`` accepts every agency.

        Returns
        -------
        RouteCatalog
            Immutable catalogue.

        Raises
        ------
        SourceFormatError
            If one of the three tables is missing from the feed.
        """
        patterns = list(agency_allow) if agency_allow is not None else None
        agency_names: dict[str, str] = {}
        accepted: set[str] = set()
        routes: dict[str, RouteRecord] = {}
        trips: dict[str, TripRecord] = {}
        stats = {t: RowStats(t) for t in ("agency", "routes", "trips")}

        def on_agency(row: Row) -> None:
            st = stats["agency"]
            st.seen += 1
            try:
                agency = AgencyRecord.from_row(row)
            except DataQualityError as e:
                st.drop(e.reason)
                return
            agency_names[agency.agency_id] = agency.name
            if _agency_accepted(agency.name, patterns):
                accepted.add(agency.agency_id)
            st.kept += 1

        reader.stream("agency", on_agency, columns=("agency_id", "agency_name"))
        sole_agency = next(iter(agency_names)) if len(agency_names) == 1 else None

        def on_route(row: Row) -> None:
            st = stats["routes"]
            st.seen += 1
            try:
                route = RouteRecord.from_row(row)
            except DataQualityError as e:
                st.drop(e.reason)
                return
            if not route.agency_id and sole_agency is not None:
                route = replace(route, agency_id=sole_agency)
            if agency_names and route.agency_id not in accepted:
                st.drop("agency_not_accepted")
                return
            routes[route.route_id] = route
            st.kept += 1

        reader.stream(
            "routes",
            on_route,
            columns=("route_id", "agency_id", "route_type", "route_short_name", "route_long_name"),
        )

        def on_trip(row: Row) -> None:
            st = stats["trips"]
            st.seen += 1
            try:
                trip = TripRecord.from_row(row)
            except DataQualityError as e:
                st.drop(e.reason)
                return
            if trip.route_id not in routes:
                st.drop("unknown_route")
                return
            trips[trip.trip_id] = trip
            st.kept += 1

        reader.stream("trips", on_trip, columns=("trip_id", "route_id"))

        for st in stats.values():
            logger.info("%s", st)
        logger.info("routes=%s trips=%s", f"{len(routes):,}", f"{len(trips):,}")

        return cls(
            agency_names=MappingProxyType(agency_names),
            accepted_agencies=frozenset(accepted),
            routes=MappingProxyType(routes),
            trips=MappingProxyType(trips),
            stats=MappingProxyType(stats),
        )

    def route_for_trip(self, trip_id: str) -> RouteRecord | None:
        """Return the route of an accepted trip, or ``None``."""
        trip = self.trips.get(trip_id)
        if trip is None:
            return None
        return self.routes.get(trip.route_id)

    def authority(self, agency_id: str) -> str | None:
        """Return the display name of an agency, or ``None`` if unknown."""
        return self.agency_names.get(agency_id)
