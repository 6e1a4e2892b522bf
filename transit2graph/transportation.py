"""
Transportation Network Module.

This module turns a streamed GTFS feed into one directed stop-to-stop graph
per region. For a region it clips the stops to the region geometry, replays
every accepted trip's stop visits in sequence order, and aggregates each
consecutive (origin, destination, line) observation into a single edge
carrying the median travel time and the number of traversals seen in the
feed. Nodes are the stops touched by at least one edge, labelled with the
modes that serve them.

The route catalogue is the only state shared between regions; everything
else is rebuilt for each region from a fresh pass over the feed.
"""

# Future annotations for type hints
from __future__ import annotations

# Standard library imports
import logging
import math
from dataclasses import dataclass
from dataclasses import field
from types import MappingProxyType
from typing import TYPE_CHECKING
from typing import NamedTuple

# Third-party imports
import numpy as np
import pandas as pd

# Local imports
from .config import RegionSpec
from .exceptions import ConfigurationError
from .exceptions import SourceFormatError
from .exceptions import SourceUnavailableError
from .feed import RowStats
from .feed import parse_gtfs_times
from .utils import edges_to_frame
from .utils import graph_to_document
from .utils import nodes_to_frame
from .utils import region_graph_to_gdf

# Type checking imports
if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Iterable
    from collections.abc import Iterator
    from collections.abc import Mapping

    import geopandas as gpd
    import networkx as nx

    from .feed import FeedStreamReader
    from .feed import RouteCatalog
    from .geometry import RegionGeometryIndex

# Module logger configuration
logger = logging.getLogger(__name__)

__all__ = [
    "ROUTE_TYPE_MODES",
    "Edge",
    "EdgeAggregator",
    "EdgeKey",
    "Node",
    "RegionBuildResult",
    "RegionGraph",
    "StopRecord",
    "StopRegistry",
    "TripSequencer",
    "build_region_graph",
    "build_region_graphs",
    "classify_nodes",
    "classify_stop_type",
    "median_travel_time",
    "route_type_to_mode",
]

# =============================================================================
# ROUTE TYPE TO MODE
# =============================================================================

# Basic GTFS codes followed by the extended (Hierarchical Vehicle Type) ranges
_ROUTE_TYPE_RANGES: tuple[tuple[int, int, str], ...] = (
    (0, 0, "tram"),
    (1, 1, "metro"),
    (2, 2, "rail"),
    (3, 3, "bus"),
    (4, 4, "water"),
    (5, 5, "cablecar"),
    (6, 6, "gondola"),
    (7, 7, "funicular"),
    (11, 11, "bus"),
    (12, 12, "rail"),
    (100, 117, "rail"),
    (200, 209, "coach service"),
    (400, 405, "metro"),
    (700, 716, "bus"),
    (800, 800, "trolleybus"),
    (900, 906, "tram"),
    (1000, 1000, "water"),
    (1100, 1100, "air"),
    (1200, 1200, "water"),
    (1300, 1307, "aerial lift"),
    (1400, 1400, "funicular service"),
    (1500, 1507, "taxi"),
    (1700, 1700, "miscellaneous service"),
    (1702, 1702, "horse-drawn carriage"),
)

ROUTE_TYPE_MODES: Mapping[int, str] = MappingProxyType(
    {code: mode for lo, hi, mode in _ROUTE_TYPE_RANGES for code in range(lo, hi + 1)},
)

UNKNOWN = "unknown"
MULTIMODAL = "multimodal"


def route_type_to_mode(route_type: int | None) -> str:
    """
    Map a GTFS ``route_type`` code to a transport mode name.

    Parameters
    ----------
    route_type : int or None
        Basic or extended route type code.

    Returns
    -------
    str
        Mode name, ``"unknown"`` for unmapped or missing codes.

    Examples
    --------
    >>> route_type_to_mode(3), route_type_to_mode(109), route_type_to_mode(None)
    ('bus', 'rail', 'unknown')
    """
    if route_type is None:
        return UNKNOWN
    return ROUTE_TYPE_MODES.get(route_type, UNKNOWN)


# =============================================================================
# STOP REGISTRY
# =============================================================================


@dataclass(frozen=True, slots=True)
class StopRecord:
    """A stop that passed validation and lies inside the region."""

    stop_id: str
    name: str | None
    lat: float
    lon: float


class StopRegistry:
    """
    The stops of one region, keyed by stop id.

    Parameters
    ----------
    stops : Mapping[str, StopRecord]
        Accepted stops.
    stats : RowStats
        Counters of the ``stops`` pass that produced them.

    See Also
    --------
    StopRegistry.from_reader : Build the registry from a feed.
    """

    def __init__(self, stops: Mapping[str, StopRecord], stats: RowStats) -> None:
        self._stops = MappingProxyType(dict(stops))
        self.stats = stats

    @classmethod
    def from_reader(cls, reader: FeedStreamReader, index: RegionGeometryIndex) -> StopRegistry:
        """
        Stream ``stops`` and keep the rows lying inside the region.

        A row is dropped when its id is empty (``missing_id``), when either
        coordinate is not a finite number (``bad_coordinate``), or when the
        point falls outside every region geometry (``outside_region``).
        When an id repeats, the first row wins (``duplicate_id``).

        Parameters
        ----------
        reader : FeedStreamReader
            Open feed.
        index : RegionGeometryIndex
            Geometries of the region.

        Returns
        -------
        StopRegistry
            Region stops with their counters.

        Raises
        ------
        SourceFormatError
            If ``stops`` is missing or lacks its id / coordinate columns.
        """
        stats = RowStats("stops")
        stops: dict[str, StopRecord] = {}

        for chunk in reader.iter_chunks(
            "stops",
            columns=("stop_id", "stop_name", "stop_lat", "stop_lon"),
            required=("stop_id", "stop_lat", "stop_lon"),
        ):
            stats.seen += len(chunk)
            ids = chunk["stop_id"].str.strip()
            lat = pd.to_numeric(chunk["stop_lat"], errors="coerce").to_numpy(dtype=float)
            lon = pd.to_numeric(chunk["stop_lon"], errors="coerce").to_numpy(dtype=float)

            has_id = (ids != "").to_numpy()
            valid = has_id & np.isfinite(lat) & np.isfinite(lon)
            inside = np.zeros(len(chunk), dtype=bool)
            inside[valid] = index.contains_points(lon[valid], lat[valid])

            stats.drop("missing_id", int((~has_id).sum()))
            stats.drop("bad_coordinate", int((has_id & ~valid).sum()))
            stats.drop("outside_region", int((valid & ~inside).sum()))

            names = chunk["stop_name"].str.strip().to_numpy()
            for sid, name, la, lo in zip(
                ids.to_numpy()[inside],
                names[inside],
                lat[inside],
                lon[inside],
                strict=True,
            ):
                if sid in stops:
                    stats.drop("duplicate_id")
                    continue
                stops[sid] = StopRecord(sid, name or None, float(la), float(lo))
                stats.kept += 1

        return cls(stops, stats)

    @property
    def stops(self) -> Mapping[str, StopRecord]:
        """Read-only view of the accepted stops."""
        return self._stops

    def __contains__(self, stop_id: object) -> bool:
        return stop_id in self._stops

    def __len__(self) -> int:
        return len(self._stops)

    def __getitem__(self, stop_id: str) -> StopRecord:
        return self._stops[stop_id]


# =============================================================================
# TRIP SEQUENCER
# =============================================================================

_VISIT_COLUMNS = ["trip_id", "stop_id", "stop_sequence", "arrival", "departure"]


class TripSequencer:
    """
    Stop visits of the region's trips, ordered within each trip.

    Visits live in a single region-local DataFrame with columns
    ``trip_id, stop_id, stop_sequence, arrival, departure`` (times in seconds
    since midnight, ``NaN`` when absent). Rows are stably sorted by trip and
    then by sequence number, so visits sharing a sequence number keep their
    file order.

    Parameters
    ----------
    visits : pandas.DataFrame
        Visit rows.
    stats : RowStats
        Counters of the ``stop_times`` pass.
    """

    def __init__(self, visits: pd.DataFrame, stats: RowStats) -> None:
        # Two stable single-key sorts give a stable (trip, sequence) order
        ordered = visits.sort_values("stop_sequence", kind="stable")
        self.visits = ordered.sort_values("trip_id", kind="stable").reset_index(drop=True)
        self.stats = stats

    @classmethod
    def from_reader(
        cls,
        reader: FeedStreamReader,
        catalog: RouteCatalog,
        registry: StopRegistry,
    ) -> TripSequencer:
        """
        Stream ``stop_times`` and keep the region's visits of accepted trips.

        A row is dropped when its trip is not in the catalogue
        (``unknown_trip``), when its stop is not in the region registry
        (``outside_region``), or when its sequence number is not numeric
        (``bad_sequence``). Unparsable arrival or departure times are kept as
        missing and flagged (``bad_time``).

        Parameters
        ----------
        reader : FeedStreamReader
            Open feed.
        catalog : RouteCatalog
            Shared route catalogue.
        registry : StopRegistry
            The region's stops.

        Returns
        -------
        TripSequencer
            Ordered visits of the region.

        Raises
        ------
        SourceFormatError
            If ``stop_times`` is missing or lacks its key columns.
        """
        stats = RowStats("stop_times")
        frames: list[pd.DataFrame] = []
        accepted_trips = pd.Index(list(catalog.trips), dtype=object)
        region_stops = pd.Index(list(registry.stops), dtype=object)

        for chunk in reader.iter_chunks(
            "stop_times",
            columns=("trip_id", "stop_id", "stop_sequence", "arrival_time", "departure_time"),
            required=("trip_id", "stop_id", "stop_sequence"),
        ):
            stats.seen += len(chunk)
            trip_ids = chunk["trip_id"].str.strip()
            stop_ids = chunk["stop_id"].str.strip()
            sequence = pd.to_numeric(chunk["stop_sequence"], errors="coerce")

            trip_ok = trip_ids.isin(accepted_trips)
            stop_ok = stop_ids.isin(region_stops)
            seq_ok = sequence.notna() & np.isfinite(sequence)

            stats.drop("unknown_trip", int((~trip_ok).sum()))
            stats.drop("outside_region", int((trip_ok & ~stop_ok).sum()))
            stats.drop("bad_sequence", int((trip_ok & stop_ok & ~seq_ok).sum()))

            keep = trip_ok & stop_ok & seq_ok
            if not keep.any():
                continue

            raw_arr = chunk.loc[keep, "arrival_time"]
            raw_dep = chunk.loc[keep, "departure_time"]
            arrival = parse_gtfs_times(raw_arr)
            departure = parse_gtfs_times(raw_dep)
            bad_times = (arrival.isna() & (raw_arr.str.strip() != "")) | (
                departure.isna() & (raw_dep.str.strip() != "")
            )
            stats.flag("bad_time", int(bad_times.sum()))
            stats.kept += int(keep.sum())

            frames.append(
                pd.DataFrame(
                    {
                        "trip_id": trip_ids[keep],
                        "stop_id": stop_ids[keep],
                        "stop_sequence": sequence[keep].astype(float),
                        "arrival": arrival,
                        "departure": departure,
                    },
                ),
            )

        visits = (
            pd.concat(frames, ignore_index=True)
            if frames
            else pd.DataFrame({c: pd.Series(dtype=object) for c in _VISIT_COLUMNS})
        )
        return cls(visits, stats)

    @property
    def n_trips(self) -> int:
        """Number of trips with at least one visit in the region."""
        return int(self.visits["trip_id"].nunique())

    def pairs(self) -> pd.DataFrame:
        """
        Consecutive visit pairs ``(i, i + 1)`` within each trip.

        Trips with a single visit contribute nothing.

        Returns
        -------
        pandas.DataFrame
            One row per pair with columns ``trip_id, from_stop, to_stop,
            from_arrival, from_departure, to_arrival, to_departure``, in trip
            then sequence order.

        Examples
        --------
        >>> sequencer.pairs()[["trip_id", "from_stop", "to_stop"]]
          trip_id from_stop to_stop
        0      T1        S1      S2
        1      T1        S2      S3
        """
        v = self.visits
        nxt = v.groupby("trip_id", sort=False).shift(-1)
        mask = nxt["stop_id"].notna()

        return pd.DataFrame(
            {
                "trip_id": v.loc[mask, "trip_id"],
                "from_stop": v.loc[mask, "stop_id"],
                "to_stop": nxt.loc[mask, "stop_id"],
                "from_arrival": v.loc[mask, "arrival"].astype(float),
                "from_departure": v.loc[mask, "departure"].astype(float),
                "to_arrival": nxt.loc[mask, "arrival"].astype(float),
                "to_departure": nxt.loc[mask, "departure"].astype(float),
            },
        ).reset_index(drop=True)

    def iter_trip_pairs(self) -> Iterator[tuple[str, pd.DataFrame]]:
        """
        Yield ``(trip_id, pairs)`` for every trip with at least two visits.

        Yields
        ------
        tuple[str, pandas.DataFrame]
            Trip id and its rows of :meth:`pairs`, in sequence order.
        """
        for trip_id, trip_pairs in self.pairs().groupby("trip_id", sort=False):
            yield trip_id, trip_pairs.reset_index(drop=True)


# =============================================================================
# EDGE AGGREGATION
# =============================================================================


class EdgeKey(NamedTuple):
    """Order-sensitive identity of an edge."""

    from_stop: str
    to_stop: str
    line_id: str


@dataclass(slots=True)
class _EdgeAccumulator:
    """Mutable per-key state while trips are replayed."""

    durations: list[int] = field(default_factory=list)
    traversals: int = 0


@dataclass(frozen=True, slots=True)
class Edge:
    """
    A finalized directed edge between two consecutive stops of a line.

    ``travel_time_sec`` is the median of the recorded durations and is
    ``None`` when no traversal yielded a usable duration.
    ``trips_in_feed`` counts every observed traversal.
    """

    from_stop: str
    to_stop: str
    line_id: str
    line_code: str | None
    mode: str
    authority: str | None
    travel_time_sec: int | None
    trips_in_feed: int
    sample_count: int

    @property
    def key(self) -> EdgeKey:
        """The edge's aggregation key."""
        return EdgeKey(self.from_stop, self.to_stop, self.line_id)

    def to_record(self) -> dict[str, object]:
        """Flat output record with camelCase field names."""
        return {
            "from": self.from_stop,
            "to": self.to_stop,
            "lineId": self.line_id,
            "lineCode": self.line_code,
            "mode": self.mode,
            "authority": self.authority,
            "travelTimeSec": self.travel_time_sec,
            "tripsInFeed": self.trips_in_feed,
        }


def median_travel_time(samples: Iterable[int]) -> int | None:
    """
    Median of a duration sample set, in whole seconds.

    For an even number of samples the two middle values are averaged and
    rounded half up. The result does not depend on the sample order.

    Parameters
    ----------
    samples : iterable of int
        Non-negative durations in seconds.

    Returns
    -------
    int or None
        Median duration, ``None`` for an empty sample set.

    Examples
    --------
    >>> median_travel_time([90, 60, 70]), median_travel_time([60, 80]), median_travel_time([60, 61])
    (70, 70, 61)
    """
    ordered = sorted(samples)
    if not ordered:
        return None
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return math.floor((ordered[mid - 1] + ordered[mid]) / 2 + 0.5)


class EdgeAggregator:
    """
    Accumulate traversal observations into one edge per key.

    The first observation of a key creates its edge; later observations
    append their duration (when there is one) and always increment the
    traversal counter. Mode, authority and line code are resolved once per
    route from the shared catalogue.

    Parameters
    ----------
    catalog : RouteCatalog
        Shared route catalogue.

    Attributes
    ----------
    stats : RowStats
        ``seen`` observations, ``kept`` observations with a duration;
        ``unknown_route`` drops and ``no_duration`` flags.
    """

    def __init__(self, catalog: RouteCatalog) -> None:
        self.catalog = catalog
        self.stats = RowStats("edge_observations")
        self._edges: dict[EdgeKey, _EdgeAccumulator] = {}
        self._lines: dict[str, tuple[str | None, str, str | None]] = {}

    def __len__(self) -> int:
        return len(self._edges)

    def _line(self, line_id: str) -> tuple[str | None, str, str | None]:
        if line_id not in self._lines:
            route = self.catalog.routes[line_id]
            self._lines[line_id] = (
                route.line_code,
                route_type_to_mode(route.route_type),
                self.catalog.authority(route.agency_id),
            )
        return self._lines[line_id]

    def observe(self, key: EdgeKey, duration: int | None) -> None:
        """
        Record one traversal of ``key``.

        Parameters
        ----------
        key : EdgeKey
            Edge identity; its ``line_id`` must be a catalogued route.
        duration : int or None
            Non-negative duration in seconds, ``None`` when undeterminable.

        Raises
        ------
        KeyError
            If the line is not in the catalogue.
        """
        self._line(key.line_id)
        acc = self._edges.get(key)
        if acc is None:
            acc = self._edges[key] = _EdgeAccumulator()
        acc.traversals += 1
        self.stats.seen += 1
        if duration is None:
            self.stats.flag("no_duration")
            return
        acc.durations.append(duration)
        self.stats.kept += 1

    def observe_pairs(self, pairs: pd.DataFrame) -> None:
        """
        Record every consecutive visit pair produced by a sequencer.

        The duration of pair ``(a, b)`` runs from ``a``'s departure (else its
        arrival) to ``b``'s arrival (else its departure) and is only used
        when both ends exist and it is not negative. Pairs whose trip's route
        is not in the catalogue are skipped.

        Parameters
        ----------
        pairs : pandas.DataFrame
            Output of :meth:`TripSequencer.pairs`.
        """
        if pairs.empty:
            return

        trips = self.catalog.trips
        line_ids = pairs["trip_id"].map(
            lambda t: trips[t].route_id if t in trips else None,
        )
        resolved = line_ids.isin(list(self.catalog.routes)) & line_ids.notna()
        self.stats.drop("unknown_route", int((~resolved).sum()))

        t_a = pairs["from_departure"].fillna(pairs["from_arrival"])
        t_b = pairs["to_arrival"].fillna(pairs["to_departure"])
        usable = t_a.notna() & t_b.notna() & (t_b >= t_a)
        durations = (t_b - t_a).where(usable)

        for from_stop, to_stop, line_id, duration in zip(
            pairs.loc[resolved, "from_stop"],
            pairs.loc[resolved, "to_stop"],
            line_ids[resolved],
            durations[resolved],
            strict=True,
        ):
            self.observe(
                EdgeKey(from_stop, to_stop, line_id),
                None if pd.isna(duration) else int(duration),
            )

    def finalize(self) -> list[Edge]:
        """
        Summarize every key into an immutable :class:`Edge`.

        Returns
        -------
        list[Edge]
            Edges in order of first observation.
        """
        edges = []
        for key, acc in self._edges.items():
            line_code, mode, authority = self._line(key.line_id)
            edges.append(
                Edge(
                    from_stop=key.from_stop,
                    to_stop=key.to_stop,
                    line_id=key.line_id,
                    line_code=line_code,
                    mode=mode,
                    authority=authority,
                    travel_time_sec=median_travel_time(acc.durations),
                    trips_in_feed=acc.traversals,
                    sample_count=len(acc.durations),
                ),
            )
        return edges


# =============================================================================
# NODE CLASSIFICATION
# =============================================================================


@dataclass(frozen=True, slots=True)
class Node:
    """A stop served by at least one edge, with the modes serving it."""

    stop_id: str
    name: str | None
    lat: float
    lon: float
    modes: tuple[str, ...]
    stop_type: str

    @property
    def stop_place_id(self) -> str:
        """Stop place identifier; GTFS stops are their own stop place."""
        return self.stop_id

    def to_record(self) -> dict[str, object]:
        """Flat output record with camelCase field names."""
        return {
            "id": self.stop_id,
            "stopPlaceId": self.stop_place_id,
            "name": self.name,
            "lat": self.lat,
            "lon": self.lon,
            "modes": list(self.modes),
            "stopType": self.stop_type,
        }


def classify_stop_type(modes: Iterable[str]) -> str:
    """
    Coarse stop label from the set of modes serving a stop.

    Returns
    -------
    str
        The sole mode, ``"multimodal"`` for several, ``"unknown"`` for none.

    Examples
    --------
    >>> classify_stop_type({"bus"}), classify_stop_type({"bus", "tram"}), classify_stop_type(())
    ('bus', 'multimodal', 'unknown')
    """
    distinct = set(modes)
    if len(distinct) == 1:
        return next(iter(distinct))
    if len(distinct) > 1:
        return MULTIMODAL
    return UNKNOWN


def classify_nodes(edges: Iterable[Edge], registry: StopRegistry) -> list[Node]:
    """
    Build the nodes of a finalized edge set.

    Each endpoint of an edge becomes a node whose modes are the union of the
    modes of its incident edges, listed alphabetically.

    Parameters
    ----------
    edges : iterable of Edge
        Finalized edges of one region.
    registry : StopRegistry
        The region's stops, providing names and coordinates.

    Returns
    -------
    list[Node]
        Nodes in order of first appearance as an edge endpoint.
    """
    modes_by_stop: dict[str, set[str]] = {}
    for edge in edges:
        modes_by_stop.setdefault(edge.from_stop, set()).add(edge.mode)
        modes_by_stop.setdefault(edge.to_stop, set()).add(edge.mode)

    nodes = []
    for stop_id, modes in modes_by_stop.items():
        stop = registry[stop_id]
        nodes.append(
            Node(
                stop_id=stop_id,
                name=stop.name,
                lat=stop.lat,
                lon=stop.lon,
                modes=tuple(sorted(modes)),
                stop_type=classify_stop_type(modes),
            ),
        )
    return nodes


# =============================================================================
# GRAPH ASSEMBLY
# =============================================================================


@dataclass(frozen=True)
class RegionGraph:
    """
    The finished graph of one region.

    Attributes
    ----------
    region : str
        Region label.
    nodes : tuple[Node, ...]
        Stops touched by at least one edge.
    edges : tuple[Edge, ...]
        One edge per (origin, destination, line) key.
    diagnostics : Mapping[str, dict]
        Counters of every stage, keyed by stage name.
    """

    region: str
    nodes: tuple[Node, ...]
    edges: tuple[Edge, ...]
    diagnostics: Mapping[str, dict[str, object]] = field(default_factory=dict)

    def nodes_frame(self) -> pd.DataFrame:
        """Nodes as flat tabular rows."""
        return nodes_to_frame(self.nodes)

    def edges_frame(self) -> pd.DataFrame:
        """Edges as flat tabular rows."""
        return edges_to_frame(self.edges)

    def to_document(self) -> dict[str, list[dict[str, object]]]:
        """Nested ``{"nodes": [...], "edges": [...]}`` document."""
        return graph_to_document(self.nodes, self.edges)

    def to_gdf(
        self,
        as_nx: bool = False,
    ) -> tuple[gpd.GeoDataFrame, gpd.GeoDataFrame] | nx.MultiDiGraph:
        """
        Spatial rendering of the graph.

        Parameters
        ----------
        as_nx : bool, default False
            Return a NetworkX ``MultiDiGraph`` keyed by line id instead of
            ``(nodes_gdf, edges_gdf)``.

        Returns
        -------
        tuple[geopandas.GeoDataFrame, geopandas.GeoDataFrame] or networkx.MultiDiGraph
            Point nodes and straight LineString edges in EPSG:4326.
        """
        return region_graph_to_gdf(self.nodes, self.edges, as_nx=as_nx)


def build_region_graph(
    region: RegionSpec | str,
    reader: FeedStreamReader,
    catalog: RouteCatalog,
    index: RegionGeometryIndex,
) -> RegionGraph:
    """
    Build the stop-to-stop graph of one region.

    Parameters
    ----------
    region : RegionSpec or str
        Region (or its label).
    reader : FeedStreamReader
        Open feed; ``stops`` and ``stop_times`` are streamed again for every
        call.
    catalog : RouteCatalog
        Shared route catalogue.
    index : RegionGeometryIndex
        The region's geometries.

    Returns
    -------
    RegionGraph
        Nodes, edges and stage counters of the region.

    Raises
    ------
    SourceFormatError
        If ``stops`` or ``stop_times`` is missing or malformed.

    See Also
    --------
    build_region_graphs : Build several regions against one catalogue.

    Examples
    --------
    >>> with FeedStreamReader("gtfs.zip") as reader:
    ...     catalog = RouteCatalog.from_reader(reader)
    ...     graph = build_region_graph("OSLO", reader, catalog, index)
    >>> graph.edges_frame()[["from", "to", "travelTimeSec", "tripsInFeed"]].head(2)
    """
    label = region.label if isinstance(region, RegionSpec) else region
    logger.info("=== Building region: %s ===", label)

    registry = StopRegistry.from_reader(reader, index)
    logger.info("[%s] kept stops: %s (%s)", label, f"{len(registry):,}", registry.stats)
    if not len(registry):
        logger.warning("[%s] no stops fall inside the region geometry", label)

    sequencer = TripSequencer.from_reader(reader, catalog, registry)
    logger.info(
        "[%s] %s trips=%s",
        label,
        sequencer.stats,
        f"{sequencer.n_trips:,}",
    )

    aggregator = EdgeAggregator(catalog)
    aggregator.observe_pairs(sequencer.pairs())
    edges = aggregator.finalize()
    logger.info("[%s] edges: %s", label, f"{len(edges):,}")

    nodes = classify_nodes(edges, registry)
    logger.info("[%s] nodes: %s", label, f"{len(nodes):,}")

    diagnostics = {
        "stops": registry.stats.as_dict(),
        "stop_times": sequencer.stats.as_dict(),
        "edge_observations": aggregator.stats.as_dict(),
    }
    return RegionGraph(label, tuple(nodes), tuple(edges), MappingProxyType(diagnostics))


@dataclass(frozen=True)
class RegionBuildResult:
    """
    Outcome of a multi-region build.

    Attributes
    ----------
    graphs : dict[str, RegionGraph]
        Graphs of the regions that completed, keyed by label.
    failures : dict[str, Exception]
        Fatal error of every region that aborted, keyed by label.
    """

    graphs: dict[str, RegionGraph]
    failures: dict[str, Exception]

    @property
    def ok(self) -> bool:
        """Whether every region completed."""
        return not self.failures


def build_region_graphs(
    regions: Iterable[RegionSpec],
    reader: FeedStreamReader,
    catalog: RouteCatalog,
    index_factory: Callable[[RegionSpec], RegionGeometryIndex],
    on_graph: Callable[[RegionGraph], None] | None = None,
) -> RegionBuildResult:
    """
    Build one graph per region, isolating fatal errors per region.

    A configuration, source-format or source-availability error aborts only
    the region that raised it; the remaining regions are still built.

    Parameters
    ----------
    regions : iterable of RegionSpec
        Regions to build, in order.
    reader : FeedStreamReader
        Open feed.
    catalog : RouteCatalog
        Route catalogue shared by all regions.
    index_factory : callable
        Returns the geometry index of a region; may raise
        :class:`ConfigurationError`, :class:`SourceFormatError` or
        :class:`SourceUnavailableError`.
    on_graph : callable, optional
        Called with each graph as soon as its region completes, before the
        next region is built. Errors it raises propagate.

    Returns
    -------
    RegionBuildResult
        Completed graphs and per-region failures.
    """
    graphs: dict[str, RegionGraph] = {}
    failures: dict[str, Exception] = {}
    for region in regions:
        try:
            index = index_factory(region)
            graph = build_region_graph(region, reader, catalog, index)
        except (ConfigurationError, SourceFormatError, SourceUnavailableError) as e:
            logger.exception("[%s] region aborted", region.label)
            failures[region.label] = e
            continue
        graphs[region.label] = graph
        if on_graph is not None:
            on_graph(graph)
    return RegionBuildResult(graphs, failures)
