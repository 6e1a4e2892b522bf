"""Tests for the transportation module."""

# Standard library imports
from collections.abc import Callable
from pathlib import Path

# Third-party imports
import pytest

from transit2graph.config import RegionSpec
from transit2graph.exceptions import ConfigurationError
from transit2graph.exceptions import SourceFormatError
from transit2graph.exceptions import SourceUnavailableError
from transit2graph.feed import FeedStreamReader
from transit2graph.feed import RouteCatalog
from transit2graph.geometry import RegionGeometryIndex
from transit2graph.transportation import ROUTE_TYPE_MODES
from transit2graph.transportation import Edge
from transit2graph.transportation import EdgeAggregator
from transit2graph.transportation import EdgeKey
from transit2graph.transportation import RegionGraph
from transit2graph.transportation import StopRecord
from transit2graph.transportation import StopRegistry
from transit2graph.transportation import TripSequencer
from transit2graph.transportation import build_region_graph
from transit2graph.transportation import build_region_graphs
from transit2graph.transportation import classify_nodes
from transit2graph.transportation import classify_stop_type
from transit2graph.transportation import median_travel_time
from transit2graph.transportation import route_type_to_mode

OSLO = RegionSpec("OSLO", ("03",))
GREATER_OSLO = RegionSpec("GREATER_OSLO", ("03", "32"))

IndexFactory = Callable[[RegionSpec], RegionGeometryIndex]

SCENARIO_TABLES = {
    "agency.txt": "agency_id,agency_name\nA1,Ruter\n",
    "routes.txt": "route_id,agency_id,route_type,route_short_name,route_long_name\nR,A1,3,31,\n",
    "trips.txt": "trip_id,route_id\nT,R\n",
    "stops.txt": (
        "stop_id,stop_name,stop_lat,stop_lon\n"
        "S1,One,59.1,10.1\n"
        "S2,Two,59.2,10.2\n"
        "S3,Three,59.3,10.3\n"
    ),
}


def _build(feed: Path, index_factory: IndexFactory, region: RegionSpec = OSLO) -> RegionGraph:
    with FeedStreamReader(feed, chunksize=3) as reader:
        catalog = RouteCatalog.from_reader(reader)
        return build_region_graph(region, reader, catalog, index_factory(region))


def _edges_by_key(graph: RegionGraph) -> dict[EdgeKey, Edge]:
    return {edge.key: edge for edge in graph.edges}


def assert_graph_invariants(graph: RegionGraph) -> None:
    """Structural properties every emitted graph must have."""
    keys = [edge.key for edge in graph.edges]
    assert len(keys) == len(set(keys))
    for edge in graph.edges:
        assert edge.trips_in_feed >= 1
        assert edge.trips_in_feed >= edge.sample_count
        assert (edge.travel_time_sec is not None) == (edge.sample_count > 0)

    modes_by_stop: dict[str, set[str]] = {}
    for edge in graph.edges:
        modes_by_stop.setdefault(edge.from_stop, set()).add(edge.mode)
        modes_by_stop.setdefault(edge.to_stop, set()).add(edge.mode)
    assert {node.stop_id for node in graph.nodes} == set(modes_by_stop)
    for node in graph.nodes:
        assert set(node.modes) == modes_by_stop[node.stop_id]
        assert list(node.modes) == sorted(node.modes)
        if len(node.modes) > 1:
            assert node.stop_type == "multimodal"
        else:
            assert node.stop_type == node.modes[0]


class TestRouteTypeToMode:
    """Test the static route type lookup."""

    @pytest.mark.parametrize(
        ("code", "mode"),
        [
            (0, "tram"),
            (1, "metro"),
            (2, "rail"),
            (3, "bus"),
            (4, "water"),
            (7, "funicular"),
            (11, "bus"),
            (12, "rail"),
            (100, "rail"),
            (117, "rail"),
            (200, "coach service"),
            (401, "metro"),
            (715, "bus"),
            (800, "trolleybus"),
            (906, "tram"),
            (1000, "water"),
            (1100, "air"),
            (1300, "aerial lift"),
            (1400, "funicular service"),
            (1501, "taxi"),
            (1700, "miscellaneous service"),
            (1702, "horse-drawn carriage"),
        ],
    )
    def test_known_codes(self, code: int, mode: str) -> None:
        """Basic and extended codes map to their mode."""
        assert route_type_to_mode(code) == mode

    @pytest.mark.parametrize("code", [None, 8, 118, 210, 717, 1701, 99999, -1])
    def test_unknown_codes(self, code: int | None) -> None:
        """Codes outside the table are unknown."""
        assert route_type_to_mode(code) == "unknown"

    def test_table_is_read_only(self) -> None:
        """The lookup table cannot be altered at runtime."""
        with pytest.raises(TypeError):
            ROUTE_TYPE_MODES[3] = "tram"  # type: ignore[index]


class TestMedianTravelTime:
    """Test the travel time summary."""

    @pytest.mark.parametrize(
        ("samples", "expected"),
        [
            ([], None),
            ([42], 42),
            ([60, 70, 90], 70),
            ([90, 60, 70], 70),
            ([60, 80], 70),
            ([60, 61], 61),
            ([61, 60], 61),
            ([0, 0], 0),
            ([10, 20, 30, 41], 25),
        ],
    )
    def test_median(self, samples: list[int], expected: int | None) -> None:
        """Odd counts take the middle value; even counts round the mean half up."""
        assert median_travel_time(samples) == expected


class TestStopRegistry:
    """Test region stop filtering."""

    def test_oslo_stops(self, sample_reader: FeedStreamReader, index_factory: IndexFactory) -> None:
        """Only valid stops inside the region survive, with per-reason counts."""
        registry = StopRegistry.from_reader(sample_reader, index_factory(OSLO))
        assert set(registry.stops) == {"S1", "S2", "S3"}
        assert "SX" not in registry
        assert registry["S2"] == StopRecord("S2", "Stortinget", 59.2, 10.2)
        assert registry.stats.seen == 5
        assert registry.stats.kept == 3
        assert registry.stats.dropped == {"outside_region": 1, "bad_coordinate": 1}

    def test_missing_id_and_duplicates(
        self,
        make_feed: Callable[..., Path],
        index_factory: IndexFactory,
    ) -> None:
        """Rows without an id are dropped; the first of repeated ids wins."""
        feed = make_feed(
            stops=(
                "stop_id,stop_name,stop_lat,stop_lon\n"
                ",Nameless,59.1,10.1\n"
                "S1,First,59.1,10.1\n"
                "S1,Second,59.2,10.2\n"
                "S2,,59.2,10.2\n"
                "S3,Nan,nan,10.2\n"
            ),
        )
        with FeedStreamReader(feed, chunksize=2) as reader:
            registry = StopRegistry.from_reader(reader, index_factory(OSLO))
        assert registry["S1"].name == "First"
        assert registry["S2"].name is None
        assert len(registry) == 2
        assert registry.stats.dropped == {"missing_id": 1, "duplicate_id": 1, "bad_coordinate": 1}

    def test_missing_coordinate_column(
        self,
        make_feed: Callable[..., Path],
        index_factory: IndexFactory,
    ) -> None:
        """A stops table without coordinates cannot be clipped."""
        feed = make_feed(stops="stop_id,stop_name\nS1,One\n")
        with FeedStreamReader(feed) as reader, pytest.raises(SourceFormatError):
            StopRegistry.from_reader(reader, index_factory(OSLO))


class TestTripSequencer:
    """Test visit filtering and ordering."""

    def test_sample_visits(
        self,
        sample_reader: FeedStreamReader,
        sample_catalog: RouteCatalog,
        index_factory: IndexFactory,
    ) -> None:
        """Visits outside the region are dropped and trips are ordered."""
        registry = StopRegistry.from_reader(sample_reader, index_factory(OSLO))
        sequencer = TripSequencer.from_reader(sample_reader, sample_catalog, registry)
        assert sequencer.stats.seen == 10
        assert sequencer.stats.kept == 8
        assert sequencer.stats.dropped == {"outside_region": 2}
        assert sequencer.n_trips == 4
        assert [trip for trip, _ in sequencer.iter_trip_pairs()] == ["T1", "T2", "T3"]

        pairs = sequencer.pairs()
        assert list(zip(pairs["trip_id"], pairs["from_stop"], pairs["to_stop"], strict=True)) == [
            ("T1", "S1", "S2"),
            ("T1", "S2", "S3"),
            ("T2", "S1", "S2"),
            ("T3", "S2", "S3"),
        ]

    def test_numeric_sequence_order(
        self,
        make_feed: Callable[..., Path],
        index_factory: IndexFactory,
    ) -> None:
        """Sequence numbers sort numerically; ties keep file order; bad rows are counted."""
        tables = dict(SCENARIO_TABLES)
        tables["stop_times.txt"] = (
            "trip_id,stop_id,stop_sequence,arrival_time,departure_time\n"
            "T,S3,10,08:10:00,08:10:00\n"
            "T,S1,2,08:00:00,08:00:00\n"
            "T,S2,5,8h05,08:05:00\n"
            "T,S3,x,08:20:00,08:20:00\n"
            "T,S1,10,08:11:00,08:11:00\n"
            "GHOST,S1,1,08:00:00,08:00:00\n"
        )
        with FeedStreamReader(make_feed(tables), chunksize=2) as reader:
            catalog = RouteCatalog.from_reader(reader)
            registry = StopRegistry.from_reader(reader, index_factory(OSLO))
            sequencer = TripSequencer.from_reader(reader, catalog, registry)

        assert sequencer.visits["stop_id"].tolist() == ["S1", "S2", "S3", "S1"]
        assert sequencer.stats.dropped == {"bad_sequence": 1, "unknown_trip": 1}
        assert sequencer.stats.flagged == {"bad_time": 1}
        [(trip_id, trip_pairs)] = list(sequencer.iter_trip_pairs())
        assert trip_id == "T"
        assert trip_pairs["to_stop"].tolist() == ["S2", "S3", "S1"]

    def test_no_visits(
        self,
        make_feed: Callable[..., Path],
        index_factory: IndexFactory,
    ) -> None:
        """An empty stop_times table yields no pairs."""
        tables = dict(SCENARIO_TABLES)
        tables["stop_times.txt"] = "trip_id,stop_id,stop_sequence,arrival_time,departure_time\n"
        with FeedStreamReader(make_feed(tables)) as reader:
            catalog = RouteCatalog.from_reader(reader)
            registry = StopRegistry.from_reader(reader, index_factory(OSLO))
            sequencer = TripSequencer.from_reader(reader, catalog, registry)
        assert sequencer.n_trips == 0
        assert sequencer.pairs().empty
        assert list(sequencer.iter_trip_pairs()) == []


class TestEdgeAggregator:
    """Test traversal aggregation."""

    def test_observe(self, sample_catalog: RouteCatalog) -> None:
        """Every traversal counts; only determinable durations are sampled."""
        aggregator = EdgeAggregator(sample_catalog)
        key = EdgeKey("S1", "S2", "R1")
        aggregator.observe(key, 60)
        aggregator.observe(key, None)
        aggregator.observe(key, 80)
        aggregator.observe(EdgeKey("S2", "S1", "R1"), None)
        assert len(aggregator) == 2

        forward, backward = aggregator.finalize()
        assert forward == Edge("S1", "S2", "R1", "31", "bus", "Ruter", 70, 3, 2)
        assert backward.travel_time_sec is None
        assert backward.trips_in_feed == 1
        assert aggregator.stats.flagged == {"no_duration": 2}

    def test_unknown_line(self, sample_catalog: RouteCatalog) -> None:
        """Observations must name a catalogued route."""
        with pytest.raises(KeyError):
            EdgeAggregator(sample_catalog).observe(EdgeKey("S1", "S2", "R9"), 10)

    def test_edge_record(self) -> None:
        """Records use the published camelCase field names."""
        edge = Edge("S1", "S2", "R1", "31", "bus", None, None, 1, 0)
        assert edge.to_record() == {
            "from": "S1",
            "to": "S2",
            "lineId": "R1",
            "lineCode": "31",
            "mode": "bus",
            "authority": None,
            "travelTimeSec": None,
            "tripsInFeed": 1,
        }


class TestNodeClassification:
    """Test node derivation from edges."""

    @pytest.mark.parametrize(
        ("modes", "expected"),
        [({"bus"}, "bus"), ({"bus", "tram"}, "multimodal"), (set(), "unknown"), (["rail", "rail"], "rail")],
    )
    def test_classify_stop_type(self, modes: set[str], expected: str) -> None:
        """Single mode, several modes, or none."""
        assert classify_stop_type(modes) == expected

    def test_classify_nodes(self) -> None:
        """Only edge endpoints become nodes; stops without edges are not emitted."""
        registry = StopRegistry(
            {sid: StopRecord(sid, sid.lower(), 59.0, 10.0) for sid in ("A", "B", "C", "D")},
            stats=None,  # type: ignore[arg-type]
        )
        edges = [
            Edge("A", "B", "L1", "1", "bus", None, 60, 1, 1),
            Edge("B", "C", "L2", "2", "tram", None, 60, 1, 1),
        ]
        nodes = classify_nodes(edges, registry)
        assert [n.stop_id for n in nodes] == ["A", "B", "C"]
        assert nodes[1].modes == ("bus", "tram")
        assert nodes[1].stop_type == "multimodal"
        assert nodes[0].to_record()["stopPlaceId"] == "A"


class TestBuildRegionGraph:
    """Test end-to-end graph construction for one region."""

    def test_single_trip_scenario(
        self,
        make_feed: Callable[..., Path],
        index_factory: IndexFactory,
    ) -> None:
        """One bus trip S1 -> S2 -> S3 gives two 60 second edges."""
        tables = dict(SCENARIO_TABLES)
        tables["stop_times.txt"] = (
            "trip_id,stop_id,stop_sequence,arrival_time,departure_time\n"
            "T,S1,1,,08:00:00\n"
            "T,S2,2,08:01:00,\n"
            "T,S3,3,08:02:00,\n"
        )
        graph = _build(make_feed(tables), index_factory)
        edges = _edges_by_key(graph)
        assert set(edges) == {EdgeKey("S1", "S2", "R"), EdgeKey("S2", "S3", "R")}
        for edge in edges.values():
            assert edge.travel_time_sec == 60
            assert edge.trips_in_feed == 1
            assert edge.mode == "bus"
        assert_graph_invariants(graph)

    def test_two_trip_median(self, make_feed: Callable[..., Path], index_factory: IndexFactory) -> None:
        """Two traversals of 60 and 80 seconds give a median of 70."""
        tables = dict(SCENARIO_TABLES)
        tables["trips.txt"] = "trip_id,route_id\nT,R\nU,R\n"
        tables["stop_times.txt"] = (
            "trip_id,stop_id,stop_sequence,arrival_time,departure_time\n"
            "T,S1,1,08:00:00,08:00:00\n"
            "T,S2,2,08:01:00,08:01:00\n"
            "U,S1,1,09:00:00,09:00:00\n"
            "U,S2,2,09:01:20,09:01:20\n"
        )
        graph = _build(make_feed(tables), index_factory)
        [edge] = graph.edges
        assert (edge.travel_time_sec, edge.trips_in_feed) == (70, 2)

    def test_missing_and_negative_durations(
        self,
        make_feed: Callable[..., Path],
        index_factory: IndexFactory,
    ) -> None:
        """Traversals without a usable duration still count; zero durations are kept."""
        tables = dict(SCENARIO_TABLES)
        tables["trips.txt"] = "trip_id,route_id\nT,R\nU,R\nV,R\n"
        tables["stop_times.txt"] = (
            "trip_id,stop_id,stop_sequence,arrival_time,departure_time\n"
            "T,S1,1,,\n"
            "T,S2,2,08:01:00,\n"
            "U,S1,1,09:00:00,09:00:00\n"
            "U,S2,2,08:59:00,08:59:00\n"
            "V,S2,1,10:00:00,10:00:00\n"
            "V,S3,2,10:00:00,10:00:00\n"
        )
        graph = _build(make_feed(tables), index_factory)
        edges = _edges_by_key(graph)
        no_duration = edges[EdgeKey("S1", "S2", "R")]
        assert no_duration.travel_time_sec is None
        assert no_duration.trips_in_feed == 2
        assert "travelTimeSec" not in graph.to_document()["edges"][0]
        assert edges[EdgeKey("S2", "S3", "R")].travel_time_sec == 0
        assert graph.diagnostics["edge_observations"]["flagged"] == {"no_duration": 2}
        assert_graph_invariants(graph)

    def test_bad_latitude_stop(self, sample_feed: Path, index_factory: IndexFactory) -> None:
        """A stop with a non-numeric latitude is in no node and no edge."""
        graph = _build(sample_feed, index_factory)
        assert "SX" not in {node.stop_id for node in graph.nodes}
        assert all("SX" not in (edge.from_stop, edge.to_stop) for edge in graph.edges)
        assert graph.diagnostics["stops"]["dropped"]["bad_coordinate"] == 1

    def test_sample_feed_oslo(self, sample_feed: Path, index_factory: IndexFactory) -> None:
        """Edges, nodes and modes of the sample feed clipped to Oslo."""
        graph = _build(sample_feed, index_factory)
        assert graph.region == "OSLO"
        assert [edge.key for edge in graph.edges] == [
            EdgeKey("S1", "S2", "R1"),
            EdgeKey("S2", "S3", "R1"),
            EdgeKey("S2", "S3", "R2"),
        ]
        bus, _, tram = graph.edges
        assert (bus.travel_time_sec, bus.trips_in_feed, bus.line_code) == (70, 2, "31")
        assert (tram.travel_time_sec, tram.mode, tram.authority) == (180, "tram", "Ruter")

        nodes = {node.stop_id: node for node in graph.nodes}
        assert nodes["S1"].modes == ("bus",)
        assert nodes["S1"].stop_type == "bus"
        assert nodes["S2"].modes == ("bus", "tram")
        assert nodes["S3"].stop_type == "multimodal"
        assert_graph_invariants(graph)

    def test_sample_feed_greater_oslo(self, sample_feed: Path, index_factory: IndexFactory) -> None:
        """A two-code region includes the rail edge to the second area."""
        graph = _build(sample_feed, index_factory, GREATER_OSLO)
        rail = _edges_by_key(graph)[EdgeKey("S3", "S4", "R3")]
        assert (rail.travel_time_sec, rail.mode, rail.line_code, rail.authority) == (
            1800,
            "rail",
            "Rail L1",
            "Vy",
        )
        nodes = {node.stop_id: node for node in graph.nodes}
        assert nodes["S3"].modes == ("bus", "rail", "tram")
        assert nodes["S4"].stop_type == "rail"
        assert_graph_invariants(graph)

    def test_region_isolation(self, sample_feed: Path, index_factory: IndexFactory) -> None:
        """Building Oslo alone or next to another region gives the same graph."""
        alone = _build(sample_feed, index_factory)
        with FeedStreamReader(sample_feed, chunksize=3) as reader:
            catalog = RouteCatalog.from_reader(reader)
            result = build_region_graphs([GREATER_OSLO, OSLO], reader, catalog, index_factory)
        together = result.graphs["OSLO"]
        assert together.edges == alone.edges
        assert together.nodes == alone.nodes
        assert len(result.graphs["GREATER_OSLO"].edges) == 4


class TestBuildRegionGraphs:
    """Test per-region failure isolation."""

    def test_unknown_code_aborts_only_that_region(
        self,
        sample_reader: FeedStreamReader,
        sample_catalog: RouteCatalog,
        index_factory: IndexFactory,
    ) -> None:
        """A configuration error is recorded and the other regions are built."""
        bad = RegionSpec("NOWHERE", ("99",))
        result = build_region_graphs([bad, OSLO], sample_reader, sample_catalog, index_factory)
        assert not result.ok
        assert isinstance(result.failures["NOWHERE"], ConfigurationError)
        assert list(result.graphs) == ["OSLO"]

    def test_missing_stop_times(self, make_feed: Callable[..., Path], index_factory: IndexFactory) -> None:
        """A missing table fails every region without raising."""
        tables = dict(SCENARIO_TABLES)
        with FeedStreamReader(make_feed(tables)) as reader:
            catalog = RouteCatalog.from_reader(reader)
            result = build_region_graphs([OSLO, GREATER_OSLO], reader, catalog, index_factory)
        assert result.graphs == {}
        assert set(result.failures) == {"OSLO", "GREATER_OSLO"}
        assert all(isinstance(e, SourceFormatError) for e in result.failures.values())

    def test_all_regions_ok(
        self,
        sample_reader: FeedStreamReader,
        sample_catalog: RouteCatalog,
        index_factory: IndexFactory,
    ) -> None:
        """No failures means ok."""
        result = build_region_graphs([OSLO], sample_reader, sample_catalog, index_factory)
        assert result.ok
        assert_graph_invariants(result.graphs["OSLO"])

    def test_unavailable_geometry_aborts_only_that_region(
        self,
        sample_reader: FeedStreamReader,
        sample_catalog: RouteCatalog,
        index_factory: IndexFactory,
    ) -> None:
        """A geometry that cannot be downloaded fails its region alone."""

        def factory(region: RegionSpec) -> RegionGeometryIndex:
            if region.label == "FAR":
                msg = "Geometry for region code '50' could not be fetched"
                raise SourceUnavailableError(msg)
            return index_factory(region)

        far = RegionSpec("FAR", ("50",))
        result = build_region_graphs([OSLO, far], sample_reader, sample_catalog, factory)
        assert isinstance(result.failures["FAR"], SourceUnavailableError)
        assert list(result.graphs) == ["OSLO"]

    def test_on_graph_runs_before_next_region(
        self,
        sample_reader: FeedStreamReader,
        sample_catalog: RouteCatalog,
        index_factory: IndexFactory,
    ) -> None:
        """Each completed graph is handed over before the next region starts."""
        events: list[str] = []

        def factory(region: RegionSpec) -> RegionGeometryIndex:
            events.append(f"build {region.label}")
            return index_factory(region)

        bad = RegionSpec("NOWHERE", ("99",))
        result = build_region_graphs(
            [OSLO, bad, GREATER_OSLO],
            sample_reader,
            sample_catalog,
            factory,
            on_graph=lambda graph: events.append(f"done {graph.region}"),
        )
        assert events == [
            "build OSLO",
            "done OSLO",
            "build NOWHERE",
            "build GREATER_OSLO",
            "done GREATER_OSLO",
        ]
        assert set(result.failures) == {"NOWHERE"}
