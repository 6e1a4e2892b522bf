"""Core fixtures: small GTFS archives, region geometries and fake HTTP sessions."""

import json
import typing
import zipfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import requests
from shapely.geometry import Polygon

from transit2graph.config import RegionSpec
from transit2graph.exceptions import ConfigurationError
from transit2graph.feed import FeedStreamReader
from transit2graph.feed import RouteCatalog
from transit2graph.geometry import RegionGeometryIndex

# ============================================================================
# GEOMETRIES
# ============================================================================

# Oslo stand-in: lon 10..11, lat 59..60
OSLO_SQUARE = {
    "type": "Polygon",
    "coordinates": [[[10.0, 59.0], [11.0, 59.0], [11.0, 60.0], [10.0, 60.0], [10.0, 59.0]]],
}

# Akershus stand-in: lon 12..13, lat 59..60
AKERSHUS_SQUARE = {
    "type": "Polygon",
    "coordinates": [[[12.0, 59.0], [13.0, 59.0], [13.0, 60.0], [12.0, 60.0], [12.0, 59.0]]],
}

REGION_GEOMETRIES = {"03": OSLO_SQUARE, "32": AKERSHUS_SQUARE}


@pytest.fixture
def square_with_hole() -> dict[str, Any]:
    """Polygon 0..10 with a hole 4..6."""
    return {
        "type": "Polygon",
        "coordinates": [
            [[0, 0], [10, 0], [10, 10], [0, 10], [0, 0]],
            [[4, 4], [6, 4], [6, 6], [4, 6], [4, 4]],
        ],
    }


@pytest.fixture
def shapely_square() -> Polygon:
    """Shapely unit square 0..1."""
    return Polygon([(0, 0), (1, 0), (1, 1), (0, 1)])


@pytest.fixture
def index_factory() -> Callable[[RegionSpec], RegionGeometryIndex]:
    """Geometry index lookup over the two test squares; other codes are unknown."""

    def factory(region: RegionSpec) -> RegionGeometryIndex:
        geometries = {}
        for code in region.codes:
            if code not in REGION_GEOMETRIES:
                msg = f"Unknown region code {code!r}"
                raise ConfigurationError(msg)
            geometries[code] = REGION_GEOMETRIES[code]
        return RegionGeometryIndex(geometries)

    return factory


@pytest.fixture
def geometry_cache(tmp_path: Path) -> Path:
    """Cache directory pre-filled with both test region documents."""
    cache = tmp_path / "cache"
    cache.mkdir()
    for code, geometry in REGION_GEOMETRIES.items():
        (cache / f"{code}.json").write_text(json.dumps({"omrade": geometry}), encoding="utf-8")
    return cache


# ============================================================================
# FEED ARCHIVES
# ============================================================================

SAMPLE_TABLES = {
    "agency.txt": "agency_id,agency_name\nA1,Ruter\nA2,Vy\n",
    "routes.txt": (
        "route_id,agency_id,route_type,route_short_name,route_long_name\n"
        "R1,A1,3,31,Bus 31\n"
        "R2,A1,0,12,Tram 12\n"
        "R3,A2,2,,Rail L1\n"
    ),
    "trips.txt": "route_id,service_id,trip_id\nR1,WD,T1\nR1,WD,T2\nR2,WD,T3\nR3,WD,T4\n",
    "stops.txt": (
        "stop_id,stop_name,stop_lat,stop_lon\n"
        "S1,Jernbanetorget,59.1,10.1\n"
        "S2,Stortinget,59.2,10.2\n"
        "S3,Majorstuen,59.3,10.3\n"
        "S4,Lillestrom,59.5,12.5\n"
        "SX,Broken,abc,10.4\n"
    ),
    "stop_times.txt": (
        "trip_id,arrival_time,departure_time,stop_id,stop_sequence\n"
        "T1,,08:00:00,S1,1\n"
        "T1,08:01:00,,S2,2\n"
        "T1,08:02:00,,S3,3\n"
        "T1,08:03:00,,SX,4\n"
        "T2,,09:00:00,S1,1\n"
        "T2,09:01:20,09:01:30,S2,2\n"
        "T3,08:00:00,08:00:00,S2,1\n"
        "T3,08:03:00,08:03:00,S3,2\n"
        "T4,,10:00:00,S3,1\n"
        "T4,10:30:00,,S4,2\n"
    ),
}


def write_feed(path: Path, tables: dict[str, str]) -> Path:
    """Write ``tables`` (member name -> CSV text) into a zip archive."""
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in tables.items():
            zf.writestr(name, content)
    return path


@pytest.fixture
def make_feed(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a feed archive from table overrides."""

    def factory(tables: dict[str, str] | None = None, name: str = "gtfs.zip", **overrides: str) -> Path:
        contents = dict(SAMPLE_TABLES if tables is None else tables)
        for table, content in overrides.items():
            contents[f"{table}.txt"] = content
        return write_feed(tmp_path / name, contents)

    return factory


@pytest.fixture
def sample_feed(make_feed: Callable[..., Path]) -> Path:
    """The standard three-line sample feed."""
    return make_feed()


@pytest.fixture
def sample_reader(sample_feed: Path) -> typing.Generator[FeedStreamReader, None, None]:
    """Open reader over the sample feed with a tiny chunk size."""
    with FeedStreamReader(sample_feed, chunksize=2) as reader:
        yield reader


@pytest.fixture
def sample_catalog(sample_reader: FeedStreamReader) -> RouteCatalog:
    """Route catalogue of the sample feed."""
    return RouteCatalog.from_reader(sample_reader)


# ============================================================================
# HTTP FAKES
# ============================================================================


class FakeResponse:
    """Just enough of ``requests.Response`` for the source and enrichment code."""

    def __init__(self, status_code: int = 200, body: Any = None, content: bytes | None = None) -> None:
        self.status_code = status_code
        self._body = body
        if content is not None:
            self.content = content
        elif isinstance(body, str):
            self.content = body.encode("utf-8")
        else:
            self.content = json.dumps(body).encode("utf-8")

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.text)

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            msg = f"{self.status_code} Error"
            raise requests.HTTPError(msg, response=typing.cast("Any", self))

    def iter_content(self, chunk_size: int = 1) -> typing.Iterator[bytes]:
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc: object) -> None:
        return None


class FakeSession:
    """Records calls and answers from a queue (or a callable) of responses."""

    def __init__(self, responses: Any = ()) -> None:
        self.responses = responses
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def _answer(self, method: str, url: str, kwargs: dict[str, Any]) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        if callable(self.responses):
            result = self.responses(method, url, kwargs)
        else:
            result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._answer("GET", url, kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._answer("POST", url, kwargs)

    def close(self) -> None:
        return None


@pytest.fixture
def fake_session() -> Callable[..., FakeSession]:
    """Factory for :class:`FakeSession`."""
    return FakeSession


@pytest.fixture
def fake_response() -> Callable[..., FakeResponse]:
    """Factory for :class:`FakeResponse`."""
    return FakeResponse
