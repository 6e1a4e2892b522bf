"""
Transit2Graph: per-region stop-to-stop transit graphs from GTFS feeds.

This package streams a zipped GTFS feed, keeps the stops that fall inside one
or more boundary geometries, and aggregates consecutive stop visits into
directed, line-specific edges with median travel times and trip counts.

Notes
-----
Main modules include:
- config : Explicit run configuration and region definitions
- geometry : Point-in-polygon tests and per-region geometry indexes
- feed : Streaming table reader and the shared route catalogue
- transportation : Stop filtering, trip sequencing, edge aggregation and node classification
- utils : Tabular, document, GeoDataFrame and NetworkX renderings of a graph
- output : CSV / JSON writers
- sources : Feed archive and boundary geometry download with on-disk caching
- enrichment : Journey planner trip counts per line
- pipeline : End-to-end extraction
"""

# Standard library imports
import contextlib
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version

# Import all public APIs from submodules
from .config import *  # noqa: F403
from .enrichment import *  # noqa: F403
from .exceptions import *  # noqa: F403
from .feed import *  # noqa: F403
from .geometry import *  # noqa: F403
from .output import *  # noqa: F403
from .pipeline import *  # noqa: F403
from .sources import *  # noqa: F403
from .transportation import *  # noqa: F403
from .utils import *  # noqa: F403

# Version handling with graceful fallback
with contextlib.suppress(PackageNotFoundError):
    __version__ = version("transit2graph")
