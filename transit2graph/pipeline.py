"""
Extraction Pipeline.

Wire the feed, geometry and output collaborators around the region graph
builder: fetch (or reuse) the feed archive, build the shared route catalogue
once, build every configured region, write each completed region to disk and
optionally enrich the edge tables with journey planner trip counts.
"""

# Future annotations for type hints
from __future__ import annotations

# Standard library imports
import logging
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import TYPE_CHECKING

# Local imports
from .enrichment import enrich_edges_csv
from .enrichment import parse_service_date
from .feed import FeedStreamReader
from .feed import RouteCatalog
from .output import write_region_graph
from .sources import GeometrySupplier
from .sources import fetch_feed_archive
from .transportation import build_region_graphs

# Type checking imports
if TYPE_CHECKING:
    from datetime import date

    import requests

    from .config import ExtractionConfig
    from .enrichment import JourneyPlannerClient
    from .output import GraphFiles
    from .transportation import RegionBuildResult
    from .transportation import RegionGraph

# Module logger configuration
logger = logging.getLogger(__name__)

__all__ = ["ExtractionRun", "run_extraction"]


@dataclass
class ExtractionRun:
    """
    What an extraction produced.

    Attributes
    ----------
    result : RegionBuildResult
        Graphs and failures per region.
    files : dict[str, GraphFiles]
        Written files per completed region.
    enriched : dict[str, pathlib.Path]
        Enriched edge tables per region, when enrichment ran.
    """

    result: RegionBuildResult
    files: dict[str, GraphFiles] = field(default_factory=dict)
    enriched: dict[str, Path] = field(default_factory=dict)


def run_extraction(
    config: ExtractionConfig,
    feed: str | Path | None = None,
    supplier: GeometrySupplier | None = None,
    session: requests.Session | None = None,
    enrich_date: str | date | None = None,
    client: JourneyPlannerClient | None = None,
) -> ExtractionRun:
    """
    Run a complete extraction as described by ``config``.

    Parameters
    ----------
    config : ExtractionConfig
        Regions, locations and filters of the run.
    feed : str or pathlib.Path, optional
        Local feed archive. When omitted the archive is fetched from
        ``config.feed_url`` into ``config.cache_dir`` (or reused from there).
    supplier : GeometrySupplier, optional
        Geometry source; defaults to one built from ``config``.
    session : requests.Session, optional
        HTTP session shared by the default collaborators.
    enrich_date : str or datetime.date, optional
        ``YYYY-MM-DD`` date; when given, every written edges table is
        enriched with the journey planner trip count of that date.
    client : JourneyPlannerClient, optional
        Journey planner client, required together with ``enrich_date``.

    Returns
    -------
    ExtractionRun
        Per-region graphs, failures and written files.

    Raises
    ------
    ConfigurationError
        If the configuration is invalid as a whole, or ``enrich_date`` is
        not a calendar date.
    SourceFormatError
        If the agency, routes or trips table is missing, which affects
        every region.
    """
    config.validate()
    if enrich_date is not None:
        if client is None:
            msg = "A JourneyPlannerClient is required to enrich edges"
            raise ValueError(msg)
        enrich_date = parse_service_date(enrich_date)

    feed_path = feed or fetch_feed_archive(config.feed_url, config.cache_dir, session=session)
    supplier = supplier or GeometrySupplier.from_config(config, session=session)
    files: dict[str, GraphFiles] = {}
    enriched: dict[str, Path] = {}

    def write(graph: RegionGraph) -> None:
        files[graph.region] = write_region_graph(graph, config.output_dir)
        if enrich_date is not None and client is not None:
            enriched[graph.region] = enrich_edges_csv(files[graph.region].edges, enrich_date, client)

    with FeedStreamReader(feed_path, chunksize=config.chunksize) as reader:
        catalog = RouteCatalog.from_reader(reader, agency_allow=config.agency_allow)
        result = build_region_graphs(
            config.regions,
            reader,
            catalog,
            supplier.index_for,
            on_graph=write,
        )

    if result.failures:
        logger.error("Regions failed: %s", ", ".join(result.failures))
    else:
        logger.info("All regions done.")
    return ExtractionRun(result, files, enriched)
