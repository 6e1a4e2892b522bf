"""
Output Writers.

Persist region graphs as ``nodes_GTFS_<label>.csv``,
``edges_GTFS_<label>.csv`` and ``graph_GTFS_<label>.json``, and read edge
tables back for the enrichment step.
"""

# Future annotations for type hints
from __future__ import annotations

# Standard library imports
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING
from typing import NamedTuple

# Third-party imports
import pandas as pd

# Local imports
from .utils import EDGE_COLUMNS

# Type checking imports
if TYPE_CHECKING:
    from .transportation import RegionGraph

# Module logger configuration
logger = logging.getLogger(__name__)

__all__ = ["GraphFiles", "read_edges_csv", "write_region_graph"]


class GraphFiles(NamedTuple):
    """Paths of the three files written for one region."""

    nodes: Path
    edges: Path
    document: Path

    @classmethod
    def for_region(cls, output_dir: str | Path, label: str) -> GraphFiles:
        """Return the file paths used for region ``label``."""
        output_dir = Path(output_dir)
        return cls(
            output_dir / f"nodes_GTFS_{label}.csv",
            output_dir / f"edges_GTFS_{label}.csv",
            output_dir / f"graph_GTFS_{label}.json",
        )


def write_region_graph(graph: RegionGraph, output_dir: str | Path) -> GraphFiles:
    """
    Write a region graph as two CSV tables and one JSON document.

    In the CSV tables the ``modes`` list is joined with commas and a missing
    ``travelTimeSec`` is an empty cell. In the JSON document the field is
    omitted instead.

    Parameters
    ----------
    graph : RegionGraph
        Graph to persist.
    output_dir : str or pathlib.Path
        Target directory, created if needed.

    Returns
    -------
    GraphFiles
        Paths of the written files.
    """
    files = GraphFiles.for_region(output_dir, graph.region)
    files.nodes.parent.mkdir(parents=True, exist_ok=True)

    nodes = graph.nodes_frame()
    nodes["modes"] = nodes["modes"].map(",".join)
    nodes.to_csv(files.nodes, index=False)
    graph.edges_frame().to_csv(files.edges, index=False)

    with files.document.open("w", encoding="utf-8") as fh:
        json.dump(graph.to_document(), fh, indent=2, ensure_ascii=False)

    logger.info(
        "[%s] Done. Static network: nodes=%d edges=%d -> %s",
        graph.region,
        len(graph.nodes),
        len(graph.edges),
        files.nodes.parent,
    )
    return files


def read_edges_csv(path: str | Path) -> pd.DataFrame:
    """
    Read an edges table written by :func:`write_region_graph`.

    Identifier columns stay strings; rows without a ``lineId`` are dropped.

    Parameters
    ----------
    path : str or pathlib.Path
        Edges CSV.

    Returns
    -------
    pandas.DataFrame
        Edge rows.

    Raises
    ------
    ValueError
        If the file lacks any of the edge columns.
    """
    edges = pd.read_csv(
        path,
        dtype={"from": str, "to": str, "lineId": str, "lineCode": str, "authority": str},
        keep_default_na=False,
        na_values={"travelTimeSec": [""]},
    )
    missing = set(EDGE_COLUMNS) - set(edges.columns)
    if missing:
        msg = f"{path} is not an edges table, missing: {', '.join(sorted(missing))}"
        raise ValueError(msg)
    edges["travelTimeSec"] = edges["travelTimeSec"].astype("Int64")
    return edges[edges["lineId"] != ""].reset_index(drop=True)
