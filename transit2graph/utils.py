"""
Graph Rendering Utilities.

Functions in this module render finalized nodes and edges in the forms
downstream consumers expect: flat pandas tables, a nested ``{nodes, edges}``
document, GeoDataFrames with point / straight-line geometries, and a
NetworkX ``MultiDiGraph``. They only read the records they are given and
never touch feed or region state.
"""

# Future annotations for type hints
from __future__ import annotations

# Standard library imports
import logging
from typing import TYPE_CHECKING

# Third-party imports
import geopandas as gpd
import networkx as nx
import pandas as pd
from shapely.geometry import LineString
from shapely.geometry import Point

# Type checking imports
if TYPE_CHECKING:
    from collections.abc import Iterable
    from collections.abc import Sequence

    from .transportation import Edge
    from .transportation import Node

# Module logger configuration
logger = logging.getLogger(__name__)

__all__ = [
    "EDGE_COLUMNS",
    "NODE_COLUMNS",
    "edges_to_frame",
    "graph_to_document",
    "nodes_to_frame",
    "region_graph_to_gdf",
]

WGS84_CRS = "EPSG:4326"

NODE_COLUMNS = ["id", "stopPlaceId", "name", "lat", "lon", "modes", "stopType"]
EDGE_COLUMNS = [
    "from",
    "to",
    "lineId",
    "lineCode",
    "mode",
    "authority",
    "travelTimeSec",
    "tripsInFeed",
]


# ============================================================================
# TABULAR / DOCUMENT RENDERING
# ============================================================================


def nodes_to_frame(nodes: Iterable[Node]) -> pd.DataFrame:
    """
    Render nodes as one row per stop.

    The ``modes`` column holds a list per row.

    Parameters
    ----------
    nodes : iterable of Node
        Finalized nodes.

    Returns
    -------
    pandas.DataFrame
        Columns ``id, stopPlaceId, name, lat, lon, modes, stopType``.
    """
    return pd.DataFrame([n.to_record() for n in nodes], columns=NODE_COLUMNS)


def edges_to_frame(edges: Iterable[Edge]) -> pd.DataFrame:
    """
    Render edges as one row per (from, to, lineId) key.

    ``travelTimeSec`` uses the nullable ``Int64`` dtype so edges without a
    usable duration show ``<NA>`` rather than a float.

    Parameters
    ----------
    edges : iterable of Edge
        Finalized edges.

    Returns
    -------
    pandas.DataFrame
        Columns ``from, to, lineId, lineCode, mode, authority,
        travelTimeSec, tripsInFeed``.
    """
    frame = pd.DataFrame([e.to_record() for e in edges], columns=EDGE_COLUMNS)
    frame["travelTimeSec"] = frame["travelTimeSec"].astype("Int64")
    frame["tripsInFeed"] = frame["tripsInFeed"].astype("int64")
    return frame


def graph_to_document(
    nodes: Iterable[Node],
    edges: Iterable[Edge],
) -> dict[str, list[dict[str, object]]]:
    """
    Render a graph as a nested JSON-ready document.

    ``travelTimeSec`` is left out of edges that have no duration sample.

    Parameters
    ----------
    nodes : iterable of Node
        Finalized nodes.
    edges : iterable of Edge
        Finalized edges.

    Returns
    -------
    dict
        ``{"nodes": [...], "edges": [...]}``.
    """
    edge_docs = []
    for edge in edges:
        record = edge.to_record()
        if record["travelTimeSec"] is None:
            del record["travelTimeSec"]
        edge_docs.append(record)
    return {"nodes": [n.to_record() for n in nodes], "edges": edge_docs}


# ============================================================================
# SPATIAL RENDERING
# ============================================================================


def _edges_to_nx(nodes_gdf: gpd.GeoDataFrame, edges_gdf: gpd.GeoDataFrame) -> nx.MultiDiGraph:
    """Build a MultiDiGraph keyed by line id from the spatial frames."""
    G = nx.MultiDiGraph(crs=WGS84_CRS)
    for stop_id, row in nodes_gdf.iterrows():
        attrs = row.to_dict()
        attrs["pos"] = (row["lon"], row["lat"])
        G.add_node(stop_id, **attrs)
    for (u, v, line_id), row in edges_gdf.iterrows():
        attrs = row.to_dict()
        if pd.isna(attrs["travelTimeSec"]):
            attrs["travelTimeSec"] = None
        G.add_edge(u, v, key=line_id, **attrs)
    return G


def region_graph_to_gdf(
    nodes: Sequence[Node],
    edges: Sequence[Edge],
    as_nx: bool = False,
) -> tuple[gpd.GeoDataFrame, gpd.GeoDataFrame] | nx.MultiDiGraph:
    """
    Render a graph with geometries.

    Nodes become points at their stop coordinates. Edges become straight
    LineStrings between their endpoints.

    Parameters
    ----------
    nodes : sequence of Node
        Finalized nodes; every edge endpoint must be among them.
    edges : sequence of Edge
        Finalized edges.
    as_nx : bool, default False
        If True return a NetworkX ``MultiDiGraph`` whose edge keys are line
        ids, otherwise ``(nodes_gdf, edges_gdf)``.

    Returns
    -------
    tuple[geopandas.GeoDataFrame, geopandas.GeoDataFrame] or networkx.MultiDiGraph
        ``nodes_gdf`` is indexed by stop id; ``edges_gdf`` by
        ``(from, to, lineId)``. Both are in EPSG:4326.

    See Also
    --------
    nodes_to_frame : Tabular nodes without geometry.
    edges_to_frame : Tabular edges without geometry.
    """
    nodes_df = nodes_to_frame(nodes)
    nodes_gdf = gpd.GeoDataFrame(
        nodes_df,
        geometry=[Point(lon, lat) for lon, lat in zip(nodes_df["lon"], nodes_df["lat"], strict=True)],
        crs=WGS84_CRS,
    ).set_index("id")

    edges_df = edges_to_frame(edges)
    points = nodes_gdf.geometry
    edge_geoms = [
        LineString([points.loc[u], points.loc[v]])
        for u, v in zip(edges_df["from"], edges_df["to"], strict=True)
    ]
    edges_gdf = gpd.GeoDataFrame(
        edges_df,
        geometry=edge_geoms,
        crs=WGS84_CRS,
    ).set_index(["from", "to", "lineId"])

    return (nodes_gdf, edges_gdf) if not as_nx else _edges_to_nx(nodes_gdf, edges_gdf)
