"""
Region Geometry Module.

This module answers the question "does this stop lie inside the region?".
Regions are unions of Polygon / MultiPolygon boundaries, given either as
GeoJSON-style mappings or as shapely geometries. Membership is evaluated with
the even-odd ray-casting rule, vectorised with NumPy over whole chunks of
points so that a national stops table can be clipped without a Python loop
per stop.

Notes
-----
A multipolygon contains a point when *any* of its constituent polygons
contains it, each polygon being checked only against its own holes. Points
lying exactly on a ring edge get whatever the ray-casting arithmetic yields.
"""

# Future annotations for type hints
from __future__ import annotations

# Standard library imports
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING
from typing import Any

# Third-party imports
import numpy as np
from shapely.errors import ShapelyError
from shapely.geometry import MultiPolygon
from shapely.geometry import Polygon
from shapely.geometry import shape

# Local imports
from .exceptions import SourceFormatError

# Type checking imports
if TYPE_CHECKING:
    from collections.abc import Iterable

    import numpy.typing as npt

# Module logger configuration
logger = logging.getLogger(__name__)

__all__ = ["RegionGeometryIndex", "point_in_geometry", "point_in_ring"]

SUPPORTED_GEOMETRY_TYPES = ("Polygon", "MultiPolygon")

# One polygon unit: outer ring followed by its holes, each an (n, 2) array
_PolygonUnit = tuple["npt.NDArray[np.float64]", list["npt.NDArray[np.float64]"]]


# =============================================================================
# RAY CASTING
# =============================================================================


def _points_in_ring(
    xs: npt.NDArray[np.float64],
    ys: npt.NDArray[np.float64],
    ring: npt.NDArray[np.float64],
) -> npt.NDArray[np.bool_]:
    """
    Even-odd test of many points against one ring.

    Parameters
    ----------
    xs, ys : numpy.ndarray
        Longitudes and latitudes of the points.
    ring : numpy.ndarray
        ``(n, 2)`` array of ring vertices. Closing the ring is optional.

    Returns
    -------
    numpy.ndarray
        Boolean mask, ``True`` for points inside the ring.
    """
    inside = np.zeros(xs.shape, dtype=bool)
    if len(ring) < 3:
        return inside

    # Edge i runs from vertex j = i - 1 to vertex i, wrapping around
    x_i, y_i = ring[:, 0], ring[:, 1]
    x_j, y_j = np.roll(x_i, 1), np.roll(y_i, 1)

    with np.errstate(divide="ignore", invalid="ignore"):
        for xi, yi, xj, yj in zip(x_i, y_i, x_j, y_j, strict=True):
            crosses = (yi > ys) != (yj > ys)
            if not crosses.any():
                continue
            x_cross = (xj - xi) * (ys - yi) / (yj - yi) + xi
            inside ^= crosses & (xs < x_cross)
    return inside


def point_in_ring(lon: float, lat: float, ring: Iterable[Iterable[float]]) -> bool:
    """
    Return whether a point lies inside a ring by the even-odd rule.

    Parameters
    ----------
    lon, lat : float
        Point coordinates.
    ring : iterable of coordinate pairs
        Ring vertices as ``(lon, lat)`` pairs.

    Returns
    -------
    bool
        ``True`` when the point is inside.

    Examples
    --------
    >>> point_in_ring(0.5, 0.5, [(0, 0), (1, 0), (1, 1), (0, 1)])
    True
    """
    arr = _ring_array(ring)
    return bool(_points_in_ring(np.array([lon], dtype=float), np.array([lat], dtype=float), arr)[0])


# =============================================================================
# GEOMETRY PARSING
# =============================================================================


def _ring_array(ring: Iterable[Iterable[float]]) -> npt.NDArray[np.float64]:
    """Coerce a coordinate sequence to an ``(n, 2)`` float array."""
    arr = np.asarray(list(ring), dtype=float)
    if arr.size == 0:
        return np.empty((0, 2), dtype=float)
    if arr.ndim != 2 or arr.shape[1] < 2:
        msg = f"Ring coordinates must be (lon, lat) pairs, got shape {arr.shape}"
        raise SourceFormatError(msg)
    return arr[:, :2]


def _to_shapely(geometry: Mapping[str, Any] | Polygon | MultiPolygon) -> Polygon | MultiPolygon:
    """
    Validate a geometry input and return it as a shapely object.

    Parameters
    ----------
    geometry : Mapping or shapely.geometry.Polygon or shapely.geometry.MultiPolygon
        GeoJSON-style mapping with ``type`` and ``coordinates`` keys, or a
        shapely geometry.

    Returns
    -------
    shapely.geometry.Polygon or shapely.geometry.MultiPolygon
        Parsed geometry.

    Raises
    ------
    SourceFormatError
        If the declared type is not Polygon / MultiPolygon or the coordinates
        cannot be parsed.
    """
    if isinstance(geometry, (Polygon, MultiPolygon)):
        return geometry

    if not isinstance(geometry, Mapping):
        msg = f"Geometry must be a mapping or a shapely geometry, got {type(geometry).__name__}"
        raise SourceFormatError(msg)

    geom_type = geometry.get("type")
    if geom_type not in SUPPORTED_GEOMETRY_TYPES:
        msg = f"Geometry is not Polygon/MultiPolygon: {geom_type}"
        raise SourceFormatError(msg)

    try:
        parsed = shape(geometry)
    except (ShapelyError, ValueError, TypeError, IndexError, AttributeError) as e:
        msg = f"Malformed {geom_type} coordinates: {e}"
        raise SourceFormatError(msg) from e
    return parsed


def _polygon_units(geometry: Polygon | MultiPolygon) -> list[_PolygonUnit]:
    """Split a geometry into ``(outer, holes)`` ring arrays per polygon."""
    polygons = list(geometry.geoms) if isinstance(geometry, MultiPolygon) else [geometry]
    units: list[_PolygonUnit] = []
    for poly in polygons:
        if poly.is_empty:
            continue
        outer = _ring_array(poly.exterior.coords)
        holes = [_ring_array(hole.coords) for hole in poly.interiors]
        units.append((outer, holes))
    return units


def _units_contain(
    units: list[_PolygonUnit],
    xs: npt.NDArray[np.float64],
    ys: npt.NDArray[np.float64],
) -> npt.NDArray[np.bool_]:
    """Vectorised containment of points by any polygon unit."""
    result = np.zeros(xs.shape, dtype=bool)
    for outer, holes in units:
        in_unit = _points_in_ring(xs, ys, outer)
        for hole in holes:
            if not in_unit.any():
                break
            in_unit &= ~_points_in_ring(xs, ys, hole)
        result |= in_unit
    return result


def point_in_geometry(
    lon: float,
    lat: float,
    geometry: Mapping[str, Any] | Polygon | MultiPolygon,
) -> bool:
    """
    Return whether a Polygon / MultiPolygon contains a point.

    A polygon contains the point when its outer ring does and none of its own
    holes do. A multipolygon contains the point when any constituent polygon
    does, without cross-checking sibling polygons' holes.

    Parameters
    ----------
    lon, lat : float
        Point coordinates.
    geometry : Mapping or shapely geometry
        GeoJSON-style Polygon / MultiPolygon mapping or shapely equivalent.

    Returns
    -------
    bool
        ``True`` when the point is inside.

    Raises
    ------
    SourceFormatError
        If the geometry type is unsupported.
    """
    units = _polygon_units(_to_shapely(geometry))
    xs = np.array([lon], dtype=float)
    ys = np.array([lat], dtype=float)
    return bool(_units_contain(units, xs, ys)[0])


# =============================================================================
# REGION INDEX
# =============================================================================


class RegionGeometryIndex:
    """
    Point-membership index over the geometries making up one region.

    Each region code contributes one Polygon or MultiPolygon. A point belongs
    to the region when at least one of those geometries contains it.

    Parameters
    ----------
    geometries : Mapping[str, Mapping or shapely geometry], optional
        Geometry per region code.

    See Also
    --------
    point_in_geometry : Single-geometry membership test.

    Examples
    --------
    >>> square = {"type": "Polygon", "coordinates": [[(0, 0), (2, 0), (2, 2), (0, 2)]]}
    >>> index = RegionGeometryIndex({"03": square})
    >>> index.contains(1.0, 1.0)
    True
    >>> index.contains(3.0, 1.0)
    False
    """

    def __init__(
        self,
        geometries: Mapping[str, Mapping[str, Any] | Polygon | MultiPolygon] | None = None,
    ) -> None:
        self._units: dict[str, list[_PolygonUnit]] = {}
        self._bounds: dict[str, tuple[float, float, float, float]] = {}
        for code, geometry in (geometries or {}).items():
            self.add(code, geometry)

    def add(self, code: str, geometry: Mapping[str, Any] | Polygon | MultiPolygon) -> None:
        """
        Register the geometry of one region code.

        Parameters
        ----------
        code : str
            Region code.
        geometry : Mapping or shapely geometry
            Polygon / MultiPolygon boundary.

        Raises
        ------
        SourceFormatError
            If the geometry type is unsupported or its coordinates are
            malformed.
        """
        parsed = _to_shapely(geometry)
        self._units[code] = _polygon_units(parsed)
        self._bounds[code] = parsed.bounds if not parsed.is_empty else (0.0, 0.0, 0.0, 0.0)
        logger.debug("Registered %s geometry for code %s", parsed.geom_type, code)

    @property
    def codes(self) -> list[str]:
        """Region codes held by the index, in registration order."""
        return list(self._units)

    def __len__(self) -> int:
        return len(self._units)

    def contains(self, lon: float, lat: float) -> bool:
        """
        Return whether any region geometry contains the point.

        Parameters
        ----------
        lon, lat : float
            Point coordinates.

        Returns
        -------
        bool
            Region membership of the point.
        """
        xs = np.array([lon], dtype=float)
        ys = np.array([lat], dtype=float)
        return bool(self.contains_points(xs, ys)[0])

    def contains_points(
        self,
        lons: npt.ArrayLike,
        lats: npt.ArrayLike,
    ) -> npt.NDArray[np.bool_]:
        """
        Vectorised region membership for many points.

        Points outside a geometry's bounding box skip its ring tests.
        NaN coordinates are never inside.

        Parameters
        ----------
        lons, lats : array-like
            Point coordinates of equal length.

        Returns
        -------
        numpy.ndarray
            Boolean membership mask.
        """
        xs = np.asarray(lons, dtype=float)
        ys = np.asarray(lats, dtype=float)
        result = np.zeros(xs.shape, dtype=bool)

        for code, units in self._units.items():
            minx, miny, maxx, maxy = self._bounds[code]
            candidates = (~result) & (xs >= minx) & (xs <= maxx) & (ys >= miny) & (ys <= maxy)
            if not candidates.any():
                continue
            idx = np.flatnonzero(candidates)
            result[idx] = _units_contain(units, xs[idx], ys[idx])
        return result
