"""
Input Sources Module.

Acquire the two inputs of an extraction: the zipped timetable feed and one
boundary geometry per region code. Both are downloaded over HTTP with
``requests`` on first use and cached on disk, so repeated runs work offline.
Geometry documents are validated against an explicit schema before anything
reaches the geometry index.
"""

# Future annotations for type hints
from __future__ import annotations

# Standard library imports
import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Annotated
from typing import Any
from typing import Literal

# Third-party imports
import requests
from pydantic import BaseModel
from pydantic import Field
from pydantic import ValidationError

# Local imports
from .config import DEFAULT_CODE_PATTERN
from .config import DEFAULT_GEOMETRY_FIELD
from .config import DEFAULT_GEOMETRY_URL_TEMPLATE
from .exceptions import ConfigurationError
from .exceptions import SourceFormatError
from .exceptions import SourceUnavailableError
from .geometry import SUPPORTED_GEOMETRY_TYPES
from .geometry import RegionGeometryIndex

# Type checking imports
if TYPE_CHECKING:
    from .config import ExtractionConfig
    from .config import RegionSpec

# Module logger configuration
logger = logging.getLogger(__name__)

__all__ = ["GeometrySupplier", "fetch_feed_archive"]

FEED_ARCHIVE_NAME = "gtfs.zip"
DOWNLOAD_CHUNK_BYTES = 1 << 20
DEFAULT_TIMEOUT = 60.0


# =============================================================================
# FEED ARCHIVE
# =============================================================================


def fetch_feed_archive(
    url: str,
    cache_dir: str | Path,
    session: requests.Session | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Path:
    """
    Return a local copy of the feed archive, downloading it if needed.

    The download is streamed to a ``.part`` file and renamed once complete,
    so an interrupted transfer never leaves a truncated archive behind.

    Parameters
    ----------
    url : str
        Feed location.
    cache_dir : str or pathlib.Path
        Cache directory; the archive is stored as ``gtfs.zip``.
    session : requests.Session, optional
        Session to download with.
    timeout : float, default 60.0
        Connect / read timeout in seconds.

    Returns
    -------
    pathlib.Path
        Path of the cached archive.

    Raises
    ------
    requests.HTTPError
        If the server answers with an error status.
    """
    cache_dir = Path(cache_dir)
    target = cache_dir / FEED_ARCHIVE_NAME
    if target.exists():
        logger.info("Using existing %s", target)
        return target

    cache_dir.mkdir(parents=True, exist_ok=True)
    http = session or requests.Session()
    logger.info("Downloading GTFS feed from %s", url)

    partial = target.with_suffix(".zip.part")
    with http.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with partial.open("wb") as fh:
            for block in response.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                fh.write(block)
    partial.replace(target)
    logger.info("Saved feed to %s", target)
    return target


# =============================================================================
# GEOMETRY DOCUMENTS
# =============================================================================

Position = Annotated[list[float], Field(min_length=2)]
LinearRing = Annotated[list[Position], Field(min_length=4)]


class PolygonGeometry(BaseModel):
    """GeoJSON Polygon: outer ring followed by holes."""

    type: Literal["Polygon"]
    coordinates: list[LinearRing]


class MultiPolygonGeometry(BaseModel):
    """GeoJSON MultiPolygon: a list of polygon units."""

    type: Literal["MultiPolygon"]
    coordinates: list[list[LinearRing]]


def _validate_geometry(raw: Any, source: str) -> dict[str, Any]:
    """Check a geometry value against the GeoJSON schema."""
    if not isinstance(raw, dict):
        msg = f"Geometry in {source} is not an object"
        raise SourceFormatError(msg)

    geom_type = raw.get("type")
    if geom_type not in SUPPORTED_GEOMETRY_TYPES:
        msg = f"{source} geometry is not Polygon/MultiPolygon: {geom_type}"
        raise SourceFormatError(msg)

    model = PolygonGeometry if geom_type == "Polygon" else MultiPolygonGeometry
    try:
        return model.model_validate(raw).model_dump()
    except ValidationError as e:
        msg = f"Malformed {geom_type} in {source}: {e.error_count()} validation error(s)"
        raise SourceFormatError(msg) from e


class GeometrySupplier:
    """
    Resolve region codes to validated boundary geometries.

    Each code's document is fetched once from ``url_template`` and cached as
    ``<cache_dir>/<code>.json``. The geometry is read from ``field`` of the
    document.

    Parameters
    ----------
    url_template : str
        URL with a ``{code}`` placeholder.
    cache_dir : str or pathlib.Path
        Where documents are cached.
    field : str, default "omrade"
        Document field holding the GeoJSON geometry.
    code_pattern : str
        Regular expression a code must fully match before any request.
    session : requests.Session, optional
        Session to fetch with.
    timeout : float, default 60.0
        Request timeout in seconds.

    Examples
    --------
    >>> supplier = GeometrySupplier(cache_dir="out")
    >>> index = supplier.index_for(RegionSpec("OSLO", ("03",)))
    """

    def __init__(
        self,
        url_template: str = DEFAULT_GEOMETRY_URL_TEMPLATE,
        cache_dir: str | Path = "out",
        field: str = DEFAULT_GEOMETRY_FIELD,
        code_pattern: str = DEFAULT_CODE_PATTERN,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.url_template = url_template
        self.cache_dir = Path(cache_dir)
        self.field = field
        self.code_pattern = code_pattern
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_config(
        cls,
        config: ExtractionConfig,
        session: requests.Session | None = None,
    ) -> GeometrySupplier:
        """Create a supplier from an extraction configuration."""
        return cls(
            url_template=config.geometry_url_template,
            cache_dir=config.cache_dir,
            field=config.geometry_field,
            code_pattern=config.code_pattern,
            session=session,
        )

    def _fetch(self, code: str) -> str:
        url = self.url_template.format(code=code)
        logger.info("Downloading geometry for %s from %s", code, url)
        try:
            response = self.session.get(url, timeout=self.timeout)
            if response.status_code == 404:
                msg = f"Region code {code!r} is unknown to the geometry service"
                raise ConfigurationError(msg)
            response.raise_for_status()
        except requests.RequestException as e:
            msg = f"Geometry for region code {code!r} could not be fetched from {url}: {e}"
            raise SourceUnavailableError(msg) from e
        return response.text

    def _parse(self, code: str, text: str, origin: str) -> dict[str, Any]:
        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            msg = f"Geometry document {origin} is not valid JSON"
            raise SourceFormatError(msg) from e

        if not isinstance(document, dict) or self.field not in document:
            msg = f"No {self.field!r} field in geometry document for {code}"
            raise SourceFormatError(msg)
        return _validate_geometry(document[self.field], f"region {code}")

    def load(self, code: str) -> dict[str, Any]:
        """
        Return the validated geometry of one region code.

        A downloaded document is written to the cache only once it has
        validated, so a broken answer is fetched again on the next run.

        Parameters
        ----------
        code : str
            Region code, e.g. ``"03"``.

        Returns
        -------
        dict
            GeoJSON Polygon / MultiPolygon mapping.

        Raises
        ------
        ConfigurationError
            If the code is malformed or unknown to the service.
        SourceFormatError
            If the document is not JSON, lacks the geometry field, or holds
            an unsupported or malformed geometry.
        SourceUnavailableError
            If the download fails for any other reason.
        """
        if not re.fullmatch(self.code_pattern, code):
            msg = f"Unknown region code {code!r}"
            raise ConfigurationError(msg)

        path = self.cache_dir / f"{code}.json"
        if path.exists():
            logger.info("Using existing geometry file %s", path)
            return self._parse(code, path.read_text(encoding="utf-8"), str(path))

        text = self._fetch(code)
        geometry = self._parse(code, text, self.url_template.format(code=code))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return geometry

    def index_for(self, region: RegionSpec) -> RegionGeometryIndex:
        """
        Build the geometry index of a region from all of its codes.

        Parameters
        ----------
        region : RegionSpec
            Region to resolve.

        Returns
        -------
        RegionGeometryIndex
            One geometry per code.
        """
        return RegionGeometryIndex({code: self.load(code) for code in region.codes})
