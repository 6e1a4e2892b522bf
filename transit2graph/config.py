"""
Extraction Configuration.

This module holds the explicit configuration values passed into the
extraction entry points. Nothing here is module-level mutable state: every
run receives its own :class:`ExtractionConfig`, so several independent runs
(or tests) can coexist in one process.
"""

# Future annotations for type hints
from __future__ import annotations

# Standard library imports
import logging
import re
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

# Local imports
from .exceptions import ConfigurationError

# Module logger configuration
logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_FEED_URL",
    "DEFAULT_GEOMETRY_URL_TEMPLATE",
    "ExtractionConfig",
    "RegionSpec",
    "default_regions",
]

# =============================================================================
# CONSTANTS
# =============================================================================

# Aggregated national GTFS feed published by Entur
DEFAULT_FEED_URL = (
    "https://storage.googleapis.com/marduk-production/outbound/gtfs/rb_norway-aggregated-gtfs.zip"
)

# Kartverket county boundary endpoint, one document per two-digit county code
DEFAULT_GEOMETRY_URL_TEMPLATE = "https://api.kartverket.no/kommuneinfo/v1/fylker/{code}/omrade"
DEFAULT_GEOMETRY_FIELD = "omrade"
DEFAULT_CODE_PATTERN = r"^\d{2}$"
DEFAULT_CHUNKSIZE = 50_000


@dataclass(frozen=True, slots=True)
class RegionSpec:
    """
    A named region made of one or more boundary codes.

    Parameters
    ----------
    label : str
        Name used in log lines and output file names (e.g. ``"OSLO"``).
    codes : tuple[str, ...]
        Boundary codes resolved by the geometry supplier. The region is the
        union of their geometries.

    Examples
    --------
    >>> RegionSpec.parse("ALL_FYLKER=03,32,33,31").codes
    ('03', '32', '33', '31')
    """

    label: str
    codes: tuple[str, ...]

    @classmethod
    def parse(cls, text: str) -> RegionSpec:
        """
        Parse a ``LABEL=CODE[,CODE...]`` command-line value.

        Parameters
        ----------
        text : str
            Region definition.

        Returns
        -------
        RegionSpec
            Parsed region.

        Raises
        ------
        ConfigurationError
            If the label or the code list is empty.
        """
        label, sep, codes = text.partition("=")
        label = label.strip()
        parsed = tuple(c.strip() for c in codes.split(",") if c.strip())
        if not sep or not label or not parsed:
            msg = f"Region must look like LABEL=CODE[,CODE...], got {text!r}"
            raise ConfigurationError(msg)
        return cls(label, parsed)


def default_regions() -> tuple[RegionSpec, ...]:
    """Return Oslo alone and Greater Oslo (Oslo, Akershus, Buskerud, Østfold)."""
    return (
        RegionSpec("OSLO", ("03",)),
        RegionSpec("ALL_FYLKER", ("03", "32", "33", "31")),
    )


@dataclass(frozen=True, slots=True)
class ExtractionConfig:
    """
    Everything one extraction run needs to know.

    Parameters
    ----------
    regions : tuple[RegionSpec, ...]
        Regions to build, each producing its own graph.
    feed_url : str
        Where the archive supplier downloads the feed from when no cached
        copy exists.
    output_dir : Path
        Directory receiving the CSV / JSON outputs.
    cache_dir : Path
        Directory holding the cached feed archive and geometry documents.
    agency_allow : tuple[str, ...] or None
        Case-insensitive regular expressions matched against agency names.
        ``None`` accepts every agency in the feed.
    chunksize : int
        Rows decoded per chunk while streaming a table.
    geometry_url_template : str
        URL template with a ``{code}`` placeholder.
    geometry_field : str
        Field of the geometry document holding the GeoJSON geometry.
    code_pattern : str
        Regular expression every region code must fully match.
    """

    regions: tuple[RegionSpec, ...] = field(default_factory=default_regions)
    feed_url: str = DEFAULT_FEED_URL
    output_dir: Path = Path("out")
    cache_dir: Path = Path("out")
    agency_allow: tuple[str, ...] | None = None
    chunksize: int = DEFAULT_CHUNKSIZE
    geometry_url_template: str = DEFAULT_GEOMETRY_URL_TEMPLATE
    geometry_field: str = DEFAULT_GEOMETRY_FIELD
    code_pattern: str = DEFAULT_CODE_PATTERN

    def validate(self) -> None:
        """
        Check the configuration as a whole before any data is touched.

        Only structural problems are rejected here. Whether a region code
        resolves is decided per region by the geometry supplier, so a bad
        code aborts only the region that names it.

        Raises
        ------
        ConfigurationError
            On an empty or duplicated region list, a region without codes,
            an invalid code pattern, a non-positive chunk size or an invalid
            agency pattern.
        """
        if not self.regions:
            msg = "At least one region must be configured"
            raise ConfigurationError(msg)

        labels = [r.label for r in self.regions]
        if len(set(labels)) != len(labels):
            msg = f"Region labels must be unique: {', '.join(labels)}"
            raise ConfigurationError(msg)

        for region in self.regions:
            if not region.codes:
                msg = f"Region {region.label!r} has no codes"
                raise ConfigurationError(msg)

        if self.chunksize <= 0:
            msg = f"chunksize must be positive, got {self.chunksize}"
            raise ConfigurationError(msg)

        for kind, patterns in (("code", (self.code_pattern,)), ("agency", self.agency_allow or ())):
            for pattern in patterns:
                try:
                    re.compile(pattern)
                except re.error as e:
                    msg = f"Invalid {kind} pattern {pattern!r}: {e}"
                    raise ConfigurationError(msg) from e

        logger.debug("Configuration valid: %s", ", ".join(labels))
