"""
Journey Planner Enrichment Module.

Add an externally observed per-line trip count to edge tables. For every
distinct ``lineId`` the Entur Journey Planner GraphQL API is asked how many
service journeys the line runs on a given date; the count is merged into
every edge of that line as an extra column (``tripsOn2025_11_17`` for
``2025-11-17``). Lines the service does not know, or for which the request
fails, get a count of zero.
"""

# Future annotations for type hints
from __future__ import annotations

# Standard library imports
import logging
from datetime import date as Date
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Any

# Third-party imports
import pandas as pd
import requests
from pydantic import BaseModel
from pydantic import Field
from pydantic import ValidationError

# Local imports
from .exceptions import ConfigurationError
from .output import read_edges_csv

# Type checking imports
if TYPE_CHECKING:
    from collections.abc import Iterable
    from collections.abc import Mapping

# Module logger configuration
logger = logging.getLogger(__name__)

__all__ = [
    "JourneyPlannerClient",
    "enrich_edges_csv",
    "fetch_line_trip_counts",
    "merge_line_trip_counts",
    "parse_service_date",
    "trip_count_column",
]

ENTUR_ENDPOINT = "https://api.entur.io/journey-planner/v3/graphql"
DEFAULT_CLIENT_NAME = "transit2graph-network-analysis/1.0"

LINE_TRIPS_QUERY = """
query LineTrips($lineId: ID!, $date: Date!) {
  line(id: $lineId) {
    id
    journeyPatterns {
      serviceJourneysForDate(date: $date) {
        id
      }
    }
  }
}
"""


# =============================================================================
# RESPONSE SCHEMA
# =============================================================================


class _ServiceJourney(BaseModel):
    id: str | None = None


class _JourneyPattern(BaseModel):
    service_journeys_for_date: list[_ServiceJourney] = Field(
        default_factory=list,
        alias="serviceJourneysForDate",
    )


class _Line(BaseModel):
    id: str | None = None
    journey_patterns: list[_JourneyPattern] = Field(default_factory=list, alias="journeyPatterns")


class _LineData(BaseModel):
    line: _Line | None = None


class LineTripsResponse(BaseModel):
    """GraphQL envelope of the line trips query."""

    data: _LineData | None = None
    errors: list[dict[str, Any]] | None = None

    def trip_count(self) -> int:
        """Total service journeys across the line's journey patterns."""
        if self.data is None or self.data.line is None:
            return 0
        return sum(len(jp.service_journeys_for_date) for jp in self.data.line.journey_patterns)


# =============================================================================
# CLIENT
# =============================================================================


class JourneyPlannerClient:
    """
    Minimal client for the line trips query.

    Parameters
    ----------
    endpoint : str
        GraphQL endpoint.
    client_name : str
        Value of the ``ET-Client-Name`` header the service requires.
    session : requests.Session, optional
        Session to post with.
    timeout : float, default 30.0
        Request timeout in seconds.
    """

    def __init__(
        self,
        endpoint: str = ENTUR_ENDPOINT,
        client_name: str = DEFAULT_CLIENT_NAME,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.endpoint = endpoint
        self.session = session or requests.Session()
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json", "ET-Client-Name": client_name}

    def count_line_trips(self, line_id: str, service_date: str | Date) -> int:
        """
        Number of service journeys a line runs on a date.

        Failures are logged and reported as zero so one bad line never
        aborts an enrichment run.

        Parameters
        ----------
        line_id : str
            Line (route) identifier, e.g. ``"RUT:Line:31"``.
        service_date : str or datetime.date
            Date in ``YYYY-MM-DD`` form.

        Returns
        -------
        int
            Journey count, ``0`` on any failure or for unknown lines.
        """
        payload = {
            "query": LINE_TRIPS_QUERY,
            "variables": {"lineId": line_id, "date": str(service_date)},
        }
        try:
            response = self.session.post(
                self.endpoint,
                json=payload,
                headers=self.headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = LineTripsResponse.model_validate(response.json())
        except requests.RequestException as e:
            logger.error("Journey planner request failed for line %s: %s", line_id, e)
            return 0
        except (ValueError, ValidationError) as e:
            logger.error("Unexpected journey planner response for line %s: %s", line_id, e)
            return 0

        if body.errors:
            logger.error("GraphQL errors for line %s: %s", line_id, body.errors)
            return 0

        total = body.trip_count()
        logger.info("Line %s: %d serviceJourneysForDate on %s", line_id, total, service_date)
        return total


# =============================================================================
# MERGING
# =============================================================================


def parse_service_date(service_date: str | Date) -> Date:
    """
    Return ``service_date`` as a date, parsing ``YYYY-MM-DD`` strings.

    Raises
    ------
    ConfigurationError
        If the string is not an ISO calendar date.
    """
    if isinstance(service_date, Date):
        return service_date
    try:
        return Date.fromisoformat(service_date.strip())
    except ValueError as e:
        msg = f"Service date must look like YYYY-MM-DD, got {service_date!r}"
        raise ConfigurationError(msg) from e


def trip_count_column(service_date: str | Date) -> str:
    """
    Name of the trip count column for a date.

    Examples
    --------
    >>> trip_count_column("2025-11-17")
    'tripsOn2025_11_17'
    """
    return "tripsOn" + parse_service_date(service_date).strftime("%Y_%m_%d")


def fetch_line_trip_counts(
    line_ids: Iterable[str],
    service_date: str | Date,
    client: JourneyPlannerClient,
) -> dict[str, int]:
    """
    Query each distinct line id once.

    Parameters
    ----------
    line_ids : iterable of str
        Line ids, duplicates allowed.
    service_date : str or datetime.date
        Date to count journeys on.
    client : JourneyPlannerClient
        Client to query with.

    Returns
    -------
    dict[str, int]
        Journey count per line id.
    """
    counts: dict[str, int] = {}
    for line_id in dict.fromkeys(line_ids):
        counts[line_id] = client.count_line_trips(line_id, service_date)
    return counts


def merge_line_trip_counts(
    edges: pd.DataFrame,
    counts: Mapping[str, int],
    column: str,
) -> pd.DataFrame:
    """
    Add a per-line count column to an edges table.

    Lines absent from ``counts`` get ``0``.

    Parameters
    ----------
    edges : pandas.DataFrame
        Edge rows with a ``lineId`` column.
    counts : Mapping[str, int]
        Count per line id.
    column : str
        Name of the new column.

    Returns
    -------
    pandas.DataFrame
        Copy of ``edges`` with the extra integer column.
    """
    enriched = edges.copy()
    enriched[column] = enriched["lineId"].map(dict(counts)).fillna(0).astype("int64")
    return enriched


def enrich_edges_csv(
    path: str | Path,
    service_date: str | Date,
    client: JourneyPlannerClient,
    suffix: str | None = None,
) -> Path:
    """
    Enrich an edges CSV and write ``<stem>_with_<suffix>.csv`` beside it.

    Parameters
    ----------
    path : str or pathlib.Path
        Edges table written by :func:`~transit2graph.output.write_region_graph`.
    service_date : str or datetime.date
        Date to count journeys on.
    client : JourneyPlannerClient
        Client to query with.
    suffix : str, optional
        Output file name suffix; defaults to the trip count column name, so
        tables enriched for different dates sit side by side.

    Returns
    -------
    pathlib.Path
        Path of the enriched table.
    """
    service_date = parse_service_date(service_date)
    column = trip_count_column(service_date)
    path = Path(path)
    edges = read_edges_csv(path)
    logger.info("Loaded %d edges from %s", len(edges), path)

    counts = fetch_line_trip_counts(edges["lineId"], service_date, client)
    enriched = merge_line_trip_counts(edges, counts, column)

    out_path = path.with_name(f"{path.stem}_with_{suffix or column}.csv")
    enriched.to_csv(out_path, index=False)
    logger.info("Wrote %d rows to %s", len(enriched), out_path)
    return out_path
