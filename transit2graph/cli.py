"""
Command Line Interface.

``transit2graph`` runs one extraction: fetch or reuse the feed, build every
region given with ``--region`` (or the defaults), write the CSV / JSON outputs
and optionally enrich the edge tables. The exit status is ``0`` when every
region succeeded and ``1`` otherwise.
"""

# Future annotations for type hints
from __future__ import annotations

# Standard library imports
import argparse
import logging
import sys
from datetime import date
from pathlib import Path

# Third-party imports
import requests

# Local imports
from .config import DEFAULT_CHUNKSIZE
from .config import DEFAULT_FEED_URL
from .config import ExtractionConfig
from .config import RegionSpec
from .config import default_regions
from .enrichment import DEFAULT_CLIENT_NAME
from .enrichment import JourneyPlannerClient
from .exceptions import Transit2GraphError
from .pipeline import run_extraction

# Module logger configuration
logger = logging.getLogger(__name__)

__all__ = ["build_parser", "config_from_args", "main"]


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser of the ``transit2graph`` command."""
    parser = argparse.ArgumentParser(
        prog="transit2graph",
        description="Build per-region stop-to-stop transit graphs from a GTFS feed.",
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--feed", type=Path, help="Local GTFS zip archive")
    source.add_argument(
        "--feed-url",
        default=DEFAULT_FEED_URL,
        help="Feed to download when no cached archive exists (default: %(default)s)",
    )
    parser.add_argument(
        "--region",
        action="append",
        metavar="LABEL=CODE[,CODE...]",
        help="Region to build; repeatable (default: OSLO=03 and ALL_FYLKER=03,32,33,31)",
    )
    parser.add_argument(
        "--agency",
        action="append",
        metavar="PATTERN",
        help="Keep only agencies whose name matches this pattern; repeatable",
    )
    parser.add_argument("--out-dir", type=Path, default=Path("out"), help="Output directory")
    parser.add_argument(
        "--cache-dir",
        type=Path,
        help="Cache directory for the feed and geometries (default: --out-dir)",
    )
    parser.add_argument(
        "--chunksize",
        type=int,
        default=DEFAULT_CHUNKSIZE,
        help="Rows decoded per chunk while streaming (default: %(default)s)",
    )
    parser.add_argument(
        "--enrich-date",
        type=date.fromisoformat,
        metavar="YYYY-MM-DD",
        help="Add journey planner trip counts for this date to every edges table",
    )
    parser.add_argument(
        "--client-name",
        default=DEFAULT_CLIENT_NAME,
        help="ET-Client-Name header sent to the journey planner",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def config_from_args(args: argparse.Namespace) -> ExtractionConfig:
    """Translate parsed arguments into an :class:`ExtractionConfig`."""
    regions = (
        tuple(RegionSpec.parse(r) for r in args.region) if args.region else default_regions()
    )
    return ExtractionConfig(
        regions=regions,
        feed_url=args.feed_url,
        output_dir=args.out_dir,
        cache_dir=args.cache_dir or args.out_dir,
        agency_allow=tuple(args.agency) if args.agency else None,
        chunksize=args.chunksize,
    )


def main(argv: list[str] | None = None) -> int:
    """
    Entry point of the ``transit2graph`` command.

    Parameters
    ----------
    argv : list of str, optional
        Arguments without the program name; defaults to ``sys.argv[1:]``.

    Returns
    -------
    int
        ``0`` if every region was built, ``1`` otherwise.
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    session = requests.Session()
    client = None
    if args.enrich_date is not None:
        client = JourneyPlannerClient(client_name=args.client_name, session=session)

    try:
        config = config_from_args(args)
        run = run_extraction(
            config,
            feed=args.feed,
            session=session,
            enrich_date=args.enrich_date,
            client=client,
        )
    except (Transit2GraphError, requests.RequestException, OSError) as e:
        logger.error("Extraction failed: %s", e)
        return 1
    finally:
        session.close()

    return 0 if run.result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
