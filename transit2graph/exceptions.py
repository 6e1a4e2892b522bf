"""
Exception Hierarchy.

Errors raised while turning a timetable feed into region graphs fall into
four families. Configuration, source-format and source-availability errors
abort the run of the region they concern; data-quality errors only ever
concern a single row or observation and are absorbed by the stage that
streams the table, which records them in its counters.
"""

__all__ = [
    "ConfigurationError",
    "DataQualityError",
    "SourceFormatError",
    "SourceUnavailableError",
    "Transit2GraphError",
]


class Transit2GraphError(Exception):
    """Base class for every error raised by transit2graph."""


class ConfigurationError(Transit2GraphError, ValueError):
    """
    Invalid extraction configuration or unresolvable region code.

    Raised before any table is streamed for the affected region.
    """


class SourceFormatError(Transit2GraphError, ValueError):
    """
    Structural problem with an input source.

    Covers a table missing from the feed archive, a table without a header or
    without a required column, and geometry documents that lack their
    geometry field or declare an unsupported geometry type.
    """


class SourceUnavailableError(Transit2GraphError):
    """
    An input source could not be fetched.

    Wraps the ``requests`` error of a failed download so that only the
    region needing the source is aborted.
    """


class DataQualityError(Transit2GraphError, ValueError):
    """
    A single row or observation that cannot be used.

    Parameters
    ----------
    reason : str
        Short machine-friendly reason, used as the counter key.
    message : str, optional
        Human readable detail.
    """

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or reason)
        self.reason = reason
