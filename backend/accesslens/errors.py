"""
Error taxonomy for the ingestion and aggregation engine.

Per-line errors (ParseError, EnrichmentError) stay local to the line.
Per-cycle errors (WatermarkIOError, BatchWriteError) abort one source's
cycle and surface through the source's last_error field.
"""
from typing import Optional


class AccessLensError(Exception):
    """Base class for all engine errors."""


class ParseError(AccessLensError):
    """A single log line could not be parsed."""

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line[:200]


class EnrichmentError(AccessLensError):
    """Geo or user-agent lookup failed; ingestion continues without it."""


class DimensionConflictRetry(AccessLensError):
    """Insert-ignore lost a race; the winner's row is re-read."""

    def __init__(self, dimension: str, key: str):
        super().__init__(f"{dimension} conflict on {key[:64]}")
        self.dimension = dimension
        self.key = key


class WatermarkIOError(AccessLensError):
    """The source file could not be stat'ed or read."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class BatchWriteError(AccessLensError):
    """Writing a batch of fact rows failed."""


class AggregationError(AccessLensError):
    """A rollup could not be computed or stored."""


class SourceNotFound(AccessLensError):
    def __init__(self, source_id: int):
        super().__init__(f"source {source_id} not found")
        self.source_id = source_id
