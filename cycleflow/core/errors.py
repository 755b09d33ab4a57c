"""Error taxonomy for the ingestion pipeline.

Validation errors stop a webhook request before anything is stored. Every
other error is raised after the provider has been acknowledged and ends up
on the ingest event, the sync history or a bulk import result instead of
propagating to a caller.
"""


class PipelineError(Exception):
    """Base class for ingestion pipeline errors."""


class ValidationError(PipelineError):
    """Raised when an inbound request is rejected before storage.

    Attributes:
        status_code: HTTP status the receiver responds with
    """

    def __init__(self, message: str, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)


class NotFoundError(PipelineError):
    """Raised when a required integration or activity does not exist."""


class UpstreamError(PipelineError):
    """Raised when a provider HTTP call fails.

    Attributes:
        status_code: Upstream HTTP status, None for transport failures
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class DecodeError(PipelineError):
    """Raised when a binary activity payload cannot be parsed."""


class NormalizationError(PipelineError):
    """Raised when a decoded activity has no session aggregates."""


class NonCyclingSkip(PipelineError):
    """Signals a deliberate skip of a non-cycling activity. Not a failure."""

    def __init__(self, sport: str | None):
        self.sport = sport
        super().__init__(f"Non-cycling activity: {sport}")


class PartialWriteError(PipelineError):
    """A track point chunk failed to insert.

    Attributes:
        chunk_index: Zero-based index of the failed chunk
        size: Number of rows in the failed chunk
    """

    def __init__(self, chunk_index: int, size: int, cause: Exception):
        self.chunk_index = chunk_index
        self.size = size
        self.cause = cause
        super().__init__(f"Track point chunk {chunk_index} ({size} rows) failed: {cause}")


class DuplicateActivityError(PipelineError):
    """Raised when storage rejects an activity that already exists."""
