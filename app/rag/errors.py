"""Typed errors surfaced by the advisory pipeline."""

from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline errors that reach the request boundary."""
    pass


class ServiceUnavailableError(PipelineError):
    """Raised when an upstream service keeps failing after all retries."""

    def __init__(self, service: str, attempts: int, last_error: Optional[str] = None,
                 retry_after: int = 30):
        self.service = service
        self.attempts = attempts
        self.last_error = last_error
        self.retry_after = retry_after
        super().__init__(
            f"{service} unavailable after {attempts} attempt(s): {last_error or 'unknown error'}"
        )


class AnalysisError(PipelineError):
    """Raised when a document or image cannot be analyzed at all."""
    pass
