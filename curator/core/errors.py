from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base error for the content pipeline."""

    def details(self) -> dict[str, Any]:
        return {"error_type": type(self).__name__}


class NotFoundError(PipelineError):
    """Raised when a job or target entity does not exist."""


class InvalidStateError(PipelineError):
    """Raised when an operation is attempted on a job in the wrong status."""

    def __init__(self, message: str, *, status: str | None = None) -> None:
        super().__init__(message)
        self.status = status

    def details(self) -> dict[str, Any]:
        return {"error_type": type(self).__name__, "status": self.status}


class ScrapeFailure(PipelineError):
    """Raised when a source could not be scraped.

    Caught per URL and recorded on the job as a scrape error; it never fails
    a job on its own.
    """

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url

    def details(self) -> dict[str, Any]:
        return {"error_type": type(self).__name__, "url": self.url}


class ValidationFailedError(PipelineError):
    """Raised when generated output is missing fields or has out-of-range values."""

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])

    def details(self) -> dict[str, Any]:
        return {"error_type": type(self).__name__, "validation_errors": self.errors}


class ResponseParseError(ValidationFailedError):
    """Raised when generated text contains no decodable JSON object."""


class GenerationServiceError(PipelineError):
    """Raised when the generation service call fails or times out."""


class ApplyError(PipelineError):
    """Raised when persisting an approved change fails."""
