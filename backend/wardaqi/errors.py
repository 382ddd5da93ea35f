# backend/wardaqi/errors.py
from fastapi import status


class WardAnalysisError(Exception):
    """Client-facing failure of a ward request; carries the HTTP status to report."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidWardIdError(WardAnalysisError):
    status_code = status.HTTP_400_BAD_REQUEST


class WardNotFoundError(WardAnalysisError):
    status_code = status.HTTP_404_NOT_FOUND


class UpstreamError(Exception):
    """A single upstream branch failed (timeout, bad status, malformed payload)."""

    def __init__(self, source: str, reason: str):
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason


class NarrativeGenerationError(Exception):
    """The generative service returned nothing usable."""
