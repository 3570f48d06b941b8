"""Exception hierarchy shared by the streaming and processing layers."""

from __future__ import annotations

from typing import Optional


class MediaHubError(RuntimeError):
    """Base class for errors raised by MediaHub components."""

    status_code: int = 500


class RecordNotFound(MediaHubError):
    """Raised when an operation targets a media id that does not exist."""

    status_code = 404

    def __init__(self, media_id: str) -> None:
        super().__init__(f"Media record '{media_id}' not found")
        self.media_id = media_id


class AccessDenied(MediaHubError):
    """Raised when the access policy rejects a requester."""

    status_code = 403


class RangeNotSatisfiable(MediaHubError):
    """Raised for malformed ranges or ranges starting beyond the object."""

    status_code = 416

    def __init__(self, message: str, *, size_bytes: Optional[int] = None) -> None:
        super().__init__(message)
        self.size_bytes = size_bytes


class MediaUnavailable(MediaHubError):
    """Raised when the backing object is missing (404) or unreachable (503)."""

    def __init__(self, message: str, *, status_code: int = 404) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamAborted(MediaHubError):
    """Raised when a transfer stops after bytes have been sent."""


class ClaimConflict(MediaHubError):
    """Raised when a processing run is already active for a record."""

    status_code = 409

    def __init__(self, media_id: str, state: Optional[str] = None) -> None:
        detail = f" (state={state})" if state else ""
        super().__init__(f"Media record '{media_id}' is already claimed{detail}")
        self.media_id = media_id
        self.state = state


class AnalysisFailure(MediaHubError):
    """Raised when the analyzer fails, times out or violates its contract."""


__all__ = [
    "AccessDenied",
    "AnalysisFailure",
    "ClaimConflict",
    "MediaHubError",
    "MediaUnavailable",
    "RangeNotSatisfiable",
    "RecordNotFound",
    "StreamAborted",
]
