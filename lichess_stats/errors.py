from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ErrorCode:
    code: str
    message: str


NOT_FOUND = ErrorCode("not_found", "Player could not be found on Lichess.")
RATE_LIMITED = ErrorCode("rate_limited", "Lichess is rate limiting requests, try again later.")
UPSTREAM_UNAVAILABLE = ErrorCode("upstream_unavailable", "Lichess is unreachable or returned an invalid response.")
INVALID_RANGE = ErrorCode("invalid_range", "Requested date range is invalid.")
NO_DATA = ErrorCode("no_data", "No matching records for this query.")
CANCELLED = ErrorCode("cancelled", "Request was cancelled before completion.")
BAD_REQUEST = ErrorCode("bad_request", "Request payload is invalid.")
RENDER_FAILED = ErrorCode("render_failed", "Chart could not be rendered.")
DIRECTORY_UNAVAILABLE = ErrorCode("directory_unavailable", "Player directory is not available.")


def format_error(code: ErrorCode, *, detail: Optional[str] = None) -> dict:
    return {"code": code.code, "message": code.message, "detail": detail}


class StatsError(Exception):
    """Base for failures that map onto an ErrorCode."""

    code: ErrorCode = UPSTREAM_UNAVAILABLE

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.code.message)
        self.detail = detail


class NotFoundError(StatsError):
    code = NOT_FOUND

    def __init__(self, username: str, detail: Optional[str] = None):
        super().__init__(detail or f"Player '{username}' not found")
        self.username = username


class RateLimitedError(StatsError):
    code = RATE_LIMITED


class UpstreamUnavailableError(StatsError):
    code = UPSTREAM_UNAVAILABLE

    def __init__(
        self,
        detail: Optional[str] = None,
        *,
        cause: str = "status",
        status: Optional[int] = None,
    ):
        super().__init__(detail)
        # status | timeout | network | malformed
        self.cause = cause
        self.status = status


class InvalidRangeError(StatsError):
    code = INVALID_RANGE


class InvalidArgumentError(StatsError):
    code = BAD_REQUEST


class ChartRenderError(StatsError):
    code = RENDER_FAILED


class DirectoryUnavailableError(StatsError):
    code = DIRECTORY_UNAVAILABLE
