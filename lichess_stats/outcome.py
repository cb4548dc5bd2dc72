"""
Tagged results returned by the stats service.

Every query resolves to an Outcome: either a success carrying the value, or
one of the error codes from errors.py. NO_DATA is a distinct outcome for
well-formed queries that matched nothing; it may still carry the (empty)
value so callers can echo the window they asked about.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from .errors import CANCELLED, NO_DATA, ErrorCode, StatsError

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: Optional[T] = None
    error: Optional[ErrorCode] = None
    detail: Optional[str] = None
    skipped: int = 0  # malformed upstream records dropped while building the value

    @classmethod
    def success(cls, value: T, *, skipped: int = 0) -> "Outcome[T]":
        return cls(value=value, skipped=skipped)

    @classmethod
    def failure(cls, code: ErrorCode, detail: Optional[str] = None) -> "Outcome[T]":
        return cls(error=code, detail=detail)

    @classmethod
    def no_data(
        cls, detail: Optional[str] = None, *, value: Optional[T] = None, skipped: int = 0
    ) -> "Outcome[T]":
        return cls(value=value, error=NO_DATA, detail=detail, skipped=skipped)

    @classmethod
    def from_error(cls, exc: StatsError) -> "Outcome[T]":
        return cls(error=exc.code, detail=exc.detail or str(exc))

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def code(self) -> Optional[str]:
        return self.error.code if self.error else None

    def is_(self, code: ErrorCode) -> bool:
        return self.error == code


async def await_outcome(task: "asyncio.Future[Outcome[T]]") -> Outcome[T]:
    """Await a request task, folding its cancellation into a CANCELLED outcome."""
    try:
        return await task
    except asyncio.CancelledError:
        if not task.cancelled():
            raise
        return Outcome.failure(CANCELLED, "request task was cancelled")
