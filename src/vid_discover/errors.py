"""Error taxonomy and partial-success result type for the YouTube client."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from .models import CandidateItem


class ApiErrorKind(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID_REQUEST = "invalid_request"
    AUTH_FAILURE = "auth_failure"
    TRANSIENT = "transient"


USER_MESSAGES = {
    ApiErrorKind.QUOTA_EXCEEDED: "Daily YouTube quota reached. Discovery resumes after the daily reset.",
    ApiErrorKind.INVALID_REQUEST: "YouTube rejected the request.",
    ApiErrorKind.AUTH_FAILURE: "YouTube API key was rejected. Check the API configuration.",
    ApiErrorKind.TRANSIENT: "YouTube is temporarily unavailable. Try again later.",
}


class ApiError(BaseModel):
    kind: ApiErrorKind
    message: str  # short, user-facing
    detail: str = ""  # technical, for logs only
    status_code: int | None = None

    @classmethod
    def of(cls, kind: ApiErrorKind, detail: str = "", status_code: int | None = None) -> ApiError:
        return cls(kind=kind, message=USER_MESSAGES[kind], detail=detail, status_code=status_code)


class BatchFailure(BaseModel):
    key: str
    error: ApiError


class FetchResult(BaseModel):
    """
    Outcome of a client operation.

    `items` always holds whatever succeeded. `error` is set when the
    operation as a whole stopped (quota exhaustion, auth failure, or a
    single-call failure). `failures` lists per-item errors the operation
    stepped over. `completed` holds the keys (source ids, topic queries,
    batch ranges) that were fully fetched.
    """

    items: list[CandidateItem] = Field(default_factory=list)
    error: ApiError | None = None
    failures: list[BatchFailure] = Field(default_factory=list)
    completed: list[str] = Field(default_factory=list)

    @classmethod
    def ok(cls, items: list[CandidateItem], completed: list[str] | None = None) -> FetchResult:
        return cls(items=items, completed=completed or [])

    @classmethod
    def fail(cls, error: ApiError) -> FetchResult:
        return cls(error=error)

    @property
    def is_success(self) -> bool:
        return self.error is None and not self.failures

    @property
    def is_quota_exceeded(self) -> bool:
        if self.error is not None and self.error.kind == ApiErrorKind.QUOTA_EXCEEDED:
            return True
        return any(f.error.kind == ApiErrorKind.QUOTA_EXCEEDED for f in self.failures)

    @property
    def is_partial(self) -> bool:
        return bool(self.items) and not self.is_success


class PersistenceError(Exception):
    """A storage write failed; the suggestion it belonged to was not saved."""
