from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class CandidateItem(BaseModel):
    video_id: str
    title: str
    channel_id: str = ""
    channel_name: str = ""
    published_at: datetime
    view_count: int = 0
    like_count: int = 0
    comment_count: int = 0
    duration_seconds: int = 0
    thumbnail_url: str = ""
    description: str = ""
    search_topics: list[str] = Field(default_factory=list)  # topic queries that returned this item


class Origin(str, Enum):
    TRACKED_SOURCE = "tracked_source"
    TOPIC_SEARCH = "topic_search"
    BOTH = "both"


class SourcedCandidate(BaseModel):
    """A candidate tagged with which discovery strategies found it."""

    model_config = ConfigDict(frozen=True)

    item: CandidateItem
    origin: Origin
    matched_topics: frozenset[str] = frozenset()
    rating: int | None = None

    @property
    def video_id(self) -> str:
        return self.item.video_id


class Score(BaseModel):
    candidate: SourcedCandidate
    rating_score: float
    topic_score: float
    recency_score: float
    bonus: float = 0.0
    total: float
    reason: str
    matched_topics: list[str] = Field(default_factory=list)

    @property
    def video_id(self) -> str:
        return self.candidate.video_id

    @property
    def origin(self) -> Origin:
        return self.candidate.origin


class Topic(BaseModel):
    id: int
    name: str


class TrackedSource(BaseModel):
    source_id: str
    name: str = ""
    rating: int | None = Field(default=None, ge=1, le=5)
    last_checked: datetime | None = None


class SourceUpdateRequest(BaseModel):
    source_id: str
    source_name: str = ""
    last_check: datetime
    rating: int | None = None
    max_results: int = 50


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class Suggestion(BaseModel):
    id: int = 0
    user_id: str
    video_id: str
    title: str = ""
    channel_name: str = ""
    reason: str
    score: float | None = None
    status: SuggestionStatus = SuggestionStatus.PENDING
    created_at: datetime
    approved_at: datetime | None = None
    denied_at: datetime | None = None
    topic_ids: list[int] = Field(default_factory=list)

    def expires_at(self, expiry_days: int) -> datetime:
        return self.created_at + timedelta(days=expiry_days)

    def is_expired(self, now: datetime, expiry_days: int) -> bool:
        return self.status == SuggestionStatus.PENDING and now > self.expires_at(expiry_days)


class QuotaStatus(BaseModel):
    used: int
    limit: int
    reserved: int
    resets_at: datetime
    last_reset: datetime
    is_near_limit: bool
    is_critical: bool

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used - self.reserved)

    @property
    def usage_percent(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.used / self.limit * 100


class ApiCallRecord(BaseModel):
    operation: str
    cost: int
    duration_ms: float
    success: bool
    error: str | None = None
    item_count: int | None = None
    timestamp: datetime


class OperationCost(BaseModel):
    operation: str
    calls: int
    unit_cost: int

    @property
    def total(self) -> int:
        return self.calls * self.unit_cost


class CostEstimate(BaseModel):
    breakdown: list[OperationCost] = Field(default_factory=list)
    remaining: int
    limit: int
    optimizations: list[str] = Field(default_factory=list)

    @property
    def total_cost(self) -> int:
        return sum(op.total for op in self.breakdown)

    @property
    def exceeds_remaining(self) -> bool:
        return self.total_cost > self.remaining

    @property
    def projected_usage_percent(self) -> float:
        if self.limit <= 0:
            return 100.0
        used = self.limit - self.remaining
        return (used + self.total_cost) / self.limit * 100


class OperationStats(BaseModel):
    operation: str
    calls: int = 0
    quota_used: int = 0
    errors: int = 0
    total_duration_ms: float = 0.0


class SuggestionResult(BaseModel):
    is_success: bool = True
    error_message: str | None = None

    total_discovered: int = 0
    source_count: int = 0
    topic_count: int = 0
    both_count: int = 0

    below_threshold: int = 0
    duplicates_skipped: int = 0
    persistence_failures: int = 0
    quota_exhausted: bool = False

    average_score: float = 0.0
    score_distribution: dict[str, int] = Field(default_factory=dict)
    suggestions: list[Suggestion] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    processing_time_ms: float = 0.0

    @classmethod
    def failure(cls, message: str) -> SuggestionResult:
        return cls(is_success=False, error_message=message)

    @property
    def created_count(self) -> int:
        return len(self.suggestions)

    @property
    def success_rate(self) -> float:
        """Share of selected suggestions that were persisted."""
        attempted = self.created_count + self.persistence_failures
        return self.created_count / attempted if attempted else 0.0

    def summary_message(self) -> str:
        if not self.is_success:
            return self.error_message or "Suggestion generation failed"
        if self.total_discovered == 0:
            return "No new videos discovered"
        noun = "suggestion" if self.created_count == 1 else "suggestions"
        return f"Generated {self.created_count} new {noun} from {self.total_discovered} videos discovered"


class SuggestionAnalytics(BaseModel):
    user_id: str
    total: int = 0
    pending: int = 0
    approved: int = 0
    denied: int = 0
    expired: int = 0
    last_generated_at: datetime | None = None

    @property
    def approval_rate(self) -> float:
        decided = self.approved + self.denied
        return self.approved / decided if decided else 0.0
