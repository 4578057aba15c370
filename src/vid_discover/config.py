# src/vid_discover/config.py
"""
Suggestion Pipeline Configuration

SCORING WEIGHTS:
These weights control how the scoring signals combine into a total.
Total must sum to 1.0 (100%).

- RATING: the user's star rating of the source channel (strongest signal)
- TOPIC: how well the video title matches the user's topics
- RECENCY: preference for newer uploads

A flat dual-source bonus is added on top for videos found by both
discovery strategies, so the maximum total is 10.0 + bonus.

All tunables are carried by CurationSettings and ApiSettings, which are
passed into the scorer, curator and API client rather than read globally.
"""

import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict


class ScoringWeights:
    RATING = 0.60
    TOPIC = 0.25
    RECENCY = 0.15

    @classmethod
    def validate(cls):
        """Ensure weights sum to 1.0"""
        total = sum([cls.RATING, cls.TOPIC, cls.RECENCY])
        if abs(total - 1.0) >= 0.001:
            raise AssertionError(f"Weights must sum to 1.0, got {total}")
        return True


# Validate on import
ScoringWeights.validate()


# Days between re-polls per star rating. 1-star and unrated sources are absent: never re-polled.
REFRESH_INTERVAL_DAYS = {5: 5, 4: 7, 3: 10, 2: 14}

# (max age in days, score), checked in order; anything older scores RECENCY_FLOOR
RECENCY_BUCKETS = [(1, 10.0), (3, 8.0), (7, 6.0), (14, 4.0), (30, 2.0)]
RECENCY_FLOOR = 1.0


class CurationSettings(BaseModel):
    """Scoring and queue rules for suggestion generation."""

    model_config = ConfigDict(frozen=True)

    rating_weight: float = ScoringWeights.RATING
    topic_weight: float = ScoringWeights.TOPIC
    recency_weight: float = ScoringWeights.RECENCY
    dual_source_bonus: float = 1.0

    neutral_rating_score: float = 6.0
    neutral_topic_score: float = 5.0

    max_pending_suggestions: int = 1000
    max_suggestions_per_request: int = 50
    suggestion_expiry_days: int = 30
    discovery_lookback_days: int = 30
    default_score_threshold: float = 5.0

    max_results_per_source: int = 50
    max_results_per_topic: int = 25

    @property
    def max_total_score(self) -> float:
        return 10.0 * (self.rating_weight + self.topic_weight + self.recency_weight) + self.dual_source_bonus


class ApiSettings(BaseModel):
    """YouTube Data API access, quota budget and client limits."""

    model_config = ConfigDict(frozen=True)

    api_key: str = ""
    base_url: str = "https://www.googleapis.com/youtube/v3"

    daily_quota_limit: int = 10000
    warning_threshold: float = 0.80
    critical_threshold: float = 0.95
    reservation_ttl_seconds: int = 60 * 60
    reset_hour_utc: int = 0

    max_concurrent_requests: int = 3
    request_timeout: float = 30.0

    cache_ttl_seconds: int = 15 * 60
    search_cache_size: int = 100
    video_cache_size: int = 500
    details_batch_size: int = 50

    # Quota units per call
    search_cost: int = 100
    details_cost: int = 1

    # One search call is issued per duration bucket
    search_durations: tuple[str, ...] = ("medium", "long")

    @classmethod
    def from_env(cls) -> "ApiSettings":
        return cls(
            api_key=os.getenv("YOUTUBE_API_KEY", ""),
            daily_quota_limit=int(os.getenv("YOUTUBE_DAILY_QUOTA", "10000")),
            max_concurrent_requests=int(os.getenv("YOUTUBE_MAX_CONCURRENT", "3")),
        )

    @property
    def search_call_cost(self) -> int:
        """Quota spent by one source or topic search across all duration buckets."""
        return self.search_cost * len(self.search_durations)


def default_db_path() -> str:
    """Database location, overridable with VID_DISCOVER_DB."""
    configured = os.getenv("VID_DISCOVER_DB")
    if configured:
        return configured
    db_dir = Path.home() / ".vid-discover"
    db_dir.mkdir(parents=True, exist_ok=True)
    return str(db_dir / "vid_discover.db")


# Expired-suggestion sweep cadence (in seconds)
CLEANUP_INTERVAL = 24 * 60 * 60
