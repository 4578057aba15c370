# src/vid_discover/scoring.py
"""
Scoring functions for suggestion generation.

Component scores are on a 0-10 scale:
- 10 = strongest signal (5-star source, full topic match, published today)
- 0/1 = weakest signal

Components are combined with the weights carried by CurationSettings
(see config.py); videos found by both discovery strategies get a flat
bonus on top. Everything here is pure: no I/O, and the current time is
passed in so results are reproducible.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import assert_never

from vid_discover.config import RECENCY_BUCKETS, RECENCY_FLOOR, REFRESH_INTERVAL_DAYS, CurationSettings
from vid_discover.models import Origin, Score, SourcedCandidate

MAX_REASON_LENGTH = 200


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def calculate_rating_score(rating: int | None, settings: CurationSettings) -> float:
    """
    Score from the user's star rating of the source channel.

    Args:
        rating: 1-5 stars, or None if the user never rated the channel
        settings: Supplies the neutral score for unrated channels

    Returns:
        rating x 2 (2.0-10.0), or the neutral default (6.0) when unrated
    """
    if rating is None:
        return settings.neutral_rating_score
    return float(rating * 2)


def calculate_topic_relevance(
    title: str, topics: list[str], settings: CurationSettings
) -> tuple[float, list[str]]:
    """
    Score how well a video title covers the user's topics.

    Each topic is split into words and every word found in the title
    (case-insensitive substring) counts as a hit. A topic is "matched"
    when at least half of its words hit.

    Examples:
        title "Rust Programming Basics", topics ["rust programming"] -> (10.0, ["rust programming"])
        title "Cooking with Rust", topics ["rust programming"] -> (5.0, ["rust programming"])

    Args:
        title: Video title
        topics: The user's topic names
        settings: Supplies the neutral score used when the user has no topics

    Returns:
        (min(10, 10 x hits / total topic words), matched topic names in input order)
    """
    title_lower = title.lower()
    total_words = 0
    hits = 0
    matched = []

    for topic in topics:
        words = topic.lower().split()
        if not words:
            continue
        total_words += len(words)
        topic_hits = sum(1 for word in words if word in title_lower)
        hits += topic_hits
        if topic_hits >= math.ceil(len(words) / 2):
            matched.append(topic)

    if total_words == 0:
        return settings.neutral_topic_score, []

    return min(10.0, 10.0 * hits / total_words), matched


def calculate_recency_score(published_at: datetime, now: datetime) -> float:
    """
    Bucketed freshness score.

    <=1 day: 10, <=3: 8, <=7: 6, <=14: 4, <=30: 2, older: 1

    Args:
        published_at: Upload time (naive values are treated as UTC)
        now: Reference time

    Returns:
        Score between 1.0 and 10.0
    """
    age_days = (_as_utc(now) - _as_utc(published_at)) / timedelta(days=1)
    for max_days, score in RECENCY_BUCKETS:
        if age_days <= max_days:
            return score
    return RECENCY_FLOOR


def build_reason(candidate: SourcedCandidate, topics: list[str]) -> str:
    """Human-readable reason persisted with the suggestion."""
    channel = candidate.item.channel_name or candidate.item.channel_id
    topic_text = ", ".join(topics)

    match candidate.origin:
        case Origin.TRACKED_SOURCE:
            reason = f"📺 New from {channel}"
        case Origin.TOPIC_SEARCH:
            reason = f"🔍 Topics: {topic_text}"
        case Origin.BOTH:
            reason = f"⭐ {channel} + Topics: {topic_text}"
        case _:
            assert_never(candidate.origin)

    if len(reason) > MAX_REASON_LENGTH:
        reason = reason[:MAX_REASON_LENGTH - 1] + "…"
    return reason


def dual_source_bonus(origin: Origin, settings: CurationSettings) -> float:
    match origin:
        case Origin.BOTH:
            return settings.dual_source_bonus
        case Origin.TRACKED_SOURCE | Origin.TOPIC_SEARCH:
            return 0.0
        case _:
            assert_never(origin)


def score_candidate(
    candidate: SourcedCandidate,
    user_topics: list[str],
    user_ratings: dict[str, int],
    settings: CurationSettings,
    now: datetime,
) -> Score:
    """
    Weighted relevance score for one discovered video.

    total = rating x w_rating + topic x w_topic + recency x w_recency (+ bonus if BOTH)

    Args:
        candidate: Consolidated candidate with its origin
        user_topics: The user's topic names
        user_ratings: channel id -> stars; the candidate's own rating snapshot wins when present
        settings: Weights, bonus and neutral defaults
        now: Reference time for recency

    Returns:
        Score with components, total and reason string
    """
    item = candidate.item
    rating = candidate.rating if candidate.rating is not None else user_ratings.get(item.channel_id)

    rating_score = calculate_rating_score(rating, settings)
    topic_score, title_matches = calculate_topic_relevance(item.title, user_topics, settings)
    recency_score = calculate_recency_score(item.published_at, now)
    bonus = dual_source_bonus(candidate.origin, settings)

    # Fall back to the topics whose search found the video
    matched_topics = title_matches or sorted(candidate.matched_topics)

    total = (
        rating_score * settings.rating_weight
        + topic_score * settings.topic_weight
        + recency_score * settings.recency_weight
        + bonus
    )

    return Score(
        candidate=candidate,
        rating_score=rating_score,
        topic_score=topic_score,
        recency_score=recency_score,
        bonus=bonus,
        total=round(total, 4),
        reason=build_reason(candidate, matched_topics),
        matched_topics=matched_topics,
    )


def is_source_due(rating: int | None, last_checked: datetime | None, now: datetime) -> bool:
    """
    Whether a tracked source should be polled again.

    1-star sources are never polled. A source that was never checked is
    always due. Otherwise the refresh interval for the rating tier must
    have elapsed; unrated sources have no interval and are not re-polled.
    """
    if rating == 1:
        return False
    if last_checked is None:
        return True
    interval = REFRESH_INTERVAL_DAYS.get(rating) if rating is not None else None
    if interval is None:
        return False
    return _as_utc(now) - _as_utc(last_checked) >= timedelta(days=interval)


def score_distribution(totals: list[float]) -> dict[str, int]:
    """Histogram of scores in one-point buckets, e.g. {"8-9": 3}."""
    distribution: dict[str, int] = {}
    for total in totals:
        low = math.floor(total)
        bucket = f"{low}-{low + 1}"
        distribution[bucket] = distribution.get(bucket, 0) + 1
    return distribution
