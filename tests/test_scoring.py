# tests/test_scoring.py
import random
from datetime import datetime, timedelta, timezone

import pytest

from vid_discover.config import CurationSettings
from vid_discover.models import CandidateItem, Origin, SourcedCandidate
from vid_discover.scoring import (
    build_reason,
    calculate_rating_score,
    calculate_recency_score,
    calculate_topic_relevance,
    is_source_due,
    score_candidate,
    score_distribution,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
SETTINGS = CurationSettings()


def make_candidate(
    title="Rust Programming Basics",
    origin=Origin.BOTH,
    published_at=NOW,
    channel_id="UC_rust",
    channel_name="Rustacean Station",
    topics=(),
    rating=None,
):
    item = CandidateItem(
        video_id="vid1",
        title=title,
        channel_id=channel_id,
        channel_name=channel_name,
        published_at=published_at,
    )
    return SourcedCandidate(item=item, origin=origin, matched_topics=frozenset(topics), rating=rating)


# --- Rating ---


@pytest.mark.parametrize("rating,expected", [(1, 2.0), (3, 6.0), (5, 10.0), (None, 6.0)])
def test_rating_score(rating, expected):
    assert calculate_rating_score(rating, SETTINGS) == expected


# --- Topic relevance ---


def test_topic_full_match():
    score, matched = calculate_topic_relevance("Rust Programming Basics", ["rust programming"], SETTINGS)
    assert score == pytest.approx(10.0)
    assert matched == ["rust programming"]


def test_topic_half_words_counts_as_match():
    score, matched = calculate_topic_relevance("Cooking with Rust", ["rust programming"], SETTINGS)
    assert score == pytest.approx(5.0)
    assert matched == ["rust programming"]


def test_topic_below_half_is_not_matched():
    score, matched = calculate_topic_relevance(
        "Learning Go", ["machine learning systems"], SETTINGS
    )
    # "learning" is 1 of 3 words: under ceil(3/2) = 2
    assert matched == []
    assert score == pytest.approx(10.0 / 3)


def test_topic_ratio_across_all_topics():
    score, matched = calculate_topic_relevance(
        "Rust Programming Basics", ["rust programming", "woodworking"], SETTINGS
    )
    assert score == pytest.approx(10.0 * 2 / 3)
    assert matched == ["rust programming"]


def test_topic_match_is_case_insensitive_substring():
    score, _ = calculate_topic_relevance("PYTHONIC idioms", ["python"], SETTINGS)
    assert score == pytest.approx(10.0)


def test_no_topics_is_neutral():
    assert calculate_topic_relevance("Anything", [], SETTINGS) == (5.0, [])
    assert calculate_topic_relevance("Anything", ["   "], SETTINGS) == (5.0, [])


# --- Recency ---


@pytest.mark.parametrize(
    "age,expected",
    [
        (timedelta(hours=2), 10.0),
        (timedelta(days=1), 10.0),
        (timedelta(days=2), 8.0),
        (timedelta(days=3), 8.0),
        (timedelta(days=5), 6.0),
        (timedelta(days=10), 4.0),
        (timedelta(days=20), 2.0),
        (timedelta(days=30), 2.0),
        (timedelta(days=31), 1.0),
        (timedelta(days=400), 1.0),
    ],
)
def test_recency_buckets(age, expected):
    assert calculate_recency_score(NOW - age, NOW) == expected


def test_recency_accepts_naive_timestamps():
    naive = datetime(2026, 3, 10, 6, 0)
    assert calculate_recency_score(naive, NOW) == 10.0


# --- Combined score ---


def test_end_to_end_dual_source_score():
    candidate = make_candidate(topics={"rust programming"})
    score = score_candidate(candidate, ["rust programming"], {}, SETTINGS, NOW)

    assert score.rating_score == 6.0
    assert score.topic_score == pytest.approx(10.0)
    assert score.recency_score == 10.0
    assert score.bonus == 1.0
    assert score.total == pytest.approx(8.6)
    assert score.reason == "⭐ Rustacean Station + Topics: rust programming"
    assert score.matched_topics == ["rust programming"]


def test_bonus_only_for_both():
    tracked = score_candidate(make_candidate(origin=Origin.TRACKED_SOURCE), ["rust programming"], {}, SETTINGS, NOW)
    topic = score_candidate(make_candidate(origin=Origin.TOPIC_SEARCH), ["rust programming"], {}, SETTINGS, NOW)
    both = score_candidate(make_candidate(origin=Origin.BOTH), ["rust programming"], {}, SETTINGS, NOW)

    assert tracked.bonus == topic.bonus == 0.0
    assert both.total == pytest.approx(tracked.total + 1.0)
    assert tracked.total == pytest.approx(topic.total)


def test_user_rating_lookup_by_channel():
    candidate = make_candidate(origin=Origin.TRACKED_SOURCE)
    score = score_candidate(candidate, [], {"UC_rust": 5}, SETTINGS, NOW)
    assert score.rating_score == 10.0
    # 10*0.6 + 5*0.25 + 10*0.15
    assert score.total == pytest.approx(8.75)


def test_rating_snapshot_wins_over_lookup():
    candidate = make_candidate(origin=Origin.TRACKED_SOURCE, rating=2)
    score = score_candidate(candidate, [], {"UC_rust": 5}, SETTINGS, NOW)
    assert score.rating_score == 4.0


def test_injected_weights_are_used():
    settings = CurationSettings(rating_weight=1.0, topic_weight=0.0, recency_weight=0.0, dual_source_bonus=0.0)
    score = score_candidate(make_candidate(), ["rust programming"], {"UC_rust": 4}, settings, NOW)
    assert score.total == pytest.approx(8.0)


@pytest.mark.parametrize("seed", range(3))
def test_total_is_bounded(seed):
    rng = random.Random(seed)
    words = ["rust", "python", "cooking", "history", "space", "music", "chess"]
    upper = SETTINGS.max_total_score
    for _ in range(300):
        title = " ".join(rng.choices(words, k=rng.randint(0, 5)))
        topics = [" ".join(rng.choices(words, k=rng.randint(1, 3))) for _ in range(rng.randint(0, 4))]
        rating = rng.choice([None, 1, 2, 3, 4, 5])
        origin = rng.choice(list(Origin))
        published = NOW - timedelta(days=rng.uniform(0, 90))
        candidate = make_candidate(title=title, origin=origin, published_at=published, rating=rating)

        total = score_candidate(candidate, topics, {}, SETTINGS, NOW).total
        assert 0 <= total <= upper + 1e-9


# --- Reason ---


def test_reason_per_origin():
    tracked = make_candidate(origin=Origin.TRACKED_SOURCE)
    topic = make_candidate(origin=Origin.TOPIC_SEARCH)
    both = make_candidate(origin=Origin.BOTH)

    assert build_reason(tracked, []) == "📺 New from Rustacean Station"
    assert build_reason(topic, ["rust", "systems"]) == "🔍 Topics: rust, systems"
    assert build_reason(both, ["rust"]) == "⭐ Rustacean Station + Topics: rust"


def test_reason_falls_back_to_search_topics():
    candidate = make_candidate(
        title="Unrelated video", origin=Origin.TOPIC_SEARCH, topics={"jazz piano", "chess openings"}
    )
    score = score_candidate(candidate, ["chess openings", "jazz piano"], {}, SETTINGS, NOW)
    assert score.matched_topics == ["chess openings", "jazz piano"]
    assert score.reason == "🔍 Topics: chess openings, jazz piano"


def test_reason_is_truncated():
    topics = [f"topic number {i}" for i in range(30)]
    reason = build_reason(make_candidate(origin=Origin.TOPIC_SEARCH), topics)
    assert len(reason) == 200
    assert reason.endswith("…")


# --- Refresh schedule ---


@pytest.mark.parametrize(
    "rating,age_days,due",
    [
        (5, 4, False),
        (5, 6, True),
        (5, 5, True),
        (4, 6, False),
        (4, 7, True),
        (3, 9, False),
        (3, 10, True),
        (2, 13, False),
        (2, 14, True),
        (1, 365, False),
        (None, 365, False),
    ],
)
def test_is_source_due(rating, age_days, due):
    assert is_source_due(rating, NOW - timedelta(days=age_days), NOW) is due


def test_never_checked_source_is_due_unless_one_star():
    assert is_source_due(5, None, NOW) is True
    assert is_source_due(None, None, NOW) is True
    assert is_source_due(1, None, NOW) is False


# --- Distribution ---


def test_score_distribution_buckets():
    assert score_distribution([8.6, 8.1, 5.0, 10.6]) == {"8-9": 2, "5-6": 1, "10-11": 1}
    assert score_distribution([]) == {}
