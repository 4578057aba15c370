import random
from datetime import datetime, timezone

from vid_discover.consolidation import consolidate, merge_candidates
from vid_discover.models import CandidateItem, Origin

NOW = datetime(2026, 3, 10, tzinfo=timezone.utc)


def item(video_id, title=None, channel_id="UC_a", topics=()):
    return CandidateItem(
        video_id=video_id,
        title=title or f"Video {video_id}",
        channel_id=channel_id,
        published_at=NOW,
        search_topics=list(topics),
    )


def by_id(candidates):
    return {c.video_id: c for c in candidates}


def test_source_only_topic_only_and_both():
    source = [item("s1"), item("shared", title="From source")]
    topic = [item("t1", topics=["rust"]), item("shared", title="From search", topics=["rust", "cli"])]

    result = by_id(consolidate(source, topic))

    assert result["s1"].origin == Origin.TRACKED_SOURCE
    assert result["t1"].origin == Origin.TOPIC_SEARCH
    assert result["shared"].origin == Origin.BOTH
    assert result["shared"].matched_topics == frozenset({"rust", "cli"})
    assert result["shared"].item.title == "From source"
    assert len(result) == 3


def test_ratings_snapshot_attached():
    result = by_id(consolidate([item("s1", channel_id="UC_rated")], [item("t1", channel_id="UC_other")],
                               ratings={"UC_rated": 4}))
    assert result["s1"].rating == 4
    assert result["t1"].rating is None


def test_empty_inputs():
    assert consolidate([], []) == []


def test_duplicates_within_one_list_keep_origin():
    result = consolidate([item("s1"), item("s1")], [])
    assert len(result) == 1
    assert result[0].origin == Origin.TRACKED_SOURCE


def test_merge_is_order_independent():
    source = [item("a"), item("b"), item("shared", title="Source title")]
    topic = [item("c", topics=["x"]), item("shared", title="Topic title", topics=["y"]), item("b", topics=["z"])]
    tagged = [(i, Origin.TRACKED_SOURCE) for i in source] + [(i, Origin.TOPIC_SEARCH) for i in topic]

    expected = by_id(merge_candidates(tagged))
    rng = random.Random(7)
    for _ in range(20):
        shuffled = tagged[:]
        rng.shuffle(shuffled)
        assert by_id(merge_candidates(shuffled)) == expected


def test_consolidate_is_idempotent():
    source = [item("a"), item("shared")]
    topic = [item("shared", topics=["rust"])]

    first = by_id(consolidate(source, topic))
    second = by_id(consolidate(source, topic))
    assert first == second
