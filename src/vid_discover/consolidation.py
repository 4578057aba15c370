"""Merge tracked-source and topic-search candidates into one deduplicated set."""

from collections.abc import Iterable

from .models import CandidateItem, Origin, SourcedCandidate


def combine_origins(a: Origin, b: Origin) -> Origin:
    return a if a == b else Origin.BOTH


def merge_candidates(
    tagged: Iterable[tuple[CandidateItem, Origin]],
    ratings: dict[str, int] | None = None,
) -> list[SourcedCandidate]:
    """
    Build one SourcedCandidate per video id from (item, origin) pairs.

    The result does not depend on the order the pairs arrive in: origins
    combine (a video seen by both strategies becomes BOTH), topic names
    are unioned, and item data from a tracked source takes precedence
    over data from a topic search.
    """
    ratings = ratings or {}
    items: dict[str, CandidateItem] = {}
    origins: dict[str, Origin] = {}
    topics: dict[str, set[str]] = {}

    for item, origin in tagged:
        video_id = item.video_id
        if video_id not in items:
            items[video_id] = item
            origins[video_id] = origin
            topics[video_id] = set(item.search_topics)
            continue

        if origin == Origin.TRACKED_SOURCE and origins[video_id] == Origin.TOPIC_SEARCH:
            items[video_id] = item
        origins[video_id] = combine_origins(origins[video_id], origin)
        topics[video_id].update(item.search_topics)

    return [
        SourcedCandidate(
            item=item,
            origin=origins[video_id],
            matched_topics=frozenset(topics[video_id]),
            rating=ratings.get(item.channel_id),
        )
        for video_id, item in items.items()
    ]


def consolidate(
    source_items: list[CandidateItem],
    topic_items: list[CandidateItem],
    ratings: dict[str, int] | None = None,
) -> list[SourcedCandidate]:
    """Tag source updates as TRACKED_SOURCE and topic hits as TOPIC_SEARCH, then merge."""
    tagged = [(item, Origin.TRACKED_SOURCE) for item in source_items]
    tagged += [(item, Origin.TOPIC_SEARCH) for item in topic_items]
    return merge_candidates(tagged, ratings)
