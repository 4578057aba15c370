import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from vid_discover.config import CurationSettings
from vid_discover.db import Database
from vid_discover.discovery import DiscoveryOrchestrator
from vid_discover.errors import ApiError, ApiErrorKind, FetchResult
from vid_discover.models import CandidateItem, Topic, TrackedSource
from vid_discover.youtube import YouTubeClient

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Database(str(Path(tmpdir) / "test.db"))


@pytest.fixture
def client():
    client = Mock(spec=YouTubeClient)
    client.bulk_source_updates = AsyncMock(return_value=FetchResult())
    client.bulk_topic_search = AsyncMock(return_value=FetchResult())
    return client


def make_orchestrator(db, client):
    return DiscoveryOrchestrator(db, client, CurationSettings(), clock=lambda: NOW)


def video(video_id, channel_id="UC_a"):
    return CandidateItem(video_id=video_id, title=video_id, channel_id=channel_id, published_at=NOW)


@pytest.mark.asyncio
async def test_source_requests_built_from_due_sources(temp_db, client):
    temp_db.add_source("u1", "UC_new", "New Channel")
    temp_db.add_source("u1", "UC_old")
    temp_db.rate_source("u1", "UC_old", 5)
    last = NOW - timedelta(days=6)
    temp_db.update_source_last_check("u1", "UC_old", last)

    orchestrator = make_orchestrator(temp_db, client)
    await orchestrator.fetch_source_updates("u1")

    requests = {r.source_id: r for r in client.bulk_source_updates.call_args[0][0]}
    assert requests["UC_new"].last_check == NOW - timedelta(days=30)
    assert requests["UC_new"].source_name == "New Channel"
    assert requests["UC_new"].max_results == 50
    assert requests["UC_old"].last_check == last
    assert requests["UC_old"].rating == 5


@pytest.mark.asyncio
async def test_no_due_sources_skips_client(temp_db, client):
    orchestrator = make_orchestrator(temp_db, client)
    result = await orchestrator.fetch_source_updates("u1")

    assert result.items == []
    assert result.error is None
    client.bulk_source_updates.assert_not_called()


@pytest.mark.asyncio
async def test_only_completed_sources_are_marked_checked(temp_db, client):
    temp_db.add_source("u1", "UC_a")
    temp_db.add_source("u1", "UC_b")
    client.bulk_source_updates.return_value = FetchResult(
        items=[video("a1")],
        error=ApiError.of(ApiErrorKind.QUOTA_EXCEEDED),
        completed=["UC_a"],
    )

    orchestrator = make_orchestrator(temp_db, client)
    result = await orchestrator.fetch_source_updates("u1")

    assert [item.video_id for item in result.items] == ["a1"]
    checked = {s.source_id: s.last_checked for s in temp_db.get_user_sources("u1")}
    assert checked == {"UC_a": NOW, "UC_b": None}


@pytest.mark.asyncio
async def test_deferred_marking(temp_db, client):
    temp_db.add_source("u1", "UC_a")
    client.bulk_source_updates.return_value = FetchResult.ok([video("a1")], completed=["UC_a"])

    orchestrator = make_orchestrator(temp_db, client)
    result = await orchestrator.fetch_source_updates("u1", mark_checked=False)
    assert temp_db.get_user_sources("u1")[0].last_checked is None

    orchestrator.mark_sources_checked("u1", result.completed)
    assert temp_db.get_user_sources("u1")[0].last_checked == NOW


@pytest.mark.asyncio
async def test_topic_search_uses_lookback_window(temp_db, client):
    temp_db.add_topic("u1", "rust programming")
    temp_db.add_topic("u1", "chess openings")

    orchestrator = make_orchestrator(temp_db, client)
    await orchestrator.fetch_topic_matches("u1")

    queries, published_after, max_results = client.bulk_topic_search.call_args[0]
    assert queries == ["rust programming", "chess openings"]
    assert published_after == NOW - timedelta(days=30)
    assert max_results == 25


@pytest.mark.asyncio
async def test_client_exception_is_contained(temp_db, client):
    temp_db.add_source("u1", "UC_a")
    temp_db.add_topic("u1", "rust")
    client.bulk_source_updates.side_effect = RuntimeError("boom")
    client.bulk_topic_search.return_value = FetchResult.ok([video("t1")], completed=["rust"])

    orchestrator = make_orchestrator(temp_db, client)
    source_result, topic_result = await orchestrator.discover("u1")

    assert source_result.error.kind == ApiErrorKind.TRANSIENT
    assert source_result.items == []
    assert [item.video_id for item in topic_result.items] == ["t1"]
    assert temp_db.get_user_sources("u1")[0].last_checked is None


@pytest.mark.asyncio
async def test_store_failure_is_contained(client):
    db = Mock(spec=Database)
    db.get_sources_due_for_check.side_effect = RuntimeError("disk gone")
    db.get_user_topics.side_effect = RuntimeError("disk gone")

    orchestrator = make_orchestrator(db, client)
    source_result, topic_result = await orchestrator.discover("u1")

    assert source_result.error.kind == ApiErrorKind.TRANSIENT
    assert topic_result.error.kind == ApiErrorKind.TRANSIENT


@pytest.mark.asyncio
async def test_preloaded_sources_and_topics_skip_store(client):
    db = Mock(spec=Database)
    sources = [TrackedSource(source_id="UC_a", name="Channel A", rating=4)]
    topics = [Topic(id=1, name="rust")]

    orchestrator = make_orchestrator(db, client)
    await orchestrator.discover("u1", mark_checked=False, sources=sources, topics=topics)

    db.get_sources_due_for_check.assert_not_called()
    db.get_user_topics.assert_not_called()
    requests = client.bulk_source_updates.call_args[0][0]
    assert [r.source_id for r in requests] == ["UC_a"]
    assert client.bulk_topic_search.call_args[0][0] == ["rust"]
