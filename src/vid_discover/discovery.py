"""Dual-strategy discovery: tracked-source polling and topic keyword search."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from .config import CurationSettings
from .db import Database
from .errors import ApiError, ApiErrorKind, FetchResult, PersistenceError
from .models import SourceUpdateRequest, Topic, TrackedSource
from .youtube import YouTubeClient

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DiscoveryOrchestrator:
    """
    Runs both discovery strategies for a user against the YouTube client.

    Discovery is best-effort: errors are logged and whatever was fetched
    is returned. Neither strategy can prevent the other from producing
    results.
    """

    def __init__(
        self,
        db: Database,
        client: YouTubeClient,
        settings: CurationSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.client = client
        self.settings = settings or CurationSettings()
        self._clock = clock

    async def fetch_source_updates(
        self, user_id: str, mark_checked: bool = True, sources: list[TrackedSource] | None = None
    ) -> FetchResult:
        """
        Poll the user's tracked sources that are due for a check.

        Pass `sources` to reuse a due-source list the caller already loaded.
        With `mark_checked`, every source whose fetch completed gets its
        last-checked time moved to now. Callers that persist results later
        can pass False and call `mark_sources_checked` themselves.
        """
        now = self._clock()
        try:
            if sources is None:
                sources = self.db.get_sources_due_for_check(user_id, now)
            if not sources:
                logger.info(f"No tracked sources due for {user_id}")
                return FetchResult()

            lookback = now - timedelta(days=self.settings.discovery_lookback_days)
            requests = [
                SourceUpdateRequest(
                    source_id=source.source_id,
                    source_name=source.name,
                    last_check=source.last_checked or lookback,
                    rating=source.rating,
                    max_results=self.settings.max_results_per_source,
                )
                for source in sources
            ]
            result = await self.client.bulk_source_updates(requests)
        except Exception as e:
            logger.error(f"Source update discovery failed for {user_id}: {e}", exc_info=True)
            return FetchResult.fail(ApiError.of(ApiErrorKind.TRANSIENT, str(e)))

        if result.error is not None:
            logger.warning(
                f"Source updates for {user_id} incomplete ({result.error.kind.value}); "
                f"using {len(result.items)} videos fetched so far"
            )
        if mark_checked:
            self.mark_sources_checked(user_id, result.completed, now)
        return result

    def mark_sources_checked(self, user_id: str, source_ids: list[str], checked_at: datetime | None = None):
        checked_at = checked_at or self._clock()
        for source_id in source_ids:
            try:
                self.db.update_source_last_check(user_id, source_id, checked_at)
            except PersistenceError as e:
                logger.warning(f"Could not update last check for {source_id}: {e}")

    async def fetch_topic_matches(self, user_id: str, topics: list[Topic] | None = None) -> FetchResult:
        """Search every user topic (or the given ones) over the lookback window."""
        now = self._clock()
        try:
            if topics is None:
                topics = self.db.get_user_topics(user_id)
            if not topics:
                logger.info(f"No topics configured for {user_id}")
                return FetchResult()

            published_after = now - timedelta(days=self.settings.discovery_lookback_days)
            result = await self.client.bulk_topic_search(
                [topic.name for topic in topics],
                published_after,
                self.settings.max_results_per_topic,
            )
        except Exception as e:
            logger.error(f"Topic discovery failed for {user_id}: {e}", exc_info=True)
            return FetchResult.fail(ApiError.of(ApiErrorKind.TRANSIENT, str(e)))

        if result.error is not None:
            logger.warning(
                f"Topic search for {user_id} incomplete ({result.error.kind.value}); "
                f"using {len(result.items)} videos fetched so far"
            )
        return result

    async def discover(
        self,
        user_id: str,
        mark_checked: bool = True,
        sources: list[TrackedSource] | None = None,
        topics: list[Topic] | None = None,
    ) -> tuple[FetchResult, FetchResult]:
        """Run both strategies concurrently; returns (source_updates, topic_matches)."""
        source_result, topic_result = await asyncio.gather(
            self.fetch_source_updates(user_id, mark_checked=mark_checked, sources=sources),
            self.fetch_topic_matches(user_id, topics=topics),
        )
        return source_result, topic_result
