"""Suggestion generation, review and expiry."""

import logging
import time
from datetime import datetime, timezone
from typing import Callable

from .config import CurationSettings
from .consolidation import consolidate
from .db import Database
from .discovery import DiscoveryOrchestrator
from .errors import PersistenceError
from .models import (
    Origin,
    Score,
    Suggestion,
    SuggestionAnalytics,
    SuggestionResult,
    SuggestionStatus,
    Topic,
    TrackedSource,
)
from .notifications import Notifier, send
from .quota import QuotaLedger
from .scoring import score_candidate, score_distribution

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SuggestionCurator:
    """
    Turns discovered videos into pending suggestions for a user.

    Generation pipeline:
    1. Refuse when the pending queue is already full
    2. Discover (both strategies), consolidate and score
    3. Keep scores at or above the threshold
    4. Drop videos that already have an active suggestion
    5. Sort by score and cap per request (and by remaining queue room)
    6. Upsert the video, then insert the suggestion and its topic links
       in one transaction per suggestion
    7. Summarize

    Everything after discovery runs without yielding to the event loop,
    so a cancelled request never leaves partially persisted results.
    """

    def __init__(
        self,
        db: Database,
        orchestrator: DiscoveryOrchestrator,
        ledger: QuotaLedger | None = None,
        notifier: Notifier | None = None,
        settings: CurationSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.notifier = notifier
        self.settings = settings or CurationSettings()
        self._clock = clock

    def _notify(self, method: str, *args):
        if self.notifier is not None:
            send(getattr(self.notifier, method), *args)

    # --- Queue ---

    def pending_count(self, user_id: str) -> int:
        return self.db.count_active_suggestions(user_id, self._clock())

    def can_request(self, user_id: str) -> bool:
        return self.pending_count(user_id) < self.settings.max_pending_suggestions

    def list_pending(self, user_id: str, limit: int = 50, offset: int = 0) -> list[Suggestion]:
        return self.db.list_suggestions(user_id, limit=limit, offset=offset)

    def analytics(self, user_id: str) -> SuggestionAnalytics:
        return self.db.suggestion_analytics(user_id, self._clock())

    # --- Generation ---

    async def generate(self, user_id: str, threshold: float | None = None) -> SuggestionResult:
        """Discover, score and persist new suggestions for `user_id`."""
        start = time.monotonic()
        threshold = self.settings.default_score_threshold if threshold is None else threshold
        now = self._clock()

        try:
            pending = self.db.count_active_suggestions(user_id, now)
        except PersistenceError as e:
            logger.error(f"Could not read pending queue for {user_id}: {e}", exc_info=True)
            return SuggestionResult.failure("Could not read your suggestion queue. Try again later.")

        if pending >= self.settings.max_pending_suggestions:
            message = (
                f"You have {pending} pending suggestions. "
                "Review some before requesting more."
            )
            self._notify("notify_warning", message)
            return SuggestionResult.failure(message)

        # One round of lookups feeds the estimate, discovery and scoring
        try:
            sources = self.db.get_sources_due_for_check(user_id, now)
            topics = self.db.get_user_topics(user_id)
            ratings = self.db.get_user_ratings(user_id)
        except Exception as e:
            logger.error(f"Could not load sources/topics/ratings for {user_id}: {e}", exc_info=True)
            return SuggestionResult.failure("Could not load your channels and topics. Try again later.")

        warnings = self._cost_warnings(user_id, sources, topics)

        source_result, topic_result = await self.orchestrator.discover(
            user_id, mark_checked=False, sources=sources, topics=topics
        )

        quota_exhausted = source_result.is_quota_exceeded or topic_result.is_quota_exceeded
        if quota_exhausted:
            warnings.append("Daily YouTube quota ran out during discovery; results are partial.")
        for result in (source_result, topic_result):
            if result.error is not None and not result.is_quota_exceeded:
                warnings.append(result.error.message)
            if result.failures:
                warnings.append(f"{len(result.failures)} searches failed and were skipped.")

        candidates = consolidate(source_result.items, topic_result.items, ratings)
        topic_names = [topic.name for topic in topics]
        scores = [
            score_candidate(candidate, topic_names, ratings, self.settings, now)
            for candidate in candidates
        ]

        origin_counts = {origin: 0 for origin in Origin}
        for candidate in candidates:
            origin_counts[candidate.origin] += 1

        if not candidates:
            errors = [r.error for r in (source_result, topic_result) if r.error is not None]
            if errors:
                return SuggestionResult(
                    is_success=False,
                    error_message=errors[0].message,
                    quota_exhausted=quota_exhausted,
                    warnings=warnings,
                    processing_time_ms=(time.monotonic() - start) * 1000,
                )

        accepted = [score for score in scores if score.total >= threshold]
        try:
            fresh = [s for s in accepted if not self.db.has_active_suggestion(user_id, s.video_id, now)]
        except PersistenceError as e:
            logger.error(f"Duplicate check failed for {user_id}: {e}", exc_info=True)
            return SuggestionResult.failure("Could not check existing suggestions. Try again later.")
        duplicates = len(accepted) - len(fresh)

        fresh.sort(key=lambda s: s.total, reverse=True)
        room = self.settings.max_pending_suggestions - pending
        selected = fresh[:min(self.settings.max_suggestions_per_request, room)]

        topic_ids = {topic.name: topic.id for topic in topics}
        created: list[Suggestion] = []
        failed = 0
        for score in selected:
            suggestion = self._persist(user_id, score, topic_ids, now)
            if suggestion is None:
                failed += 1
            else:
                created.append(suggestion)

        if selected and not created:
            logger.error(f"All {len(selected)} suggestion inserts failed for {user_id}")
            self._notify("notify_error", "Could not save new suggestions. Try again later.")
            return SuggestionResult(
                is_success=False,
                error_message="Could not save new suggestions. Try again later.",
                total_discovered=len(candidates),
                persistence_failures=failed,
                quota_exhausted=quota_exhausted,
                warnings=warnings,
                processing_time_ms=(time.monotonic() - start) * 1000,
            )

        self.orchestrator.mark_sources_checked(user_id, source_result.completed, now)

        if failed:
            warnings.append(f"{failed} suggestions could not be saved.")
        totals = [s.score for s in created if s.score is not None]

        result = SuggestionResult(
            total_discovered=len(candidates),
            source_count=origin_counts[Origin.TRACKED_SOURCE],
            topic_count=origin_counts[Origin.TOPIC_SEARCH],
            both_count=origin_counts[Origin.BOTH],
            below_threshold=len(scores) - len(accepted),
            duplicates_skipped=duplicates,
            persistence_failures=failed,
            quota_exhausted=quota_exhausted,
            average_score=round(sum(totals) / len(totals), 2) if totals else 0.0,
            score_distribution=score_distribution(totals),
            suggestions=created,
            warnings=warnings,
            processing_time_ms=(time.monotonic() - start) * 1000,
        )

        logger.info(
            f"{user_id}: {result.summary_message()} "
            f"(source={result.source_count}, topic={result.topic_count}, both={result.both_count}, "
            f"duplicates={duplicates}, below threshold={result.below_threshold})"
        )
        if created:
            self._notify("notify_success", result.summary_message())
        else:
            self._notify("notify_info", result.summary_message())
        return result

    def _persist(self, user_id: str, score: Score, topic_ids: dict[str, int], now: datetime) -> Suggestion | None:
        try:
            video_pk = self.db.ensure_video_exists(score.candidate.item)
            linked = [topic_ids[name] for name in score.matched_topics if name in topic_ids]
            if linked:
                return self.db.insert_suggestion_with_topics(
                    user_id, video_pk, score.reason, linked, score.total, now
                )
            return self.db.insert_suggestion(user_id, video_pk, score.reason, score.total, now)
        except PersistenceError as e:
            logger.warning(f"Skipping {score.video_id}: {e}")
            return None

    def _cost_warnings(self, user_id: str, sources: list[TrackedSource], topics: list[Topic]) -> list[str]:
        if self.ledger is None:
            return []
        polled = [s for s in sources if s.rating != 1]
        estimate = self.ledger.estimate_suggestion_cost(len(polled), len(topics))
        if estimate.exceeds_remaining:
            logger.warning(
                f"Estimated cost {estimate.total_cost} exceeds remaining quota {estimate.remaining} for {user_id}"
            )
            return [f"This run may need {estimate.total_cost} quota units but only {estimate.remaining} remain."]
        return []

    # --- Review ---

    def _pending(self, user_id: str, suggestion_id: int) -> Suggestion | None:
        """The suggestion if it can still be reviewed; notifies the user otherwise."""
        suggestion = self.db.get_suggestion(suggestion_id, user_id)
        if suggestion is None:
            self._notify("notify_error", "Suggestion not found.")
            return None
        if suggestion.status != SuggestionStatus.PENDING:
            self._notify("notify_warning", f"'{suggestion.title}' was already {suggestion.status.value}.")
            return None
        return suggestion

    def approve(self, user_id: str, suggestion_id: int) -> bool:
        """
        Approve a pending suggestion and add its video to the user's library.

        Returns False when the suggestion does not exist or was already
        approved or denied.
        """
        suggestion = self._pending(user_id, suggestion_id)
        if suggestion is None:
            return False

        if not self.db.mark_approved(suggestion_id, self._clock()):
            self._notify("notify_warning", f"'{suggestion.title}' was already reviewed.")
            return False

        video_pk = self.db.get_video_pk(suggestion.video_id)
        if video_pk is not None and self.db.is_in_library(user_id, video_pk):
            self._notify("notify_success", f"'{suggestion.title}' is already in your library.")
            return True

        try:
            self.db.add_to_library(user_id, video_pk)
        except PersistenceError as e:
            logger.error(f"Approved {suggestion_id} but library add failed: {e}")
            self._notify("notify_warning", f"Approved '{suggestion.title}', but it could not be added to your library.")
            return True

        self._notify("notify_success", f"Added '{suggestion.title}' to your library.")
        return True

    def deny(self, user_id: str, suggestion_id: int) -> bool:
        suggestion = self._pending(user_id, suggestion_id)
        if suggestion is None:
            return False
        if not self.db.mark_denied(suggestion_id, self._clock()):
            self._notify("notify_warning", f"'{suggestion.title}' was already reviewed.")
            return False
        self._notify("notify_info", f"Dismissed '{suggestion.title}'.")
        return True

    def cleanup_expired(self) -> int:
        """Withdraw pending suggestions older than the expiry window."""
        count = self.db.cleanup_expired_suggestions(self._clock())
        if count:
            logger.info(f"Cleaned up {count} expired suggestions")
        return count
