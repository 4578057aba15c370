"""Daily YouTube quota ledger shared by every API call."""

from __future__ import annotations

import logging
import math
import threading
import uuid
from collections import deque
from datetime import datetime, time, timedelta, timezone
from typing import TYPE_CHECKING, Callable

from .config import ApiSettings
from .errors import PersistenceError
from .models import ApiCallRecord, CostEstimate, OperationCost, OperationStats, QuotaStatus
from .notifications import send

if TYPE_CHECKING:
    from .db import Database
    from .notifications import Notifier

logger = logging.getLogger(__name__)

RESOURCE_NAME = "YouTube API"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_reset_time(after: datetime, reset_hour: int = 0) -> datetime:
    """First daily reset boundary strictly after `after` (UTC)."""
    after = after.astimezone(timezone.utc)
    boundary = datetime.combine(after.date(), time(reset_hour), tzinfo=timezone.utc)
    if boundary <= after:
        boundary += timedelta(days=1)
    return boundary


class QuotaLedger:
    """
    Tracks daily consumption of the YouTube quota against a fixed budget.

    `used` counts units actually spent; `reserved` counts units held by
    in-flight calls. A reservation lapses on its own after
    `reservation_ttl_seconds` so a crashed caller cannot pin budget forever.
    All mutations go through one lock.
    """

    def __init__(
        self,
        settings: ApiSettings | None = None,
        notifier: Notifier | None = None,
        store: Database | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or ApiSettings()
        self.limit = self.settings.daily_quota_limit
        self.notifier = notifier
        self.store = store
        self._clock = clock
        self._lock = threading.RLock()

        self._used = 0
        self._reservations: dict[str, tuple[int, datetime]] = {}
        self._last_reset = self._clock()
        self._alerted: set[str] = set()
        self._calls: deque[ApiCallRecord] = deque(maxlen=500)
        self._stats: dict[str, OperationStats] = {}

        if self.store is not None:
            self._load()

    # --- Budget checks ---

    def is_available(self, cost: int) -> bool:
        """True iff used + reserved + cost fits in the daily limit."""
        self.reset_if_new_day()
        with self._lock:
            return self._used + self._reserved(self._clock()) + cost <= self.limit

    def try_reserve(self, cost: int) -> str | None:
        """Atomically check availability and hold `cost` units; returns a token or None."""
        self.reset_if_new_day()
        with self._lock:
            if self._used + self._reserved(self._clock()) + cost > self.limit:
                return None
            return self._add_reservation(cost)

    def reserve(self, cost: int) -> str:
        """Hold `cost` units without checking the limit."""
        with self._lock:
            return self._add_reservation(cost)

    def release(self, token: str | None) -> None:
        if token is None:
            return
        with self._lock:
            self._reservations.pop(token, None)

    def _add_reservation(self, cost: int) -> str:
        token = uuid.uuid4().hex
        self._reservations[token] = (cost, self._clock())
        return token

    def _reserved(self, now: datetime) -> int:
        ttl = timedelta(seconds=self.settings.reservation_ttl_seconds)
        expired = [t for t, (_, at) in self._reservations.items() if now - at >= ttl]
        for token in expired:
            del self._reservations[token]
        return sum(cost for cost, _ in self._reservations.values())

    # --- Recording ---

    def record(
        self,
        cost: int,
        operation: str,
        success: bool,
        duration_ms: float = 0.0,
        error: str | None = None,
        item_count: int | None = None,
    ) -> None:
        """Add `cost` to today's usage and append an audit record."""
        entry = ApiCallRecord(
            operation=operation,
            cost=cost,
            duration_ms=duration_ms,
            success=success,
            error=error,
            item_count=item_count,
            timestamp=self._clock(),
        )
        with self._lock:
            self._used += cost
            self._calls.append(entry)
            stats = self._stats.setdefault(operation, OperationStats(operation=operation))
            stats.calls += 1
            stats.quota_used += cost
            stats.total_duration_ms += duration_ms
            if not success:
                stats.errors += 1
            self._save()

        if self.store is not None:
            try:
                self.store.append_api_call(entry)
            except PersistenceError as e:
                logger.warning(f"Could not persist API call record for {operation}: {e}")

        logger.debug(f"Quota: {operation} cost {cost} (success={success}), used {self._used}/{self.limit}")
        self.check_thresholds()

    # --- Reset ---

    def reset(self) -> None:
        """Zero usage and reservations, and stamp the reset time."""
        with self._lock:
            self._used = 0
            self._reservations.clear()
            self._alerted.clear()
            self._last_reset = self._clock()
            self._save()
        logger.info(f"Quota reset at {self._last_reset.isoformat()}")

    def reset_if_new_day(self) -> bool:
        """Reset when a daily boundary has passed since the last reset."""
        with self._lock:
            boundary = next_reset_time(self._last_reset, self.settings.reset_hour_utc)
            if self._clock() < boundary:
                return False
            self.reset()
            return True

    # --- Status ---

    def status(self) -> QuotaStatus:
        with self._lock:
            now = self._clock()
            ttl = timedelta(seconds=self.settings.reservation_ttl_seconds)
            reserved = sum(cost for cost, at in self._reservations.values() if now - at < ttl)
            used = self._used
            last_reset = self._last_reset
        return QuotaStatus(
            used=used,
            limit=self.limit,
            reserved=reserved,
            resets_at=next_reset_time(now, self.settings.reset_hour_utc),
            last_reset=last_reset,
            is_near_limit=self.limit > 0 and used >= self.limit * self.settings.warning_threshold,
            is_critical=self.limit > 0 and used >= self.limit * self.settings.critical_threshold,
        )

    def check_thresholds(self) -> None:
        """Notify once per day for each usage threshold crossed."""
        if self.limit <= 0:
            return
        with self._lock:
            fraction = self._used / self.limit
            levels = [
                ("limit", 1.0),
                ("critical", self.settings.critical_threshold),
                ("warning", self.settings.warning_threshold),
            ]
            crossed = [name for name, threshold in levels if fraction >= threshold]
            new_level = next((name for name in crossed if name not in self._alerted), None)
            self._alerted.update(crossed)
            used = self._used

        if new_level is None or self.notifier is None:
            return

        percent = round(used / self.limit * 100)
        if new_level == "limit":
            send(self.notifier.notify_quota_limit, RESOURCE_NAME, self.status().resets_at)
        elif new_level == "critical":
            send(self.notifier.notify_warning, f"{RESOURCE_NAME} quota critical: {percent}% of daily limit used")
        else:
            send(self.notifier.notify_warning, f"{RESOURCE_NAME} quota at {percent}% of daily limit")

    # --- Analytics ---

    def estimate_suggestion_cost(
        self, source_count: int, topic_count: int, estimated_videos: int = 100
    ) -> CostEstimate:
        """Projected quota spend for one generation run."""
        batches = math.ceil(estimated_videos / self.settings.details_batch_size) if estimated_videos > 0 else 0
        breakdown = [
            OperationCost(operation="source_search", calls=source_count, unit_cost=self.settings.search_call_cost),
            OperationCost(operation="topic_search", calls=topic_count, unit_cost=self.settings.search_call_cost),
            OperationCost(operation="video_details", calls=batches, unit_cost=self.settings.details_cost),
        ]
        estimate = CostEstimate(breakdown=breakdown, remaining=self.status().remaining, limit=self.limit)

        optimizations = []
        if estimate.exceeds_remaining:
            optimizations.append("Not enough quota remains today; results will be partial.")
        if topic_count > 10:
            optimizations.append("Reduce the number of topics; each topic search costs "
                                 f"{self.settings.search_call_cost} units.")
        if source_count > 20:
            optimizations.append("Rate sources you care less about 1 star to stop polling them.")
        if estimate.projected_usage_percent >= self.settings.warning_threshold * 100:
            optimizations.append("Run generation less often to stay under the daily limit.")
        estimate.optimizations = optimizations
        return estimate

    def usage_statistics(self) -> dict[str, OperationStats]:
        with self._lock:
            return {name: stats.model_copy() for name, stats in self._stats.items()}

    def recent_calls(self, limit: int = 50) -> list[ApiCallRecord]:
        with self._lock:
            return list(reversed(self._calls))[:limit]

    # --- Persistence ---

    def _load(self):
        now = self._clock()
        try:
            entry = self.store.get_quota_entry(now.date().isoformat())
        except PersistenceError as e:
            logger.warning(f"Could not load quota ledger, starting from zero: {e}")
            return
        if entry is None:
            self._save()
            return
        self._used = entry["used"]
        self._last_reset = entry["last_reset"]
        logger.info(f"Loaded quota ledger for {now.date()}: {self._used}/{self.limit} used")

    def _save(self):
        if self.store is None:
            return
        try:
            self.store.save_quota_entry(
                self._last_reset.date().isoformat(),
                self._used,
                self.limit,
                self._reserved(self._clock()),
                self._last_reset,
            )
        except PersistenceError as e:
            logger.warning(f"Could not persist quota ledger: {e}")
