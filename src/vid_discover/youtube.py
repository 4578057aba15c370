import asyncio
import html
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from .cache import TTLCache
from .config import ApiSettings
from .errors import ApiError, ApiErrorKind, BatchFailure, FetchResult
from .models import CandidateItem, SourceUpdateRequest
from .notifications import Notifier, send
from .quota import RESOURCE_NAME, QuotaLedger

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)

# Errors that make every further call pointless
_STOP_KINDS = (ApiErrorKind.QUOTA_EXCEEDED, ApiErrorKind.AUTH_FAILURE)


def parse_duration(duration: str | None) -> int:
    """Convert an ISO 8601 duration (e.g. PT1H2M3S) to seconds; 0 when absent or malformed."""
    if not duration:
        return 0
    match = _DURATION_RE.match(duration)
    if not match:
        return 0
    parts = {k: int(v) for k, v in match.groupdict().items() if v}
    return (
        parts.get("days", 0) * 86400
        + parts.get("hours", 0) * 3600
        + parts.get("minutes", 0) * 60
        + parts.get("seconds", 0)
    )


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _thumbnail(snippet: dict) -> str:
    thumbnails = snippet.get("thumbnails") or {}
    for size in ("medium", "high", "default"):
        url = (thumbnails.get(size) or {}).get("url")
        if url:
            return url
    return ""


class YouTubeClient:
    """
    Async client for the YouTube Data API v3.

    Every outbound request holds a semaphore permit, reserves its quota
    cost in the ledger while in flight, and records the actual spend
    afterwards. Search results and video details are cached for a short
    TTL; a cache hit costs no quota. Provider and network errors never
    raise: they come back as a classified ApiError inside a FetchResult.
    """

    def __init__(
        self,
        ledger: QuotaLedger,
        settings: ApiSettings | None = None,
        notifier: Notifier | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or ApiSettings.from_env()
        if not self.settings.api_key:
            raise ValueError("YOUTUBE_API_KEY must be set")

        self.ledger = ledger
        self.notifier = notifier
        self._transport = transport
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_requests)
        self._search_cache = TTLCache(self.settings.search_cache_size, self.settings.cache_ttl_seconds)
        self._video_cache = TTLCache(self.settings.video_cache_size, self.settings.cache_ttl_seconds)
        self._auth_error: ApiError | None = None

    # --- HTTP ---

    async def _get(self, endpoint: str, params: dict[str, Any]) -> httpx.Response:
        """Single GET against the API, holding a concurrency permit."""
        async with self._semaphore:
            async with httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=self.settings.request_timeout,
                transport=self._transport,
            ) as client:
                return await client.get(endpoint, params={**params, "key": self.settings.api_key})

    async def _call(
        self, operation: str, endpoint: str, params: dict[str, Any], cost: int
    ) -> tuple[dict | None, ApiError | None]:
        """Quota-gated request with error classification. Returns (json, None) or (None, error)."""
        if self._auth_error is not None:
            return None, self._auth_error

        token = self.ledger.try_reserve(cost)
        if token is None:
            error = ApiError.of(ApiErrorKind.QUOTA_EXCEEDED, f"{operation} needs {cost} units, budget exhausted")
            logger.warning(f"Skipping {operation}: quota exhausted")
            self._notify_quota_limit()
            return None, error

        start = time.monotonic()
        try:
            response = await self._get(endpoint, params)
        except httpx.TimeoutException as e:
            self.ledger.record(0, operation, False, self._elapsed(start), error=f"timeout: {e}")
            logger.warning(f"{operation} timed out after {self.settings.request_timeout}s")
            return None, ApiError.of(ApiErrorKind.TRANSIENT, f"timeout: {e}")
        except httpx.HTTPError as e:
            self.ledger.record(0, operation, False, self._elapsed(start), error=f"network: {e}")
            logger.warning(f"{operation} network error: {e}")
            return None, ApiError.of(ApiErrorKind.TRANSIENT, f"network: {e}")
        finally:
            self.ledger.release(token)

        duration_ms = self._elapsed(start)
        status = response.status_code

        if response.is_success:
            try:
                data = response.json()
            except ValueError as e:
                self.ledger.record(cost, operation, False, duration_ms, error=f"invalid JSON: {e}")
                logger.error(f"{operation} returned invalid JSON: {e}")
                return None, ApiError.of(ApiErrorKind.TRANSIENT, f"invalid JSON: {e}", status)
            self.ledger.record(cost, operation, True, duration_ms, item_count=len(data.get("items", [])))
            return data, None

        detail = f"HTTP {status}: {response.text[:200]}"
        self.ledger.record(0, operation, False, duration_ms, error=detail)

        if status == 403:
            logger.warning(f"{operation} rejected with 403, treating as quota exhaustion")
            self._notify_quota_limit()
            return None, ApiError.of(ApiErrorKind.QUOTA_EXCEEDED, detail, status)
        if status == 400:
            logger.warning(f"{operation} bad request: {detail}")
            return None, ApiError.of(ApiErrorKind.INVALID_REQUEST, detail, status)
        if status == 401:
            logger.error(f"{operation} unauthorized; disabling further API calls until reconfigured")
            self._auth_error = ApiError.of(ApiErrorKind.AUTH_FAILURE, detail, status)
            if self.notifier is not None:
                send(self.notifier.notify_error, self._auth_error.message)
            return None, self._auth_error

        logger.warning(f"{operation} failed: {detail}")
        return None, ApiError.of(ApiErrorKind.TRANSIENT, detail, status)

    @staticmethod
    def _elapsed(start: float) -> float:
        return (time.monotonic() - start) * 1000

    def _notify_quota_limit(self):
        if self.notifier is not None:
            send(self.notifier.notify_quota_limit, RESOURCE_NAME, self.ledger.status().resets_at)

    def reset_auth_state(self):
        """Allow calls again after the API key has been fixed."""
        self._auth_error = None

    # --- Cache helpers ---

    @staticmethod
    def _cache_key(operation: str, params: dict[str, Any]) -> str:
        normalized = "&".join(f"{k}={params[k]}" for k in sorted(params))
        return f"{operation}?{normalized}"

    def _cached_search(self, key: str) -> list[CandidateItem] | None:
        cached = self._search_cache.get(key)
        if cached is None:
            return None
        logger.debug(f"Cache hit: {key}")
        return [item.model_copy(deep=True) for item in cached]

    def clear_cache(self):
        self._search_cache.clear()
        self._video_cache.clear()

    def cache_stats(self) -> dict[str, int]:
        return {
            "search_entries": len(self._search_cache),
            "video_entries": len(self._video_cache),
            "hits": self._search_cache.hits + self._video_cache.hits,
            "misses": self._search_cache.misses + self._video_cache.misses,
        }

    # --- Parsing ---

    def _parse_search_item(self, raw: dict) -> CandidateItem | None:
        video_id = (raw.get("id") or {}).get("videoId")
        snippet = raw.get("snippet") or {}
        published_at = parse_timestamp(snippet.get("publishedAt"))
        if not video_id or published_at is None:
            return None
        return CandidateItem(
            video_id=video_id,
            title=html.unescape(snippet.get("title", "")),
            channel_id=snippet.get("channelId", ""),
            channel_name=html.unescape(snippet.get("channelTitle", "")),
            published_at=published_at,
            thumbnail_url=_thumbnail(snippet),
            description=html.unescape(snippet.get("description", "")),
        )

    def _parse_video(self, raw: dict) -> CandidateItem | None:
        video_id = raw.get("id")
        snippet = raw.get("snippet") or {}
        stats = raw.get("statistics") or {}
        content = raw.get("contentDetails") or {}
        published_at = parse_timestamp(snippet.get("publishedAt"))
        if not video_id or published_at is None:
            return None
        return CandidateItem(
            video_id=video_id,
            title=snippet.get("title", ""),
            channel_id=snippet.get("channelId", ""),
            channel_name=snippet.get("channelTitle", ""),
            published_at=published_at,
            view_count=_to_int(stats.get("viewCount")),
            like_count=_to_int(stats.get("likeCount")),
            comment_count=_to_int(stats.get("commentCount")),
            duration_seconds=parse_duration(content.get("duration")),
            thumbnail_url=_thumbnail(snippet),
            description=snippet.get("description", ""),
        )

    # --- Search ---

    async def _search(
        self, operation: str, key: str, params: dict[str, Any], max_results: int
    ) -> FetchResult:
        """One search call per duration bucket, deduplicated, then enriched with details."""
        cached = self._cached_search(key)
        if cached is not None:
            return FetchResult.ok(cached)

        if not self.ledger.is_available(self.settings.search_call_cost):
            logger.warning(f"Skipping {operation}: quota exhausted")
            self._notify_quota_limit()
            return FetchResult.fail(
                ApiError.of(ApiErrorKind.QUOTA_EXCEEDED, f"{operation} needs {self.settings.search_call_cost} units")
            )

        found: dict[str, CandidateItem] = {}
        error = None
        for duration in self.settings.search_durations:
            data, error = await self._call(
                operation,
                "search",
                {**params, "videoDuration": duration, "maxResults": min(max_results, 50)},
                self.settings.search_cost,
            )
            if error is not None:
                break
            for raw in data.get("items", []):
                item = self._parse_search_item(raw)
                if item is not None:
                    # Later buckets win
                    found[item.video_id] = item

        if error is not None and not found:
            return FetchResult.fail(error)

        items = list(found.values())
        if params.get("order") == "date":
            items.sort(key=lambda i: i.published_at, reverse=True)
        items, enriched = await self._enrich(items[:max_results])

        # Degraded results are returned but never cached
        if error is None and enriched:
            self._search_cache.set(key, [item.model_copy(deep=True) for item in items])
        return FetchResult(items=items, error=error)

    async def search_by_source(
        self, source_id: str, since: datetime, max_results: int = 50
    ) -> FetchResult:
        """Recent uploads from one channel, newest first."""
        params = {
            "part": "snippet",
            "type": "video",
            "channelId": source_id,
            "order": "date",
            "publishedAfter": format_timestamp(since),
        }
        key = self._cache_key("search_by_source", {**params, "max": max_results})
        result = await self._search("search_by_source", key, params, max_results)
        if result.error is None:
            result.completed = [source_id]
        return result

    async def search_by_topic(
        self, query: str, published_after: datetime | None = None, max_results: int = 25
    ) -> FetchResult:
        """Keyword search; each item is tagged with the query that found it."""
        params = {
            "part": "snippet",
            "type": "video",
            "q": query,
            "order": "relevance",
        }
        if published_after is not None:
            params["publishedAfter"] = format_timestamp(published_after)
        key = self._cache_key("search_by_topic", {**params, "max": max_results})
        result = await self._search("search_by_topic", key, params, max_results)
        for item in result.items:
            if query not in item.search_topics:
                item.search_topics.append(query)
        if result.error is None:
            result.completed = [query]
        return result

    # --- Details ---

    async def get_details(self, ids: list[str]) -> FetchResult:
        """
        Full video records for `ids`, fetched in provider-sized batches.

        Cached ids are served without a call. A quota or auth error stops
        further batches and returns what was fetched so far; any other batch
        error is recorded and the next batch is attempted.
        """
        unique_ids = list(dict.fromkeys(ids))
        found: dict[str, CandidateItem] = {}
        missing = []
        for video_id in unique_ids:
            cached = self._video_cache.get(video_id)
            if cached is not None:
                found[video_id] = cached.model_copy(deep=True)
            else:
                missing.append(video_id)

        failures: list[BatchFailure] = []
        completed = [vid for vid in unique_ids if vid in found]
        error = None
        batch_size = self.settings.details_batch_size

        for start in range(0, len(missing), batch_size):
            chunk = missing[start:start + batch_size]
            data, batch_error = await self._call(
                "get_details",
                "videos",
                {"part": "snippet,statistics,contentDetails", "id": ",".join(chunk), "maxResults": len(chunk)},
                self.settings.details_cost,
            )
            if batch_error is not None:
                if batch_error.kind in _STOP_KINDS:
                    error = batch_error
                    logger.warning(
                        f"Detail fetch stopped after {len(completed)} of {len(unique_ids)} videos: {batch_error.kind.value}"
                    )
                    break
                failures.append(BatchFailure(key=f"videos[{start}:{start + len(chunk)}]", error=batch_error))
                continue

            for raw in data.get("items", []):
                item = self._parse_video(raw)
                if item is not None:
                    found[item.video_id] = item
                    self._video_cache.set(item.video_id, item.model_copy(deep=True))
            completed.extend(chunk)

        items = [found[vid] for vid in unique_ids if vid in found]
        return FetchResult(items=items, error=error, failures=failures, completed=completed)

    async def _enrich(self, items: list[CandidateItem]) -> tuple[list[CandidateItem], bool]:
        """
        Merge duration and counters from detail lookups; unenriched items keep defaults.

        Returns the items and whether every detail batch succeeded.
        """
        if not items:
            return items, True
        details = await self.get_details([item.video_id for item in items])
        if not details.is_success:
            logger.warning(f"Enriched {len(details.items)} of {len(items)} videos; the rest keep default stats")
        by_id = {d.video_id: d for d in details.items}

        enriched = []
        for item in items:
            detail = by_id.get(item.video_id)
            if detail is None:
                enriched.append(item)
                continue
            enriched.append(item.model_copy(update={
                "view_count": detail.view_count,
                "like_count": detail.like_count,
                "comment_count": detail.comment_count,
                "duration_seconds": detail.duration_seconds,
                "description": detail.description or item.description,
                "thumbnail_url": item.thumbnail_url or detail.thumbnail_url,
            }))
        return enriched, details.is_success

    # --- Bulk ---

    async def bulk_source_updates(self, requests: list[SourceUpdateRequest]) -> FetchResult:
        """
        Poll each tracked source for uploads since its last check.

        Sources rated 1 star are never polled. Quota or auth errors stop
        the loop and keep everything fetched before them; other per-source
        errors are logged and the loop moves on.
        """
        items: list[CandidateItem] = []
        seen: set[str] = set()
        failures: list[BatchFailure] = []
        completed: list[str] = []
        error = None

        for request in requests:
            if request.rating == 1:
                logger.debug(f"Skipping 1-star source {request.source_id}")
                continue

            result = await self.search_by_source(request.source_id, request.last_check, request.max_results)
            for item in result.items:
                if item.video_id in seen:
                    continue
                seen.add(item.video_id)
                if not item.channel_name and request.source_name:
                    item.channel_name = request.source_name
                items.append(item)

            if result.error is not None:
                if result.error.kind in _STOP_KINDS:
                    error = result.error
                    logger.warning(
                        f"Source updates stopped at {request.source_id} ({result.error.kind.value}); "
                        f"keeping {len(items)} videos from {len(completed)} sources"
                    )
                    break
                logger.warning(f"Source {request.source_id} failed: {result.error.detail}")
                failures.append(BatchFailure(key=request.source_id, error=result.error))
                continue
            completed.append(request.source_id)

        logger.info(f"Source updates: {len(items)} videos from {len(completed)} sources")
        return FetchResult(items=items, error=error, failures=failures, completed=completed)

    async def bulk_topic_search(
        self, queries: list[str], published_after: datetime | None = None, max_per_topic: int = 25
    ) -> FetchResult:
        """
        Search each topic and deduplicate across topics by video id.

        The first occurrence of a video is kept; later topics that find it
        are appended to its `search_topics`.
        """
        by_id: dict[str, CandidateItem] = {}
        failures: list[BatchFailure] = []
        completed: list[str] = []
        error = None

        for query in queries:
            result = await self.search_by_topic(query, published_after, max_per_topic)
            for item in result.items:
                existing = by_id.get(item.video_id)
                if existing is None:
                    by_id[item.video_id] = item
                    continue
                for topic in item.search_topics:
                    if topic not in existing.search_topics:
                        existing.search_topics.append(topic)

            if result.error is not None:
                if result.error.kind in _STOP_KINDS:
                    error = result.error
                    logger.warning(f"Topic search stopped at '{query}' ({result.error.kind.value})")
                    break
                logger.warning(f"Topic '{query}' failed: {result.error.detail}")
                failures.append(BatchFailure(key=query, error=result.error))
                continue
            completed.append(query)

        logger.info(f"Topic search: {len(by_id)} unique videos from {len(completed)} topics")
        return FetchResult(items=list(by_id.values()), error=error, failures=failures, completed=completed)
