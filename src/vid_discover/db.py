import sqlite3
from datetime import datetime, timedelta, timezone

from .config import default_db_path
from .errors import PersistenceError
from .models import (
    ApiCallRecord,
    CandidateItem,
    Suggestion,
    SuggestionAnalytics,
    SuggestionStatus,
    Topic,
    TrackedSource,
)
from .scoring import is_source_due


def _ts(value: datetime) -> str:
    """Timestamps are stored as UTC ISO strings so they compare correctly as text."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now() -> datetime:
    return datetime.now(timezone.utc)


_SUGGESTION_COLUMNS = """
    s.id, s.user_id, v.video_id, v.title, v.channel_name, s.reason, s.score,
    s.status, s.created_at, s.approved_at, s.denied_at
"""


class Database:
    """SQLite store for topics, tracked sources, videos, suggestions and the quota ledger."""

    def __init__(self, db_path: str | None = None, expiry_days: int = 30):
        if db_path is None:
            db_path = default_db_path()

        self.db_path = db_path
        self.expiry_days = expiry_days
        self._init_db()

    def _init_db(self):
        """Initialize database tables if they don't exist."""
        self.conn = sqlite3.connect(self.db_path)
        self.conn.execute("PRAGMA foreign_keys = ON")

        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS topics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE(user_id, name)
            )
        """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sources (
                source_id TEXT PRIMARY KEY,
                name TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL
            )
        """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS user_sources (
                user_id TEXT NOT NULL,
                source_id TEXT NOT NULL REFERENCES sources(source_id),
                rating INTEGER CHECK (rating BETWEEN 1 AND 5),
                last_checked TEXT,
                added_at TEXT NOT NULL,
                PRIMARY KEY (user_id, source_id)
            )
        """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS videos (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                video_id TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL,
                channel_id TEXT NOT NULL DEFAULT '',
                channel_name TEXT NOT NULL DEFAULT '',
                published_at TEXT NOT NULL,
                duration_seconds INTEGER NOT NULL DEFAULT 0,
                view_count INTEGER NOT NULL DEFAULT 0,
                like_count INTEGER NOT NULL DEFAULT 0,
                comment_count INTEGER NOT NULL DEFAULT 0,
                thumbnail_url TEXT NOT NULL DEFAULT '',
                description TEXT NOT NULL DEFAULT '',
                updated_at TEXT NOT NULL
            )
        """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS suggestions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                video_id INTEGER NOT NULL REFERENCES videos(id),
                reason TEXT NOT NULL CHECK (length(reason) <= 200),
                score REAL,
                status TEXT NOT NULL DEFAULT 'pending',
                is_deleted INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                approved_at TEXT,
                denied_at TEXT
            )
        """
        )
        # At most one live pending suggestion per (user, video)
        self.conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_suggestions_active
            ON suggestions (user_id, video_id)
            WHERE status = 'pending' AND is_deleted = 0
        """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS suggestion_topics (
                suggestion_id INTEGER NOT NULL REFERENCES suggestions(id),
                topic_id INTEGER NOT NULL REFERENCES topics(id),
                PRIMARY KEY (suggestion_id, topic_id)
            )
        """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS library (
                user_id TEXT NOT NULL,
                video_id INTEGER NOT NULL REFERENCES videos(id),
                added_at TEXT NOT NULL,
                PRIMARY KEY (user_id, video_id)
            )
        """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS quota_ledger (
                date TEXT PRIMARY KEY,
                used INTEGER NOT NULL DEFAULT 0,
                daily_limit INTEGER NOT NULL,
                reserved INTEGER NOT NULL DEFAULT 0,
                last_reset TEXT NOT NULL
            )
        """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS api_calls (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation TEXT NOT NULL,
                cost INTEGER NOT NULL,
                duration_ms REAL NOT NULL,
                success INTEGER NOT NULL,
                error TEXT,
                item_count INTEGER,
                created_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def _fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        self.conn.row_factory = sqlite3.Row
        cursor = self.conn.execute(sql, params)
        result = [dict(row) for row in cursor.fetchall()]
        self.conn.row_factory = None
        return result

    def _expiry_cutoff(self, now: datetime) -> str:
        return _ts(now - timedelta(days=self.expiry_days))

    # --- Topics ---

    def add_topic(self, user_id: str, name: str) -> Topic:
        """Add a topic of interest (returns the existing one if already present)."""
        name = name.strip()
        self.conn.execute(
            "INSERT OR IGNORE INTO topics (user_id, name, created_at) VALUES (?, ?, ?)",
            (user_id, name, _ts(_now())),
        )
        self.conn.commit()
        row = self.conn.execute(
            "SELECT id FROM topics WHERE user_id = ? AND name = ?", (user_id, name)
        ).fetchone()
        return Topic(id=row[0], name=name)

    def remove_topic(self, user_id: str, topic_id: int):
        self.conn.execute("DELETE FROM suggestion_topics WHERE topic_id = ?", (topic_id,))
        self.conn.execute("DELETE FROM topics WHERE id = ? AND user_id = ?", (topic_id, user_id))
        self.conn.commit()

    def get_user_topics(self, user_id: str) -> list[Topic]:
        rows = self._fetch_all(
            "SELECT id, name FROM topics WHERE user_id = ? ORDER BY id", (user_id,)
        )
        return [Topic(**row) for row in rows]

    # --- Sources ---

    def ensure_source_exists(self, source_id: str, name: str = "") -> str:
        """Idempotent upsert of a channel; keeps the latest non-empty name."""
        try:
            self.conn.execute(
                """
                INSERT INTO sources (source_id, name, created_at) VALUES (?, ?, ?)
                ON CONFLICT(source_id) DO UPDATE SET
                    name = CASE WHEN excluded.name != '' THEN excluded.name ELSE sources.name END
                """,
                (source_id, name, _ts(_now())),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceError(f"Could not save source {source_id}: {e}") from e
        return source_id

    def add_source(self, user_id: str, source_id: str, name: str = "") -> TrackedSource:
        """Start tracking a channel for a user."""
        self.ensure_source_exists(source_id, name)
        self.conn.execute(
            "INSERT OR IGNORE INTO user_sources (user_id, source_id, added_at) VALUES (?, ?, ?)",
            (user_id, source_id, _ts(_now())),
        )
        self.conn.commit()
        return next(s for s in self.get_user_sources(user_id) if s.source_id == source_id)

    def remove_source(self, user_id: str, source_id: str):
        self.conn.execute(
            "DELETE FROM user_sources WHERE user_id = ? AND source_id = ?", (user_id, source_id)
        )
        self.conn.commit()

    def rate_source(self, user_id: str, source_id: str, rating: int) -> int:
        """
        Set a star rating on a tracked channel.

        Rating a channel 1 star also withdraws that channel's pending
        suggestions; returns how many were withdrawn.
        """
        if not 1 <= rating <= 5:
            raise ValueError("rating must be between 1 and 5")
        self.conn.execute(
            "UPDATE user_sources SET rating = ? WHERE user_id = ? AND source_id = ?",
            (rating, user_id, source_id),
        )
        withdrawn = 0
        if rating == 1:
            cursor = self.conn.execute(
                """
                UPDATE suggestions SET is_deleted = 1
                WHERE user_id = ? AND status = 'pending' AND is_deleted = 0
                  AND video_id IN (SELECT id FROM videos WHERE channel_id = ?)
                """,
                (user_id, source_id),
            )
            withdrawn = cursor.rowcount
        self.conn.commit()
        return withdrawn

    def get_user_sources(self, user_id: str) -> list[TrackedSource]:
        rows = self._fetch_all(
            """
            SELECT us.source_id, s.name, us.rating, us.last_checked
            FROM user_sources us JOIN sources s ON s.source_id = us.source_id
            WHERE us.user_id = ?
            ORDER BY us.added_at
            """,
            (user_id,),
        )
        return [
            TrackedSource(
                source_id=row["source_id"],
                name=row["name"],
                rating=row["rating"],
                last_checked=_parse_ts(row["last_checked"]),
            )
            for row in rows
        ]

    def get_user_ratings(self, user_id: str) -> dict[str, int]:
        """channel id -> stars for every rated channel."""
        rows = self.conn.execute(
            "SELECT source_id, rating FROM user_sources WHERE user_id = ? AND rating IS NOT NULL",
            (user_id,),
        ).fetchall()
        return {row[0]: row[1] for row in rows}

    def get_sources_due_for_check(self, user_id: str, now: datetime | None = None) -> list[TrackedSource]:
        now = now or _now()
        return [
            source
            for source in self.get_user_sources(user_id)
            if is_source_due(source.rating, source.last_checked, now)
        ]

    def update_source_last_check(self, user_id: str, source_id: str, checked_at: datetime | None = None):
        try:
            self.conn.execute(
                "UPDATE user_sources SET last_checked = ? WHERE user_id = ? AND source_id = ?",
                (_ts(checked_at or _now()), user_id, source_id),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceError(f"Could not update last check for {source_id}: {e}") from e

    # --- Videos ---

    def ensure_video_exists(self, item: CandidateItem) -> int:
        """Idempotent upsert of a video; refreshes its stats and returns the row id."""
        now = _ts(_now())
        try:
            self.conn.execute(
                """
                INSERT INTO videos (
                    video_id, title, channel_id, channel_name, published_at, duration_seconds,
                    view_count, like_count, comment_count, thumbnail_url, description, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(video_id) DO UPDATE SET
                    title = excluded.title,
                    view_count = excluded.view_count,
                    like_count = excluded.like_count,
                    comment_count = excluded.comment_count,
                    duration_seconds = CASE WHEN excluded.duration_seconds > 0
                        THEN excluded.duration_seconds ELSE videos.duration_seconds END,
                    updated_at = excluded.updated_at
                """,
                (
                    item.video_id,
                    item.title,
                    item.channel_id,
                    item.channel_name,
                    _ts(item.published_at),
                    item.duration_seconds,
                    item.view_count,
                    item.like_count,
                    item.comment_count,
                    item.thumbnail_url,
                    item.description,
                    now,
                ),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceError(f"Could not save video {item.video_id}: {e}") from e

        row = self.conn.execute("SELECT id FROM videos WHERE video_id = ?", (item.video_id,)).fetchone()
        return row[0]

    def get_video_pk(self, video_id: str) -> int | None:
        row = self.conn.execute("SELECT id FROM videos WHERE video_id = ?", (video_id,)).fetchone()
        return row[0] if row else None

    # --- Suggestions ---

    def has_active_suggestion(self, user_id: str, video_id: str, now: datetime | None = None) -> bool:
        """Pending, not withdrawn and not past expiry, keyed by the YouTube video id."""
        try:
            cursor = self.conn.execute(
                """
                SELECT 1 FROM suggestions s JOIN videos v ON v.id = s.video_id
                WHERE s.user_id = ? AND v.video_id = ?
                  AND s.status = 'pending' AND s.is_deleted = 0 AND s.created_at > ?
                """,
                (user_id, video_id, self._expiry_cutoff(now or _now())),
            )
            return cursor.fetchone() is not None
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not check existing suggestions: {e}") from e

    def count_active_suggestions(self, user_id: str, now: datetime | None = None) -> int:
        try:
            row = self.conn.execute(
                """
                SELECT COUNT(*) FROM suggestions
                WHERE user_id = ? AND status = 'pending' AND is_deleted = 0 AND created_at > ?
                """,
                (user_id, self._expiry_cutoff(now or _now())),
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not count pending suggestions: {e}") from e
        return row[0]

    def insert_suggestion(
        self, user_id: str, video_pk: int, reason: str, score: float | None = None,
        now: datetime | None = None,
    ) -> Suggestion:
        return self.insert_suggestion_with_topics(user_id, video_pk, reason, [], score, now)

    def insert_suggestion_with_topics(
        self,
        user_id: str,
        video_pk: int,
        reason: str,
        topic_ids: list[int],
        score: float | None = None,
        now: datetime | None = None,
    ) -> Suggestion:
        """
        Insert a pending suggestion and its topic links in one transaction.

        A stale (expired) pending row for the same video is withdrawn
        first. If any statement fails nothing is written and
        PersistenceError is raised.
        """
        now = now or _now()
        try:
            with self.conn:
                self.conn.execute(
                    """
                    UPDATE suggestions SET is_deleted = 1
                    WHERE user_id = ? AND video_id = ? AND status = 'pending'
                      AND is_deleted = 0 AND created_at <= ?
                    """,
                    (user_id, video_pk, self._expiry_cutoff(now)),
                )
                cursor = self.conn.execute(
                    """
                    INSERT INTO suggestions (user_id, video_id, reason, score, status, created_at)
                    VALUES (?, ?, ?, ?, 'pending', ?)
                    """,
                    (user_id, video_pk, reason, score, _ts(now)),
                )
                suggestion_id = cursor.lastrowid
                self.conn.executemany(
                    "INSERT INTO suggestion_topics (suggestion_id, topic_id) VALUES (?, ?)",
                    [(suggestion_id, topic_id) for topic_id in dict.fromkeys(topic_ids)],
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not save suggestion for video {video_pk}: {e}") from e

        return self.get_suggestion(suggestion_id)

    def get_suggestion(self, suggestion_id: int, user_id: str | None = None) -> Suggestion | None:
        sql = f"""
            SELECT {_SUGGESTION_COLUMNS}
            FROM suggestions s JOIN videos v ON v.id = s.video_id
            WHERE s.id = ? AND s.is_deleted = 0
        """
        params: tuple = (suggestion_id,)
        if user_id is not None:
            sql += " AND s.user_id = ?"
            params += (user_id,)
        rows = self._fetch_all(sql, params)
        if not rows:
            return None
        return self._to_suggestion(rows[0])

    def list_suggestions(
        self,
        user_id: str,
        status: SuggestionStatus = SuggestionStatus.PENDING,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Suggestion]:
        """Suggestions in a given status, best score first."""
        rows = self._fetch_all(
            f"""
            SELECT {_SUGGESTION_COLUMNS}
            FROM suggestions s JOIN videos v ON v.id = s.video_id
            WHERE s.user_id = ? AND s.status = ? AND s.is_deleted = 0
            ORDER BY s.score DESC, s.created_at DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, status.value, limit, offset),
        )
        return [self._to_suggestion(row) for row in rows]

    def _to_suggestion(self, row: dict) -> Suggestion:
        topic_ids = [
            r[0]
            for r in self.conn.execute(
                "SELECT topic_id FROM suggestion_topics WHERE suggestion_id = ? ORDER BY topic_id",
                (row["id"],),
            ).fetchall()
        ]
        return Suggestion(
            id=row["id"],
            user_id=row["user_id"],
            video_id=row["video_id"],
            title=row["title"],
            channel_name=row["channel_name"],
            reason=row["reason"],
            score=row["score"],
            status=SuggestionStatus(row["status"]),
            created_at=_parse_ts(row["created_at"]),
            approved_at=_parse_ts(row["approved_at"]),
            denied_at=_parse_ts(row["denied_at"]),
            topic_ids=topic_ids,
        )

    def mark_approved(self, suggestion_id: int, when: datetime | None = None) -> int:
        """Approve a pending suggestion; returns 0 if it was already decided or withdrawn."""
        cursor = self.conn.execute(
            """
            UPDATE suggestions SET status = 'approved', approved_at = ?
            WHERE id = ? AND status = 'pending' AND is_deleted = 0
            """,
            (_ts(when or _now()), suggestion_id),
        )
        self.conn.commit()
        return cursor.rowcount

    def mark_denied(self, suggestion_id: int, when: datetime | None = None) -> int:
        """Deny a pending suggestion; returns 0 if it was already decided or withdrawn."""
        cursor = self.conn.execute(
            """
            UPDATE suggestions SET status = 'denied', denied_at = ?
            WHERE id = ? AND status = 'pending' AND is_deleted = 0
            """,
            (_ts(when or _now()), suggestion_id),
        )
        self.conn.commit()
        return cursor.rowcount

    def cleanup_expired_suggestions(self, now: datetime | None = None) -> int:
        """Withdraw pending suggestions past the expiry window; returns the count."""
        cursor = self.conn.execute(
            """
            UPDATE suggestions SET is_deleted = 1
            WHERE status = 'pending' AND is_deleted = 0 AND created_at <= ?
            """,
            (self._expiry_cutoff(now or _now()),),
        )
        self.conn.commit()
        return cursor.rowcount

    def suggestion_analytics(self, user_id: str, now: datetime | None = None) -> SuggestionAnalytics:
        cutoff = self._expiry_cutoff(now or _now())
        row = self.conn.execute(
            """
            SELECT
                COUNT(*),
                SUM(CASE WHEN status = 'pending' AND is_deleted = 0 AND created_at > ? THEN 1 ELSE 0 END),
                SUM(CASE WHEN status = 'approved' THEN 1 ELSE 0 END),
                SUM(CASE WHEN status = 'denied' THEN 1 ELSE 0 END),
                SUM(CASE WHEN status = 'pending' AND (is_deleted = 1 OR created_at <= ?) THEN 1 ELSE 0 END),
                MAX(created_at)
            FROM suggestions WHERE user_id = ?
            """,
            (cutoff, cutoff, user_id),
        ).fetchone()
        return SuggestionAnalytics(
            user_id=user_id,
            total=row[0],
            pending=row[1] or 0,
            approved=row[2] or 0,
            denied=row[3] or 0,
            expired=row[4] or 0,
            last_generated_at=_parse_ts(row[5]),
        )

    # --- Library ---

    def is_in_library(self, user_id: str, video_pk: int) -> bool:
        cursor = self.conn.execute(
            "SELECT 1 FROM library WHERE user_id = ? AND video_id = ?", (user_id, video_pk)
        )
        return cursor.fetchone() is not None

    def add_to_library(self, user_id: str, video_pk: int):
        """Add a video to the user's library (ignore if already present)."""
        try:
            self.conn.execute(
                "INSERT OR IGNORE INTO library (user_id, video_id, added_at) VALUES (?, ?, ?)",
                (user_id, video_pk, _ts(_now())),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceError(f"Could not add video {video_pk} to library: {e}") from e

    # --- Quota Ledger ---

    def get_quota_entry(self, date: str) -> dict | None:
        try:
            rows = self._fetch_all(
                "SELECT date, used, daily_limit, reserved, last_reset FROM quota_ledger WHERE date = ?",
                (date,),
            )
        except sqlite3.Error as e:
            self.conn.row_factory = None
            raise PersistenceError(f"Could not read quota ledger: {e}") from e
        if not rows:
            return None
        entry = rows[0]
        entry["last_reset"] = _parse_ts(entry["last_reset"])
        return entry

    def save_quota_entry(self, date: str, used: int, daily_limit: int, reserved: int, last_reset: datetime):
        try:
            self.conn.execute(
                """
                INSERT INTO quota_ledger (date, used, daily_limit, reserved, last_reset)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(date) DO UPDATE SET
                    used = excluded.used,
                    daily_limit = excluded.daily_limit,
                    reserved = excluded.reserved,
                    last_reset = excluded.last_reset
                """,
                (date, used, daily_limit, reserved, _ts(last_reset)),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceError(f"Could not save quota ledger: {e}") from e

    def append_api_call(self, record: ApiCallRecord):
        try:
            self.conn.execute(
                """
                INSERT INTO api_calls (operation, cost, duration_ms, success, error, item_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.operation,
                    record.cost,
                    record.duration_ms,
                    int(record.success),
                    record.error,
                    record.item_count,
                    _ts(record.timestamp),
                ),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceError(f"Could not append API call record: {e}") from e

    def get_api_calls(self, limit: int = 50) -> list[ApiCallRecord]:
        rows = self._fetch_all(
            """
            SELECT operation, cost, duration_ms, success, error, item_count, created_at
            FROM api_calls ORDER BY id DESC LIMIT ?
            """,
            (limit,),
        )
        return [
            ApiCallRecord(
                operation=row["operation"],
                cost=row["cost"],
                duration_ms=row["duration_ms"],
                success=bool(row["success"]),
                error=row["error"],
                item_count=row["item_count"],
                timestamp=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]
