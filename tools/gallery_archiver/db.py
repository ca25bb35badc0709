"""Database operations – the persistent record of submissions and their status."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator, Mapping

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from .config import DatabaseConfig
from .errors import ValidationError
from .models import (
    THUMBNAIL_CATEGORIES,
    Comment,
    ContentStatus,
    Submission,
    ThumbnailStatus,
)

logger = logging.getLogger("archiver.db")

_CONTENT_STATES = ", ".join(f"'{s.value}'" for s in ContentStatus)
_THUMBNAIL_STATES = ", ".join(f"'{s.value}'" for s in ThumbnailStatus)

SCHEMA: tuple[str, ...] = (
    f"""CREATE TABLE IF NOT EXISTS submissions (
           url              TEXT PRIMARY KEY,
           id               TEXT UNIQUE,
           title            TEXT,
           description      TEXT,
           tags             TEXT,
           username         TEXT,
           account_name     TEXT,
           content_url      TEXT,
           content_name     TEXT,
           thumbnail_url    TEXT,
           thumbnail_name   TEXT,
           date_uploaded    TEXT,
           rating           TEXT,
           category         TEXT,
           is_scrap         BOOLEAN NOT NULL DEFAULT FALSE,
           content_status   TEXT NOT NULL DEFAULT 'discovered'
                            CHECK (content_status IN ({_CONTENT_STATES})),
           thumbnail_status TEXT NOT NULL DEFAULT 'pending'
                            CHECK (thumbnail_status IN ({_THUMBNAIL_STATES})),
           created_at       TIMESTAMPTZ NOT NULL DEFAULT NOW(),
           updated_at       TIMESTAMPTZ NOT NULL DEFAULT NOW()
       )""",
    """CREATE TABLE IF NOT EXISTS comments (
           id            TEXT PRIMARY KEY,
           submission_id TEXT REFERENCES submissions (id) ON DELETE CASCADE,
           username      TEXT,
           account_name  TEXT,
           width         TEXT,
           description   TEXT,
           subtitle      TEXT,
           date          TEXT
       )""",
    """CREATE TABLE IF NOT EXISTS favorites (
           username TEXT NOT NULL,
           url      TEXT NOT NULL REFERENCES submissions (url) ON DELETE CASCADE,
           PRIMARY KEY (username, url)
       )""",
    """CREATE TABLE IF NOT EXISTS owned_accounts (
           username TEXT PRIMARY KEY
       )""",
    """CREATE TABLE IF NOT EXISTS settings (
           id                 INTEGER PRIMARY KEY CHECK (id = 1),
           scrape_in_progress BOOLEAN NOT NULL DEFAULT FALSE,
           last_run_at        TIMESTAMPTZ
       )""",
    "INSERT INTO settings (id) VALUES (1) ON CONFLICT (id) DO NOTHING",
    "CREATE INDEX IF NOT EXISTS submissions_content_status_idx ON submissions (content_status, content_name)",
    "CREATE INDEX IF NOT EXISTS comments_submission_idx ON comments (submission_id)",
)

# Columns added after the first schema version; created on startup if absent.
LATER_COLUMNS: tuple[tuple[str, str], ...] = (
    ("is_favorite", "BOOLEAN NOT NULL DEFAULT FALSE"),
    ("favorite_username", "TEXT"),
)

# The only submission columns update_metadata may write, with their types.
METADATA_COLUMNS: dict[str, type] = {
    "id": str,
    "title": str,
    "description": str,
    "tags": str,
    "username": str,
    "account_name": str,
    "content_url": str,
    "content_name": str,
    "thumbnail_url": str,
    "date_uploaded": str,
    "rating": str,
    "category": str,
    "is_favorite": bool,
    "favorite_username": str,
}

SETTINGS_COLUMNS: dict[str, type] = {
    "scrape_in_progress": bool,
    "last_run_at": datetime,
}


def _validate_fields(fields: Mapping[str, Any], allowed: Mapping[str, type]) -> dict[str, Any]:
    """Drop None values; reject unknown names and wrongly typed values."""
    if not isinstance(fields, Mapping):
        raise ValidationError(f"Expected a mapping of fields, got {type(fields).__name__}")
    clean: dict[str, Any] = {}
    for name, value in fields.items():
        if name not in allowed:
            raise ValidationError(f"Column {name!r} cannot be updated")
        if value is None:
            continue
        expected = allowed[name]
        # bool is an int subclass; keep the two apart
        if not isinstance(value, expected) or (expected is not bool and isinstance(value, bool)):
            raise ValidationError(
                f"Column {name!r} expects {expected.__name__}, got {type(value).__name__}"
            )
        clean[name] = value
    return clean


def _require_str(value: object, what: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Invalid {what}: {value!r}")
    return value


class Database:
    """Postgres interface for the archiver.

    One connection is shared by all pipeline threads.  Every public method
    holds the lock for a single transaction only: it commits on success and
    rolls back and re-raises on failure.
    """

    def __init__(self, cfg: DatabaseConfig | None = None) -> None:
        self.cfg = cfg or DatabaseConfig.from_env()
        self._conn: psycopg.Connection | None = None
        self._lock = threading.RLock()

    @property
    def conn(self) -> psycopg.Connection:
        if self._conn is None or self._conn.closed:
            self._conn = psycopg.connect(self.cfg.dsn, row_factory=dict_row, autocommit=False)
        return self._conn

    @contextmanager
    def _tx(self) -> Iterator[psycopg.Connection]:
        with self._lock:
            conn = self.conn
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    # ── schema ───────────────────────────────────────────────────

    def init_schema(self) -> None:
        """Create missing tables and columns.  Never drops or rewrites data."""
        with self._tx() as conn:
            for stmt in SCHEMA:
                conn.execute(stmt)
            for name, definition in LATER_COLUMNS:
                conn.execute(
                    sql.SQL("ALTER TABLE submissions ADD COLUMN IF NOT EXISTS {} {}").format(
                        sql.Identifier(name), sql.SQL(definition)
                    )
                )
        logger.info("Database schema ready")

    # ── discovery ────────────────────────────────────────────────

    def insert_links(self, urls: Iterable[str], is_scrap: bool, username: str) -> int:
        """Create url-only rows.  Known urls are left untouched.  Returns rows inserted."""
        _require_str(username, "username")
        batch = list(dict.fromkeys(urls))
        for url in batch:
            _require_str(url, "submission url")
        if not batch:
            return 0
        with self._tx() as conn:
            cur = conn.execute(
                """INSERT INTO submissions (url, username, is_scrap)
                   SELECT u, %s, %s FROM unnest(%s::text[]) AS u
                   ON CONFLICT (url) DO NOTHING""",
                (username, bool(is_scrap), batch),
            )
            inserted = cur.rowcount
        logger.debug("Inserted %d/%d links for %s", inserted, len(batch), username)
        return inserted

    def known_urls(self, urls: Iterable[str]) -> set[str]:
        batch = list(urls)
        if not batch:
            return set()
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT url FROM submissions WHERE url = ANY(%s)", (batch,)
            ).fetchall()
        return {r["url"] for r in rows}

    def delete_submission(self, url: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM submissions WHERE url = %s", (url,))
        return cur.rowcount > 0

    # ── metadata ─────────────────────────────────────────────────

    def update_metadata(self, url: str, fields: Mapping[str, Any]) -> bool:
        """Write harvested fields for ``url``.

        Only names in METADATA_COLUMNS are accepted; anything else raises
        ValidationError before the database is touched.  An existing ``id``
        is never replaced, and the first ``id`` moves the row from
        ``discovered`` to ``pending``.
        """
        _require_str(url, "submission url")
        clean = _validate_fields(fields, METADATA_COLUMNS)
        if not clean:
            logger.warning("No metadata to update for %s", url)
            return False

        assignments: list[sql.Composable] = []
        params: list[Any] = []
        for name, value in clean.items():
            if name == "id":
                assignments.append(sql.SQL("id = COALESCE(id, %s)"))
            else:
                assignments.append(sql.SQL("{} = %s").format(sql.Identifier(name)))
            params.append(value)
        if "id" in clean:
            assignments.append(
                sql.SQL(
                    "content_status = CASE WHEN content_status = 'discovered' "
                    "THEN 'pending' ELSE content_status END"
                )
            )
        assignments.append(sql.SQL("updated_at = NOW()"))
        query = sql.SQL("UPDATE submissions SET {} WHERE url = %s").format(
            sql.SQL(", ").join(assignments)
        )
        params.append(url)
        with self._tx() as conn:
            cur = conn.execute(query, params)
        return cur.rowcount > 0

    def save_comments(self, comments: Iterable[Comment]) -> int:
        rows = [
            (c.id, c.submission_id, c.username, c.account_name, c.width, c.description, c.subtitle, c.date)
            for c in comments
        ]
        if not rows:
            return 0
        with self._tx() as conn:
            with conn.cursor() as cur:
                cur.executemany(
                    """INSERT INTO comments (id, submission_id, username, account_name,
                                             width, description, subtitle, date)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                       ON CONFLICT (id) DO UPDATE SET
                           description = EXCLUDED.description,
                           date        = EXCLUDED.date""",
                    rows,
                )
        return len(rows)

    def get_comments(self, submission_id: str) -> list[Comment]:
        with self._tx() as conn:
            rows = conn.execute(
                """SELECT id, submission_id, username, account_name, width, description, subtitle, date
                   FROM comments WHERE submission_id = %s AND description IS NOT NULL
                   ORDER BY id""",
                (submission_id,),
            ).fetchall()
        return [Comment(**r) for r in rows]

    # ── favorites ────────────────────────────────────────────────

    def save_favorites(self, username: str, urls: Iterable[Any]) -> int:
        """Record ``username``'s favorites and flag the submissions, atomically.

        Malformed urls are skipped up front; urls with no submission row are
        skipped by the insert.  Returns the number of new favorite relations.
        """
        _require_str(username, "username")
        given = list(urls)
        valid = list(dict.fromkeys(u for u in given if isinstance(u, str) and u.strip()))
        if len(valid) < len(given):
            logger.warning("Skipping %d invalid favorite urls for %s", len(given) - len(valid), username)
        if not valid:
            return 0
        with self._tx() as conn:
            cur = conn.execute(
                """INSERT INTO favorites (username, url)
                   SELECT %s, url FROM submissions WHERE url = ANY(%s)
                   ON CONFLICT (username, url) DO NOTHING""",
                (username, valid),
            )
            added = cur.rowcount
            conn.execute(
                """UPDATE submissions
                   SET is_favorite = TRUE, favorite_username = %s, updated_at = NOW()
                   WHERE url = ANY(%s)""",
                (username, valid),
            )
        logger.info("Saved %d favorites for %s", added, username)
        return added

    def favorite_usernames(self) -> list[str]:
        with self._tx() as conn:
            rows = conn.execute("SELECT DISTINCT username FROM favorites ORDER BY username").fetchall()
        return [r["username"] for r in rows]

    # ── status transitions ───────────────────────────────────────

    def _transition(
        self,
        url: str,
        column: str,
        to: ContentStatus | ThumbnailStatus,
        allowed_from: Iterable[ContentStatus | ThumbnailStatus],
        extra: Mapping[str, Any] | None = None,
    ) -> bool:
        sets = [sql.SQL("{} = %s").format(sql.Identifier(column))]
        params: list[Any] = [to.value]
        for name, value in (extra or {}).items():
            sets.append(sql.SQL("{} = %s").format(sql.Identifier(name)))
            params.append(value)
        sets.append(sql.SQL("updated_at = NOW()"))
        query = sql.SQL("UPDATE submissions SET {} WHERE url = %s AND {} = ANY(%s)").format(
            sql.SQL(", ").join(sets), sql.Identifier(column)
        )
        params += [url, [s.value for s in allowed_from]]
        with self._tx() as conn:
            cur = conn.execute(query, params)
        if cur.rowcount == 0:
            logger.debug("No %s transition to %s for %s", column, to.value, url)
        return cur.rowcount > 0

    def mark_content_saved(self, url: str) -> bool:
        return self._transition(url, "content_status", ContentStatus.SAVED, [ContentStatus.PENDING])

    def mark_content_missing(self, url: str) -> bool:
        return self._transition(url, "content_status", ContentStatus.MISSING, [ContentStatus.PENDING])

    def mark_content_moved(self, url: str) -> bool:
        return self._transition(url, "content_status", ContentStatus.MOVED, [ContentStatus.SAVED])

    def reset_content(self, url: str) -> bool:
        """Back to pending after the file was purged as invalid."""
        return self._transition(
            url, "content_status", ContentStatus.PENDING, [ContentStatus.SAVED, ContentStatus.MOVED]
        )

    def mark_thumbnail_saved(self, url: str, thumbnail_url: str, thumbnail_name: str) -> bool:
        return self._transition(
            url,
            "thumbnail_status",
            ThumbnailStatus.SAVED,
            [ThumbnailStatus.PENDING],
            extra={"thumbnail_url": thumbnail_url, "thumbnail_name": thumbnail_name},
        )

    def mark_thumbnail_missing(self, url: str) -> bool:
        return self._transition(url, "thumbnail_status", ThumbnailStatus.MISSING, [ThumbnailStatus.PENDING])

    # ── queries ──────────────────────────────────────────────────

    def _submissions(self, query: str, params: Iterable[Any] = ()) -> list[Submission]:
        with self._tx() as conn:
            rows = conn.execute(query, list(params)).fetchall()
        return [Submission.from_row(r) for r in rows]

    def get_submission(self, url: str) -> Submission | None:
        found = self._submissions("SELECT * FROM submissions WHERE url = %s", [url])
        return found[0] if found else None

    def query_unharvested(self) -> list[str]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT url FROM submissions WHERE id IS NULL ORDER BY url DESC"
            ).fetchall()
        return [r["url"] for r in rows]

    def query_unsaved_content(self, name: str | None = None) -> list[Submission]:
        """Pending content with a usable file name, newest name first."""
        params: list[Any] = [ContentStatus.PENDING.value, "%."]
        owner_filter = "AND username IS NOT NULL"
        if name:
            owner_filter = "AND (username ILIKE %s OR account_name ILIKE %s)"
            params += [f"%{name}%", f"%{name}%"]
        return self._submissions(
            f"""SELECT * FROM submissions
                WHERE content_status = %s
                  AND content_url IS NOT NULL
                  AND content_name IS NOT NULL AND content_name <> ''
                  AND content_name NOT LIKE %s
                  {owner_filter}
                ORDER BY content_name DESC, url""",
            params,
        )

    def query_unsaved_thumbnails(self) -> list[Submission]:
        return self._submissions(
            """SELECT * FROM submissions
               WHERE thumbnail_status = %s
                 AND content_status <> %s
                 AND username IS NOT NULL
                 AND content_url LIKE ANY(%s)
               ORDER BY content_name DESC, url""",
            [
                ThumbnailStatus.PENDING.value,
                ContentStatus.DISCOVERED.value,
                [f"%{c}%" for c in THUMBNAIL_CATEGORIES],
            ],
        )

    def query_unmoved_content(self) -> list[Submission]:
        return self._submissions(
            "SELECT * FROM submissions WHERE content_status = %s ORDER BY content_name, url",
            [ContentStatus.SAVED.value],
        )

    def query_invalid_files(self) -> list[Submission]:
        """Saved rows whose recorded file name is unusable."""
        return self._submissions(
            """SELECT * FROM submissions
               WHERE content_status = ANY(%s)
                 AND (content_name IS NULL OR content_name = '' OR content_name LIKE %s)
               ORDER BY url""",
            [[ContentStatus.SAVED.value, ContentStatus.MOVED.value], "%."],
        )

    def query_needs_repair(self, username: str | None = None) -> list[str]:
        """Harvested rows with incomplete or relative-dated metadata."""
        params: list[Any] = []
        user_filter = ""
        if username:
            user_filter = "AND (username = %s OR account_name = %s)"
            params += [username, username]
        params += ["%ago%", "%.", "%ago%"]
        with self._tx() as conn:
            rows = conn.execute(
                f"""SELECT url FROM submissions
                    WHERE id IS NOT NULL
                    {user_filter}
                    AND (
                        username IS NULL
                        OR rating IS NULL
                        OR category IS NULL
                        OR date_uploaded LIKE %s
                        OR content_name LIKE %s
                        OR id IN (SELECT submission_id FROM comments WHERE date LIKE %s)
                    )
                    ORDER BY url DESC""",
                params,
            ).fetchall()
        return [r["url"] for r in rows]

    def status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._tx() as conn:
            for column in ("content_status", "thumbnail_status"):
                rows = conn.execute(
                    sql.SQL("SELECT {col} AS status, COUNT(*) AS n FROM submissions GROUP BY {col}").format(
                        col=sql.Identifier(column)
                    )
                ).fetchall()
                prefix = column.split("_")[0]
                for r in rows:
                    counts[f"{prefix} {r['status']}"] = r["n"]
        return counts

    # ── accounts & settings ──────────────────────────────────────

    def add_owned_account(self, username: str) -> None:
        _require_str(username, "username")
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO owned_accounts (username) VALUES (%s) ON CONFLICT DO NOTHING", (username,)
            )

    def remove_owned_account(self, username: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM owned_accounts WHERE username = %s", (username,))
        return cur.rowcount > 0

    def owned_accounts(self) -> list[str]:
        with self._tx() as conn:
            rows = conn.execute("SELECT username FROM owned_accounts ORDER BY username").fetchall()
        return [r["username"] for r in rows]

    def delete_account(self, name: str) -> int:
        """Forget everything archived for ``name``.  Files on disk are kept."""
        _require_str(name, "username")
        with self._tx() as conn:
            cur = conn.execute(
                "DELETE FROM submissions WHERE account_name = %s OR username = %s", (name, name)
            )
            conn.execute("DELETE FROM favorites WHERE username = %s", (name,))
        logger.info("Deleted %d submissions for %s", cur.rowcount, name)
        return cur.rowcount

    def get_settings(self) -> dict[str, Any]:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM settings WHERE id = 1").fetchone()
        return dict(row) if row else {}

    def update_settings(self, **fields: Any) -> None:
        clean = _validate_fields(fields, SETTINGS_COLUMNS)
        if not clean:
            return
        query = sql.SQL("UPDATE settings SET {} WHERE id = 1").format(
            sql.SQL(", ").join(sql.SQL("{} = %s").format(sql.Identifier(k)) for k in clean)
        )
        with self._tx() as conn:
            conn.execute(query, list(clean.values()))

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        if self._conn and not self._conn.closed:
            self._conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
