"""SQLite-backed item store.

Holds feeds, items (pipeline state + artifact locations + failures), summaries,
status history and per-feed run locks. Every public method opens its own connection
and runs in a single transaction, so each call is atomic and the store can be shared
by several processes.

Status changes are compare-and-set updates (`WHERE status = ?`): a transition from a
status the item is not in raises `DataIntegrityError` instead of overwriting.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from podsum.errors import DataIntegrityError, ErrorCategory, FeedBusyError, NotFoundError, StoreError
from podsum.models import (
    Failure,
    Feed,
    FeedEntry,
    FeedInfo,
    Item,
    ItemEvent,
    ItemStatus,
    Stage,
    StructuredSummary,
    Summary,
    SummaryDraft,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS feeds (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    website_url TEXT,
    description TEXT,
    added_at TEXT NOT NULL,
    last_checked TEXT,
    unsubscribed_at TEXT
);

CREATE TABLE IF NOT EXISTS items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    feed_id INTEGER NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    guid TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    source_url TEXT NOT NULL,
    published_at TEXT,
    duration_secs INTEGER,
    discovered_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'new',
    acquired_path TEXT,
    derived_path TEXT,
    failure_stage TEXT,
    failure_category TEXT,
    failure_kind TEXT,
    failure_message TEXT,
    acquired_at TEXT,
    derived_at TEXT,
    summarized_at TEXT,
    unpublished_at TEXT,
    UNIQUE(feed_id, guid)
);

CREATE TABLE IF NOT EXISTS summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id INTEGER NOT NULL REFERENCES items(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    structured_json TEXT NOT NULL,
    model TEXT NOT NULL,
    prompt_tokens INTEGER,
    output_tokens INTEGER,
    windows INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS item_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id INTEGER NOT NULL REFERENCES items(id) ON DELETE CASCADE,
    from_status TEXT,
    to_status TEXT NOT NULL,
    at TEXT NOT NULL,
    note TEXT
);

CREATE TABLE IF NOT EXISTS feed_locks (
    feed_id INTEGER PRIMARY KEY REFERENCES feeds(id) ON DELETE CASCADE,
    run_id TEXT NOT NULL,
    acquired_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_items_feed ON items(feed_id);
CREATE INDEX IF NOT EXISTS idx_items_status ON items(status);
CREATE INDEX IF NOT EXISTS idx_summaries_item ON summaries(item_id);
CREATE INDEX IF NOT EXISTS idx_item_events_item ON item_events(item_id);
"""

# Columns cleared when an item is reset to the given status.
_RESET_CLEARS: dict[ItemStatus, tuple[str, ...]] = {
    ItemStatus.NEW: ("acquired_path", "acquired_at", "derived_path", "derived_at", "summarized_at"),
    ItemStatus.ACQUIRED: ("derived_path", "derived_at", "summarized_at"),
    ItemStatus.DERIVED: ("summarized_at",),
}

_FAILURE_COLUMNS = ("failure_stage", "failure_category", "failure_kind", "failure_message")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _dt(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def _row_to_feed(row: sqlite3.Row) -> Feed:
    return Feed(
        id=row["id"],
        url=row["url"],
        title=row["title"],
        added_at=_dt(row["added_at"]),  # type: ignore[arg-type]
        website_url=row["website_url"],
        description=row["description"],
        last_checked=_dt(row["last_checked"]),
        unsubscribed_at=_dt(row["unsubscribed_at"]),
    )


def _row_to_item(row: sqlite3.Row) -> Item:
    failure = None
    if row["failure_stage"]:
        failure = Failure(
            stage=Stage(row["failure_stage"]),
            category=ErrorCategory(row["failure_category"]),
            kind=row["failure_kind"] or "unexpected",
            message=row["failure_message"] or "",
        )
    return Item(
        id=row["id"],
        feed_id=row["feed_id"],
        guid=row["guid"],
        title=row["title"],
        source_url=row["source_url"],
        status=ItemStatus(row["status"]),
        discovered_at=_dt(row["discovered_at"]),  # type: ignore[arg-type]
        description=row["description"],
        published_at=_dt(row["published_at"]),
        duration_secs=row["duration_secs"],
        acquired_path=row["acquired_path"],
        derived_path=row["derived_path"],
        failure=failure,
        acquired_at=_dt(row["acquired_at"]),
        derived_at=_dt(row["derived_at"]),
        summarized_at=_dt(row["summarized_at"]),
        unpublished_at=_dt(row["unpublished_at"]),
    )


def _row_to_summary(row: sqlite3.Row) -> Summary:
    return Summary(
        id=row["id"],
        item_id=row["item_id"],
        content=row["content"],
        structured=StructuredSummary.model_validate_json(row["structured_json"]),
        model=row["model"],
        created_at=_dt(row["created_at"]),  # type: ignore[arg-type]
        prompt_tokens=row["prompt_tokens"],
        output_tokens=row["output_tokens"],
        windows=row["windows"],
    )


class ItemStore:
    """Durable pipeline state for feeds and their items."""

    def __init__(self, db_path: str | Path, *, timeout: float = 30.0) -> None:
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.init_database()

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, roll back on error.

        sqlite errors surface as `StoreError` (run-fatal); domain errors raised
        inside the block propagate unchanged after the rollback.
        """
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.timeout, check_same_thread=False)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open item store at {self.db_path}: {e}") from e
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON;")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Item store operation failed: {e}") from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_database(self) -> None:
        with self.get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.executescript(SCHEMA)

    # ------------------------------------------------------------------
    # Feeds
    # ------------------------------------------------------------------

    def subscribe(self, url: str, info: FeedInfo) -> tuple[Feed, int]:
        """Create (or reactivate) a feed and record its current entries.

        Returns the feed and the number of items inserted.
        """
        now = _ts(_now())
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM feeds WHERE url = ?", (url,)).fetchone()
            if row is None:
                cur = conn.execute(
                    """
                    INSERT INTO feeds (url, title, website_url, description, added_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (url, info.title, info.website_url, info.description, now),
                )
                feed_id = int(cur.lastrowid)
            else:
                feed_id = row["id"]
                conn.execute(
                    """
                    UPDATE feeds
                    SET unsubscribed_at = NULL, title = ?, website_url = ?, description = ?
                    WHERE id = ?
                    """,
                    (info.title, info.website_url, info.description, feed_id),
                )
            inserted = 0
            seen: set[str] = set()
            for entry in info.entries:
                if entry.guid in seen:
                    continue
                seen.add(entry.guid)
                _, created = self._insert_item(conn, feed_id, entry)
                inserted += int(created)
            feed = _row_to_feed(conn.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,)).fetchone())
        logger.info(f"Subscribed to {feed.title!r} ({inserted} new item(s))")
        return feed, inserted

    def get_feed(self, feed_id: int) -> Feed:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Feed {feed_id} not found")
        return _row_to_feed(row)

    def find_feed_by_url(self, url: str) -> Optional[Feed]:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM feeds WHERE url = ?", (url,)).fetchone()
        return _row_to_feed(row) if row else None

    def find_feed(self, name: str) -> Optional[Feed]:
        """Look a feed up by numeric id, exact title or title fragment (case-insensitive)."""
        name = name.strip()
        with self.get_connection() as conn:
            if name.isdigit():
                row = conn.execute("SELECT * FROM feeds WHERE id = ?", (int(name),)).fetchone()
                if row is not None:
                    return _row_to_feed(row)
            row = conn.execute(
                "SELECT * FROM feeds WHERE LOWER(title) = LOWER(?) ORDER BY id LIMIT 1", (name,)
            ).fetchone()
            if row is None:
                row = conn.execute(
                    "SELECT * FROM feeds WHERE LOWER(title) LIKE LOWER(?) ORDER BY id LIMIT 1",
                    (f"%{name}%",),
                ).fetchone()
        return _row_to_feed(row) if row else None

    def list_feeds(self, *, include_unsubscribed: bool = False) -> list[Feed]:
        query = "SELECT * FROM feeds"
        if not include_unsubscribed:
            query += " WHERE unsubscribed_at IS NULL"
        query += " ORDER BY title COLLATE NOCASE, id"
        with self.get_connection() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_feed(r) for r in rows]

    def touch_feed(self, feed_id: int, info: Optional[FeedInfo] = None) -> None:
        """Record a successful check; refresh title/website/description when given."""
        with self.get_connection() as conn:
            if info is None:
                conn.execute("UPDATE feeds SET last_checked = ? WHERE id = ?", (_ts(_now()), feed_id))
            else:
                conn.execute(
                    """
                    UPDATE feeds
                    SET last_checked = ?, title = ?,
                        website_url = COALESCE(?, website_url),
                        description = COALESCE(?, description)
                    WHERE id = ?
                    """,
                    (_ts(_now()), info.title, info.website_url, info.description, feed_id),
                )

    def unsubscribe(self, feed_id: int, *, purge: bool = False, lock_ttl_seconds: int | None = None) -> list[Path]:
        """Detach a feed, or delete it with all its items when `purge` is set.

        Returns the artifact paths referenced by the purged items so the caller can
        delete the files; a soft detach keeps everything and returns [].

        Raises `FeedBusyError` while a run holds the feed lock. With `lock_ttl_seconds`
        a lock older than the TTL is treated as abandoned, as in `acquire_lock`.
        """
        with self.get_connection() as conn:
            row = conn.execute("SELECT id, title FROM feeds WHERE id = ?", (feed_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Feed {feed_id} not found")
            lock = conn.execute(
                "SELECT run_id, acquired_at FROM feed_locks WHERE feed_id = ?", (feed_id,)
            ).fetchone()
            if lock is not None and self._lock_is_live(lock, lock_ttl_seconds):
                raise FeedBusyError(f"Feed '{row['title']}' is being processed by run {lock['run_id']}")
            if not purge:
                conn.execute(
                    "UPDATE feeds SET unsubscribed_at = COALESCE(unsubscribed_at, ?) WHERE id = ?",
                    (_ts(_now()), feed_id),
                )
                conn.execute("DELETE FROM feed_locks WHERE feed_id = ?", (feed_id,))
                return []
            rows = conn.execute(
                "SELECT acquired_path, derived_path FROM items WHERE feed_id = ?", (feed_id,)
            ).fetchall()
            conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
        paths: list[Path] = []
        for r in rows:
            paths.extend(Path(p) for p in (r["acquired_path"], r["derived_path"]) if p)
        return paths

    def count_items(self, feed_id: int) -> dict[ItemStatus, int]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM items WHERE feed_id = ? GROUP BY status", (feed_id,)
            ).fetchall()
        return {ItemStatus(r["status"]): r["n"] for r in rows}

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def _insert_item(self, conn: sqlite3.Connection, feed_id: int, entry: FeedEntry) -> tuple[Item, bool]:
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO items
                (feed_id, guid, title, description, source_url, published_at, duration_secs,
                 discovered_at, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                feed_id,
                entry.guid,
                entry.title,
                entry.description,
                entry.source_url,
                _ts(entry.published_at),
                entry.duration_secs,
                _ts(_now()),
                ItemStatus.NEW.value,
            ),
        )
        created = cur.rowcount == 1
        row = conn.execute(
            "SELECT * FROM items WHERE feed_id = ? AND guid = ?", (feed_id, entry.guid)
        ).fetchone()
        if created:
            self._record_event(conn, row["id"], None, ItemStatus.NEW, "discovered")
        return _row_to_item(row), created

    def upsert_item(self, feed_id: int, entry: FeedEntry) -> tuple[Item, bool]:
        """Insert an item at `new`; a known (feed, guid) is a no-op returning the stored item."""
        with self.get_connection() as conn:
            return self._insert_item(conn, feed_id, entry)

    def get_item(self, feed_id: int, guid: str) -> Optional[Item]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM items WHERE feed_id = ? AND guid = ?", (feed_id, guid)
            ).fetchone()
        return _row_to_item(row) if row else None

    def get_item_by_id(self, item_id: int) -> Item:
        with self.get_connection() as conn:
            row = conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Item {item_id} not found")
        return _row_to_item(row)

    def known_items(self, feed_id: int) -> dict[str, Item]:
        """All items of a feed keyed by guid."""
        return {item.guid: item for item in self.list_items(feed_id=feed_id)}

    def list_items(
        self,
        *,
        feed_id: Optional[int] = None,
        item_id: Optional[int] = None,
        statuses: Optional[Iterable[ItemStatus]] = None,
        active_feeds_only: bool = False,
        limit: Optional[int] = None,
    ) -> list[Item]:
        """Items matching every given filter, newest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if feed_id is not None:
            clauses.append("items.feed_id = ?")
            params.append(feed_id)
        if item_id is not None:
            clauses.append("items.id = ?")
            params.append(item_id)
        if statuses is not None:
            values = [ItemStatus(s).value for s in statuses]
            if not values:
                return []
            clauses.append(f"items.status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        if active_feeds_only:
            clauses.append("feeds.unsubscribed_at IS NULL")

        query = "SELECT items.* FROM items JOIN feeds ON feeds.id = items.feed_id"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY COALESCE(items.published_at, items.discovered_at) DESC, items.id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self.get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_item(r) for r in rows]

    def update_locator(self, item_id: int, source_url: str) -> None:
        """Point an item at a rotated enclosure URL (identity is unchanged)."""
        with self.get_connection() as conn:
            cur = conn.execute("UPDATE items SET source_url = ? WHERE id = ?", (source_url, item_id))
            if cur.rowcount == 0:
                raise NotFoundError(f"Item {item_id} not found")

    def set_unpublished(self, item_id: int, unpublished: bool) -> None:
        """Annotate (or clear) that the item no longer appears in its feed."""
        with self.get_connection() as conn:
            if unpublished:
                conn.execute(
                    "UPDATE items SET unpublished_at = COALESCE(unpublished_at, ?) WHERE id = ?",
                    (_ts(_now()), item_id),
                )
            else:
                conn.execute("UPDATE items SET unpublished_at = NULL WHERE id = ?", (item_id,))

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def _record_event(
        self,
        conn: sqlite3.Connection,
        item_id: int,
        from_status: Optional[ItemStatus],
        to_status: ItemStatus,
        note: Optional[str] = None,
    ) -> None:
        conn.execute(
            "INSERT INTO item_events (item_id, from_status, to_status, at, note) VALUES (?, ?, ?, ?, ?)",
            (item_id, from_status.value if from_status else None, to_status.value, _ts(_now()), note),
        )

    def _transition(
        self,
        conn: sqlite3.Connection,
        item_id: int,
        expected: ItemStatus,
        target: ItemStatus,
        sets: dict[str, Any],
        note: Optional[str] = None,
    ) -> None:
        assignments = ["status = ?"] + [f"{col} = ?" for col in sets]
        params = [target.value, *sets.values(), item_id, expected.value]
        cur = conn.execute(
            f"UPDATE items SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            params,
        )
        if cur.rowcount == 0:
            row = conn.execute("SELECT status FROM items WHERE id = ?", (item_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Item {item_id} not found")
            raise DataIntegrityError(
                f"Item {item_id}: cannot move {row['status']} -> {target.value} (expected {expected.value})"
            )
        self._record_event(conn, item_id, expected, target, note)

    def mark_acquired(self, item_id: int, path: str | Path) -> None:
        if not str(path):
            raise DataIntegrityError(f"Item {item_id}: acquired path must be non-empty")
        with self.get_connection() as conn:
            self._transition(
                conn,
                item_id,
                ItemStatus.NEW,
                ItemStatus.ACQUIRED,
                {"acquired_path": str(path), "acquired_at": _ts(_now())},
            )

    def mark_derived(self, item_id: int, path: str | Path) -> None:
        if not str(path):
            raise DataIntegrityError(f"Item {item_id}: derived path must be non-empty")
        with self.get_connection() as conn:
            self._transition(
                conn,
                item_id,
                ItemStatus.ACQUIRED,
                ItemStatus.DERIVED,
                {"derived_path": str(path), "derived_at": _ts(_now())},
            )

    def put_summary(self, item_id: int, draft: SummaryDraft) -> Summary:
        """Store a new summary and move the item to `summarized` in one transaction."""
        now = _ts(_now())
        with self.get_connection() as conn:
            self._transition(
                conn,
                item_id,
                ItemStatus.DERIVED,
                ItemStatus.SUMMARIZED,
                {"summarized_at": now},
                note=draft.model,
            )
            cur = conn.execute(
                """
                INSERT INTO summaries
                    (item_id, content, structured_json, model, prompt_tokens, output_tokens, windows, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item_id,
                    draft.summary.render_markdown(),
                    draft.summary.model_dump_json(),
                    draft.model,
                    draft.prompt_tokens,
                    draft.output_tokens,
                    draft.windows,
                    now,
                ),
            )
            row = conn.execute("SELECT * FROM summaries WHERE id = ?", (cur.lastrowid,)).fetchone()
        return _row_to_summary(row)

    def mark_failed(self, item_id: int, failure: Failure) -> None:
        """Move an item from the failed stage's input status to `failed`."""
        with self.get_connection() as conn:
            self._transition(
                conn,
                item_id,
                failure.stage.input_status,
                ItemStatus.FAILED,
                {
                    "failure_stage": failure.stage.value,
                    "failure_category": failure.category.value,
                    "failure_kind": failure.kind,
                    "failure_message": failure.message,
                },
                note=failure.describe(),
            )

    def reset_item(self, item_id: int, to_status: ItemStatus, *, note: str = "reset") -> Item:
        """Move an item back to an earlier status (redo / force re-summarize).

        Clears the failure and the artifact fields of every stage being undone.
        Summaries are kept.
        """
        if to_status not in _RESET_CLEARS:
            raise ValueError(f"Cannot reset an item to {to_status.value}")
        with self.get_connection() as conn:
            row = conn.execute("SELECT status FROM items WHERE id = ?", (item_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Item {item_id} not found")
            current = ItemStatus(row["status"])
            if current is not ItemStatus.FAILED and current.rank <= to_status.rank:
                raise DataIntegrityError(
                    f"Item {item_id}: reset must move backwards ({current.value} -> {to_status.value})"
                )
            sets = {col: None for col in _RESET_CLEARS[to_status] + _FAILURE_COLUMNS}
            self._transition(conn, item_id, current, to_status, sets, note=note)
            row = conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        return _row_to_item(row)

    # ------------------------------------------------------------------
    # Summaries and history
    # ------------------------------------------------------------------

    def get_current_summary(self, item_id: int) -> Optional[Summary]:
        with self.get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM summaries WHERE item_id = ? ORDER BY created_at DESC, id DESC LIMIT 1",
                (item_id,),
            ).fetchone()
        return _row_to_summary(row) if row else None

    def list_summaries(self, item_id: int) -> list[Summary]:
        """Every summary stored for an item, oldest first."""
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM summaries WHERE item_id = ? ORDER BY created_at, id", (item_id,)
            ).fetchall()
        return [_row_to_summary(r) for r in rows]

    def list_item_events(self, item_id: int) -> list[ItemEvent]:
        with self.get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM item_events WHERE item_id = ? ORDER BY id", (item_id,)
            ).fetchall()
        return [
            ItemEvent(
                item_id=r["item_id"],
                from_status=ItemStatus(r["from_status"]) if r["from_status"] else None,
                to_status=ItemStatus(r["to_status"]),
                at=_dt(r["at"]),  # type: ignore[arg-type]
                note=r["note"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Feed locks
    # ------------------------------------------------------------------

    def acquire_lock(self, feed_id: int, run_id: str, *, ttl_seconds: int) -> bool:
        """Take the run lock of a feed; False when another live run holds it.

        A lock older than `ttl_seconds` is considered abandoned and taken over.
        """
        now = _now()
        with self.get_connection() as conn:
            row = conn.execute("SELECT run_id, acquired_at FROM feed_locks WHERE feed_id = ?", (feed_id,)).fetchone()
            if row is not None:
                if row["run_id"] == run_id:
                    return True
                if self._lock_is_live(row, ttl_seconds):
                    return False
                logger.warning(f"Taking over stale lock on feed {feed_id} held by run {row['run_id']}")
                conn.execute("DELETE FROM feed_locks WHERE feed_id = ?", (feed_id,))
            cur = conn.execute(
                "INSERT OR IGNORE INTO feed_locks (feed_id, run_id, acquired_at) VALUES (?, ?, ?)",
                (feed_id, run_id, _ts(now)),
            )
        return cur.rowcount == 1

    @staticmethod
    def _lock_is_live(lock: sqlite3.Row, ttl_seconds: int | None) -> bool:
        if ttl_seconds is None:
            return True
        held_since = _dt(lock["acquired_at"])
        return held_since is not None and _now() - held_since < timedelta(seconds=ttl_seconds)

    def release_lock(self, feed_id: int, run_id: str) -> None:
        with self.get_connection() as conn:
            conn.execute("DELETE FROM feed_locks WHERE feed_id = ? AND run_id = ?", (feed_id, run_id))
