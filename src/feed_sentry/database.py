"""SQLite store for Feed Sentry: feeds, entries and favorites."""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from feed_sentry.errors import StoreUnavailableError
from feed_sentry.models import ALL, Entry, Favorite, FavoriteFolder, Feed, utcnow

logger = logging.getLogger(__name__)

DEFAULT_FOLDER_NAME = "Default Favorites"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS feeds (
    id TEXT PRIMARY KEY,
    url TEXT UNIQUE NOT NULL,
    title TEXT NOT NULL,
    poll_interval_seconds INTEGER NOT NULL,
    notify_on_new_item INTEGER NOT NULL DEFAULT 0,
    notify_on_keyword_match INTEGER NOT NULL DEFAULT 0,
    keywords TEXT NOT NULL DEFAULT '[]',
    active INTEGER NOT NULL DEFAULT 1,
    consecutive_failure_count INTEGER NOT NULL DEFAULT 0,
    last_sync_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS entries (
    id TEXT PRIMARY KEY,
    feed_id TEXT NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    author TEXT,
    link TEXT,
    pub_date TEXT,
    published_at TEXT NOT NULL,
    ingested_at TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_entries_feed_published ON entries(feed_id, published_at);
CREATE INDEX IF NOT EXISTS idx_entries_is_read ON entries(is_read);

CREATE TABLE IF NOT EXISTS favorite_folders (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    is_default INTEGER NOT NULL DEFAULT 0,
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS favorites (
    id TEXT PRIMARY KEY,
    folder_id TEXT NOT NULL,
    entry_id TEXT,
    title TEXT NOT NULL,
    link TEXT NOT NULL,
    source TEXT NOT NULL,
    created_from TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_favorites_folder ON favorites(folder_id, created_at);
CREATE INDEX IF NOT EXISTS idx_favorites_entry ON favorites(entry_id);
CREATE INDEX IF NOT EXISTS idx_favorites_link ON favorites(link);
"""

FEED_COLUMNS = (
    "id", "url", "title", "poll_interval_seconds", "notify_on_new_item",
    "notify_on_keyword_match", "keywords", "active", "consecutive_failure_count",
    "last_sync_at", "created_at", "updated_at",
)

ENTRY_COLUMNS = (
    "id", "feed_id", "title", "author", "link", "pub_date",
    "published_at", "ingested_at", "is_read",
)

FAVORITE_COLUMNS = (
    "id", "folder_id", "entry_id", "title", "link", "source",
    "created_from", "created_at", "updated_at",
)


class Database:
    """SQLite database manager for feeds, entries and favorites.

    One connection is shared by the event loop and worker threads. Every
    statement runs under a reentrant lock, and ``transaction()`` holds it for
    the whole block, so a write from one thread never joins another thread's
    open transaction.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._local = threading.local()

    def connect(self) -> None:
        """Open database connection, initialize schema and the default folder.

        Raises:
            StoreUnavailableError: If the database cannot be opened.
        """
        with self._lock:
            try:
                self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA foreign_keys=ON")
                self._conn.row_factory = sqlite3.Row
                self._conn.executescript(SCHEMA_SQL)
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn = None
                raise StoreUnavailableError(f"Cannot open database {self.db_path}: {e}") from e
        self.ensure_default_folder()
        if self.count_feeds() == 0:
            logger.info("Database initialized with no feeds")

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreUnavailableError("Database not connected. Call connect() first.")
        return self._conn

    @property
    def _depth(self) -> int:
        return getattr(self._local, "depth", 0)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group writes into one atomic unit. Nested blocks join the outer one."""
        with self._lock:
            conn = self.conn
            depth = self._depth
            self._local.depth = depth + 1
            try:
                yield conn
            except BaseException:
                self._local.depth = depth
                if depth == 0:
                    conn.rollback()
                raise
            self._local.depth = depth
            if depth == 0:
                conn.commit()

    def _fetchone(self, query: str, params=()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, params=()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(query, params).fetchall()

    def _write(self, query: str, params=()) -> int:
        """Run one write statement in its own transaction. Returns rowcount."""
        with self.transaction() as conn:
            return conn.execute(query, params).rowcount

    # --- Feed operations ---

    def insert_feed(self, feed: Feed) -> None:
        """Insert a new feed row."""
        self._insert("feeds", FEED_COLUMNS, _feed_to_row(feed))

    def replace_feed(self, feed: Feed) -> None:
        """Overwrite every column of an existing feed row."""
        row = _feed_to_row(feed)
        assignments = ", ".join(f"{col} = ?" for col in FEED_COLUMNS[1:])
        self._write(f"UPDATE feeds SET {assignments} WHERE id = ?", (*row[1:], row[0]))

    def get_feed(self, feed_id: str) -> Feed | None:
        row = self._fetchone("SELECT * FROM feeds WHERE id = ?", (feed_id,))
        return _row_to_feed(row) if row else None

    def list_feeds(self, active_only: bool = False) -> list[Feed]:
        """Return feeds in creation order."""
        query = "SELECT * FROM feeds"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY created_at, id"
        return [_row_to_feed(r) for r in self._fetchall(query)]

    def active_feed_ids(self) -> set[str]:
        rows = self._fetchall("SELECT id FROM feeds WHERE active = 1")
        return {r["id"] for r in rows}

    def count_feeds(self) -> int:
        row = self._fetchone("SELECT COUNT(*) AS cnt FROM feeds")
        return row["cnt"] if row else 0

    def delete_feed(self, feed_id: str) -> bool:
        """Delete a feed row. Returns True if deleted."""
        return self._write("DELETE FROM feeds WHERE id = ?", (feed_id,)) > 0

    def mark_feed_synced(self, feed_id: str, timestamp: datetime) -> None:
        """Reset the failure count and stamp the last sync time."""
        stamp = _dt_to_str(timestamp)
        self._write(
            """UPDATE feeds SET consecutive_failure_count = 0, last_sync_at = ?,
               updated_at = ? WHERE id = ?""",
            (stamp, stamp, feed_id),
        )

    def increment_feed_failures(
        self, feed_id: str, ceiling: int, timestamp: datetime
    ) -> int | None:
        """Increment the failure count, deactivating at the ceiling in the same
        statement. Returns the new count, or None if the feed is missing."""
        with self.transaction() as conn:
            cursor = conn.execute(
                """UPDATE feeds SET
                       consecutive_failure_count = consecutive_failure_count + 1,
                       active = CASE WHEN consecutive_failure_count + 1 >= ?
                                     THEN 0 ELSE active END,
                       updated_at = ?
                   WHERE id = ?""",
                (ceiling, _dt_to_str(timestamp), feed_id),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT consecutive_failure_count FROM feeds WHERE id = ?", (feed_id,)
            ).fetchone()
        return row["consecutive_failure_count"]

    # --- Entry operations ---

    def insert_entries(self, entries: list[Entry]) -> None:
        """Bulk-insert entries. Caller guarantees ids are new."""
        with self.transaction():
            for entry in entries:
                self._insert("entries", ENTRY_COLUMNS, _entry_to_row(entry))

    def get_entry(self, entry_id: str) -> Entry | None:
        row = self._fetchone("SELECT * FROM entries WHERE id = ?", (entry_id,))
        return _row_to_entry(row) if row else None

    def existing_entry_ids(self, entry_ids: list[str]) -> set[str]:
        """Return which of the given ids are already stored."""
        found: set[str] = set()
        # Stay well below SQLite's bound-parameter limit
        for start in range(0, len(entry_ids), 500):
            chunk = entry_ids[start:start + 500]
            placeholders = ",".join("?" for _ in chunk)
            rows = self._fetchall(
                f"SELECT id FROM entries WHERE id IN ({placeholders})", chunk
            )
            found.update(r["id"] for r in rows)
        return found

    def entries_for_feed(self, feed_id: str) -> list[Entry]:
        rows = self._fetchall("SELECT * FROM entries WHERE feed_id = ?", (feed_id,))
        return [_row_to_entry(r) for r in rows]

    def count_entries(self, feed_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS cnt FROM entries WHERE feed_id = ?", (feed_id,)
        )
        return row["cnt"] if row else 0

    def oldest_entry_ids(self, feed_id: str, limit: int) -> list[str]:
        rows = self._fetchall(
            """SELECT id FROM entries WHERE feed_id = ?
               ORDER BY published_at ASC, ingested_at ASC, id ASC LIMIT ?""",
            (feed_id, limit),
        )
        return [r["id"] for r in rows]

    def delete_entries(self, entry_ids: list[str]) -> int:
        """Bulk-delete entries by id. Returns count of deleted rows."""
        deleted = 0
        with self.transaction() as conn:
            for start in range(0, len(entry_ids), 500):
                chunk = entry_ids[start:start + 500]
                placeholders = ",".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"DELETE FROM entries WHERE id IN ({placeholders})", chunk
                )
                deleted += cursor.rowcount
        return deleted

    def delete_entries_for_feed(self, feed_id: str) -> int:
        return self._write("DELETE FROM entries WHERE feed_id = ?", (feed_id,))

    def select_entries(
        self,
        feed_id: str = ALL,
        is_read: bool | None = None,
        before: datetime | None = None,
        feed_ids: set[str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Entry]:
        """Entries newest first, filtered by scope, read state and cursor."""
        if feed_ids is not None and not feed_ids:
            return []
        where, params = _entry_filters(feed_id, is_read, before, feed_ids)
        query = f"SELECT * FROM entries WHERE {where}"
        query += " ORDER BY published_at DESC, ingested_at DESC, id"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        return [_row_to_entry(r) for r in self._fetchall(query, params)]

    def count_matching_entries(
        self,
        feed_id: str = ALL,
        is_read: bool | None = None,
        before: datetime | None = None,
        feed_ids: set[str] | None = None,
    ) -> int:
        """Count of the rows select_entries would return without a limit."""
        if feed_ids is not None and not feed_ids:
            return 0
        where, params = _entry_filters(feed_id, is_read, before, feed_ids)
        row = self._fetchone(f"SELECT COUNT(*) AS cnt FROM entries WHERE {where}", params)
        return row["cnt"] if row else 0

    def set_entries_read(self, entry_ids: list[str], is_read: bool) -> int:
        """Set read state for specific entries. Returns count of affected rows."""
        if not entry_ids:
            return 0
        placeholders = ",".join("?" for _ in entry_ids)
        return self._write(
            f"UPDATE entries SET is_read = ? WHERE id IN ({placeholders}) AND is_read = ?",
            (int(is_read), *entry_ids, int(not is_read)),
        )

    def mark_feed_entries_read(self, feed_id: str = ALL) -> int:
        """Mark all entries (of one feed, or all) as read."""
        if feed_id == ALL:
            return self._write("UPDATE entries SET is_read = 1 WHERE is_read = 0")
        return self._write(
            "UPDATE entries SET is_read = 1 WHERE feed_id = ? AND is_read = 0",
            (feed_id,),
        )

    def count_unread(self, feed_id: str = ALL, feed_ids: set[str] | None = None) -> int:
        return self.count_matching_entries(feed_id, is_read=False, feed_ids=feed_ids)

    # --- Favorite folder operations ---

    def ensure_default_folder(self) -> FavoriteFolder:
        """Return the default folder, creating it on first access."""
        with self.transaction():
            row = self._fetchone(
                "SELECT * FROM favorite_folders WHERE is_default = 1 ORDER BY sort_order LIMIT 1"
            )
            if row:
                return _row_to_folder(row)
            folder = FavoriteFolder(
                id=uuid.uuid4().hex, name=DEFAULT_FOLDER_NAME, is_default=True, order=0
            )
            self.insert_folder(folder)
        logger.info("Created default favorite folder %s", folder.id)
        return folder

    def insert_folder(self, folder: FavoriteFolder) -> None:
        self._write(
            """INSERT INTO favorite_folders (id, name, is_default, sort_order,
               created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)""",
            (
                folder.id,
                folder.name,
                int(folder.is_default),
                folder.order,
                _dt_to_str(folder.created_at),
                _dt_to_str(folder.updated_at),
            ),
        )

    def get_folder(self, folder_id: str) -> FavoriteFolder | None:
        row = self._fetchone("SELECT * FROM favorite_folders WHERE id = ?", (folder_id,))
        return _row_to_folder(row) if row else None

    def list_folders(self) -> list[FavoriteFolder]:
        """Folders by display order, each with its favorite count."""
        rows = self._fetchall(
            """SELECT favorite_folders.*, COUNT(favorites.id) AS total
               FROM favorite_folders
               LEFT JOIN favorites ON favorites.folder_id = favorite_folders.id
               GROUP BY favorite_folders.id
               ORDER BY favorite_folders.sort_order, favorite_folders.created_at"""
        )
        folders = []
        for r in rows:
            folder = _row_to_folder(r)
            folder.total = r["total"]
            folders.append(folder)
        return folders

    def max_folder_order(self) -> int:
        row = self._fetchone(
            "SELECT COALESCE(MAX(sort_order), 0) AS max_order FROM favorite_folders"
        )
        return row["max_order"]

    def rename_folder(self, folder_id: str, name: str, timestamp: datetime) -> None:
        self._write(
            "UPDATE favorite_folders SET name = ?, updated_at = ? WHERE id = ?",
            (name, _dt_to_str(timestamp), folder_id),
        )

    def delete_folder(self, folder_id: str) -> None:
        self._write("DELETE FROM favorite_folders WHERE id = ?", (folder_id,))

    # --- Favorite operations ---

    def insert_favorite(self, favorite: Favorite) -> None:
        self._insert("favorites", FAVORITE_COLUMNS, _favorite_to_row(favorite))

    def get_favorite(self, favorite_id: str) -> Favorite | None:
        row = self._fetchone("SELECT * FROM favorites WHERE id = ?", (favorite_id,))
        return _row_to_favorite(row) if row else None

    def find_favorite(self, column: str, value: str) -> Favorite | None:
        """First favorite whose entry_id or link equals value."""
        if column not in ("entry_id", "link"):
            raise ValueError(f"Unsupported lookup column: {column}")
        row = self._fetchone(
            f"SELECT * FROM favorites WHERE {column} = ? ORDER BY created_at LIMIT 1",
            (value,),
        )
        return _row_to_favorite(row) if row else None

    def favorites_for_entries(self, entry_ids: list[str]) -> dict[str, str]:
        """Map entry id -> favorite id for the given entries."""
        if not entry_ids:
            return {}
        placeholders = ",".join("?" for _ in entry_ids)
        rows = self._fetchall(
            f"SELECT id, entry_id FROM favorites WHERE entry_id IN ({placeholders})",
            entry_ids,
        )
        return {r["entry_id"]: r["id"] for r in rows}

    def list_favorites(self, folder_id: str | None = None) -> list[Favorite]:
        if folder_id is None:
            rows = self._fetchall("SELECT * FROM favorites")
        else:
            rows = self._fetchall("SELECT * FROM favorites WHERE folder_id = ?", (folder_id,))
        return [_row_to_favorite(r) for r in rows]

    def move_favorites(
        self, favorite_ids: list[str] | None, target_folder_id: str,
        timestamp: datetime, from_folder_id: str | None = None,
    ) -> int:
        """Reassign favorites (by id, or every one in from_folder_id)."""
        stamp = _dt_to_str(timestamp)
        if from_folder_id is not None:
            return self._write(
                """UPDATE favorites SET folder_id = ?, created_at = ?, updated_at = ?
                   WHERE folder_id = ?""",
                (target_folder_id, stamp, stamp, from_folder_id),
            )
        if not favorite_ids:
            return 0
        placeholders = ",".join("?" for _ in favorite_ids)
        return self._write(
            f"""UPDATE favorites SET folder_id = ?, created_at = ?, updated_at = ?
                WHERE id IN ({placeholders})""",
            (target_folder_id, stamp, stamp, *favorite_ids),
        )

    def delete_favorites(
        self, favorite_ids: list[str] | None = None, folder_id: str | None = None
    ) -> int:
        if folder_id is not None:
            return self._write("DELETE FROM favorites WHERE folder_id = ?", (folder_id,))
        if not favorite_ids:
            return 0
        placeholders = ",".join("?" for _ in favorite_ids)
        return self._write(f"DELETE FROM favorites WHERE id IN ({placeholders})", favorite_ids)

    def _insert(self, table: str, columns: tuple, row: tuple) -> None:
        placeholders = ", ".join("?" for _ in columns)
        self._write(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            row,
        )


# --- Helper functions ---


def _entry_filters(
    feed_id: str,
    is_read: bool | None,
    before: datetime | None,
    feed_ids: set[str] | None,
) -> tuple[str, list]:
    """WHERE clause and parameters shared by entry selects and counts."""
    clauses = ["1=1"]
    params: list = []
    if feed_id != ALL:
        clauses.append("feed_id = ?")
        params.append(feed_id)
    if feed_ids is not None:
        placeholders = ",".join("?" for _ in feed_ids)
        clauses.append(f"feed_id IN ({placeholders})")
        params.extend(sorted(feed_ids))
    if is_read is not None:
        clauses.append("is_read = ?")
        params.append(int(is_read))
    if before is not None:
        clauses.append("published_at < ?")
        params.append(_dt_to_str(before))
    return " AND ".join(clauses), params


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to a sortable UTC ISO string for storage."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _str_to_dt(s: str | None) -> datetime | None:
    """Convert stored ISO string back to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _feed_to_row(feed: Feed) -> tuple:
    return (
        feed.id,
        feed.url,
        feed.title,
        feed.poll_interval_seconds,
        int(feed.notify_on_new_item),
        int(feed.notify_on_keyword_match),
        json.dumps(list(feed.keywords)),
        int(feed.active),
        feed.consecutive_failure_count,
        _dt_to_str(feed.last_sync_at),
        _dt_to_str(feed.created_at),
        _dt_to_str(feed.updated_at),
    )


def _row_to_feed(row: sqlite3.Row) -> Feed:
    """Convert a database row to a Feed dataclass."""
    return Feed(
        id=row["id"],
        url=row["url"],
        title=row["title"],
        poll_interval_seconds=row["poll_interval_seconds"],
        notify_on_new_item=bool(row["notify_on_new_item"]),
        notify_on_keyword_match=bool(row["notify_on_keyword_match"]),
        keywords=json.loads(row["keywords"] or "[]"),
        active=bool(row["active"]),
        consecutive_failure_count=row["consecutive_failure_count"],
        last_sync_at=_str_to_dt(row["last_sync_at"]),
        created_at=_str_to_dt(row["created_at"]) or utcnow(),
        updated_at=_str_to_dt(row["updated_at"]) or utcnow(),
    )


def _entry_to_row(entry: Entry) -> tuple:
    return (
        entry.id,
        entry.feed_id,
        entry.title,
        entry.author,
        entry.link,
        entry.pub_date,
        _dt_to_str(entry.published_at),
        _dt_to_str(entry.ingested_at),
        int(entry.is_read),
    )


def _row_to_entry(row: sqlite3.Row) -> Entry:
    """Convert a database row to an Entry dataclass."""
    return Entry(
        id=row["id"],
        feed_id=row["feed_id"],
        title=row["title"],
        author=row["author"],
        link=row["link"],
        pub_date=row["pub_date"],
        published_at=_str_to_dt(row["published_at"]) or utcnow(),
        ingested_at=_str_to_dt(row["ingested_at"]) or utcnow(),
        is_read=bool(row["is_read"]),
    )


def _row_to_folder(row: sqlite3.Row) -> FavoriteFolder:
    return FavoriteFolder(
        id=row["id"],
        name=row["name"],
        is_default=bool(row["is_default"]),
        order=row["sort_order"],
        created_at=_str_to_dt(row["created_at"]) or utcnow(),
        updated_at=_str_to_dt(row["updated_at"]) or utcnow(),
    )


def _favorite_to_row(favorite: Favorite) -> tuple:
    return (
        favorite.id,
        favorite.folder_id,
        favorite.entry_id,
        favorite.title,
        favorite.link,
        favorite.source,
        favorite.created_from,
        _dt_to_str(favorite.created_at),
        _dt_to_str(favorite.updated_at),
    )


def _row_to_favorite(row: sqlite3.Row) -> Favorite:
    return Favorite(
        id=row["id"],
        folder_id=row["folder_id"],
        entry_id=row["entry_id"],
        title=row["title"],
        link=row["link"],
        source=row["source"],
        created_from=row["created_from"],
        created_at=_str_to_dt(row["created_at"]) or utcnow(),
        updated_at=_str_to_dt(row["updated_at"]) or utcnow(),
    )
