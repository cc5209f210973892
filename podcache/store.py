"""
Feed metadata and its SQLite store.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Union

from podcache.errors import FeedExistsError

log = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = 'application/xml'

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS feeds (
    name TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    content_type TEXT NOT NULL,
    last_modified TEXT,
    all_files_updated INTEGER NOT NULL DEFAULT 0,
    marked_for_deletion INTEGER NOT NULL DEFAULT 0
);
"""

UPSERT_SQL = """
INSERT INTO feeds (name, url, content_type, last_modified, all_files_updated, marked_for_deletion)
VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(name) DO UPDATE SET
    url = excluded.url,
    content_type = excluded.content_type,
    last_modified = excluded.last_modified,
    all_files_updated = excluded.all_files_updated,
    marked_for_deletion = excluded.marked_for_deletion
"""


@dataclass
class Feed:
    """A single subscribed feed."""
    name: str
    url: str
    content_type: str = DEFAULT_CONTENT_TYPE
    last_modified: Optional[datetime] = None
    all_files_updated: bool = False
    marked_for_deletion: bool = False

    def __post_init__(self):
        if not self.name:
            raise ValueError("Feed name must not be empty.")

    def __str__(self) -> str:
        return self.name


def _to_db(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_db(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _row_to_feed(row: sqlite3.Row) -> Feed:
    return Feed(
        name=row['name'],
        url=row['url'],
        content_type=row['content_type'],
        last_modified=_from_db(row['last_modified']),
        all_files_updated=bool(row['all_files_updated']),
        marked_for_deletion=bool(row['marked_for_deletion']),
    )


class FeedStore:
    """
    Stores feed metadata in SQLite.

    All access goes through one connection guarded by a re-entrant lock. While
    a batch holds list_all_exclusive(), every other caller blocks.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = str(path)
        self._lock = threading.RLock()
        self._depth = 0
        self._conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA_SQL)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Run the enclosed block in a single write transaction.

        Nested calls join the outer transaction. Any exception rolls back
        everything written since the outermost call.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._conn.execute('BEGIN IMMEDIATE')
            self._depth = 1
            try:
                yield
            except BaseException:
                self._depth = 0
                self._conn.execute('ROLLBACK')
                raise
            self._depth = 0
            self._conn.execute('COMMIT')

    def list_all(self) -> List[Feed]:
        with self._lock:
            rows = self._conn.execute('SELECT * FROM feeds ORDER BY name').fetchall()
        return [_row_to_feed(row) for row in rows]

    @contextmanager
    def list_all_exclusive(self) -> Iterator[List[Feed]]:
        """
        Returns all feeds and holds an exclusive claim on them until the block exits.

        Writes made inside the block are committed together, or rolled back
        if the block raises.
        """
        with self.transaction():
            yield self.list_all()

    def find_by_name(self, name: str) -> Optional[Feed]:
        with self._lock:
            row = self._conn.execute('SELECT * FROM feeds WHERE name = ?', (name,)).fetchone()
        return _row_to_feed(row) if row is not None else None

    def insert(self, feed: Feed) -> None:
        """
        Add a new feed.

        Raises:
            FeedExistsError: If a feed with the same name exists
        """
        try:
            with self.transaction():
                self._conn.execute(
                    'INSERT INTO feeds (name, url, content_type, last_modified, '
                    'all_files_updated, marked_for_deletion) VALUES (?, ?, ?, ?, ?, ?)',
                    self._values(feed),
                )
        except sqlite3.IntegrityError as e:
            raise FeedExistsError(f"Feed '{feed.name}' already exists") from e

    def save(self, feeds: Union[Feed, Iterable[Feed]]) -> None:
        """
        Insert or update one or more feeds in a single transaction.

        Args:
            feeds: A feed or an iterable of feeds
        """
        if isinstance(feeds, Feed):
            feeds = [feeds]

        with self.transaction():
            self._conn.executemany(UPSERT_SQL, [self._values(feed) for feed in feeds])

    def delete(self, feed: Feed) -> None:
        log.info("Removing feed '%s' from database.", feed)
        with self.transaction():
            self._conn.execute('DELETE FROM feeds WHERE name = ?', (feed.name,))

    def mark_for_deletion(self, name: str, marked: bool = True) -> int:
        """
        Set or clear the deletion mark of a feed.

        Returns:
            Number of updated rows (0 or 1)
        """
        with self.transaction():
            cursor = self._conn.execute(
                'UPDATE feeds SET marked_for_deletion = ? WHERE name = ?',
                (int(marked), name),
            )
        return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @staticmethod
    def _values(feed: Feed) -> tuple:
        return (
            feed.name,
            feed.url,
            feed.content_type,
            _to_db(feed.last_modified),
            int(feed.all_files_updated),
            int(feed.marked_for_deletion),
        )
