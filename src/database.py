"""SQLite database module for the podcast activity backup."""
import sqlite3
import threading
import logging
import json
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Dict, List, Any, Iterable, Callable, Sequence, Set, Tuple

from config import DATA_DIR, SQL_BATCH_SIZE
from models import (
    EpisodeUpdate, NewEpisode, HistoryEntry, PlayedAtResult,
    Podcast, Bookmark, BackupProgress,
)
from utils.time import utc_now_iso, format_iso

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
PRAGMA journal_mode = WAL;

-- episodes table (only episodes the user has interacted with)
CREATE TABLE IF NOT EXISTS episodes (
    uuid TEXT PRIMARY KEY,
    url TEXT,
    title TEXT,
    podcast_title TEXT,
    podcast_uuid TEXT,
    published TEXT,
    duration INTEGER DEFAULT 0,
    file_type TEXT,
    size TEXT,
    playing_status INTEGER DEFAULT 0,
    played_up_to INTEGER DEFAULT 0,
    is_deleted INTEGER DEFAULT 0,
    starred INTEGER DEFAULT 0,
    episode_type TEXT,
    episode_season INTEGER DEFAULT 0,
    episode_number INTEGER DEFAULT 0,
    author TEXT,
    slug TEXT,
    podcast_slug TEXT,
    played_at TEXT,
    raw_data TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

-- podcasts table (subscriptions; deleted_at marks unsubscribed)
CREATE TABLE IF NOT EXISTS podcasts (
    uuid TEXT PRIMARY KEY,
    title TEXT,
    author TEXT,
    description TEXT,
    url TEXT,
    slug TEXT,
    date_added TEXT,
    folder_uuid TEXT,
    sort_position INTEGER DEFAULT 0,
    is_private INTEGER DEFAULT 0,
    auto_start_from INTEGER DEFAULT 0,
    auto_skip_last INTEGER DEFAULT 0,
    episodes_sort_order INTEGER DEFAULT 0,
    last_episode_uuid TEXT,
    last_episode_published TEXT,
    episode_count INTEGER DEFAULT 0,
    updated_at TEXT,
    deleted_at TEXT,
    raw_data TEXT
);

-- bookmarks table (same soft-delete lifecycle as podcasts)
CREATE TABLE IF NOT EXISTS bookmarks (
    bookmark_uuid TEXT PRIMARY KEY,
    podcast_uuid TEXT,
    episode_uuid TEXT,
    time INTEGER NOT NULL DEFAULT 0,
    title TEXT,
    created_at TEXT,
    updated_at TEXT,
    deleted_at TEXT,
    raw_data TEXT
);

-- backup_progress table (one row per backup run)
CREATE TABLE IF NOT EXISTS backup_progress (
    run_id TEXT PRIMARY KEY,
    total INTEGER NOT NULL DEFAULT 0,
    completed INTEGER NOT NULL DEFAULT 0,
    history_enqueued INTEGER NOT NULL DEFAULT 0,
    started_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

-- backup_progress_units table (podcasts already counted toward a run)
CREATE TABLE IF NOT EXISTS backup_progress_units (
    run_id TEXT NOT NULL,
    podcast_uuid TEXT NOT NULL,
    completed_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    PRIMARY KEY (run_id, podcast_uuid)
);

-- work_queue table (at-least-once delivery of backup work units)
CREATE TABLE IF NOT EXISTS work_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    unit_type TEXT NOT NULL CHECK(unit_type IN ('sync-podcasts', 'sync-podcast', 'sync-history')),
    payload TEXT NOT NULL DEFAULT '{}',
    status TEXT DEFAULT 'pending' CHECK(status IN ('pending','processing','completed','failed')),
    attempts INTEGER DEFAULT 0,
    error_message TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_episodes_podcast_uuid ON episodes(podcast_uuid);
CREATE INDEX IF NOT EXISTS idx_episodes_played_at ON episodes(played_at);
CREATE INDEX IF NOT EXISTS idx_bookmarks_episode_uuid ON bookmarks(episode_uuid);
CREATE INDEX IF NOT EXISTS idx_bookmarks_podcast_uuid ON bookmarks(podcast_uuid);
CREATE INDEX IF NOT EXISTS idx_work_queue_status ON work_queue(status);
"""

# Episode list filters and the SQL each one applies
STATUS_FILTERS = {
    'not_started': 'playing_status = 1',
    'in_progress': 'playing_status = 2',
    'played': 'playing_status = 3',
}
FLAG_FILTERS = {
    'archived': 'is_deleted = 1',
    'starred': 'starred = 1',
}
VALID_FILTERS = ('archived', 'in_progress', 'played', 'not_started', 'starred')

EPISODE_COLUMNS = (
    'uuid', 'url', 'title', 'podcast_title', 'podcast_uuid', 'published',
    'duration', 'file_type', 'size', 'playing_status', 'played_up_to',
    'is_deleted', 'starred', 'episode_type', 'episode_season', 'episode_number',
    'author', 'slug', 'podcast_slug',
)


def parse_filters(values: Iterable[str]) -> List[str]:
    """Keep only known episode filters, preserving order."""
    return [v for v in values if v in VALID_FILTERS]


def _chunks(items: Sequence, size: int = SQL_BATCH_SIZE):
    for i in range(0, len(items), size):
        yield items[i:i + size]


@dataclass(frozen=True)
class ReconciledTable:
    """Describes a table kept in step with a remote "current set".

    The key column must be the first element of every row returned by
    to_row, followed by the remaining columns in order.
    """
    name: str
    key_column: str
    columns: Tuple[str, ...]
    to_row: Callable[[Any], tuple]


def _podcast_row(podcast: Podcast) -> tuple:
    return (
        podcast.uuid,
        podcast.title,
        podcast.author,
        podcast.description,
        podcast.url,
        podcast.slug,
        podcast.date_added,
        podcast.folder_uuid,
        podcast.sort_position,
        1 if podcast.is_private else 0,
        podcast.auto_start_from,
        podcast.auto_skip_last,
        podcast.episodes_sort_order,
        podcast.last_episode_uuid,
        podcast.last_episode_published,
        json.dumps(podcast.raw),
    )


def _bookmark_row(bookmark: Bookmark) -> tuple:
    return (
        bookmark.bookmark_uuid,
        bookmark.podcast_uuid,
        bookmark.episode_uuid,
        bookmark.time,
        bookmark.title,
        bookmark.created_at,
        json.dumps(bookmark.raw),
    )


PODCASTS_TABLE = ReconciledTable(
    name='podcasts',
    key_column='uuid',
    columns=(
        'title', 'author', 'description', 'url', 'slug', 'date_added',
        'folder_uuid', 'sort_position', 'is_private', 'auto_start_from',
        'auto_skip_last', 'episodes_sort_order', 'last_episode_uuid',
        'last_episode_published', 'raw_data',
    ),
    to_row=_podcast_row,
)

BOOKMARKS_TABLE = ReconciledTable(
    name='bookmarks',
    key_column='bookmark_uuid',
    columns=('podcast_uuid', 'episode_uuid', 'time', 'title', 'created_at', 'raw_data'),
    to_row=_bookmark_row,
)


class Database:
    """SQLite database manager with thread-safe connections."""

    _instance = None
    _lock = threading.Lock()

    parse_filters = staticmethod(parse_filters)

    def __new__(cls, data_dir: str = DATA_DIR):
        """Singleton pattern for database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, data_dir: str = DATA_DIR):
        if self._initialized:
            return

        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.data_dir / "castkeeper.db"
        self._local = threading.local()
        self._initialized = True

        self._init_schema()

    def get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, 'connection') or self._local.connection is None:
            self._local.connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                timeout=30.0
            )
            self._local.connection.row_factory = sqlite3.Row
        return self._local.connection

    @contextmanager
    def _write_transaction(self):
        """Run a block under SQLite's write lock (BEGIN IMMEDIATE).

        Everything inside commits or rolls back as one unit, and no other
        connection can write in between.
        """
        conn = self.get_connection()
        if getattr(self._local, 'in_write', False):
            raise RuntimeError("Nested write transaction on the same connection")
        if conn.in_transaction:
            # Left open by a statement that failed before its commit
            logger.warning("Rolling back uncommitted work before starting a write transaction")
            conn.rollback()

        conn.execute("BEGIN IMMEDIATE")
        self._local.in_write = True
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        else:
            conn.commit()
        finally:
            self._local.in_write = False

    def _init_schema(self):
        """Initialize database schema."""
        conn = self.get_connection()
        conn.executescript(SCHEMA_SQL)
        conn.commit()
        self._run_schema_migrations()
        logger.info(f"Database schema initialized at {self.db_path}")

    def _run_schema_migrations(self):
        """Add columns introduced after a database file was first created."""
        conn = self.get_connection()

        cursor = conn.execute("PRAGMA table_info(episodes)")
        episode_columns = [row['name'] for row in cursor.fetchall()]
        if 'played_at' not in episode_columns:
            conn.execute("ALTER TABLE episodes ADD COLUMN played_at TEXT")
            conn.commit()
            logger.info("Migration: Added played_at column to episodes table")

        cursor = conn.execute("PRAGMA table_info(podcasts)")
        podcast_columns = [row['name'] for row in cursor.fetchall()]
        if 'episode_count' not in podcast_columns:
            conn.execute("ALTER TABLE podcasts ADD COLUMN episode_count INTEGER DEFAULT 0")
            conn.commit()
            logger.info("Migration: Added episode_count column to podcasts table")

    # ========== Episode Methods ==========

    def get_existing_episode_uuids(self, uuids: Sequence[str]) -> Set[str]:
        """Return the subset of uuids already stored."""
        if not uuids:
            return set()

        conn = self.get_connection()
        existing = set()
        for chunk in _chunks(list(uuids)):
            placeholders = ','.join('?' * len(chunk))
            cursor = conn.execute(
                f"SELECT uuid FROM episodes WHERE uuid IN ({placeholders})",
                chunk
            )
            existing.update(row['uuid'] for row in cursor.fetchall())
        return existing

    def update_episode_sync_data(self, updates: List[EpisodeUpdate]) -> int:
        """Apply mutable sync fields to stored episodes. Returns rows written."""
        if not updates:
            return 0

        now = utc_now_iso()
        conn = self.get_connection()
        conn.executemany(
            """UPDATE episodes SET
               playing_status = ?,
               played_up_to = ?,
               starred = ?,
               is_deleted = ?,
               updated_at = ?
               WHERE uuid = ?""",
            [
                (u.playing_status, u.played_up_to, u.starred, u.is_deleted, now, u.uuid)
                for u in updates
            ]
        )
        conn.commit()
        return len(updates)

    def insert_new_episodes(self, episodes: List[NewEpisode]) -> int:
        """Insert episodes, refreshing every field except played_at on conflict."""
        if not episodes:
            return 0

        now = utc_now_iso()
        columns = EPISODE_COLUMNS + ('raw_data', 'updated_at')
        placeholders = ', '.join('?' * len(columns))
        assignments = ', '.join(f"{col} = excluded.{col}" for col in columns if col != 'uuid')

        conn = self.get_connection()
        conn.executemany(
            f"""INSERT INTO episodes ({', '.join(columns)})
                VALUES ({placeholders})
                ON CONFLICT(uuid) DO UPDATE SET {assignments}""",
            [
                tuple(getattr(ep, col) for col in EPISODE_COLUMNS) + (json.dumps(asdict(ep)), now)
                for ep in episodes
            ]
        )
        conn.commit()
        return len(episodes)

    def update_episode_played_at(self, entries: List[HistoryEntry]) -> PlayedAtResult:
        """Move played_at forward for known episodes; never backward.

        An entry counts as updated only when the stored value was null or
        strictly older. Unknown episodes and equal or newer stored values
        count as skipped.
        """
        result = PlayedAtResult()
        if not entries:
            return result

        now = utc_now_iso()
        with self._write_transaction() as conn:
            for entry in entries:
                cursor = conn.execute(
                    """UPDATE episodes SET played_at = ?, updated_at = ?
                       WHERE uuid = ? AND (played_at IS NULL OR played_at < ?)""",
                    (entry.played_at, now, entry.uuid, entry.played_at)
                )
                if cursor.rowcount > 0:
                    result.updated += 1
                else:
                    result.skipped += 1
        return result

    def _episode_filter_clause(self, filters: Optional[List[str]]) -> str:
        """Build a WHERE clause: status filters OR'ed, flag filters AND'ed."""
        if not filters:
            return ''

        clauses = []
        statuses = [STATUS_FILTERS[f] for f in filters if f in STATUS_FILTERS]
        if statuses:
            clauses.append('(' + ' OR '.join(statuses) + ')')
        clauses.extend(FLAG_FILTERS[f] for f in filters if f in FLAG_FILTERS)

        return f"WHERE {' AND '.join(clauses)}" if clauses else ''

    def get_episodes(self, limit: int = None, offset: int = 0,
                     filters: List[str] = None) -> List[Dict]:
        """Get episodes, most recently played first, never-played last."""
        conn = self.get_connection()
        where_clause = self._episode_filter_clause(parse_filters(filters or []))

        query = f"""SELECT * FROM episodes {where_clause}
                    ORDER BY played_at IS NULL, played_at DESC, published DESC"""
        params: List[Any] = []
        if limit:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        cursor = conn.execute(query, params)
        return [dict(row) for row in cursor.fetchall()]

    def get_episode(self, uuid: str) -> Optional[Dict]:
        """Get a single episode by uuid."""
        conn = self.get_connection()
        cursor = conn.execute("SELECT * FROM episodes WHERE uuid = ?", (uuid,))
        row = cursor.fetchone()
        return dict(row) if row else None

    def get_episode_count(self, filters: List[str] = None) -> int:
        conn = self.get_connection()
        where_clause = self._episode_filter_clause(parse_filters(filters or []))
        cursor = conn.execute(f"SELECT COUNT(*) FROM episodes {where_clause}")
        return cursor.fetchone()[0]

    # ========== Set Reconciliation ==========

    def reconcile_set(self, table: ReconciledTable, entities: Iterable[Any]) -> int:
        """Mirror a remote current set into a soft-delete table.

        Every entity is upserted with deleted_at cleared. Stored rows whose
        key is absent from the set get deleted_at = now, unless they were
        already marked. Returns the total row count, soft-deleted included.
        """
        now = utc_now_iso()
        rows = [table.to_row(entity) for entity in entities]
        active_keys = {row[0] for row in rows}

        columns = (table.key_column,) + table.columns
        insert_columns = ', '.join(columns + ('updated_at', 'deleted_at'))
        placeholders = ', '.join('?' * (len(columns) + 1))
        assignments = ', '.join(f"{col} = excluded.{col}" for col in table.columns)

        with self._write_transaction() as conn:
            if rows:
                conn.executemany(
                    f"""INSERT INTO {table.name} ({insert_columns})
                        VALUES ({placeholders}, NULL)
                        ON CONFLICT({table.key_column}) DO UPDATE SET
                          {assignments},
                          updated_at = excluded.updated_at,
                          deleted_at = NULL""",
                    [row + (now,) for row in rows]
                )

            cursor = conn.execute(
                f"SELECT {table.key_column} FROM {table.name} WHERE deleted_at IS NULL"
            )
            stale = [row[0] for row in cursor.fetchall() if row[0] not in active_keys]
            for chunk in _chunks(stale):
                placeholders = ','.join('?' * len(chunk))
                conn.execute(
                    f"""UPDATE {table.name} SET deleted_at = ?
                        WHERE {table.key_column} IN ({placeholders}) AND deleted_at IS NULL""",
                    [now] + chunk
                )

            total = conn.execute(f"SELECT COUNT(*) FROM {table.name}").fetchone()[0]

        if stale:
            logger.info(f"Marked {len(stale)} {table.name} as deleted")
        return total

    # ========== Podcast Methods ==========

    def save_podcasts(self, podcasts: List[Podcast]) -> int:
        """Reconcile the subscription list. Returns total podcasts stored."""
        return self.reconcile_set(PODCASTS_TABLE, podcasts)

    def update_podcast_episode_count(self, uuid: str, episode_count: int):
        """Record the episode count reported by the metadata cache."""
        conn = self.get_connection()
        conn.execute(
            "UPDATE podcasts SET episode_count = ? WHERE uuid = ?",
            (episode_count, uuid)
        )
        conn.commit()

    def get_podcasts(self) -> List[Dict]:
        """Get podcasts, subscribed first, in remote sort order."""
        conn = self.get_connection()
        cursor = conn.execute(
            "SELECT * FROM podcasts ORDER BY deleted_at IS NOT NULL, sort_position ASC"
        )
        return [dict(row) for row in cursor.fetchall()]

    def get_podcasts_with_stats(self) -> List[Dict]:
        """Get podcasts with per-podcast listening statistics."""
        conn = self.get_connection()
        cursor = conn.execute("""
            SELECT p.*,
                   COUNT(e.uuid) as total_episodes,
                   COALESCE(SUM(CASE WHEN e.playing_status = 3 THEN 1 ELSE 0 END), 0) as played_count,
                   COALESCE(SUM(CASE WHEN e.starred = 1 THEN 1 ELSE 0 END), 0) as starred_count,
                   COALESCE(SUM(e.played_up_to), 0) as total_played_time
            FROM podcasts p
            LEFT JOIN episodes e ON e.podcast_uuid = p.uuid
            GROUP BY p.uuid
            ORDER BY p.deleted_at IS NOT NULL, p.sort_position ASC
        """)
        return [dict(row) for row in cursor.fetchall()]

    # ========== Bookmark Methods ==========

    def save_bookmarks(self, bookmarks: List[Bookmark]) -> int:
        """Reconcile the bookmark list. Returns total bookmarks stored."""
        return self.reconcile_set(BOOKMARKS_TABLE, bookmarks)

    def get_bookmarks(self) -> List[Dict]:
        conn = self.get_connection()
        cursor = conn.execute(
            """SELECT * FROM bookmarks
               ORDER BY deleted_at IS NOT NULL, created_at DESC, bookmark_uuid ASC"""
        )
        return [dict(row) for row in cursor.fetchall()]

    def get_bookmarks_with_episodes(self) -> List[Dict]:
        """Get bookmarks joined with their episode, when it is stored."""
        conn = self.get_connection()
        cursor = conn.execute("""
            SELECT b.*,
                   e.title as episode_title,
                   e.podcast_title as podcast_title,
                   e.duration as episode_duration
            FROM bookmarks b
            LEFT JOIN episodes e ON e.uuid = b.episode_uuid
            ORDER BY b.deleted_at IS NOT NULL, b.created_at DESC, b.bookmark_uuid ASC
        """)
        return [dict(row) for row in cursor.fetchall()]

    # ========== Backup Progress Methods ==========

    def reset_backup_progress(self, run_id: str, total: int):
        """Start (or restart) the progress counter for a run."""
        now = utc_now_iso()
        with self._write_transaction() as conn:
            conn.execute("DELETE FROM backup_progress_units WHERE run_id = ?", (run_id,))
            conn.execute(
                """INSERT INTO backup_progress (run_id, total, completed, history_enqueued, started_at, updated_at)
                   VALUES (?, ?, 0, 0, ?, ?)
                   ON CONFLICT(run_id) DO UPDATE SET
                     total = excluded.total,
                     completed = 0,
                     history_enqueued = 0,
                     started_at = excluded.started_at,
                     updated_at = excluded.updated_at""",
                (run_id, total, now, now)
            )

    def increment_backup_progress(self, run_id: str, podcast_uuid: str,
                                  on_complete: List[Tuple[str, str]] = None) -> BackupProgress:
        """Count one podcast toward a run, atomically.

        A podcast counts once per run no matter how often its unit is
        redelivered. finished_now is True for exactly one caller: the one
        whose increment reached the total. That caller's on_complete
        (unit_type, payload_json) rows are queued in the same transaction,
        so the run is never marked handed off without them.

        Raises:
            ValueError: If the run does not exist
        """
        now = utc_now_iso()
        with self._write_transaction() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO backup_progress_units (run_id, podcast_uuid, completed_at) VALUES (?, ?, ?)",
                (run_id, podcast_uuid, now)
            )
            if cursor.rowcount > 0:
                conn.execute(
                    """UPDATE backup_progress SET completed = completed + 1, updated_at = ?
                       WHERE run_id = ?""",
                    (now, run_id)
                )

            row = conn.execute(
                "SELECT total, completed, history_enqueued FROM backup_progress WHERE run_id = ?",
                (run_id,)
            ).fetchone()
            if row is None:
                raise ValueError(f"Unknown backup run: {run_id}")

            finished_now = row['completed'] >= row['total'] and not row['history_enqueued']
            if finished_now:
                conn.execute(
                    "UPDATE backup_progress SET history_enqueued = 1 WHERE run_id = ?",
                    (run_id,)
                )
                self._insert_work_units(conn, on_complete or [])

        return BackupProgress(
            run_id=run_id,
            total=row['total'],
            completed=row['completed'],
            finished_now=finished_now,
        )

    def get_backup_progress(self, run_id: str = None) -> Optional[Dict]:
        """Get a run's progress row, or the most recent run's."""
        conn = self.get_connection()
        if run_id:
            cursor = conn.execute("SELECT * FROM backup_progress WHERE run_id = ?", (run_id,))
        else:
            cursor = conn.execute(
                "SELECT * FROM backup_progress ORDER BY started_at DESC, rowid DESC LIMIT 1"
            )
        row = cursor.fetchone()
        return dict(row) if row else None

    # ========== Work Queue Methods ==========

    def enqueue_work_units(self, units: List[Tuple[str, str]]) -> List[int]:
        """Insert (unit_type, payload_json) rows as pending. Returns their ids."""
        if not units:
            return []

        with self._write_transaction() as conn:
            return self._insert_work_units(conn, units)

    def _insert_work_units(self, conn: sqlite3.Connection, units: List[Tuple[str, str]]) -> List[int]:
        """Insert pending units on a connection that is already in a transaction."""
        ids = []
        for unit_type, payload in units:
            cursor = conn.execute(
                "INSERT INTO work_queue (unit_type, payload) VALUES (?, ?)",
                (unit_type, payload)
            )
            ids.append(cursor.lastrowid)
        return ids

    def claim_next_work_unit(self) -> Optional[Dict]:
        """Atomically move the oldest pending unit to processing and return it."""
        now = utc_now_iso()
        with self._write_transaction() as conn:
            row = conn.execute(
                """SELECT * FROM work_queue
                   WHERE status = 'pending'
                   ORDER BY id ASC
                   LIMIT 1"""
            ).fetchone()
            if row is None:
                return None

            conn.execute(
                """UPDATE work_queue SET
                   status = 'processing',
                   attempts = attempts + 1,
                   updated_at = ?
                   WHERE id = ?""",
                (now, row['id'])
            )
        claimed = dict(row)
        claimed['status'] = 'processing'
        claimed['attempts'] = row['attempts'] + 1
        return claimed

    def complete_work_unit(self, unit_id: int):
        conn = self.get_connection()
        conn.execute(
            """UPDATE work_queue SET status = 'completed', error_message = NULL, updated_at = ?
               WHERE id = ?""",
            (utc_now_iso(), unit_id)
        )
        conn.commit()

    def fail_work_unit(self, unit_id: int, error_message: str, max_attempts: int) -> str:
        """Record a failure; requeue unless attempts are exhausted. Returns new status."""
        with self._write_transaction() as conn:
            conn.execute(
                """UPDATE work_queue SET
                   status = CASE WHEN attempts >= ? THEN 'failed' ELSE 'pending' END,
                   error_message = ?,
                   updated_at = ?
                   WHERE id = ?""",
                (max_attempts, error_message, utc_now_iso(), unit_id)
            )
            row = conn.execute("SELECT status FROM work_queue WHERE id = ?", (unit_id,)).fetchone()
        return row['status'] if row else 'failed'

    def get_work_unit(self, unit_id: int) -> Optional[Dict]:
        conn = self.get_connection()
        row = conn.execute("SELECT * FROM work_queue WHERE id = ?", (unit_id,)).fetchone()
        return dict(row) if row else None

    def reset_stuck_work_units(self) -> int:
        """Put units left in processing by a crashed worker back to pending."""
        conn = self.get_connection()
        cursor = conn.execute(
            """UPDATE work_queue SET status = 'pending', error_message = 'Reset after restart',
               updated_at = ?
               WHERE status = 'processing'""",
            (utc_now_iso(),)
        )
        conn.commit()
        return cursor.rowcount

    def get_work_queue_status(self) -> Dict:
        """Get work queue status summary."""
        conn = self.get_connection()
        cursor = conn.execute(
            """SELECT
               COUNT(*) FILTER (WHERE status = 'pending') as pending,
               COUNT(*) FILTER (WHERE status = 'processing') as processing,
               COUNT(*) FILTER (WHERE status = 'completed') as completed,
               COUNT(*) FILTER (WHERE status = 'failed') as failed,
               COUNT(*) as total
               FROM work_queue"""
        )
        row = cursor.fetchone()
        return dict(row) if row else {'pending': 0, 'processing': 0, 'completed': 0, 'failed': 0, 'total': 0}

    def clear_completed_work_units(self, older_than_hours: int = 24) -> int:
        """Clear completed units older than specified hours. Returns count deleted."""
        conn = self.get_connection()
        cutoff = format_iso(datetime.now(timezone.utc) - timedelta(hours=older_than_hours))
        cursor = conn.execute(
            """DELETE FROM work_queue
               WHERE status = 'completed' AND updated_at < ?""",
            (cutoff,)
        )
        conn.commit()
        return cursor.rowcount

    # ========== Stats ==========

    def get_stats(self) -> Dict:
        """Get row counts for the status endpoint."""
        conn = self.get_connection()
        return {
            'episode_count': conn.execute("SELECT COUNT(*) FROM episodes").fetchone()[0],
            'played_count': conn.execute(
                "SELECT COUNT(*) FROM episodes WHERE played_at IS NOT NULL"
            ).fetchone()[0],
            'podcast_count': conn.execute(
                "SELECT COUNT(*) FROM podcasts WHERE deleted_at IS NULL"
            ).fetchone()[0],
            'bookmark_count': conn.execute(
                "SELECT COUNT(*) FROM bookmarks WHERE deleted_at IS NULL"
            ).fetchone()[0],
        }
