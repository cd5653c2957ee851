"""SQLite-backed cache partition store.

Each partition is a named namespace of request-keyed entries. Entries are
only ever replaced as a whole (last write wins), so a failure between a
fetch and a write simply loses that one update.
"""

import json
import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .config import ExpirationPolicy
from .models import CacheEntry


class StoreError(Exception):
    """Raised when a cache storage operation fails."""

    pass


# Global lock for thread-safe storage access.
# SQLite allows concurrent reads but only one writer at a time, and the
# connection is shared by request threads and background revalidations.
_store_lock = threading.Lock()


def init_store(db_path: str) -> sqlite3.Connection:
    """Initialize the cache database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file, or ":memory:".

    Returns:
        Database connection usable from multiple threads.

    Raises:
        StoreError: If initialization fails.
    """
    try:
        if db_path != ":memory:":
            parent_dir = Path(db_path).parent
            if not parent_dir.exists():
                parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        if db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS partitions (
                name TEXT PRIMARY KEY,
                created_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                partition TEXT NOT NULL REFERENCES partitions(name) ON DELETE CASCADE,
                key TEXT NOT NULL,
                status INTEGER NOT NULL,
                headers TEXT NOT NULL,
                body BLOB NOT NULL,
                url TEXT NOT NULL DEFAULT '',
                reason TEXT NOT NULL DEFAULT '',
                captured_at TEXT NOT NULL,
                PRIMARY KEY (partition, key)
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_entries_key
            ON entries(key)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_entries_partition_captured_at
            ON entries(partition, captured_at)
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise StoreError(f"Failed to initialize cache store: {e}")
    except OSError as e:
        raise StoreError(f"Failed to create cache store directory: {e}")


def _row_to_entry(row: sqlite3.Row) -> CacheEntry:
    return CacheEntry(
        key=row["key"],
        status=row["status"],
        headers=json.loads(row["headers"]),
        body=bytes(row["body"]),
        captured_at=datetime.fromisoformat(row["captured_at"]),
        url=row["url"],
        reason=row["reason"],
    )


def _entry_params(partition: str, entry: CacheEntry) -> tuple:
    return (
        partition,
        entry.key,
        entry.status,
        json.dumps(entry.headers),
        sqlite3.Binary(entry.body),
        entry.url,
        entry.reason,
        entry.captured_at.isoformat(),
    )


_UPSERT_ENTRY = """
    INSERT INTO entries (partition, key, status, headers, body, url, reason, captured_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(partition, key) DO UPDATE SET
        status = excluded.status,
        headers = excluded.headers,
        body = excluded.body,
        url = excluded.url,
        reason = excluded.reason,
        captured_at = excluded.captured_at
"""


def _ensure_partition(conn: sqlite3.Connection, name: str) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO partitions (name, created_at) VALUES (?, ?)",
        (name, datetime.now(UTC).isoformat()),
    )


def _rollback(conn: sqlite3.Connection) -> None:
    """Roll back the current transaction; the caller holds _store_lock."""
    try:
        conn.rollback()
    except sqlite3.Error:
        pass


def open_partition(conn: sqlite3.Connection, name: str) -> None:
    """Create a partition if it does not exist yet.

    Raises:
        StoreError: If the partition cannot be created.
    """
    with _store_lock:
        try:
            _ensure_partition(conn, name)
            conn.commit()
        except sqlite3.Error as e:
            _rollback(conn)
            raise StoreError(f"Failed to open partition '{name}': {e}")


def list_partitions(conn: sqlite3.Connection) -> list[str]:
    """Return every partition name in creation order."""
    try:
        with _store_lock:
            cursor = conn.execute("SELECT name FROM partitions ORDER BY rowid")
            return [row["name"] for row in cursor.fetchall()]
    except sqlite3.Error as e:
        raise StoreError(f"Failed to list partitions: {e}")


def has_partition(conn: sqlite3.Connection, name: str) -> bool:
    """Check whether a partition exists."""
    try:
        with _store_lock:
            cursor = conn.execute("SELECT 1 FROM partitions WHERE name = ?", (name,))
            return cursor.fetchone() is not None
    except sqlite3.Error as e:
        raise StoreError(f"Failed to look up partition '{name}': {e}")


def delete_partition(conn: sqlite3.Connection, name: str) -> bool:
    """Delete a partition and all of its entries.

    Returns:
        True if the partition existed.

    Raises:
        StoreError: If the delete fails.
    """
    with _store_lock:
        try:
            conn.execute("DELETE FROM entries WHERE partition = ?", (name,))
            cursor = conn.execute("DELETE FROM partitions WHERE name = ?", (name,))
            conn.commit()
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            _rollback(conn)
            raise StoreError(f"Failed to delete partition '{name}': {e}")


def count_entries(conn: sqlite3.Connection, name: str) -> int:
    """Return the number of entries in a partition."""
    try:
        with _store_lock:
            cursor = conn.execute("SELECT COUNT(*) FROM entries WHERE partition = ?", (name,))
            return cursor.fetchone()[0]
    except sqlite3.Error as e:
        raise StoreError(f"Failed to count entries in '{name}': {e}")


def put_entry(
    conn: sqlite3.Connection,
    partition: str,
    entry: CacheEntry,
    policy: ExpirationPolicy | None = None,
) -> None:
    """Store an entry, fully replacing any previous entry for its key.

    The partition is created on first write. When a policy with
    max_entries is given, the oldest entries beyond the limit are evicted.

    Raises:
        StoreError: If the write fails.
    """
    with _store_lock:
        try:
            _ensure_partition(conn, partition)
            conn.execute(_UPSERT_ENTRY, _entry_params(partition, entry))
            if policy is not None and policy.max_entries is not None:
                _evict_overflow(conn, partition, policy.max_entries)
            conn.commit()
        except sqlite3.Error as e:
            _rollback(conn)
            raise StoreError(f"Failed to store '{entry.key}' in '{partition}': {e}")


def put_entries(conn: sqlite3.Connection, partition: str, entries: list[CacheEntry]) -> None:
    """Store several entries in a single transaction (all or nothing).

    Raises:
        StoreError: If any write fails; none of the entries are kept.
    """
    with _store_lock:
        try:
            _ensure_partition(conn, partition)
            conn.executemany(_UPSERT_ENTRY, [_entry_params(partition, entry) for entry in entries])
            conn.commit()
        except sqlite3.Error as e:
            _rollback(conn)
            raise StoreError(f"Failed to store {len(entries)} entries in '{partition}': {e}")


def _evict_overflow(conn: sqlite3.Connection, partition: str, max_entries: int) -> None:
    conn.execute(
        """
        DELETE FROM entries
        WHERE partition = ? AND key NOT IN (
            SELECT key FROM entries
            WHERE partition = ?
            ORDER BY captured_at DESC
            LIMIT ?
        )
        """,
        (partition, partition, max_entries),
    )


def get_entry(conn: sqlite3.Connection, partition: str, key: str) -> CacheEntry | None:
    """Get a single entry from one partition."""
    try:
        with _store_lock:
            cursor = conn.execute(
                "SELECT * FROM entries WHERE partition = ? AND key = ?",
                (partition, key),
            )
            row = cursor.fetchone()
    except sqlite3.Error as e:
        raise StoreError(f"Failed to read '{key}' from '{partition}': {e}")

    return _row_to_entry(row) if row is not None else None


def match_entry(
    conn: sqlite3.Connection,
    key: str,
    partitions: list[str],
    policies: dict[str, ExpirationPolicy] | None = None,
) -> CacheEntry | None:
    """Find the most recently captured entry for a key across partitions.

    Only the given partitions are searched. Entries older than their
    partition's max_age_seconds are deleted and treated as misses.

    Args:
        conn: Database connection.
        key: Request key.
        partitions: Partition names to search.
        policies: Optional expiration policy per partition name.

    Returns:
        The freshest matching entry, or None on a miss.

    Raises:
        StoreError: If the lookup fails.
    """
    if not partitions:
        return None

    placeholders = ",".join("?" for _ in partitions)
    with _store_lock:
        try:
            cursor = conn.execute(
                f"""
                SELECT * FROM entries
                WHERE key = ? AND partition IN ({placeholders})
                ORDER BY captured_at DESC
                """,
                (key, *partitions),
            )
            rows = cursor.fetchall()

            now = datetime.now(UTC)
            expired: list[str] = []
            found: CacheEntry | None = None
            for row in rows:
                policy = (policies or {}).get(row["partition"])
                entry = _row_to_entry(row)
                if policy is not None and policy.max_age_seconds is not None:
                    if now - entry.captured_at > timedelta(seconds=policy.max_age_seconds):
                        expired.append(row["partition"])
                        continue
                found = entry
                break

            if expired:
                conn.executemany(
                    "DELETE FROM entries WHERE partition = ? AND key = ?",
                    [(name, key) for name in expired],
                )
                conn.commit()

            return found
        except sqlite3.Error as e:
            _rollback(conn)
            raise StoreError(f"Failed to match '{key}': {e}")


def delete_all_partitions(conn: sqlite3.Connection) -> int:
    """Delete every partition regardless of generation.

    Returns:
        Number of partitions deleted.
    """
    with _store_lock:
        try:
            conn.execute("DELETE FROM entries")
            cursor = conn.execute("DELETE FROM partitions")
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            _rollback(conn)
            raise StoreError(f"Failed to delete partitions: {e}")
