"""
SQLite-backed key-value store.

A single SQLite file is shared by every process of the same user profile.
Each write bumps a global revision counter and stamps the row with the
writer's origin, so other processes can discover it by polling.

Removed keys are kept as tombstones (value NULL) so the removal itself
is visible to pollers.
"""

import asyncio
import sqlite3
from pathlib import Path
from typing import Optional

from peasant_budget.errors import QuotaExceededError
from peasant_budget.log import get_logger
from peasant_budget.services.kvstore.interface import (
    KeyValueStore,
    StorageChangeEvent,
)


logger = get_logger(__name__)


class SQLiteKeyValueStore(KeyValueStore):
    """One process's context on a shared SQLite key-value file."""

    def __init__(
        self,
        db_path: Path,
        quota_bytes: int = 5 * 1024 * 1024,
        origin: Optional[str] = None,
    ):
        super().__init__(origin)
        self._db_path = Path(db_path)
        self._quota_bytes = quota_bytes
        self._watch_task: Optional[asyncio.Task] = None

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; write transactions are opened explicitly
        self._conn = sqlite3.connect(self._db_path, isolation_level=None)
        self._init_schema()
        self._last_seen_revision = self._current_revision()

    def _init_schema(self) -> None:
        cursor = self._conn.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT,
                origin TEXT NOT NULL,
                revision INTEGER NOT NULL
            )
        """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS revision_counter (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                value INTEGER NOT NULL
            )
        """
        )
        cursor.execute(
            "INSERT OR IGNORE INTO revision_counter (id, value) VALUES (1, 0)"
        )

    def _current_revision(self) -> int:
        row = self._conn.execute(
            "SELECT value FROM revision_counter WHERE id = 1"
        ).fetchone()
        return row[0] if row else 0

    @property
    def quota_bytes(self) -> int:
        return self._quota_bytes

    def get(self, key: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT value FROM kv WHERE key = ?", (key,)
        ).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        self._write(key, value)

    def remove(self, key: str) -> None:
        if self.get(key) is not None:
            self._write(key, None)

    def _write(self, key: str, value: Optional[str]) -> None:
        cursor = self._conn.cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            if value is not None:
                others = cursor.execute(
                    """
                    SELECT COALESCE(SUM(LENGTH(CAST(key AS BLOB)) + LENGTH(CAST(value AS BLOB))), 0)
                    FROM kv WHERE value IS NOT NULL AND key != ?
                    """,
                    (key,),
                ).fetchone()[0]
                if others + self.entry_size(key, value) > self._quota_bytes:
                    raise QuotaExceededError()

            cursor.execute("UPDATE revision_counter SET value = value + 1 WHERE id = 1")
            revision = cursor.execute(
                "SELECT value FROM revision_counter WHERE id = 1"
            ).fetchone()[0]
            cursor.execute(
                """
                INSERT INTO kv (key, value, origin, revision) VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    origin = excluded.origin,
                    revision = excluded.revision
                """,
                (key, value, self.origin, revision),
            )
            cursor.execute("COMMIT")
        except BaseException:
            cursor.execute("ROLLBACK")
            raise

    def used_bytes(self) -> int:
        return self._conn.execute(
            """
            SELECT COALESCE(SUM(LENGTH(CAST(key AS BLOB)) + LENGTH(CAST(value AS BLOB))), 0)
            FROM kv WHERE value IS NOT NULL
            """
        ).fetchone()[0]

    def poll_changes(self) -> list[StorageChangeEvent]:
        """
        Dispatch events for writes made by other origins since the last poll.

        Returns:
            The events dispatched, oldest first
        """
        rows = self._conn.execute(
            "SELECT key, origin, revision FROM kv WHERE revision > ? ORDER BY revision",
            (self._last_seen_revision,),
        ).fetchall()

        events = []
        for key, origin, revision in rows:
            self._last_seen_revision = max(self._last_seen_revision, revision)
            if origin == self.origin:
                continue
            event = StorageChangeEvent(key=key, origin=origin)
            events.append(event)
            self._dispatch(event)
        return events

    async def _watch(self, interval: float) -> None:
        while True:
            try:
                self.poll_changes()
            except sqlite3.Error as e:
                logger.warning("change_poll_failed", error=str(e))
            await asyncio.sleep(interval)

    def start_watching(self, interval: float = 1.0) -> asyncio.Task:
        """Poll for changes from other processes in a background task."""
        if self._watch_task is None or self._watch_task.done():
            self._watch_task = asyncio.get_running_loop().create_task(
                self._watch(interval)
            )
        return self._watch_task

    async def stop_watching(self) -> None:
        if self._watch_task is not None:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None

    def close(self) -> None:
        self._conn.close()
