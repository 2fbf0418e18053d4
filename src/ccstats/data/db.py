"""Async SQLite connection manager using aiosqlite.

One writer connection serialised by an ``asyncio.Lock`` and one reader
connection on the same WAL-mode file. Readers only observe committed data.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from pathlib import Path
from types import TracebackType
from typing import Any

import aiosqlite

from ccstats.errors import StorageError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

MEMORY_PATH = ":memory:"

_TOKEN_COLUMNS = """
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER GENERATED ALWAYS AS (
        input_tokens + output_tokens + cache_creation_tokens + cache_read_tokens
    ) STORED"""

_AGGREGATE_COLUMNS = f"""{_TOKEN_COLUMNS},
    total_cost REAL NOT NULL DEFAULT 0,
    session_count INTEGER NOT NULL DEFAULT 0,
    request_count INTEGER NOT NULL DEFAULT 0,
    effective_request_count INTEGER NOT NULL DEFAULT 0"""

# Individual statements so the schema can be (re)built inside an open
# transaction; executescript() would commit implicitly.
SCHEMA_STATEMENTS: tuple[str, ...] = (
    f"""CREATE TABLE IF NOT EXISTS usage_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    date_string TEXT NOT NULL,
    model TEXT NOT NULL,{_TOKEN_COLUMNS},
    cost REAL NOT NULL DEFAULT 0,
    session_id TEXT,
    project_path TEXT NOT NULL DEFAULT '',
    request_id TEXT,
    message_id TEXT,
    message_type TEXT NOT NULL DEFAULT '',
    source_file TEXT NOT NULL DEFAULT ''
)""",
    f"""CREATE TABLE IF NOT EXISTS daily_statistics (
    date TEXT PRIMARY KEY,{_AGGREGATE_COLUMNS},
    models_used TEXT NOT NULL DEFAULT '[]'
)""",
    f"""CREATE TABLE IF NOT EXISTS model_statistics (
    model TEXT PRIMARY KEY,{_AGGREGATE_COLUMNS}
)""",
    f"""CREATE TABLE IF NOT EXISTS project_statistics (
    project_path TEXT PRIMARY KEY,
    project_name TEXT NOT NULL DEFAULT '',
    last_used TEXT NOT NULL DEFAULT '',{_AGGREGATE_COLUMNS}
)""",
    """CREATE TABLE IF NOT EXISTS source_files (
    file_path TEXT PRIMARY KEY,
    file_size INTEGER NOT NULL,
    file_mtime_ns INTEGER NOT NULL
)""",
    "CREATE INDEX IF NOT EXISTS idx_entries_date ON usage_entries(date_string)",
    "CREATE INDEX IF NOT EXISTS idx_entries_model ON usage_entries(model)",
    "CREATE INDEX IF NOT EXISTS idx_entries_project ON usage_entries(project_path)",
    "CREATE INDEX IF NOT EXISTS idx_entries_request ON usage_entries(request_id)",
    "CREATE INDEX IF NOT EXISTS idx_entries_session ON usage_entries(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_entries_source ON usage_entries(source_file)",
)

DROP_STATEMENTS: tuple[str, ...] = (
    "DROP TABLE IF EXISTS usage_entries",
    "DROP TABLE IF EXISTS daily_statistics",
    "DROP TABLE IF EXISTS model_statistics",
    "DROP TABLE IF EXISTS project_statistics",
    "DROP TABLE IF EXISTS source_files",
)


class Database:
    """Async SQLite connection manager using aiosqlite."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = db_path
        self._writer: aiosqlite.Connection | None = None
        self._reader: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._read_lock = asyncio.Lock()
        self._snapshot_owner: asyncio.Task[Any] | None = None
        self._in_transaction = False
        self.requires_full_sync = False

    async def __aenter__(self) -> Database:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def is_memory(self) -> bool:
        return str(self._db_path) == MEMORY_PATH

    @property
    def path(self) -> Path | str:
        return self._db_path

    async def connect(self) -> Database:
        """Open writer and reader connections and ensure the schema."""
        try:
            if not self.is_memory:
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._writer = await aiosqlite.connect(str(self._db_path), isolation_level=None)
            self._writer.row_factory = aiosqlite.Row
            await self._writer.execute("PRAGMA journal_mode=WAL")
            await self._writer.execute("PRAGMA synchronous=NORMAL")
            await self._writer.execute("PRAGMA busy_timeout=5000")
            await self._ensure_schema()
            if self.is_memory:
                self._reader = self._writer
            else:
                self._reader = await aiosqlite.connect(str(self._db_path), isolation_level=None)
                self._reader.row_factory = aiosqlite.Row
                await self._reader.execute("PRAGMA query_only=ON")
                await self._reader.execute("PRAGMA busy_timeout=5000")
        except StorageError:
            await self.close()
            raise
        except (aiosqlite.Error, OSError) as exc:
            await self.close()
            raise StorageError(f"cannot open database {self._db_path}: {exc}") from exc
        return self

    async def close(self) -> None:
        """Close both connections."""
        reader, writer = self._reader, self._writer
        self._reader = None
        self._writer = None
        if reader is not None and reader is not writer:
            await reader.close()
        if writer is not None:
            await writer.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._writer is None:
            msg = "Database not connected. Use 'async with Database(path) as db:'"
            raise RuntimeError(msg)
        return self._writer

    @property
    def reader(self) -> aiosqlite.Connection:
        if self._reader is None:
            msg = "Database not connected. Use 'async with Database(path) as db:'"
            raise RuntimeError(msg)
        return self._reader

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Database]:
        """Run the enclosed writes as one atomic transaction.

        Commits on normal exit and rolls back on any exception, cancellation
        included. Only one transaction is open at a time.
        """
        async with self._write_lock:
            await self._run(self.conn.execute("BEGIN IMMEDIATE"))
            self._in_transaction = True
            try:
                yield self
            except BaseException:
                await asyncio.shield(self._rollback())
                raise
            else:
                try:
                    await self._run(self.conn.execute("COMMIT"))
                except StorageError:
                    await asyncio.shield(self._rollback())
                    raise
            finally:
                self._in_transaction = False

    @asynccontextmanager
    async def read_snapshot(self) -> AsyncIterator[Database]:
        """Run the enclosed reads against one committed snapshot.

        Opens a read transaction on the reader connection so every SELECT in
        the block sees the same commit. Nested use by the same task joins the
        outer snapshot. An in-memory database has a single connection and
        reads it directly.
        """
        task = asyncio.current_task()
        if self.is_memory or (task is not None and self._snapshot_owner is task):
            yield self
            return
        async with self._read_lock:
            await self._run(self.reader.execute("BEGIN"))
            self._snapshot_owner = task
            try:
                yield self
            finally:
                self._snapshot_owner = None
                await asyncio.shield(self._end_snapshot())

    async def _end_snapshot(self) -> None:
        try:
            await self.reader.execute("COMMIT")
        except aiosqlite.Error as exc:
            logger.warning("Closing read snapshot failed: %s", exc)

    async def _rollback(self) -> None:
        try:
            await self.conn.execute("ROLLBACK")
        except aiosqlite.Error as exc:
            logger.warning("Rollback failed: %s", exc)

    async def execute(self, sql: str, params: tuple[Any, ...] = ()) -> aiosqlite.Cursor:
        """Execute a write statement inside the open transaction."""
        self._require_transaction()
        return await self._run(self.conn.execute(sql, params))

    async def execute_many(self, sql: str, params_seq: list[tuple[Any, ...]]) -> None:
        """Execute a write statement with many parameter sets."""
        self._require_transaction()
        await self._run(self.conn.executemany(sql, params_seq))

    async def fetch_all(
        self, sql: str, params: tuple[Any, ...] = (), *, writer: bool = False
    ) -> list[aiosqlite.Row]:
        """Fetch all rows. ``writer=True`` reads uncommitted data of the open transaction."""
        conn = self.conn if writer else self.reader
        cursor = await self._run(conn.execute(sql, params))
        return await self._run(cursor.fetchall())  # type: ignore[return-value]

    async def fetch_one(
        self, sql: str, params: tuple[Any, ...] = (), *, writer: bool = False
    ) -> aiosqlite.Row | None:
        """Fetch a single row."""
        conn = self.conn if writer else self.reader
        cursor = await self._run(conn.execute(sql, params))
        return await self._run(cursor.fetchone())  # type: ignore[return-value]

    async def recreate_schema(self) -> None:
        """Drop and recreate every data table inside the open transaction."""
        self._require_transaction()
        for statement in DROP_STATEMENTS:
            await self.execute(statement)
        for statement in SCHEMA_STATEMENTS:
            await self.execute(statement)

    async def get_meta(self, key: str, *, writer: bool = False) -> str | None:
        row = await self.fetch_one(
            "SELECT value FROM app_meta WHERE key = ?", (key,), writer=writer
        )
        return str(row["value"]) if row else None

    async def set_meta(self, key: str, value: str) -> None:
        await self.execute(
            "INSERT OR REPLACE INTO app_meta (key, value) VALUES (?, ?)", (key, value)
        )

    async def delete_meta(self, key: str) -> None:
        await self.execute("DELETE FROM app_meta WHERE key = ?", (key,))

    def _require_transaction(self) -> None:
        if not self._in_transaction:
            msg = "write attempted outside Database.transaction()"
            raise StorageError(msg)

    async def _run(self, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except (aiosqlite.Error, OverflowError, ValueError) as exc:
            raise StorageError(str(exc)) from exc

    async def _ensure_schema(self) -> None:
        """Rebuild schema when version changes; otherwise ensure all objects exist."""
        self.requires_full_sync = False
        async with self.transaction():
            await self.execute("""
                CREATE TABLE IF NOT EXISTS app_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            value = await self.get_meta("schema_version", writer=True)
            current_version = int(value) if value and value.isdigit() else 0
            if current_version == SCHEMA_VERSION:
                for statement in SCHEMA_STATEMENTS:
                    await self.execute(statement)
                return

            self.requires_full_sync = True
            logger.info(
                "Rebuilding DB schema from version %s to %s", current_version, SCHEMA_VERSION
            )
            await self.recreate_schema()
            await self.delete_meta("last_sync")
            await self.set_meta("schema_version", str(SCHEMA_VERSION))
