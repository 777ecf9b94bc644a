"""
SQLite database client.

Owns the single aiosqlite connection shared by the catalog, story and
job services. Construct one per process (or per test), call connect()
once, and pass it to the services that need it.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Any, Iterable, List, AsyncIterator

import aiosqlite


class DatabaseError(Exception):
    """Raised when the database is used before connect() or after close()."""
    pass


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS categories (
        id TEXT PRIMARY KEY,
        slug TEXT UNIQUE NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS places (
        id TEXT PRIMARY KEY,
        slug TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        category_id TEXT NOT NULL REFERENCES categories(id) ON DELETE CASCADE,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (category_id, slug)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scenarios (
        id TEXT PRIMARY KEY,
        slug TEXT UNIQUE NOT NULL,
        title TEXT NOT NULL,
        short_description TEXT NOT NULL DEFAULT '',
        seed_text TEXT NOT NULL,
        category_id TEXT NOT NULL REFERENCES categories(id) ON DELETE CASCADE,
        place_id TEXT NOT NULL REFERENCES places(id) ON DELETE CASCADE,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (place_id, seed_text)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stories (
        id TEXT PRIMARY KEY,
        slug TEXT UNIQUE NOT NULL,
        title TEXT NOT NULL,
        body TEXT NOT NULL DEFAULT '',
        audio_url TEXT,
        scenario_id TEXT UNIQUE NOT NULL REFERENCES scenarios(id) ON DELETE CASCADE,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vocabulary_items (
        id TEXT PRIMARY KEY,
        story_id TEXT NOT NULL REFERENCES stories(id) ON DELETE CASCADE,
        phrase TEXT NOT NULL,
        meaning_en TEXT NOT NULL,
        meaning_zh TEXT,
        type TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (story_id, phrase)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS story_generation_jobs (
        id TEXT PRIMARY KEY,
        scenario_id TEXT UNIQUE NOT NULL REFERENCES scenarios(id) ON DELETE CASCADE,
        status TEXT NOT NULL DEFAULT 'queued',
        attempt_count INTEGER NOT NULL DEFAULT 0,
        locked_at TEXT,
        locked_by TEXT,
        last_error TEXT,
        last_attempt_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_status ON story_generation_jobs(status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_vocabulary_story ON vocabulary_items(story_id)",
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Fixed-width ISO timestamp so string comparison matches time order."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class Database:
    """
    Shared aiosqlite connection with explicit transaction boundaries.

    The connection runs in autocommit mode; every multi-statement write
    goes through transaction(), which takes the SQLite write lock up front
    (BEGIN IMMEDIATE) so that separate processes racing on the same file
    serialize their read-then-write sequences.
    """

    def __init__(self, db_path: str = "storyhub.db", busy_timeout_seconds: float = 30.0):
        self.db_path = db_path
        self.busy_timeout_seconds = busy_timeout_seconds
        self._conn: Optional[aiosqlite.Connection] = None
        # One statement sequence at a time on the shared connection
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    async def connect(self):
        """Connect to database and create tables if needed"""
        if self._conn is not None:
            return

        db_file = Path(self.db_path)
        db_dir = db_file.parent
        if self.db_path != ":memory:" and str(db_dir) != "." and not db_dir.exists():
            db_dir.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(
            self.db_path,
            timeout=self.busy_timeout_seconds,
            isolation_level=None
        )
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA foreign_keys = ON")
        if self.db_path != ":memory:":
            await self._conn.execute("PRAGMA journal_mode = WAL")
        await self._create_tables()

    async def _create_tables(self):
        async with self.transaction() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)

    def _require_connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise DatabaseError(f"Database {self.db_path} is not connected")
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the enclosed statements as one IMMEDIATE transaction."""
        conn = self._require_connection()
        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run a single write statement; returns the affected row count."""
        conn = self._require_connection()
        async with self._lock:
            cursor = await conn.execute(sql, tuple(params))
            rowcount = cursor.rowcount
            await cursor.close()
            return rowcount

    async def fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
        conn = self._require_connection()
        async with self._lock:
            async with conn.execute(sql, tuple(params)) as cursor:
                return await cursor.fetchone()

    async def fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[aiosqlite.Row]:
        conn = self._require_connection()
        async with self._lock:
            async with conn.execute(sql, tuple(params)) as cursor:
                return list(await cursor.fetchall())

    async def close(self):
        """Close database connection"""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
