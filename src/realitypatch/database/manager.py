import aiosqlite
from aiosqlitepool import SQLiteConnectionPool
import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from litestar.types.protocols import Logger

from realitypatch.database.retry import with_retries
from realitypatch.errors import VersionConflictError
from realitypatch.schemas.records import StoredRecord, UserRecord


async def init_database(db_pool: SQLiteConnectionPool) -> None:
    async with db_pool.connection() as db:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS records (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                version INTEGER NOT NULL,
                updated_at REAL NOT NULL,
                expires_at REAL NOT NULL
            )
        """)
        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_expires_at
            ON records(expires_at)
        """)
        await db.commit()  # type: ignore


async def create_db_pool(db_path: str, logger: Logger) -> SQLiteConnectionPool:
    def sqlite_connection() -> aiosqlite.Connection:
        if db_path == ":memory:":
            logger.info("Creating in-memory record store connection")
            return aiosqlite.connect("file::memory:?cache=shared", uri=True)

        logger.info("Creating connection to record store at %s", db_path)
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        return aiosqlite.connect(db_path)

    db_pool = SQLiteConnectionPool(connection_factory=sqlite_connection)  # type: ignore
    await init_database(db_pool)
    logger.info("Record store initialized")
    return db_pool


def _epoch(now: Optional[datetime]) -> float:
    return (now or datetime.now(timezone.utc)).timestamp()


class RecordStore:
    """
    Key-value persistence for user records, one row per session id.

    Writes are conditional on the version read by the caller, so two requests
    racing on the same session cannot silently overwrite each other: the loser
    gets VersionConflictError and must re-read and re-apply its change.
    Rows expire `retention_days` after their last write.
    """

    def __init__(
        self,
        db_pool: SQLiteConnectionPool,
        logger: Logger,
        retention_days: float = 30,
        max_retries: int = 3,
        backoff_base: float = 0.1,
        backoff_max: float = 2.0,
    ):
        self.db_pool = db_pool
        self.logger = logger
        self.retention = timedelta(days=retention_days)
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    @staticmethod
    def key(session_id: str) -> str:
        return f"user:{session_id}"

    async def _run(self, operation, description: str):
        return await with_retries(
            operation,
            description,
            self.logger,
            max_retries=self.max_retries,
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
        )

    async def get(
        self, session_id: str, now: Optional[datetime] = None
    ) -> Optional[StoredRecord]:
        """Load a live record and its version, or None if absent or expired."""

        async def operation():
            async with self.db_pool.connection() as db:
                cursor = await db.execute(
                    "SELECT value, version FROM records WHERE key = ? AND expires_at > ?",
                    (self.key(session_id), _epoch(now)),
                )
                return await cursor.fetchone()

        row = await self._run(operation, "get")
        if row is None:
            return None
        return StoredRecord(record=UserRecord.model_validate_json(row[0]), version=row[1])

    async def put(
        self,
        session_id: str,
        record: UserRecord,
        expected_version: Optional[int],
        now: Optional[datetime] = None,
    ) -> int:
        """Write the full record if nobody else wrote since `expected_version`. Returns the new version."""
        key = self.key(session_id)
        value = record.model_dump_json(by_alias=True)
        updated_at = _epoch(now)
        expires_at = updated_at + self.retention.total_seconds()

        async def operation():
            async with self.db_pool.connection() as db:
                if expected_version is None:
                    # Fresh record; an expired row under the same key may be replaced
                    cursor = await db.execute(
                        """
                        INSERT INTO records (key, value, version, updated_at, expires_at)
                        VALUES (?, ?, 1, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET
                            value = excluded.value,
                            version = records.version + 1,
                            updated_at = excluded.updated_at,
                            expires_at = excluded.expires_at
                        WHERE records.expires_at <= excluded.updated_at
                        RETURNING version
                        """,
                        (key, value, updated_at, expires_at),
                    )
                else:
                    cursor = await db.execute(
                        """
                        UPDATE records
                        SET value = ?, version = version + 1, updated_at = ?, expires_at = ?
                        WHERE key = ? AND version = ? AND expires_at > ?
                        RETURNING version
                        """,
                        (value, updated_at, expires_at, key, expected_version, updated_at),
                    )
                row = await cursor.fetchone()
                await db.commit()  # type: ignore
                return row

        row = await self._run(operation, "put")
        if row is None:
            raise VersionConflictError(
                f"Record {key[:25]} changed since version {expected_version}"
            )
        return row[0]

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        async def operation():
            async with self.db_pool.connection() as db:
                cursor = await db.execute(
                    "DELETE FROM records WHERE expires_at <= ?", (_epoch(now),)
                )
                await db.commit()  # type: ignore
                return cursor.rowcount

        purged = await self._run(operation, "purge")
        self.logger.info("Purged %d expired records", purged)
        return purged

    async def ping(self) -> bool:
        async def operation():
            async with self.db_pool.connection() as db:
                cursor = await db.execute("SELECT 1")
                return await cursor.fetchone()

        return (await self._run(operation, "ping")) is not None

    async def stats(self, today: str, now: Optional[datetime] = None) -> tuple[int, int]:
        """Return (live users, requests counted today) across all records."""

        async def operation():
            async with self.db_pool.connection() as db:
                cursor = await db.execute(
                    """
                    SELECT
                        COUNT(*),
                        COALESCE(SUM(
                            CASE WHEN json_extract(value, '$.usage.lastReset') = ?
                            THEN json_extract(value, '$.usage.count') ELSE 0 END
                        ), 0)
                    FROM records
                    WHERE expires_at > ?
                    """,
                    (today, _epoch(now)),
                )
                return await cursor.fetchone()

        row = await self._run(operation, "stats")
        return int(row[0]), int(row[1])
