"""SQLite database via aiosqlite."""
import asyncio
import aiosqlite
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from storage.models import ALL_TABLES

logger = logging.getLogger(__name__)


class RollbackFailed(Exception):
    """A transaction failed and its rollback failed too; state is unknown."""


def _rows_to_dicts(cursor, rows) -> list[dict]:
    columns = [d[0] for d in cursor.description]
    return [dict(zip(columns, row)) for row in rows]


class Database:
    """Async SQLite database shared by the ledger and the trade store.

    A single connection is used in autocommit mode; writes go through
    ``transaction()``, which serializes transactions with an asyncio lock
    so statements from concurrent tasks never interleave inside one.
    """

    def __init__(self, db_path: str = "data/trades.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def init(self):
        """Initialize database and create tables."""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path, isolation_level=None)
        for ddl in ALL_TABLES:
            await self._db.execute(ddl)
        logger.info("Database initialized", extra={"path": self.db_path})

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Database not initialized")
        return self._db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the enclosed statements as one atomic unit.

        Any exception rolls everything back and is re-raised. If the
        rollback itself fails, ``RollbackFailed`` is raised from the
        original error.
        """
        async with self._lock:
            conn = self.conn
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                await conn.execute("COMMIT")
            except BaseException as exc:
                await self._rollback(conn, exc)
                raise

    @asynccontextmanager
    async def join_or_begin(
        self, conn: Optional[aiosqlite.Connection] = None
    ) -> AsyncIterator[aiosqlite.Connection]:
        """Reuse the caller's transaction, or open a new one."""
        if conn is not None:
            yield conn
            return
        async with self.transaction() as tx:
            yield tx

    async def _rollback(self, conn: aiosqlite.Connection, cause: BaseException):
        if not conn.in_transaction:
            return
        try:
            await conn.execute("ROLLBACK")
        except Exception as e:
            logger.critical(
                "Rollback failed",
                extra={"error": str(e), "cause": repr(cause)},
            )
            raise RollbackFailed(str(e)) from cause

    async def fetchone(
        self, sql: str, params: tuple = (), conn: Optional[aiosqlite.Connection] = None
    ) -> Optional[dict]:
        """Fetch a single row as a dict, inside ``conn``'s transaction if given."""
        if conn is not None:
            return await self._fetchone(conn, sql, params)
        async with self._lock:
            return await self._fetchone(self.conn, sql, params)

    async def fetchall(
        self, sql: str, params: tuple = (), conn: Optional[aiosqlite.Connection] = None
    ) -> list[dict]:
        if conn is not None:
            return await self._fetchall(conn, sql, params)
        async with self._lock:
            return await self._fetchall(self.conn, sql, params)

    @staticmethod
    async def _fetchone(conn, sql, params) -> Optional[dict]:
        cursor = await conn.execute(sql, params)
        row = await cursor.fetchone()
        if row is None:
            return None
        return _rows_to_dicts(cursor, [row])[0]

    @staticmethod
    async def _fetchall(conn, sql, params) -> list[dict]:
        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()
        return _rows_to_dicts(cursor, rows)
