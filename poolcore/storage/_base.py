import asyncio
from typing import Iterable, Optional, Sequence

import aiosqlite


class BaseRepo:
    """Shared plumbing for the per-table repositories.

    Reads and writes both take the connection lock, so they serialize with
    the multi-statement transactions opened by ``StorageManager.transaction``
    on the same connection and never observe a transaction half applied.
    """

    columns: Sequence[str] = ()

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def _write(self, sql: str, params: Iterable = ()) -> aiosqlite.Cursor:
        async with self._lock:
            cursor = await self._db.execute(sql, tuple(params))
            await self._db.commit()
        return cursor

    def _to_dict(self, row) -> Optional[dict]:
        if row is None:
            return None
        return dict(zip(self.columns, row))

    async def _fetch_one(self, sql: str, params: Iterable = ()) -> Optional[dict]:
        async with self._lock:
            async with self._db.execute(sql, tuple(params)) as cursor:
                row = await cursor.fetchone()
        return self._to_dict(row)

    async def _fetch_all(self, sql: str, params: Iterable = ()) -> list:
        results = []
        async with self._lock:
            async with self._db.execute(sql, tuple(params)) as cursor:
                async for row in cursor:
                    results.append(self._to_dict(row))
        return results

    async def _scalar(self, sql: str, params: Iterable = ()):
        async with self._lock:
            async with self._db.execute(sql, tuple(params)) as cursor:
                row = await cursor.fetchone()
        return row[0] if row else None
