import time
from typing import Optional

from ._base import BaseRepo


class LockRepo(BaseRepo):
    """Expiring advisory locks so only one instance runs an activity at a time."""

    columns = ("name", "owner", "expires_at")

    async def acquire(self, name: str, owner: str, ttl: float) -> bool:
        """Take or renew ``name`` for ``owner``; False if another live owner holds it."""
        now = time.time()
        cursor = await self._write(
            "INSERT INTO activity_locks (name, owner, expires_at) VALUES (?, ?, ?) "
            "ON CONFLICT(name) DO UPDATE SET owner = excluded.owner, expires_at = excluded.expires_at "
            "WHERE activity_locks.owner = excluded.owner OR activity_locks.expires_at < ?",
            (name, owner, now + ttl, now),
        )
        return cursor.rowcount == 1

    async def release(self, name: str, owner: str):
        await self._write(
            "DELETE FROM activity_locks WHERE name = ? AND owner = ?", (name, owner),
        )

    async def holder(self, name: str) -> Optional[str]:
        return await self._scalar(
            "SELECT owner FROM activity_locks WHERE name = ? AND expires_at >= ?",
            (name, time.time()),
        )
