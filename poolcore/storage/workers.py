import time
from typing import List, Optional, Tuple

from ._base import BaseRepo

_SELECT = (
    "SELECT id, participant_id, name, shares_valid, shares_invalid, last_seen, "
    "last_share, is_online, created_at FROM workers"
)


class WorkerRepo(BaseRepo):
    """CRUD operations for the workers table."""

    columns = (
        "id", "participant_id", "name", "shares_valid", "shares_invalid",
        "last_seen", "last_share", "is_online", "created_at",
    )

    def _to_dict(self, row) -> Optional[dict]:
        result = super()._to_dict(row)
        if result is not None:
            result["is_online"] = bool(result["is_online"])
        return result

    async def get_or_create(self, participant_id: int, name: str) -> Tuple[dict, bool]:
        cursor = await self._write(
            "INSERT INTO workers (participant_id, name, created_at) VALUES (?, ?, ?) "
            "ON CONFLICT(participant_id, name) DO NOTHING",
            (participant_id, name, time.time()),
        )
        created = cursor.rowcount == 1
        return await self.get_by_name(participant_id, name), created

    async def get(self, worker_id: int) -> Optional[dict]:
        return await self._fetch_one(_SELECT + " WHERE id = ?", (worker_id,))

    async def get_by_name(self, participant_id: int, name: str) -> Optional[dict]:
        return await self._fetch_one(
            _SELECT + " WHERE participant_id = ? AND name = ?", (participant_id, name),
        )

    async def list_for_participant(self, participant_id: int) -> List[dict]:
        return await self._fetch_all(
            _SELECT + " WHERE participant_id = ? ORDER BY name", (participant_id,),
        )

    async def mark_offline_since(self, cutoff: float) -> int:
        """Flip online workers whose last share is older than ``cutoff``."""
        cursor = await self._write(
            "UPDATE workers SET is_online = 0 "
            "WHERE is_online = 1 AND (last_seen IS NULL OR last_seen < ?)",
            (cutoff,),
        )
        return cursor.rowcount

    async def count_online(self) -> int:
        return await self._scalar("SELECT COUNT(*) FROM workers WHERE is_online = 1") or 0

    async def count(self) -> int:
        return await self._scalar("SELECT COUNT(*) FROM workers") or 0
