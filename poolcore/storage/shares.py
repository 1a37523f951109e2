from typing import Dict, Optional

from ._base import BaseRepo


class ShareRepo(BaseRepo):
    """Append-only share log plus the window aggregation used by PPLNS."""

    columns = (
        "id", "participant_id", "worker_id", "difficulty", "share_difficulty",
        "is_valid", "submitted_at", "share_hash",
    )

    async def record(
        self,
        participant_id: int,
        worker_id: int,
        difficulty: int,
        share_difficulty: int,
        is_valid: bool,
        submitted_at: float,
        share_hash: Optional[str] = None,
    ) -> Optional[int]:
        """Insert a share and bump the worker's counters in one commit.

        Returns the new share id, or None when ``share_hash`` was already
        recorded (a replayed sharelog line).
        """
        counter = "shares_valid" if is_valid else "shares_invalid"
        async with self._lock:
            try:
                cursor = await self._db.execute(
                    "INSERT OR IGNORE INTO shares (participant_id, worker_id, difficulty, "
                    "share_difficulty, is_valid, submitted_at, share_hash) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (participant_id, worker_id, difficulty, share_difficulty,
                     int(is_valid), submitted_at, share_hash),
                )
                if cursor.rowcount != 1:
                    await self._db.rollback()
                    return None
                share_id = cursor.lastrowid
                await self._db.execute(
                    f"UPDATE workers SET {counter} = {counter} + 1, "
                    "last_seen = MAX(COALESCE(last_seen, 0), ?), "
                    "last_share = MAX(COALESCE(last_share, 0), ?), is_online = 1 "
                    "WHERE id = ?",
                    (submitted_at, submitted_at, worker_id),
                )
                await self._db.commit()
            except Exception:
                await self._db.rollback()
                raise
        return share_id

    async def get(self, share_id: int) -> Optional[dict]:
        row = await self._fetch_one(
            "SELECT id, participant_id, worker_id, difficulty, share_difficulty, is_valid, "
            "submitted_at, share_hash FROM shares WHERE id = ?",
            (share_id,),
        )
        if row is not None:
            row["is_valid"] = bool(row["is_valid"])
        return row

    async def difficulty_by_participant(self, start: float, end: float) -> Dict[int, int]:
        """Sum valid-share difficulty per participant over ``[start, end]``."""
        totals: Dict[int, int] = {}
        async with self._lock:
            async with self._db.execute(
                "SELECT participant_id, difficulty FROM shares "
                "WHERE is_valid = 1 AND submitted_at >= ? AND submitted_at <= ?",
                (start, end),
            ) as cursor:
                async for participant_id, difficulty in cursor:
                    totals[participant_id] = totals.get(participant_id, 0) + difficulty
        return totals

    async def count(self, participant_id: Optional[int] = None) -> int:
        if participant_id is None:
            return await self._scalar("SELECT COUNT(*) FROM shares") or 0
        return await self._scalar(
            "SELECT COUNT(*) FROM shares WHERE participant_id = ?", (participant_id,),
        ) or 0
