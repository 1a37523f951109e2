from typing import List

from ._base import BaseRepo

_SELECT = (
    "SELECT id, block_id, participant_id, share_percent, amount, created_at FROM block_rewards"
)


class RewardRepo(BaseRepo):
    """Read access to block_rewards; rows are written by the PPLNS engine's transaction."""

    columns = ("id", "block_id", "participant_id", "share_percent", "amount", "created_at")

    async def list_for_block(self, block_id: int) -> List[dict]:
        return await self._fetch_all(
            _SELECT + " WHERE block_id = ? ORDER BY participant_id", (block_id,),
        )

    async def list_for_participant(self, participant_id: int) -> List[dict]:
        return await self._fetch_all(
            _SELECT + " WHERE participant_id = ? ORDER BY created_at DESC", (participant_id,),
        )

    async def count_for_block(self, block_id: int) -> int:
        return await self._scalar(
            "SELECT COUNT(*) FROM block_rewards WHERE block_id = ?", (block_id,),
        ) or 0

    async def total_for_block(self, block_id: int) -> int:
        return await self._scalar(
            "SELECT COALESCE(SUM(amount), 0) FROM block_rewards WHERE block_id = ?", (block_id,),
        ) or 0
