import time
from typing import List, Optional

from ._base import BaseRepo
from ..states import BlockStatus, InvalidTransition, check_transition

_SELECT = (
    "SELECT id, height, block_hash, reward, difficulty, found_by_participant_id, "
    "found_by_worker_id, status, confirmations, found_at, updated_at FROM blocks"
)


class BlockRepo(BaseRepo):
    """CRUD operations for the blocks table."""

    columns = (
        "id", "height", "hash", "reward", "difficulty", "found_by_participant_id",
        "found_by_worker_id", "status", "confirmations", "found_at", "updated_at",
    )

    def _to_dict(self, row) -> Optional[dict]:
        result = super()._to_dict(row)
        if result is not None:
            result["status"] = BlockStatus(result["status"])
        return result

    async def create(
        self,
        height: int,
        block_hash: str,
        reward: int,
        found_at: float,
        difficulty: int = 1,
        participant_id: Optional[int] = None,
        worker_id: Optional[int] = None,
    ) -> Optional[dict]:
        """Insert a pending block; returns None if the height is already recorded."""
        now = time.time()
        cursor = await self._write(
            "INSERT INTO blocks (height, block_hash, reward, difficulty, found_by_participant_id, "
            "found_by_worker_id, status, confirmations, found_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?) ON CONFLICT(height) DO NOTHING",
            (height, block_hash, reward, difficulty, participant_id, worker_id,
             BlockStatus.PENDING.value, found_at, now),
        )
        if cursor.rowcount != 1:
            return None
        return await self.get_by_height(height)

    async def get(self, block_id: int) -> Optional[dict]:
        return await self._fetch_one(_SELECT + " WHERE id = ?", (block_id,))

    async def get_by_height(self, height: int) -> Optional[dict]:
        return await self._fetch_one(_SELECT + " WHERE height = ?", (height,))

    async def list_by_status(self, status: BlockStatus) -> List[dict]:
        return await self._fetch_all(
            _SELECT + " WHERE status = ? ORDER BY height", (status.value,),
        )

    async def list_unrewarded(self) -> List[dict]:
        """Confirmed blocks that have no block_rewards rows yet."""
        return await self._fetch_all(
            _SELECT + " WHERE status = ? AND NOT EXISTS "
            "(SELECT 1 FROM block_rewards r WHERE r.block_id = blocks.id) ORDER BY height",
            (BlockStatus.CONFIRMED.value,),
        )

    async def list_recent(self, limit: int = 50, offset: int = 0) -> List[dict]:
        return await self._fetch_all(
            _SELECT + " ORDER BY height DESC LIMIT ? OFFSET ?", (limit, offset),
        )

    async def update_confirmations(self, block_id: int, confirmations: int):
        await self._write(
            "UPDATE blocks SET confirmations = ?, updated_at = ? WHERE id = ?",
            (confirmations, time.time(), block_id),
        )

    async def transition(
        self, block_id: int, new_status: BlockStatus, confirmations: Optional[int] = None,
    ) -> dict:
        block = await self.get(block_id)
        if block is None:
            raise KeyError(f"Block {block_id} not found")
        check_transition(block["status"], new_status)
        if confirmations is None:
            confirmations = block["confirmations"]
        cursor = await self._write(
            "UPDATE blocks SET status = ?, confirmations = ?, updated_at = ? "
            "WHERE id = ? AND status = ?",
            (new_status.value, confirmations, time.time(), block_id, block["status"].value),
        )
        if cursor.rowcount != 1:
            raise InvalidTransition(
                f"Block {block_id} changed status concurrently (expected {block['status'].value})"
            )
        block["status"] = new_status
        block["confirmations"] = confirmations
        return block

    async def count(self, status: Optional[BlockStatus] = None) -> int:
        if status is None:
            return await self._scalar("SELECT COUNT(*) FROM blocks") or 0
        return await self._scalar(
            "SELECT COUNT(*) FROM blocks WHERE status = ?", (status.value,),
        ) or 0
