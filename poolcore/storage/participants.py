import time
from typing import List, Optional, Tuple

from ._base import BaseRepo

_SELECT = (
    "SELECT id, address, username, payout_address, pending_balance, paid_balance, "
    "payout_enabled, created_at, updated_at FROM participants"
)


class ParticipantRepo(BaseRepo):
    """CRUD operations for the participants table."""

    columns = (
        "id", "address", "username", "payout_address", "pending_balance",
        "paid_balance", "payout_enabled", "created_at", "updated_at",
    )

    def _to_dict(self, row) -> Optional[dict]:
        result = super()._to_dict(row)
        if result is not None:
            result["payout_enabled"] = bool(result["payout_enabled"])
        return result

    async def get_or_create(self, address: str) -> Tuple[dict, bool]:
        """Return ``(participant, created)``; safe under duplicate calls."""
        now = time.time()
        cursor = await self._write(
            "INSERT INTO participants (address, username, payout_address, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?) ON CONFLICT(address) DO NOTHING",
            (address, address[:16], address, now, now),
        )
        created = cursor.rowcount == 1
        return await self.get_by_address(address), created

    async def get(self, participant_id: int) -> Optional[dict]:
        return await self._fetch_one(_SELECT + " WHERE id = ?", (participant_id,))

    async def get_by_address(self, address: str) -> Optional[dict]:
        if not address:
            return None
        return await self._fetch_one(_SELECT + " WHERE address = ?", (address,))

    async def list_payable(self, min_balance: int) -> List[dict]:
        return await self._fetch_all(
            _SELECT + " WHERE pending_balance >= ? AND pending_balance > 0 AND payout_enabled = 1 "
            "ORDER BY id",
            (min_balance,),
        )

    async def list_all(self) -> List[dict]:
        return await self._fetch_all(_SELECT + " ORDER BY id")

    async def set_payout_address(self, participant_id: int, address: Optional[str]):
        await self._write(
            "UPDATE participants SET payout_address = ?, updated_at = ? WHERE id = ?",
            (address, time.time(), participant_id),
        )

    async def set_payout_enabled(self, participant_id: int, enabled: bool):
        await self._write(
            "UPDATE participants SET payout_enabled = ?, updated_at = ? WHERE id = ?",
            (int(enabled), time.time(), participant_id),
        )

    async def count(self) -> int:
        return await self._scalar("SELECT COUNT(*) FROM participants") or 0
