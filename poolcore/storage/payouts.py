import time
from typing import List, Optional

from ._base import BaseRepo
from ..states import InvalidTransition, PayoutStatus, check_transition

_SELECT = (
    "SELECT id, participant_id, amount, address, status, txid, created_at, processed_at "
    "FROM payouts"
)


class PayoutRepo(BaseRepo):
    """CRUD operations for the payouts table.

    The pending -> sent step is part of a balance settlement and runs inside
    the payout processor's transaction; the other transitions live here.
    """

    columns = (
        "id", "participant_id", "amount", "address", "status", "txid",
        "created_at", "processed_at",
    )

    def _to_dict(self, row) -> Optional[dict]:
        result = super()._to_dict(row)
        if result is not None:
            result["status"] = PayoutStatus(result["status"])
        return result

    async def create(self, participant_id: int, amount: int, address: str) -> dict:
        cursor = await self._write(
            "INSERT INTO payouts (participant_id, amount, address, status, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (participant_id, amount, address, PayoutStatus.PENDING.value, time.time()),
        )
        return await self.get(cursor.lastrowid)

    async def get(self, payout_id: int) -> Optional[dict]:
        return await self._fetch_one(_SELECT + " WHERE id = ?", (payout_id,))

    async def list_sent(self) -> List[dict]:
        return await self._fetch_all(
            _SELECT + " WHERE status = ? AND txid IS NOT NULL ORDER BY id",
            (PayoutStatus.SENT.value,),
        )

    async def list_for_participant(self, participant_id: int) -> List[dict]:
        return await self._fetch_all(
            _SELECT + " WHERE participant_id = ? ORDER BY id", (participant_id,),
        )

    async def mark_failed(self, payout_id: int) -> dict:
        return await self._transition(payout_id, PayoutStatus.FAILED)

    async def mark_confirmed(self, payout_id: int) -> dict:
        return await self._transition(payout_id, PayoutStatus.CONFIRMED, processed=True)

    async def _transition(self, payout_id: int, new_status: PayoutStatus, processed: bool = False) -> dict:
        payout = await self.get(payout_id)
        if payout is None:
            raise KeyError(f"Payout {payout_id} not found")
        check_transition(payout["status"], new_status)
        processed_at = time.time() if processed else payout["processed_at"]
        cursor = await self._write(
            "UPDATE payouts SET status = ?, processed_at = ? WHERE id = ? AND status = ?",
            (new_status.value, processed_at, payout_id, payout["status"].value),
        )
        if cursor.rowcount != 1:
            raise InvalidTransition(
                f"Payout {payout_id} changed status concurrently (expected {payout['status'].value})"
            )
        payout["status"] = new_status
        payout["processed_at"] = processed_at
        return payout

    async def count(self, status: Optional[PayoutStatus] = None) -> int:
        if status is None:
            return await self._scalar("SELECT COUNT(*) FROM payouts") or 0
        return await self._scalar(
            "SELECT COUNT(*) FROM payouts WHERE status = ?", (status.value,),
        ) or 0
