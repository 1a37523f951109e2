"""
payouts.py - Payout processor.

Disbursement pass: pays every payout-enabled participant whose pending
balance clears the threshold, budgeted against the wallet balance fetched
once per pass. A payout row is written before the send; a successful send
moves it to sent and shifts the amount from pending to paid in one
transaction. A rejected send marks the payout failed and leaves the balance
alone, so the participant is simply picked up again next pass.

Confirmation pass: sent payouts become confirmed once their transaction has
PAYOUT_FINALITY_CONFIRMATIONS confirmations.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, List, Optional

from poolcore.rpc import RPCError
from poolcore.states import PayoutStatus, check_transition
from poolcore.units import format_coins

if TYPE_CHECKING:
    from poolcore.rpc import NodeRPC
    from poolcore.storage import StorageManager

logger = logging.getLogger("payouts")

PAYOUT_FINALITY_CONFIRMATIONS = 6


class PayoutProcessor:
    """Sends participant balances and tracks the payouts to finality."""

    def __init__(self, storage: "StorageManager", node: "NodeRPC", min_payout: int):
        self._storage = storage
        self._node = node
        self.min_payout = min_payout

    async def run_cycle(self):
        await self.process_payouts()
        await self.confirm_payouts()

    async def process_payouts(self) -> List[dict]:
        """Run one disbursement pass; returns the payouts that were sent."""
        eligible = await self._storage.participants.list_payable(self.min_payout)
        if not eligible:
            logger.info("No participants eligible for payout")
            return []
        logger.info("Found %d eligible participant(s)", len(eligible))

        try:
            liquidity = await self._node.get_balance()
        except RPCError as e:
            logger.error("Failed to get wallet balance, skipping payouts: %s", e)
            return []
        logger.info("Pool wallet balance: %s", format_coins(liquidity))

        sent = []
        for participant in eligible:
            pid = participant["id"]
            address = participant["payout_address"]
            amount = participant["pending_balance"]

            if not address:
                logger.info("Participant %d has no payout address, skipping", pid)
                continue
            if liquidity < amount:
                logger.warning("Insufficient wallet balance for participant %d: need %s, have %s",
                               pid, format_coins(amount), format_coins(liquidity))
                continue
            try:
                valid = await self._node.validate_address(address)
            except RPCError as e:
                logger.error("Failed to validate address for participant %d: %s", pid, e)
                continue
            if not valid:
                logger.error("Invalid payout address for participant %d: %s", pid, address)
                continue

            try:
                payout = await self._storage.payouts.create(pid, amount, address)
            except Exception:
                logger.exception("Failed to record payout for participant %d", pid)
                continue
            logger.info("Processing payout %d: %s to %s", payout["id"], format_coins(amount), address)

            # a cycle cancelled mid-send still records the result of the send
            txid = await asyncio.shield(
                self._disburse(payout, f"Pool payout to {participant['username'] or address}"),
            )
            if txid is None:
                continue
            liquidity -= amount
            if payout["status"] == PayoutStatus.SENT:
                sent.append(payout)

        logger.info("Payout processing complete (%d sent)", len(sent))
        return sent

    async def _disburse(self, payout: dict, comment: str) -> Optional[str]:
        """Send one recorded payout and settle it; returns the txid if the node accepted it."""
        try:
            txid = await self._node.send_to_address(payout["address"], payout["amount"], comment)
        except RPCError as e:
            logger.error("Failed to send payout %d: %s", payout["id"], e)
            await self._storage.payouts.mark_failed(payout["id"])
            return None

        try:
            await self._settle(payout, txid)
        except Exception:
            logger.critical("Payout %d was sent as %s but settlement failed; "
                            "participant %d balance needs manual correction",
                            payout["id"], txid, payout["participant_id"], exc_info=True)
            return txid

        payout["status"] = PayoutStatus.SENT
        payout["txid"] = txid
        logger.info("Sent %s to %s, txid: %s", format_coins(payout["amount"]), payout["address"], txid)
        return txid

    async def _settle(self, payout: dict, txid: str):
        """Mark the payout sent and move its amount from pending to paid, atomically."""
        check_transition(payout["status"], PayoutStatus.SENT)
        now = time.time()
        async with self._storage.transaction() as db:
            cursor = await db.execute(
                "UPDATE payouts SET status = ?, txid = ? WHERE id = ? AND status = ?",
                (PayoutStatus.SENT.value, txid, payout["id"], PayoutStatus.PENDING.value),
            )
            if cursor.rowcount != 1:
                raise RuntimeError(f"Payout {payout['id']} is no longer pending")
            await db.execute(
                "UPDATE participants SET pending_balance = pending_balance - ?, "
                "paid_balance = paid_balance + ?, updated_at = ? WHERE id = ?",
                (payout["amount"], payout["amount"], now, payout["participant_id"]),
            )

    async def confirm_payouts(self) -> int:
        """Confirm sent payouts that reached finality; returns how many were confirmed."""
        sent = await self._storage.payouts.list_sent()
        if not sent:
            return 0
        logger.info("Checking %d sent payout(s) for confirmation", len(sent))

        confirmed = 0
        for payout in sent:
            try:
                tx = await self._node.get_transaction(payout["txid"])
                confirmations = int(tx.get("confirmations", 0))
                if confirmations >= PAYOUT_FINALITY_CONFIRMATIONS:
                    await self._storage.payouts.mark_confirmed(payout["id"])
                    confirmed += 1
                    logger.info("Payout %d confirmed (%d confirmations)", payout["id"], confirmations)
            except RPCError as e:
                logger.error("Error checking payout %d: %s", payout["id"], e)
            except Exception:
                logger.exception("Error confirming payout %d", payout["id"])
        return confirmed
