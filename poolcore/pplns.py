"""
pplns.py - PPLNS reward engine.

When a block is confirmed, every participant's valid-share difficulty inside
the window [found_at - window, found_at] is summed and the block reward,
less the pool fee, is split proportionally. All amounts are integer units
and every division floors; the undistributed remainder (dust) stays with the
pool. Reward rows and balance credits commit in one IMMEDIATE transaction.
"""

import logging
import time
from typing import TYPE_CHECKING, Dict, List, Optional

from poolcore.states import BlockStatus
from poolcore.units import format_coins

if TYPE_CHECKING:
    from poolcore.storage import StorageManager

logger = logging.getLogger("pplns")

BASIS_POINTS = 10_000


def pool_fee(reward: int, fee_basis_points: int) -> int:
    return reward * fee_basis_points // BASIS_POINTS


def allocate(distributable: int, weights: Dict[int, int]) -> Dict[int, int]:
    """Split ``distributable`` proportionally to ``weights``, flooring each part."""
    total = sum(weights.values())
    if total <= 0:
        raise ValueError("total weight must be positive")
    return {key: distributable * weight // total for key, weight in weights.items()}


class RewardEngine:
    """Computes and credits PPLNS rewards for confirmed blocks."""

    def __init__(self, storage: "StorageManager", window_seconds: int, fee_basis_points: int):
        self._storage = storage
        self.window_seconds = window_seconds
        self.fee_basis_points = fee_basis_points

    async def compute_rewards(self, block_id: int) -> Optional[List[dict]]:
        """Distribute a confirmed block's reward.

        Returns the created reward rows, an empty list when the block was
        already rewarded, or None when the computation was aborted (block
        missing or not confirmed, no shares in the window, store failure).
        An aborted block stays eligible for a later retry.
        """
        block = await self._storage.blocks.get(block_id)
        if block is None:
            logger.error("Block %s not found", block_id)
            return None
        if block["status"] != BlockStatus.CONFIRMED:
            logger.error("Block %d (height %d) is not confirmed (status: %s)",
                         block_id, block["height"], block["status"].value)
            return None
        if await self._storage.rewards.count_for_block(block_id) > 0:
            logger.info("Rewards already calculated for block %d", block["height"])
            return []

        window_end = block["found_at"]
        window_start = window_end - self.window_seconds
        weights = await self._storage.shares.difficulty_by_participant(window_start, window_end)
        total_difficulty = sum(weights.values())
        if total_difficulty == 0:
            logger.error("Total difficulty is 0 for block %d (window %.0f..%.0f), not distributing",
                         block["height"], window_start, window_end)
            return None

        reward = block["reward"]
        fee = pool_fee(reward, self.fee_basis_points)
        distributable = reward - fee
        amounts = allocate(distributable, weights)
        dust = distributable - sum(amounts.values())

        logger.info(
            "Block %d: reward=%s fee=%s distributable=%s participants=%d total_difficulty=%d dust=%d",
            block["height"], format_coins(reward), format_coins(fee), format_coins(distributable),
            len(weights), total_difficulty, dust,
        )

        now = time.time()
        rows = []
        try:
            async with self._storage.transaction() as db:
                # re-check inside the transaction so two callers cannot both credit
                async with db.execute(
                    "SELECT COUNT(*) FROM block_rewards WHERE block_id = ?", (block_id,),
                ) as cur:
                    existing = (await cur.fetchone())[0]
                if existing:
                    logger.info("Rewards for block %d written concurrently, skipping", block["height"])
                    return []

                for participant_id in sorted(amounts):
                    amount = amounts[participant_id]
                    percent = weights[participant_id] * 100 / total_difficulty
                    await db.execute(
                        "INSERT INTO block_rewards (block_id, participant_id, share_percent, amount, created_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (block_id, participant_id, percent, amount, now),
                    )
                    await db.execute(
                        "UPDATE participants SET pending_balance = pending_balance + ?, updated_at = ? "
                        "WHERE id = ?",
                        (amount, now, participant_id),
                    )
                    rows.append({
                        "block_id": block_id,
                        "participant_id": participant_id,
                        "share_percent": percent,
                        "amount": amount,
                    })
        except Exception:
            logger.exception("Reward distribution failed for block %d, rolled back", block["height"])
            return None

        for row in rows:
            logger.info("Block %d participant %d: %.2f%% = %s",
                        block["height"], row["participant_id"], row["share_percent"],
                        format_coins(row["amount"]))
        return rows

    async def process_unrewarded(self) -> int:
        """Compute rewards for every confirmed block still lacking them."""
        blocks = await self._storage.blocks.list_unrewarded()
        if blocks:
            logger.info("Found %d unprocessed confirmed block(s)", len(blocks))
        done = 0
        for block in blocks:
            rows = await self.compute_rewards(block["id"])
            if rows:
                done += 1
        return done
