"""
blocks.py - Block lifecycle tracker.

Detects pool-found blocks from ckpool's "Solved and confirmed block" log
lines, records them as pending, and advances pending blocks by polling the
node: gone from the chain -> orphaned, enough confirmations -> confirmed,
which hands the block to the reward engine.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional

from poolcore.rpc import RPCError
from poolcore.shares import split_worker_label
from poolcore.states import BlockStatus

if TYPE_CHECKING:
    from poolcore.pplns import RewardEngine
    from poolcore.rpc import NodeRPC
    from poolcore.storage import BlockRepo, ParticipantRepo, WorkerRepo
    from poolcore.tailer import LogTailer

logger = logging.getLogger("blocks")

BLOCK_SOLVED_RE = re.compile(r"Solved and confirmed block (\d+) by (\S+)")
LOG_TIMESTAMP_RE = re.compile(r"\[(\d{4}-\d{2}-\d{2}) (\d{2}:\d{2}:\d{2})(\.\d+)?\]")


def parse_log_timestamp(line: str) -> Optional[float]:
    """Parse ckpool's ``[YYYY-MM-DD HH:MM:SS.mmm]`` prefix into epoch seconds.

    ckpool stamps its log in the host's local time, so the prefix is
    interpreted in the local timezone of this process.
    """
    m = LOG_TIMESTAMP_RE.search(line)
    if not m:
        return None
    try:
        parsed = time.strptime(f"{m.group(1)} {m.group(2)}", "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return None
    try:
        seconds = time.mktime(parsed)
    except (OverflowError, ValueError):
        return None
    return seconds + float(m.group(3) or 0)


@dataclass
class ChainCursor:
    """Last chain height seen by the height poller."""

    last_height: Optional[int] = None


class BlockTracker:
    """Records pool blocks and drives them through confirmation."""

    def __init__(
        self,
        block_repo: "BlockRepo",
        participant_repo: "ParticipantRepo",
        worker_repo: "WorkerRepo",
        node: "NodeRPC",
        rewards: "RewardEngine",
        tailer: "LogTailer",
        block_reward: int,
        maturity_confirmations: int,
        cursor: Optional[ChainCursor] = None,
    ):
        self._blocks = block_repo
        self._participants = participant_repo
        self._workers = worker_repo
        self._node = node
        self._rewards = rewards
        self._tailer = tailer
        self.block_reward = block_reward
        self.maturity_confirmations = maturity_confirmations
        self.cursor = cursor or ChainCursor()

    # -------------------------------------------------------------------
    # Detection
    # -------------------------------------------------------------------

    async def handle_log_line(self, line: str) -> Optional[dict]:
        """Record the block announced by ``line``, if any.

        RPCError propagates so the caller can retry the line later.
        """
        m = BLOCK_SOLVED_RE.search(line)
        if not m:
            return None
        height = int(m.group(1))
        found_by = m.group(2)
        logger.info("Detected block solved: height=%d, worker=%s", height, found_by)

        if await self._blocks.get_by_height(height) is not None:
            logger.debug("Block %d already recorded", height)
            return None

        block_hash = await self._node.get_block_hash(height)
        found_at = parse_log_timestamp(line) or time.time()
        return await self.record_block(height, block_hash, found_by, found_at)

    async def record_block(
        self, height: int, block_hash: str, found_by: str, found_at: Optional[float] = None,
    ) -> Optional[dict]:
        address, worker_name = split_worker_label(found_by)
        participant_id = None
        worker_id = None
        participant = await self._participants.get_by_address(address)
        if participant is None:
            logger.warning("Block %d found by unknown participant %s", height, address)
        else:
            participant_id = participant["id"]
            worker = await self._workers.get_by_name(participant_id, worker_name)
            if worker is not None:
                worker_id = worker["id"]

        difficulty = 1
        info = await self._node.get_block(block_hash)
        if info is not None and info.get("difficulty") is not None:
            difficulty = int(info["difficulty"])

        block = await self._blocks.create(
            height=height,
            block_hash=block_hash,
            reward=self.block_reward,
            found_at=found_at if found_at is not None else time.time(),
            difficulty=difficulty,
            participant_id=participant_id,
            worker_id=worker_id,
        )
        if block is not None:
            logger.info("New pool block recorded: height=%d, hash=%s, foundBy=%s",
                        height, block_hash, found_by)
        return block

    async def process_log(self, path: str) -> int:
        """Scan new lines of the ckpool log for solved blocks."""
        found = 0
        lines = self._tailer.read_lines(path)
        try:
            async for line in lines:
                try:
                    if await self.handle_log_line(line) is not None:
                        found += 1
                except RPCError as e:
                    # stop before the checkpoint moves; the chunk is re-read next cycle
                    logger.warning("Node lookup failed while recording block from %s: %s", path, e)
                    break
                except Exception:
                    logger.exception("Error handling block line in %s: %s", path, line[:120])
        finally:
            await lines.aclose()
        if found:
            logger.info("Found %d new block(s) in %s", found, path)
        return found

    async def poll_height(self) -> int:
        """Walk any chain height advance; returns the number of new heights seen."""
        current = await self._node.get_block_count()
        last = self.cursor.last_height
        if last is None:
            self.cursor.last_height = current
            logger.info("Current block height: %d", current)
            return 0
        if current <= last:
            return 0

        logger.debug("New blocks: %d -> %d", last, current)
        for height in range(last + 1, current + 1):
            if await self.check_pool_block(height):
                await self.record_block(height, await self._node.get_block_hash(height), "unknown")
            self.cursor.last_height = height
        return current - last

    async def check_pool_block(self, height: int) -> bool:
        """Whether ``height`` was mined by the pool.

        Log detection is authoritative until ownership can be proven here.
        """
        # TODO: inspect the coinbase transaction's payout address against the pool wallet
        return False

    # -------------------------------------------------------------------
    # Confirmation
    # -------------------------------------------------------------------

    async def advance_confirmations(self) -> Dict[str, int]:
        counts = {"confirmed": 0, "orphaned": 0, "pending": 0, "errors": 0}
        for block in await self._blocks.list_by_status(BlockStatus.PENDING):
            try:
                outcome = await self._advance(block)
            except RPCError as e:
                logger.warning("Confirmation check failed for block %d: %s", block["height"], e)
                outcome = "errors"
            except Exception:
                logger.exception("Error updating block %d", block["height"])
                outcome = "errors"
            counts[outcome] += 1
        return counts

    async def _advance(self, block: dict) -> str:
        info = await self._node.get_block(block["hash"])
        if info is None or int(info.get("confirmations", 0)) < 0:
            logger.warning("Block %d orphaned (hash %s)", block["height"], block["hash"])
            await self._blocks.transition(block["id"], BlockStatus.ORPHANED)
            return "orphaned"

        confirmations = int(info.get("confirmations", 0))
        if confirmations >= self.maturity_confirmations:
            logger.info("Block %d is now mature (%d confirmations)", block["height"], confirmations)
            await self._blocks.transition(block["id"], BlockStatus.CONFIRMED, confirmations)
            await self._rewards.compute_rewards(block["id"])
            return "confirmed"

        if confirmations != block["confirmations"]:
            await self._blocks.update_confirmations(block["id"], confirmations)
        return "pending"
