"""
test_block_tracker.py - Block detection and confirmation tracking.

Detection from ckpool log lines, the pending -> confirmed/orphaned
lifecycle driven by node confirmations, and recovery from node failures.
"""

import calendar

import pytest
import pytest_asyncio

from poolcore.blocks import BlockTracker, ChainCursor, parse_log_timestamp
from poolcore.pplns import RewardEngine
from poolcore.states import BlockStatus
from poolcore.tailer import LogTailer
from poolcore.units import COIN
from tests.conftest import ADDR_A

pytestmark = pytest.mark.asyncio

REWARD = 10_000 * COIN
MATURITY = 100


def solved_line(height, found_by=f"{ADDR_A}.rig1", stamp="2024-01-15 12:34:56.789"):
    return f"[{stamp}] Solved and confirmed block {height} by {found_by}"


@pytest_asyncio.fixture
async def tracker(storage, node):
    rewards = RewardEngine(storage, window_seconds=7200, fee_basis_points=1000)
    return BlockTracker(
        storage.blocks, storage.participants, storage.workers, node, rewards,
        LogTailer(storage.checkpoints), block_reward=REWARD, maturity_confirmations=MATURITY,
    )


# ── Log parsing ─────────────────────────────────────────────────────────────

class TestLogTimestamp:

    async def test_parses_utc_host(self, local_tz):
        local_tz("UTC")
        expected = calendar.timegm((2024, 1, 15, 12, 34, 56, 0, 0, 0)) + 0.789
        assert parse_log_timestamp(solved_line(5)) == pytest.approx(expected)

    async def test_prefix_is_host_local_time(self, local_tz):
        local_tz("EST5EDT")
        # 12:34:56 EST is 17:34:56 UTC
        expected = calendar.timegm((2024, 1, 15, 17, 34, 56, 0, 0, 0)) + 0.789
        assert parse_log_timestamp(solved_line(5)) == pytest.approx(expected)

    async def test_missing_prefix(self):
        assert parse_log_timestamp("Solved and confirmed block 5 by x") is None

    async def test_impossible_date(self):
        assert parse_log_timestamp("[2024-13-45 99:00:00] Solved") is None


# ── Detection ───────────────────────────────────────────────────────────────

class TestDetection:

    async def test_records_pending_block(self, tracker, storage, node):
        participant, _ = await storage.participants.get_or_create(ADDR_A)
        worker, _ = await storage.workers.get_or_create(participant["id"], "rig1")
        block_hash = node.add_block(1234, difficulty=4567.8)

        block = await tracker.handle_log_line(solved_line(1234))
        assert block["status"] == BlockStatus.PENDING
        assert block["hash"] == block_hash
        assert block["reward"] == REWARD
        assert block["difficulty"] == 4567
        assert block["found_by_participant_id"] == participant["id"]
        assert block["found_by_worker_id"] == worker["id"]
        assert block["found_at"] == pytest.approx(parse_log_timestamp(solved_line(1234)))

    async def test_unknown_finder_leaves_attribution_empty(self, tracker, node):
        node.add_block(77)
        block = await tracker.handle_log_line(solved_line(77, found_by="someone.rig"))
        assert block is not None
        assert block["found_by_participant_id"] is None
        assert block["found_by_worker_id"] is None

    async def test_irrelevant_line(self, tracker):
        assert await tracker.handle_log_line("[2024-01-15 12:00:00.000] Pool stats: 10 users") is None

    async def test_repeat_announcement_ignored(self, tracker, storage, node):
        node.add_block(88)
        assert await tracker.handle_log_line(solved_line(88)) is not None
        assert await tracker.handle_log_line(solved_line(88)) is None
        assert await storage.blocks.count() == 1

    async def test_process_log(self, tracker, storage, node, tmp_path):
        node.add_block(10)
        node.add_block(11)
        path = tmp_path / "ckpool.log"
        path.write_text(
            "\n".join([
                "[2024-01-15 12:00:00.000] Startup",
                solved_line(10),
                "[2024-01-15 12:00:05.000] Accepted share",
                solved_line(11),
            ]) + "\n",
            encoding="utf-8",
        )
        assert await tracker.process_log(str(path)) == 2
        assert await tracker.process_log(str(path)) == 0
        assert await storage.blocks.count() == 2

    async def test_node_failure_retries_line(self, tracker, storage, node, tmp_path):
        node.add_block(20)
        path = tmp_path / "ckpool.log"
        path.write_text(solved_line(20) + "\n", encoding="utf-8")

        node.unavailable = True
        assert await tracker.process_log(str(path)) == 0
        assert await storage.blocks.count() == 0

        node.unavailable = False
        assert await tracker.process_log(str(path)) == 1
        assert (await storage.blocks.get_by_height(20)) is not None


class TestHeightPolling:

    async def test_first_poll_initializes_cursor(self, tracker, node):
        node.height = 500
        assert await tracker.poll_height() == 0
        assert tracker.cursor.last_height == 500

    async def test_advances_cursor(self, tracker, node):
        tracker.cursor = ChainCursor(last_height=500)
        node.height = 503
        assert await tracker.poll_height() == 3
        assert tracker.cursor.last_height == 503
        assert await tracker.poll_height() == 0


# ── Confirmation ────────────────────────────────────────────────────────────

class TestConfirmation:

    async def _record(self, tracker, node, height, confirmations=1):
        node.add_block(height, confirmations=confirmations)
        return await tracker.handle_log_line(solved_line(height))

    async def test_confirmation_count_tracked(self, tracker, storage, node):
        block = await self._record(tracker, node, 30)
        node.set_confirmations(30, 42)
        counts = await tracker.advance_confirmations()
        assert counts["pending"] == 1
        stored = await storage.blocks.get(block["id"])
        assert stored["status"] == BlockStatus.PENDING
        assert stored["confirmations"] == 42

    async def test_matures_and_rewards(self, tracker, storage, node):
        participant, _ = await storage.participants.get_or_create(ADDR_A)
        worker, _ = await storage.workers.get_or_create(participant["id"], "rig1")
        found_at = parse_log_timestamp(solved_line(31))
        await storage.shares.record(participant["id"], worker["id"], 100, 0, True, found_at - 60)

        block = await self._record(tracker, node, 31)
        node.set_confirmations(31, MATURITY)
        counts = await tracker.advance_confirmations()
        assert counts["confirmed"] == 1

        stored = await storage.blocks.get(block["id"])
        assert stored["status"] == BlockStatus.CONFIRMED
        assert stored["confirmations"] == MATURITY
        assert await storage.rewards.count_for_block(block["id"]) == 1
        assert (await storage.participants.get(participant["id"]))["pending_balance"] == 9000 * COIN

    async def test_reward_window_on_non_utc_host(self, tracker, storage, node, local_tz):
        local_tz("EST5EDT")
        participant, _ = await storage.participants.get_or_create(ADDR_A)
        worker, _ = await storage.workers.get_or_create(participant["id"], "rig1")
        # solved at 12:00 EST = 17:00 UTC; the share came one minute earlier
        solved_at = calendar.timegm((2024, 1, 15, 17, 0, 0, 0, 0, 0))
        await storage.shares.record(participant["id"], worker["id"], 100, 0, True, solved_at - 60)

        node.add_block(37, confirmations=MATURITY)
        block = await tracker.handle_log_line(solved_line(37, stamp="2024-01-15 12:00:00.000"))
        assert block["found_at"] == pytest.approx(solved_at)

        await tracker.advance_confirmations()
        assert await storage.rewards.count_for_block(block["id"]) == 1
        assert (await storage.participants.get(participant["id"]))["pending_balance"] == 9000 * COIN

    async def test_one_below_maturity_stays_pending(self, tracker, storage, node):
        block = await self._record(tracker, node, 32)
        node.set_confirmations(32, MATURITY - 1)
        await tracker.advance_confirmations()
        assert (await storage.blocks.get(block["id"]))["status"] == BlockStatus.PENDING

    async def test_block_gone_is_orphaned(self, tracker, storage, node):
        block = await self._record(tracker, node, 33)
        node.orphan(33)
        counts = await tracker.advance_confirmations()
        assert counts["orphaned"] == 1
        assert (await storage.blocks.get(block["id"]))["status"] == BlockStatus.ORPHANED

    async def test_negative_confirmations_is_orphaned(self, tracker, storage, node):
        block = await self._record(tracker, node, 34)
        node.set_confirmations(34, -1)
        await tracker.advance_confirmations()
        assert (await storage.blocks.get(block["id"]))["status"] == BlockStatus.ORPHANED

    async def test_resolved_blocks_not_revisited(self, tracker, storage, node):
        block = await self._record(tracker, node, 35)
        node.orphan(35)
        await tracker.advance_confirmations()
        node.add_block(35, confirmations=MATURITY)
        counts = await tracker.advance_confirmations()
        assert counts == {"confirmed": 0, "orphaned": 0, "pending": 0, "errors": 0}
        assert (await storage.blocks.get(block["id"]))["status"] == BlockStatus.ORPHANED

    async def test_node_down_leaves_blocks_pending(self, tracker, storage, node):
        block = await self._record(tracker, node, 36)
        node.unavailable = True
        counts = await tracker.advance_confirmations()
        assert counts["errors"] == 1
        assert (await storage.blocks.get(block["id"]))["status"] == BlockStatus.PENDING
