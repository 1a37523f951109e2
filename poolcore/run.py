"""
run.py - Background worker entry point.

Single process running the pool's scheduled activities against one SQLite
store and one node connection:
 - share-parser:  sharelog ingestion (startup pass, change polling, full rescan)
 - block-watcher: ckpool log block detection, height polling, confirmations
 - pplns:         reward computation backlog for confirmed blocks
 - payout:        disbursement and payout confirmation passes

Usage:
    poolcore-workers [--all] [--share-parser] [--block-watcher] [--pplns] [--payout]
    python -m poolcore.run --db-path data/pool.db
"""

import argparse
import asyncio
import logging
import os
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from poolcore.blocks import BlockTracker
from poolcore.config import Settings
from poolcore.payouts import PayoutProcessor
from poolcore.pplns import RewardEngine
from poolcore.rpc import NodeRPC, RPCError
from poolcore.shares import ShareIngestor
from poolcore.storage import StorageManager
from poolcore.tailer import ChangeDetector, LogTailer, discover_sharelogs

logger = logging.getLogger("workers")

ACTIVITIES = ("share-parser", "block-watcher", "pplns", "payout")


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("aiosqlite").setLevel(logging.INFO)
    logging.getLogger("asyncio").setLevel(logging.INFO)


class PoolWorkers:
    """Wires storage, node client and services, and runs the periodic activities."""

    def __init__(self, settings: Settings, node: Optional[NodeRPC] = None):
        self.settings = settings
        self.storage: Optional[StorageManager] = None
        self.node = node
        self.tailer: Optional[LogTailer] = None
        self.ingestor: Optional[ShareIngestor] = None
        self.rewards: Optional[RewardEngine] = None
        self.tracker: Optional[BlockTracker] = None
        self.payouts: Optional[PayoutProcessor] = None
        self._sharelog_changes = ChangeDetector()
        self._blocklog_changes = ChangeDetector()
        self._activity_locks: Dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in ACTIVITIES}
        self._held: set = set()
        self._tasks: List[asyncio.Task] = []

    async def _init_services(self):
        """Initialize storage and wire up services (must be called in async context)."""
        s = self.settings
        db_dir = os.path.dirname(s.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self.storage = StorageManager(s.db_path)
        await self.storage.initialize()
        if self.node is None:
            self.node = NodeRPC.from_settings(s)

        self.tailer = LogTailer(self.storage.checkpoints)
        self.ingestor = ShareIngestor(
            self.storage.participants, self.storage.workers, self.storage.shares, self.tailer,
            address_prefix=s.address_prefix, min_address_length=s.address_min_length,
        )
        self.rewards = RewardEngine(self.storage, s.pplns_window_seconds, s.fee_basis_points)
        self.tracker = BlockTracker(
            self.storage.blocks, self.storage.participants, self.storage.workers,
            self.node, self.rewards, self.tailer,
            block_reward=s.block_reward_units,
            maturity_confirmations=s.block_maturity_confirmations,
        )
        self.payouts = PayoutProcessor(self.storage, self.node, s.min_payout_units)

        logger.info("Services initialized (db=%s, node=%s:%d)", s.db_path, s.rpc_host, s.rpc_port)

    # -------------------------------------------------------------------
    # Cycle wrappers
    # -------------------------------------------------------------------

    async def run_once(self, activity: str, fn: Callable[[], Awaitable]) -> bool:
        """Run one cycle of ``activity`` if this instance holds its advisory lock.

        Cycles of the same activity never overlap within the process, and a
        failing cycle is logged without affecting the others. The lock is
        renewed while the cycle runs; if another instance takes it over, the
        cycle is cancelled.
        """
        async with self._activity_locks[activity]:
            try:
                owned = await self.storage.locks.acquire(
                    activity, self.settings.instance_id, self.settings.activity_lock_ttl,
                )
            except Exception:
                logger.exception("Could not acquire lock for %s", activity)
                return False
            if not owned:
                logger.debug("%s is held by another instance, skipping cycle", activity)
                return False
            self._held.add(activity)

            cycle = asyncio.ensure_future(fn())
            lost = asyncio.Event()
            heartbeat = asyncio.create_task(self._renew_lock(activity, cycle, lost))
            try:
                await cycle
            except asyncio.CancelledError:
                if not lost.is_set():
                    raise
                logger.error("%s cycle aborted: lock was taken by another instance", activity)
            except Exception:
                logger.exception("Error in %s cycle", activity)
            finally:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)
            return True

    async def _renew_lock(self, activity: str, cycle: asyncio.Future, lost: asyncio.Event):
        ttl = self.settings.activity_lock_ttl
        while not cycle.done():
            await asyncio.sleep(ttl / 3)
            try:
                owned = await self.storage.locks.acquire(activity, self.settings.instance_id, ttl)
            except Exception:
                logger.exception("Could not renew lock for %s", activity)
                continue
            if not owned:
                lost.set()
                self._held.discard(activity)
                cycle.cancel()
                return

    async def _periodic(self, activity: str, interval: float, fn: Callable[[], Awaitable]):
        while True:
            await asyncio.sleep(interval)
            await self.run_once(activity, fn)

    async def share_scan(self):
        await self.ingestor.scan(self.settings.ckpool_log_dir)
        await self.ingestor.sweep_offline(self.settings.worker_offline_after)

    async def share_watch(self):
        for path in self._sharelog_changes.changed(discover_sharelogs(self.settings.ckpool_log_dir)):
            await self.ingestor.ingest_file(path)

    async def block_log(self):
        await self.tracker.process_log(self.settings.ckpool_log_path)

    async def block_log_watch(self):
        if self._blocklog_changes.changed([self.settings.ckpool_log_path]):
            await self.tracker.process_log(self.settings.ckpool_log_path)

    async def block_poll(self):
        try:
            await self.tracker.poll_height()
        except RPCError as e:
            logger.warning("Height poll failed, checking confirmations anyway: %s", e)
        await self.tracker.advance_confirmations()

    async def pplns(self):
        await self.rewards.process_unrewarded()

    async def payout(self):
        await self.payouts.run_cycle()

    # -------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------

    def _schedule(self, activity: str) -> List[tuple]:
        s = self.settings
        if activity == "share-parser":
            return [(s.share_scan_interval, self.share_scan), (s.log_watch_interval, self.share_watch)]
        if activity == "block-watcher":
            return [(s.log_watch_interval, self.block_log_watch), (s.block_poll_interval, self.block_poll)]
        if activity == "pplns":
            return [(s.pplns_poll_interval, self.pplns)]
        if activity == "payout":
            return [(s.payout_interval, self.payout)]
        raise ValueError(f"Unknown activity: {activity}")

    async def start(self, activities: Iterable[str] = ACTIVITIES):
        """Initialize, run a startup pass of each activity, then schedule them."""
        activities = list(activities)
        await self._init_services()

        startup = {
            "share-parser": self.share_scan,
            "block-watcher": self.block_startup,
            "pplns": self.pplns,
            "payout": self.payout,
        }
        for activity in activities:
            await self.run_once(activity, startup[activity])
            for interval, fn in self._schedule(activity):
                self._tasks.append(asyncio.create_task(self._periodic(activity, interval, fn)))
            logger.info("Started %s", activity)

        await asyncio.gather(*self._tasks)

    async def block_startup(self):
        await self.block_log()
        await self.block_poll()

    async def stop(self):
        """Cancel scheduled activities, release locks, and close connections."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self.storage and self.storage.locks:
            for activity in self._held:
                await self.storage.locks.release(activity, self.settings.instance_id)
        self._held.clear()
        if self.node:
            await self.node.close()
        if self.storage:
            await self.storage.close()


def parse_activities(args: argparse.Namespace) -> List[str]:
    chosen = [name for name in ACTIVITIES if getattr(args, name.replace("-", "_"))]
    if args.all or not chosen:
        return list(ACTIVITIES)
    return chosen


async def _serve(workers: PoolWorkers, activities: List[str]):
    try:
        await workers.start(activities)
    finally:
        await workers.stop()


def main(argv: Optional[List[str]] = None):
    """CLI entry point for the pool background workers."""
    parser = argparse.ArgumentParser(description="Mining pool accounting workers")
    parser.add_argument("--all", action="store_true", help="Run every activity (default)")
    parser.add_argument("--share-parser", action="store_true", help="Ingest ckpool sharelogs")
    parser.add_argument("--block-watcher", action="store_true", help="Detect and confirm pool blocks")
    parser.add_argument("--pplns", action="store_true", help="Compute PPLNS rewards")
    parser.add_argument("--payout", action="store_true", help="Send and confirm payouts")
    parser.add_argument("--db-path", default=None, help="SQLite database path (default: $POOL_DB_PATH)")
    parser.add_argument("--log-level", default=None, help="Logging level (default: $LOG_LEVEL)")
    args = parser.parse_args(argv)

    settings = Settings()
    if args.db_path:
        settings.db_path = args.db_path
    if args.log_level:
        settings.log_level = args.log_level.upper()
    setup_logging(settings.log_level)

    activities = parse_activities(args)
    logger.info("=" * 60)
    logger.info("  Mining Pool - Background Workers")
    logger.info("  Activities: %s", ", ".join(activities))
    logger.info("  Database:   %s", settings.db_path)
    logger.info("  Node:       %s", settings.node_url)
    logger.info("  Fee: %s%%  Window: %d min  Maturity: %d  Min payout: %s",
                settings.fee_percent, settings.pplns_window_minutes,
                settings.block_maturity_confirmations, settings.min_payout_threshold)
    logger.info("=" * 60)

    try:
        asyncio.run(_serve(PoolWorkers(settings), activities))
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
