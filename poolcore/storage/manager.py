import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

try:
    import aiosqlite
except ImportError:
    raise ImportError(
        "aiosqlite is required for the storage layer. "
        "Install with: pip install aiosqlite"
    )

from ._migrate import run_migrations
from .blocks import BlockRepo
from .checkpoints import CheckpointRepo
from .locks import LockRepo
from .participants import ParticipantRepo
from .payouts import PayoutRepo
from .rewards import RewardRepo
from .shares import ShareRepo
from .workers import WorkerRepo

logger = logging.getLogger("storage")


class StorageManager:
    """Top-level manager: opens the database, runs migrations, exposes repos."""

    def __init__(self, db_path: str = "data/pool.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self.participants: Optional[ParticipantRepo] = None
        self.workers: Optional[WorkerRepo] = None
        self.shares: Optional[ShareRepo] = None
        self.blocks: Optional[BlockRepo] = None
        self.rewards: Optional[RewardRepo] = None
        self.payouts: Optional[PayoutRepo] = None
        self.checkpoints: Optional[CheckpointRepo] = None
        self.locks: Optional[LockRepo] = None

    async def initialize(self):
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.execute("PRAGMA busy_timeout=5000")
        await run_migrations(self._db, logger)

        self.participants = ParticipantRepo(self._db, self._lock)
        self.workers = WorkerRepo(self._db, self._lock)
        self.shares = ShareRepo(self._db, self._lock)
        self.blocks = BlockRepo(self._db, self._lock)
        self.rewards = RewardRepo(self._db, self._lock)
        self.payouts = PayoutRepo(self._db, self._lock)
        self.checkpoints = CheckpointRepo(self._db, self._lock)
        self.locks = LockRepo(self._db, self._lock)

        logger.info("Storage initialized: %s", self.db_path)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a multi-statement write as one IMMEDIATE transaction.

        Commits when the block exits normally; rolls back and re-raises on
        any exception, so either every statement applies or none does.
        """
        if self._db is None:
            raise RuntimeError("Storage is not initialized")
        async with self._lock:
            await self._db.execute("BEGIN IMMEDIATE")
            try:
                yield self._db
            except BaseException:
                await self._db.rollback()
                raise
            await self._db.commit()

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Storage closed")
