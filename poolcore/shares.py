"""
shares.py - Share ingestion.

Reads ckpool sharelog lines through the LogTailer, validates them, resolves
the participant/worker identity (creating both on first sight) and appends
a Share row. Every line is isolated: a bad line is logged and skipped.
"""

import logging
import time
from typing import TYPE_CHECKING, Optional, Tuple

from pydantic import ValidationError

from poolcore.models import ShareRecord
from poolcore.tailer import discover_sharelogs

if TYPE_CHECKING:
    from poolcore.storage import ParticipantRepo, ShareRepo, WorkerRepo
    from poolcore.tailer import LogTailer

logger = logging.getLogger("shares")

DEFAULT_WORKER_NAME = "default"
WORKER_SEPARATOR = "."


def split_worker_label(label: str) -> Tuple[str, str]:
    """Split ``address.worker`` on the first separator.

    >>> split_worker_label("Taddr.rig.1")
    ('Taddr', 'rig.1')
    >>> split_worker_label("Taddr")
    ('Taddr', 'default')
    """
    address, _, name = label.partition(WORKER_SEPARATOR)
    return address, name or DEFAULT_WORKER_NAME


class ShareIngestor:
    """Turns sharelog lines into participants, workers and shares."""

    def __init__(
        self,
        participant_repo: "ParticipantRepo",
        worker_repo: "WorkerRepo",
        share_repo: "ShareRepo",
        tailer: "LogTailer",
        address_prefix: str = "T",
        min_address_length: int = 30,
    ):
        self._participants = participant_repo
        self._workers = worker_repo
        self._shares = share_repo
        self._tailer = tailer
        self._address_prefix = address_prefix
        self._min_address_length = min_address_length

    def is_plausible_address(self, address: str) -> bool:
        return (
            address.startswith(self._address_prefix)
            and len(address) >= self._min_address_length
        )

    def parse_line(self, line: str, source: str = "") -> Optional[ShareRecord]:
        try:
            record = ShareRecord.model_validate_json(line)
        except ValidationError as e:
            logger.warning("Malformed share in %s (%d error(s)): %s",
                           source or "<input>", e.error_count(), line[:100])
            return None
        if not record.username or not record.workername:
            logger.warning("Skipping share in %s: missing username/workername", source or "<input>")
            return None
        if not self.is_plausible_address(record.username):
            logger.debug("Skipping share with implausible address %r", record.username[:40])
            return None
        return record

    async def ingest_line(self, line: str, source: str = "") -> bool:
        """Store one sharelog line. Returns True if a new share was recorded."""
        record = self.parse_line(line, source)
        if record is None:
            return False

        _, worker_name = split_worker_label(record.workername)
        try:
            participant, created = await self._participants.get_or_create(record.username)
            if created:
                logger.info("Created new participant: %s", record.username)
            worker, created = await self._workers.get_or_create(participant["id"], worker_name)
            if created:
                logger.info("Created new worker: %s", record.workername)

            share_id = await self._shares.record(
                participant_id=participant["id"],
                worker_id=worker["id"],
                difficulty=record.difficulty,
                share_difficulty=record.share_difficulty,
                is_valid=record.result,
                submitted_at=record.submitted_at,
                share_hash=record.hash,
            )
        except Exception:
            logger.exception("Failed to store share from %s for %s", source or "<input>",
                             record.workername)
            return False

        if share_id is None:
            logger.debug("Duplicate share %s ignored", record.hash)
            return False
        return True

    async def ingest_file(self, path: str) -> int:
        processed = 0
        lines = self._tailer.read_lines(path)
        try:
            async for line in lines:
                if await self.ingest_line(line, source=path):
                    processed += 1
        finally:
            await lines.aclose()
        if processed:
            logger.info("Processed %d shares from %s (offset %d)",
                        processed, path, self._tailer.offset(path))
        return processed

    async def scan(self, log_dir: str) -> int:
        """Process every sharelog under ``log_dir``."""
        total = 0
        for path in discover_sharelogs(log_dir):
            try:
                total += await self.ingest_file(path)
            except Exception:
                logger.exception("Error processing sharelog %s", path)
        return total

    async def sweep_offline(self, max_idle: float, now: Optional[float] = None) -> int:
        """Mark workers offline when their last share is older than ``max_idle`` seconds."""
        cutoff = (now if now is not None else time.time()) - max_idle
        count = await self._workers.mark_offline_since(cutoff)
        if count:
            logger.info("Marked %d idle worker(s) offline", count)
        return count
