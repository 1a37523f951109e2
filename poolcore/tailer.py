"""
tailer.py - Checkpointed tailing of append-only log files.

LogTailer yields the complete lines appended to a file since its last
checkpoint and advances the checkpoint once the caller has consumed them
all. A file that shrank below its checkpoint is treated as rotated and
re-read from byte 0. Checkpoints are kept in memory and, when a
CheckpointRepo is given, persisted so a restart resumes where it stopped.
"""

import logging
import os
import re
from typing import TYPE_CHECKING, AsyncIterator, Dict, Iterable, List, Optional, Tuple

if TYPE_CHECKING:
    from poolcore.storage import CheckpointRepo

logger = logging.getLogger("tailer")

_HEX_DIR_RE = re.compile(r"^[0-9a-fA-F]+$")
SHARELOG_SUFFIX = ".sharelog"
READ_CHUNK = 64 * 1024


class LogTailer:
    """Per-path byte checkpoints over append-only text files."""

    def __init__(self, checkpoints: Optional["CheckpointRepo"] = None):
        self._checkpoints = checkpoints
        self._offsets: Dict[str, int] = {}

    def offset(self, path: str) -> int:
        return self._offsets.get(path, 0)

    async def _load_offset(self, path: str) -> int:
        if path not in self._offsets:
            stored = None
            if self._checkpoints is not None:
                stored = await self._checkpoints.get(path)
            self._offsets[path] = stored or 0
        return self._offsets[path]

    async def _save_offset(self, path: str, offset: int):
        self._offsets[path] = offset
        if self._checkpoints is not None:
            await self._checkpoints.set(path, offset)

    async def read_lines(self, path: str) -> AsyncIterator[str]:
        """Yield new non-empty lines of ``path``.

        The checkpoint only moves once the generator is exhausted; a caller
        that stops early (or raises) gets the same lines again next time. A
        trailing fragment without a newline is left for the next read. The
        file is read in ``READ_CHUNK`` pieces, so memory stays bounded by the
        longest line rather than the backlog size.
        """
        offset = await self._load_offset(path)
        try:
            size = os.path.getsize(path)
        except FileNotFoundError:
            return
        except OSError:
            logger.exception("Cannot stat %s", path)
            return

        if size < offset:
            logger.warning("%s shrank below checkpoint (%d < %d), re-reading from start",
                           path, size, offset)
            offset = 0
            await self._save_offset(path, 0)
        if size == offset:
            return

        try:
            fh = open(path, "rb")
        except FileNotFoundError:
            return
        except OSError:
            logger.exception("Cannot open %s", path)
            return

        # ``consumed`` only counts bytes of complete lines already yielded
        consumed = offset
        pending = b""
        with fh:
            fh.seek(offset)
            remaining = size - offset
            while remaining > 0:
                try:
                    chunk = fh.read(min(READ_CHUNK, remaining))
                except OSError:
                    logger.exception("Failed reading %s at offset %d", path, consumed + len(pending))
                    break
                if not chunk:
                    break
                remaining -= len(chunk)
                *complete, pending = (pending + chunk).split(b"\n")
                for raw in complete:
                    consumed += len(raw) + 1
                    line = raw.decode("utf-8", errors="replace").strip()
                    if line:
                        yield line

        if consumed > offset:
            await self._save_offset(path, consumed)


class ChangeDetector:
    """Stat-polling change notification for a set of files."""

    def __init__(self):
        self._seen: Dict[str, Tuple[int, int]] = {}

    def changed(self, paths: Iterable[str]) -> List[str]:
        """Return the paths that appeared or whose size/mtime moved since last call."""
        result = []
        for path in paths:
            try:
                st = os.stat(path)
            except OSError:
                self._seen.pop(path, None)
                continue
            marker = (st.st_size, st.st_mtime_ns)
            if self._seen.get(path) != marker:
                self._seen[path] = marker
                result.append(path)
        return result


def discover_sharelogs(log_dir: str) -> List[str]:
    """Find ckpool sharelogs under ``log_dir``.

    ckpool writes one directory per block template (hex-named) holding
    either ``.sharelog`` or ``<dir>.sharelog``; loose ``*.sharelog`` files
    directly in ``log_dir`` are picked up too.
    """
    try:
        entries = sorted(os.scandir(log_dir), key=lambda e: e.name)
    except FileNotFoundError:
        logger.debug("Log directory not found: %s", log_dir)
        return []

    paths = []
    for entry in entries:
        if entry.is_dir() and _HEX_DIR_RE.match(entry.name):
            for name in (SHARELOG_SUFFIX, entry.name + SHARELOG_SUFFIX):
                candidate = os.path.join(entry.path, name)
                if os.path.isfile(candidate):
                    paths.append(candidate)
                    break
        elif entry.is_file() and entry.name.endswith(SHARELOG_SUFFIX):
            paths.append(entry.path)
    return paths
