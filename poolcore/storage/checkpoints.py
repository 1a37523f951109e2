import time
from typing import Dict, Optional

from ._base import BaseRepo


class CheckpointRepo(BaseRepo):
    """Durable byte offsets for the log tailer, keyed by file path."""

    columns = ("path", "byte_offset", "updated_at")

    async def get(self, path: str) -> Optional[int]:
        return await self._scalar(
            "SELECT byte_offset FROM log_checkpoints WHERE path = ?", (path,),
        )

    async def set(self, path: str, offset: int):
        await self._write(
            "INSERT INTO log_checkpoints (path, byte_offset, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(path) DO UPDATE SET byte_offset = excluded.byte_offset, "
            "updated_at = excluded.updated_at",
            (path, offset, time.time()),
        )

    async def list_all(self) -> Dict[str, int]:
        rows = await self._fetch_all("SELECT path, byte_offset, updated_at FROM log_checkpoints")
        return {r["path"]: r["byte_offset"] for r in rows}
