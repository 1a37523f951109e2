"""Shared fixtures for the pool accounting test suite."""

import itertools
import json
import time
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from poolcore.rpc import NodeUnavailable, RPCError
from poolcore.storage import StorageManager


# ── Constants ───────────────────────────────────────────────────────────────

ADDR_A = "TAaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
ADDR_B = "TBbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
ADDR_C = "TCcccccccccccccccccccccccccccccccc"


# ── Fake node ───────────────────────────────────────────────────────────────

class FakeNode:
    """In-memory stand-in for NodeRPC with the same method contracts."""

    def __init__(self, height: int = 1000):
        self.height = height
        self.hashes: Dict[int, str] = {}
        self.blocks: Dict[str, dict] = {}
        self.balance = 0
        self.invalid_addresses: set = set()
        self.fail_sends = False
        self.unavailable = False
        self.sent: List[tuple] = []
        self.transactions: Dict[str, dict] = {}
        self._txids = itertools.count(1)

    def _check(self):
        if self.unavailable:
            raise NodeUnavailable("connection refused")

    def add_block(self, height: int, confirmations: int = 1, difficulty: float = 12345.6) -> str:
        block_hash = f"{height:064x}"
        self.hashes[height] = block_hash
        self.blocks[block_hash] = {
            "hash": block_hash,
            "height": height,
            "confirmations": confirmations,
            "difficulty": difficulty,
            "tx": ["coinbase"],
        }
        return block_hash

    def set_confirmations(self, height: int, confirmations: int):
        self.blocks[self.hashes[height]]["confirmations"] = confirmations

    def orphan(self, height: int):
        del self.blocks[self.hashes[height]]

    async def get_block_count(self) -> int:
        self._check()
        return self.height

    async def get_block_hash(self, height: int) -> str:
        self._check()
        if height not in self.hashes:
            raise RPCError(-8, "Block height out of range")
        return self.hashes[height]

    async def get_block(self, block_hash: str) -> Optional[dict]:
        self._check()
        return self.blocks.get(block_hash)

    async def get_balance(self) -> int:
        self._check()
        return self.balance

    async def validate_address(self, address: str) -> bool:
        self._check()
        return address not in self.invalid_addresses

    async def send_to_address(self, address: str, amount: int, comment: str = "") -> str:
        self._check()
        if self.fail_sends:
            raise RPCError(-6, "Insufficient funds")
        txid = f"tx{next(self._txids):062x}"
        self.sent.append((address, amount))
        self.balance -= amount
        self.transactions[txid] = {"txid": txid, "confirmations": 0}
        return txid

    async def get_transaction(self, txid: str) -> dict:
        self._check()
        if txid not in self.transactions:
            raise RPCError(-5, "Invalid or non-wallet transaction id")
        return self.transactions[txid]

    async def close(self):
        pass


# ── Fixtures ────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def storage():
    manager = StorageManager(":memory:")
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def node():
    return FakeNode()


def share_line(
    address: str = ADDR_A,
    worker: Optional[str] = "rig1",
    diff: float = 100.0,
    sdiff: float = 150.0,
    result: bool = True,
    createdate: str = "1700000000,500000000",
    share_hash: Optional[str] = None,
    **extra,
) -> str:
    """Build a ckpool sharelog JSON line."""
    record = {
        "workinfoid": 1,
        "clientid": 7,
        "diff": diff,
        "sdiff": sdiff,
        "result": result,
        "errn": 0,
        "createdate": createdate,
        "workername": f"{address}.{worker}" if worker else address,
        "username": address,
        "address": "10.0.0.5",
        "agent": "cgminer/4.12",
    }
    if share_hash is not None:
        record["hash"] = share_hash
    record.update(extra)
    return json.dumps(record)


@pytest.fixture
def local_tz(monkeypatch):
    """Switch the process timezone for the duration of a test."""
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")

    def use(name: str):
        monkeypatch.setenv("TZ", name)
        time.tzset()

    yield use
    monkeypatch.undo()
    time.tzset()
