"""
rpc.py - Blockchain node JSON-RPC client.

Thin async wrapper over the node's bitcoind-style JSON-RPC interface. Every
call may fail; callers treat RPCError (and its NodeUnavailable subclass) as
recoverable and retry on their next cycle.
"""

import asyncio
import itertools
import json
import logging
from decimal import Decimal
from functools import partial
from typing import Any, Optional

import aiohttp

from .units import coins_to_units, format_coins

logger = logging.getLogger("rpc")

RPC_INVALID_ADDRESS_OR_KEY = -5


class RPCError(Exception):
    def __init__(self, code: Optional[int], message: str):
        super().__init__(f"RPC error {code}: {message}" if code is not None else message)
        self.code = code
        self.message = message


class NodeUnavailable(RPCError):
    """Transport failure: connection refused, timeout, or a non-JSON reply."""

    def __init__(self, message: str):
        super().__init__(None, message)


_loads = partial(json.loads, parse_float=Decimal)


class NodeRPC:
    """Request/response client for one node (optionally one wallet)."""

    def __init__(
        self,
        url: str,
        user: str = "",
        password: str = "",
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._url = url
        self._auth = aiohttp.BasicAuth(user, password) if user or password else None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

    @classmethod
    def from_settings(cls, settings) -> "NodeRPC":
        return cls(
            settings.node_url,
            user=settings.rpc_user,
            password=settings.rpc_pass,
            timeout=settings.rpc_timeout,
        )

    async def __aenter__(self) -> "NodeRPC":
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def call(self, method: str, *params: Any) -> Any:
        payload = {
            "jsonrpc": "1.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params),
        }
        session = self._get_session()
        try:
            async with session.post(
                self._url,
                data=json.dumps(payload),
                auth=self._auth,
                headers={"Content-Type": "application/json"},
            ) as resp:
                status = resp.status
                body = await resp.text()
        except asyncio.TimeoutError:
            raise NodeUnavailable(f"{method}: timed out")
        except aiohttp.ClientError as e:
            raise NodeUnavailable(f"{method}: {e}") from e

        try:
            data = _loads(body)
        except ValueError:
            raise NodeUnavailable(f"{method}: HTTP {status} with non-JSON body")
        if not isinstance(data, dict):
            raise NodeUnavailable(f"{method}: unexpected reply {body[:100]!r}")

        error = data.get("error")
        if error:
            raise RPCError(error.get("code"), error.get("message", "unknown error"))
        if status != 200:
            raise RPCError(status, f"{method}: HTTP {status}")
        logger.debug("%s%r -> ok", method, tuple(params))
        return data.get("result")

    # --- Chain ---

    async def get_blockchain_info(self) -> dict:
        return await self.call("getblockchaininfo")

    async def get_block_count(self) -> int:
        return int(await self.call("getblockcount"))

    async def get_block_hash(self, height: int) -> str:
        return await self.call("getblockhash", height)

    async def get_block(self, block_hash: str, verbosity: int = 1) -> Optional[dict]:
        """Return the block, or None if the node does not know the hash."""
        try:
            return await self.call("getblock", block_hash, verbosity)
        except RPCError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                return None
            raise

    async def get_block_by_height(self, height: int) -> Optional[dict]:
        return await self.get_block(await self.get_block_hash(height))

    async def get_network_hashps(self, nblocks: int = 120, height: int = -1) -> Decimal:
        return Decimal(await self.call("getnetworkhashps", nblocks, height))

    # --- Wallet ---

    async def get_balance(self, minconf: int = 1) -> int:
        """Spendable wallet balance in smallest units."""
        balance = await self.call("getbalance", "*", minconf)
        return coins_to_units(Decimal(balance))

    async def validate_address(self, address: str) -> bool:
        result = await self.call("validateaddress", address)
        return bool(result and result.get("isvalid"))

    async def send_to_address(self, address: str, amount: int, comment: str = "") -> str:
        """Send ``amount`` units; returns the transaction id."""
        return await self.call("sendtoaddress", address, format_coins(amount), comment)

    async def get_transaction(self, txid: str) -> dict:
        return await self.call("gettransaction", txid)
