"""JSON-RPC client that fetches blocks from a Bitcoin SV node."""

from __future__ import annotations

import io
import itertools
import logging
from typing import Any, List, Optional, Tuple

import requests

from .config import Network
from .wire import Block

__all__ = ["RpcError", "BlockFetcher"]

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


class RpcError(Exception):
    """Raised when the node reports an error or answers unexpectedly."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


def _as_height(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise RpcError("Missing height")
    return value


class BlockFetcher:
    """Fetches blocks, block hashes and the chain tip over RPC."""

    def __init__(
        self,
        rpc_url: str,
        rpc_user: str,
        rpc_password: str,
        network: Network = Network.MAINNET,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.rpc_url = rpc_url
        self.network = network
        self.timeout = timeout
        self._auth = (rpc_user, rpc_password)
        self._session = requests.Session() if session is None else session
        self._ids = itertools.count(1)
        log.info("Connected to BSV node RPC at %s", rpc_url)

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Send one JSON-RPC request and return its result."""
        payload = {
            "jsonrpc": "1.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params or []),
        }
        try:
            response = self._session.post(
                self.rpc_url, json=payload, auth=self._auth, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise RpcError(f"RPC transport error: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            try:
                response.raise_for_status()
            except requests.HTTPError as http_exc:
                raise RpcError(f"RPC HTTP error: {http_exc}") from http_exc
            raise RpcError("invalid JSON-RPC response") from exc

        if not isinstance(body, dict):
            raise RpcError("invalid JSON-RPC response")
        error = body.get("error")
        if error is not None:
            if isinstance(error, dict):
                raise RpcError(str(error.get("message", error)), error.get("code"))
            raise RpcError(str(error))
        if "result" not in body:
            raise RpcError("invalid JSON-RPC response")
        return body["result"]

    def fetch_block(self, block_hash: str) -> Tuple[Block, int]:
        """Fetch and parse the block with ``block_hash``; return it with its height."""
        normalized = bytes.fromhex(block_hash).hex()

        block_hex = self.call("getblock", [normalized, 0])
        if not isinstance(block_hex, str):
            raise RpcError("Expected string for block hex")
        block = Block.read(io.BytesIO(bytes.fromhex(block_hex)))

        block_json = self.call("getblock", [normalized, 1])
        if not isinstance(block_json, dict):
            raise RpcError("Missing height")
        height = _as_height(block_json.get("height"))

        log.info("Fetched block %d with hash %s", height, normalized)
        return block, height

    def get_block_hash(self, height: int) -> str:
        """Hash of the block at ``height`` on the node's best chain."""
        if height < 0:
            raise ValueError(f"block height must not be negative: {height}")
        result = self.call("getblockhash", [height])
        if not isinstance(result, str):
            raise RpcError("Expected string for block hash")
        return result

    def get_best_block_height(self) -> int:
        """Height of the node's chain tip."""
        tip = self.call("getbestblockhash", [])
        block = self.call("getblock", [tip, 1])
        if not isinstance(block, dict):
            raise RpcError("Missing height")
        return _as_height(block.get("height"))