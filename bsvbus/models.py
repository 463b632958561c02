"""Records stored in the database and exchanged with clients."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

__all__ = ["IndexedTx", "BlockHeader", "Subscription"]


def _get_str(data: Mapping[str, Any], key: str, optional: bool = False) -> Optional[str]:
    if key not in data or data[key] is None:
        if optional:
            return None
        raise ValueError(f"missing field `{key}`")
    value = data[key]
    if not isinstance(value, str):
        raise ValueError(f"field `{key}` must be a string")
    return value


def _get_int(data: Mapping[str, Any], key: str) -> int:
    if key not in data or data[key] is None:
        raise ValueError(f"missing field `{key}`")
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field `{key}` must be an integer")
    return value


def _require_mapping(data: Any) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError("expected an object")
    return data


@dataclass(frozen=True)
class IndexedTx:
    """A transaction as indexed: id, height, protocol type and raw data."""

    txid: str
    block_height: int
    tx_type: str
    op_return: Optional[str]
    tx_hex: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IndexedTx":
        data = _require_mapping(data)
        return cls(
            txid=_get_str(data, "txid"),
            block_height=_get_int(data, "block_height"),
            tx_type=_get_str(data, "tx_type"),
            op_return=_get_str(data, "op_return", optional=True),
            tx_hex=_get_str(data, "tx_hex"),
        )


@dataclass(frozen=True)
class BlockHeader:
    """Stored metadata for one block."""

    block_hash: str
    height: int
    prev_hash: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Subscription:
    """A client's request for transaction notifications."""

    client_id: str
    filter_type: Optional[str] = None
    op_return_pattern: Optional[str] = None

    @classmethod
    def from_json(cls, text: str) -> "Subscription":
        """Parse a JSON object; raise ValueError if it is malformed."""
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise ValueError(f"invalid JSON: {exc}") from exc
        data = _require_mapping(data)
        return cls(
            client_id=_get_str(data, "client_id"),
            filter_type=_get_str(data, "filter_type", optional=True),
            op_return_pattern=_get_str(data, "op_return_pattern", optional=True),
        )

    def to_dict(self) -> dict:
        return asdict(self)