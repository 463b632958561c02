"""Schema creation and read queries for indexed blocks and transactions."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text

from .models import BlockHeader, IndexedTx

__all__ = [
    "PARTITION_SIZE",
    "partition_ranges",
    "schema_statements",
    "init_db",
    "clamp_limit",
    "get_transaction",
    "list_transactions",
    "get_block",
]

PARTITION_SIZE = 100_000
DEFAULT_LIMIT = 100
MIN_LIMIT = 1
MAX_LIMIT = 1000

_TX_COLUMNS = "txid, block_height, tx_type, op_return, tx_hex"

_BASE_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS transactions (
        txid TEXT NOT NULL,
        block_height BIGINT NOT NULL,
        tx_type TEXT NOT NULL,
        op_return TEXT,
        tx_hex TEXT NOT NULL,
        PRIMARY KEY (txid, block_height)
    ) PARTITION BY RANGE (block_height)
    """,
    """
    CREATE TABLE IF NOT EXISTS blocks (
        block_hash TEXT NOT NULL,
        height BIGINT NOT NULL,
        prev_hash TEXT NOT NULL,
        timestamp BIGINT NOT NULL,
        PRIMARY KEY (block_hash, height)
    ) PARTITION BY RANGE (height)
    """,
)


def partition_ranges(max_height: int, partition_size: int = PARTITION_SIZE) -> List[Tuple[int, int]]:
    """Half-open height ranges whose starts run from 0 through ``max_height``."""
    if partition_size <= 0:
        raise ValueError("partition size must be positive")
    return [(start, start + partition_size) for start in range(0, max_height + 1, partition_size)]


def _partition_statements(start: int, end: int) -> List[str]:
    suffix = f"{start}_{end}"
    return [
        f"CREATE TABLE IF NOT EXISTS transactions_{suffix} PARTITION OF transactions "
        f"FOR VALUES FROM ({start}) TO ({end})",
        f"CREATE TABLE IF NOT EXISTS blocks_{suffix} PARTITION OF blocks "
        f"FOR VALUES FROM ({start}) TO ({end})",
        f"CREATE INDEX IF NOT EXISTS idx_tx_type_{suffix} ON transactions_{suffix} (tx_type)",
        f"CREATE INDEX IF NOT EXISTS idx_op_return_{suffix} ON transactions_{suffix} "
        f"USING gin (op_return gin_trgm_ops)",
        f"CREATE INDEX IF NOT EXISTS idx_block_height_{suffix} ON blocks_{suffix} (height)",
    ]


def schema_statements(max_height: int) -> List[str]:
    """Every DDL statement needed for partitions covering heights up to ``max_height``."""
    statements = [" ".join(stmt.split()) for stmt in _BASE_TABLES]
    for start, end in partition_ranges(max_height):
        statements.extend(_partition_statements(start, end))
    return statements


def init_db(engine: Any, max_height: int) -> None:
    """Create the partitioned tables and their indexes."""
    with engine.begin() as conn:
        for statement in schema_statements(max_height):
            conn.execute(text(statement))


def clamp_limit(limit: Optional[int]) -> int:
    """Page size: 100 by default, kept between 1 and 1000."""
    if limit is None:
        return DEFAULT_LIMIT
    return max(MIN_LIMIT, min(MAX_LIMIT, limit))


def get_transaction(conn: Any, txid: str) -> Optional[IndexedTx]:
    """The transaction with ``txid``, or None."""
    row = (
        conn.execute(
            text(f"SELECT {_TX_COLUMNS} FROM transactions WHERE txid = :txid"),
            {"txid": txid},
        )
        .mappings()
        .first()
    )
    return None if row is None else IndexedTx(**dict(row))


def list_transactions(
    conn: Any,
    tx_type: Optional[str] = None,
    block_height: Optional[int] = None,
    limit: Optional[int] = None,
) -> List[IndexedTx]:
    """Transactions matching the optional filters, at most ``clamp_limit(limit)``."""
    sql = f"SELECT {_TX_COLUMNS} FROM transactions WHERE 1=1"
    params: Dict[str, Any] = {}
    if tx_type is not None:
        sql += " AND tx_type = :tx_type"
        params["tx_type"] = tx_type
    if block_height is not None:
        sql += " AND block_height = :block_height"
        params["block_height"] = block_height
    sql += " LIMIT :limit"
    params["limit"] = clamp_limit(limit)
    rows = conn.execute(text(sql), params).mappings().all()
    return [IndexedTx(**dict(row)) for row in rows]


def get_block(conn: Any, height: int) -> Optional[BlockHeader]:
    """The stored block at ``height``, or None."""
    row = (
        conn.execute(
            text("SELECT block_hash, height, prev_hash FROM blocks WHERE height = :height"),
            {"height": height},
        )
        .mappings()
        .first()
    )
    return None if row is None else BlockHeader(**dict(row))