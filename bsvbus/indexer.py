"""Block indexing: historical sync, live notifications, reorg handling."""

from __future__ import annotations

import itertools
import logging
import time
from typing import Any, Iterable, Iterator, List, Sequence

import backoff
import zmq
from sqlalchemy import text

from .classifier import TransactionClassifier
from .config import Config
from .fetcher import BlockFetcher
from .metrics import BLOCK_PROCESS_TIME, TXS_INDEXED
from .models import IndexedTx
from .state import AppState
from .wire import Block, extract_op_return

__all__ = [
    "ZMQ_RECONNECT_DELAY",
    "BATCH_SIZE",
    "build_indexed_txs",
    "insert_transaction_batch",
    "process_block_transactions",
    "index_block",
    "find_fork_point",
    "handle_reorg",
    "process_new_block",
    "sync_historical_blocks",
    "index_blocks",
]

log = logging.getLogger(__name__)

ZMQ_RECONNECT_DELAY = 5
BATCH_SIZE = 1000
ZMQ_RETRY_MAX_TIME = 3600
_TOPIC = b"hashblock"


def _chunks(items: Iterable[IndexedTx], size: int) -> Iterator[List[IndexedTx]]:
    iterator = iter(items)
    while True:
        chunk = list(itertools.islice(iterator, size))
        if not chunk:
            return
        yield chunk


def build_indexed_txs(
    block: Block, height: int, classifier: TransactionClassifier
) -> List[IndexedTx]:
    """Index records for every transaction in ``block``, in block order."""
    return [
        IndexedTx(
            txid=tx.txid(),
            block_height=height,
            tx_type=classifier.classify(tx),
            op_return=extract_op_return(tx),
            tx_hex=tx.to_hex(),
        )
        for tx in block.txns
    ]


def insert_transaction_batch(conn: Any, batch: Sequence[IndexedTx]) -> None:
    """Insert ``batch`` in one statement, skipping transactions already stored."""
    if not batch:
        return
    rows = []
    params = {}
    for position, tx in enumerate(batch):
        rows.append(
            f"(:txid_{position}, :block_height_{position}, :tx_type_{position}, "
            f":op_return_{position}, :tx_hex_{position})"
        )
        params.update(
            {
                f"txid_{position}": tx.txid,
                f"block_height_{position}": tx.block_height,
                f"tx_type_{position}": tx.tx_type,
                f"op_return_{position}": tx.op_return,
                f"tx_hex_{position}": tx.tx_hex,
            }
        )
    sql = (
        "INSERT INTO transactions (txid, block_height, tx_type, op_return, tx_hex) VALUES "
        + ", ".join(rows)
        + " ON CONFLICT (txid) DO NOTHING"
    )
    try:
        conn.execute(text(sql), params)
    except Exception as exc:
        log.error("Failed to insert transaction batch of %d transactions: %s", len(batch), exc)
        raise


def process_block_transactions(
    conn: Any, block: Block, height: int, classifier: TransactionClassifier
) -> int:
    """Classify and store the transactions of ``block``; return how many there were."""
    indexed = build_indexed_txs(block, height, classifier)
    if not indexed:
        return 0
    for batch in _chunks(indexed, BATCH_SIZE):
        insert_transaction_batch(conn, batch)
    TXS_INDEXED.inc(len(indexed))
    return len(indexed)


def index_block(conn: Any, block: Block, height: int) -> None:
    """Store the metadata of ``block`` at ``height``, ignoring duplicates."""
    conn.execute(
        text(
            "INSERT INTO blocks (block_hash, height, prev_hash, timestamp) "
            "VALUES (:block_hash, :height, :prev_hash, :timestamp) "
            "ON CONFLICT (block_hash, height) DO NOTHING"
        ),
        {
            "block_hash": block.header.hash().hex(),
            "height": height,
            "prev_hash": block.header.prev_hash.hex(),
            "timestamp": int(block.header.timestamp),
        },
    )


def find_fork_point(engine: Any, fetcher: BlockFetcher, start_height: int) -> int:
    """Highest height below ``start_height`` whose stored hash is canonical, else 0."""
    with engine.connect() as conn:
        for height in range(start_height - 1, 0, -1):
            our_hash = conn.execute(
                text("SELECT block_hash FROM blocks WHERE height = :height"),
                {"height": height},
            ).scalar()
            if our_hash is not None and our_hash == fetcher.get_block_hash(height):
                return height
    return 0


def handle_reorg(
    engine: Any, fetcher: BlockFetcher, new_block: Block, new_height: int, conn: Any
) -> None:
    """Roll back stored blocks above the fork point if ``new_block`` does not extend them."""
    prev_hash = conn.execute(
        text("SELECT block_hash FROM blocks WHERE height = :height"),
        {"height": new_height - 1},
    ).scalar()
    if prev_hash is None:
        return

    expected_prev_hash = new_block.header.prev_hash.hex()
    if prev_hash == expected_prev_hash:
        return

    log.warning(
        "Reorg detected at height %d. Expected prev hash: %s, got: %s",
        new_height,
        expected_prev_hash,
        prev_hash,
    )
    fork_height = find_fork_point(engine, fetcher, new_height)
    log.warning("Fork point found at height %d. Rolling back to height %d", fork_height, fork_height)

    conn.execute(
        text("DELETE FROM transactions WHERE block_height > :height"), {"height": fork_height}
    )
    conn.execute(text("DELETE FROM blocks WHERE height > :height"), {"height": fork_height})
    log.info("Rolled back blocks from height %d to %d", new_height, fork_height + 1)


def _store_block(
    engine: Any,
    conn: Any,
    fetcher: BlockFetcher,
    classifier: TransactionClassifier,
    block: Block,
    height: int,
) -> int:
    handle_reorg(engine, fetcher, block, height, conn)
    tx_count = process_block_transactions(conn, block, height, classifier)
    index_block(conn, block, height)
    return tx_count


def process_new_block(
    engine: Any, fetcher: BlockFetcher, classifier: TransactionClassifier, block_hash: str
) -> int:
    """Fetch and index one announced block atomically; return its transaction count."""
    try:
        with engine.begin() as conn:
            block, height = fetcher.fetch_block(block_hash)
            return _store_block(engine, conn, fetcher, classifier, block, height)
    except Exception as exc:
        log.error("Failed to commit transaction for block %s: %s", block_hash, exc)
        raise


def sync_historical_blocks(
    config: Config, engine: Any, fetcher: BlockFetcher, classifier: TransactionClassifier
) -> int:
    """Index every block from the stored maximum (or start height) to the tip; return the tip."""
    with engine.connect() as conn:
        latest = conn.execute(text("SELECT MAX(height) FROM blocks")).scalar()
    start_height = config.start_height if latest is None else latest + 1
    try:
        tip_height = fetcher.get_best_block_height()
    except Exception as exc:
        log.warning("Could not read chain tip: %s", exc)
        tip_height = start_height

    log.info("Syncing historical blocks from %d to %d", start_height, tip_height)

    for requested in range(start_height, tip_height + 1):
        block_hash = fetcher.get_block_hash(requested)
        block, height = fetcher.fetch_block(block_hash)
        try:
            with engine.begin() as conn:
                tx_count = _store_block(engine, conn, fetcher, classifier, block, height)
        except Exception as exc:
            log.error("Failed to commit transaction for historical block %d: %s", height, exc)
            raise
        log.info("Synced historical block %d with %d transactions", height, tx_count)

    return tip_height


def _connect_subscriber(context: "zmq.Context", address: str) -> "zmq.Socket":
    @backoff.on_exception(backoff.expo, zmq.ZMQError, max_time=ZMQ_RETRY_MAX_TIME)
    def connect() -> "zmq.Socket":
        subscriber = context.socket(zmq.SUB)
        try:
            subscriber.connect(address)
            subscriber.setsockopt(zmq.SUBSCRIBE, _TOPIC)
        except zmq.ZMQError:
            subscriber.close(linger=0)
            raise
        return subscriber

    return connect()


def index_blocks(config: Config, engine: Any, state: AppState) -> None:
    """Sync history, then index blocks announced over ZMQ until reconnection fails."""
    fetcher = BlockFetcher(config.rpc_url, config.rpc_user, config.rpc_password, config.network)
    classifier = TransactionClassifier()
    sync_historical_blocks(config, engine, fetcher, classifier)

    context = zmq.Context()
    try:
        while True:
            try:
                subscriber = _connect_subscriber(context, config.zmq_addr)
            except zmq.ZMQError as exc:
                log.warning("Failed to reconnect to ZMQ after retries. Exiting...")
                raise ConnectionError("ZMQ connection failed") from exc

            log.info("Listening for ZMQ block notifications at %s", config.zmq_addr)
            try:
                while True:
                    try:
                        parts = subscriber.recv_multipart()
                    except zmq.ZMQError:
                        break
                    if len(parts) < 2 or parts[0] != _TOPIC:
                        continue

                    started = time.monotonic()
                    block_hash = parts[1].hex()
                    try:
                        tx_count = process_new_block(engine, fetcher, classifier, block_hash)
                    except Exception as exc:
                        log.warning("Error processing block %s: %s. Retrying...", block_hash, exc)
                        time.sleep(ZMQ_RECONNECT_DELAY)
                        break
                    elapsed = time.monotonic() - started
                    BLOCK_PROCESS_TIME.observe(elapsed)
                    log.info(
                        "Indexed block %s with %d transactions in %.2fs",
                        block_hash,
                        tx_count,
                        elapsed,
                    )
            finally:
                subscriber.close(linger=0)

            log.warning("ZMQ connection lost. Reconnecting...")
            time.sleep(ZMQ_RECONNECT_DELAY)
    finally:
        context.term()