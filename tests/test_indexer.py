import pytest
from sqlalchemy import create_engine, text

from bsvbus.classifier import TransactionClassifier
from bsvbus.config import Config
from bsvbus.indexer import (
    build_indexed_txs,
    find_fork_point,
    handle_reorg,
    index_block,
    insert_transaction_batch,
    process_block_transactions,
    process_new_block,
    sync_historical_blocks,
)
from bsvbus.metrics import TXS_INDEXED
from bsvbus.models import IndexedTx
from bsvbus.wire import Block, Header, Tx, TxOut

PASSWORD = "password"


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'index.sqlite'}")
    with eng.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE transactions (txid TEXT PRIMARY KEY, block_height INTEGER NOT NULL, "
                "tx_type TEXT NOT NULL, op_return TEXT, tx_hex TEXT NOT NULL)"
            )
        )
        conn.execute(
            text(
                "CREATE TABLE blocks (block_hash TEXT NOT NULL, height INTEGER NOT NULL, "
                "prev_hash TEXT NOT NULL, timestamp INTEGER NOT NULL, "
                "PRIMARY KEY (block_hash, height))"
            )
        )
    yield eng
    eng.dispose()


@pytest.fixture
def classifier():
    return TransactionClassifier(environ={})


def make_tx(lock_time=0, data=None):
    outputs = [TxOut(satoshis=1000, lock_script=b"\x76\xa9")]
    if data is not None:
        outputs.append(TxOut(satoshis=0, lock_script=b"\x6a" + data))
    return Tx(outputs=outputs, lock_time=lock_time)


def make_block(prev_hash=bytes(32), nonce=0, txns=(), timestamp=1_600_000_000):
    return Block(Header(prev_hash=prev_hash, timestamp=timestamp, nonce=nonce), list(txns))


def make_chain(length):
    chain = []
    prev = bytes(32)
    for height in range(length):
        block = make_block(prev, nonce=height, txns=[make_tx(lock_time=height)])
        chain.append(block)
        prev = block.header.hash()
    return chain


class FakeFetcher:
    def __init__(self, chain=(), canonical=None, tip_error=False):
        self.chain = list(chain)
        self.canonical = canonical
        self.tip_error = tip_error

    def get_block_hash(self, height):
        if self.canonical is not None:
            return self.canonical[height]
        return self.chain[height].header.hash().hex()

    def fetch_block(self, block_hash):
        for height, block in enumerate(self.chain):
            if block.header.hash().hex() == block_hash:
                return block, height
        raise KeyError(block_hash)

    def get_best_block_height(self):
        if self.tip_error:
            raise RuntimeError("node unavailable")
        return len(self.chain) - 1


def fetch_rows(engine, sql):
    with engine.connect() as conn:
        return [tuple(row) for row in conn.execute(text(sql))]


def store_block(engine, hash_hex, height, prev="00"):
    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO blocks VALUES (:h, :height, :p, 0)"),
            {"h": hash_hex, "height": height, "p": prev},
        )


def store_tx(engine, txid, height):
    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO transactions VALUES (:t, :h, 'STANDARD', NULL, '00')"),
            {"t": txid, "h": height},
        )


def config():
    return Config(db_url="sqlite://", rpc_user="user", rpc_password=PASSWORD)


def test_build_indexed_txs_fields(classifier):
    run_tx = make_tx(lock_time=1, data=b"run://test")
    plain = Tx()
    block = make_block(txns=[run_tx, plain])
    indexed = build_indexed_txs(block, 7, classifier)
    assert [item.txid for item in indexed] == [run_tx.txid(), plain.txid()]
    assert [item.tx_type for item in indexed] == ["RUN", "STANDARD"]
    assert indexed[0].op_return == (b"\x6a" + b"run://test").hex()
    assert indexed[1].op_return is None
    assert indexed[1].tx_hex == "01000000000000000000"
    assert all(item.block_height == 7 for item in indexed)


def test_process_block_transactions_stores_and_counts(engine, classifier):
    block = make_block(txns=[make_tx(1, b"run://x"), make_tx(2)])
    before = TXS_INDEXED.value
    with engine.begin() as conn:
        count = process_block_transactions(conn, block, 3, classifier)
    assert count == 2
    assert TXS_INDEXED.value - before == 2
    rows = fetch_rows(engine, "SELECT txid, block_height, tx_type FROM transactions ORDER BY tx_type")
    assert rows == [
        (block.txns[0].txid(), 3, "RUN"),
        (block.txns[1].txid(), 3, "STANDARD"),
    ]


def test_process_block_transactions_empty_block(engine, classifier):
    with engine.begin() as conn:
        assert process_block_transactions(conn, make_block(), 1, classifier) == 0
    assert fetch_rows(engine, "SELECT COUNT(*) FROM transactions") == [(0,)]


def test_insert_batch_ignores_duplicates(engine):
    record = IndexedTx(txid="aa", block_height=1, tx_type="STANDARD", op_return=None, tx_hex="00")
    with engine.begin() as conn:
        insert_transaction_batch(conn, [record])
        insert_transaction_batch(conn, [record])
        insert_transaction_batch(conn, [])
    assert fetch_rows(engine, "SELECT txid, block_height FROM transactions") == [("aa", 1)]


def test_index_block_stores_metadata(engine):
    prev = bytes(range(32))
    block = make_block(prev, nonce=9, timestamp=1_234)
    with engine.begin() as conn:
        index_block(conn, block, 4)
        index_block(conn, block, 4)
    rows = fetch_rows(engine, "SELECT block_hash, height, prev_hash, timestamp FROM blocks")
    assert rows == [(block.header.hash().hex(), 4, prev.hex(), 1_234)]


def test_handle_reorg_no_change_when_prev_matches(engine):
    parent = make_block(nonce=1)
    store_block(engine, parent.header.hash().hex(), 1)
    store_tx(engine, "t1", 1)
    child = make_block(parent.header.hash(), nonce=2)
    with engine.begin() as conn:
        handle_reorg(engine, FakeFetcher(), child, 2, conn)
    assert fetch_rows(engine, "SELECT height FROM blocks") == [(1,)]
    assert fetch_rows(engine, "SELECT txid FROM transactions") == [("t1",)]


def test_handle_reorg_rolls_back_to_fork(engine):
    for height, name in [(1, "h1"), (2, "h2"), (3, "h3")]:
        store_block(engine, name, height)
        store_tx(engine, f"t{height}", height)
    fetcher = FakeFetcher(canonical={1: "h1", 2: "other", 3: "other3"})
    new_block = make_block(bytes(32), nonce=5)
    with engine.begin() as conn:
        handle_reorg(engine, fetcher, new_block, 3, conn)
    assert fetch_rows(engine, "SELECT height FROM blocks ORDER BY height") == [(1,)]
    assert fetch_rows(engine, "SELECT txid FROM transactions") == [("t1",)]


def test_find_fork_point_returns_zero_without_match(engine):
    store_block(engine, "mine", 1)
    fetcher = FakeFetcher(canonical={1: "theirs", 2: "x"})
    assert find_fork_point(engine, fetcher, 3) == 0


def test_find_fork_point_finds_matching_height(engine):
    store_block(engine, "a", 1)
    store_block(engine, "b", 2)
    fetcher = FakeFetcher(canonical={1: "a", 2: "z"})
    assert find_fork_point(engine, fetcher, 3) == 1


def test_process_new_block(engine, classifier):
    chain = make_chain(3)
    fetcher = FakeFetcher(chain)
    count = process_new_block(engine, fetcher, classifier, chain[2].header.hash().hex())
    assert count == 1
    assert fetch_rows(engine, "SELECT block_hash, height FROM blocks") == [
        (chain[2].header.hash().hex(), 2)
    ]
    assert fetch_rows(engine, "SELECT txid FROM transactions") == [(chain[2].txns[0].txid(),)]


def test_process_new_block_propagates_fetch_error(engine, classifier):
    with pytest.raises(KeyError):
        process_new_block(engine, FakeFetcher(), classifier, "ab" * 32)
    assert fetch_rows(engine, "SELECT COUNT(*) FROM blocks") == [(0,)]


def test_sync_historical_blocks_from_start(engine, classifier):
    chain = make_chain(3)
    fetcher = FakeFetcher(chain)
    assert sync_historical_blocks(config(), engine, fetcher, classifier) == 2
    rows = fetch_rows(engine, "SELECT block_hash, height FROM blocks ORDER BY height")
    assert rows == [(block.header.hash().hex(), height) for height, block in enumerate(chain)]
    assert fetch_rows(engine, "SELECT COUNT(*) FROM transactions") == [(3,)]

    assert sync_historical_blocks(config(), engine, fetcher, classifier) == 2
    assert fetch_rows(engine, "SELECT COUNT(*) FROM blocks") == [(3,)]


def test_sync_historical_blocks_resumes_after_stored_max(engine, classifier):
    chain = make_chain(4)
    store_block(engine, chain[0].header.hash().hex(), 0)
    store_block(engine, chain[1].header.hash().hex(), 1, chain[0].header.hash().hex())
    fetcher = FakeFetcher(chain)
    assert sync_historical_blocks(config(), engine, fetcher, classifier) == 3
    heights = fetch_rows(engine, "SELECT height FROM blocks ORDER BY height")
    assert heights == [(0,), (1,), (2,), (3,)]
    assert fetch_rows(engine, "SELECT block_height FROM transactions ORDER BY block_height") == [
        (2,),
        (3,),
    ]


def test_sync_uses_start_height_when_tip_unknown(engine, classifier):
    chain = make_chain(2)
    fetcher = FakeFetcher(chain, tip_error=True)
    assert sync_historical_blocks(config(), engine, fetcher, classifier) == 0
    assert fetch_rows(engine, "SELECT height FROM blocks") == [(0,)]