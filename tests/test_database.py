from contextlib import contextmanager

import pytest
from sqlalchemy import create_engine, text

from bsvbus.database import (
    PARTITION_SIZE,
    clamp_limit,
    get_block,
    get_transaction,
    init_db,
    list_transactions,
    partition_ranges,
    schema_statements,
)
from bsvbus.models import BlockHeader, IndexedTx

TXS = [
    IndexedTx("aa" * 32, 1, "RUN", "6a72756e", "0100"),
    IndexedTx("bb" * 32, 1, "STANDARD", None, "0200"),
    IndexedTx("cc" * 32, 2, "RUN", "6a00", "0300"),
]


@pytest.fixture
def conn():
    engine = create_engine("sqlite://")
    with engine.connect() as connection:
        connection.execute(
            text(
                "CREATE TABLE transactions (txid TEXT, block_height INTEGER, "
                "tx_type TEXT, op_return TEXT, tx_hex TEXT)"
            )
        )
        connection.execute(
            text(
                "CREATE TABLE blocks (block_hash TEXT, height INTEGER, "
                "prev_hash TEXT, timestamp INTEGER)"
            )
        )
        connection.execute(
            text(
                "INSERT INTO transactions VALUES "
                "(:txid, :block_height, :tx_type, :op_return, :tx_hex)"
            ),
            [tx.to_dict() for tx in TXS],
        )
        connection.execute(
            text("INSERT INTO blocks VALUES ('11', 1, '00', 100), ('22', 2, '11', 200)")
        )
        yield connection


class RecordingEngine:
    def __init__(self):
        self.executed = []

    @contextmanager
    def begin(self):
        yield self

    def execute(self, statement):
        self.executed.append(str(statement))


def test_partition_ranges_cover_heights():
    for max_height in (0, 99_999, 100_000, 250_000, 1_000_000):
        ranges = partition_ranges(max_height)
        assert ranges[0][0] == 0
        assert all(end - start == PARTITION_SIZE for start, end in ranges)
        assert all(a[1] == b[0] for a, b in zip(ranges, ranges[1:]))
        assert ranges[-1][0] <= max_height < ranges[-1][1]


def test_partition_ranges_negative_height_is_empty():
    assert partition_ranges(-1) == []
    with pytest.raises(ValueError):
        partition_ranges(10, 0)


def test_schema_statements_single_partition():
    statements = schema_statements(0)
    assert statements[0].startswith("CREATE TABLE IF NOT EXISTS transactions (")
    assert "PARTITION BY RANGE (block_height)" in statements[0]
    assert "PARTITION BY RANGE (height)" in statements[1]
    assert any("transactions_0_100000 PARTITION OF transactions" in s for s in statements)
    assert any("gin_trgm_ops" in s for s in statements)
    assert len(statements) == 2 + 5 * len(partition_ranges(0))


def test_init_db_executes_schema_statements():
    engine = RecordingEngine()
    init_db(engine, 1_000_000)
    assert engine.executed == schema_statements(1_000_000)


def test_clamp_limit():
    assert clamp_limit(None) == 100
    assert clamp_limit(5000) == 1000
    assert clamp_limit(0) == 1
    assert clamp_limit(-3) == 1
    assert clamp_limit(50) == 50


def test_get_transaction(conn):
    assert get_transaction(conn, "bb" * 32) == TXS[1]
    assert get_transaction(conn, "ff" * 32) is None


def test_list_transactions_filters(conn):
    assert set(list_transactions(conn)) == set(TXS)
    assert set(list_transactions(conn, tx_type="RUN")) == {TXS[0], TXS[2]}
    assert set(list_transactions(conn, block_height=1)) == {TXS[0], TXS[1]}
    assert list_transactions(conn, tx_type="RUN", block_height=2) == [TXS[2]]
    assert list_transactions(conn, tx_type="MAP") == []


def test_list_transactions_limit_is_clamped(conn):
    assert len(list_transactions(conn, limit=0)) == 1
    assert len(list_transactions(conn, limit=2)) == 2


def test_get_block(conn):
    assert get_block(conn, 2) == BlockHeader("22", 2, "11")
    assert get_block(conn, 9) is None