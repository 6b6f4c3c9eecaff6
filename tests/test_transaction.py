import asyncio

import pytest
from pydantic import ValidationError

from agebridge.core.errors import QueryError, TransactionError
from agebridge.core.logging_context import current_log_context
from agebridge.db.execution import QueryExecutor
from agebridge.db.models import IsolationLevel, TransactionOptions
from agebridge.db.pool import ConnectionPool
from agebridge.db.transaction import TransactionStatus
from tests.fakes import FakePgError, make_config

INSERT_PERSON = "INSERT INTO people (name) VALUES (%s) RETURNING *"


def _executor() -> QueryExecutor:
    return QueryExecutor(ConnectionPool(make_config()))


async def _insert(executor, tx, name):
    return await executor.execute_sql(INSERT_PERSON, (name,), {"transaction": tx})


@pytest.mark.parametrize(
    "options, statement",
    [
        ({}, "BEGIN ISOLATION LEVEL READ COMMITTED"),
        ({"isolation_level": "serializable", "read_only": True, "deferrable": True},
         "BEGIN ISOLATION LEVEL SERIALIZABLE READ ONLY DEFERRABLE"),
        ({"isolation_level": "REPEATABLE_READ", "deferrable": True}, "BEGIN ISOLATION LEVEL REPEATABLE READ"),
        ({"isolation_level": IsolationLevel.READ_UNCOMMITTED}, "BEGIN ISOLATION LEVEL READ UNCOMMITTED"),
    ],
)
def test_begin_statement(options, statement):
    assert TransactionOptions(**options).begin_statement() == statement


def test_transaction_options_validation():
    with pytest.raises(ValidationError):
        TransactionOptions(isolation_level="snapshot")
    with pytest.raises(ValidationError):
        TransactionOptions(timeout=0)


@pytest.mark.asyncio
async def test_commit_persists_and_returns_connection(fake_db):
    table = fake_db.create_table("people", {"name": "text"})
    executor = _executor()

    tx = await executor.begin_transaction()
    assert executor.pool.stats().active == 1
    await _insert(executor, tx, "Ada")
    await tx.commit()

    assert tx.status == TransactionStatus.COMMITTED
    assert [row["name"] for row in table.rows] == ["Ada"]
    assert executor.pool.stats().active == 0
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_rollback_discards_writes(fake_db):
    table = fake_db.create_table("people", {"name": "text"})
    executor = _executor()

    tx = await executor.begin_transaction()
    await _insert(executor, tx, "Ada")
    await tx.rollback()

    assert tx.status == TransactionStatus.ROLLED_BACK
    assert table.rows == []
    assert executor.pool.stats().active == 0
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_failed_savepoint_keeps_outer_work(fake_db):
    table = fake_db.create_table("people", {"name": "text"})
    executor = _executor()

    async with executor.transaction() as tx:
        await _insert(executor, tx, "outer")
        with pytest.raises(QueryError):
            async with tx.savepoint() as inner:
                assert inner.savepoint_name == "sp_1_1"
                assert inner.root is tx
                await _insert(executor, inner, "inner")
                await executor.execute_sql("SELEC broken", options={"transaction": inner})
        assert inner.status == TransactionStatus.ROLLED_BACK
        await _insert(executor, tx, "after")

    assert tx.status == TransactionStatus.COMMITTED
    assert [row["name"] for row in table.rows] == ["outer", "after"]
    assert fake_db.statements_matching("SAVEPOINT sp_1_1") == [
        "SAVEPOINT sp_1_1",
        "ROLLBACK TO SAVEPOINT sp_1_1",
    ]
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_nested_savepoints_release_on_success(fake_db):
    table = fake_db.create_table("people", {"name": "text"})
    executor = _executor()

    async with executor.transaction() as tx:
        async with tx.savepoint() as first:
            await _insert(executor, first, "a")
            async with first.savepoint() as second:
                assert second.level == 2
                assert second.savepoint_name == "sp_2_1"
                await _insert(executor, second, "b")
        async with tx.savepoint() as third:
            assert third.savepoint_name == "sp_1_2"

    assert [row["name"] for row in table.rows] == ["a", "b"]
    assert fake_db.statements_matching("^RELEASE SAVEPOINT") == [
        "RELEASE SAVEPOINT sp_2_1",
        "RELEASE SAVEPOINT sp_1_1",
        "RELEASE SAVEPOINT sp_1_2",
    ]
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_commit_requires_active_transaction(fake_db):
    executor = _executor()
    tx = await executor.begin_transaction()
    await tx.commit()

    with pytest.raises(TransactionError):
        await tx.commit()
    with pytest.raises(TransactionError):
        await tx.rollback()
    with pytest.raises(TransactionError):
        await tx.nested()
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_begin_failure_returns_connection(fake_db):
    fake_db.fail("^BEGIN", FakePgError("terminating connection due to administrator command", "57P01"))
    executor = _executor()

    with pytest.raises(TransactionError):
        await executor.begin_transaction()

    assert executor.pool.stats().active == 0
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_commit_failure_still_returns_connection(fake_db):
    fake_db.fail("^COMMIT$", FakePgError("server closed the connection unexpectedly", "08006"))
    executor = _executor()
    tx = await executor.begin_transaction()

    with pytest.raises(TransactionError):
        await tx.commit()

    assert tx.status == TransactionStatus.ERROR
    assert executor.pool.stats().active == 0
    await tx.rollback()
    assert tx.status == TransactionStatus.ROLLED_BACK
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_timeout_rolls_back_and_returns_connection(fake_db):
    table = fake_db.create_table("people", {"name": "text"})
    executor = _executor()

    tx = await executor.begin_transaction({"timeout": 0.05})
    await _insert(executor, tx, "slow")
    await asyncio.sleep(0.2)

    assert tx.status == TransactionStatus.ERROR
    assert table.rows == []
    assert executor.pool.stats().active == 0
    with pytest.raises(TransactionError):
        await tx.commit()
    with pytest.raises(TransactionError):
        await _insert(executor, tx, "late")
    await tx.rollback()
    assert tx.status == TransactionStatus.ROLLED_BACK
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_timeout_cancelled_by_commit(fake_db):
    executor = _executor()

    tx = await executor.begin_transaction({"timeout": 0.05})
    await tx.commit()
    await asyncio.sleep(0.1)

    assert tx.status == TransactionStatus.COMMITTED
    assert fake_db.statements_matching("^ROLLBACK$") == []
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_with_transaction_commits_result(fake_db):
    table = fake_db.create_table("people", {"name": "text"})
    executor = _executor()

    async def work(tx):
        result = await _insert(executor, tx, "Ada")
        return result.first()["id"]

    new_id = await executor.with_transaction(work)

    assert new_id == 1
    assert [row["name"] for row in table.rows] == ["Ada"]
    assert executor.pool.stats().active == 0
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_with_transaction_tags_log_context(fake_db):
    executor = _executor()
    seen = {}

    async def work(tx):
        seen["transaction_id"] = current_log_context().get("transaction_id")
        return tx.id

    tx_id = await executor.with_transaction(work)

    assert seen["transaction_id"] == tx_id
    assert "transaction_id" not in current_log_context()
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_with_transaction_rolls_back_and_reraises(fake_db):
    table = fake_db.create_table("people", {"name": "text"})
    executor = _executor()

    async def work(tx):
        await _insert(executor, tx, "Ada")
        raise ValueError("business rule violated")

    with pytest.raises(ValueError, match="business rule violated"):
        await executor.with_transaction(work)

    assert table.rows == []
    assert executor.pool.stats().active == 0
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_with_transaction_respects_explicit_rollback(fake_db):
    table = fake_db.create_table("people", {"name": "text"})
    executor = _executor()

    async def work(tx):
        await _insert(executor, tx, "Ada")
        await tx.rollback()
        return "done"

    assert await executor.with_transaction(work) == "done"
    assert table.rows == []
    assert executor.pool.stats().active == 0
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_isolation_level(fake_db):
    executor = _executor()

    async with executor.transaction({"isolation_level": "repeatable read"}) as tx:
        level = await executor.transactions.get_current_isolation_level(tx)
        assert tx.info()["isolation_level"] == "REPEATABLE READ"

    assert level == IsolationLevel.REPEATABLE_READ
    assert await executor.transactions.get_current_isolation_level() == IsolationLevel.READ_COMMITTED
    await executor.pool.close_all()
