import asyncio

import pytest

from agebridge.core.errors import QueryError, TimeoutError, TransactionError
from agebridge.db.execution import QueryExecutor, _sql_summary
from agebridge.db.models import QueryOptions
from agebridge.db.pool import ConnectionPool
from tests.fakes import FakePgError, make_config


def _executor(**config) -> QueryExecutor:
    return QueryExecutor(ConnectionPool(make_config(**config)))


def test_sql_summary():
    assert _sql_summary("  select *\n  from people  ") == "SELECT len=20 | select * from people"
    assert _sql_summary("") == "UNKNOWN len=0"
    assert _sql_summary("SELECT " + "x" * 200).endswith("...")


@pytest.mark.asyncio
async def test_execute_sql_returns_rows(fake_db):
    executor = _executor()

    result = await executor.execute_sql("SELECT 1 AS one")

    assert result.rows == [{"one": 1}]
    assert result.columns == ["one"]
    assert result.command == "SELECT"
    assert result.scalar() == 1
    assert executor.pool.stats().active == 0
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_retryable_failure_is_retried(fake_db):
    fake_db.fail(r"^SELECT 1 AS one$", FakePgError("connection reset by peer", "08006"))
    executor = _executor()

    result = await executor.execute_sql("SELECT 1 AS one", options={"max_retries": 2, "retry_delay": 0})

    assert result.scalar() == 1
    assert len(fake_db.statements_matching(r"^SELECT 1 AS one$")) == 2
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_idle_session_timeout_is_retried(fake_db):
    fake_db.fail(
        r"^SELECT 1 AS one$",
        FakePgError("terminating connection due to idle-session timeout", "57P05"),
    )
    executor = _executor()

    result = await executor.execute_sql("SELECT 1 AS one", options={"max_retries": 2, "retry_delay": 0})

    assert result.scalar() == 1
    assert len(fake_db.statements_matching(r"^SELECT 1 AS one$")) == 2
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_retries_are_bounded(fake_db):
    fake_db.fail(r"^SELECT 1 AS one$", FakePgError("connection reset by peer", "08006"), times=5)
    executor = _executor()

    with pytest.raises(QueryError) as exc_info:
        await executor.execute_sql("SELECT 1 AS one", options=QueryOptions(max_retries=2, retry_delay=0))

    assert len(fake_db.statements_matching(r"^SELECT 1 AS one$")) == 3
    assert exc_info.value.pg_code == "08006"
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_non_retryable_failure_is_raised_immediately(fake_db):
    executor = _executor()

    with pytest.raises(QueryError) as exc_info:
        await executor.execute_sql("SELEC 1", options={"max_retries": 3, "retry_delay": 0})

    assert str(exc_info.value).startswith("Query execution failed:")
    assert exc_info.value.context["statement"] == "SELEC 1"
    assert exc_info.value.pg_code == "42601"
    assert len(fake_db.statements_matching("^SELEC 1$")) == 1
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_default_is_a_single_attempt(fake_db):
    fake_db.fail(r"^SELECT 1 AS one$", FakePgError("connection reset by peer", "08006"))
    executor = _executor()

    with pytest.raises(QueryError):
        await executor.execute_sql("SELECT 1 AS one")

    assert len(fake_db.statements_matching(r"^SELECT 1 AS one$")) == 1
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_timeout_raises_timeout_error_and_returns_connection(fake_db):
    fake_db.delay(r"^SELECT 2 AS two$", 0.5)
    executor = _executor()

    with pytest.raises(TimeoutError) as exc_info:
        await executor.execute_sql("SELECT 2 AS two", options={"timeout": 0.05})

    assert exc_info.value.context["timeout"] == 0.05
    assert executor.pool.stats().active == 0
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_timeout_during_session_setup_does_not_leak_the_connection(fake_db):
    fake_db.delay(r"^LOAD 'age'$", 0.2)
    executor = _executor(max_size=1)

    with pytest.raises(TimeoutError):
        await executor.execute_sql("SELECT 1 AS one", options={"timeout": 0.05})

    assert executor.pool.stats().active == 0
    assert fake_db.returned == fake_db.connections[:1]

    fake_db.delays.clear()
    result = await executor.execute_sql("SELECT 1 AS one")
    assert result.scalar() == 1
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_statements_in_a_transaction_are_not_retried(fake_db):
    executor = _executor()
    fake_db.fail(r"^SELECT 1 AS one$", FakePgError("connection reset by peer", "08006"))

    tx = await executor.begin_transaction()
    with pytest.raises(QueryError):
        await executor.execute_sql("SELECT 1 AS one", options={"transaction": tx, "max_retries": 3, "retry_delay": 0})
    await tx.rollback()

    assert len(fake_db.statements_matching(r"^SELECT 1 AS one$")) == 1
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_finished_transaction_is_rejected(fake_db):
    executor = _executor()
    tx = await executor.begin_transaction()
    await tx.commit()

    with pytest.raises(TransactionError):
        await executor.execute_sql("SELECT 1 AS one", options={"transaction": tx})
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_execute_cypher(fake_db):
    fake_db.cypher_handler = lambda graph, cypher, params, columns: [
        {"name": '"Alice"', "age": "31"},
        {"name": '"Bob"', "age": "45"},
    ]
    executor = _executor()

    result = await executor.execute_cypher(
        "MATCH (p:Person) WHERE p.age > $min RETURN p.name AS name, p.age",
        {"min": 30},
        graph_name="social",
    )

    assert result.rows == [{"name": "Alice", "age": 31}, {"name": "Bob", "age": 45}]
    call = fake_db.cypher_calls[0]
    assert call["graph"] == "social"
    assert call["params"] == {"min": 30}
    assert call["columns"] == ["name", "age"]
    session = fake_db.statements_matching(r"^(LOAD|SET search_path)")
    # pool initialization, then the per-call session setup
    assert session[-2:] == ["LOAD 'age'", 'SET search_path TO ag_catalog, "$user", public']
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_execute_cypher_with_deeply_nested_return(fake_db):
    executor = _executor()
    nested = "(" * 3000 + "1" + ")" * 3000

    await executor.execute_cypher(f"MATCH (n) RETURN {nested} AS x", graph_name="g")

    assert fake_db.cypher_calls[0]["columns"] == ["x"]
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_execute_cypher_raw_agtype(fake_db):
    fake_db.cypher_handler = lambda graph, cypher, params, columns: [{"n": '{"id": 1, "label": "P", "properties": {}}::vertex'}]
    executor = _executor()

    result = await executor.execute_cypher(
        "MATCH (n) RETURN n", graph_name="g", options={"decode_graph_values": False}
    )

    assert result.rows[0]["n"].endswith("::vertex")
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_execute_cypher_explicit_columns(fake_db):
    executor = _executor()

    await executor.execute_cypher("MATCH (n) RETURN *", graph_name="g", options={"columns": ["node"]})

    assert fake_db.cypher_calls[0]["columns"] == ["node"]
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_execute_cypher_requires_graph_name_before_io(fake_db):
    executor = _executor()

    with pytest.raises(QueryError) as exc_info:
        await executor.execute_cypher("MATCH (n) RETURN n", graph_name=None)

    assert exc_info.value.code == "AGE_GRAPH_NAME_REQUIRED"
    assert fake_db.log == []


@pytest.mark.asyncio
async def test_execute_cypher_invalid_params_before_io(fake_db):
    executor = _executor()

    with pytest.raises(QueryError) as exc_info:
        await executor.execute_cypher("MATCH (n) RETURN n", {"when": object()}, graph_name="g")

    assert exc_info.value.code == "CYPHER_INVALID_PARAMS"
    assert fake_db.log == []


@pytest.mark.asyncio
async def test_execute_cypher_classifies_graph_errors(fake_db):
    fake_db.fail(r"ag_catalog\.cypher\('missing'", FakePgError('graph "missing" does not exist', "3F000"))
    executor = _executor()

    with pytest.raises(QueryError) as exc_info:
        await executor.execute_cypher("MATCH (n) RETURN n", graph_name="missing")

    assert exc_info.value.code == "AGE_GRAPH_NOT_FOUND"
    assert exc_info.value.context["graph_name"] == "missing"
    assert exc_info.value.context["statement"] == "MATCH (n) RETURN n"
    assert exc_info.value.pg_code == "3F000"
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_execute_cypher_column_mismatch(fake_db):
    fake_db.fail(
        r"ag_catalog\.cypher",
        FakePgError("return row and column definition list do not match", "42804"),
    )
    executor = _executor()

    with pytest.raises(QueryError) as exc_info:
        await executor.execute_cypher("MATCH (a)-[r]->(b) RETURN a, b", graph_name="g")

    assert exc_info.value.code == "AGE_COLUMN_MISMATCH"
    assert exc_info.value.context["columns"] == ["a", "b"]
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_execute_cypher_percent_sign_reaches_the_engine(fake_db):
    executor = _executor()

    await executor.execute_cypher("MATCH (n) RETURN n.score % 10 AS bucket", graph_name="g")

    assert fake_db.cypher_calls[0]["cypher"] == "MATCH (n) RETURN n.score % 10 AS bucket"
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_copy_from(fake_db):
    table = fake_db.create_table("people", {"name": "text", "age": "int"})
    executor = _executor()

    copied = await executor.execute_copy_from(
        'COPY "people" ("name", "age") FROM STDIN WITH (FORMAT TEXT)',
        "Alice\t31\nBob\t\\N\n",
    )

    assert copied == 2
    assert [(row["name"], row["age"]) for row in table.rows] == [("Alice", 31), ("Bob", None)]
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_copy_failure_is_a_query_error(fake_db):
    executor = _executor()

    with pytest.raises(QueryError) as exc_info:
        await executor.execute_copy_from('COPY "missing" ("a") FROM STDIN', "x\n")

    assert str(exc_info.value).startswith("COPY operation failed:")
    assert exc_info.value.pg_code == "42P01"
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_stage_parameters(fake_db):
    executor = _executor()

    async with executor.transaction() as tx:
        written = await executor.stage_parameters(tx, {"ids": [1, 2, 3], "filter": {"city": "Oslo"}})
        await executor.stage_parameters(tx, {"ids": [4]})
        staged = {row["key"]: row["value"] for row in tx.connection.raw.temp_tables["age_params"].rows}
        raw = tx.connection.raw

    assert written == 2
    assert staged == {"ids": [4], "filter": {"city": "Oslo"}}
    assert raw.temp_tables["age_params"].rows == []
    await executor.pool.close_all()


@pytest.mark.asyncio
async def test_stage_parameters_requires_a_transaction(fake_db):
    executor = _executor()

    with pytest.raises(QueryError) as exc_info:
        await executor.stage_parameters(None, {"ids": [1]})

    assert exc_info.value.code == "AGE_PARAMS_NO_TRANSACTION"


@pytest.mark.asyncio
async def test_concurrent_calls_share_the_bounded_pool(fake_db):
    fake_db.delay(r"^SELECT 3 AS three$", 0.02)
    executor = _executor(max_size=2)

    results = await asyncio.gather(*(executor.execute_sql("SELECT 3 AS three") for _ in range(6)))

    assert [r.scalar() for r in results] == [3] * 6
    assert len(fake_db.connections) == 2
    await executor.pool.close_all()
