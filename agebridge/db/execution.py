"""
Query executor: relational statements, Cypher through ag_catalog.cypher(),
and COPY FROM STDIN.

Every call runs inside the same envelope: an optional timeout race, a
bounded retry loop for transient failures, and per-attempt logging. Calls
routed to a transaction run on its connection and are never retried; the
transaction is the unit of retry.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from psycopg.types.json import Jsonb

from agebridge.core.errors import (
    DatabaseError,
    QueryError,
    TimeoutError,
    TransactionError,
    is_retryable,
)
from agebridge.core.logger import setup_logger
from agebridge.core.logging_context import LoggingContext
from agebridge.core.values import UnsupportedValueError, summarize_parameters, validate_parameters
from agebridge.cypher.bridge import classify_graph_error, compile_cypher, session_setup_statements
from agebridge.db.extensions import AGE_PARAMS_TABLE
from agebridge.db.models import QueryOptions, TransactionOptions
from agebridge.db.pool import ConnectionPool, PooledConnection
from agebridge.db.results import QueryResult
from agebridge.db.transaction import Transaction, TransactionManager

logger = setup_logger(__name__, include_location=True)

OptionsLike = Optional[Union[QueryOptions, Dict[str, Any]]]


def _sql_summary(command: str, limit: int = 100) -> str:
    trimmed = " ".join((command or "").split())
    if not trimmed:
        return "UNKNOWN len=0"
    operation = trimmed.split(None, 1)[0].upper()
    text = trimmed if len(trimmed) <= limit else trimmed[:limit] + "..."
    return f"{operation} len={len(trimmed)} | {text}"


def _coerce_options(options: OptionsLike) -> QueryOptions:
    if options is None:
        return QueryOptions()
    if isinstance(options, QueryOptions):
        return options
    return QueryOptions(**options)


class QueryExecutor:
    """
    Issues statements against a ConnectionPool.

    Args:
        pool: Pool the executor leases connections from
    """

    def __init__(self, pool: ConnectionPool):
        self.pool = pool
        self.transactions = TransactionManager(pool)

    async def _attempt(
        self,
        operation: Callable[[PooledConnection], Awaitable[Any]],
        transaction: Optional[Transaction],
        timeout: Optional[float],
        sql: str,
    ) -> Any:
        async def run():
            if transaction is not None:
                return await operation(transaction.connection)
            async with self.pool.connection() as conn:
                return await operation(conn)

        if not timeout or timeout <= 0:
            return await run()
        try:
            return await asyncio.wait_for(run(), timeout)
        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"Query timed out after {timeout}s: {_sql_summary(sql)}",
                cause=e,
                context={"statement": sql, "timeout": timeout},
            ) from e

    async def _execute(
        self,
        kind: str,
        sql: str,
        params: Any,
        options: QueryOptions,
        operation: Callable[[PooledConnection], Awaitable[Any]],
    ) -> Any:
        transaction = options.transaction
        if transaction is not None and not transaction.is_active:
            raise TransactionError(
                f"Transaction {transaction.id} is not active ({transaction.status.value})",
                context={"transaction_id": transaction.id, "statement": sql},
            )
        max_retries = 0 if transaction is not None else options.max_retries
        attempt = 0

        while True:
            attempt += 1
            start = time.perf_counter()
            try:
                result = await self._attempt(operation, transaction, options.timeout, sql)
            except Exception as e:
                elapsed_ms = (time.perf_counter() - start) * 1000
                retry = attempt <= max_retries and is_retryable(e)
                logger.warning(
                    "%s attempt %s/%s failed in %.1fms (%s) params=%s: %s%s",
                    kind,
                    attempt,
                    max_retries + 1,
                    elapsed_ms,
                    _sql_summary(sql),
                    summarize_parameters(params),
                    e,
                    f"; retrying in {options.retry_delay}s" if retry else "",
                )
                if retry:
                    await asyncio.sleep(options.retry_delay)
                    continue
                raise

            elapsed_ms = (time.perf_counter() - start) * 1000
            outcome = f"{result.row_count} rows" if isinstance(result, QueryResult) else f"{result} rows copied"
            logger.debug(
                "%s attempt %s succeeded in %.1fms (%s) params=%s: %s",
                kind,
                attempt,
                elapsed_ms,
                _sql_summary(sql),
                summarize_parameters(params),
                outcome,
            )
            return result

    async def execute_sql(self, sql: str, params: Any = None, options: OptionsLike = None) -> QueryResult:
        """
        Execute a parameterized SQL statement.

        Args:
            sql: Statement with psycopg placeholders
            params: Sequence or mapping of parameters
            options: Timeout, retries, transaction

        Returns:
            QueryResult

        Raises:
            TimeoutError: the statement did not finish within options.timeout
            QueryError: any non-retryable failure, or retries exhausted
        """
        opts = _coerce_options(options)

        async def operation(conn: PooledConnection) -> QueryResult:
            return await conn.query(sql, params)

        try:
            return await self._execute("SQL", sql, params, opts, operation)
        except DatabaseError:
            raise
        except Exception as e:
            raise QueryError(
                f"Query execution failed: {e}",
                cause=e,
                context={"statement": sql, "params": params},
            ) from e

    async def _prepare_graph_session(self, conn: PooledConnection) -> None:
        for statement in session_setup_statements(self.pool.search_path):
            await conn.query(statement)
        result = await conn.query("SHOW search_path")
        current = str(result.scalar() or "")
        if "ag_catalog" not in current:
            logger.warning(f"search_path '{current}' does not contain ag_catalog; graph functions may not resolve")

    async def execute_cypher(
        self,
        cypher: str,
        params: Optional[Mapping[str, Any]] = None,
        graph_name: Optional[str] = None,
        options: OptionsLike = None,
    ) -> QueryResult:
        """
        Execute a Cypher query on ``graph_name``.

        The RETURN clause determines the result columns unless
        ``options.columns`` is given. Parameters are bound as one JSON map.

        Raises:
            QueryError: invalid graph name or parameters, RETURN * without
                columns, or a classified AGE failure
            TimeoutError: the query did not finish within options.timeout
        """
        opts = _coerce_options(options)
        compiled = compile_cypher(cypher, graph_name, params, opts.columns)

        async def operation(conn: PooledConnection) -> QueryResult:
            await self._prepare_graph_session(conn)
            return await conn.query(compiled.sql, compiled.params, decode_graph_values=opts.decode_graph_values)

        try:
            with LoggingContext(logger, graph=compiled.graph_name):
                return await self._execute(f"Cypher[{compiled.graph_name}]", compiled.sql, params, opts, operation)
        except DatabaseError:
            raise
        except Exception as e:
            raise classify_graph_error(
                e,
                graph_name=compiled.graph_name,
                columns=compiled.columns,
                statement=cypher,
            ) from e

    async def execute_copy_from(self, sql: str, data: Union[str, bytes], options: OptionsLike = None) -> int:
        """
        Stream tab-delimited text into ``COPY ... FROM STDIN``.

        Returns:
            Number of rows copied
        """
        opts = _coerce_options(options)

        async def operation(conn: PooledConnection) -> int:
            return await conn.copy_from(sql, data)

        try:
            return await self._execute("COPY", sql, None, opts, operation)
        except DatabaseError:
            raise
        except Exception as e:
            raise QueryError(
                f"COPY operation failed: {e}",
                cause=e,
                context={"statement": sql},
            ) from e

    async def begin_transaction(
        self, options: Optional[Union[TransactionOptions, Dict[str, Any]]] = None
    ) -> Transaction:
        """Start a top-level transaction on a dedicated pool connection."""
        return await self.transactions.begin(options)

    def transaction(self, options: Optional[Union[TransactionOptions, Dict[str, Any]]] = None):
        """``async with executor.transaction() as tx`` form of begin_transaction."""
        return self.transactions.transaction(options)

    async def with_transaction(self, fn, options: Optional[Union[TransactionOptions, Dict[str, Any]]] = None):
        return await self.transactions.with_transaction(fn, options)

    async def stage_parameters(self, transaction: Transaction, values: Mapping[str, Any]) -> int:
        """
        Upsert large parameter payloads into the session ``age_params`` table.

        The table is per-session and truncated when the connection returns
        to the pool, so staging only makes sense inside a transaction.

        Returns:
            Number of keys written
        """
        if transaction is None:
            raise QueryError(
                "stage_parameters requires a transaction: age_params is scoped to one session",
                code="AGE_PARAMS_NO_TRANSACTION",
            )
        try:
            checked = validate_parameters(values)
        except UnsupportedValueError as e:
            raise QueryError(f"Invalid staged parameters: {e}", cause=e, code="CYPHER_INVALID_PARAMS") from e

        sql = (
            f"INSERT INTO {AGE_PARAMS_TABLE} (key, value) VALUES (%s, %s) "
            "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value"
        )
        options = QueryOptions(transaction=transaction)
        for key, value in checked.items():
            await self.execute_sql(sql, (key, Jsonb(value)), options)
        logger.debug(f"Staged {len(checked)} parameter(s) into {AGE_PARAMS_TABLE} for {transaction.id}")
        return len(checked)


__all__ = ["QueryExecutor"]
