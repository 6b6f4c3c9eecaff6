"""
Transactions with savepoint-based nesting.

A top-level transaction owns one leased connection for its lifetime and
returns it to the pool when it ends (commit, rollback, failure or timeout).
Nested transactions share that connection and map onto savepoints:

    async with manager.transaction() as tx:
        await executor.execute_sql("INSERT ...", options=QueryOptions(transaction=tx))
        async with tx.savepoint() as inner:
            ...  # a failure here rolls back to the savepoint only

Nested scopes must stay within the call stack that opened them.
"""

import asyncio
import secrets
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

from agebridge.core.errors import TransactionError
from agebridge.core.logger import setup_logger
from agebridge.core.logging_context import LoggingContext
from agebridge.db.models import IsolationLevel, TransactionOptions
from agebridge.db.pool import ConnectionPool, PooledConnection

logger = setup_logger(__name__, include_location=True)

T = TypeVar("T")


class TransactionStatus(str, Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ERROR = "error"


def _coerce_options(options: Optional[Union[TransactionOptions, Dict[str, Any]]]) -> TransactionOptions:
    if options is None:
        return TransactionOptions()
    if isinstance(options, TransactionOptions):
        return options
    return TransactionOptions(**options)


class Transaction:
    """
    One transaction scope on a leased connection.

    Args:
        connection: Connection the statements run on
        options: Isolation level, read-only, deferrable, timeout
        level: 0 for a top-level transaction, >0 for savepoints
        parent: Enclosing transaction of a nested scope
        savepoint_name: Savepoint backing a nested scope
        on_finish: Awaited once when a top-level transaction ends
    """

    def __init__(
        self,
        connection: PooledConnection,
        options: Optional[TransactionOptions] = None,
        level: int = 0,
        parent: Optional["Transaction"] = None,
        savepoint_name: Optional[str] = None,
        on_finish: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.id = f"tx-{secrets.token_hex(6)}"
        self.connection = connection
        self.options = options or TransactionOptions()
        self.level = level
        self.parent = parent
        self.savepoint_name = savepoint_name
        self.status = TransactionStatus.ACTIVE
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self._savepoint_counter = 0
        self._timeout_task: Optional[asyncio.Task] = None
        self._on_finish = on_finish
        self._finished = False

    @property
    def is_active(self) -> bool:
        return self.status == TransactionStatus.ACTIVE

    @property
    def is_nested(self) -> bool:
        return self.level > 0

    @property
    def root(self) -> "Transaction":
        tx = self
        while tx.parent is not None:
            tx = tx.parent
        return tx

    async def _run(self, sql: str, action: str) -> None:
        try:
            await self.connection.query(sql)
        except Exception as e:
            self.status = TransactionStatus.ERROR
            raise TransactionError(
                f"Failed to {action} transaction {self.id}: {e}",
                cause=e,
                context={"transaction_id": self.id, "level": self.level, "statement": sql},
            ) from e

    async def begin(self) -> "Transaction":
        self.start_time = time.time()
        try:
            if self.is_nested:
                await self._run(f"SAVEPOINT {self.savepoint_name}", "begin")
            else:
                await self._run(self.options.begin_statement(), "begin")
        except TransactionError:
            await self._finish()
            raise
        self.status = TransactionStatus.ACTIVE
        if not self.is_nested and self.options.timeout:
            self._timeout_task = asyncio.create_task(self._expire(self.options.timeout))
        logger.debug(f"Transaction {self.id} started (level={self.level})")
        return self

    async def commit(self) -> None:
        if self.status != TransactionStatus.ACTIVE:
            raise TransactionError(
                f"Cannot commit transaction in {self.status.value} state",
                context={"transaction_id": self.id},
            )
        self._cancel_timeout()
        try:
            if self.is_nested:
                await self._run(f"RELEASE SAVEPOINT {self.savepoint_name}", "commit")
            else:
                await self._run("COMMIT", "commit")
            self.status = TransactionStatus.COMMITTED
        finally:
            self.end_time = time.time()
            await self._finish()
        logger.debug(f"Transaction {self.id} committed")

    async def rollback(self) -> None:
        if self.status not in (TransactionStatus.ACTIVE, TransactionStatus.ERROR):
            raise TransactionError(
                f"Cannot rollback transaction in {self.status.value} state",
                context={"transaction_id": self.id},
            )
        self._cancel_timeout()
        if self._finished:
            # connection already returned; the pool reset it
            self.status = TransactionStatus.ROLLED_BACK
            return
        try:
            if self.is_nested:
                await self._run(f"ROLLBACK TO SAVEPOINT {self.savepoint_name}", "rollback")
            else:
                await self._run("ROLLBACK", "rollback")
            self.status = TransactionStatus.ROLLED_BACK
        finally:
            self.end_time = time.time()
            await self._finish()
        logger.debug(f"Transaction {self.id} rolled back")

    async def nested(self) -> "Transaction":
        """Open a savepoint scope inside this transaction."""
        if not self.is_active:
            raise TransactionError(
                f"Cannot open a nested transaction in {self.status.value} state",
                context={"transaction_id": self.id},
            )
        self._savepoint_counter += 1
        level = self.level + 1
        child = Transaction(
            self.connection,
            self.options,
            level=level,
            parent=self,
            savepoint_name=f"sp_{level}_{self._savepoint_counter}",
        )
        return await child.begin()

    @asynccontextmanager
    async def savepoint(self):
        """
        Scoped nested transaction: released on success, rolled back to the
        savepoint when the block raises.
        """
        child = await self.nested()
        try:
            yield child
        except BaseException:
            if child.status in (TransactionStatus.ACTIVE, TransactionStatus.ERROR):
                try:
                    await child.rollback()
                except Exception as rollback_error:
                    logger.error(f"Failed to roll back savepoint {child.savepoint_name}: {rollback_error}")
            raise
        if child.is_active:
            await child.commit()

    async def get_current_isolation_level(self) -> IsolationLevel:
        result = await self.connection.query("SHOW TRANSACTION ISOLATION LEVEL")
        return IsolationLevel.parse(result.scalar())

    async def _expire(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if self.status != TransactionStatus.ACTIVE:
            return
        # no commit may start once the timer fired
        self.status = TransactionStatus.ERROR
        self.end_time = time.time()
        logger.warning(f"Transaction {self.id} timed out after {timeout}s and is rolled back")
        try:
            await self.connection.query("ROLLBACK")
        except Exception as e:
            logger.error(f"Error rolling back transaction {self.id} on timeout: {e}")
        await self._finish()

    def _cancel_timeout(self) -> None:
        task, self._timeout_task = self._timeout_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _finish(self) -> None:
        if self.is_nested or self._finished:
            return
        self._finished = True
        if self._on_finish is not None:
            try:
                await self._on_finish()
            except Exception as e:
                logger.error(f"Error returning connection of transaction {self.id}: {e}")

    async def __aenter__(self) -> "Transaction":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            if self.is_active:
                await self.commit()
            return
        if self.status in (TransactionStatus.ACTIVE, TransactionStatus.ERROR):
            try:
                await self.rollback()
            except Exception as rollback_error:
                logger.error(f"Error rolling back transaction {self.id}: {rollback_error}")

    def info(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "level": self.level,
            "isolation_level": self.options.isolation_level.value,
            "read_only": self.options.read_only,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }

    def __repr__(self) -> str:
        return f"Transaction(id={self.id}, status={self.status.value}, level={self.level})"


class TransactionManager:
    """
    Starts top-level transactions on connections leased from a pool.
    """

    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    async def begin(self, options: Optional[Union[TransactionOptions, Dict[str, Any]]] = None) -> Transaction:
        opts = _coerce_options(options)
        conn = await self.pool.acquire()

        async def release() -> None:
            await self.pool.release(conn)

        tx = Transaction(conn, opts, on_finish=release)
        return await tx.begin()

    async def with_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        options: Optional[Union[TransactionOptions, Dict[str, Any]]] = None,
    ) -> T:
        """
        Run ``fn(tx)`` in a new transaction.

        Commits when ``fn`` returns and the transaction is still active;
        rolls back when it raises and re-raises the original error.
        """
        tx = await self.begin(options)
        try:
            with LoggingContext(logger, transaction_id=tx.id):
                result = await fn(tx)
        except BaseException:
            if tx.is_active:
                try:
                    await tx.rollback()
                except Exception as rollback_error:
                    logger.error(f"Error rolling back transaction {tx.id}: {rollback_error}")
            else:
                await tx._finish()
            raise
        if tx.is_active:
            await tx.commit()
        else:
            await tx._finish()
        return result

    @asynccontextmanager
    async def transaction(self, options: Optional[Union[TransactionOptions, Dict[str, Any]]] = None):
        tx = await self.begin(options)
        async with tx:
            yield tx

    async def get_current_isolation_level(self, transaction: Optional[Transaction] = None) -> IsolationLevel:
        """Isolation level of ``transaction``, or the session default."""
        if transaction is not None:
            return await transaction.get_current_isolation_level()
        async with self.pool.connection() as conn:
            result = await conn.query("SHOW TRANSACTION ISOLATION LEVEL")
            return IsolationLevel.parse(result.scalar())


__all__ = ["TransactionStatus", "Transaction", "TransactionManager"]
