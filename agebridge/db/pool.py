"""
Connection pool for PostgreSQL + Apache AGE.

Wraps psycopg_pool.AsyncConnectionPool with:
- bounded acquisition retried with exponential backoff and jitter
- per-connection extension initialization on first lease
- lifecycle hooks (sync or async, failures logged)
- tracking of leased connections so leaks and double releases are visible

Pools are owned by their callers; ``PoolScope`` closes every pool it
created when it exits.

Usage:
    async with PoolScope() as scope:
        pool = await scope.create_pool(BridgeConfig.from_env())
        async with pool.connection() as conn:
            result = await conn.query("SELECT 1 AS one")
"""

import asyncio
import inspect
import random
import time
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from psycopg import AsyncConnection
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from agebridge.core.config import BridgeConfig, RetryPolicy
from agebridge.core.errors import ConnectionError, PoolError
from agebridge.core.logger import setup_logger
from agebridge.db.extensions import ExtensionInitializer, default_initializers
from agebridge.db.results import QueryResult, fetch_result

logger = setup_logger(__name__, include_location=True)


class ConnectionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    CLOSED = "closed"
    ERROR = "error"


@dataclass
class ConnectionEvent:
    type: str
    state: ConnectionState
    timestamp: float = field(default_factory=time.time)
    error: Optional[BaseException] = None
    data: Dict[str, Any] = field(default_factory=dict)


Hook = Callable[[Optional["PooledConnection"], ConnectionEvent], Any]


@dataclass
class ConnectionHooks:
    before_connect: Optional[Hook] = None
    after_connect: Optional[Hook] = None
    before_disconnect: Optional[Hook] = None
    after_disconnect: Optional[Hook] = None
    on_error: Optional[Hook] = None

    def merged(self, other: "ConnectionHooks") -> "ConnectionHooks":
        values = {}
        for f in fields(self):
            values[f.name] = getattr(other, f.name) or getattr(self, f.name)
        return ConnectionHooks(**values)


@dataclass(frozen=True)
class PoolStats:
    total: int
    idle: int
    active: int
    waiting: int
    max: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "idle": self.idle,
            "active": self.active,
            "waiting": self.waiting,
            "max": self.max,
        }


def compute_backoff(policy: RetryPolicy, attempt: int) -> float:
    """
    Delay in seconds before retry number ``attempt`` (1-based).

    min(delay * factor^(attempt-1), max_delay), then +/- delay * jitter.
    """
    delay = min(policy.delay * (policy.factor ** (attempt - 1)), policy.max_delay)
    jitter = delay * policy.jitter * random.uniform(-1, 1)
    return max(0.0, delay + jitter)


class PooledConnection:
    """
    A leased connection. Owned by one caller between acquire() and release().
    """

    def __init__(self, raw: AsyncConnection, pool: "ConnectionPool"):
        self.raw = raw
        self.pool = pool
        self.state = ConnectionState.IDLE
        self.last_query: Optional[str] = None
        self.last_query_time: Optional[float] = None
        self.released = False
        self.acquired_at = time.time()

    @property
    def pid(self) -> Optional[int]:
        info = getattr(self.raw, "info", None)
        return getattr(info, "backend_pid", None)

    def _check_usable(self) -> None:
        if self.released or self.state == ConnectionState.CLOSED:
            raise ConnectionError("Connection has already been released to the pool")

    async def _failed(self, error: BaseException, sql: str) -> None:
        self.state = ConnectionState.ERROR
        event = ConnectionEvent(type="error", state=self.state, error=error, data={"query": sql})
        await self.pool._trigger_hook("on_error", self, event)

    async def query(self, sql: str, params: Any = None, decode_graph_values: bool = False) -> QueryResult:
        """
        Execute one statement and fetch its rows.

        psycopg errors propagate unchanged; the executor classifies them.
        """
        self._check_usable()
        self.state = ConnectionState.ACTIVE
        self.last_query = sql
        self.last_query_time = time.time()
        start = time.perf_counter()
        try:
            async with self.raw.cursor() as cursor:
                await cursor.execute(sql, params)
                result = await fetch_result(cursor, decode_graph_values=decode_graph_values)
        except Exception as e:
            await self._failed(e, sql)
            raise
        self.state = ConnectionState.IDLE
        result.duration = time.perf_counter() - start
        return result

    async def copy_from(self, sql: str, data: Union[str, bytes]) -> int:
        """Stream ``data`` into a ``COPY ... FROM STDIN`` statement; returns the row count."""
        self._check_usable()
        self.state = ConnectionState.ACTIVE
        self.last_query = sql
        self.last_query_time = time.time()
        try:
            async with self.raw.cursor() as cursor:
                async with cursor.copy(sql) as copy:
                    await copy.write(data)
                row_count = cursor.rowcount
        except Exception as e:
            await self._failed(e, sql)
            raise
        self.state = ConnectionState.IDLE
        return row_count if row_count is not None and row_count >= 0 else 0

    def __repr__(self) -> str:
        return f"PooledConnection(pid={self.pid}, state={self.state.value}, released={self.released})"


class ConnectionPool:
    """
    Bounded pool of AGE-ready connections.

    Args:
        config: Connection, pool and retry settings
        initializers: Ordered extension initializers; defaults to AGE only
        hooks: Lifecycle hooks
        name: Pool name used in logs
    """

    def __init__(
        self,
        config: BridgeConfig,
        initializers: Optional[Sequence[ExtensionInitializer]] = None,
        hooks: Optional[Union[ConnectionHooks, Mapping[str, Hook]]] = None,
        name: str = "agebridge",
    ):
        self.config = config
        self.name = name
        self.initializers: List[ExtensionInitializer] = (
            list(initializers) if initializers is not None else default_initializers()
        )
        self._hooks = ConnectionHooks()
        if hooks is not None:
            self.register_hooks(hooks)
        self._pool: Optional[AsyncConnectionPool] = None
        self._leased: set = set()
        self._initialized: "weakref.WeakSet[AsyncConnection]" = weakref.WeakSet()
        self._open_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def search_path(self) -> str:
        """Search path every session of this pool should use."""
        extra = [schema for init in self.initializers for schema in init.search_path_schemas()]
        return ", ".join([self.config.search_path] + extra)

    async def open(self) -> "ConnectionPool":
        async with self._open_lock:
            if self._closed:
                raise PoolError(f"Pool {self.name} is closed")
            if self._pool is not None:
                return self

            settings = self.config.pool
            logger.info(
                f"Creating connection pool {self.name} | {self.config.describe()} | "
                f"min={settings.min_size}, max={settings.max_size}, timeout={settings.acquire_timeout}s"
            )
            pool = AsyncConnectionPool(
                self.config.conninfo,
                min_size=settings.min_size,
                max_size=settings.max_size,
                timeout=settings.acquire_timeout,
                max_waiting=settings.max_waiting,
                max_lifetime=settings.max_lifetime,
                max_idle=settings.idle_timeout,
                kwargs={"autocommit": True, "row_factory": dict_row},
                name=self.name,
                open=False,
            )
            try:
                await pool.open(wait=settings.min_size > 0, timeout=settings.acquire_timeout)
            except Exception as e:
                logger.error(f"Failed to open connection pool {self.name}: {e}")
                try:
                    await pool.close()
                except Exception as close_error:
                    logger.debug(f"Error closing half-open pool {self.name}: {close_error}")
                raise ConnectionError(f"Failed to open connection pool: {e}", cause=e) from e

            self._pool = pool
            logger.success(f"Connection pool {self.name} opened")
            return self

    async def __aenter__(self) -> "ConnectionPool":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close_all()

    def register_hooks(self, hooks: Union[ConnectionHooks, Mapping[str, Hook]]) -> None:
        """Merge hooks into the registered set; later registrations win per hook."""
        if not isinstance(hooks, ConnectionHooks):
            unknown = set(hooks) - {f.name for f in fields(ConnectionHooks)}
            if unknown:
                raise PoolError(f"Unknown connection hooks: {sorted(unknown)}")
            hooks = ConnectionHooks(**dict(hooks))
        self._hooks = self._hooks.merged(hooks)

    async def _trigger_hook(
        self,
        hook_name: str,
        connection: Optional[PooledConnection],
        event: ConnectionEvent,
    ) -> None:
        hook = getattr(self._hooks, hook_name)
        if hook is None:
            return
        try:
            result = hook(connection, event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error in {hook_name} hook: {e}")

    async def acquire(self) -> PooledConnection:
        """
        Lease a connection, retrying with backoff.

        Returns:
            PooledConnection with every initializer applied

        Raises:
            ConnectionError: all attempts failed, or a critical initializer failed
            PoolError: the pool has been closed
        """
        if self._pool is None:
            await self.open()
        if self._closed:
            raise PoolError(f"Pool {self.name} is closed")

        policy = self.config.retry
        timeout = self.config.pool.acquire_timeout
        last_error: Optional[BaseException] = None

        for attempt in range(1, policy.max_attempts + 1):
            await self._trigger_hook(
                "before_connect", None, ConnectionEvent(type="connect", state=ConnectionState.IDLE)
            )
            acquire_start = time.perf_counter()
            try:
                raw = await self._pool.getconn(timeout=timeout)
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Connection attempt {attempt}/{policy.max_attempts} on pool {self.name} failed: {e}"
                )
                await self._trigger_hook(
                    "on_error", None, ConnectionEvent(type="error", state=ConnectionState.ERROR, error=e)
                )
                if attempt < policy.max_attempts:
                    delay = compute_backoff(policy, attempt)
                    logger.debug(f"Retrying acquisition in {delay:.3f}s")
                    await asyncio.sleep(delay)
                continue

            conn = PooledConnection(raw, self)
            try:
                await self._initialize(conn)
                self._leased.add(conn)
                logger.debug(
                    f"Connection acquired from {self.name} in {(time.perf_counter() - acquire_start) * 1000:.1f}ms"
                )
                await self._trigger_hook(
                    "after_connect", conn, ConnectionEvent(type="connect", state=conn.state)
                )
            except BaseException:
                # cancelled (e.g. by a caller timeout) before the lease was handed out
                self._leased.discard(conn)
                if not conn.released:
                    logger.warning(f"Acquisition from {self.name} interrupted; discarding connection")
                    conn.released = True
                    conn.state = ConnectionState.CLOSED
                    await self._close_raw(raw)
                    await self._pool.putconn(raw)
                raise
            return conn

        raise ConnectionError(
            f"Failed to get connection after {policy.max_attempts} attempts: {last_error}",
            cause=last_error,
            context={"pool": self.name},
        ) from last_error

    async def _initialize(self, conn: PooledConnection) -> None:
        if conn.raw in self._initialized:
            return
        for initializer in self.initializers:
            try:
                await initializer.initialize(conn, self.config)
            except Exception as e:
                if not initializer.critical:
                    logger.warning(f"Non-critical initializer {initializer.name} failed, skipping: {e}")
                    continue
                logger.error(f"Critical initializer {initializer.name} failed: {e}")
                conn.state = ConnectionState.CLOSED
                conn.released = True
                await self._close_raw(conn.raw)
                # a closed connection is discarded by putconn
                await self._pool.putconn(conn.raw)
                raise ConnectionError(
                    f"Failed to initialize extension '{initializer.name}': {e}",
                    cause=e,
                    context={"pool": self.name, "initializer": initializer.name},
                    code="EXTENSION_INIT_FAILED",
                ) from e
        self._initialized.add(conn.raw)

    async def _close_raw(self, raw) -> None:
        try:
            await raw.close()
        except Exception as e:
            logger.debug(f"Error closing connection on pool {self.name}: {e}")

    async def release(self, conn: PooledConnection) -> None:
        """
        Return a leased connection to the pool.

        Raises:
            PoolError: ``conn`` was not handed out by this pool or was
                already released
        """
        if not isinstance(conn, PooledConnection) or conn.pool is not self:
            raise PoolError("Invalid connection object: not acquired from this pool")
        if conn.released or conn not in self._leased:
            raise PoolError("Connection has already been released", context={"pool": self.name})

        # a second release must fail while hooks are still awaited
        self._leased.discard(conn)
        try:
            await self._trigger_hook(
                "before_disconnect", conn, ConnectionEvent(type="disconnect", state=conn.state)
            )
            for initializer in self.initializers:
                try:
                    await initializer.cleanup(conn, self.config)
                except Exception as e:
                    logger.warning(f"Cleanup of {initializer.name} failed: {e}")
        except BaseException:
            # session state is unknown after an interrupted cleanup
            logger.warning(f"Release to {self.name} interrupted; discarding connection")
            await self._close_raw(conn.raw)
            raise
        finally:
            conn.released = True
            conn.state = ConnectionState.CLOSED
            if self._pool is not None:
                await self._pool.putconn(conn.raw)
        await self._trigger_hook(
            "after_disconnect", conn, ConnectionEvent(type="disconnect", state=ConnectionState.IDLE)
        )

    @asynccontextmanager
    async def connection(self):
        """Lease a connection for the duration of the block."""
        conn = await self.acquire()
        try:
            yield conn
        finally:
            await self.release(conn)

    async def close_all(self) -> None:
        """Close the underlying pool. Leased connections are dropped."""
        if self._closed:
            return
        self._closed = True
        pool, self._pool = self._pool, None
        if self._leased:
            logger.warning(f"Closing pool {self.name} with {len(self._leased)} leased connection(s)")
        for conn in list(self._leased):
            conn.released = True
            conn.state = ConnectionState.CLOSED
        self._leased.clear()
        if pool is None:
            return
        try:
            await pool.close()
            logger.info(f"Connection pool {self.name} closed")
        except Exception as e:
            raise PoolError(f"Failed to close all connections: {e}", cause=e) from e

    def stats(self) -> PoolStats:
        max_size = self.config.pool.max_size
        if self._pool is None:
            return PoolStats(total=0, idle=0, active=len(self._leased), waiting=0, max=max_size)
        raw = self._pool.get_stats()
        return PoolStats(
            total=raw.get("pool_size", 0),
            idle=raw.get("pool_available", 0),
            active=len(self._leased),
            waiting=raw.get("requests_waiting", 0),
            max=max_size,
        )


class PoolScope:
    """
    Owns a set of pools and closes them all on exit.

    Usage:
        async with PoolScope() as scope:
            pool = await scope.create_pool(config)
    """

    def __init__(self):
        self._pools: List[ConnectionPool] = []

    @property
    def pools(self) -> List[ConnectionPool]:
        return list(self._pools)

    async def create_pool(self, config: Optional[BridgeConfig] = None, **kwargs) -> ConnectionPool:
        pool = ConnectionPool(config or BridgeConfig.from_env(), **kwargs)
        await pool.open()
        self._pools.append(pool)
        return pool

    def adopt(self, pool: ConnectionPool) -> ConnectionPool:
        self._pools.append(pool)
        return pool

    async def close(self) -> None:
        pools, self._pools = self._pools, []
        for pool in reversed(pools):
            try:
                await pool.close_all()
            except Exception as e:
                logger.error(f"Error closing pool {pool.name}: {e}")

    async def __aenter__(self) -> "PoolScope":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


__all__ = [
    "ConnectionState",
    "ConnectionEvent",
    "ConnectionHooks",
    "PoolStats",
    "PooledConnection",
    "ConnectionPool",
    "PoolScope",
    "compute_backoff",
]
