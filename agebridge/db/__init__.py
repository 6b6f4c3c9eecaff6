"""
agebridge.db
============

Connection pool, query executor, transactions and batch loading for
PostgreSQL with Apache AGE.
"""

from agebridge.db.pool import (
    ConnectionPool,
    PooledConnection,
    ConnectionState,
    ConnectionEvent,
    ConnectionHooks,
    PoolStats,
    PoolScope,
)
from agebridge.db.extensions import (
    ExtensionInitializer,
    AgeExtensionInitializer,
    PgVectorExtensionInitializer,
    PostGISExtensionInitializer,
    SearchPathInitializer,
)
from agebridge.db.models import IsolationLevel, QueryOptions, TransactionOptions, BatchOptions
from agebridge.db.results import QueryResult
from agebridge.db.transaction import Transaction, TransactionManager, TransactionStatus
from agebridge.db.execution import QueryExecutor
from agebridge.db.batch import BatchLoader, BatchJob, BatchMetrics, TableSpec

__all__ = [
    "ConnectionPool",
    "PooledConnection",
    "ConnectionState",
    "ConnectionEvent",
    "ConnectionHooks",
    "PoolStats",
    "PoolScope",
    "ExtensionInitializer",
    "AgeExtensionInitializer",
    "PgVectorExtensionInitializer",
    "PostGISExtensionInitializer",
    "SearchPathInitializer",
    "IsolationLevel",
    "QueryOptions",
    "TransactionOptions",
    "BatchOptions",
    "QueryResult",
    "Transaction",
    "TransactionManager",
    "TransactionStatus",
    "QueryExecutor",
    "BatchLoader",
    "BatchJob",
    "BatchMetrics",
    "TableSpec",
]
