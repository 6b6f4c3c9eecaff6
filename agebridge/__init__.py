"""
agebridge: relational and graph (Cypher) access to PostgreSQL with Apache AGE.
"""

__version__ = "0.1.0"

from agebridge.core import (
    BridgeConfig,
    PoolSettings,
    RetryPolicy,
    DatabaseError,
    ConnectionError,
    QueryError,
    TransactionError,
    PoolError,
    TimeoutError,
)
from agebridge.db import (
    ConnectionPool,
    PoolScope,
    QueryExecutor,
    QueryOptions,
    QueryResult,
    Transaction,
    TransactionOptions,
    IsolationLevel,
    BatchLoader,
    BatchOptions,
    TableSpec,
)

__all__ = [
    "__version__",
    "BridgeConfig",
    "PoolSettings",
    "RetryPolicy",
    "DatabaseError",
    "ConnectionError",
    "QueryError",
    "TransactionError",
    "PoolError",
    "TimeoutError",
    "ConnectionPool",
    "PoolScope",
    "QueryExecutor",
    "QueryOptions",
    "QueryResult",
    "Transaction",
    "TransactionOptions",
    "IsolationLevel",
    "BatchLoader",
    "BatchOptions",
    "TableSpec",
]
