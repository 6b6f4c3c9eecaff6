"""
agebridge.core
==============

Ambient pieces shared by every agebridge module: logging, the error
taxonomy, configuration models and parameter validation.
"""

from agebridge.core.errors import (
    ErrorType,
    DatabaseError,
    ConnectionError,
    QueryError,
    TransactionError,
    PoolError,
    TimeoutError,
    classify_postgres_error,
    is_retryable,
)
from agebridge.core.config import BridgeConfig, PoolSettings, RetryPolicy
from agebridge.core.logger import setup_logger

__all__ = [
    "ErrorType",
    "DatabaseError",
    "ConnectionError",
    "QueryError",
    "TransactionError",
    "PoolError",
    "TimeoutError",
    "classify_postgres_error",
    "is_retryable",
    "BridgeConfig",
    "PoolSettings",
    "RetryPolicy",
    "setup_logger",
]
