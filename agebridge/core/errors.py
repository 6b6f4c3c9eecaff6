"""
Error taxonomy and classification for agebridge.

Every failure raised by the library is a ``DatabaseError`` subclass with a
stable ``type`` discriminator, the underlying ``cause`` and a ``context``
dict (statement, parameters, graph name) so a caller can reproduce it.

Classification follows the PostgreSQL SQLSTATE first and falls back to
message markers only when no code is available:

    info = classify_postgres_error(exc)
    if info.retryable:
        ...
"""

from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class ErrorType(str, Enum):
    """Stable discriminator exposed as ``DatabaseError.type``."""

    CONNECTION = "connection"
    QUERY = "query"
    TRANSACTION = "transaction"
    POOL = "pool"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class DatabaseError(Exception):
    """
    Base class of every error raised by agebridge.

    Args:
        message: Human readable message (actionable hint for graph failures)
        cause: Underlying exception, also chained as ``__cause__`` by callers
        context: Statement text, parameters, graph name, stage...
        code: Short machine readable code (e.g. ``AGE_GRAPH_NOT_FOUND``)
    """

    type: ErrorType = ErrorType.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context = dict(context or {})
        self.code = code or self.type.value.upper()

    @property
    def pg_code(self) -> Optional[str]:
        return _sqlstate(self.cause) if self.cause is not None else None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "type": self.type.value,
            "code": self.code,
            "message": self.message,
        }
        if self.cause is not None:
            d["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        if self.pg_code:
            d["pg_code"] = self.pg_code
        if self.context:
            d["context"] = {k: _context_repr(v) for k, v in self.context.items()}
        return d

    def __str__(self) -> str:
        return self.message


class ConnectionError(DatabaseError):
    type = ErrorType.CONNECTION


class QueryError(DatabaseError):
    type = ErrorType.QUERY


class TransactionError(DatabaseError):
    type = ErrorType.TRANSACTION


class PoolError(DatabaseError):
    type = ErrorType.POOL


class TimeoutError(DatabaseError):
    type = ErrorType.TIMEOUT


def _context_repr(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        if isinstance(value, str) and len(value) > 500:
            return value[:500] + "..."
        return value
    text = repr(value)
    return text if len(text) <= 500 else text[:500] + "..."


class ErrorKind(str, Enum):
    """Categories used to decide retry behaviour."""

    DB_CONNECTION = "db_connection"  # Connection reset, refused, terminated
    DB_TIMEOUT = "db_timeout"        # Statement or acquisition timeout
    DB_CONSTRAINT = "db_constraint"  # Unique, foreign key, not null
    DB_DEADLOCK = "db_deadlock"      # Serialization failure, deadlock
    DB_SYNTAX = "db_syntax"          # Syntax error or access rule violation
    DB_DATA = "db_data"              # Invalid input, bad cast
    UNKNOWN = "unknown"


class ErrorInfo(BaseModel):
    """
    Classified view of an exception raised by psycopg or by agebridge itself.
    """

    kind: ErrorKind = Field(
        default=ErrorKind.UNKNOWN,
        description="Error category"
    )
    retryable: bool = Field(
        default=False,
        description="Whether re-issuing the same single statement may succeed"
    )
    code: str = Field(
        default="PG_UNKNOWN",
        description="PG_<sqlstate> or PG_UNKNOWN"
    )
    message: str = Field(
        default="Unknown error",
        description="Original error message"
    )
    pg_code: Optional[str] = Field(
        None, description="PostgreSQL SQLSTATE (e.g. 08006, 57P01, 40P01)"
    )
    exception_type: Optional[str] = Field(
        None, description="Python exception class name"
    )

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "kind": self.kind.value,
            "retryable": self.retryable,
            "code": self.code,
            "message": self.message,
        }
        if self.pg_code is not None:
            d["pg_code"] = self.pg_code
        if self.exception_type is not None:
            d["exception_type"] = self.exception_type
        return d


# SQLSTATEs that mean the session is gone or going away
RETRYABLE_SQLSTATES = {
    "57P01",  # admin_shutdown
    "57P02",  # crash_shutdown
    "57P03",  # cannot_connect_now
    "57P05",  # idle_session_timeout
    "25P03",  # idle_in_transaction_session_timeout
}

# Lowercase message fragments that mark a transient failure
RETRYABLE_MESSAGE_MARKERS = (
    "connection",
    "reset",
    "timeout",
    "timed out",
    "idle",
    "terminat",
)


def _sqlstate(error: Optional[BaseException]) -> Optional[str]:
    """Return the SQLSTATE of a psycopg error (or of its cause chain)."""
    seen = set()
    while error is not None and id(error) not in seen:
        seen.add(id(error))
        code = getattr(error, "sqlstate", None) or getattr(error, "pgcode", None)
        if isinstance(code, str) and code:
            return code
        error = getattr(error, "cause", None) or error.__cause__
    return None


def classify_postgres_error(
    error: BaseException,
    error_code: Optional[str] = None,
) -> ErrorInfo:
    """Classify a PostgreSQL/psycopg error into ErrorInfo."""
    error_str = str(error).lower()
    pg_code = error_code or _sqlstate(error)
    code = f"PG_{pg_code}" if pg_code else "PG_UNKNOWN"
    exception_type = type(error).__name__

    def info(kind: ErrorKind, retryable: bool) -> ErrorInfo:
        return ErrorInfo(
            kind=kind,
            retryable=retryable,
            code=code,
            message=str(error),
            pg_code=pg_code,
            exception_type=exception_type,
        )

    if isinstance(error, TimeoutError):
        return info(ErrorKind.DB_TIMEOUT, True)

    if pg_code:
        if pg_code.startswith("08") or pg_code in RETRYABLE_SQLSTATES:
            return info(ErrorKind.DB_CONNECTION, True)
        if pg_code == "57014":
            # statement_timeout / cancel: transient by definition
            return info(ErrorKind.DB_TIMEOUT, True)
        if pg_code in ("40001", "40P01"):
            # single statements inside a caller transaction are not safe to replay
            return info(ErrorKind.DB_DEADLOCK, False)
        if pg_code.startswith("23"):
            return info(ErrorKind.DB_CONSTRAINT, False)
        if pg_code.startswith("42"):
            return info(ErrorKind.DB_SYNTAX, False)
        if pg_code.startswith("22"):
            return info(ErrorKind.DB_DATA, False)
        # other classes (XX, 53, 55, 57, ...) fall back to the message

    if "timeout" in error_str or "timed out" in error_str:
        return info(ErrorKind.DB_TIMEOUT, True)
    if any(marker in error_str for marker in RETRYABLE_MESSAGE_MARKERS):
        return info(ErrorKind.DB_CONNECTION, True)
    if "deadlock" in error_str:
        return info(ErrorKind.DB_DEADLOCK, False)
    if "unique" in error_str or "duplicate" in error_str:
        return info(ErrorKind.DB_CONSTRAINT, False)

    return info(ErrorKind.UNKNOWN, False)


def is_retryable(error: BaseException) -> bool:
    """True when re-issuing the same single statement may succeed."""
    return classify_postgres_error(error).retryable


__all__ = [
    "ErrorType",
    "DatabaseError",
    "ConnectionError",
    "QueryError",
    "TransactionError",
    "PoolError",
    "TimeoutError",
    "ErrorKind",
    "ErrorInfo",
    "RETRYABLE_SQLSTATES",
    "RETRYABLE_MESSAGE_MARKERS",
    "classify_postgres_error",
    "is_retryable",
]
