"""
Pydantic models for per-call options.
"""

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class IsolationLevel(str, Enum):
    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"

    @classmethod
    def parse(cls, value: str) -> "IsolationLevel":
        """Accept ``serializable``, ``REPEATABLE_READ``, ``read committed``..."""
        normalized = str(value).strip().upper().replace("_", " ")
        return cls(normalized)


class QueryOptions(BaseModel):
    """
    Options of a single executor call.

    ``transaction`` routes the statement to the transaction's connection; such
    statements are never retried.
    """
    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    timeout: Optional[float] = Field(
        default=None,
        ge=0,
        description="Seconds before the call is abandoned with TimeoutError; None or 0 disables"
    )
    max_retries: int = Field(
        default=0,
        ge=0,
        le=20,
        description="Additional attempts after a retryable failure"
    )
    retry_delay: float = Field(
        default=1.0,
        ge=0,
        description="Seconds between attempts"
    )
    transaction: Optional[Any] = Field(
        default=None,
        description="Transaction whose connection executes the statement"
    )
    columns: Optional[List[str]] = Field(
        default=None,
        description="Explicit result column names for Cypher queries"
    )
    decode_graph_values: bool = Field(
        default=True,
        description="Decode agtype text into Python values for Cypher queries"
    )

    @field_validator('columns')
    @classmethod
    def validate_columns(cls, v):
        if v is None:
            return v
        cleaned = [str(name).strip() for name in v]
        if not cleaned or any(not name for name in cleaned):
            raise ValueError("columns must be a non-empty list of non-empty names")
        return cleaned


class TransactionOptions(BaseModel):
    """
    Options used when a transaction begins.
    """
    model_config = ConfigDict(extra="forbid")

    isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED
    read_only: bool = False
    deferrable: bool = False
    timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Seconds before an active top-level transaction is rolled back"
    )

    @field_validator('isolation_level', mode='before')
    @classmethod
    def validate_isolation_level(cls, v):
        if isinstance(v, str) and not isinstance(v, IsolationLevel):
            return IsolationLevel.parse(v)
        return v

    def begin_statement(self) -> str:
        """BEGIN with isolation level and modifiers; DEFERRABLE only applies to SERIALIZABLE."""
        parts = [f"BEGIN ISOLATION LEVEL {self.isolation_level.value}"]
        if self.read_only:
            parts.append("READ ONLY")
        if self.deferrable and self.isolation_level == IsolationLevel.SERIALIZABLE:
            parts.append("DEFERRABLE")
        return " ".join(parts)


class BatchOptions(BaseModel):
    """
    Options of a batch load.
    """
    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    batch_size: int = Field(
        default=1000,
        ge=1,
        le=100000,
        description="Records per INSERT; loads above this use staging or chunks"
    )
    use_temp_table: bool = Field(
        default=True,
        description="Bulk-load large batches through a temporary staging table and COPY"
    )
    collect_metrics: bool = False
    validate_records: bool = Field(
        default=True,
        description="Validate every record against the table contract before writing"
    )
    transaction: Optional[Any] = Field(
        default=None,
        description="Caller transaction; the loader opens its own when absent"
    )
    timeout: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode='after')
    def validate_transaction(self):
        if self.transaction is not None and not hasattr(self.transaction, "connection"):
            raise ValueError("transaction must be an agebridge Transaction")
        return self


__all__ = ["IsolationLevel", "QueryOptions", "TransactionOptions", "BatchOptions"]
