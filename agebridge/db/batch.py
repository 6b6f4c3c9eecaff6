"""
Batch loader.

Three write strategies, chosen by batch size:
- up to ``batch_size`` records: one multi-row ``INSERT ... RETURNING *``
- above it with ``use_temp_table``: COPY into a temporary staging table, then
  ``INSERT INTO target SELECT ... FROM staging RETURNING *``
- above it without staging: ``batch_size`` chunks inserted in one transaction

Every record is validated against the label's ``TableSpec`` before anything
is written.
"""

import json
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from psycopg.types.json import Jsonb

from agebridge.core.errors import DatabaseError, QueryError
from agebridge.core.logger import setup_logger
from agebridge.db.execution import QueryExecutor
from agebridge.db.models import BatchOptions, QueryOptions
from agebridge.db.transaction import Transaction, TransactionStatus

logger = setup_logger(__name__, include_location=True)

RecordValidator = Callable[[Dict[str, Any]], None]


def quote_identifier(name: str) -> str:
    """Quote a possibly schema-qualified name: ``a.b`` -> ``"a"."b"``."""
    return ".".join('"' + part.replace('"', '""') + '"' for part in name.split("."))


@dataclass
class TableSpec:
    """
    Column contract of the table a label writes to.

    Args:
        table: Target table, optionally schema-qualified
        columns: Writable columns, in insert order
        required: Columns every record must provide
        validator: Extra per-record check; raises ValueError on bad data
    """

    table: str
    columns: List[str]
    required: List[str] = field(default_factory=list)
    validator: Optional[RecordValidator] = None

    def __post_init__(self):
        if not self.columns:
            raise ValueError(f"TableSpec for {self.table} needs at least one column")
        missing = [name for name in self.required if name not in self.columns]
        if missing:
            raise ValueError(f"Required columns {missing} are not columns of {self.table}")

    def validate(self, record: Any, index: int) -> Dict[str, Any]:
        if not isinstance(record, Mapping):
            raise QueryError(
                f"Record {index} for {self.table} is not a mapping",
                context={"table": self.table, "index": index},
                code="BATCH_INVALID_RECORD",
            )
        unknown = sorted(set(record) - set(self.columns))
        if unknown:
            raise QueryError(
                f"Record {index} for {self.table} has unknown columns {unknown}",
                context={"table": self.table, "index": index},
                code="BATCH_INVALID_RECORD",
            )
        missing = [name for name in self.required if record.get(name) is None]
        if missing:
            raise QueryError(
                f"Record {index} for {self.table} is missing required columns {missing}",
                context={"table": self.table, "index": index},
                code="BATCH_INVALID_RECORD",
            )
        if self.validator is not None:
            try:
                self.validator(dict(record))
            except ValueError as e:
                raise QueryError(
                    f"Record {index} for {self.table} failed validation: {e}",
                    cause=e,
                    context={"table": self.table, "index": index},
                    code="BATCH_INVALID_RECORD",
                ) from e
        return dict(record)


@dataclass
class BatchJob:
    label: str
    records: Sequence[Mapping[str, Any]]
    options: BatchOptions = field(default_factory=BatchOptions)


@dataclass
class BatchMetrics:
    validation_duration: float = 0.0
    sql_generation_duration: float = 0.0
    db_execution_duration: float = 0.0
    total_duration: float = 0.0
    item_count: int = 0
    batch_count: int = 0
    items_per_second: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "validation_duration": round(self.validation_duration, 6),
            "sql_generation_duration": round(self.sql_generation_duration, 6),
            "db_execution_duration": round(self.db_execution_duration, 6),
            "total_duration": round(self.total_duration, 6),
            "item_count": self.item_count,
            "batch_count": self.batch_count,
            "items_per_second": round(self.items_per_second, 2),
        }


_COPY_ESCAPES = (("\\", "\\\\"), ("\t", "\\t"), ("\n", "\\n"), ("\r", "\\r"))


def format_copy_value(value: Any) -> str:
    """Render one value in COPY text format."""
    if value is None:
        return "\\N"
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, (dict, list, tuple)):
        text = json.dumps(value, ensure_ascii=False, default=str)
    elif isinstance(value, (datetime, date, dt_time)):
        text = value.isoformat()
    elif isinstance(value, Decimal):
        text = format(value, "f")
    elif isinstance(value, (bytes, bytearray)):
        text = "\\x" + bytes(value).hex()
    else:
        text = str(value)
    for raw, escaped in _COPY_ESCAPES:
        text = text.replace(raw, escaped)
    return text


def format_copy_rows(records: Sequence[Mapping[str, Any]], columns: Sequence[str]) -> str:
    return "".join(
        "\t".join(format_copy_value(record.get(column)) for column in columns) + "\n"
        for record in records
    )


def _insert_param(value: Any) -> Any:
    if isinstance(value, (dict, list, tuple)):
        return Jsonb(value)
    return value


class BatchLoader:
    """
    Bulk writes of validated records.

    Args:
        executor: Executor used for every statement
        tables: Mapping of label to TableSpec, or a resolver callable
    """

    def __init__(
        self,
        executor: QueryExecutor,
        tables: Union[Mapping[str, TableSpec], Callable[[str], Optional[TableSpec]]],
    ):
        self.executor = executor
        self._tables = tables
        self.last_metrics: Optional[BatchMetrics] = None

    def resolve(self, label: str) -> TableSpec:
        spec = self._tables(label) if callable(self._tables) else self._tables.get(label)
        if spec is None:
            raise QueryError(f"Unknown label '{label}'", context={"label": label}, code="BATCH_UNKNOWN_LABEL")
        return spec

    async def load(self, job: BatchJob) -> List[Dict[str, Any]]:
        return await self.create_many(job.label, job.records, job.options)

    async def create_many(
        self,
        label: str,
        records: Sequence[Mapping[str, Any]],
        options: Optional[Union[BatchOptions, Dict[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Insert ``records`` into the table of ``label``.

        Returns:
            Inserted rows as returned by ``RETURNING *``, in input order

        Raises:
            QueryError: unknown label or invalid record (nothing written)
            DatabaseError: the write failed; a loader-owned transaction is
                rolled back
        """
        opts = options if isinstance(options, BatchOptions) else BatchOptions(**(options or {}))
        spec = self.resolve(label)
        if not records:
            return []

        metrics = BatchMetrics(item_count=len(records))
        started = time.perf_counter()

        validation_start = time.perf_counter()
        if opts.validate_records:
            rows = [spec.validate(record, index) for index, record in enumerate(records)]
        else:
            rows = [dict(record) for record in records]
        metrics.validation_duration = time.perf_counter() - validation_start

        columns = [name for name in spec.columns if any(name in row for row in rows)]

        if len(rows) <= opts.batch_size:
            result = await self._insert_single(spec, columns, rows, opts, metrics)
        elif opts.use_temp_table:
            result = await self._owned_transaction(opts, lambda tx: self._insert_staged(spec, columns, rows, opts, tx, metrics))
        else:
            result = await self._owned_transaction(opts, lambda tx: self._insert_chunks(spec, columns, rows, opts, tx, metrics))

        metrics.total_duration = time.perf_counter() - started
        if metrics.total_duration > 0:
            metrics.items_per_second = metrics.item_count / metrics.total_duration
        if opts.collect_metrics:
            self.last_metrics = metrics
            logger.info(f"Batch load into {spec.table} metrics: {metrics.to_dict()}")
        logger.debug(f"Loaded {len(result)} record(s) into {spec.table} in {metrics.batch_count} batch(es)")
        return result

    async def _owned_transaction(self, opts: BatchOptions, work) -> List[Dict[str, Any]]:
        if opts.transaction is not None:
            return await work(opts.transaction)

        tx = await self.executor.begin_transaction()
        try:
            result = await work(tx)
        except BaseException as e:
            if tx.status in (TransactionStatus.ACTIVE, TransactionStatus.ERROR):
                try:
                    await tx.rollback()
                except Exception as rollback_error:
                    logger.error(f"Error rolling back batch transaction {tx.id}: {rollback_error}")
            if isinstance(e, DatabaseError):
                logger.error(f"Batch load failed and was rolled back: {e}")
            raise
        await tx.commit()
        return result

    def _insert_sql(self, spec: TableSpec, columns: Sequence[str], count: int) -> str:
        column_list = ", ".join(quote_identifier(name) for name in columns)
        row = "(" + ", ".join(["%s"] * len(columns)) + ")"
        return (
            f"INSERT INTO {quote_identifier(spec.table)} ({column_list}) "
            f"VALUES {', '.join([row] * count)} RETURNING *"
        )

    async def _insert_rows(
        self,
        spec: TableSpec,
        columns: Sequence[str],
        rows: Sequence[Dict[str, Any]],
        opts: BatchOptions,
        transaction: Optional[Transaction],
        metrics: BatchMetrics,
    ) -> List[Dict[str, Any]]:
        generation_start = time.perf_counter()
        sql = self._insert_sql(spec, columns, len(rows))
        params = [_insert_param(row.get(name)) for row in rows for name in columns]
        metrics.sql_generation_duration += time.perf_counter() - generation_start

        execution_start = time.perf_counter()
        result = await self.executor.execute_sql(
            sql, params, QueryOptions(transaction=transaction, timeout=opts.timeout)
        )
        metrics.db_execution_duration += time.perf_counter() - execution_start
        metrics.batch_count += 1
        return result.rows

    async def _insert_single(self, spec, columns, rows, opts: BatchOptions, metrics: BatchMetrics):
        return await self._insert_rows(spec, columns, rows, opts, opts.transaction, metrics)

    async def _insert_chunks(self, spec, columns, rows, opts: BatchOptions, tx: Transaction, metrics: BatchMetrics):
        results: List[Dict[str, Any]] = []
        for offset in range(0, len(rows), opts.batch_size):
            chunk = rows[offset:offset + opts.batch_size]
            results.extend(await self._insert_rows(spec, columns, chunk, opts, tx, metrics))
        return results

    async def _insert_staged(self, spec, columns, rows, opts: BatchOptions, tx: Transaction, metrics: BatchMetrics):
        generation_start = time.perf_counter()
        base = re.sub(r"\W", "_", spec.table.split(".")[-1])
        staging = f"_agebridge_{base}_{secrets.token_hex(4)}"
        target = quote_identifier(spec.table)
        column_list = ", ".join(quote_identifier(name) for name in columns)
        create_sql = f"CREATE TEMPORARY TABLE {staging} (LIKE {target} INCLUDING DEFAULTS) ON COMMIT DROP"
        copy_sql = f"COPY {staging} ({column_list}) FROM STDIN WITH (FORMAT TEXT, DELIMITER E'\\t', NULL '\\N')"
        move_sql = f"INSERT INTO {target} ({column_list}) SELECT {column_list} FROM {staging} RETURNING *"
        payload = format_copy_rows(rows, columns)
        metrics.sql_generation_duration += time.perf_counter() - generation_start

        execution_start = time.perf_counter()
        try:
            async with tx.savepoint() as sp:
                stage_opts = QueryOptions(transaction=sp, timeout=opts.timeout)
                await self.executor.execute_sql(create_sql, options=stage_opts)
                copied = await self.executor.execute_copy_from(copy_sql, payload, stage_opts)
                logger.debug(f"Copied {copied} row(s) into staging table {staging}")
                result = await self.executor.execute_sql(move_sql, options=stage_opts)
        finally:
            try:
                await self.executor.execute_sql(
                    f"DROP TABLE IF EXISTS {staging}", options=QueryOptions(transaction=tx)
                )
            except Exception as drop_error:
                logger.warning(f"Failed to drop staging table {staging}: {drop_error}")
            metrics.db_execution_duration += time.perf_counter() - execution_start
        metrics.batch_count += 1
        return result.rows


__all__ = [
    "TableSpec",
    "BatchJob",
    "BatchMetrics",
    "BatchLoader",
    "format_copy_value",
    "format_copy_rows",
    "quote_identifier",
]
