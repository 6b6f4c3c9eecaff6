"""
Query results and row normalization.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from agebridge.core.logger import setup_logger

logger = setup_logger(__name__, include_location=True)

_AGTYPE_SUFFIX_RE = re.compile(r"::(vertex|edge|path|numeric)\b")


@dataclass
class QueryResult:
    """Rows and metadata of one executed statement."""

    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    columns: List[str] = field(default_factory=list)
    command: Optional[str] = None
    duration: float = 0.0

    def first(self) -> Optional[Dict[str, Any]]:
        return self.rows[0] if self.rows else None

    def scalar(self) -> Any:
        """First column of the first row, or None."""
        row = self.first()
        if not row:
            return None
        return next(iter(row.values()))

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self):
        return iter(self.rows)


def normalize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return value


def normalize_row(row: Any) -> Dict[str, Any]:
    # connections use dict_row
    return {name: normalize_value(value) for name, value in dict(row).items()}


def decode_agtype(value: Any) -> Any:
    """
    Decode the text form of an agtype value.

    Vertices, edges, paths and numerics carry ``::vertex`` / ``::edge`` /
    ``::path`` / ``::numeric`` annotations that are not JSON; they are
    stripped before decoding. Values that still do not decode are returned
    unchanged.
    """
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        pass
    try:
        return json.loads(_AGTYPE_SUFFIX_RE.sub("", value))
    except ValueError:
        return value


async def fetch_result(cursor, decode_graph_values: bool = False) -> QueryResult:
    """
    Build a QueryResult from an executed psycopg cursor.
    """
    command = None
    status = getattr(cursor, "statusmessage", None)
    if status:
        command = status.split(" ", 1)[0]

    if cursor.description is None:
        row_count = cursor.rowcount if cursor.rowcount is not None and cursor.rowcount >= 0 else 0
        return QueryResult(rows=[], row_count=row_count, columns=[], command=command)

    columns = [desc[0] for desc in cursor.description]
    raw_rows = await cursor.fetchall()
    logger.debug(f"Fetched {len(raw_rows)} rows from cursor")

    rows = []
    for raw in raw_rows:
        row = normalize_row(raw)
        if decode_graph_values:
            row = {name: decode_agtype(value) for name, value in row.items()}
        rows.append(row)
    return QueryResult(rows=rows, row_count=len(rows), columns=columns, command=command)


__all__ = ["QueryResult", "normalize_value", "normalize_row", "decode_agtype", "fetch_result"]
