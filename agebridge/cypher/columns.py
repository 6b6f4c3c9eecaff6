"""
RETURN-column inference.

AGE requires the caller to declare the shape of the rows produced by
``ag_catalog.cypher()``. The names come from the RETURN clause of the
query; every column is typed ``ag_catalog.agtype``.
"""

from typing import Iterable, List, Optional, Sequence, Tuple

from agebridge.core.errors import QueryError
from agebridge.core.logger import setup_logger
from agebridge.cypher.ast import (
    Expr,
    FunctionCall,
    PropertyAccess,
    Query,
    ReturnItem,
    Variable,
)
from agebridge.cypher.parser import parse_query

logger = setup_logger(__name__, include_location=True)

AGTYPE = "ag_catalog.agtype"
DEFAULT_RESULT_COLUMN = "result"


def column_name_for(item: ReturnItem, position: int) -> str:
    """Name one RETURN item; ``position`` is 1-based."""
    if item.alias:
        return item.alias
    return _name_from_expression(item.expression) or f"col{position}"


def _name_from_expression(expr: Expr) -> Optional[str]:
    if isinstance(expr, PropertyAccess):
        return expr.key
    if isinstance(expr, FunctionCall):
        return expr.short_name
    if isinstance(expr, Variable):
        return expr.name
    return None


def deduplicate(names: Iterable[str]) -> List[str]:
    """Suffix repeated names with _2, _3, ... keeping first occurrences intact."""
    seen = set()
    counts = {}
    result = []
    for name in names:
        candidate = name
        if candidate in seen:
            n = counts.get(name, 1)
            while True:
                n += 1
                candidate = f"{name}_{n}"
                if candidate not in seen:
                    break
            counts[name] = n
        seen.add(candidate)
        result.append(candidate)
    return result


def infer_return_columns(query: Query, override: Optional[Sequence[str]] = None) -> List[str]:
    """
    Column names for a parsed query.

    Args:
        query: Parsed query
        override: Explicit column names; when given they win over inference

    Returns:
        Ordered, de-duplicated column names

    Raises:
        QueryError: ``RETURN *`` without explicit column names
    """
    if override:
        return deduplicate(str(name) for name in override)

    clause = query.return_clause
    if clause is None:
        return [DEFAULT_RESULT_COLUMN]

    if clause.star:
        raise QueryError(
            "RETURN * cannot be mapped to a column list; pass options.columns with the expected names",
            code="CYPHER_RETURN_STAR",
        )

    names = [column_name_for(item, position) for position, item in enumerate(clause.items, start=1)]
    if not names:
        return [DEFAULT_RESULT_COLUMN]
    columns = deduplicate(names)
    logger.debug(f"Inferred RETURN columns: {columns}")
    return columns


def infer_columns(cypher: str, override: Optional[Sequence[str]] = None) -> List[str]:
    """Parse ``cypher`` and infer its RETURN column names."""
    if override:
        return infer_return_columns(Query(parts=[]), override)
    return infer_return_columns(parse_query(cypher))


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def column_definitions(columns: Sequence[str]) -> List[Tuple[str, str]]:
    """``(column, type)`` pairs of the result schema."""
    return [(name, AGTYPE) for name in columns]


def render_column_list(columns: Sequence[str]) -> str:
    """Render ``"a" ag_catalog.agtype, "b" ag_catalog.agtype``."""
    return ", ".join(f"{quote_identifier(name)} {type_name}" for name, type_name in column_definitions(columns))


__all__ = [
    "AGTYPE",
    "DEFAULT_RESULT_COLUMN",
    "column_name_for",
    "deduplicate",
    "infer_return_columns",
    "infer_columns",
    "quote_identifier",
    "column_definitions",
    "render_column_list",
]
