"""
Compile Cypher into the single SQL statement AGE executes, and translate
AGE failures into actionable ``QueryError``s.

    SELECT * FROM ag_catalog.cypher('<graph>', $cypher$<text>$cypher$, %s)
        AS ("<col>" ag_catalog.agtype, ...)
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from agebridge.core.config import DEFAULT_SEARCH_PATH
from agebridge.core.errors import DatabaseError, QueryError, _sqlstate
from agebridge.core.logger import setup_logger
from agebridge.core.values import UnsupportedValueError, serialize_parameters
from agebridge.cypher.columns import infer_columns, render_column_list
from agebridge.cypher.lexer import CypherSyntaxError

logger = setup_logger(__name__, include_location=True)

DOLLAR_QUOTE = "$cypher$"
GRAPH_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class CompiledCypher:
    graph_name: str
    cypher: str
    sql: str
    params: Tuple[str, ...]
    columns: List[str] = field(default_factory=list)


def validate_graph_name(graph_name: Optional[str]) -> str:
    if graph_name is None or not str(graph_name).strip():
        raise QueryError(
            "Graph name is required for Cypher queries",
            code="AGE_GRAPH_NAME_REQUIRED",
        )
    name = str(graph_name).strip()
    if not GRAPH_NAME_RE.match(name):
        raise QueryError(
            f"Invalid graph name '{name}': use letters, digits and underscores",
            context={"graph_name": name},
            code="AGE_INVALID_GRAPH_NAME",
        )
    return name


def session_setup_statements(search_path: str = DEFAULT_SEARCH_PATH) -> List[str]:
    """Statements that make a session ready for ag_catalog.cypher()."""
    if ";" in search_path:
        raise QueryError(f"Invalid search_path '{search_path}'", code="AGE_INVALID_SEARCH_PATH")
    return ["LOAD 'age'", f"SET search_path TO {search_path}"]


def compile_cypher(
    cypher: str,
    graph_name: Optional[str],
    params: Optional[Mapping[str, Any]] = None,
    columns: Optional[Sequence[str]] = None,
) -> CompiledCypher:
    """
    Build the SQL wrapper for one Cypher query.

    Args:
        cypher: Cypher text
        graph_name: Target graph (plain identifier)
        params: Cypher parameters, bound as one JSON argument
        columns: Explicit result column names; skip inference when given

    Returns:
        CompiledCypher with the SQL, its single bound argument and the
        result columns

    Raises:
        QueryError: missing/invalid graph name, unsupported parameter
            values, RETURN * without columns, unparseable text
    """
    name = validate_graph_name(graph_name)
    if not cypher or not cypher.strip():
        raise QueryError("Cypher query text is empty", context={"graph_name": name}, code="CYPHER_EMPTY")
    if DOLLAR_QUOTE in cypher:
        raise QueryError(
            f"Cypher text must not contain the {DOLLAR_QUOTE} quote tag",
            context={"graph_name": name},
            code="CYPHER_QUOTE_COLLISION",
        )

    try:
        payload = serialize_parameters(params)
    except UnsupportedValueError as e:
        raise QueryError(
            f"Invalid Cypher parameters: {e}",
            cause=e,
            context={"graph_name": name, "path": e.path},
            code="CYPHER_INVALID_PARAMS",
        ) from e

    try:
        result_columns = infer_columns(cypher, columns)
    except CypherSyntaxError as e:
        raise QueryError(
            f"Cypher query could not be parsed: {e}",
            cause=e,
            context={"graph_name": name, "statement": cypher},
            code="CYPHER_SYNTAX",
        ) from e
    except QueryError as e:
        e.context.setdefault("graph_name", name)
        e.context.setdefault("statement", cypher)
        raise

    # psycopg placeholders: literal percent signs must be doubled
    body = cypher.replace("%", "%%")
    sql = (
        f"SELECT * FROM ag_catalog.cypher('{name}', {DOLLAR_QUOTE}{body}{DOLLAR_QUOTE}, %s) "
        f"AS ({render_column_list(result_columns)})"
    )
    logger.debug(f"Compiled Cypher for graph '{name}' with columns {result_columns}")
    return CompiledCypher(graph_name=name, cypher=cypher, sql=sql, params=(payload,), columns=result_columns)


@dataclass(frozen=True)
class GraphErrorRule:
    code: str
    sqlstates: Tuple[str, ...]
    markers: Tuple[str, ...]
    hint: str
    # the SQLSTATE alone identifies the failure inside a cypher() call
    sqlstate_sufficient: bool = False


GRAPH_ERROR_RULES: Tuple[GraphErrorRule, ...] = (
    GraphErrorRule(
        code="AGE_COLUMN_MISMATCH",
        sqlstates=("42804",),
        markers=("return row and column definition list do not match",),
        hint="The RETURN clause produces a different number of columns than declared {columns}; "
             "pass options.columns with one name per returned value",
    ),
    GraphErrorRule(
        code="AGE_UNRESOLVED_REFERENCE",
        sqlstates=("42703",),
        markers=("could not find rte for",),
        hint="A variable used in the query is not bound; check that every name in "
             "WHERE/RETURN is introduced by MATCH, CREATE, UNWIND or WITH",
    ),
    GraphErrorRule(
        code="AGE_INVALID_AGTYPE",
        sqlstates=("22P02",),
        markers=("invalid input syntax for type agtype",),
        hint="A value could not be read as agtype; check parameter values and literals "
             "(strings must be quoted, maps need string keys)",
    ),
    GraphErrorRule(
        code="AGE_NOT_LOADED",
        sqlstates=("42883",),
        markers=("function ag_catalog.cypher", "function cypher("),
        hint="The AGE extension is not available in this session; run CREATE EXTENSION age "
             "and make sure LOAD 'age' succeeds",
    ),
    GraphErrorRule(
        code="AGE_INVALID_BOOLEAN",
        sqlstates=("22023",),
        markers=("cannot cast agtype string to type boolean",),
        hint="A string value is used where a boolean is expected; compare it explicitly "
             "(e.g. n.flag = 'true') or store real booleans",
    ),
    GraphErrorRule(
        code="AGE_GRAPH_NOT_FOUND",
        sqlstates=("3F000",),
        markers=("does not exist",),
        hint="Graph '{graph_name}' does not exist; create it with SELECT create_graph('{graph_name}')",
        sqlstate_sufficient=True,
    ),
)


def _match_rule(sqlstate: Optional[str], message: str) -> Optional[GraphErrorRule]:
    lowered = message.lower()

    def marked(rule: GraphErrorRule) -> bool:
        if rule.code == "AGE_GRAPH_NOT_FOUND":
            return "graph" in lowered and "does not exist" in lowered
        return any(marker in lowered for marker in rule.markers)

    if sqlstate:
        for rule in GRAPH_ERROR_RULES:
            if sqlstate in rule.sqlstates and marked(rule):
                return rule
    for rule in GRAPH_ERROR_RULES:
        if marked(rule):
            return rule
    if sqlstate:
        for rule in GRAPH_ERROR_RULES:
            if rule.sqlstate_sufficient and sqlstate in rule.sqlstates:
                return rule
    return None


def classify_graph_error(
    error: BaseException,
    graph_name: Optional[str] = None,
    columns: Optional[Sequence[str]] = None,
    statement: Optional[str] = None,
) -> QueryError:
    """
    Translate a failure of a cypher() call into a ``QueryError``.

    Known AGE failures get an actionable message and a specific ``code``;
    anything else becomes a generic ``QueryError`` carrying the cause.
    """
    if isinstance(error, QueryError):
        return error

    context: Dict[str, Any] = {"graph_name": graph_name}
    if statement is not None:
        context["statement"] = statement
    if columns is not None:
        context["columns"] = list(columns)

    message = str(error)
    rule = _match_rule(_sqlstate(error), message)
    if rule is None:
        code = error.code if isinstance(error, DatabaseError) else "CYPHER_QUERY_FAILED"
        return QueryError(f"Cypher query failed: {message}", cause=error, context=context, code=code)

    hint = rule.hint.format(graph_name=graph_name, columns=list(columns or []))
    logger.debug(f"Classified graph error as {rule.code}: {message}")
    return QueryError(f"{hint} ({message})", cause=error, context=context, code=rule.code)


__all__ = [
    "CompiledCypher",
    "DOLLAR_QUOTE",
    "GRAPH_ERROR_RULES",
    "GraphErrorRule",
    "classify_graph_error",
    "compile_cypher",
    "session_setup_statements",
    "validate_graph_name",
]
