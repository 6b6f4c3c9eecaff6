"""Typed syntax tree for the parsed Cypher subset."""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from agebridge.cypher.lexer import Token


class Expr:
    """Base class of expression nodes."""


@dataclass
class Variable(Expr):
    name: str


@dataclass
class PropertyAccess(Expr):
    subject: Expr
    key: str


@dataclass
class FunctionCall(Expr):
    name: str
    args: List[Expr] = field(default_factory=list)
    distinct: bool = False
    star: bool = False

    @property
    def short_name(self) -> str:
        return self.name.rsplit(".", 1)[-1]


@dataclass
class Literal(Expr):
    value: Any


@dataclass
class Parameter(Expr):
    name: str


@dataclass
class ListLiteral(Expr):
    items: List[Expr]


@dataclass
class MapLiteral(Expr):
    entries: List[Tuple[str, Expr]]


@dataclass
class Subscript(Expr):
    subject: Expr
    start: Optional[Expr]
    end: Optional[Expr] = None
    is_slice: bool = False


@dataclass
class LabelCheck(Expr):
    subject: Expr
    labels: List[str]


@dataclass
class UnaryOp(Expr):
    op: str
    operand: Expr


@dataclass
class BinaryOp(Expr):
    op: str
    left: Expr
    right: Expr


@dataclass
class CaseExpr(Expr):
    subject: Optional[Expr]
    branches: List[Tuple[Expr, Expr]]
    default: Optional[Expr] = None


@dataclass
class Opaque(Expr):
    """Expression the parser does not model (patterns, comprehensions...)."""
    text: str


@dataclass
class ReturnItem:
    expression: Expr
    alias: Optional[str]
    text: str


@dataclass
class Clause:
    keyword: str
    tokens: List[Token]


@dataclass
class ReturnClause(Clause):
    distinct: bool = False
    star: bool = False
    items: List[ReturnItem] = field(default_factory=list)


@dataclass
class SingleQuery:
    clauses: List[Clause]

    @property
    def return_clause(self) -> Optional[ReturnClause]:
        for clause in reversed(self.clauses):
            if isinstance(clause, ReturnClause):
                return clause
        return None


@dataclass
class Query:
    parts: List[SingleQuery]
    union_all: List[bool] = field(default_factory=list)

    @property
    def return_clause(self) -> Optional[ReturnClause]:
        """RETURN of the first UNION branch; every branch has the same shape."""
        return self.parts[0].return_clause if self.parts else None


__all__ = [
    "Expr",
    "Variable",
    "PropertyAccess",
    "FunctionCall",
    "Literal",
    "Parameter",
    "ListLiteral",
    "MapLiteral",
    "Subscript",
    "LabelCheck",
    "UnaryOp",
    "BinaryOp",
    "CaseExpr",
    "Opaque",
    "ReturnItem",
    "Clause",
    "ReturnClause",
    "SingleQuery",
    "Query",
]
