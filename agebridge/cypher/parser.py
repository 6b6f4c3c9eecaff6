"""
Recursive-descent parser for the Cypher subset AGE executes.

Only the structure needed by the bridge is modelled in depth: the query is
split into UNION branches and clauses at top level, and RETURN items are
parsed into expression trees. Other clauses keep their tokens. Expressions
the grammar does not cover become ``Opaque`` nodes rather than errors, so
an unusual RETURN item degrades to a positional column name.
"""

from typing import List, Optional, Tuple

from agebridge.cypher.ast import (
    BinaryOp,
    CaseExpr,
    Clause,
    Expr,
    FunctionCall,
    LabelCheck,
    ListLiteral,
    Literal,
    MapLiteral,
    Opaque,
    Parameter,
    PropertyAccess,
    Query,
    ReturnClause,
    ReturnItem,
    SingleQuery,
    Subscript,
    UnaryOp,
    Variable,
)
from agebridge.cypher.lexer import CypherSyntaxError, Token, TokenKind, tokenize


CLAUSE_KEYWORDS = {
    "MATCH",
    "OPTIONAL",
    "WHERE",
    "WITH",
    "RETURN",
    "ORDER",
    "SKIP",
    "LIMIT",
    "CREATE",
    "MERGE",
    "SET",
    "DELETE",
    "DETACH",
    "REMOVE",
    "UNWIND",
    "CALL",
    "YIELD",
}

_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {")", "]", "}"}
_COMPARISON_OPS = ("=", "<>", "!=", "<", ">", "<=", ">=", "=~")

# Deeper expressions are not parsed; the item falls back to Opaque
MAX_EXPRESSION_DEPTH = 32


def _starts_clause(tokens: List[Token], index: int) -> bool:
    token = tokens[index]
    if token.kind != TokenKind.IDENT:
        return False
    word = token.upper
    if word not in CLAUSE_KEYWORDS:
        return False
    prev = tokens[index - 1] if index > 0 else None
    if prev is not None:
        # property keys and labels may reuse keywords: n.limit, :Match
        if prev.is_op(".", ":"):
            return False
        # STARTS WITH / ENDS WITH, OPTIONAL MATCH, DETACH DELETE, MERGE ... ON CREATE SET
        if word == "WITH" and prev.is_keyword("STARTS", "ENDS"):
            return False
        if word == "MATCH" and prev.is_keyword("OPTIONAL"):
            return False
        if word == "DELETE" and prev.is_keyword("DETACH"):
            return False
        if word in ("CREATE", "MATCH") and prev.is_keyword("ON"):
            return False
    if word == "ORDER":
        nxt = tokens[index + 1] if index + 1 < len(tokens) else None
        return nxt is not None and nxt.is_keyword("BY")
    if word == "OPTIONAL":
        nxt = tokens[index + 1] if index + 1 < len(tokens) else None
        return nxt is not None and nxt.is_keyword("MATCH")
    return True


def parse_query(text: str) -> Query:
    """
    Parse Cypher text into a ``Query``.

    Raises:
        CypherSyntaxError: when the text cannot be tokenized or brackets do
            not balance
    """
    tokens = tokenize(text)
    branches: List[List[Token]] = [[]]
    union_all: List[bool] = []
    depth: List[str] = []

    i = 0
    while tokens[i].kind != TokenKind.EOF:
        token = tokens[i]
        if token.kind == TokenKind.OP and token.value in _OPENERS:
            depth.append(_OPENERS[token.value])
        elif token.kind == TokenKind.OP and token.value in _CLOSERS:
            if not depth or depth[-1] != token.value:
                raise CypherSyntaxError(f"Unbalanced {token.value!r}", token.start)
            depth.pop()
        elif not depth and token.is_keyword("UNION") and not (i > 0 and tokens[i - 1].is_op(".", ":")):
            is_all = tokens[i + 1].is_keyword("ALL")
            union_all.append(is_all)
            branches.append([])
            i += 2 if is_all else 1
            continue
        branches[-1].append(token)
        i += 1

    if depth:
        raise CypherSyntaxError(f"Missing {depth[-1]!r}", len(text))

    parts = [_parse_single_query(branch, text) for branch in branches]
    return Query(parts=parts, union_all=union_all)


def _parse_single_query(tokens: List[Token], source: str) -> SingleQuery:
    clauses: List[Clause] = []
    current: Optional[Tuple[str, List[Token]]] = None
    depth = 0

    for index, token in enumerate(tokens):
        if token.kind == TokenKind.OP and token.value in _OPENERS:
            depth += 1
        elif token.kind == TokenKind.OP and token.value in _CLOSERS:
            depth -= 1
        elif depth == 0 and _starts_clause(tokens, index):
            if current is not None:
                clauses.append(_build_clause(current[0], current[1], source))
            current = (token.upper, [])
            continue
        if current is None:
            # leading tokens outside any clause (e.g. a bare expression)
            current = ("", [])
        current[1].append(token)

    if current is not None:
        clauses.append(_build_clause(current[0], current[1], source))
    return SingleQuery(clauses=_merge_compound_keywords(clauses))


def _merge_compound_keywords(clauses: List[Clause]) -> List[Clause]:
    # "ORDER" + "BY ...", "OPTIONAL" + "MATCH ...", "DETACH" + "DELETE ..." read as one clause
    merged: List[Clause] = []
    for clause in clauses:
        if clause.keyword == "ORDER" and clause.tokens and clause.tokens[0].is_keyword("BY"):
            merged.append(Clause(keyword="ORDER BY", tokens=clause.tokens[1:]))
        elif clause.keyword == "OPTIONAL" and clause.tokens and clause.tokens[0].is_keyword("MATCH"):
            merged.append(Clause(keyword="OPTIONAL MATCH", tokens=clause.tokens[1:]))
        elif clause.keyword == "DETACH" and clause.tokens and clause.tokens[0].is_keyword("DELETE"):
            merged.append(Clause(keyword="DETACH DELETE", tokens=clause.tokens[1:]))
        else:
            merged.append(clause)
    return merged


def _build_clause(keyword: str, tokens: List[Token], source: str) -> Clause:
    if keyword == "RETURN":
        return _parse_return(tokens, source)
    return Clause(keyword=keyword, tokens=tokens)


def _split_top_level(tokens: List[Token], separator: str) -> List[List[Token]]:
    groups: List[List[Token]] = [[]]
    depth = 0
    for token in tokens:
        if token.kind == TokenKind.OP and token.value in _OPENERS:
            depth += 1
        elif token.kind == TokenKind.OP and token.value in _CLOSERS:
            depth -= 1
        elif depth == 0 and token.is_op(separator):
            groups.append([])
            continue
        groups[-1].append(token)
    return groups


def _parse_return(tokens: List[Token], source: str) -> ReturnClause:
    clause = ReturnClause(keyword="RETURN", tokens=list(tokens))
    body = list(tokens)
    if body and body[0].is_keyword("DISTINCT"):
        clause.distinct = True
        body = body[1:]

    for position, item_tokens in enumerate(_split_top_level(body, ",")):
        if not item_tokens:
            continue
        if position == 0 and len(item_tokens) == 1 and item_tokens[0].is_op("*"):
            clause.star = True
            continue
        clause.items.append(_parse_return_item(item_tokens, source))
    return clause


def _parse_return_item(tokens: List[Token], source: str) -> ReturnItem:
    text = source[tokens[0].start:tokens[-1].end]
    alias = None
    expr_tokens = tokens
    if (
        len(tokens) >= 3
        and tokens[-2].is_keyword("AS")
        and tokens[-1].kind in (TokenKind.IDENT, TokenKind.QUOTED_IDENT)
    ):
        alias = tokens[-1].name
        expr_tokens = tokens[:-2]

    expr_text = source[expr_tokens[0].start:expr_tokens[-1].end]
    try:
        expression = ExpressionParser(expr_tokens, source).parse()
    except CypherSyntaxError:
        expression = Opaque(text=expr_text)
    return ReturnItem(expression=expression, alias=alias, text=text)


def parse_expression(text: str) -> Expr:
    """Parse a standalone expression; used by tests and diagnostics."""
    tokens = tokenize(text)[:-1]
    return ExpressionParser(tokens, text).parse()


class ExpressionParser:
    """
    Precedence climbing over a token slice.

    OR < XOR < AND < NOT < comparison / predicates < + - < * / % < ^ < unary
    < postfix (property, subscript, label) < atom.
    """

    def __init__(self, tokens: List[Token], source: str):
        self.tokens = tokens
        self.source = source
        self.pos = 0
        self.depth = 0
        end = tokens[-1].end if tokens else 0
        self._eof = Token(TokenKind.EOF, "", end, end)

    def parse(self) -> Expr:
        if not self.tokens:
            raise CypherSyntaxError("Empty expression", self._eof.start)
        expr = self._or()
        if self._peek().kind != TokenKind.EOF:
            token = self._peek()
            raise CypherSyntaxError(f"Unexpected token {token.value!r}", token.start)
        return expr

    def _peek(self, offset: int = 0) -> Token:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else self._eof

    def _advance(self) -> Token:
        token = self._peek()
        self.pos += 1
        return token

    def _expect_op(self, op: str) -> Token:
        token = self._peek()
        if not token.is_op(op):
            raise CypherSyntaxError(f"Expected {op!r}", token.start)
        return self._advance()

    def _expect_keyword(self, word: str) -> Token:
        token = self._peek()
        if not token.is_keyword(word):
            raise CypherSyntaxError(f"Expected {word}", token.start)
        return self._advance()

    def _nested(self, parse) -> Expr:
        if self.depth >= MAX_EXPRESSION_DEPTH:
            raise CypherSyntaxError("Expression nested too deeply", self._peek().start)
        self.depth += 1
        try:
            return parse()
        finally:
            self.depth -= 1

    def _or(self) -> Expr:
        return self._nested(self._or_chain)

    def _or_chain(self) -> Expr:
        expr = self._xor()
        while self._peek().is_keyword("OR"):
            self._advance()
            expr = BinaryOp("OR", expr, self._xor())
        return expr

    def _xor(self) -> Expr:
        expr = self._and()
        while self._peek().is_keyword("XOR"):
            self._advance()
            expr = BinaryOp("XOR", expr, self._and())
        return expr

    def _and(self) -> Expr:
        expr = self._not()
        while self._peek().is_keyword("AND"):
            self._advance()
            expr = BinaryOp("AND", expr, self._not())
        return expr

    def _not(self) -> Expr:
        if self._peek().is_keyword("NOT"):
            self._advance()
            return UnaryOp("NOT", self._nested(self._not))
        return self._comparison()

    def _comparison(self) -> Expr:
        expr = self._additive()
        while True:
            token = self._peek()
            if token.kind == TokenKind.OP and token.value in _COMPARISON_OPS:
                self._advance()
                expr = BinaryOp(token.value, expr, self._additive())
            elif token.is_keyword("IN", "CONTAINS"):
                self._advance()
                expr = BinaryOp(token.upper, expr, self._additive())
            elif token.is_keyword("STARTS", "ENDS") and self._peek(1).is_keyword("WITH"):
                self._advance()
                self._advance()
                expr = BinaryOp(f"{token.upper} WITH", expr, self._additive())
            elif token.is_keyword("IS"):
                self._advance()
                negated = False
                if self._peek().is_keyword("NOT"):
                    self._advance()
                    negated = True
                self._expect_keyword("NULL")
                expr = UnaryOp("IS NOT NULL" if negated else "IS NULL", expr)
            else:
                return expr

    def _additive(self) -> Expr:
        expr = self._multiplicative()
        while self._peek().is_op("+", "-"):
            op = self._advance().value
            expr = BinaryOp(op, expr, self._multiplicative())
        return expr

    def _multiplicative(self) -> Expr:
        expr = self._power()
        while self._peek().is_op("*", "/", "%"):
            op = self._advance().value
            expr = BinaryOp(op, expr, self._power())
        return expr

    def _power(self) -> Expr:
        expr = self._unary()
        while self._peek().is_op("^"):
            self._advance()
            expr = BinaryOp("^", expr, self._unary())
        return expr

    def _unary(self) -> Expr:
        if self._peek().is_op("+", "-"):
            op = self._advance().value
            return UnaryOp(op, self._nested(self._unary))
        return self._postfix()

    def _postfix(self) -> Expr:
        expr = self._atom()
        while True:
            token = self._peek()
            if token.is_op("."):
                self._advance()
                key = self._advance()
                if key.kind not in (TokenKind.IDENT, TokenKind.QUOTED_IDENT):
                    raise CypherSyntaxError("Expected property key", key.start)
                expr = PropertyAccess(expr, key.name)
            elif token.is_op("["):
                expr = self._subscript(expr)
            elif token.is_op(":") and isinstance(expr, Variable):
                labels = []
                while self._peek().is_op(":"):
                    self._advance()
                    label = self._advance()
                    if label.kind not in (TokenKind.IDENT, TokenKind.QUOTED_IDENT):
                        raise CypherSyntaxError("Expected label", label.start)
                    labels.append(label.name)
                expr = LabelCheck(expr, labels)
            elif token.is_op("{"):
                # map projection: n {.name, .age}
                start = self.pos
                self._skip_balanced()
                expr = Opaque(self._text(start - 1, self.pos))
            else:
                return expr

    def _subscript(self, subject: Expr) -> Expr:
        self._expect_op("[")
        start: Optional[Expr] = None
        end: Optional[Expr] = None
        is_slice = False
        if not self._peek().is_op("..", "]"):
            start = self._or()
        if self._peek().is_op(".."):
            self._advance()
            is_slice = True
            if not self._peek().is_op("]"):
                end = self._or()
        self._expect_op("]")
        return Subscript(subject, start, end, is_slice)

    def _atom(self) -> Expr:
        token = self._peek()

        if token.kind == TokenKind.NUMBER:
            self._advance()
            return Literal(_number_value(token.value))
        if token.kind == TokenKind.STRING:
            self._advance()
            return Literal(token.value)
        if token.kind == TokenKind.PARAM:
            self._advance()
            return Parameter(token.value)
        if token.is_keyword("TRUE", "FALSE"):
            self._advance()
            return Literal(token.upper == "TRUE")
        if token.is_keyword("NULL"):
            self._advance()
            return Literal(None)
        if token.is_keyword("CASE"):
            return self._case()
        if token.is_op("("):
            return self._parenthesized()
        if token.is_op("["):
            return self._list()
        if token.is_op("{"):
            return self._map()
        if token.kind == TokenKind.QUOTED_IDENT:
            self._advance()
            return Variable(token.name)
        if token.kind == TokenKind.IDENT:
            return self._name_or_call()
        raise CypherSyntaxError(f"Unexpected token {token.value!r}", token.start)

    def _name_or_call(self) -> Expr:
        first = self._advance()
        parts = [first.name]
        # namespaced call: a.b.c(...); look ahead so n.name stays a property access
        lookahead = 0
        while self._peek(lookahead).is_op(".") and self._peek(lookahead + 1).kind == TokenKind.IDENT:
            lookahead += 2
        if lookahead and self._peek(lookahead).is_op("("):
            while self._peek().is_op("."):
                self._advance()
                parts.append(self._advance().name)

        if not self._peek().is_op("("):
            return Variable(first.name)

        self._advance()
        call = FunctionCall(name=".".join(parts))
        if self._peek().is_op("*"):
            self._advance()
            call.star = True
            self._expect_op(")")
            return call
        if self._peek().is_keyword("DISTINCT"):
            self._advance()
            call.distinct = True
        if not self._peek().is_op(")"):
            call.args.append(self._or())
            while self._peek().is_op(","):
                self._advance()
                call.args.append(self._or())
        self._expect_op(")")
        return call

    def _parenthesized(self) -> Expr:
        start = self.pos
        try:
            self._expect_op("(")
            expr = self._or()
            self._expect_op(")")
        except CypherSyntaxError:
            # path pattern or subquery: keep the text
            self.pos = start
            self._skip_balanced()
            return Opaque(self._text(start, self.pos))
        if self._peek().is_op("-", "<") and self._peek(1).is_op("[", "-", "("):
            raise CypherSyntaxError("Path patterns are not expressions", self._peek().start)
        return expr

    def _list(self) -> Expr:
        start = self.pos
        try:
            self._expect_op("[")
            items: List[Expr] = []
            if not self._peek().is_op("]"):
                items.append(self._or())
                while self._peek().is_op(","):
                    self._advance()
                    items.append(self._or())
            self._expect_op("]")
            return ListLiteral(items)
        except CypherSyntaxError:
            # list comprehension or pattern comprehension
            self.pos = start
            self._skip_balanced()
            return Opaque(self._text(start, self.pos))

    def _map(self) -> Expr:
        self._expect_op("{")
        entries: List[Tuple[str, Expr]] = []
        while not self._peek().is_op("}"):
            key = self._advance()
            if key.kind not in (TokenKind.IDENT, TokenKind.QUOTED_IDENT, TokenKind.STRING):
                raise CypherSyntaxError("Expected map key", key.start)
            self._expect_op(":")
            entries.append((key.value, self._or()))
            if not self._peek().is_op(","):
                break
            self._advance()
        self._expect_op("}")
        return MapLiteral(entries)

    def _case(self) -> Expr:
        self._expect_keyword("CASE")
        subject = None
        if not self._peek().is_keyword("WHEN"):
            subject = self._or()
        branches: List[Tuple[Expr, Expr]] = []
        while self._peek().is_keyword("WHEN"):
            self._advance()
            condition = self._or()
            self._expect_keyword("THEN")
            branches.append((condition, self._or()))
        if not branches:
            raise CypherSyntaxError("CASE without WHEN", self._peek().start)
        default = None
        if self._peek().is_keyword("ELSE"):
            self._advance()
            default = self._or()
        self._expect_keyword("END")
        return CaseExpr(subject, branches, default)

    def _skip_balanced(self) -> None:
        token = self._advance()
        if not (token.kind == TokenKind.OP and token.value in _OPENERS):
            raise CypherSyntaxError("Expected opening bracket", token.start)
        depth = 1
        while depth:
            token = self._advance()
            if token.kind == TokenKind.EOF:
                raise CypherSyntaxError("Unbalanced brackets", token.start)
            if token.kind == TokenKind.OP and token.value in _OPENERS:
                depth += 1
            elif token.kind == TokenKind.OP and token.value in _CLOSERS:
                depth -= 1

    def _text(self, start: int, end: int) -> str:
        if start >= end:
            return ""
        return self.source[self.tokens[start].start:self.tokens[end - 1].end]


def _number_value(text: str):
    if text.lower().startswith("0x"):
        return int(text, 16)
    if any(ch in text for ch in ".eE"):
        return float(text)
    return int(text)


__all__ = ["CLAUSE_KEYWORDS", "ExpressionParser", "parse_expression", "parse_query"]
