import pytest

from agebridge.core.errors import QueryError
from agebridge.cypher.ast import (
    BinaryOp,
    CaseExpr,
    FunctionCall,
    ListLiteral,
    Literal,
    Opaque,
    Parameter,
    PropertyAccess,
    Subscript,
    Variable,
)
from agebridge.cypher.columns import deduplicate, infer_columns, render_column_list
from agebridge.cypher.lexer import CypherSyntaxError, TokenKind, tokenize
from agebridge.cypher.parser import parse_expression, parse_query


def test_tokenize_skips_comments_and_keeps_literals_whole():
    tokens = tokenize("MATCH (n) // find people\nWHERE n.name = 'RETURN x' /* note */ RETURN n")

    kinds = [(t.kind, t.value) for t in tokens]
    assert (TokenKind.STRING, "RETURN x") in kinds
    assert [t.value for t in tokens if t.is_keyword("RETURN")] == ["RETURN"]
    assert tokens[-1].kind == TokenKind.EOF


def test_tokenize_escapes_params_and_numbers():
    tokens = tokenize(r"RETURN 'it\'s é', `odd``name`, $limit, 1..3, 2.5e3, 0x1F")

    values = [t.value for t in tokens]
    assert "it's é" in values
    assert "odd`name" in values
    assert any(t.kind == TokenKind.PARAM and t.value == "limit" for t in tokens)
    assert ["1", "..", "3"] == values[values.index("..") - 1:values.index("..") + 2]
    assert "2.5e3" in values
    assert "0x1F" in values


def test_tokenize_errors_carry_position():
    with pytest.raises(CypherSyntaxError) as exc_info:
        tokenize("RETURN 'unterminated")
    assert exc_info.value.position == 7

    with pytest.raises(CypherSyntaxError):
        tokenize("RETURN n # comment")


@pytest.mark.parametrize(
    "cypher, columns",
    [
        ("MATCH (a)-[:KNOWS]->(b) RETURN a.name AS n, count(b) AS c", ["n", "c"]),
        ("MATCH (p:Person) RETURN p.name, p.age", ["name", "age"]),
        ("MATCH (n) RETURN count(*)", ["count"]),
        ("MATCH (n) RETURN n", ["n"]),
        ("MATCH (n) RETURN n.name, m.name", ["name", "name_2"]),
        ("MATCH (n) RETURN n.name AS name, n.name", ["name", "name_2"]),
        ("MATCH (n) RETURN n.age + 1", ["col1"]),
        ("MATCH (n) RETURN n, [x IN n.tags WHERE x <> 'a'] AS tags, 1 + 2", ["n", "tags", "col3"]),
        ("MATCH (n) RETURN DISTINCT n.city ORDER BY n.city LIMIT 5", ["city"]),
        ("MATCH (n) WITH n, count(*) AS c RETURN n.name, c", ["name", "c"]),
        ("CREATE (n:Person {name: 'x'})", ["result"]),
        ("MATCH (n) RETURN ag_catalog.age_id(n)", ["age_id"]),
        ("MATCH (n) RETURN n.`first name`", ["first name"]),
        ("MATCH (n) RETURN n.name AS `Full Name`", ["Full Name"]),
        ("MATCH (n) RETURN {name: n.name, tags: [1, 2]} AS doc", ["doc"]),
    ],
)
def test_infer_columns(cypher, columns):
    assert infer_columns(cypher) == columns


def test_keywords_in_strings_and_properties_do_not_split_clauses():
    cypher = "MATCH (n) WHERE n.title = 'ORDER BY LIMIT' AND n.limit > 1 RETURN n.limit AS lim, n.order"

    assert infer_columns(cypher) == ["lim", "order"]


def test_starts_with_is_a_predicate_not_a_clause():
    cypher = "MATCH (n) WHERE n.name STARTS WITH 'A' OR n.name ENDS WITH 'z' RETURN n.name"

    query = parse_query(cypher)

    assert [clause.keyword for clause in query.parts[0].clauses] == ["MATCH", "WHERE", "RETURN"]
    assert infer_columns(cypher) == ["name"]


def test_compound_clause_keywords():
    query = parse_query(
        "MATCH (a) OPTIONAL MATCH (a)-[r]->(b) DETACH DELETE r RETURN a ORDER BY a.name SKIP 1 LIMIT 2"
    )

    keywords = [clause.keyword for clause in query.parts[0].clauses]
    assert keywords == ["MATCH", "OPTIONAL MATCH", "DETACH DELETE", "RETURN", "ORDER BY", "SKIP", "LIMIT"]


def test_union_uses_first_branch_columns():
    query = parse_query("MATCH (a:A) RETURN a.name AS name UNION ALL MATCH (b:B) RETURN b.title AS name")

    assert len(query.parts) == 2
    assert query.union_all == [True]
    assert infer_columns("MATCH (a:A) RETURN a.name UNION MATCH (b:B) RETURN b.name") == ["name"]


def test_explicit_columns_win():
    assert infer_columns("MATCH (n) RETURN *", ["node"]) == ["node"]
    assert infer_columns("MATCH (n) RETURN n", ["a", "a"]) == ["a", "a_2"]


def test_return_star_requires_explicit_columns():
    with pytest.raises(QueryError) as exc_info:
        infer_columns("MATCH (n) RETURN *")

    assert exc_info.value.code == "CYPHER_RETURN_STAR"


def test_unbalanced_brackets_are_syntax_errors():
    with pytest.raises(CypherSyntaxError):
        parse_query("MATCH (n RETURN n")
    with pytest.raises(CypherSyntaxError):
        parse_query("MATCH (n)] RETURN n")


def test_deeply_nested_items_degrade_to_positional_names():
    nested = "(" * 3000 + "1" + ")" * 3000

    assert infer_columns(f"MATCH (n) RETURN {nested} AS x") == ["x"]
    assert infer_columns(f"MATCH (n) RETURN {nested}, n") == ["col1", "n"]
    assert infer_columns("RETURN " + "- " * 3000 + "1") == ["col1"]


def test_expression_depth_is_capped():
    assert parse_expression("(" * 10 + "1" + ")" * 10) == Literal(1)
    with pytest.raises(CypherSyntaxError):
        parse_expression("f(" * 100 + "1" + ")" * 100)


def test_deduplicate():
    assert deduplicate(["a", "b", "a", "a", "a_2"]) == ["a", "b", "a_2", "a_3", "a_2_2"]


def test_render_column_list():
    assert render_column_list(["n", 'we"ird']) == '"n" ag_catalog.agtype, "we""ird" ag_catalog.agtype'


def test_expression_trees():
    expr = parse_expression("n.age * 2 + 1 > $min AND NOT n.name IS NULL")
    assert isinstance(expr, BinaryOp) and expr.op == "AND"
    comparison = expr.left
    assert comparison.op == ">"
    assert isinstance(comparison.right, Parameter)
    assert comparison.left.op == "+"
    assert comparison.left.left.op == "*"
    assert isinstance(comparison.left.left.left, PropertyAccess)

    call = parse_expression("count(DISTINCT n.name)")
    assert isinstance(call, FunctionCall) and call.distinct
    assert isinstance(call.args[0], PropertyAccess)

    assert isinstance(parse_expression("[1, 'a', null]"), ListLiteral)
    assert isinstance(parse_expression("n.tags[0..2]"), Subscript)
    assert parse_expression("true") == Literal(True)
    assert isinstance(parse_expression("CASE WHEN n.age > 18 THEN 'adult' ELSE 'minor' END"), CaseExpr)
    assert isinstance(parse_expression("[x IN range(1, 3) | x * 2]"), Opaque)
    assert parse_expression("`n`") == Variable("n")
