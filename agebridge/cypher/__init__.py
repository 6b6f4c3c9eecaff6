"""
agebridge.cypher
================

Cypher text handling: tokenizer, parser, RETURN-column inference and the
compiler producing the ``ag_catalog.cypher(...)`` SQL wrapper.
"""

from agebridge.cypher.lexer import CypherSyntaxError, tokenize
from agebridge.cypher.parser import parse_expression, parse_query
from agebridge.cypher.columns import infer_columns, infer_return_columns
from agebridge.cypher.bridge import (
    CompiledCypher,
    classify_graph_error,
    compile_cypher,
    session_setup_statements,
)

__all__ = [
    "CypherSyntaxError",
    "tokenize",
    "parse_expression",
    "parse_query",
    "infer_columns",
    "infer_return_columns",
    "CompiledCypher",
    "classify_graph_error",
    "compile_cypher",
    "session_setup_statements",
]
