"""
Tokenizer for the Cypher subset accepted by Apache AGE.

Comments and whitespace are dropped; string literals, backtick-quoted names
and parameters become single tokens, so clause keywords that appear inside
them are never mistaken for structure.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List


class TokenKind(str, Enum):
    IDENT = "ident"
    QUOTED_IDENT = "quoted_ident"
    STRING = "string"
    NUMBER = "number"
    PARAM = "param"
    OP = "op"
    EOF = "eof"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    value: str
    start: int
    end: int

    @property
    def upper(self) -> str:
        return self.value.upper() if self.kind == TokenKind.IDENT else ""

    def is_keyword(self, *words: str) -> bool:
        return self.kind == TokenKind.IDENT and self.value.upper() in words

    def is_op(self, *ops: str) -> bool:
        return self.kind == TokenKind.OP and self.value in ops

    @property
    def name(self) -> str:
        """Identifier text for IDENT and QUOTED_IDENT tokens."""
        return self.value


class CypherSyntaxError(ValueError):
    def __init__(self, message: str, position: int):
        self.position = position
        super().__init__(f"{message} at position {position}")


_MULTI_CHAR_OPS = ("<>", "!=", "<=", ">=", "=~", "..", "+=")
_SINGLE_CHAR_OPS = set("()[]{},.:;|+-*/%^=<>!")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "\\": "\\", "'": "'", '"': '"'}


def _is_ident_start(ch: str) -> bool:
    return ch == "_" or ch.isalpha()


def _is_ident_part(ch: str) -> bool:
    return ch == "_" or ch.isalnum()


def tokenize(text: str) -> List[Token]:
    """
    Split Cypher text into tokens, ending with a single EOF token.

    Raises:
        CypherSyntaxError: unterminated string, quoted name or comment, or an
            unexpected character
    """
    tokens: List[Token] = []
    i = 0
    length = len(text)

    while i < length:
        ch = text[i]

        if ch.isspace():
            i += 1
            continue

        if text.startswith("//", i):
            newline = text.find("\n", i)
            i = length if newline == -1 else newline + 1
            continue

        if text.startswith("/*", i):
            close = text.find("*/", i + 2)
            if close == -1:
                raise CypherSyntaxError("Unterminated block comment", i)
            i = close + 2
            continue

        if ch in ("'", '"'):
            value, end = _read_string(text, i)
            tokens.append(Token(TokenKind.STRING, value, i, end))
            i = end
            continue

        if ch == "`":
            value, end = _read_quoted_ident(text, i)
            tokens.append(Token(TokenKind.QUOTED_IDENT, value, i, end))
            i = end
            continue

        if ch == "$":
            j = i + 1
            while j < length and _is_ident_part(text[j]):
                j += 1
            if j == i + 1:
                raise CypherSyntaxError("Expected parameter name after '$'", i)
            tokens.append(Token(TokenKind.PARAM, text[i + 1:j], i, j))
            i = j
            continue

        if ch.isdigit():
            end = _read_number(text, i)
            tokens.append(Token(TokenKind.NUMBER, text[i:end], i, end))
            i = end
            continue

        if _is_ident_start(ch):
            j = i + 1
            while j < length and _is_ident_part(text[j]):
                j += 1
            tokens.append(Token(TokenKind.IDENT, text[i:j], i, j))
            i = j
            continue

        op = next((candidate for candidate in _MULTI_CHAR_OPS if text.startswith(candidate, i)), None)
        if op is None and ch in _SINGLE_CHAR_OPS:
            op = ch
        if op is None:
            raise CypherSyntaxError(f"Unexpected character {ch!r}", i)
        tokens.append(Token(TokenKind.OP, op, i, i + len(op)))
        i += len(op)

    tokens.append(Token(TokenKind.EOF, "", length, length))
    return tokens


def _read_string(text: str, start: int):
    quote = text[start]
    chars = []
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            if i + 1 >= len(text):
                break
            nxt = text[i + 1]
            if nxt == "u" and i + 5 < len(text):
                try:
                    chars.append(chr(int(text[i + 2:i + 6], 16)))
                    i += 6
                    continue
                except ValueError:
                    pass
            chars.append(_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        if ch == quote:
            return "".join(chars), i + 1
        chars.append(ch)
        i += 1
    raise CypherSyntaxError("Unterminated string literal", start)


def _read_quoted_ident(text: str, start: int):
    chars = []
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == "`":
            if text.startswith("``", i):
                chars.append("`")
                i += 2
                continue
            return "".join(chars), i + 1
        chars.append(ch)
        i += 1
    raise CypherSyntaxError("Unterminated quoted identifier", start)


def _read_number(text: str, start: int) -> int:
    i = start
    length = len(text)
    if text.startswith(("0x", "0X"), i):
        i += 2
        while i < length and text[i] in "0123456789abcdefABCDEF":
            i += 1
        return i
    while i < length and text[i].isdigit():
        i += 1
    # "1..3" is a range, not a float
    if i + 1 < length and text[i] == "." and text[i + 1].isdigit():
        i += 1
        while i < length and text[i].isdigit():
            i += 1
    if i < length and text[i] in "eE":
        j = i + 1
        if j < length and text[j] in "+-":
            j += 1
        if j < length and text[j].isdigit():
            i = j
            while i < length and text[i].isdigit():
                i += 1
    return i


__all__ = ["Token", "TokenKind", "CypherSyntaxError", "tokenize"]
