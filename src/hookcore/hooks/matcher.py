"""Matcher expression compiler and evaluator.

A matcher is a small boolean language evaluated against an event context::

    tool.name == "bash" && tool.args matches "rm -rf"
    !(session.source == resume) || tool_input.file_path matches "\\.md$"

Precedence from lowest to highest is ``||``, ``&&``, ``!``, comparison and
parenthesised group.  ``*`` and blank text match everything.  Compilation is
pure: the same text always yields an equal tree, and regular expressions are
compiled up front so evaluation can never fail.  Chains of ``&&`` and ``||``
become flat n-ary nodes, and groups and negations may nest at most
``MAX_NESTING`` deep, so neither compiling nor evaluating depends on the
interpreter recursion limit.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Union

from .errors import ParseError
from .utils import MISSING, canonical_text, resolve_context_path

OP_EQ = "=="
OP_NE = "!="
OP_MATCHES = "matches"

# Combined limit on "(" groups and "!" prefixes open at one point.
MAX_NESTING = 64


@dataclass(frozen=True)
class Literal:
    value: bool

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return self.value


@dataclass(frozen=True)
class Not:
    inner: Expression

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return not self.inner.evaluate(context)


@dataclass(frozen=True)
class And:
    operands: tuple[Expression, ...]

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        for operand in self.operands:
            if not operand.evaluate(context):
                return False
        return True


@dataclass(frozen=True)
class Or:
    operands: tuple[Expression, ...]

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        for operand in self.operands:
            if operand.evaluate(context):
                return True
        return False


@dataclass(frozen=True)
class Compare:
    path: tuple[str, ...]
    op: str
    literal: str
    regex: re.Pattern[str] | None = field(default=None, compare=False, repr=False)

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        value = resolve_context_path(context, self.path)
        if value is MISSING:
            return False
        text = canonical_text(value)
        if self.op == OP_EQ:
            return text == self.literal
        if self.op == OP_NE:
            return text != self.literal
        if self.regex is not None:
            return self.regex.search(text) is not None
        return False


Expression = Union[Literal, Not, And, Or, Compare]

ALWAYS = Literal(True)


def evaluate(expression: Expression | None, context: Mapping[str, Any]) -> bool:
    """Evaluate a compiled matcher; an absent matcher always matches."""
    if expression is None:
        return True
    return expression.evaluate(context)


# --- tokenizer -------------------------------------------------------------

_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_\-]*")
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", '"': '"', "'": "'"}
_PUNCTUATION = (
    ("&&", "AND"),
    ("||", "OR"),
    ("==", "EQ"),
    ("!=", "NE"),
    ("!", "NOT"),
    ("(", "LPAREN"),
    (")", "RPAREN"),
    (".", "DOT"),
    ("*", "STAR"),
)


@dataclass(frozen=True)
class _Token:
    kind: str
    value: str
    pos: int


def _byte_offset(text: str, pos: int) -> int:
    return len(text[:pos].encode("utf-8", "surrogatepass"))


def _error(text: str, message: str, pos: int) -> ParseError:
    return ParseError(message, _byte_offset(text, pos))


def _read_string(text: str, start: int) -> tuple[str, int]:
    quote = text[start]
    chars: list[str] = []
    index = start + 1
    while index < len(text):
        char = text[index]
        if char == "\\":
            if index + 1 >= len(text):
                break
            escaped = text[index + 1]
            chars.append(_ESCAPES.get(escaped, "\\" + escaped))
            index += 2
            continue
        if char == quote:
            return "".join(chars), index + 1
        chars.append(char)
        index += 1
    raise _error(text, "字串缺少結尾引號", start)


def tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if char.isspace():
            index += 1
            continue
        if char in "\"'":
            value, end = _read_string(text, index)
            tokens.append(_Token("STRING", value, index))
            index = end
            continue
        number = _NUMBER_RE.match(text, index)
        if number and (char.isdigit() or char == "-"):
            tokens.append(_Token("NUMBER", number.group(0), index))
            index = number.end()
            continue
        word = _WORD_RE.match(text, index)
        if word:
            tokens.append(_Token("WORD", word.group(0), index))
            index = word.end()
            continue
        for symbol, kind in _PUNCTUATION:
            if text.startswith(symbol, index):
                tokens.append(_Token(kind, symbol, index))
                index += len(symbol)
                break
        else:
            raise _error(text, f"無法辨識的字元 {char!r}", index)
    tokens.append(_Token("EOF", "", length))
    return tokens


# --- parser ----------------------------------------------------------------


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0
        self.depth = 0

    def peek(self, offset: int = 0) -> _Token:
        return self.tokens[min(self.index + offset, len(self.tokens) - 1)]

    def advance(self) -> _Token:
        token = self.tokens[self.index]
        if token.kind != "EOF":
            self.index += 1
        return token

    def expect(self, kind: str, description: str) -> _Token:
        token = self.peek()
        if token.kind != kind:
            raise self.unexpected(token, description)
        return self.advance()

    def unexpected(self, token: _Token, description: str) -> ParseError:
        found = "結尾" if token.kind == "EOF" else repr(token.value)
        return _error(self.text, f"預期 {description}，但遇到 {found}", token.pos)

    def parse(self) -> Expression:
        expression = self.parse_or()
        token = self.peek()
        if token.kind != "EOF":
            raise self.unexpected(token, "運算子或結尾")
        return expression

    def parse_or(self) -> Expression:
        operands = [self.parse_and()]
        while self.peek().kind == "OR":
            self.advance()
            operands.append(self.parse_and())
        return operands[0] if len(operands) == 1 else Or(tuple(operands))

    def parse_and(self) -> Expression:
        operands = [self.parse_unary()]
        while self.peek().kind == "AND":
            self.advance()
            operands.append(self.parse_unary())
        return operands[0] if len(operands) == 1 else And(tuple(operands))

    def enter(self, token: _Token) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise _error(self.text, f"巢狀層數超過上限 {MAX_NESTING}", token.pos)

    def parse_unary(self) -> Expression:
        token = self.peek()
        if token.kind == "NOT":
            self.enter(token)
            self.advance()
            inner = self.parse_unary()
            self.depth -= 1
            return Not(inner)
        return self.parse_primary()

    def parse_primary(self) -> Expression:
        token = self.peek()
        if token.kind == "LPAREN":
            self.enter(token)
            self.advance()
            inner = self.parse_or()
            self.expect("RPAREN", "')'")
            self.depth -= 1
            return inner
        if token.kind == "STAR":
            self.advance()
            return ALWAYS
        if token.kind == "WORD" and token.value in ("true", "false"):
            following = self.peek(1)
            is_operand = following.kind in ("DOT", "EQ", "NE") or (
                following.kind == "WORD" and following.value == OP_MATCHES
            )
            if not is_operand:
                self.advance()
                return Literal(token.value == "true")
        if token.kind == "WORD":
            return self.parse_comparison()
        raise self.unexpected(token, "欄位路徑、'(' 或 '!'")

    def parse_comparison(self) -> Compare:
        path = [self.expect("WORD", "欄位名稱").value]
        while self.peek().kind == "DOT":
            self.advance()
            path.append(self.expect("WORD", "欄位名稱").value)

        op_token = self.peek()
        if op_token.kind in ("EQ", "NE"):
            self.advance()
            literal = self.parse_literal()
            return Compare(tuple(path), op_token.value, literal)
        if op_token.kind == "WORD" and op_token.value == OP_MATCHES:
            self.advance()
            pattern_token = self.expect("STRING", "帶引號的正規表示式")
            try:
                regex = re.compile(pattern_token.value)
            except re.error as exc:
                raise _error(self.text, f"正規表示式無效：{exc}", pattern_token.pos) from exc
            return Compare(tuple(path), OP_MATCHES, pattern_token.value, regex)
        raise self.unexpected(op_token, "'=='、'!=' 或 'matches'")

    def parse_literal(self) -> str:
        token = self.peek()
        if token.kind in ("STRING", "WORD"):
            self.advance()
            return token.value
        if token.kind == "NUMBER":
            self.advance()
            number = float(token.value) if "." in token.value else int(token.value)
            return canonical_text(number)
        raise self.unexpected(token, "字串、數字、布林值或單字")


def compile_matcher(text: str | None) -> Expression:
    """Compile matcher text into an expression tree or raise ``ParseError``."""
    source = text or ""
    if not source.strip():
        return ALWAYS
    return _Parser(source).parse()


__all__ = [
    "ALWAYS",
    "MAX_NESTING",
    "And",
    "Compare",
    "Expression",
    "Literal",
    "Not",
    "Or",
    "compile_matcher",
    "evaluate",
    "tokenize",
]
