from __future__ import annotations

import ast
import keyword
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

FUNCTION_ARITY: dict[str, tuple[int, int | None]] = {
    "SQRT": (1, 1),
    "ROUND": (1, 2),
    "MAX": (1, None),
    "MIN": (1, None),
    "ABS": (1, 1),
    "POWER": (2, 2),
    "CEIL": (1, 1),
    "FLOOR": (1, 1),
    "ROUNDUP": (1, 2),
    "ROUNDDOWN": (1, 2),
    "IF": (3, 3),
}
CONSTANT_NAMES = ("PI", "E")
BOOLEAN_KEYWORDS = {"AND": "and", "OR": "or", "NOT": "not"}
RESERVED_WORDS = frozenset(FUNCTION_ARITY) | frozenset(CONSTANT_NAMES) | frozenset(BOOLEAN_KEYWORDS)
MAX_FORMULA_LENGTH = 5000

TOKEN_PATTERN = re.compile(
    r"""
    (?P<space>\s+)
    |(?P<number>\d+(?:\.\d*)?|\.\d+)
    |(?P<name>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<op>>=|<=|==|!=|[-+*/^<>])
    |(?P<lparen>\()
    |(?P<rparen>\))
    |(?P<comma>,)
    """,
    re.VERBOSE,
)
PREFIX_PATTERN = re.compile(r"\s*=(?!=)")

ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.BinOp,
    ast.UnaryOp,
    ast.Compare,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Call,
    ast.And,
    ast.Or,
    ast.Not,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.Pow,
    ast.USub,
    ast.UAdd,
    ast.Eq,
    ast.NotEq,
    ast.Gt,
    ast.GtE,
    ast.Lt,
    ast.LtE,
)


class FormulaSyntaxError(ValueError):
    """Raised when a formula cannot be tokenized or parsed."""

    def __init__(self, message: str, position: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.position = position


@dataclass(slots=True, frozen=True)
class Token:
    kind: str
    text: str
    start: int
    end: int


@dataclass(slots=True, frozen=True)
class ParsedFormula:
    """A tokenized formula together with its checked Python expression tree."""

    source: str
    tokens: tuple[Token, ...]
    tree: ast.Expression
    python_source: str
    python_offsets: tuple[int, ...]

    def position_of(self, column: int) -> int:
        """Map a column of ``python_source`` back to an offset in ``source``."""
        index = 0
        for token_index, offset in enumerate(self.python_offsets):
            if offset > column:
                break
            index = token_index
        if not self.tokens:
            return 0
        return self.tokens[index].start


def tokenize(formula: str, strict: bool = True) -> list[Token]:
    """Split a formula into tokens, skipping whitespace and a leading ``=``.

    Non-strict mode silently drops characters the grammar does not know so
    that identifier-level edits can still be applied to a broken draft.
    """
    tokens: list[Token] = []
    prefix = PREFIX_PATTERN.match(formula)
    position = prefix.end() if prefix else 0
    while position < len(formula):
        match = TOKEN_PATTERN.match(formula, position)
        if match is None:
            if strict:
                raise FormulaSyntaxError(f"Unexpected character '{formula[position]}'", position)
            position += 1
            continue
        kind = match.lastgroup or ""
        if kind != "space":
            tokens.append(Token(kind=kind, text=match.group(), start=match.start(), end=match.end()))
        position = match.end()
    return tokens


def _check_parentheses(tokens: list[Token]) -> None:
    open_positions: list[int] = []
    for token in tokens:
        if token.kind == "lparen":
            open_positions.append(token.start)
        elif token.kind == "rparen":
            if not open_positions:
                raise FormulaSyntaxError("Unexpected ')' without matching '('", token.start)
            open_positions.pop()
    if open_positions:
        raise FormulaSyntaxError("Missing ')' for '('", open_positions[-1])


def _python_text(token: Token) -> str:
    if token.kind == "op" and token.text == "^":
        return "**"
    if token.kind == "name":
        if token.text in BOOLEAN_KEYWORDS:
            return BOOLEAN_KEYWORDS[token.text]
        if keyword.iskeyword(token.text):
            raise FormulaSyntaxError(f"'{token.text}' is a reserved word", token.start)
    return token.text


def _check_nodes(parsed: ParsedFormula) -> None:
    for node in ast.walk(parsed.tree):
        if not isinstance(node, ALLOWED_NODES):
            column = getattr(node, "col_offset", 0)
            raise FormulaSyntaxError(
                f"Unsupported expression: {type(node).__name__}", parsed.position_of(column)
            )
        if isinstance(node, ast.Call) and not isinstance(node.func, ast.Name):
            raise FormulaSyntaxError("Only named functions can be called", parsed.position_of(node.col_offset))


def parse_formula(formula: str) -> ParsedFormula:
    if len(formula) > MAX_FORMULA_LENGTH:
        message = f"Formula is longer than {MAX_FORMULA_LENGTH} characters"
        raise FormulaSyntaxError(message, MAX_FORMULA_LENGTH)
    tokens = tokenize(formula)
    if not tokens:
        raise FormulaSyntaxError("Formula is empty", 0)
    _check_parentheses(tokens)

    pieces: list[str] = []
    offsets: list[int] = []
    cursor = 0
    for token in tokens:
        text = _python_text(token)
        offsets.append(cursor)
        pieces.append(text)
        cursor += len(text) + 1
    python_source = " ".join(pieces)

    try:
        tree = ast.parse(python_source, mode="eval")
    except SyntaxError as exc:
        column = (exc.offset or 1) - 1
        if column >= len(python_source):
            raise FormulaSyntaxError("Unexpected end of formula", len(formula)) from exc
        culprit = tokens[0]
        for token, offset in zip(tokens, offsets):
            if offset > column:
                break
            culprit = token
        raise FormulaSyntaxError(f"Invalid syntax near '{culprit.text}'", culprit.start) from exc
    except (RecursionError, MemoryError) as exc:
        raise FormulaSyntaxError("Formula is nested too deeply", 0) from exc

    parsed = ParsedFormula(
        source=formula,
        tokens=tuple(tokens),
        tree=tree,
        python_source=python_source,
        python_offsets=tuple(offsets),
    )
    _check_nodes(parsed)
    return parsed


def identifier_tokens(tokens: Iterable[Token]) -> list[Token]:
    """Name tokens that reference a value: no function callees, no keywords."""
    token_list = list(tokens)
    identifiers: list[Token] = []
    for index, token in enumerate(token_list):
        if token.kind != "name" or token.text in BOOLEAN_KEYWORDS:
            continue
        following = token_list[index + 1] if index + 1 < len(token_list) else None
        if following is not None and following.kind == "lparen":
            continue
        identifiers.append(token)
    return identifiers


def referenced_identifiers(formula: str, strict: bool = True) -> list[str]:
    seen: dict[str, None] = {}
    for token in identifier_tokens(tokenize(formula, strict=strict)):
        seen.setdefault(token.text, None)
    return list(seen)


def replace_identifiers(
    formula: str,
    replacements: Mapping[str, str] | Callable[[str], str | None],
    strict: bool = True,
) -> str:
    """Substitute whole identifier tokens, leaving every other character as written.

    Substitution is a single pass over the original tokens, so a replacement
    that happens to look like another identifier is never replaced again.
    """
    if callable(replacements):
        lookup = replacements
    else:
        lookup = replacements.get
    parts: list[str] = []
    cursor = 0
    for token in identifier_tokens(tokenize(formula, strict=strict)):
        replacement = lookup(token.text)
        if replacement is None:
            continue
        parts.append(formula[cursor : token.start])
        parts.append(replacement)
        cursor = token.end
    parts.append(formula[cursor:])
    return "".join(parts)


def strip_formula_prefix(formula: str) -> str:
    prefix = PREFIX_PATTERN.match(formula)
    return formula[prefix.end() :] if prefix else formula


def is_blank_formula(formula: str | None) -> bool:
    return not strip_formula_prefix(formula or "").strip()
