from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from .formula import CONSTANT_NAMES, FUNCTION_ARITY, FormulaSyntaxError, ParsedFormula, parse_formula
from .id_mapping import build_mapping
from .parameters import PriceParameter

SYNTAX = "syntax"
UNKNOWN_REFERENCE = "unknown-reference"
ARITY = "arity"

LETTER_PATTERN = re.compile(r"^[A-Z]{1,3}$")


@dataclass(slots=True)
class ValidationResult:
    is_valid: bool
    message: str | None = None
    code: str | None = None
    suggestions: list[str] = field(default_factory=list)
    position: int | None = None
    references: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"is_valid": self.is_valid, "references": self.references, "warnings": self.warnings}
        if not self.is_valid:
            payload.update(
                {
                    "message": self.message,
                    "code": self.code,
                    "suggestions": self.suggestions,
                    "position": self.position,
                }
            )
        return payload


@dataclass(slots=True)
class _Reference:
    name: str
    column: int


class _ReferenceCollector(ast.NodeVisitor):
    def __init__(self) -> None:
        self.names: list[_Reference] = []
        self.calls: list[ast.Call] = []

    def visit_Call(self, node: ast.Call) -> Any:
        self.calls.append(node)
        for argument in node.args:
            self.visit(argument)

    def visit_Name(self, node: ast.Name) -> Any:
        self.names.append(_Reference(name=node.id, column=node.col_offset))


def _available_message(known: list[str], letter_space: bool) -> str:
    label = "parameters" if letter_space else "parameter codes"
    if not known:
        return f"No {label} are defined yet"
    return f"Available {label}: {', '.join(known)}"


def _invalid(
    parsed: ParsedFormula,
    code: str,
    message: str,
    column: int,
    suggestions: list[str] | None = None,
) -> ValidationResult:
    return ValidationResult(
        is_valid=False,
        code=code,
        message=message,
        position=parsed.position_of(column),
        suggestions=suggestions or [],
    )


def _arity_text(minimum: int, maximum: int | None) -> str:
    if maximum is None:
        return f"at least {minimum}"
    if minimum == maximum:
        return str(minimum)
    return f"{minimum} to {maximum}"


def _check_call(parsed: ParsedFormula, node: ast.Call) -> ValidationResult | None:
    name = node.func.id if isinstance(node.func, ast.Name) else ""
    if name not in FUNCTION_ARITY:
        suggestions = [name.upper()] if name.upper() in FUNCTION_ARITY else sorted(FUNCTION_ARITY)
        return _invalid(parsed, ARITY, f"Unknown function '{name}'", node.col_offset, suggestions)
    minimum, maximum = FUNCTION_ARITY[name]
    count = len(node.args)
    if count < minimum or (maximum is not None and count > maximum):
        return _invalid(
            parsed,
            ARITY,
            f"{name} expects {_arity_text(minimum, maximum)} argument(s), got {count}",
            node.col_offset,
        )
    return None


def _division_warnings(tree: ast.AST) -> list[str]:
    warnings = []
    for node in ast.walk(tree):
        if (
            isinstance(node, ast.BinOp)
            and isinstance(node.op, ast.Div)
            and isinstance(node.right, ast.Constant)
            and node.right.value == 0
        ):
            warnings.append("Formula divides by zero")
    return warnings


def validate_formula(formula: str, known_identifiers: Iterable[str], letter_space: bool = True) -> ValidationResult:
    """Validate a formula against the identifiers it may reference.

    Checks run in a fixed order: syntax, unknown letters, function names and
    argument counts, then any remaining identifier. The first failure wins.
    Never raises.
    """
    known = list(known_identifiers)
    known_set = set(known)
    try:
        parsed = parse_formula(formula or "")
    except FormulaSyntaxError as exc:
        return ValidationResult(is_valid=False, code=SYNTAX, message=exc.message, position=exc.position)

    collector = _ReferenceCollector()
    try:
        collector.visit(parsed.tree)
    except RecursionError:
        return ValidationResult(is_valid=False, code=SYNTAX, message="Formula is nested too deeply", position=0)

    if letter_space:
        for reference in collector.names:
            if reference.name in known_set or reference.name in CONSTANT_NAMES:
                continue
            if LETTER_PATTERN.match(reference.name):
                return _invalid(
                    parsed,
                    UNKNOWN_REFERENCE,
                    f"Unknown parameter '{reference.name}'. {_available_message(known, letter_space)}",
                    reference.column,
                    known,
                )

    for node in collector.calls:
        failure = _check_call(parsed, node)
        if failure is not None:
            return failure

    for reference in collector.names:
        if reference.name in known_set or reference.name in CONSTANT_NAMES:
            continue
        return _invalid(
            parsed,
            UNKNOWN_REFERENCE,
            f"Unknown identifier '{reference.name}'. {_available_message(known, letter_space)}",
            reference.column,
            known,
        )

    references: dict[str, None] = {}
    for reference in collector.names:
        if reference.name in known_set:
            references.setdefault(reference.name, None)
    return ValidationResult(is_valid=True, references=list(references), warnings=_division_warnings(parsed.tree))


def validate_user_formula(user_formula: str, parameters: Iterable[PriceParameter]) -> ValidationResult:
    try:
        mapping = build_mapping(parameters)
    except ValueError as exc:
        return ValidationResult(is_valid=False, code=UNKNOWN_REFERENCE, message=str(exc))
    result = validate_formula(user_formula, mapping.letters, letter_space=True)
    for constant in CONSTANT_NAMES:
        if constant in result.references:
            code = mapping.code_for(constant)
            result.warnings.append(f"{constant} refers to parameter '{code}', not the constant {constant}")
    return result


def validate_backend_formula(backend_formula: str, parameters: Iterable[PriceParameter]) -> ValidationResult:
    return validate_formula(backend_formula, [parameter.code for parameter in parameters], letter_space=False)
