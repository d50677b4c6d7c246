from __future__ import annotations

import ast
import logging
import math
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Iterable, Mapping

from .formula import FormulaSyntaxError, parse_formula
from .parameters import ParameterKind, PriceParameter
from .validation import UNKNOWN_REFERENCE, validate_formula

DIVISION_BY_ZERO = "division-by-zero"
DOMAIN_ERROR = "domain-error"
OVERFLOW = "overflow"
INVALID_FORMULA = "invalid-formula"
INVALID_RESULT = "invalid-result"
LOOKUP_MISS = "lookup-miss"

logger = logging.getLogger(__name__)


class EvaluationError(ValueError):
    """Raised when a formula cannot produce a finite price."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def _round_half_up(value: float, digits: Any = 0) -> float:
    if not math.isfinite(value):
        raise ValueError("ROUND requires a finite number")
    quantum = Decimal(1).scaleb(-int(digits))
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def _maximum(*values: float) -> float:
    return max(values)


def _minimum(*values: float) -> float:
    return min(values)


def _round_up(value: float, digits: Any = 0) -> float:
    factor = 10 ** int(digits)
    return math.ceil(value * factor) / factor


def _round_down(value: float, digits: Any = 0) -> float:
    factor = 10 ** int(digits)
    return math.floor(value * factor) / factor


FORMULA_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "SQRT": math.sqrt,
    "ROUND": _round_half_up,
    "MAX": _maximum,
    "MIN": _minimum,
    "ABS": abs,
    "POWER": math.pow,
    "CEIL": math.ceil,
    "FLOOR": math.floor,
    "ROUNDUP": _round_up,
    "ROUNDDOWN": _round_down,
}
FORMULA_CONSTANTS = {"PI": math.pi, "E": math.e}


class _ProgramTransformer(ast.NodeTransformer):
    """Rewrite IF, ``**`` and AND/OR into forms that always evaluate to numbers."""

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        self.generic_visit(node)
        truth = ast.IfExp(test=node, body=ast.Constant(1.0), orelse=ast.Constant(0.0))
        return ast.copy_location(truth, node)

    def visit_Call(self, node: ast.Call) -> Any:
        self.generic_visit(node)
        if isinstance(node.func, ast.Name) and node.func.id == "IF":
            test, body, orelse = node.args
            return ast.copy_location(ast.IfExp(test=test, body=body, orelse=orelse), node)
        return node

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        self.generic_visit(node)
        if isinstance(node.op, ast.Pow):
            call = ast.Call(func=ast.Name(id="POWER", ctx=ast.Load()), args=[node.left, node.right], keywords=[])
            return ast.copy_location(call, node)
        return node


@dataclass(slots=True, frozen=True)
class ExpressionProgram:
    """Validated, compiled formula that can be evaluated repeatedly."""

    source: str
    code: Any
    references: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class LookupWarning:
    parameter_code: str
    form_field_code: str | None
    value: Any
    message: str
    code: str = LOOKUP_MISS

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "parameter_code": self.parameter_code,
            "form_field_code": self.form_field_code,
            "value": self.value,
            "message": self.message,
        }


@dataclass(slots=True)
class PriceEvaluation:
    value: float
    values: dict[str, float]
    warnings: list[LookupWarning] = field(default_factory=list)


def compile_formula(formula: str, known_identifiers: Iterable[str]) -> ExpressionProgram:
    """Validate a code space formula and compile it for evaluation."""
    validation = validate_formula(formula, known_identifiers, letter_space=False)
    if not validation.is_valid:
        code = UNKNOWN_REFERENCE if validation.code == UNKNOWN_REFERENCE else INVALID_FORMULA
        raise EvaluationError(code, validation.message or "Invalid formula")
    try:
        tree = parse_formula(formula).tree
    except FormulaSyntaxError as exc:
        raise EvaluationError(INVALID_FORMULA, exc.message) from exc
    try:
        tree = ast.fix_missing_locations(_ProgramTransformer().visit(tree))
        code = compile(tree, "<formula>", "eval")
    except (RecursionError, MemoryError) as exc:
        raise EvaluationError(INVALID_FORMULA, "Formula is nested too deeply") from exc
    return ExpressionProgram(
        source=formula,
        code=code,
        references=tuple(validation.references),
    )


def evaluate_program(program: ExpressionProgram, values: Mapping[str, float]) -> float:
    missing = [name for name in program.references if name not in values]
    if missing:
        raise EvaluationError(UNKNOWN_REFERENCE, f"No value for: {', '.join(missing)}")
    scope = {"__builtins__": {}, **FORMULA_FUNCTIONS, **FORMULA_CONSTANTS}
    try:
        result = eval(program.code, scope, dict(values))
    except ZeroDivisionError as exc:
        raise EvaluationError(DIVISION_BY_ZERO, "Division by zero") from exc
    except OverflowError as exc:
        raise EvaluationError(OVERFLOW, "Result is too large") from exc
    except (ValueError, ArithmeticError) as exc:
        raise EvaluationError(DOMAIN_ERROR, f"Math domain error: {exc}") from exc
    except TypeError as exc:
        raise EvaluationError(INVALID_FORMULA, f"Invalid operand: {exc}") from exc
    except (RecursionError, MemoryError) as exc:
        raise EvaluationError(INVALID_FORMULA, "Formula is nested too deeply") from exc
    except NameError as exc:
        raise EvaluationError(UNKNOWN_REFERENCE, str(exc)) from exc

    try:
        number = float(result)
    except OverflowError as exc:
        raise EvaluationError(OVERFLOW, "Result is too large") from exc
    if not math.isfinite(number):
        raise EvaluationError(INVALID_RESULT, "Formula did not produce a finite number")
    return number


def evaluate_formula(formula: str, values: Mapping[str, float]) -> float:
    return evaluate_program(compile_formula(formula, values.keys()), values)


def _to_number(raw_value: Any) -> float | None:
    if isinstance(raw_value, bool):
        return 1.0 if raw_value else 0.0
    try:
        number = float(str(raw_value).strip())
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _lookup_option(table: Mapping[str, float], option: Any) -> float | None:
    return table.get(str(option))


def _resolve_form_value(
    parameter: PriceParameter, form_data: Mapping[str, Any], warnings: list[LookupWarning]
) -> float:
    def miss(value: Any, message: str) -> float:
        warning = LookupWarning(
            parameter_code=parameter.code,
            form_field_code=parameter.form_field_code,
            value=value,
            message=message,
        )
        warnings.append(warning)
        logger.warning(
            "lookup_miss",
            extra={"parameter_code": parameter.code, "form_field_code": parameter.form_field_code, "reason": message},
        )
        return 0.0

    raw_value = form_data.get(parameter.form_field_code or "")
    if raw_value is None or raw_value == "" or raw_value == []:
        return miss(raw_value, f"No value submitted for '{parameter.form_field_code}'")

    selections = list(raw_value) if isinstance(raw_value, (list, tuple)) else [raw_value]
    if not parameter.lookup_table:
        if isinstance(raw_value, (list, tuple)):
            return float(len(selections))
        number = _to_number(raw_value)
        if number is None:
            return miss(raw_value, f"Value {raw_value!r} of '{parameter.form_field_code}' is not a number")
        return number

    total = 0.0
    for option in selections:
        value = _lookup_option(parameter.lookup_table, option)
        if value is None:
            total += miss(option, f"Option {option!r} has no price in '{parameter.name}'")
        else:
            total += value
    return total


def resolve_parameter_values(
    parameters: Iterable[PriceParameter], form_data: Mapping[str, Any]
) -> tuple[dict[str, float], list[LookupWarning]]:
    values: dict[str, float] = {}
    warnings: list[LookupWarning] = []
    for parameter in parameters:
        if parameter.kind is ParameterKind.FIXED:
            if parameter.fixed_value is None:
                warnings.append(
                    LookupWarning(
                        parameter_code=parameter.code,
                        form_field_code=None,
                        value=None,
                        message=f"Fixed parameter '{parameter.name}' has no value",
                        code="missing-value",
                    )
                )
                values[parameter.code] = 0.0
            else:
                values[parameter.code] = float(parameter.fixed_value)
        else:
            values[parameter.code] = _resolve_form_value(parameter, form_data, warnings)
    return values, warnings


def evaluate(
    backend_formula: str, parameters: Iterable[PriceParameter], form_data: Mapping[str, Any]
) -> PriceEvaluation:
    """Resolve every parameter against submitted form data and evaluate the formula.

    Missing options resolve to zero and are reported in ``warnings``; any
    other failure raises :class:`EvaluationError`.
    """
    values, warnings = resolve_parameter_values(parameters, form_data)
    program = compile_formula(backend_formula, values.keys())
    return PriceEvaluation(value=evaluate_program(program, values), values=values, warnings=warnings)
