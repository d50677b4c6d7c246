import pytest

from quote_pricing.evaluator import EvaluationError, evaluate, evaluate_formula
from quote_pricing.id_mapping import build_mapping, to_backend_formula
from quote_pricing.parameters import ParameterKind, PriceParameter

BASE = PriceParameter(code="base", name="Base price", kind=ParameterKind.FIXED, fixed_value=10)
SIZE = PriceParameter(
    code="size_factor",
    name="Size factor",
    kind=ParameterKind.FORM_LOOKUP,
    form_field_code="size",
    lookup_table={"small": 1, "large": 2},
)
QUANTITY = PriceParameter(code="quantity", name="Quantity", kind=ParameterKind.FORM_LOOKUP, form_field_code="qty")
EXTRAS = PriceParameter(
    code="extras",
    name="Extras",
    kind=ParameterKind.FORM_LOOKUP,
    form_field_code="extras",
    lookup_table={"gift_wrap": 5, "express": 15},
)


def test_arithmetic_over_letter_values() -> None:
    assert evaluate_formula("A*B+C", {"A": 2, "B": 3, "C": 1}) == 7


def test_functions_and_conditionals() -> None:
    assert evaluate_formula("SQRT(B)+IF(C>10,50,0)", {"B": 16, "C": 11}) == 54


def test_fixed_times_lookup_scenario() -> None:
    mapping = build_mapping([BASE, SIZE])
    backend_formula = to_backend_formula("A*B", mapping)
    result = evaluate(backend_formula, [BASE, SIZE], {"size": "large"})
    assert result.value == 20
    assert result.values == {"base": 10.0, "size_factor": 2.0}
    assert result.warnings == []


def test_operator_precedence() -> None:
    assert evaluate_formula("2 + 3 * 4 ^ 2", {}) == 50
    assert evaluate_formula("-2 ^ 2", {}) == -4
    assert evaluate_formula("2 ^ 3 ^ 2", {}) == 512
    assert evaluate_formula("= (1 + 2) * 3", {}) == 9


def test_division_by_zero_is_an_evaluation_error() -> None:
    with pytest.raises(EvaluationError) as error:
        evaluate_formula("A / B", {"A": 1, "B": 0})
    assert error.value.code == "division-by-zero"


def test_only_the_taken_branch_is_evaluated() -> None:
    assert evaluate_formula("IF(B == 0, 0, A / B)", {"A": 1, "B": 0}) == 0
    assert evaluate_formula("IF(B != 0 AND A / B > 1, 1, 2)", {"A": 1, "B": 0}) == 2


def test_rounding_functions() -> None:
    assert evaluate_formula("ROUND(2.345, 2)", {}) == 2.35
    assert evaluate_formula("ROUND(2.5)", {}) == 3
    assert evaluate_formula("ROUNDUP(1.21, 1)", {}) == 1.3
    assert evaluate_formula("ROUNDDOWN(1.29, 1)", {}) == 1.2
    assert evaluate_formula("CEIL(1.2) + FLOOR(1.8)", {}) == 3
    assert evaluate_formula("ROUND(PI, 2)", {}) == 3.14


def test_math_errors_are_reported_with_codes() -> None:
    with pytest.raises(EvaluationError) as domain:
        evaluate_formula("SQRT(A)", {"A": -1})
    assert domain.value.code == "domain-error"

    with pytest.raises(EvaluationError) as overflow:
        evaluate_formula("POWER(10, 400)", {})
    assert overflow.value.code == "overflow"


def test_unknown_references_fail_evaluation() -> None:
    with pytest.raises(EvaluationError) as error:
        evaluate_formula("A + Z", {"A": 1})
    assert error.value.code == "unknown-reference"


def test_comparisons_evaluate_to_numbers() -> None:
    assert evaluate_formula("A > 1", {"A": 2}) == 1.0
    assert evaluate_formula("MAX(A, B, 7)", {"A": 2, "B": 3}) == 7


def test_parameter_values_shadow_constants() -> None:
    assert evaluate_formula("E * 2", {"E": 5}) == 10


def test_lookup_miss_degrades_to_zero_with_warning() -> None:
    result = evaluate("base + size_factor", [BASE, SIZE], {"size": "medium"})
    assert result.value == 10
    assert [warning.code for warning in result.warnings] == ["lookup-miss"]
    assert result.warnings[0].parameter_code == "size_factor"

    missing = evaluate("base + size_factor", [BASE, SIZE], {})
    assert missing.value == 10
    assert len(missing.warnings) == 1


def test_multi_select_values_sum_their_prices() -> None:
    result = evaluate("extras", [EXTRAS], {"extras": ["gift_wrap", "express"]})
    assert result.value == 20


def test_fields_without_lookup_table_are_read_as_numbers() -> None:
    assert evaluate("base * quantity", [BASE, QUANTITY], {"qty": "3"}).value == 30

    result = evaluate("base * quantity", [BASE, QUANTITY], {"qty": "many"})
    assert result.value == 0
    assert result.warnings[0].code == "lookup-miss"


def test_evaluation_is_repeatable() -> None:
    form_data = {"size": "small"}
    first = evaluate("base * size_factor", [BASE, SIZE], form_data)
    second = evaluate("base * size_factor", [BASE, SIZE], form_data)
    assert first.value == second.value == 10
    assert form_data == {"size": "small"}


def test_single_argument_max_and_min_return_their_argument() -> None:
    assert evaluate_formula("MAX(base)", {"base": 5.0}) == 5
    assert evaluate_formula("MIN(base)", {"base": 5.0}) == 5
    assert evaluate_formula("MIN(base, 2) + MAX(1)", {"base": 5.0}) == 3


def test_boolean_words_yield_one_or_zero() -> None:
    assert evaluate_formula("0 OR 5", {}) == 1
    assert evaluate_formula("3 AND 7", {}) == 1
    assert evaluate_formula("3 AND 0", {}) == 0
    assert evaluate_formula("10 * (A > 1 OR B)", {"A": 0, "B": 7}) == 10
    assert evaluate_formula("B == 0 OR A / B > 1", {"A": 1, "B": 0}) == 1


def test_oversized_formulas_fail_as_evaluation_errors() -> None:
    with pytest.raises(EvaluationError) as error:
        evaluate_formula("1" + "+1" * 200000, {})
    assert error.value.code == "invalid-formula"
