import pytest

from quote_pricing.formula import (
    FormulaSyntaxError,
    parse_formula,
    referenced_identifiers,
    replace_identifiers,
    tokenize,
)


def test_tokenize_skips_spreadsheet_prefix_and_whitespace() -> None:
    tokens = tokenize("= A  * 2.5")
    assert [token.text for token in tokens] == ["A", "*", "2.5"]
    assert tokens[0].start == 2


def test_parse_translates_operators_and_keywords() -> None:
    parsed = parse_formula("A ^ 2 > 4 AND NOT B")
    assert parsed.python_source == "A ** 2 > 4 and not B"


def test_unbalanced_parentheses_report_position() -> None:
    with pytest.raises(FormulaSyntaxError) as missing_close:
        parse_formula("(A + B")
    assert missing_close.value.position == 0

    with pytest.raises(FormulaSyntaxError) as extra_close:
        parse_formula("A + B)")
    assert extra_close.value.position == 5


def test_unknown_character_is_rejected() -> None:
    with pytest.raises(FormulaSyntaxError) as error:
        parse_formula("A $ B")
    assert error.value.position == 2


def test_python_keywords_are_not_formula_words() -> None:
    with pytest.raises(FormulaSyntaxError):
        parse_formula("A and B")
    with pytest.raises(FormulaSyntaxError):
        parse_formula("lambda")


def test_tuples_and_empty_formulas_are_rejected() -> None:
    with pytest.raises(FormulaSyntaxError):
        parse_formula("(1, 2)")
    with pytest.raises(FormulaSyntaxError) as error:
        parse_formula("=   ")
    assert error.value.message == "Formula is empty"


def test_referenced_identifiers_skip_functions_and_keywords() -> None:
    assert referenced_identifiers("IF(A > 1 AND B, C, A)") == ["A", "B", "C"]


def test_replace_identifiers_keeps_layout_and_function_names() -> None:
    formula = "MAX(a, b)  + a_b"
    assert replace_identifiers(formula, {"a": "X", "b": "Y"}) == "MAX(X, Y)  + a_b"


def test_replace_identifiers_non_strict_tolerates_broken_drafts() -> None:
    assert replace_identifiers("A + $ B", {"B": "0"}, strict=False) == "A + $ 0"


def test_formula_length_is_capped() -> None:
    with pytest.raises(FormulaSyntaxError) as error:
        parse_formula("1" + "+1" * 200000)
    assert "longer than" in error.value.message
