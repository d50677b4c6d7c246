from dataclasses import replace

from quote_pricing.drift import (
    QuoteSnapshot,
    QuoteStatus,
    apply_new_price,
    classify_quote_status,
    compare,
    hide_warning,
    normalize_formula,
    update_version,
)
from quote_pricing.parameters import ParameterKind, PriceParameter, PriceSetting

BASE = PriceParameter(code="base", name="Base price", kind=ParameterKind.FIXED, fixed_value=10)
SIZE = PriceParameter(
    code="size_factor",
    name="Size factor",
    kind=ParameterKind.FORM_LOOKUP,
    form_field_code="size",
    lookup_table={"small": 1, "large": 2},
)


def setting(setting_id: int, formula: str = "base * size_factor", base_value: float = 10) -> PriceSetting:
    return PriceSetting(
        id=setting_id,
        name=f"Pricing v{setting_id}",
        version=setting_id,
        parameters=[replace(BASE, fixed_value=base_value), SIZE],
        formula=formula,
    )


def quote(setting_id: int | None = 1, stored_price: float | None = 20.0) -> QuoteSnapshot:
    return QuoteSnapshot(quote_id=7, price_setting_id=setting_id, form_data={"size": "large"}, stored_price=stored_price)


def test_setting_compared_with_itself_has_no_changes() -> None:
    comparison = compare(setting(1), setting(1))
    assert comparison.has_changes is False
    assert comparison.to_dict()["has_changes"] is False


def test_whitespace_and_prefix_do_not_count_as_formula_changes() -> None:
    assert normalize_formula("= base *  size_factor") == "base*size_factor"
    assert not compare(setting(1), setting(2, formula="=base*size_factor")).formula_changed


def test_formula_only_change_is_content_drift() -> None:
    old, new = setting(1), setting(2, formula="size_factor * base")
    comparison = compare(old, new)
    assert comparison.formula_changed
    assert comparison.new_formula_display == "Size factor * Base price"

    report = classify_quote_status(quote(), new, old)
    assert report.status is QuoteStatus.CONTENT_DRIFT
    assert report.price_diff == 0
    assert report.warning_level == "version"


def test_changed_fixed_value_is_price_drift() -> None:
    old, new = setting(1), setting(2, base_value=12)
    comparison = compare(old, new)
    assert [change.code for change in comparison.parameter_changes.modified] == ["base"]
    assert comparison.parameter_changes.modified[0].changed_fields == ["fixed_value"]
    assert comparison.parameter_changes.modified[0].old.fixed_value == 10

    report = classify_quote_status(quote(), new, old)
    assert report.status is QuoteStatus.PRICE_DRIFT
    assert report.current_price == 24
    assert report.price_diff == 4
    assert report.warning_level == "price"


def test_added_and_removed_parameters_are_listed() -> None:
    extra = PriceParameter(code="tax", name="Tax", kind=ParameterKind.FIXED, fixed_value=0)
    old = setting(1)
    new = PriceSetting(id=2, name="v2", parameters=[BASE, extra], formula="base + tax")
    changes = compare(old, new).parameter_changes
    assert [change.code for change in changes.added] == ["tax"]
    assert [change.code for change in changes.removed] == ["size_factor"]


def test_same_setting_and_price_is_current() -> None:
    report = classify_quote_status(quote(), setting(1))
    assert report.status is QuoteStatus.CURRENT
    assert report.warning_level == "none"


def test_missing_historical_setting_is_unknown() -> None:
    report = classify_quote_status(quote(setting_id=99), setting(2), None)
    assert report.status is QuoteStatus.UNKNOWN


def test_failed_recalculation_is_error() -> None:
    broken = setting(2, formula="base / (size_factor - 2)")
    report = classify_quote_status(quote(), broken, setting(1))
    assert report.status is QuoteStatus.ERROR
    assert "division-by-zero" in report.reason


def test_quote_without_price_is_outdated() -> None:
    report = classify_quote_status(quote(stored_price=None), setting(1))
    assert report.status is QuoteStatus.OUTDATED


def test_hidden_warning_keeps_status_but_silences_it() -> None:
    hidden = hide_warning(quote())
    report = classify_quote_status(hidden, setting(2, base_value=12), setting(1))
    assert report.status is QuoteStatus.PRICE_DRIFT
    assert report.effective_status is QuoteStatus.CURRENT
    assert report.warning_level == "none"
    assert hidden.stored_price == 20.0


def test_applying_new_price_returns_to_current() -> None:
    current = setting(2, base_value=12)
    updated = apply_new_price(quote(), current)
    assert updated.stored_price == 24
    assert updated.price_setting_id == 2
    assert classify_quote_status(updated, current).status is QuoteStatus.CURRENT


def test_updating_version_keeps_price() -> None:
    current = setting(2, formula="size_factor * base")
    updated = update_version(quote(), current)
    assert updated.stored_price == 20.0
    assert updated.price_setting_id == 2
    assert classify_quote_status(updated, current).status is QuoteStatus.CURRENT
