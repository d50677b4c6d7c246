from dataclasses import replace

from quote_pricing.drift import QuoteSnapshot, QuoteStatus
from quote_pricing.engine import PricingEngine
from quote_pricing.id_mapping import build_mapping
from quote_pricing.integrity import FieldOption, FormField
from quote_pricing.parameters import ParameterKind, PriceParameter, PriceSetting

BASE = PriceParameter(code="base", name="Base price", kind=ParameterKind.FIXED, fixed_value=10)
SIZE = PriceParameter(
    code="size_factor",
    name="Size factor",
    kind=ParameterKind.FORM_LOOKUP,
    form_field_code="size",
    lookup_table={"small": 1, "large": 2},
)
SIZE_FIELD = FormField(
    field_code="size", field_type="select", options=(FieldOption("small", "Small"), FieldOption("large", "Large"))
)


class MemorySettings:
    def __init__(self, settings: list[PriceSetting]) -> None:
        self.settings = {setting.id: setting for setting in settings}

    def get_setting(self, setting_id: int) -> PriceSetting | None:
        return self.settings.get(setting_id)

    def get_active_setting(self) -> PriceSetting | None:
        return next((setting for setting in self.settings.values() if setting.is_active), None)

    def list_settings(self) -> list[PriceSetting]:
        return list(self.settings.values())

    def create_setting(self, setting: PriceSetting) -> PriceSetting:
        created = replace(setting, id=max(self.settings, default=0) + 1)
        self.settings[created.id] = created
        return created

    def update_setting(self, setting_id: int, setting: PriceSetting) -> PriceSetting:
        self.settings[setting_id] = replace(setting, id=setting_id)
        return self.settings[setting_id]

    def activate_setting(self, setting_id: int) -> PriceSetting:
        for setting in self.settings.values():
            setting.is_active = setting.id == setting_id
        return self.settings[setting_id]


class BrokenSettings(MemorySettings):
    def get_active_setting(self) -> PriceSetting | None:
        raise ConnectionError("store offline")


class MemoryForms:
    def __init__(self, catalog: list[FormField]) -> None:
        self.catalog = catalog

    def get_active_field_catalog(self) -> list[FormField]:
        return list(self.catalog)


class MemoryQuotes:
    def __init__(self, quotes: list[QuoteSnapshot]) -> None:
        self.quotes = {quote.quote_id: quote for quote in quotes}

    def get_quote(self, quote_id: int) -> QuoteSnapshot | None:
        return self.quotes.get(quote_id)

    def save_quote(self, quote: QuoteSnapshot) -> QuoteSnapshot:
        self.quotes[quote.quote_id] = quote
        return quote


def make_engine(*settings: PriceSetting, quotes: list[QuoteSnapshot] | None = None) -> PricingEngine:
    return PricingEngine(MemorySettings(list(settings)), MemoryForms([SIZE_FIELD]), MemoryQuotes(quotes or []))


def active(formula: str = "base * size_factor", setting_id: int = 1, base_value: float = 10) -> PriceSetting:
    return PriceSetting(
        id=setting_id,
        name="Standard",
        parameters=[replace(BASE, fixed_value=base_value), SIZE],
        formula=formula,
        is_active=True,
    )


def test_calculate_price_uses_active_setting_when_no_id_given() -> None:
    engine = make_engine(active())
    result = engine.calculate_price(None, {"size": "large"})
    assert result.ok
    assert result.value.total_price == 20
    assert result.value.price_setting_id == 1


def test_calculate_price_rounds_to_cents() -> None:
    engine = make_engine(active(formula="base / 3"))
    assert engine.calculate_price(1, {}).value.total_price == 3.33


def test_calculate_price_reports_failures_as_results() -> None:
    engine = make_engine(active(formula="base / (size_factor - 2)"))
    result = engine.calculate_price(1, {"size": "large"})
    assert not result.ok
    assert result.error.kind == "evaluation"
    assert result.error.code == "division-by-zero"

    missing = engine.calculate_price(42, {})
    assert missing.error.code == "setting-not-found"


def test_empty_formula_prices_at_zero() -> None:
    engine = make_engine(active(formula="  "))
    assert engine.calculate_price(1, {}).value.total_price == 0


def test_negative_prices_are_rejected() -> None:
    engine = make_engine(active(formula="0 - base"))
    result = engine.calculate_price(1, {})
    assert result.error.code == "price-out-of-range"


def test_collaborator_failures_do_not_raise() -> None:
    engine = PricingEngine(BrokenSettings([active()]))
    result = engine.calculate_price(None, {})
    assert not result.ok
    assert result.error.code == "collaborator-error"


def test_compare_settings_by_id() -> None:
    engine = make_engine(active(), replace(active(base_value=12, setting_id=2), is_active=False))
    result = engine.compare_settings(1, 2)
    assert result.ok
    assert result.value.has_changes
    assert engine.compare_settings(1, 1).value.has_changes is False


def test_check_integrity_fetches_the_active_catalog() -> None:
    engine = PricingEngine(MemorySettings([]), MemoryForms([]))
    result = engine.check_integrity([BASE, SIZE], user_formula="A * B")
    assert result.ok
    assert result.value.can_save is False
    assert result.value.orphans_in_formula == ["B"]


def test_convert_formula_reports_syntax_errors() -> None:
    engine = make_engine()
    mapping = build_mapping([BASE, SIZE])
    assert engine.convert_formula("A * B", mapping, "to_backend").value == "base * size_factor"
    result = engine.convert_formula("A $ B", mapping, "to_backend")
    assert not result.ok
    assert result.error.code == "syntax"


def test_save_setting_stores_backend_formula() -> None:
    engine = make_engine()
    result = engine.save_setting("Standard", [BASE, SIZE], "A * B", activate=True)
    assert result.ok
    assert result.value.formula == "base * size_factor"
    assert result.value.is_active


def test_save_setting_is_blocked_by_orphans() -> None:
    engine = PricingEngine(MemorySettings([]), MemoryForms([]))
    result = engine.save_setting("Standard", [BASE, SIZE], "A")
    assert not result.ok
    assert result.error.kind == "integrity"
    assert result.error.code == "orphan-parameter"


def test_save_setting_rejects_invalid_formula() -> None:
    engine = make_engine()
    result = engine.save_setting("Standard", [BASE, SIZE], "A * C")
    assert result.error.code == "unknown-reference"
    assert result.error.details["suggestions"] == ["A", "B"]


def test_quote_status_and_actions() -> None:
    historical = replace(active(), is_active=False)
    current = active(setting_id=2, base_value=12)
    stored = QuoteSnapshot(quote_id=5, price_setting_id=1, form_data={"size": "large"}, stored_price=20.0)
    engine = make_engine(historical, current, quotes=[stored])

    status = engine.quote_status(5)
    assert status.value.status is QuoteStatus.PRICE_DRIFT

    hidden = engine.hide_quote_warning(5)
    assert hidden.value.warning_hidden
    assert engine.quote_status(5).value.effective_status is QuoteStatus.CURRENT

    applied = engine.apply_new_price(5)
    assert applied.value.stored_price == 24
    assert engine.quote_status(5).value.status is QuoteStatus.CURRENT

    assert engine.quote_status(404).error.code == "quote-not-found"


def test_update_quote_version_after_content_drift() -> None:
    historical = replace(active(), is_active=False)
    current = active(formula="size_factor * base", setting_id=2)
    stored = QuoteSnapshot(quote_id=5, price_setting_id=1, form_data={"size": "large"}, stored_price=20.0)
    engine = make_engine(historical, current, quotes=[stored])

    assert engine.quote_status(5).value.status is QuoteStatus.CONTENT_DRIFT
    updated = engine.update_quote_version(5)
    assert updated.value.price_setting_id == 2
    assert updated.value.stored_price == 20.0
    assert engine.quote_status(5).value.status is QuoteStatus.CURRENT


def test_quote_status_is_unknown_when_active_setting_cannot_be_loaded() -> None:
    stored = QuoteSnapshot(quote_id=5, price_setting_id=1, form_data={"size": "large"}, stored_price=20.0)
    engine = PricingEngine(BrokenSettings([active()]), MemoryForms([SIZE_FIELD]), MemoryQuotes([stored]))

    result = engine.quote_status(5)

    assert result.ok
    assert result.value.status is QuoteStatus.UNKNOWN
    assert "store offline" in result.value.reason
    assert engine.apply_new_price(5).error.code == "collaborator-error"


def test_convert_formula_refuses_constant_that_reads_as_a_letter() -> None:
    engine = make_engine()
    codes = ["a1", "a2", "a3", "a4", "a5"]
    mapping = build_mapping([replace(BASE, code=code) for code in codes])
    result = engine.convert_formula("a1 * E", mapping, "to_user")
    assert not result.ok
    assert result.error.code == "constant-collision"
    assert result.error.details["position"] == 5
