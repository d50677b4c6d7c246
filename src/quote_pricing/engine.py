from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, Mapping, Protocol, TypeVar

from .drift import (
    PRICE_EPSILON,
    QuoteSnapshot,
    QuoteStatusReport,
    SettingComparison,
    apply_new_price,
    classify_quote_status,
    compare,
    hide_warning,
    update_version,
)
from .evaluator import EvaluationError, LookupWarning, evaluate
from .formula import FormulaSyntaxError, is_blank_formula
from .id_mapping import (
    ConstantCollisionError,
    ConversionDirection,
    IdMapping,
    build_mapping,
    convert_formula,
    to_backend_formula,
)
from .integrity import (
    FormField,
    IntegrityError,
    IntegrityReport,
    catalog_field_codes,
    check_integrity,
    require_integrity,
)
from .parameters import ParameterError, PriceParameter, PriceSetting, validate_parameter
from .validation import ValidationResult, validate_user_formula

MAX_PRICE = 100_000_000

T = TypeVar("T")

logger = logging.getLogger(__name__)


class PriceSettingStore(Protocol):
    def get_setting(self, setting_id: int) -> PriceSetting | None: ...

    def get_active_setting(self) -> PriceSetting | None: ...

    def list_settings(self) -> list[PriceSetting]: ...

    def create_setting(self, setting: PriceSetting) -> PriceSetting: ...

    def update_setting(self, setting_id: int, setting: PriceSetting) -> PriceSetting: ...

    def activate_setting(self, setting_id: int) -> PriceSetting: ...


class FormTemplateService(Protocol):
    def get_active_field_catalog(self) -> list[FormField]: ...


class QuoteStore(Protocol):
    def get_quote(self, quote_id: int) -> QuoteSnapshot | None: ...

    def save_quote(self, quote: QuoteSnapshot) -> QuoteSnapshot: ...


@dataclass(slots=True, frozen=True)
class EngineError:
    kind: str
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "code": self.code, "message": self.message, "details": self.details}


@dataclass(slots=True)
class EngineResult(Generic[T]):
    ok: bool
    value: T | None = None
    error: EngineError | None = None

    @classmethod
    def success(cls, value: T) -> EngineResult[T]:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: str, code: str, message: str, **details: Any) -> EngineResult[T]:
        return cls(ok=False, error=EngineError(kind=kind, code=code, message=message, details=details))


@dataclass(slots=True)
class PriceCalculation:
    total_price: float
    price_setting_id: int | None
    values: dict[str, float] = field(default_factory=dict)
    warnings: list[LookupWarning] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_price": self.total_price,
            "price_setting_id": self.price_setting_id,
            "values": self.values,
            "warnings": [warning.to_dict() for warning in self.warnings],
        }


class _CollaboratorFailure(Exception):
    def __init__(self, operation: str, error: Exception) -> None:
        super().__init__(f"{operation} failed: {error}")
        self.operation = operation


class PricingEngine:
    """Entry points of the pricing engine.

    Every method returns a result object; collaborator failures and engine
    errors are reported in ``EngineResult.error`` and never raised.
    """

    def __init__(
        self,
        settings: PriceSettingStore,
        forms: FormTemplateService | None = None,
        quotes: QuoteStore | None = None,
        epsilon: float = PRICE_EPSILON,
    ) -> None:
        self.settings = settings
        self.forms = forms
        self.quotes = quotes
        self.epsilon = epsilon

    def _call(self, operation: str, function: Callable[..., T], *args: Any) -> T:
        try:
            return function(*args)
        except Exception as exc:
            logger.exception("collaborator_failed", extra={"operation": operation})
            raise _CollaboratorFailure(operation, exc) from exc

    def _load_setting(self, setting_id: int | None) -> PriceSetting | None:
        if setting_id is None:
            return self._call("get_active_setting", self.settings.get_active_setting)
        return self._call("get_setting", self.settings.get_setting, setting_id)

    def _catalog(self, catalog: Iterable[FormField | dict[str, Any]] | None) -> list[FormField | dict[str, Any]]:
        if catalog is not None:
            return list(catalog)
        if self.forms is None:
            raise _CollaboratorFailure("get_active_field_catalog", RuntimeError("no form template service"))
        return self._call("get_active_field_catalog", self.forms.get_active_field_catalog)

    def validate_formula(self, user_formula: str, parameters: Iterable[PriceParameter]) -> ValidationResult:
        return validate_user_formula(user_formula, parameters)

    def calculate_price(
        self, price_setting_id: int | None, form_data: Mapping[str, Any]
    ) -> EngineResult[PriceCalculation]:
        try:
            setting = self._load_setting(price_setting_id)
        except _CollaboratorFailure as exc:
            return EngineResult.failure("comparison", "collaborator-error", str(exc))
        if setting is None:
            return EngineResult.failure("not-found", "setting-not-found", "Price setting not found")
        if is_blank_formula(setting.formula):
            return EngineResult.success(PriceCalculation(total_price=0.0, price_setting_id=setting.id))

        try:
            evaluation = evaluate(setting.formula, setting.parameters, form_data)
        except EvaluationError as exc:
            logger.warning("price_calculation_failed", extra={"setting_id": setting.id, "code": exc.code})
            return EngineResult.failure("evaluation", exc.code, exc.message)

        total_price = round(evaluation.value, 2)
        if total_price < 0 or total_price > MAX_PRICE:
            return EngineResult.failure(
                "evaluation",
                "price-out-of-range",
                f"Calculated price {total_price} is outside 0..{MAX_PRICE}",
                total_price=total_price,
            )
        logger.info(
            "price_calculated",
            extra={"setting_id": setting.id, "total_price": total_price, "warning_count": len(evaluation.warnings)},
        )
        return EngineResult.success(
            PriceCalculation(
                total_price=total_price,
                price_setting_id=setting.id,
                values=evaluation.values,
                warnings=evaluation.warnings,
            )
        )

    def compare_settings(self, old_setting_id: int, new_setting_id: int | None = None) -> EngineResult[SettingComparison]:
        try:
            old_setting = self._load_setting(old_setting_id)
            new_setting = self._load_setting(new_setting_id)
        except _CollaboratorFailure as exc:
            return EngineResult.failure("comparison", "collaborator-error", str(exc))
        if old_setting is None or new_setting is None:
            return EngineResult.failure("not-found", "setting-not-found", "Price setting not found")
        return EngineResult.success(compare(old_setting, new_setting))

    def check_integrity(
        self,
        parameters: Iterable[PriceParameter],
        catalog: Iterable[FormField | dict[str, Any]] | None = None,
        user_formula: str = "",
    ) -> EngineResult[IntegrityReport]:
        try:
            resolved_catalog = self._catalog(catalog)
        except _CollaboratorFailure as exc:
            return EngineResult.failure("comparison", "collaborator-error", str(exc))
        try:
            report = check_integrity(parameters, resolved_catalog, user_formula)
        except ValueError as exc:
            return EngineResult.failure("validation", "invalid-parameters", str(exc))
        return EngineResult.success(report)

    def convert_formula(
        self, formula: str, mapping: IdMapping, direction: ConversionDirection | str
    ) -> EngineResult[str]:
        try:
            return EngineResult.success(convert_formula(formula, mapping, direction))
        except ConstantCollisionError as exc:
            return EngineResult.failure("validation", "constant-collision", exc.message, position=exc.position)
        except FormulaSyntaxError as exc:
            return EngineResult.failure("validation", "syntax", exc.message, position=exc.position)
        except ValueError as exc:
            return EngineResult.failure("validation", "invalid-direction", str(exc))

    def save_setting(
        self,
        name: str,
        parameters: list[PriceParameter],
        user_formula: str,
        setting_id: int | None = None,
        catalog: Iterable[FormField | dict[str, Any]] | None = None,
        activate: bool = False,
    ) -> EngineResult[PriceSetting]:
        """Gate, validate and persist a draft edited in letter space."""
        try:
            resolved_catalog = self._catalog(catalog)
        except _CollaboratorFailure as exc:
            return EngineResult.failure("comparison", "collaborator-error", str(exc))

        try:
            mapping = build_mapping(parameters)
            report = check_integrity(parameters, resolved_catalog, user_formula, mapping)
            require_integrity(report)
        except IntegrityError as exc:
            return EngineResult.failure(
                "integrity", exc.code, exc.message, orphans_in_formula=exc.report.orphans_in_formula if exc.report else []
            )
        except ParameterError as exc:
            return EngineResult.failure("validation", "invalid-parameters", str(exc))

        field_codes = catalog_field_codes(resolved_catalog)
        for parameter in parameters:
            problems = validate_parameter(parameter, field_codes)
            if problems:
                return EngineResult.failure(
                    "validation", "invalid-parameter", "; ".join(problems), parameter_code=parameter.code
                )

        if not is_blank_formula(user_formula):
            validation = validate_user_formula(user_formula, parameters)
            if not validation.is_valid:
                return EngineResult.failure(
                    "validation",
                    validation.code or "syntax",
                    validation.message or "Invalid formula",
                    suggestions=validation.suggestions,
                    position=validation.position,
                )
        backend_formula = to_backend_formula(user_formula, mapping) if not is_blank_formula(user_formula) else ""

        draft = PriceSetting(id=setting_id, name=name, parameters=list(parameters), formula=backend_formula)
        try:
            if setting_id is None:
                saved = self._call("create_setting", self.settings.create_setting, draft)
            else:
                saved = self._call("update_setting", self.settings.update_setting, setting_id, draft)
            if activate and saved.id is not None:
                saved = self._call("activate_setting", self.settings.activate_setting, saved.id)
        except _CollaboratorFailure as exc:
            return EngineResult.failure("comparison", "collaborator-error", str(exc))
        logger.info("price_setting_saved", extra={"setting_id": saved.id, "parameter_count": len(parameters)})
        return EngineResult.success(saved)

    def _load_quote(self, quote_id: int) -> QuoteSnapshot:
        if self.quotes is None:
            raise _CollaboratorFailure("get_quote", RuntimeError("no quote store"))
        quote = self._call("get_quote", self.quotes.get_quote, quote_id)
        if quote is None:
            raise LookupError(f"Quote {quote_id} not found")
        return quote

    def _historical_setting(self, quote: QuoteSnapshot) -> PriceSetting | None:
        if quote.price_setting_id is None:
            return None
        try:
            return self._load_setting(quote.price_setting_id)
        except _CollaboratorFailure:
            return None

    def quote_status(self, quote_id: int) -> EngineResult[QuoteStatusReport]:
        try:
            quote = self._load_quote(quote_id)
        except LookupError as exc:
            return EngineResult.failure("not-found", "quote-not-found", str(exc))
        except _CollaboratorFailure as exc:
            return EngineResult.failure("comparison", "collaborator-error", str(exc))
        try:
            current = self._load_setting(None)
        except _CollaboratorFailure as exc:
            report = classify_quote_status(quote, None, epsilon=self.epsilon)
            report.reason = str(exc)
            return EngineResult.success(report)
        historical = self._historical_setting(quote)
        return EngineResult.success(classify_quote_status(quote, current, historical, self.epsilon))

    def _transition(
        self, quote_id: int, action: str, transition: Callable[[QuoteSnapshot, PriceSetting], QuoteSnapshot]
    ) -> EngineResult[QuoteSnapshot]:
        try:
            quote = self._load_quote(quote_id)
            current = self._load_setting(None)
        except LookupError as exc:
            return EngineResult.failure("not-found", "quote-not-found", str(exc))
        except _CollaboratorFailure as exc:
            return EngineResult.failure("comparison", "collaborator-error", str(exc))
        if current is None:
            return EngineResult.failure("not-found", "setting-not-found", "No active price setting")
        try:
            updated = transition(quote, current)
        except EvaluationError as exc:
            return EngineResult.failure("evaluation", exc.code, exc.message)
        try:
            saved = self._call("save_quote", self.quotes.save_quote, updated)
        except _CollaboratorFailure as exc:
            return EngineResult.failure("comparison", "collaborator-error", str(exc))
        logger.info("quote_transitioned", extra={"quote_id": quote_id, "action": action})
        return EngineResult.success(saved)

    def apply_new_price(self, quote_id: int) -> EngineResult[QuoteSnapshot]:
        return self._transition(quote_id, "apply_new_price", apply_new_price)

    def update_quote_version(self, quote_id: int) -> EngineResult[QuoteSnapshot]:
        return self._transition(quote_id, "update_version", update_version)

    def hide_quote_warning(self, quote_id: int) -> EngineResult[QuoteSnapshot]:
        return self._transition(quote_id, "hide_warning", lambda quote, _setting: hide_warning(quote))
