from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

from .evaluator import EvaluationError, LookupWarning, evaluate
from .formula import FormulaSyntaxError, replace_identifiers, strip_formula_prefix
from .parameters import PriceParameter, PriceSetting

PRICE_EPSILON = 0.01
COMPARED_FIELDS = ("name", "kind", "fixed_value", "form_field_code", "lookup_table")

logger = logging.getLogger(__name__)


class QuoteStatus(str, Enum):
    CURRENT = "current"
    CONTENT_DRIFT = "content-drift"
    PRICE_DRIFT = "price-drift"
    OUTDATED = "outdated"
    UNKNOWN = "unknown"
    ERROR = "error"


DRIFT_STATUSES = {QuoteStatus.CONTENT_DRIFT, QuoteStatus.PRICE_DRIFT, QuoteStatus.OUTDATED}


def normalize_formula(formula: str | None) -> str:
    return re.sub(r"\s+", "", strip_formula_prefix(formula or ""))


def beautify_formula(formula: str, parameters: list[PriceParameter]) -> str:
    """Replace parameter codes with their display names for change summaries."""
    names = {parameter.code: parameter.name for parameter in parameters}
    try:
        return replace_identifiers(formula, names)
    except FormulaSyntaxError:
        return formula


@dataclass(slots=True)
class ParameterChange:
    code: str
    old: PriceParameter | None
    new: PriceParameter | None
    changed_fields: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "old": self.old.to_dict() if self.old else None,
            "new": self.new.to_dict() if self.new else None,
            "changed_fields": self.changed_fields,
        }


@dataclass(slots=True)
class ParameterChanges:
    added: list[ParameterChange] = field(default_factory=list)
    removed: list[ParameterChange] = field(default_factory=list)
    modified: list[ParameterChange] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.added or self.removed or self.modified)

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": [change.to_dict() for change in self.added],
            "removed": [change.to_dict() for change in self.removed],
            "modified": [change.to_dict() for change in self.modified],
        }


@dataclass(slots=True)
class SettingComparison:
    formula_changed: bool
    old_formula: str
    new_formula: str
    old_formula_display: str
    new_formula_display: str
    parameter_changes: ParameterChanges

    @property
    def has_changes(self) -> bool:
        return self.formula_changed or bool(self.parameter_changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_changes": self.has_changes,
            "changes": {
                "formula_changed": self.formula_changed,
                "old_formula": self.old_formula,
                "new_formula": self.new_formula,
                "old_formula_display": self.old_formula_display,
                "new_formula_display": self.new_formula_display,
                "parameter_changes": self.parameter_changes.to_dict(),
            },
        }


def _changed_fields(old: PriceParameter, new: PriceParameter) -> list[str]:
    return [name for name in COMPARED_FIELDS if getattr(old, name) != getattr(new, name)]


def compare(old_setting: PriceSetting, new_setting: PriceSetting) -> SettingComparison:
    old_parameters = {parameter.code: parameter for parameter in old_setting.parameters}
    new_parameters = {parameter.code: parameter for parameter in new_setting.parameters}

    changes = ParameterChanges()
    for code, parameter in new_parameters.items():
        if code not in old_parameters:
            changes.added.append(ParameterChange(code=code, old=None, new=parameter))
    for code, parameter in old_parameters.items():
        if code not in new_parameters:
            changes.removed.append(ParameterChange(code=code, old=parameter, new=None))
            continue
        changed = _changed_fields(parameter, new_parameters[code])
        if changed:
            changes.modified.append(
                ParameterChange(code=code, old=parameter, new=new_parameters[code], changed_fields=changed)
            )

    return SettingComparison(
        formula_changed=normalize_formula(old_setting.formula) != normalize_formula(new_setting.formula),
        old_formula=old_setting.formula,
        new_formula=new_setting.formula,
        old_formula_display=beautify_formula(old_setting.formula, old_setting.parameters),
        new_formula_display=beautify_formula(new_setting.formula, new_setting.parameters),
        parameter_changes=changes,
    )


@dataclass(slots=True, frozen=True)
class QuoteSnapshot:
    quote_id: int | None
    price_setting_id: int | None
    form_data: Mapping[str, Any]
    stored_price: float | None
    warning_hidden: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "quote_id": self.quote_id,
            "price_setting_id": self.price_setting_id,
            "form_data": dict(self.form_data),
            "stored_price": self.stored_price,
            "warning_hidden": self.warning_hidden,
        }


@dataclass(slots=True)
class QuoteStatusReport:
    status: QuoteStatus
    stored_price: float | None = None
    current_price: float | None = None
    price_diff: float | None = None
    current_setting_id: int | None = None
    comparison: SettingComparison | None = None
    warnings: list[LookupWarning] = field(default_factory=list)
    reason: str | None = None
    warning_hidden: bool = False

    @property
    def effective_status(self) -> QuoteStatus:
        if self.warning_hidden and self.status in DRIFT_STATUSES:
            return QuoteStatus.CURRENT
        return self.status

    @property
    def warning_level(self) -> str:
        status = self.effective_status
        if status is QuoteStatus.PRICE_DRIFT:
            return "price"
        if status in {QuoteStatus.CONTENT_DRIFT, QuoteStatus.OUTDATED}:
            return "version"
        return "none"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "effective_status": self.effective_status.value,
            "warning_level": self.warning_level,
            "warning_hidden": self.warning_hidden,
            "stored_price": self.stored_price,
            "current_price": self.current_price,
            "price_diff": self.price_diff,
            "current_setting_id": self.current_setting_id,
            "reason": self.reason,
            "comparison": self.comparison.to_dict() if self.comparison else None,
            "warnings": [warning.to_dict() for warning in self.warnings],
        }


def _log_status(quote: QuoteSnapshot, report: QuoteStatusReport) -> QuoteStatusReport:
    logger.info(
        "quote_status_classified",
        extra={
            "quote_id": quote.quote_id,
            "status": report.status.value,
            "price_diff": report.price_diff,
            "current_setting_id": report.current_setting_id,
        },
    )
    return report


def classify_quote_status(
    quote: QuoteSnapshot,
    current_setting: PriceSetting | None,
    quote_setting: PriceSetting | None = None,
    epsilon: float = PRICE_EPSILON,
) -> QuoteStatusReport:
    """Decide whether a quote's stored price still matches the current setting.

    ``quote_setting`` is the setting the quote was priced with; pass ``None``
    when it could not be fetched.
    """
    base = QuoteStatusReport(
        status=QuoteStatus.UNKNOWN,
        stored_price=quote.stored_price,
        warning_hidden=quote.warning_hidden,
        current_setting_id=current_setting.id if current_setting else None,
    )
    if current_setting is None:
        return _log_status(quote, replace(base, status=QuoteStatus.UNKNOWN, reason="No active price setting"))

    try:
        evaluation = evaluate(current_setting.formula, current_setting.parameters, quote.form_data)
    except EvaluationError as exc:
        return _log_status(quote, replace(base, status=QuoteStatus.ERROR, reason=f"{exc.code}: {exc.message}"))

    current_price = round(evaluation.value, 2)
    base = replace(base, current_price=current_price, warnings=evaluation.warnings)
    if quote.stored_price is None:
        return _log_status(quote, replace(base, status=QuoteStatus.OUTDATED, reason="Quote has no stored price"))

    price_diff = round(current_price - quote.stored_price, 2)
    base = replace(base, price_diff=price_diff)

    if quote_setting is None and quote.price_setting_id == current_setting.id:
        quote_setting = current_setting
    comparison = compare(quote_setting, current_setting) if quote_setting is not None else None
    base = replace(base, comparison=comparison)

    if abs(price_diff) > epsilon:
        return _log_status(quote, replace(base, status=QuoteStatus.PRICE_DRIFT))
    if quote.price_setting_id is None:
        return _log_status(quote, replace(base, status=QuoteStatus.OUTDATED, reason="Quote has no price setting"))
    if comparison is None:
        return _log_status(
            quote, replace(base, status=QuoteStatus.UNKNOWN, reason="Quote price setting could not be loaded")
        )
    if comparison.has_changes:
        return _log_status(quote, replace(base, status=QuoteStatus.CONTENT_DRIFT))
    return _log_status(quote, replace(base, status=QuoteStatus.CURRENT))


def apply_new_price(quote: QuoteSnapshot, current_setting: PriceSetting) -> QuoteSnapshot:
    """Recompute the quote's price with the current setting and adopt it."""
    evaluation = evaluate(current_setting.formula, current_setting.parameters, quote.form_data)
    return replace(
        quote,
        stored_price=round(evaluation.value, 2),
        price_setting_id=current_setting.id,
    )


def update_version(quote: QuoteSnapshot, current_setting: PriceSetting) -> QuoteSnapshot:
    return replace(quote, price_setting_id=current_setting.id)


def hide_warning(quote: QuoteSnapshot) -> QuoteSnapshot:
    return replace(quote, warning_hidden=True)
