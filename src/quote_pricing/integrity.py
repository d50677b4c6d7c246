from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from .formula import FormulaSyntaxError, referenced_identifiers, replace_identifiers
from .id_mapping import IdMapping, build_mapping, rebase_user_formula
from .parameters import ParameterError, ParameterStore, PriceParameter

ORPHAN_PARAMETER = "orphan-parameter"

logger = logging.getLogger(__name__)


class IntegrityError(ValueError):
    """Raised when an edit is attempted while orphan parameters exist."""

    def __init__(self, message: str, report: IntegrityReport | None = None) -> None:
        super().__init__(message)
        self.code = ORPHAN_PARAMETER
        self.message = message
        self.report = report


@dataclass(slots=True, frozen=True)
class FieldOption:
    option_code: str
    option_label: str = ""


@dataclass(slots=True, frozen=True)
class FormField:
    field_code: str
    field_type: str = "text"
    options: tuple[FieldOption, ...] = ()
    label: str = ""

    @property
    def option_codes(self) -> set[str]:
        return {option.option_code for option in self.options}

    def to_dict(self) -> dict[str, Any]:
        return {
            "field_code": self.field_code,
            "field_type": self.field_type,
            "label": self.label,
            "options": [
                {"option_code": option.option_code, "option_label": option.option_label} for option in self.options
            ],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FormField:
        options = []
        for raw_option in payload.get("options") or []:
            if isinstance(raw_option, dict):
                code = str(raw_option.get("option_code", ""))
                options.append(FieldOption(option_code=code, option_label=str(raw_option.get("option_label", code))))
            else:
                options.append(FieldOption(option_code=str(raw_option), option_label=str(raw_option)))
        return cls(
            field_code=str(payload.get("field_code", "")),
            field_type=str(payload.get("field_type", "text")),
            options=tuple(options),
            label=str(payload.get("label", "")),
        )


@dataclass(slots=True)
class IntegrityReport:
    is_valid: bool
    can_save: bool
    can_edit: bool
    orphan_parameters: list[PriceParameter] = field(default_factory=list)
    orphans_in_formula: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "can_save": self.can_save,
            "can_edit": self.can_edit,
            "orphan_parameters": [parameter.to_dict() for parameter in self.orphan_parameters],
            "orphans_in_formula": self.orphans_in_formula,
            "warnings": self.warnings,
            "errors": self.errors,
        }


@dataclass(slots=True)
class OrphanRemoval:
    removed: bool
    user_formula: str
    requires_confirmation: bool
    formula_changed: bool
    mapping_stale: bool
    mapping: IdMapping
    rebased_formula: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "removed": self.removed,
            "user_formula": self.user_formula,
            "requires_confirmation": self.requires_confirmation,
            "formula_changed": self.formula_changed,
            "mapping_stale": self.mapping_stale,
            "mapping": self.mapping.to_dict(),
            "rebased_formula": self.rebased_formula,
        }


def _catalog_index(catalog: Iterable[FormField | dict[str, Any]]) -> dict[str, FormField]:
    index: dict[str, FormField] = {}
    for entry in catalog:
        form_field = entry if isinstance(entry, FormField) else FormField.from_dict(entry)
        index[form_field.field_code] = form_field
    return index


def catalog_field_codes(catalog: Iterable[FormField | dict[str, Any]]) -> set[str]:
    return set(_catalog_index(catalog))


def find_orphan_parameters(
    parameters: Iterable[PriceParameter], catalog: Iterable[FormField | dict[str, Any]]
) -> list[PriceParameter]:
    field_codes = catalog_field_codes(catalog)
    return [
        parameter
        for parameter in parameters
        if parameter.is_form_lookup and parameter.form_field_code not in field_codes
    ]


def _stale_option_warnings(parameters: Iterable[PriceParameter], index: dict[str, FormField]) -> list[str]:
    warnings = []
    for parameter in parameters:
        form_field = index.get(parameter.form_field_code or "")
        if not parameter.is_form_lookup or form_field is None or not form_field.options:
            continue
        stale = sorted(set(parameter.lookup_table) - form_field.option_codes)
        if stale:
            warnings.append(
                f"'{parameter.name}' has prices for options no longer offered by "
                f"'{form_field.field_code}': {', '.join(stale)}"
            )
    return warnings


def check_integrity(
    parameters: Iterable[PriceParameter],
    catalog: Iterable[FormField | dict[str, Any]],
    user_formula: str = "",
    mapping: IdMapping | None = None,
) -> IntegrityReport:
    """Cross-check parameters against the active form field catalog.

    Any orphan parameter blocks both saving and editing, whether or not the
    formula uses it.
    """
    parameter_list = list(parameters)
    index = _catalog_index(catalog)
    mapping = mapping or build_mapping(parameter_list)
    orphans = find_orphan_parameters(parameter_list, index.values())

    used_letters = set(referenced_identifiers(user_formula or "", strict=False))
    orphans_in_formula = []
    for parameter in orphans:
        letter = mapping.letter_for(parameter.code)
        if letter is not None and letter in used_letters:
            orphans_in_formula.append(letter)

    errors: list[str] = []
    warnings: list[str] = []
    if orphans:
        errors.append(f"{len(orphans)} parameter(s) reference form fields that no longer exist")
        for parameter in orphans:
            warnings.append(
                f"'{parameter.name}' is linked to form field '{parameter.form_field_code}', which no longer exists"
            )
        for parameter in orphans:
            letter = mapping.letter_for(parameter.code)
            if letter in orphans_in_formula:
                errors.append(f"Remove '{letter}' ({parameter.name}) from the formula")
    warnings.extend(_stale_option_warnings(parameter_list, index))

    is_valid = not orphans
    return IntegrityReport(
        is_valid=is_valid,
        can_save=is_valid,
        can_edit=is_valid,
        orphan_parameters=orphans,
        orphans_in_formula=orphans_in_formula,
        warnings=warnings,
        errors=errors,
    )


def require_integrity(report: IntegrityReport) -> None:
    if not report.can_save:
        logger.warning(
            "integrity_blocked",
            extra={"orphan_codes": [parameter.code for parameter in report.orphan_parameters]},
        )
        names = ", ".join(parameter.name for parameter in report.orphan_parameters)
        raise IntegrityError(f"Orphan parameters must be removed first: {names}", report)


def remove_orphan(
    store: ParameterStore,
    code: str,
    user_formula: str,
    mapping: IdMapping,
    confirmed: bool = False,
) -> OrphanRemoval:
    """Delete a parameter, zeroing its letter in the formula when it is used.

    Removing a parameter the formula references needs ``confirmed=True``;
    every standalone occurrence of its letter then becomes ``0``. After any
    removal the letters shift, so the returned mapping replaces the old one
    and ``rebased_formula`` shows the formula under the new letters.
    """
    if code not in store:
        raise ParameterError(f"Unknown parameter code: {code}")
    letter = mapping.letter_for(code)
    used = letter is not None and letter in referenced_identifiers(user_formula, strict=False)

    if used and not confirmed:
        return OrphanRemoval(
            removed=False,
            user_formula=user_formula,
            requires_confirmation=True,
            formula_changed=False,
            mapping_stale=False,
            mapping=mapping,
        )

    new_formula = user_formula
    if used:
        new_formula = replace_identifiers(user_formula, {letter: "0"}, strict=False)
    store.remove(code)
    new_mapping = build_mapping(store)
    try:
        rebased = rebase_user_formula(new_formula, mapping, new_mapping)
    except FormulaSyntaxError:
        rebased = None
    logger.info(
        "orphan_removed",
        extra={"parameter_code": code, "letter": letter, "formula_changed": new_formula != user_formula},
    )
    return OrphanRemoval(
        removed=True,
        user_formula=new_formula,
        requires_confirmation=False,
        formula_changed=new_formula != user_formula,
        mapping_stale=True,
        mapping=new_mapping,
        rebased_formula=rebased,
    )
