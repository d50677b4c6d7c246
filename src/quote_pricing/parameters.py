from __future__ import annotations

import keyword
import math
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Collection, Iterable, Iterator

from .formula import RESERVED_WORDS

CODE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MIN_NAME_LENGTH = 2


class ParameterError(ValueError):
    """Raised when a parameter definition is invalid."""


class DuplicateParameterError(ParameterError):
    """Raised when a parameter code is already present in the store."""


class ParameterKind(str, Enum):
    FIXED = "fixed"
    FORM_LOOKUP = "form_lookup"

    @classmethod
    def parse(cls, raw_value: Any) -> ParameterKind:
        if isinstance(raw_value, cls):
            return raw_value
        text = str(raw_value or "").strip().lower()
        if text in {"form", "form_lookup", "formlookup", "form-lookup"}:
            return cls.FORM_LOOKUP
        if text == "fixed":
            return cls.FIXED
        raise ParameterError(f"Unknown parameter kind: {raw_value!r}")


def _lookup_table_from_raw(raw_value: Any) -> dict[str, float]:
    if not raw_value:
        return {}
    if isinstance(raw_value, dict):
        items = raw_value.items()
    else:
        items = ((row.get("option_code"), row.get("value")) for row in raw_value)
    table: dict[str, float] = {}
    for option_code, value in items:
        if option_code is None:
            raise ParameterError("Lookup rows require an option_code")
        try:
            table[str(option_code)] = float(value)
        except (TypeError, ValueError) as exc:
            raise ParameterError(f"Lookup value for option '{option_code}' must be numeric") from exc
    return table


@dataclass(slots=True, frozen=True)
class PriceParameter:
    code: str
    name: str
    kind: ParameterKind
    fixed_value: float | None = None
    form_field_code: str | None = None
    lookup_table: dict[str, float] = field(default_factory=dict)

    @property
    def is_form_lookup(self) -> bool:
        return self.kind is ParameterKind.FORM_LOOKUP

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "kind": self.kind.value,
            "fixed_value": self.fixed_value,
            "form_field_code": self.form_field_code,
            "lookup_table": dict(self.lookup_table),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PriceParameter:
        kind = ParameterKind.parse(payload.get("kind", "fixed"))
        fixed_value = payload.get("fixed_value")
        if fixed_value is not None and fixed_value != "":
            try:
                fixed_value = float(fixed_value)
            except (TypeError, ValueError) as exc:
                raise ParameterError(f"Fixed value must be numeric: {fixed_value!r}") from exc
        else:
            fixed_value = None
        form_field_code = payload.get("form_field_code") or None
        return cls(
            code=str(payload.get("code", "")).strip(),
            name=str(payload.get("name", "")).strip(),
            kind=kind,
            fixed_value=fixed_value,
            form_field_code=str(form_field_code) if form_field_code is not None else None,
            lookup_table=_lookup_table_from_raw(payload.get("lookup_table") or payload.get("lookups")),
        )


def validate_parameter(parameter: PriceParameter, field_codes: Collection[str] | None = None) -> list[str]:
    """Return human readable problems with a parameter definition.

    When ``field_codes`` is given, form lookup parameters must point at one of
    those fields.
    """
    errors: list[str] = []
    if len(parameter.name.strip()) < MIN_NAME_LENGTH:
        errors.append(f"Parameter name must be at least {MIN_NAME_LENGTH} characters")
    if not CODE_PATTERN.match(parameter.code):
        errors.append(f"Parameter code '{parameter.code}' must start with a letter or underscore")
    elif keyword.iskeyword(parameter.code) or parameter.code in RESERVED_WORDS:
        errors.append(f"Parameter code '{parameter.code}' is a reserved word")

    if parameter.kind is ParameterKind.FIXED:
        if parameter.fixed_value is None or not math.isfinite(parameter.fixed_value):
            errors.append("Fixed parameters require a numeric value")
    else:
        if not parameter.form_field_code:
            errors.append("Form lookup parameters require a form field")
        elif field_codes is not None and parameter.form_field_code not in field_codes:
            errors.append(f"Form field '{parameter.form_field_code}' does not exist")
        for option_code, value in parameter.lookup_table.items():
            if not math.isfinite(value):
                errors.append(f"Lookup value for option '{option_code}' must be a finite number")
    return errors


class ParameterStore:
    """Ordered, in-memory parameter list of a price setting draft.

    Any mutation changes the letter mapping, so callers rebuild it from the
    store after each change.
    """

    def __init__(self, parameters: Iterable[PriceParameter] = ()) -> None:
        self._parameters: dict[str, PriceParameter] = {}
        for parameter in parameters:
            self.add(parameter)

    def add(self, parameter: PriceParameter) -> PriceParameter:
        if parameter.code in self._parameters:
            raise DuplicateParameterError(f"Parameter code '{parameter.code}' already exists")
        if not CODE_PATTERN.match(parameter.code):
            raise ParameterError(f"Invalid parameter code: {parameter.code!r}")
        self._parameters[parameter.code] = parameter
        return parameter

    def remove(self, code: str) -> PriceParameter:
        try:
            return self._parameters.pop(code)
        except KeyError as exc:
            raise ParameterError(f"Unknown parameter code: {code}") from exc

    def update(self, code: str, /, **changes: Any) -> PriceParameter:
        if "code" in changes and changes["code"] != code:
            raise ParameterError("Parameter codes cannot be changed")
        current = self.get(code)
        if current is None:
            raise ParameterError(f"Unknown parameter code: {code}")
        if "kind" in changes:
            changes["kind"] = ParameterKind.parse(changes["kind"])
        updated = replace(current, **changes)
        self._parameters[code] = updated
        return updated

    def get(self, code: str) -> PriceParameter | None:
        return self._parameters.get(code)

    def list(self) -> list[PriceParameter]:
        return list(self._parameters.values())

    def __len__(self) -> int:
        return len(self._parameters)

    def __iter__(self) -> Iterator[PriceParameter]:
        return iter(list(self._parameters.values()))

    def __contains__(self, code: object) -> bool:
        return code in self._parameters


@dataclass(slots=True)
class PriceSetting:
    id: int | None
    name: str
    parameters: list[PriceParameter]
    formula: str
    version: int = 1
    is_active: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "is_active": self.is_active,
            "formula": self.formula,
            "parameters": [parameter.to_dict() for parameter in self.parameters],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PriceSetting:
        parameters = [PriceParameter.from_dict(item) for item in payload.get("parameters", [])]
        ParameterStore(parameters)  # rejects duplicate codes
        return cls(
            id=payload.get("id"),
            name=str(payload.get("name", "")).strip(),
            parameters=parameters,
            formula=str(payload.get("formula", "")),
            version=int(payload.get("version", 1) or 1),
            is_active=bool(payload.get("is_active", False)),
        )
