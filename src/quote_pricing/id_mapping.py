from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Iterator

from .formula import (
    CONSTANT_NAMES,
    RESERVED_WORDS,
    FormulaSyntaxError,
    identifier_tokens,
    replace_identifiers,
    tokenize,
)
from .parameters import DuplicateParameterError, PriceParameter

ALPHABET_SIZE = 26

logger = logging.getLogger(__name__)


class ConstantCollisionError(FormulaSyntaxError):
    """Raised when a constant in a backend formula would read as a parameter letter."""


class ConversionDirection(str, Enum):
    TO_USER = "to_user"
    TO_BACKEND = "to_backend"


@dataclass(slots=True, frozen=True)
class IdMapping:
    """Position based bijection between parameter codes and display letters.

    The mapping is a value derived from an ordered parameter list. It is
    rebuilt whenever the list changes and is never stored.
    """

    forward: dict[str, str]
    backward: dict[str, str]

    def letter_for(self, code: str) -> str | None:
        return self.forward.get(code)

    def code_for(self, letter: str) -> str | None:
        return self.backward.get(letter)

    @property
    def letters(self) -> list[str]:
        return list(self.backward)

    def __len__(self) -> int:
        return len(self.forward)

    def to_dict(self) -> dict[str, Any]:
        return {"forward": dict(self.forward), "backward": dict(self.backward)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> IdMapping:
        forward = {str(code): str(letter) for code, letter in (payload.get("forward") or {}).items()}
        backward = {letter: code for code, letter in forward.items()}
        if len(backward) != len(forward):
            raise ValueError("Letter mapping is not one-to-one")
        return cls(forward=forward, backward=backward)


def _label_for_index(index: int) -> str:
    label = ""
    number = index + 1
    while number:
        number, remainder = divmod(number - 1, ALPHABET_SIZE)
        label = chr(ord("A") + remainder) + label
    return label


def iter_letters() -> Iterator[str]:
    """Yield A..Z, then AA, AB, ... skipping labels that collide with formula words."""
    index = 0
    while True:
        label = _label_for_index(index)
        index += 1
        if len(label) > 1 and label in RESERVED_WORDS:
            continue
        yield label


def build_mapping(parameters: Iterable[PriceParameter]) -> IdMapping:
    forward: dict[str, str] = {}
    backward: dict[str, str] = {}
    letters = iter_letters()
    for parameter in parameters:
        if parameter.code in forward:
            raise DuplicateParameterError(f"Parameter code '{parameter.code}' appears more than once")
        letter = next(letters)
        forward[parameter.code] = letter
        backward[letter] = parameter.code
    if len(forward) > ALPHABET_SIZE:
        logger.info("letter_mapping_extended", extra={"parameter_count": len(forward)})
    return IdMapping(forward=forward, backward=backward)


def to_user_formula(backend_formula: str, mapping: IdMapping) -> str:
    for token in identifier_tokens(tokenize(backend_formula)):
        if token.text in CONSTANT_NAMES and token.text in mapping.backward and token.text not in mapping.forward:
            raise ConstantCollisionError(
                f"Constant {token.text} cannot be shown in letter form while {token.text} names a parameter",
                token.start,
            )
    return replace_identifiers(backend_formula, mapping.forward)


def to_backend_formula(user_formula: str, mapping: IdMapping) -> str:
    return replace_identifiers(user_formula, mapping.backward)


def convert_formula(formula: str, mapping: IdMapping, direction: ConversionDirection | str) -> str:
    direction = ConversionDirection(direction)
    if direction is ConversionDirection.TO_USER:
        return to_user_formula(formula, mapping)
    return to_backend_formula(formula, mapping)


def rebase_user_formula(user_formula: str, old_mapping: IdMapping, new_mapping: IdMapping) -> str:
    """Re-letter a user formula after the parameter list was reordered or shrunk.

    References to parameters missing from ``new_mapping`` keep their code.
    """
    return to_user_formula(to_backend_formula(user_formula, old_mapping), new_mapping)
