"""Validation and normalization of national identity numbers (CI).

A CI is a 7-digit body followed by a check digit. Source spreadsheets carry them in
every shape: with dots and dashes, without the check digit, as numeric cells, with a
timestamp glued after a colon, or truncated. ``validate_identifier`` classifies each
raw value and, whenever the checksum can be computed, returns the corrected 8-digit
form that is used as the patient's primary key.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

CHECK_WEIGHTS = (2, 8, 8, 7, 6, 3, 4)

_NON_DIGITS = re.compile(r"\D")


class IdentifierStatus(str, Enum):
    VALID = "valid"
    CORRECTED = "corrected"  # check digit was absent and has been added
    MISMATCH = "mismatch"
    TRUNCATED = "truncated"
    INVALID_LENGTH = "invalid_length"
    EMPTY = "empty"


@dataclass(frozen=True)
class IdentifierValidation:
    normalized_id: str | None
    raw_id: str | None
    is_suspicious: bool
    reason: str
    corrected_display: str | None
    status: IdentifierStatus

    @property
    def is_valid(self) -> bool:
        return self.status is IdentifierStatus.VALID


def compute_check_digit(body: str) -> int:
    digits = _NON_DIGITS.sub("", body or "")
    if len(digits) != len(CHECK_WEIGHTS):
        raise ValueError(f"check digit needs exactly 7 digits, got {len(digits)}")
    total = sum(int(d) * w for d, w in zip(digits, CHECK_WEIGHTS))
    return (10 - total % 10) % 10


def _as_text(raw) -> str | None:
    if raw is None:
        return None
    if isinstance(raw, bool):
        return str(raw)
    if isinstance(raw, int):
        return str(raw)
    if isinstance(raw, float):
        return str(int(raw)) if raw.is_integer() else str(raw)
    return str(raw)


def _corrected(body: str, check_digit: int) -> tuple[str, str]:
    return f"{body}{check_digit}", f"{body}-{check_digit}"


def validate_identifier(raw) -> IdentifierValidation:
    text = _as_text(raw)
    if text is None or not text.strip() or text.strip().lower() == "undefined":
        return IdentifierValidation(None, text, True, "empty or undefined", None, IdentifierStatus.EMPTY)

    # "999999: 10/18/2019 08:38:00" -> only the part before the colon is an identifier
    candidate = text.split(":", 1)[0] if ":" in text else text
    digits = _NON_DIGITS.sub("", candidate)
    if len(digits) > 8:
        digits = digits.lstrip("0")

    if len(digits) == 6:
        return IdentifierValidation(
            None,
            text,
            True,
            f"likely truncated, missing trailing digits ({digits})",
            None,
            IdentifierStatus.TRUNCATED,
        )

    if len(digits) == 7:
        normalized, display = _corrected(digits, compute_check_digit(digits))
        return IdentifierValidation(
            normalized, text, False, "check digit added automatically", display, IdentifierStatus.CORRECTED
        )

    if len(digits) == 8:
        body, provided = digits[:7], int(digits[7])
        calculated = compute_check_digit(body)
        normalized, display = _corrected(body, calculated)
        if provided == calculated:
            return IdentifierValidation(
                normalized, text, False, "check digit correct", display, IdentifierStatus.VALID
            )
        return IdentifierValidation(
            normalized,
            text,
            True,
            f"check digit mismatch: provided={provided}, calculated={calculated}",
            display,
            IdentifierStatus.MISMATCH,
        )

    return IdentifierValidation(
        None,
        text,
        True,
        f"invalid length: {len(digits)} digits (expected 7 or 8)",
        None,
        IdentifierStatus.INVALID_LENGTH,
    )


def normalize_identifier(raw) -> str | None:
    return validate_identifier(raw).normalized_id
