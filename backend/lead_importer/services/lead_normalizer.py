"""Pure per-field normalization applied to every mapped row."""

from __future__ import annotations

import re
from typing import Any

from lead_importer.core.config import get_settings

_PHONE_PREFIX = re.compile(r"^\s*[pt]\s*:\s*", re.IGNORECASE)
_PHONE_SEPARATORS = re.compile(r"[\s.\-()/]")
_WHITESPACE = re.compile(r"\s+")

TITLE_CASE_FIELDS = frozenset({"first_name", "last_name", "company", "city"})


def collapse_whitespace(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def normalize_email(value: str) -> str:
    return value.strip().lower()


def normalize_phone(
    value: str,
    *,
    calling_code: str | None = None,
    national_length: int | None = None,
) -> str:
    """Return a phone number in international form where it can be inferred.

    ``06 12 34 56 78`` becomes ``+33612345678`` with the default calling
    code; anything that does not look national is returned stripped of
    separators only.
    """
    settings = get_settings()
    calling_code = calling_code or settings.default_phone_calling_code
    national_length = national_length or settings.national_phone_length

    cleaned = _PHONE_PREFIX.sub("", value.strip())
    cleaned = _PHONE_SEPARATORS.sub("", cleaned)
    has_plus = cleaned.startswith("+")
    digits = re.sub(r"\D", "", cleaned)
    if not digits:
        return ""
    if has_plus:
        return f"+{digits}"
    if digits.startswith("00"):
        return f"+{digits[2:]}"
    if digits.startswith("0") and len(digits) == national_length:
        return f"+{calling_code}{digits[1:]}"
    if digits.startswith(calling_code) and len(digits) == national_length - 1 + len(
        calling_code
    ):
        return f"+{digits}"
    return digits


def normalize_postal_code(value: str, *, length: int | None = None) -> str:
    length = length or get_settings().postal_code_length
    code = re.sub(r"\s", "", value)
    if code.isdigit() and len(code) == length - 1:
        return f"0{code}"
    return code


def title_case(value: str) -> str:
    return collapse_whitespace(value).title()


def normalize_value(field: str, value: Any) -> str:
    """Normalize one raw cell for its target lead field."""
    if value is None:
        return ""
    text = str(value)
    if field == "email":
        return normalize_email(text)
    if field == "phone":
        return normalize_phone(text)
    if field == "postal_code":
        return normalize_postal_code(text)
    if field in TITLE_CASE_FIELDS:
        return title_case(text)
    return collapse_whitespace(text)


def normalize_row(mapped: dict[str, Any]) -> dict[str, str]:
    """Normalize every mapped field, dropping the ones left empty."""
    normalized: dict[str, str] = {}
    for field, value in mapped.items():
        cleaned = normalize_value(field, value)
        if cleaned:
            normalized[field] = cleaned
    return normalized
