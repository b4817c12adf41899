"""Validate normalized lead rows and enforce contact-field constraints."""

from __future__ import annotations

import re
from typing import Any

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

CONTACT_FIELDS = ("email", "phone", "external_id")


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value))


def has_contact_field(row: dict[str, Any]) -> bool:
    return any(row.get(field) for field in CONTACT_FIELDS)


def validate_row(row: dict[str, Any]) -> dict[str, str]:
    """Return a field -> message map; an empty map means the row is valid.

    Validation problems are data, never exceptions: the caller stores the
    map on the row and keeps going.
    """
    errors: dict[str, str] = {}
    if not has_contact_field(row):
        errors["contact"] = "Row needs at least one of email, phone or external id"
    email = row.get("email")
    if email and not is_valid_email(email):
        errors["email"] = f"Invalid email address: {email}"
    return errors
