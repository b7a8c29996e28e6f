"""User input validation for the checkout conversation."""

from __future__ import annotations

import re

from checkout.errors import ValidationError


PHONE_RE = re.compile(r"^\+?[1-9]\d{7,14}$")
PHONE_SEPARATORS_RE = re.compile(r"[\s\-.()]")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")
FULL_NAME_MAX_LEN = 120


def normalize_phone(raw: str | None) -> str:
    """Return the phone number in +<digits> form or raise ValidationError."""
    value = PHONE_SEPARATORS_RE.sub("", str(raw or "").strip())
    if not PHONE_RE.match(value):
        raise ValidationError(
            "That doesn't look like a valid WhatsApp number. "
            "Send it in international format, e.g. +14155551234."
        )
    return value if value.startswith("+") else f"+{value}"


def normalize_email(raw: str | None) -> str:
    value = str(raw or "").strip()
    if not EMAIL_RE.match(value):
        raise ValidationError("Please send a valid email address, e.g. user@example.com.")
    return value.lower()


def normalize_full_name(raw: str | None) -> str:
    value = " ".join(str(raw or "").split())
    if not value:
        raise ValidationError("Please send your full name.")
    if len(value) > FULL_NAME_MAX_LEN:
        raise ValidationError(f"Name is too long (max {FULL_NAME_MAX_LEN} characters).")
    return value


def is_valid_phone(raw: str | None) -> bool:
    try:
        normalize_phone(raw)
    except ValidationError:
        return False
    return True


def is_valid_email(raw: str | None) -> bool:
    try:
        normalize_email(raw)
    except ValidationError:
        return False
    return True
