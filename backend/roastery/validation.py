from __future__ import annotations

import re
from typing import Any


# Maximum single charge: 999,999.99 in a two-decimal currency
MAX_AMOUNT_CENTS = 99_999_999

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MAX_PAGE_SIZE = 100


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate email)."""


class NotFoundError(LookupError):
    """404-level missing resource."""


def require_json_object(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for amounts and ids.

    Rejects bools, floats, decimals in strings and scientific notation so that
    "49.99" is never silently read as 49 minor units.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def optional_cents(payload: dict, field: str) -> int | None:
    if payload.get(field) is None:
        return None
    value = coerce_int(payload[field], field)
    if value < 0:
        raise ValidationError(f"{field} must be >= 0")
    if value > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT_CENTS}")
    return value


def normalize_email(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("email is required")
    email = value.strip().lower()
    if len(email) > 255 or not EMAIL_RE.match(email):
        raise ValidationError("email is not valid")
    return email


def normalize_currency(value: Any, default: str) -> str:
    if value is None or value == "":
        return default.lower()
    if not isinstance(value, str) or not re.fullmatch(r"[A-Za-z]{3}", value.strip()):
        raise ValidationError("currency must be a 3-letter ISO code")
    return value.strip().lower()


def parse_pagination(args) -> tuple[int, int]:
    """Read page/limit query params (1-based page, capped limit)."""
    try:
        page = int(args.get("page", 1))
        limit = int(args.get("limit", 20))
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers")
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return page, limit
