"""
Request payload parsing for the HTTP layer.

Services receive Python values; these helpers turn JSON bodies and query
strings into them and raise ValidationError (400) on bad input.
"""

from __future__ import annotations

from typing import Any

from flask import request

from .errors import ValidationError


# Maximum amount accepted in any money field: 9,999,999.99
MAX_AMOUNT_CENTS = 999_999_999


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON object body required")
    return data


def parse_int(value: Any, field: str, *, required: bool = True, minimum: int | None = None, maximum: int | None = None) -> int | None:
    """
    Strict integer coercion: ints and plain digit strings only.

    Floats, booleans and scientific notation are rejected.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required")
        return None

    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        body = stripped[1:] if stripped.startswith("-") else stripped
        if not body.isdigit():
            raise ValidationError(f"{field} must be an integer")
        result = int(stripped)
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    if maximum is not None and result > maximum:
        raise ValidationError(f"{field} must be <= {maximum}")
    return result


def parse_bool(value: Any, field: str, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "si", "sí", "yes"):
            return True
        if lowered in ("0", "false", "no", ""):
            return False
    raise ValidationError(f"{field} must be a boolean")


def parse_str(value: Any, field: str, *, required: bool = True, max_length: int = 255) -> str | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return value


def pagination_args() -> tuple[int, int]:
    page = parse_int(request.args.get("page"), "page", required=False, minimum=1) or 1
    per_page = parse_int(request.args.get("limit"), "limit", required=False, minimum=1, maximum=100) or 20
    return page, per_page
