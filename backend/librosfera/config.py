# backend/librosfera/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///librosfera.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Pricing policy
    TAX_RATE_PERCENT = _env_int("TAX_RATE_PERCENT", 19)  # IVA, used when a book has no own rate
    HOME_DELIVERY_FEE_CENTS = _env_int("HOME_DELIVERY_FEE_CENTS", 500)
    MAX_DISCOUNT_CODES_PER_CART = _env_int("MAX_DISCOUNT_CODES_PER_CART", 1)
    DISCOUNT_EVALUATION_ORDER = _env_list(
        "DISCOUNT_EVALUATION_ORDER",
        ("promocion_2x1", "bundle", "porcentaje", "valor_fijo"),
    )
    MAX_ITEM_QUANTITY = _env_int("MAX_ITEM_QUANTITY", 3)

    # Returns
    RETURN_WINDOW_DAYS = _env_int("RETURN_WINDOW_DAYS", 8)

    # Optimistic concurrency on stock and card rows
    STOCK_CAS_MAX_ATTEMPTS = _env_int("STOCK_CAS_MAX_ATTEMPTS", 5)
    STOCK_CAS_BACKOFF_SECONDS = float(os.environ.get("STOCK_CAS_BACKOFF_SECONDS", "0.02"))

    # Deduplication store for idempotent replays
    IDEMPOTENCY_TTL_HOURS = _env_int("IDEMPOTENCY_TTL_HOURS", 48)

    # Browser origins allowed to call the API (comma separated); none by default
    CORS_ALLOWED_ORIGINS = _env_list("CORS_ALLOWED_ORIGINS", ())
