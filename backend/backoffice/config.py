# backend/backoffice/config.py
from __future__ import annotations
import os


def _int_list(value: str | None) -> list[int]:
    if not value:
        return []
    return [int(part) for part in value.split(",") if part.strip()]


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/backoffice.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///backoffice.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Upper bound for any single persistence call (lock waits, statements, pool checkout)
    PERSISTENCE_TIMEOUT_SECONDS = float(os.environ.get("PERSISTENCE_TIMEOUT_SECONDS", "10"))

    # Commission policy (basis points: 1000 = 10%)
    COMMISSION_RATE_BPS = int(os.environ.get("COMMISSION_RATE_BPS", "500"))
    COMMISSION_WITHHOLDING_TAX_BPS = int(os.environ.get("COMMISSION_WITHHOLDING_TAX_BPS", "0"))
    COMMISSION_EXCLUDED_PRODUCT_IDS = _int_list(os.environ.get("COMMISSION_EXCLUDED_PRODUCT_IDS"))

    # Default term for promissory notes created from a sale
    PROMISSORY_NOTE_TERM_DAYS = int(os.environ.get("PROMISSORY_NOTE_TERM_DAYS", "30"))


def engine_options(database_uri: str, timeout_seconds: float) -> dict:
    """
    Bounded-time engine options for the configured backend.

    SQLite: busy timeout on lock acquisition.
    PostgreSQL: per-statement timeout.
    Both: pool checkout timeout where a pool is used.
    """
    if database_uri.startswith("sqlite"):
        return {"connect_args": {"timeout": timeout_seconds}}

    options = {"pool_timeout": timeout_seconds}
    if database_uri.startswith("postgresql"):
        options["connect_args"] = {
            "options": f"-c statement_timeout={int(timeout_seconds * 1000)}"
        }
    return options
