# backend/offer_ledger/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/offer_ledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///offer_ledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Comma-separated browser origins allowed to call the API
    CORS_ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
        ).split(",")
        if origin.strip()
    ]

    # Bearer sessions issued for the external identity provider's users
    SESSION_TTL_HOURS = int(os.environ.get("SESSION_TTL_HOURS", "24"))

    # Buyers at or above this paid ratio are flagged "near completion"
    NEAR_COMPLETION_THRESHOLD = os.environ.get("NEAR_COMPLETION_THRESHOLD", "0.8")
    OFFER_DEFAULT_EXPIRY_DAYS = int(os.environ.get("OFFER_DEFAULT_EXPIRY_DAYS", "7"))

    # Proof-of-payment storage (Supabase-compatible storage REST API)
    PROOF_STORAGE_URL = os.environ.get("PROOF_STORAGE_URL")
    PROOF_STORAGE_KEY = os.environ.get("PROOF_STORAGE_KEY")
    PROOF_BUCKET = os.environ.get("PROOF_BUCKET", "payment-proofs")
    PROOF_URL_TTL_SECONDS = int(os.environ.get("PROOF_URL_TTL_SECONDS", "3600"))
    PROOF_STORAGE_TIMEOUT = float(os.environ.get("PROOF_STORAGE_TIMEOUT", "10"))

    # Notifications are best-effort; unset webhook means log-only delivery
    NOTIFY_WEBHOOK_URL = os.environ.get("NOTIFY_WEBHOOK_URL")
    NOTIFY_TIMEOUT = float(os.environ.get("NOTIFY_TIMEOUT", "5"))
    NOTIFY_ASYNC = _env_bool("NOTIFY_ASYNC", True)
    NOTIFY_MAX_WORKERS = int(os.environ.get("NOTIFY_MAX_WORKERS", "4"))
