# backend/offer_ledger/routes/system.py
"""
System health endpoint.

Reports database reachability and whether the external collaborators (proof
storage, notification delivery) are configured.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Offer, Payment
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        offer_count = db.session.query(Offer).count()
        payment_count = db.session.query(Payment).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "offers": offer_count,
                "payments": payment_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_integrations() -> dict:
    """Configuration only; no outbound calls from a health check."""
    proof_store = current_app.extensions.get("offer_ledger.proof_store")
    webhook = current_app.config.get("NOTIFY_WEBHOOK_URL")
    return {
        "status": "healthy" if proof_store is not None else "degraded",
        "details": {
            "proof_storage_configured": proof_store is not None,
            "notification_webhook_configured": bool(webhook),
        }
    }


@system_bp.get("/health")
def health():
    """
    Health check.

    Returns:
    - 200: healthy, or degraded (proof storage not configured)
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    integrations = check_integrations()

    if database_health["status"] == "unhealthy":
        overall_status = "unhealthy"
        http_status = 503
    elif integrations["status"] == "degraded":
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "integrations": integrations,
        }
    }
    return response, http_status
