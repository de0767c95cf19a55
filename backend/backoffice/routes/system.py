# backend/backoffice/routes/system.py
"""
System health endpoint.

Reports database reachability and ledger/projection drift so deployments
can tell a dead database from a drifted stock cache.
"""

import time
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from ..extensions import db
from ..services.ledger_service import find_balance_drift
from ..time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {"status": "unhealthy", "latency_ms": round(elapsed_ms, 2), "error": "Database error"}


def check_stock_projection_health() -> dict:
    try:
        drift = find_balance_drift()
    except Exception:
        current_app.logger.exception("Stock projection health check failed")
        return {"status": "unhealthy", "error": "Stock projection error"}
    if drift:
        return {"status": "degraded", "drifted_keys": len(drift)}
    return {"status": "healthy", "drifted_keys": 0}


@system_bp.get("/health")
def health():
    checks = {
        "database": check_database_health(),
        "stock_projection": check_stock_projection_health(),
    }
    statuses = {check["status"] for check in checks.values()}
    if "unhealthy" in statuses:
        overall, code = "unhealthy", 503
    elif "degraded" in statuses:
        overall, code = "degraded", 200
    else:
        overall, code = "healthy", 200
    return jsonify({"status": overall, "checks": checks, "timestamp": to_utc_z(utcnow())}), code
