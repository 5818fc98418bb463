# backend/backoffice/routes/system.py
"""
System health endpoint.

Reports database reachability, whether the chart of accounts and tax defaults
are seeded, and the state of the background sweeps.
"""

import time
from flask import Blueprint, current_app

from ..extensions import db
from ..models import Account, Setting
from ..services.account_service import DEFAULT_CHART
from ..services.tax_service import TAX_SETTING_KEY
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        account_count = db.session.query(Account).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"accounts": account_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_bootstrap_health() -> dict:
    """Degraded until `flask system init` has seeded accounts and tax settings."""
    try:
        codes = {row[0] for row in db.session.query(Account.code).all()}
        missing = [code for code, *_ in DEFAULT_CHART if code not in codes]
        has_tax = db.session.get(Setting, TAX_SETTING_KEY) is not None
    except Exception:
        current_app.logger.exception("Bootstrap health check failed")
        return {"status": "unhealthy", "error": "Bootstrap check error"}

    if missing or not has_tax:
        return {
            "status": "degraded",
            "warning": "Run `flask system init`",
            "details": {"missing_accounts": missing, "tax_settings": has_tax},
        }
    return {"status": "healthy", "details": {"accounts_seeded": True, "tax_settings": True}}


def check_sweeps_health() -> dict:
    scheduler = current_app.extensions.get("sweep_scheduler")
    if scheduler is None:
        return {"status": "healthy", "details": {"enabled": False}}
    if not scheduler.running:
        return {"status": "degraded", "warning": "Sweep thread is not running", "details": {"enabled": True}}
    return {
        "status": "healthy",
        "details": {"enabled": True, "last_result": scheduler.last_result},
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    bootstrap_health = check_bootstrap_health()
    sweeps_health = check_sweeps_health()

    all_checks = [database_health, bootstrap_health, sweeps_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "bootstrap": bootstrap_health,
            "sweeps": sweeps_health,
        },
    }, http_status
