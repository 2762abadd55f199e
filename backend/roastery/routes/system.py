# Overview: Flask API routes for health checks and the maintenance switch.

"""
System health and maintenance endpoints.

Maintenance mode is stored in the database (site_settings) so every server
instance sees the same value and it survives restarts.
"""

import time

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..models import User, Order
from ..services import settings_service
from ..services import security_service
from ..services.session_service import ADMIN_ROLES
from ..decorators import require_roles
from ..time_utils import utcnow, to_utc_z


system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        user_count = db.session.query(User).count()
        order_count = db.session.query(Order).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "users": user_count,
                "orders": order_count,
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


def check_stripe_config() -> dict:
    """Report whether Stripe keys are present (never their values)."""
    missing = [
        key for key in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")
        if not current_app.config.get(key)
    ]
    if missing:
        return {"status": "degraded", "warning": f"Missing: {', '.join(missing)}"}
    return {"status": "healthy"}


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded (Stripe not configured)
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    stripe_health = check_stripe_config()

    if database_health["status"] == "unhealthy":
        overall_status, http_status = "unhealthy", 503
    elif stripe_health["status"] == "degraded":
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "stripe": stripe_health,
        }
    }, http_status


@system_bp.get("/api/maintenance")
def get_maintenance_route():
    """Public: the storefront polls this to show its maintenance page."""
    try:
        return jsonify({"maintenanceMode": settings_service.is_maintenance_mode()}), 200
    except Exception:
        current_app.logger.exception("Failed to read maintenance mode")
        return jsonify({"error": "Internal server error"}), 500


@system_bp.post("/api/maintenance")
@require_roles(*ADMIN_ROLES)
def set_maintenance_route():
    """
    Turn maintenance mode on or off.

    Request body: {"enabled": true}
    """
    try:
        data = request.get_json(silent=True) or {}
        enabled = data.get("enabled")
        if not isinstance(enabled, bool):
            return jsonify({"error": "enabled must be a boolean"}), 400

        settings_service.set_maintenance_mode(enabled, user_id=g.current_user.id)
        security_service.log_security_event(
            user_id=g.current_user.id,
            event_type="MAINTENANCE_TOGGLED",
            success=True,
            resource=request.path,
            action=request.method,
            reason=f"maintenance_mode={enabled}",
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
        )
        current_app.logger.warning("Maintenance mode set to %s by user %s", enabled, g.current_user.id)
        return jsonify({"maintenanceMode": enabled}), 200

    except Exception:
        current_app.logger.exception("Failed to set maintenance mode")
        return jsonify({"error": "Internal server error"}), 500
