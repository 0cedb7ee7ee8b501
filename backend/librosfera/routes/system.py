# backend/librosfera/routes/system.py
"""
System health endpoint.

Reports database connectivity and the pricing/returns policy the instance
is running with.
"""

import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "response_time_ms": round(elapsed_ms, 2)}
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.exception("Database health check failed")
        return {"status": "unhealthy", "error": str(e)}


@system_bp.get("/health")
def health():
    database = check_database_health()
    status = 200 if database["status"] == "healthy" else 503
    return jsonify({
        "status": "ok" if status == 200 else "degraded",
        "timestamp": to_utc_z(utcnow()),
        "database": database,
        "policy": {
            "tax_rate_percent": current_app.config.get("TAX_RATE_PERCENT"),
            "home_delivery_fee_cents": current_app.config.get("HOME_DELIVERY_FEE_CENTS"),
            "return_window_days": current_app.config.get("RETURN_WINDOW_DAYS"),
            "max_discount_codes_per_cart": current_app.config.get("MAX_DISCOUNT_CODES_PER_CART"),
        },
    }), status
