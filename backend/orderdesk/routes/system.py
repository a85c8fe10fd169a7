# backend/orderdesk/routes/system.py
"""
System health and version endpoints.

Health covers the database and the ledger summary cache; both are needed
for the storefront and reporting surfaces to answer.
"""

import os
import time
from flask import Blueprint, current_app
from ..extensions import db, summary_cache
from ..models import Product, CustomerOrder, Transaction
from ..models.orders import PAYMENT_PENDING, GATEWAY_METHODS
from orderdesk.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        product_count = db.session.query(Product).count()
        order_count = db.session.query(CustomerOrder).count()
        transaction_count = db.session.query(Transaction).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "products": product_count,
                "orders": order_count,
                "transactions": transaction_count,
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


def check_payment_sessions_health() -> dict:
    """
    Count gateway orders whose payment session lapsed without a sweep.

    Lapsed sessions are harmless to stock; a backlog only means the expiry
    sweep is not scheduled.
    """
    start_time = time.time()
    try:
        lapsed = db.session.query(CustomerOrder).filter(
            CustomerOrder.payment_method.in_(GATEWAY_METHODS),
            CustomerOrder.payment_status == PAYMENT_PENDING,
            CustomerOrder.payment_expires_at < utcnow(),
        ).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "degraded" if lapsed else "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"lapsed_sessions_pending_sweep": lapsed},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Payment session health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Payment session check error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    sessions_health = check_payment_sessions_health()

    all_checks = [database_health, sessions_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status = "unhealthy"
        http_status = 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "payment_sessions": sessions_health,
            "summary_cache": {
                "status": "healthy",
                "last_updated": to_utc_z(summary_cache.last_updated),
            },
        }
    }

    return response, http_status


@system_bp.get("/version")
def version():
    return {
        "name": "orderdesk",
        "version": os.environ.get("ORDERDESK_VERSION", "dev"),
    }
