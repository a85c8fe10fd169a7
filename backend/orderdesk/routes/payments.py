# Overview: Flask API routes for online payment; parses input and returns JSON responses.

"""
Online payment routes

- create-payment-url / retry-payment / check-status serve the storefront.
- vnpay-ipn is called by the gateway's servers. It always answers 200 with a
  {"RspCode", "Message"} body; the gateway decides whether to retry from the
  code alone.
- vnpay-return is the browser redirect. It only reports status.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import reconciliation_service
from ..services.order_service import (
    OrderNotFoundError,
    InvalidItemError,
    InvalidTransitionError,
)
from ..services.reconciliation_service import PaymentError
from ..services.stock_service import InsufficientStockError, ProductMissingError
from ..validation import ValidationError
from ..decorators import optional_customer


payments_bp = Blueprint("payments", __name__, url_prefix="/api/vnpay")


def _client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "127.0.0.1"


@payments_bp.post("/create-payment-url")
@optional_customer
def create_payment_url_route():
    data = request.get_json(silent=True) or {}
    customer = g.current_customer

    try:
        session = reconciliation_service.create_payment_session(
            customer_id=customer.id if customer else None,
            items=data.get("items"),
            shipping=data.get("shipping"),
            client_ip=_client_ip(),
        )
        return jsonify({"success": True, "message": "Payment URL created successfully", **session}), 200
    except (ValidationError, InvalidItemError) as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except InsufficientStockError as e:
        return jsonify({"success": False, "error": str(e), "details": e.details}), 409
    except Exception:
        current_app.logger.exception("Failed to create payment URL")
        return jsonify({"success": False, "error": "Failed to create payment URL"}), 500


@payments_bp.get("/vnpay-ipn")
def ipn_route():
    reply = reconciliation_service.handle_notify(request.args.to_dict())
    return jsonify(reply.to_dict()), 200


@payments_bp.get("/vnpay-return")
def return_route():
    try:
        result = reconciliation_service.handle_return(request.args.to_dict())
    except Exception:
        current_app.logger.exception("Failed to verify payment return")
        return jsonify({"success": False, "error": "Failed to verify payment"}), 500

    status = 404 if result.get("code") == "01" else 200
    return jsonify(result), status


@payments_bp.post("/retry-payment/<int:order_id>")
@optional_customer
def retry_payment_route(order_id: int):
    customer = g.current_customer
    try:
        session = reconciliation_service.retry_payment(
            order_id,
            client_ip=_client_ip(),
            customer_id=customer.id if customer else None,
        )
        return jsonify({"success": True, "message": "New payment URL generated", **session}), 200
    except OrderNotFoundError as e:
        return jsonify({"success": False, "error": str(e)}), 404
    except (PaymentError, InvalidTransitionError) as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except (InsufficientStockError, ProductMissingError) as e:
        return jsonify({"success": False, "error": str(e), "details": e.details}), 409
    except Exception:
        current_app.logger.exception("Failed to retry payment")
        return jsonify({"success": False, "error": "Failed to generate payment URL"}), 500


@payments_bp.get("/check-status/<int:order_id>")
@optional_customer
def check_status_route(order_id: int):
    customer = g.current_customer
    try:
        data = reconciliation_service.check_payment_status(
            order_id, customer_id=customer.id if customer else None
        )
        return jsonify({"success": True, "data": data}), 200
    except OrderNotFoundError as e:
        return jsonify({"success": False, "error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to check payment status")
        return jsonify({"success": False, "error": "Failed to check payment status"}), 500
