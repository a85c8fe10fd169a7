# Overview: Flask API routes for storefront orders; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..models.orders import METHOD_COD
from ..services import order_service
from ..services.order_service import (
    OrderNotFoundError,
    InvalidItemError,
    InvalidTransitionError,
)
from ..services.stock_service import InsufficientStockError, ProductMissingError
from ..validation import ValidationError, ConflictError
from ..decorators import optional_customer, require_customer


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@optional_customer
def place_order_route():
    """
    Place a cash-on-delivery order. Guests allowed.

    Request body:
    {
        "items": [{"product_id": 1, "quantity": 2}],
        "shipping": {"recipient_name": "...", "recipient_phone": "...", "shipping_address": "..."}
    }
    """
    data = request.get_json(silent=True) or {}
    customer = g.current_customer

    if data.get("payment_method", METHOD_COD) != METHOD_COD:
        return jsonify({"error": "Online payment orders are created through /api/vnpay/create-payment-url"}), 400

    try:
        order = order_service.create_order(
            customer_id=customer.id if customer else None,
            items=data.get("items"),
            shipping=data.get("shipping"),
            payment_method=METHOD_COD,
        )
        return jsonify({"order": order.to_dict(include_gateway=False)}), 201
    except (ValidationError, InvalidItemError) as e:
        return jsonify({"error": str(e)}), 400
    except InsufficientStockError as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except Exception:
        current_app.logger.exception("Failed to place order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_customer
def list_orders_route():
    filters = {
        "order_status": request.args.get("order_status"),
        "payment_status": request.args.get("payment_status"),
        "date_begin": request.args.get("date_begin"),
        "date_end": request.args.get("date_end"),
    }
    page = request.args.get("page", default=1, type=int)
    limit = request.args.get("limit", default=5, type=int)

    try:
        result = order_service.list_customer_orders(g.current_customer.id, filters, page, limit)
        return jsonify(result), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_customer
def get_order_route(order_id: int):
    try:
        return jsonify(order_service.get_order(order_id, customer_id=g.current_customer.id)), 200
    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_customer
def cancel_order_route(order_id: int):
    try:
        order = order_service.cancel_order(order_id, customer_id=g.current_customer.id)
        return jsonify({"order": order.to_dict(include_gateway=False)}), 200
    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except InvalidTransitionError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except ProductMissingError as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500
