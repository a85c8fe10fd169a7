# Overview: Flask API routes for admin order management; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app, Response

from ..services import order_service
from ..services.order_service import OrderNotFoundError, InvalidTransitionError
from ..services.stock_service import ProductMissingError
from ..validation import ValidationError, ConflictError
from ..decorators import require_admin


admin_orders_bp = Blueprint("admin_orders", __name__, url_prefix="/api/admin/orders")


def _filters_from_args() -> dict:
    keys = (
        "search",
        "order_status",
        "payment_status",
        "date_begin",
        "date_end",
        "price_min",
        "price_max",
        "sort_by",
        "sort_order",
    )
    return {key: request.args.get(key) for key in keys}


@admin_orders_bp.get("")
@require_admin
def list_orders_route():
    page = request.args.get("page", default=1, type=int)
    limit = request.args.get("limit", default=10, type=int)
    try:
        return jsonify(order_service.list_all_orders(_filters_from_args(), page, limit)), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@admin_orders_bp.get("/export")
@require_admin
def export_orders_route():
    try:
        body = order_service.export_orders_csv(_filters_from_args())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to export orders")
        return jsonify({"error": "Internal server error"}), 500

    return Response(
        body,
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=orders.csv"},
    )


@admin_orders_bp.get("/<int:order_id>")
@require_admin
def get_order_route(order_id: int):
    try:
        return jsonify(order_service.get_order(order_id)), 200
    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


@admin_orders_bp.patch("/<int:order_id>")
@require_admin
def update_order_route(order_id: int):
    """
    Edit contact/shipping fields and move order or payment status.

    Request body: any of recipient_name, recipient_email, recipient_phone,
    shipping_address, shipping_note, order_status, payment_status.
    """
    data = request.get_json(silent=True)
    try:
        order = order_service.update_order(order_id, data)
        return jsonify({"order": order.to_dict()}), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except InvalidTransitionError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except (ConflictError, ProductMissingError) as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to update order")
        return jsonify({"error": "Internal server error"}), 500


@admin_orders_bp.delete("/<int:order_id>")
@require_admin
def cancel_order_route(order_id: int):
    """Orders are never removed; delete cancels and restores stock."""
    try:
        order = order_service.cancel_order(order_id)
        return jsonify({"order": order.to_dict()}), 200
    except OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except InvalidTransitionError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except (ConflictError, ProductMissingError) as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500
