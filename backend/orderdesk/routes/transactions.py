# Overview: Flask API routes for the financial ledger; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import summary_cache
from ..services import ledger_service
from ..services.ledger_service import (
    InvalidCategoryError,
    LedgerForbiddenError,
    LedgerNotFoundError,
    AlreadyDeletedError,
)
from ..services.summary_cache import SummaryCacheError
from ..validation import ValidationError
from ..decorators import require_admin

"""
Time semantics:
- API accepts ISO-8601 dates/datetimes; backend normalizes to UTC-naive internally.
- dateTo given as a bare date covers that whole day.
- Summary windows and chart buckets follow BUSINESS_TIMEZONE.
"""

transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/admin/transactions")


@transactions_bp.get("")
@require_admin
def list_transactions_route():
    try:
        result = ledger_service.list_transactions(
            type=request.args.get("type"),
            date_from=request.args.get("dateFrom"),
            date_to=request.args.get("dateTo"),
            page=request.args.get("page", default=1, type=int),
            limit=request.args.get("limit", default=10, type=int),
        )
        return jsonify(result), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list transactions")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.get("/summary")
@require_admin
def summary_route():
    period = request.args.get("period", "today")
    try:
        return jsonify(summary_cache.summary_with_chart(period)), 200
    except SummaryCacheError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to load summary")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("/summary/refresh")
@require_admin
def refresh_summary_route():
    period = request.args.get("period")
    try:
        return jsonify(summary_cache.force_refresh(period)), 200
    except SummaryCacheError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to refresh summary")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("")
@require_admin
def create_transaction_route():
    """
    Create a manual ledger entry.

    Request body:
    {
        "date": "2026-01-31",
        "type": "outflow",
        "category": "rent",
        "amount": 5000000,
        "method": "bank_transfer",
        "description": "January rent"
    }
    """
    data = request.get_json(silent=True) or {}
    try:
        entry = ledger_service.create_manual(
            date=data.get("date"),
            type=data.get("type"),
            category=data.get("category"),
            amount=data.get("amount"),
            method=data.get("method"),
            description=data.get("description"),
            author_id=g.current_customer.id,
        )
        return jsonify({"transaction": ledger_service.present(entry)}), 201
    except (ValidationError, InvalidCategoryError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.delete("/<int:transaction_id>")
@require_admin
def delete_transaction_route(transaction_id: int):
    try:
        entry = ledger_service.soft_delete(transaction_id, author_id=g.current_customer.id)
        return jsonify({"transaction": ledger_service.present(entry)}), 200
    except LedgerNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except AlreadyDeletedError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerForbiddenError as e:
        return jsonify({"error": str(e)}), 403
    except Exception:
        current_app.logger.exception("Failed to delete transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.get("/categories")
@require_admin
def categories_route():
    return jsonify({"categories": ledger_service.manual_categories(request.args.get("type"))}), 200


@transactions_bp.get("/methods")
@require_admin
def methods_route():
    return jsonify({"methods": ledger_service.payment_methods()}), 200


@transactions_bp.get("/order-preview/<int:order_id>")
@require_admin
def order_preview_route(order_id: int):
    try:
        return jsonify({"order": ledger_service.order_preview(order_id)}), 200
    except LedgerNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to load order preview")
        return jsonify({"error": "Internal server error"}), 500
