# Overview: Service-layer order lifecycle: placement, cancellation, queries and admin updates.

"""
Order lifecycle

- Prices come from the catalog at placement; total_amount is fixed then.
- COD orders take stock inside the placement transaction (floor-checked).
  Gateway orders take none until the payment is confirmed.
- Every status change is a conditional UPDATE keyed on the status values the
  caller read. Zero affected rows means someone else moved the order first;
  the caller's transaction is rolled back and nothing partial is committed.
"""

from __future__ import annotations

import csv
import io
from datetime import timedelta

from flask import current_app
from sqlalchemy import or_

from ..extensions import db
from ..models import CustomerOrder, CustomerOrderItem, Product
from ..models.orders import (
    ORDER_PENDING,
    ORDER_CONFIRMED,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_STATUSES,
    CANCELLABLE_STATUSES,
    PAYMENT_PENDING,
    PAYMENT_PAID,
    PAYMENT_REFUNDED,
    PAYMENT_FAILED,
    PAYMENT_STATUSES,
    PAYMENT_METHODS,
    GATEWAY_METHODS,
)
from ..validation import (
    ValidationError,
    ConflictError,
    ModelValidationPolicy,
    validate_payload,
    normalize_cart,
    coerce_int,
)
from orderdesk.time_utils import utcnow, parse_iso_datetime, to_utc_z
from . import ledger_service, stock_service
from .concurrency import conditional_update, run_with_retry
from .stock_service import InsufficientStockError


class OrderError(Exception):
    """Raised for order operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class OrderNotFoundError(OrderError):
    pass


class InvalidItemError(OrderError):
    pass


class InvalidTransitionError(OrderError):
    pass


SHIPPING_POLICY = ModelValidationPolicy(
    writable_fields={
        "recipient_name",
        "recipient_email",
        "recipient_phone",
        "shipping_address",
        "shipping_note",
    },
    required_on_create={"recipient_name", "recipient_phone", "shipping_address"},
)

# Forward-only fulfilment path; cancellation goes through cancel_order
NEXT_ORDER_STATUS = {
    ORDER_PENDING: ORDER_CONFIRMED,
    ORDER_CONFIRMED: ORDER_SHIPPED,
    ORDER_SHIPPED: ORDER_DELIVERED,
}

ADMIN_SORT_FIELDS = {
    "order_date": CustomerOrder.order_date,
    "total_amount": CustomerOrder.total_amount,
    "recipient_name": CustomerOrder.recipient_name,
}

EXPORT_COLUMNS = [
    "display_id",
    "order_date",
    "recipient_name",
    "recipient_phone",
    "recipient_email",
    "shipping_address",
    "order_status",
    "payment_method",
    "payment_status",
    "total_amount",
]


def validate_shipping(shipping) -> dict:
    if not isinstance(shipping, dict):
        raise ValidationError("Shipping details are required")
    return validate_payload(model=CustomerOrder, payload=shipping, policy=SHIPPING_POLICY, partial=False)


def _price_lines(lines: list[tuple[int, int]]):
    """Resolve (product_id, qty) against the catalog; returns ([(product, qty)], total)."""
    products = stock_service.load_products(pid for pid, _ in lines)
    priced = []
    total = 0
    for product_id, quantity in lines:
        product = products.get(product_id)
        if product is None:
            raise InvalidItemError(f"Product not found: {product_id}", details={"product_id": product_id})
        if quantity > product.current_stock:
            raise InsufficientStockError(
                f"Insufficient stock for {product.name}. Available: {product.current_stock}",
                details={
                    "product_id": product.id,
                    "product_name": product.name,
                    "available": product.current_stock,
                    "requested": quantity,
                },
            )
        priced.append((product, quantity))
        total += product.selling_price * quantity
    return priced, total


def order_lines(order_id: int) -> list[tuple[int, int]]:
    rows = db.session.query(CustomerOrderItem.product_id, CustomerOrderItem.quantity).filter(
        CustomerOrderItem.order_id == order_id
    ).order_by(CustomerOrderItem.id).all()
    return [(row.product_id, row.quantity) for row in rows]


def check_lines_in_stock(order_id: int) -> None:
    """Compare each line against the live counter; raises InsufficientStockError on the first short line."""
    for product_id, quantity in order_lines(order_id):
        product = db.session.query(Product.name, Product.current_stock).filter(
            Product.id == product_id, Product.is_deleted.is_(False)
        ).first()
        if product is None:
            raise stock_service.ProductMissingError(
                f"Product not available: {product_id}", details={"product_id": product_id}
            )
        if quantity > product.current_stock:
            raise InsufficientStockError(
                f"Insufficient stock for {product.name}. Available: {product.current_stock}",
                details={
                    "product_id": product_id,
                    "product_name": product.name,
                    "available": product.current_stock,
                    "requested": quantity,
                },
            )


def place_order_locked(
    *,
    customer_id: int | None,
    lines: list[tuple[int, int]],
    contact: dict,
    payment_method: str,
) -> CustomerOrder:
    """
    Insert the order and its lines and, for COD, take the stock.

    Does not commit. Lines must already be normalized.
    """
    priced, total = _price_lines(lines)

    if payment_method in GATEWAY_METHODS:
        minimum = current_app.config["MIN_GATEWAY_ORDER_AMOUNT"]
        if total < minimum:
            raise ValidationError(f"Minimum order amount is {minimum:,} VND for online payment")

    order = CustomerOrder(
        customer_id=customer_id,
        order_date=utcnow(),
        order_status=ORDER_PENDING,
        payment_method=payment_method,
        payment_status=PAYMENT_PENDING,
        total_amount=total,
        stock_deducted=False,
        payment_attempts=0,
        **contact,
    )
    db.session.add(order)
    db.session.flush()

    for product, quantity in priced:
        db.session.add(CustomerOrderItem(
            order_id=order.id,
            product_id=product.id,
            quantity=quantity,
            price=product.selling_price,
            discount=0,
        ))

    if payment_method not in GATEWAY_METHODS:
        stock_service.reserve_lines(lines)
        order.stock_deducted = True

    db.session.flush()
    return order


def parse_order_request(items, shipping, payment_method) -> tuple[list[tuple[int, int]], dict]:
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}")
    lines = normalize_cart(items, max_lines=current_app.config["MAX_CART_SIZE"])
    contact = validate_shipping(shipping)
    return lines, contact


def create_order(
    *,
    customer_id: int | None,
    items,
    shipping,
    payment_method: str,
) -> CustomerOrder:
    """
    Place an order from a cart.

    Raises:
        ValidationError: bad cart, shipping or payment method; gateway minimum
        InvalidItemError: unknown or deleted product
        InsufficientStockError: a line exceeds available stock
    """
    lines, contact = parse_order_request(items, shipping, payment_method)

    def _op():
        try:
            order = place_order_locked(
                customer_id=customer_id,
                lines=lines,
                contact=contact,
                payment_method=payment_method,
            )
            db.session.commit()
        except (OrderError, stock_service.StockError, ValidationError):
            db.session.rollback()
            raise
        current_app.logger.info(
            "Order %s placed (%s, total %s, stock_deducted=%s)",
            order.id, payment_method, order.total_amount, order.stock_deducted,
        )
        return order

    return run_with_retry(_op)


# =============================================================================
# CANCELLATION
# =============================================================================

def load_order(order_id: int, customer_id: int | None = None) -> CustomerOrder:
    q = db.session.query(CustomerOrder).filter(CustomerOrder.id == order_id)
    if customer_id is not None:
        q = q.filter(CustomerOrder.customer_id == customer_id)
    order = q.populate_existing().first()
    if order is None:
        raise OrderNotFoundError("Order not found")
    return order


def _cancelled_payment_status(payment_status: str) -> str:
    if payment_status == PAYMENT_PAID:
        return PAYMENT_REFUNDED
    if payment_status == PAYMENT_PENDING:
        return PAYMENT_FAILED
    return payment_status


def cancel_order(order_id: int, *, customer_id: int | None = None) -> CustomerOrder:
    """
    Cancel a pending or confirmed order.

    One DB transaction: conditional UPDATE of the order keyed on the statuses
    and stock flag just read, stock restore when it had been taken, refund
    ledger entry when the order had been paid. customer_id scopes the lookup
    to that customer's orders; None is the admin path.

    A missing product aborts the whole cancellation.
    """
    def _op():
        order = load_order(order_id, customer_id)
        if not order.can_be_cancelled():
            raise InvalidTransitionError(
                f"Cannot cancel order with status '{order.order_status}'. "
                "Only pending or confirmed orders can be cancelled.",
                details={"order_status": order.order_status},
            )

        previous_payment = order.payment_status
        previous_order_status = order.order_status
        had_stock = order.stock_deducted
        new_payment = _cancelled_payment_status(previous_payment)

        rows = conditional_update(
            CustomerOrder,
            [
                CustomerOrder.id == order.id,
                CustomerOrder.order_status == previous_order_status,
                CustomerOrder.payment_status == previous_payment,
                CustomerOrder.stock_deducted.is_(had_stock),
            ],
            {
                "order_status": ORDER_CANCELLED,
                "payment_status": new_payment,
                "stock_deducted": False,
                "version_id": CustomerOrder.version_id + 1,
            },
        )
        if rows == 0:
            db.session.rollback()
            current = load_order(order_id, customer_id)
            if not current.can_be_cancelled():
                raise InvalidTransitionError(
                    f"Cannot cancel order with status '{current.order_status}'. "
                    "Only pending or confirmed orders can be cancelled.",
                    details={"order_status": current.order_status},
                )
            raise ConflictError("Order changed while cancelling; please retry")

        try:
            if had_stock:
                stock_service.restore_lines(order_lines(order.id))
            if previous_payment == PAYMENT_PAID:
                ledger_service.record_refund(order)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        current_app.logger.info(
            "Order %s cancelled (payment %s -> %s, stock restored=%s)",
            order_id, previous_payment, new_payment, had_stock,
        )
        return load_order(order_id)

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_order(order_id: int, customer_id: int | None = None) -> dict:
    order = load_order(order_id, customer_id)
    items = [item.to_dict() for item in order.items]
    return {
        "order": order.to_dict(include_gateway=customer_id is None),
        "items": items,
    }


def _pagination(page: int, limit: int, total_items: int) -> dict:
    total_pages = (total_items + limit - 1) // limit
    return {
        "current_page": page,
        "per_page": limit,
        "total_items": total_items,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def _summarize(order: CustomerOrder) -> dict:
    first = order.items[0] if order.items else None
    data = order.to_dict(include_gateway=False)
    data["item_count"] = len(order.items)
    data["preview_product"] = (
        {"id": first.product_id, "name": first.product.name if first.product else None}
        if first else None
    )
    return data


def _apply_common_filters(q, filters: dict):
    order_status = filters.get("order_status")
    if order_status in ORDER_STATUSES:
        q = q.filter(CustomerOrder.order_status == order_status)

    payment_status = filters.get("payment_status")
    if payment_status in PAYMENT_STATUSES:
        q = q.filter(CustomerOrder.payment_status == payment_status)

    try:
        date_begin = parse_iso_datetime(filters.get("date_begin"))
        date_end = parse_iso_datetime(filters.get("date_end"))
    except ValueError:
        raise ValidationError("date_begin and date_end must be ISO-8601 dates")
    if date_begin is not None:
        q = q.filter(CustomerOrder.order_date >= date_begin)
    if date_end is not None:
        if len(filters["date_end"].strip()) == 10:
            date_end = date_end + timedelta(days=1) - timedelta(microseconds=1)
        q = q.filter(CustomerOrder.order_date <= date_end)
    return q


def list_customer_orders(customer_id: int, filters: dict | None = None, page: int = 1, limit: int = 5) -> dict:
    filters = filters or {}
    page = max(1, page)
    limit = max(1, min(limit, 10))

    q = db.session.query(CustomerOrder).filter(CustomerOrder.customer_id == customer_id)
    q = _apply_common_filters(q, filters)

    total_items = q.count()
    orders = (
        q.order_by(CustomerOrder.order_date.desc(), CustomerOrder.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "items": [_summarize(o) for o in orders],
        "pagination": _pagination(page, limit, total_items),
    }


def _admin_query(filters: dict):
    q = db.session.query(CustomerOrder)

    search = (filters.get("search") or "").strip()
    if search:
        clauses = [CustomerOrder.recipient_name.ilike(f"%{search}%")]
        candidate = search.upper().removeprefix("ORD-")
        if candidate.isdigit():
            clauses.append(CustomerOrder.id == int(candidate))
        q = q.filter(or_(*clauses))

    q = _apply_common_filters(q, filters)

    for key, op in (("price_min", "ge"), ("price_max", "le")):
        raw = filters.get(key)
        if raw in (None, ""):
            continue
        bound = coerce_int(key, raw)
        if op == "ge":
            q = q.filter(CustomerOrder.total_amount >= bound)
        else:
            q = q.filter(CustomerOrder.total_amount <= bound)

    sort_column = ADMIN_SORT_FIELDS.get(filters.get("sort_by"), CustomerOrder.order_date)
    if filters.get("sort_order") == "asc":
        q = q.order_by(sort_column.asc(), CustomerOrder.id.asc())
    else:
        q = q.order_by(sort_column.desc(), CustomerOrder.id.desc())
    return q


def list_all_orders(filters: dict | None = None, page: int = 1, limit: int = 10) -> dict:
    filters = filters or {}
    page = max(1, page)
    limit = max(1, min(limit, 100))

    q = _admin_query(filters)
    total_items = q.order_by(None).count()
    orders = q.offset((page - 1) * limit).limit(limit).all()
    return {
        "items": [_summarize(o) for o in orders],
        "pagination": _pagination(page, limit, total_items),
    }


def export_orders_csv(filters: dict | None = None) -> str:
    """Admin-filtered orders as CSV text (header row first)."""
    out = io.StringIO()
    writer = csv.writer(out)
    writer.writerow(EXPORT_COLUMNS + ["item_count"])
    for order in _admin_query(filters or {}).all():
        data = order.to_dict(include_gateway=False)
        writer.writerow([data[col] for col in EXPORT_COLUMNS] + [len(order.items)])
    return out.getvalue()


# =============================================================================
# ADMIN UPDATE
# =============================================================================

def update_order(order_id: int, payload: dict) -> CustomerOrder:
    """
    Admin edit: contact/shipping fields, order status, payment status.

    order_status only moves one step along pending -> confirmed -> shipped ->
    delivered; "cancelled" is delegated to cancel_order. payment_status:
    -> paid takes stock if not yet taken and books the customer payment;
    paid -> refunded books the refund; refunded requires a prior paid.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    payload = dict(payload)
    target_order_status = payload.pop("order_status", None)
    target_payment_status = payload.pop("payment_status", None)

    if target_order_status is not None and target_order_status not in ORDER_STATUSES:
        raise ValidationError(f"order_status must be one of: {', '.join(ORDER_STATUSES)}")
    if target_payment_status is not None and target_payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"payment_status must be one of: {', '.join(PAYMENT_STATUSES)}")

    contact = validate_payload(model=CustomerOrder, payload=payload, policy=SHIPPING_POLICY, partial=True)

    if target_order_status == ORDER_CANCELLED:
        if contact or target_payment_status is not None:
            raise ValidationError("Cancellation cannot be combined with other changes")
        return cancel_order(order_id)

    def _op():
        order = load_order(order_id)
        if order.order_status == ORDER_CANCELLED and (target_order_status or target_payment_status):
            raise InvalidTransitionError("Cancelled orders cannot change status")

        values = dict(contact)
        criteria = [
            CustomerOrder.id == order.id,
            CustomerOrder.order_status == order.order_status,
            CustomerOrder.payment_status == order.payment_status,
            CustomerOrder.stock_deducted.is_(order.stock_deducted),
        ]

        if target_order_status is not None and target_order_status != order.order_status:
            if NEXT_ORDER_STATUS.get(order.order_status) != target_order_status:
                raise InvalidTransitionError(
                    f"Cannot change order status from '{order.order_status}' to '{target_order_status}'"
                )
            if (
                target_order_status in (ORDER_SHIPPED, ORDER_DELIVERED)
                and order.payment_method in GATEWAY_METHODS
                and order.payment_status != PAYMENT_PAID
                and target_payment_status != PAYMENT_PAID
            ):
                raise InvalidTransitionError("Online-payment orders must be paid before shipping")
            values["order_status"] = target_order_status

        take_stock = False
        book_payment = False
        book_refund = False
        if target_payment_status is not None and target_payment_status != order.payment_status:
            if target_payment_status == PAYMENT_REFUNDED and order.payment_status != PAYMENT_PAID:
                raise InvalidTransitionError(
                    "Cannot set payment status to 'refunded' - order was not paid"
                )
            if order.payment_status == PAYMENT_PAID and target_payment_status != PAYMENT_REFUNDED:
                raise InvalidTransitionError("Paid orders can only move to 'refunded'")
            if target_payment_status == PAYMENT_PAID:
                values["payment_completed_at"] = utcnow()
                book_payment = True
                if not order.stock_deducted:
                    values["stock_deducted"] = True
                    take_stock = True
            if target_payment_status == PAYMENT_REFUNDED:
                book_refund = True
            values["payment_status"] = target_payment_status

        if not values:
            return order

        values["version_id"] = CustomerOrder.version_id + 1
        rows = conditional_update(CustomerOrder, criteria, values)
        if rows == 0:
            db.session.rollback()
            raise ConflictError("Order changed while updating; please reload and retry")

        try:
            if take_stock:
                stock_service.deduct_paid_lines(order_lines(order.id), order_id=order.id)
            if book_payment:
                ledger_service.record_customer_payment(order)
            if book_refund:
                ledger_service.record_refund(order)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        current_app.logger.info("Order %s updated: %s", order_id, sorted(values))
        return load_order(order_id)

    return run_with_retry(_op)


def order_status_payload(order: CustomerOrder) -> dict:
    return {
        "order_id": order.id,
        "payment_method": order.payment_method,
        "payment_status": order.payment_status,
        "order_status": order.order_status,
        "response_code": order.gateway_response_code,
        "completed_at": to_utc_z(order.payment_completed_at),
    }
