# Overview: Service-layer stock counter operations; the only writer of Product.current_stock.

"""
Stock ledger

Invariants:
- current_stock changes only through adjust_stock (single conditional UPDATE).
- Reservation paths (COD order placement) are floor-checked: the decrement
  and the "enough stock" test are the same statement, so concurrent
  placements cannot oversell.
- Deduction for a confirmed gateway payment is not floor-checked. The money
  is already captured; a shortfall is recorded as negative stock (backorder)
  and logged, never silently dropped.
- Nothing here commits. Callers fold stock writes into their own DB
  transaction so order status and stock move together.
"""

from __future__ import annotations

from typing import Iterable

from flask import current_app

from ..extensions import db
from ..models import Product
from .concurrency import conditional_update


class StockError(Exception):
    """Raised for stock operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class InsufficientStockError(StockError):
    pass


class ProductMissingError(StockError):
    pass


def _fresh_product_row(product_id: int):
    # Column query bypasses the identity map so callers see the committed counter
    return db.session.query(
        Product.id, Product.name, Product.current_stock, Product.selling_price, Product.is_deleted
    ).filter(Product.id == product_id).first()


def get_price(product_id: int) -> int:
    row = _fresh_product_row(product_id)
    if row is None or row.is_deleted:
        raise ProductMissingError(f"Product not found: {product_id}", details={"product_id": product_id})
    return row.selling_price


def get_stock(product_id: int) -> int:
    row = _fresh_product_row(product_id)
    if row is None:
        raise ProductMissingError(f"Product not found: {product_id}", details={"product_id": product_id})
    return row.current_stock


def load_products(product_ids: Iterable[int]) -> dict[int, Product]:
    """Fetch live (non-deleted) products keyed by id."""
    ids = list(product_ids)
    if not ids:
        return {}
    rows = db.session.query(Product).filter(
        Product.id.in_(ids),
        Product.is_deleted.is_(False),
    ).populate_existing().all()
    return {p.id: p for p in rows}


def adjust_stock(product_id: int, delta: int, *, floor_check: bool = True) -> None:
    """
    Atomically add delta to a product's stock.

    With floor_check, a decrement only applies when the result stays >= 0.
    Raises ProductMissingError / InsufficientStockError when no row changed.
    """
    if delta == 0:
        return

    criteria = [Product.id == product_id]
    if delta < 0 and floor_check:
        criteria.append(Product.current_stock >= -delta)

    rows = conditional_update(Product, criteria, {"current_stock": Product.current_stock + delta})
    if rows:
        return

    row = _fresh_product_row(product_id)
    if row is None:
        raise ProductMissingError(f"Product not found: {product_id}", details={"product_id": product_id})
    raise InsufficientStockError(
        f"Insufficient stock for {row.name}. Available: {row.current_stock}",
        details={
            "product_id": product_id,
            "product_name": row.name,
            "available": row.current_stock,
            "requested": -delta,
        },
    )


def reserve_lines(lines: Iterable[tuple[int, int]]) -> None:
    """Floor-checked decrement for every (product_id, quantity) pair."""
    for product_id, quantity in lines:
        adjust_stock(product_id, -quantity, floor_check=True)


def deduct_paid_lines(lines: Iterable[tuple[int, int]], *, order_id: int) -> None:
    """Decrement stock for a confirmed payment; shortfalls become backorders."""
    for product_id, quantity in lines:
        adjust_stock(product_id, -quantity, floor_check=False)
        remaining = get_stock(product_id)
        if remaining < 0:
            current_app.logger.warning(
                "Order %s oversold product %s: stock now %s", order_id, product_id, remaining
            )


def restore_lines(lines: Iterable[tuple[int, int]]) -> None:
    """Increment stock for every line; any missing product aborts the caller's transaction."""
    for product_id, quantity in lines:
        adjust_stock(product_id, quantity)
