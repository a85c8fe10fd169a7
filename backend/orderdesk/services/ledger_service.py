# Overview: Service-layer operations for the financial ledger; encapsulates business logic and database work.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import ClassVar, Optional, Union

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Transaction, CustomerOrder, CustomerOrderItem
from ..models.ledger import (
    TYPE_INFLOW,
    TYPE_OUTFLOW,
    REF_ORDER,
    REF_SUPPLY_ORDER,
    REF_NONE,
    METHODS,
)
from ..validation import ValidationError, parse_amount
from orderdesk.time_utils import utcnow, parse_iso_datetime
from .concurrency import conditional_update, run_with_retry
"""
Ledger Invariants (authoritative)

- Append-only record of money movements; rows are never updated except for
  the soft-delete columns of manual rows.
- System rows (customer_payment, refund, supplier_payment) are always linked
  to a source document and are written inside the same DB transaction as the
  state change that caused them.
- At most one live row per (ref_type, ref_id, category) for linked rows,
  enforced by a partial unique index. A duplicate append returns the
  existing row.
- Every committed ledger write marks the session so the summary cache is
  invalidated after commit (see summary_cache.install_session_hooks).
"""


INFLOW_CATEGORIES = ["customer_payment", "other_income"]
OUTFLOW_CATEGORIES = [
    "refund",
    "supplier_payment",
    "shipping_cost",
    "packaging",
    "utilities",
    "rent",
    "other_expense",
]
SYSTEM_ONLY_CATEGORIES = ["customer_payment", "refund", "supplier_payment"]
MANUAL_CATEGORIES = [
    "other_income",
    "shipping_cost",
    "packaging",
    "utilities",
    "rent",
    "other_expense",
]
ALL_CATEGORIES = INFLOW_CATEGORIES + OUTFLOW_CATEGORIES

CATEGORY_DISPLAY_NAMES = {
    "customer_payment": "Customer Payment",
    "other_income": "Other Income",
    "refund": "Refund",
    "supplier_payment": "Supplier Payment",
    "shipping_cost": "Shipping Cost",
    "packaging": "Packaging",
    "utilities": "Utilities",
    "rent": "Rent",
    "other_expense": "Other Expense",
}

METHOD_DISPLAY_NAMES = {
    "cash": "Cash",
    "credit_card": "Credit Card",
    "bank_transfer": "Bank Transfer",
    "other": "Other",
}

# Order payment method -> ledger method
ORDER_METHOD_MAP = {
    "cod": "cash",
    "vnpay": "bank_transfer",
}

SESSION_DIRTY_KEY = "ledger_dirty"


class LedgerError(Exception):
    """Raised for ledger operation errors."""
    pass


class InvalidCategoryError(LedgerError):
    pass


class LedgerForbiddenError(LedgerError):
    pass


class LedgerNotFoundError(LedgerError):
    pass


class AlreadyDeletedError(LedgerError):
    pass


# =============================================================================
# SOURCE REFERENCES
# =============================================================================

@dataclass(frozen=True)
class NoRef:
    ref_type: ClassVar[str] = REF_NONE

    @property
    def ref_id(self) -> None:
        return None


@dataclass(frozen=True)
class OrderRef:
    order_id: int
    ref_type: ClassVar[str] = REF_ORDER

    @property
    def ref_id(self) -> int:
        return self.order_id


@dataclass(frozen=True)
class SupplyOrderRef:
    supply_order_id: int
    ref_type: ClassVar[str] = REF_SUPPLY_ORDER

    @property
    def ref_id(self) -> int:
        return self.supply_order_id


LinkedRef = Union[OrderRef, SupplyOrderRef]
LedgerRef = Union[NoRef, OrderRef, SupplyOrderRef]


def ref_from_columns(ref_type: str, ref_id: int | None) -> LedgerRef:
    if ref_type == REF_ORDER and ref_id is not None:
        return OrderRef(ref_id)
    if ref_type == REF_SUPPLY_ORDER and ref_id is not None:
        return SupplyOrderRef(ref_id)
    return NoRef()


def format_reference(ref: LedgerRef) -> str | None:
    if isinstance(ref, OrderRef):
        return f"ORD-{ref.order_id:06d}"
    if isinstance(ref, SupplyOrderRef):
        return f"PO-{ref.supply_order_id:06d}"
    return None


def category_type(category: str) -> str | None:
    if category in INFLOW_CATEGORIES:
        return TYPE_INFLOW
    if category in OUTFLOW_CATEGORIES:
        return TYPE_OUTFLOW
    return None


def _mark_dirty() -> None:
    db.session.info[SESSION_DIRTY_KEY] = True


# =============================================================================
# SYSTEM ENTRIES (idempotent)
# =============================================================================

def append_system_entry(
    *,
    ref: LinkedRef,
    category: str,
    amount: int,
    method: str,
    description: str,
    occurred_at: Optional[datetime] = None,
) -> tuple[Transaction, bool]:
    """
    Append an auto-generated entry for a business event, at most once.

    Does not commit. The insert runs inside a SAVEPOINT; if another writer
    already holds the (ref_type, ref_id, category) slot the unique index
    rejects ours, the savepoint rolls back, and the existing row is returned.

    Returns (entry, created).
    """
    if category not in SYSTEM_ONLY_CATEGORIES:
        raise InvalidCategoryError(f"Category '{category}' is not a system category")
    if amount <= 0:
        raise LedgerError("Amount must be positive")

    existing = _find_live_entry(ref, category)
    if existing is not None:
        return existing, False

    entry = Transaction(
        date=occurred_at or utcnow(),
        type=category_type(category),
        category=category,
        amount=amount,
        method=method if method in METHODS else "other",
        ref_type=ref.ref_type,
        ref_id=ref.ref_id,
        description=description,
        is_auto_generated=True,
        created_by=None,
    )
    try:
        with db.session.begin_nested():
            db.session.add(entry)
            db.session.flush()
    except IntegrityError:
        existing = _find_live_entry(ref, category)
        if existing is None:
            raise
        return existing, False

    _mark_dirty()
    return entry, True


def _find_live_entry(ref: LinkedRef, category: str) -> Transaction | None:
    return db.session.query(Transaction).filter(
        Transaction.ref_type == ref.ref_type,
        Transaction.ref_id == ref.ref_id,
        Transaction.category == category,
        Transaction.is_deleted.is_(False),
    ).first()


def record_customer_payment(order: CustomerOrder) -> tuple[Transaction, bool]:
    return append_system_entry(
        ref=OrderRef(order.id),
        category="customer_payment",
        amount=order.total_amount,
        method=ORDER_METHOD_MAP.get(order.payment_method, "other"),
        description=f"Payment for Order #{order.display_id}",
    )


def record_refund(order: CustomerOrder) -> tuple[Transaction, bool]:
    return append_system_entry(
        ref=OrderRef(order.id),
        category="refund",
        amount=order.total_amount,
        method="bank_transfer",
        description=f"Refund for Order #{order.display_id}",
    )


def record_supplier_payment(supply_order_id: int, amount: int) -> Transaction | None:
    """
    Record the outflow for a received supply order.

    Amounts <= 0 are skipped (nothing received). Commits.
    """
    if amount <= 0:
        return None

    def _op():
        entry, _ = append_system_entry(
            ref=SupplyOrderRef(supply_order_id),
            category="supplier_payment",
            amount=amount,
            method="bank_transfer",
            description=f"Payment for PO #{supply_order_id:06d}",
        )
        db.session.commit()
        return entry

    return run_with_retry(_op)


# =============================================================================
# MANUAL ENTRIES
# =============================================================================

def create_manual(
    *,
    date: str | datetime | None,
    type: str | None,
    category: str | None,
    amount,
    method: str | None,
    description: str | None = None,
    author_id: int | None = None,
) -> Transaction:
    """
    Create an admin-authored entry in a manual category.

    Raises:
        ValidationError: missing fields, bad amount, bad date, bad method
        InvalidCategoryError: system-only category or category/type mismatch
    """
    if not date or not type or not category or amount is None or not method:
        raise ValidationError("Missing required fields")

    if type not in (TYPE_INFLOW, TYPE_OUTFLOW):
        raise ValidationError("Type must be inflow or outflow")

    if method not in METHODS:
        raise ValidationError("Invalid payment method")

    amount_value = parse_amount(amount)

    if category in SYSTEM_ONLY_CATEGORIES:
        raise InvalidCategoryError(
            f"Category '{category}' can only be created automatically by the system"
        )
    if category not in MANUAL_CATEGORIES:
        raise InvalidCategoryError(f"Unknown category '{category}'")
    if category_type(category) != type:
        raise InvalidCategoryError(f"Category '{category}' is not valid for {type} transactions")

    if isinstance(date, datetime):
        entry_date = date
    else:
        try:
            entry_date = parse_iso_datetime(date)
        except ValueError:
            raise ValidationError("Invalid date format")
        if entry_date is None:
            raise ValidationError("Invalid date format")

    text = (description or "").strip()
    if len(text) > 500:
        raise ValidationError("description exceeds max length 500")

    entry = Transaction(
        date=entry_date,
        type=type,
        category=category,
        amount=amount_value,
        method=method,
        ref_type=REF_NONE,
        ref_id=None,
        description=text,
        is_auto_generated=False,
        created_by=author_id,
    )
    db.session.add(entry)
    _mark_dirty()
    db.session.commit()
    return entry


def soft_delete(transaction_id: int, author_id: int | None = None) -> Transaction:
    """
    Soft delete a manual entry.

    The UPDATE only matches live, manual rows; on a miss the row is re-read
    to report why.
    """
    def _op():
        rows = conditional_update(
            Transaction,
            [
                Transaction.id == transaction_id,
                Transaction.is_deleted.is_(False),
                Transaction.is_auto_generated.is_(False),
            ],
            {
                "is_deleted": True,
                "deleted_at": utcnow(),
                "deleted_by": author_id,
            },
        )
        if rows == 0:
            db.session.rollback()
            entry = db.session.get(Transaction, transaction_id)
            if entry is None:
                raise LedgerNotFoundError("Transaction not found")
            if entry.is_deleted:
                raise AlreadyDeletedError("Transaction is already deleted")
            raise LedgerForbiddenError(
                "Auto-generated transactions cannot be deleted. They are linked to orders."
            )

        _mark_dirty()
        db.session.commit()
        return db.session.get(Transaction, transaction_id)

    return run_with_retry(_op)


# =============================================================================
# READS
# =============================================================================

def list_transactions(
    *,
    type: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    """
    Paginated live entries, newest first.

    date_to covers the whole named day when given as a bare date.
    """
    page = max(1, page)
    limit = max(1, min(limit, 50))

    q = db.session.query(Transaction).filter(Transaction.is_deleted.is_(False))

    if type in (TYPE_INFLOW, TYPE_OUTFLOW):
        q = q.filter(Transaction.type == type)

    try:
        start_dt = parse_iso_datetime(date_from)
        end_dt = parse_iso_datetime(date_to)
    except ValueError:
        raise ValidationError("dateFrom and dateTo must be ISO-8601 dates")

    if start_dt is not None:
        q = q.filter(Transaction.date >= start_dt)
    if end_dt is not None:
        if len(date_to.strip()) == 10:
            end_dt = end_dt + timedelta(days=1) - timedelta(microseconds=1)
        q = q.filter(Transaction.date <= end_dt)

    total_items = q.count()
    rows = (
        q.order_by(Transaction.date.desc(), Transaction.created_at.desc(), Transaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    total_pages = (total_items + limit - 1) // limit

    return {
        "items": [present(row) for row in rows],
        "pagination": {
            "current_page": page,
            "per_page": limit,
            "total_items": total_items,
            "total_pages": total_pages,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        },
    }


def present(entry: Transaction) -> dict:
    data = entry.to_dict()
    data["category_display"] = CATEGORY_DISPLAY_NAMES.get(entry.category, entry.category)
    data["reference"] = format_reference(ref_from_columns(entry.ref_type, entry.ref_id))
    return data


def manual_categories(type: str | None = None):
    def _options(categories):
        return [{"value": c, "label": CATEGORY_DISPLAY_NAMES[c]} for c in categories]

    inflow = [c for c in MANUAL_CATEGORIES if c in INFLOW_CATEGORIES]
    outflow = [c for c in MANUAL_CATEGORIES if c in OUTFLOW_CATEGORIES]
    if type == TYPE_INFLOW:
        return _options(inflow)
    if type == TYPE_OUTFLOW:
        return _options(outflow)
    return {"inflow": _options(inflow), "outflow": _options(outflow)}


def payment_methods() -> list[dict]:
    return [{"value": m, "label": METHOD_DISPLAY_NAMES[m]} for m in METHODS]


def order_preview(order_id: int) -> dict:
    order = db.session.get(CustomerOrder, order_id)
    if order is None:
        raise LedgerNotFoundError("Order not found")
    item_count = db.session.query(CustomerOrderItem).filter_by(order_id=order_id).count()
    return {
        "id": order.id,
        "display_id": order.display_id,
        "recipient_name": order.recipient_name,
        "order_date": order.to_dict()["order_date"],
        "order_status": order.order_status,
        "payment_status": order.payment_status,
        "total_amount": order.total_amount,
        "item_count": item_count,
    }
