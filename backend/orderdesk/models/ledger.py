from __future__ import annotations

from ..extensions import db
from orderdesk.time_utils import to_utc_z


TYPE_INFLOW = "inflow"
TYPE_OUTFLOW = "outflow"
TRANSACTION_TYPES = [TYPE_INFLOW, TYPE_OUTFLOW]

REF_ORDER = "CustomerOrder"
REF_SUPPLY_ORDER = "SupplyOrder"
REF_NONE = "None"
REF_TYPES = [REF_ORDER, REF_SUPPLY_ORDER, REF_NONE]

METHODS = ["cash", "credit_card", "bank_transfer", "other"]


class Transaction(db.Model):
    """
    Financial ledger entry (money in or out).

    Append-only except for soft delete of manual rows. Auto-generated rows
    are linked to a source document through (ref_type, ref_id) and are never
    updated after insert.

    IDEMPOTENCY: uq_transactions_live_ref enforces at most one live row per
    (ref_type, ref_id, category) for linked rows. Concurrent appends for the
    same business event collide on this index instead of racing a
    read-then-insert check.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.Index("ix_transactions_deleted_date", "is_deleted", "date"),
        db.Index("ix_transactions_type_date", "type", "date"),
        db.Index("ix_transactions_category_date", "category", "date"),
        db.Index("ix_transactions_ref", "ref_type", "ref_id"),
        db.Index(
            "uq_transactions_live_ref",
            "ref_type",
            "ref_id",
            "category",
            unique=True,
            sqlite_where=db.text("is_deleted = 0 AND ref_type != 'None'"),
            postgresql_where=db.text("is_deleted = false AND ref_type <> 'None'"),
        ),
        db.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Business time (UTC-naive); created_at is system time
    date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    type = db.Column(db.String(16), nullable=False)
    category = db.Column(db.String(32), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(16), nullable=False, default="other")

    ref_type = db.Column(db.String(16), nullable=False, default=REF_NONE)
    ref_id = db.Column(db.Integer, nullable=True)

    description = db.Column(db.String(500), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)
    is_auto_generated = db.Column(db.Boolean, nullable=False, default=False)

    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deleted_by = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Transaction id={self.id} {self.type}/{self.category} amount={self.amount}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": to_utc_z(self.date),
            "type": self.type,
            "category": self.category,
            "amount": self.amount,
            "method": self.method,
            "ref_type": self.ref_type,
            "ref_id": self.ref_id,
            "description": self.description,
            "created_by": self.created_by,
            "is_auto_generated": self.is_auto_generated,
            "is_deleted": self.is_deleted,
            "deleted_at": to_utc_z(self.deleted_at),
            "deleted_by": self.deleted_by,
            "created_at": to_utc_z(self.created_at),
        }
