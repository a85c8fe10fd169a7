from __future__ import annotations

from ..extensions import db
from orderdesk.time_utils import to_utc_z


class Product(db.Model):
    """
    Catalog product, as seen by the order core.

    Only selling_price and current_stock matter here. current_stock is a
    counter mutated exclusively through stock_service (atomic conditional
    UPDATEs); nothing else may assign it.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_deleted_name", "is_deleted", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)

    # Whole currency units (VND has no minor unit)
    selling_price = db.Column(db.Integer, nullable=False)
    current_stock = db.Column(db.Integer, nullable=False, default=0)

    is_deleted = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.current_stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "selling_price": self.selling_price,
            "current_stock": self.current_stock,
            "is_deleted": self.is_deleted,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Customer(db.Model):
    """
    Internal customer record resolved from the caller's identity.

    external_id is the identity provider's subject id. Bearer tokens are
    stored as SHA-256 hashes only.
    """
    __tablename__ = "customers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    external_id = db.Column(db.String(128), nullable=False, unique=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(100), nullable=True)
    token_hash = db.Column(db.String(64), nullable=True, unique=True, index=True)
    is_admin = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Customer id={self.id} external_id={self.external_id!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "name": self.name,
            "email": self.email,
            "is_admin": self.is_admin,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
