from __future__ import annotations

from ..extensions import db
from orderdesk.time_utils import to_utc_z


ORDER_PENDING = "pending"
ORDER_CONFIRMED = "confirmed"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"

ORDER_STATUSES = [ORDER_PENDING, ORDER_CONFIRMED, ORDER_SHIPPED, ORDER_DELIVERED, ORDER_CANCELLED]
CANCELLABLE_STATUSES = [ORDER_PENDING, ORDER_CONFIRMED]

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_REFUNDED = "refunded"
PAYMENT_FAILED = "failed"
PAYMENT_EXPIRED = "expired"

PAYMENT_STATUSES = [PAYMENT_PENDING, PAYMENT_PAID, PAYMENT_REFUNDED, PAYMENT_FAILED, PAYMENT_EXPIRED]

METHOD_COD = "cod"
METHOD_VNPAY = "vnpay"

PAYMENT_METHODS = [METHOD_COD, METHOD_VNPAY]
GATEWAY_METHODS = [METHOD_VNPAY]


class CustomerOrder(db.Model):
    """
    Customer order with two independent status axes.

    order_status:   pending -> confirmed -> shipped -> delivered, or -> cancelled
    payment_status: pending -> paid -> refunded, pending -> failed | expired

    total_amount is fixed at creation from server-side prices and never
    recomputed. stock_deducted flips false -> true once (COD at creation,
    gateway orders on confirmed payment) and back only on cancellation.
    Every transition is written with a conditional UPDATE keyed on the
    current status values; see order_service and reconciliation_service.
    """
    __tablename__ = "customer_orders"
    __table_args__ = (
        db.Index("ix_customer_orders_customer_date", "customer_id", "order_date"),
        db.Index("ix_customer_orders_customer_status", "customer_id", "order_status"),
        db.Index("ix_customer_orders_payment", "payment_status", "payment_method"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    order_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    order_status = db.Column(db.String(16), nullable=False, default=ORDER_PENDING, index=True)
    payment_method = db.Column(db.String(16), nullable=False, default=METHOD_COD)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING, index=True)
    total_amount = db.Column(db.Integer, nullable=False)

    # Shipping details
    recipient_name = db.Column(db.String(100), nullable=False)
    recipient_email = db.Column(db.String(100), nullable=True)
    recipient_phone = db.Column(db.String(50), nullable=False)
    shipping_address = db.Column(db.String(500), nullable=False)
    shipping_note = db.Column(db.String(500), nullable=True)

    # Gateway correlation and result
    txn_ref = db.Column(db.String(64), nullable=True, unique=True)
    gateway_transaction_no = db.Column(db.String(64), nullable=True)
    gateway_bank_code = db.Column(db.String(32), nullable=True)
    gateway_bank_tran_no = db.Column(db.String(64), nullable=True)
    gateway_card_type = db.Column(db.String(32), nullable=True)
    gateway_response_code = db.Column(db.String(8), nullable=True)

    payment_url_created_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    stock_deducted = db.Column(db.Boolean, nullable=False, default=False)
    payment_attempts = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def display_id(self) -> str:
        return f"ORD-{self.id:06d}"

    def is_awaiting_payment(self) -> bool:
        return (
            self.payment_method in GATEWAY_METHODS
            and self.payment_status == PAYMENT_PENDING
            and self.order_status == ORDER_PENDING
        )

    def is_payment_expired(self, now) -> bool:
        if self.payment_expires_at is None:
            return False
        return now > self.payment_expires_at

    def can_be_cancelled(self) -> bool:
        return self.order_status in CANCELLABLE_STATUSES

    def to_dict(self, include_gateway: bool = True) -> dict:
        data = {
            "id": self.id,
            "display_id": self.display_id,
            "customer_id": self.customer_id,
            "order_date": to_utc_z(self.order_date),
            "order_status": self.order_status,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "total_amount": self.total_amount,
            "recipient_name": self.recipient_name,
            "recipient_email": self.recipient_email,
            "recipient_phone": self.recipient_phone,
            "shipping_address": self.shipping_address,
            "shipping_note": self.shipping_note,
            "stock_deducted": self.stock_deducted,
            "payment_attempts": self.payment_attempts,
            "payment_expires_at": to_utc_z(self.payment_expires_at),
            "payment_completed_at": to_utc_z(self.payment_completed_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_gateway:
            data.update({
                "txn_ref": self.txn_ref,
                "gateway_transaction_no": self.gateway_transaction_no,
                "gateway_bank_code": self.gateway_bank_code,
                "gateway_response_code": self.gateway_response_code,
            })
        return data


class CustomerOrderItem(db.Model):
    """Order line. price is a snapshot of selling_price at order time."""
    __tablename__ = "customer_order_items"
    __table_args__ = (
        db.UniqueConstraint("order_id", "product_id", name="uq_order_items_order_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("customer_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Integer, nullable=False)
    discount = db.Column(db.Integer, nullable=False, default=0)  # percentage 0-100

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("CustomerOrder", backref=db.backref("items", lazy=True, order_by="CustomerOrderItem.id"))
    product = db.relationship("Product")

    @property
    def subtotal(self) -> int:
        return self.price * self.quantity * (100 - self.discount) // 100

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "price": self.price,
            "discount": self.discount,
            "subtotal": self.subtotal,
        }
