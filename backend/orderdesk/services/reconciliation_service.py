# Overview: Service-layer payment reconciliation; drives gateway orders from pending to paid exactly once.

"""
Payment reconciliation

Two entry points race on the same order:

- handle_notify (server-to-server) is the only writer. It answers every
  input with a stable reply so the gateway stops retrying, and it never
  raises.
- handle_return (browser redirect) re-verifies and reports. It never writes.

The paid transition is one conditional UPDATE keyed on
payment_status <> 'paid' AND order_status <> 'cancelled'. Stock deduction is
a second conditional UPDATE on stock_deducted = false in the same
transaction, and the ledger row goes through the idempotent append. Only
the caller whose UPDATE matched continues; everyone else sees
AlreadyConfirmed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from flask import current_app
from sqlalchemy import case

from ..extensions import db
from ..models import CustomerOrder
from ..models.orders import (
    ORDER_PENDING,
    ORDER_CONFIRMED,
    ORDER_CANCELLED,
    PAYMENT_PENDING,
    PAYMENT_PAID,
    PAYMENT_EXPIRED,
    GATEWAY_METHODS,
    METHOD_VNPAY,
)
from ..validation import ValidationError
from orderdesk.time_utils import utcnow, to_utc_z
from . import ledger_service, order_service, stock_service
from .concurrency import conditional_update, run_with_retry
from .gateway import PaymentGatewayAdapter, get_gateway, get_response_message
from .order_service import OrderError, OrderNotFoundError, InvalidTransitionError


class PaymentError(OrderError):
    """Raised for payment session errors."""
    pass


@dataclass(frozen=True)
class NotifyReply:
    code: str
    message: str

    def to_dict(self) -> dict:
        return {"RspCode": self.code, "Message": self.message}


SUCCESS = NotifyReply("00", "Confirm Success")
ORDER_NOT_FOUND = NotifyReply("01", "Order not found")
ALREADY_CONFIRMED = NotifyReply("02", "Order already confirmed")
INVALID_AMOUNT = NotifyReply("04", "Invalid amount")
CHECKSUM_FAILURE = NotifyReply("97", "Invalid Checksum")
UNKNOWN_ERROR = NotifyReply("99", "Unknown error")


def _order_info(order_id: int) -> str:
    return f"Thanh toan don hang {order_id}"


def _new_txn_ref(order_id: int, attempt: int) -> str:
    return f"{order_id:06d}-{attempt:02d}"


def _session_window():
    created_at = utcnow()
    minutes = current_app.config["PAYMENT_SESSION_MINUTES"]
    return created_at, created_at + timedelta(minutes=minutes)


# =============================================================================
# SESSION CREATION / RETRY
# =============================================================================

def create_payment_session(
    *,
    customer_id: int | None,
    items,
    shipping,
    client_ip: str,
    gateway: PaymentGatewayAdapter | None = None,
) -> dict:
    """
    Place a gateway order and open its first payment session.

    Stock is checked but not taken. Returns the redirect url with the order
    id, correlation reference and session expiry.
    """
    gateway = gateway or get_gateway()
    lines, contact = order_service.parse_order_request(items, shipping, METHOD_VNPAY)

    def _op():
        try:
            order = order_service.place_order_locked(
                customer_id=customer_id,
                lines=lines,
                contact=contact,
                payment_method=METHOD_VNPAY,
            )
            created_at, expires_at = _session_window()
            order.txn_ref = _new_txn_ref(order.id, 1)
            order.payment_attempts = 1
            order.payment_url_created_at = created_at
            order.payment_expires_at = expires_at
            db.session.commit()
        except (OrderError, stock_service.StockError, ValidationError):
            db.session.rollback()
            raise

        url = gateway.build_redirect(
            txn_ref=order.txn_ref,
            amount=order.total_amount,
            client_ip=client_ip,
            return_url=current_app.config["VNPAY_RETURN_URL"],
            order_info=_order_info(order.id),
            created_at=created_at,
            expires_at=expires_at,
        )
        current_app.logger.info("Payment session opened for order %s (%s)", order.id, order.txn_ref)
        return {
            "payment_url": url,
            "order_id": order.id,
            "txn_ref": order.txn_ref,
            "total_amount": order.total_amount,
            "expires_at": to_utc_z(expires_at),
        }

    return run_with_retry(_op)


def retry_payment(
    order_id: int,
    *,
    client_ip: str,
    customer_id: int | None = None,
    gateway: PaymentGatewayAdapter | None = None,
) -> dict:
    """
    Open a fresh payment session for an unpaid gateway order.

    Stock is re-checked because it was never reserved. The new reference
    replaces the old one, so a late notification for an abandoned session no
    longer matches any order.
    """
    gateway = gateway or get_gateway()

    def _op():
        order = order_service.load_order(order_id, customer_id)

        if order.payment_method not in GATEWAY_METHODS:
            raise PaymentError("This order does not use online payment")
        if order.payment_status == PAYMENT_PAID:
            raise InvalidTransitionError("Order is already paid")
        if order.order_status == ORDER_CANCELLED:
            raise InvalidTransitionError("Cannot retry payment for cancelled order")

        order_service.check_lines_in_stock(order.id)

        attempt = order.payment_attempts + 1
        txn_ref = _new_txn_ref(order.id, attempt)
        created_at, expires_at = _session_window()

        rows = conditional_update(
            CustomerOrder,
            [
                CustomerOrder.id == order.id,
                CustomerOrder.payment_attempts == order.payment_attempts,
                CustomerOrder.payment_status != PAYMENT_PAID,
                CustomerOrder.order_status != ORDER_CANCELLED,
            ],
            {
                "txn_ref": txn_ref,
                "payment_attempts": attempt,
                "payment_status": PAYMENT_PENDING,
                "payment_url_created_at": created_at,
                "payment_expires_at": expires_at,
                "version_id": CustomerOrder.version_id + 1,
            },
        )
        if rows == 0:
            db.session.rollback()
            raise InvalidTransitionError("Order changed while opening a new payment session")
        db.session.commit()

        url = gateway.build_redirect(
            txn_ref=txn_ref,
            amount=order.total_amount,
            client_ip=client_ip,
            return_url=current_app.config["VNPAY_RETURN_URL"],
            order_info=_order_info(order_id),
            created_at=created_at,
            expires_at=expires_at,
        )
        current_app.logger.info("Payment retry %s for order %s (%s)", attempt, order_id, txn_ref)
        return {
            "payment_url": url,
            "order_id": order_id,
            "txn_ref": txn_ref,
            "total_amount": order.total_amount,
            "expires_at": to_utc_z(expires_at),
        }

    return run_with_retry(_op)


# =============================================================================
# NOTIFY (authoritative, mutating)
# =============================================================================

def _find_by_txn_ref(txn_ref: str | None) -> CustomerOrder | None:
    if not txn_ref:
        return None
    return (
        db.session.query(CustomerOrder)
        .filter(CustomerOrder.txn_ref == txn_ref)
        .populate_existing()
        .first()
    )


def _apply_payment(order: CustomerOrder, verification) -> NotifyReply:
    rows = conditional_update(
        CustomerOrder,
        [
            CustomerOrder.id == order.id,
            CustomerOrder.txn_ref == verification.txn_ref,
            CustomerOrder.payment_status != PAYMENT_PAID,
            CustomerOrder.order_status != ORDER_CANCELLED,
        ],
        {
            "payment_status": PAYMENT_PAID,
            # only a pending order is confirmed; later statuses are kept
            "order_status": case(
                (CustomerOrder.order_status == ORDER_PENDING, ORDER_CONFIRMED),
                else_=CustomerOrder.order_status,
            ),
            "gateway_response_code": verification.response_code,
            "gateway_transaction_no": verification.transaction_no,
            "gateway_bank_code": verification.bank_code,
            "gateway_bank_tran_no": verification.bank_tran_no,
            "gateway_card_type": verification.card_type,
            "payment_completed_at": utcnow(),
            "version_id": CustomerOrder.version_id + 1,
        },
    )
    if rows == 0:
        db.session.rollback()
        current = _find_by_txn_ref(verification.txn_ref)
        if current is not None and current.order_status == ORDER_CANCELLED:
            current_app.logger.warning(
                "Payment %s arrived for cancelled order %s; needs manual refund",
                verification.transaction_no, order.id,
            )
        return ALREADY_CONFIRMED

    took_stock = conditional_update(
        CustomerOrder,
        [CustomerOrder.id == order.id, CustomerOrder.stock_deducted.is_(False)],
        {"stock_deducted": True},
    )
    if took_stock:
        stock_service.deduct_paid_lines(order_service.order_lines(order.id), order_id=order.id)

    ledger_service.record_customer_payment(order)
    db.session.commit()

    current_app.logger.info(
        "Order %s paid via gateway (txn %s, stock taken=%s)",
        order.id, verification.transaction_no, bool(took_stock),
    )
    return SUCCESS


def handle_notify(params: dict, gateway: PaymentGatewayAdapter | None = None) -> NotifyReply:
    """
    Process a server-to-server payment notification.

    Checks run in a fixed order and the first failing one decides the reply:
    signature, success flag, order lookup, already paid, amount. Never raises.
    """
    try:
        gateway = gateway or get_gateway()
        verification = gateway.verify_inbound(params)
        if not verification.verified:
            current_app.logger.warning("Rejected notification with bad checksum (%s)", params.get("vnp_TxnRef"))
            return CHECKSUM_FAILURE
        if not verification.success:
            current_app.logger.info(
                "Unsuccessful payment notification for %s (code %s)",
                verification.txn_ref, verification.response_code,
            )
            return UNKNOWN_ERROR

        def _op():
            order = _find_by_txn_ref(verification.txn_ref)
            if order is None:
                return ORDER_NOT_FOUND
            if order.payment_status == PAYMENT_PAID:
                return ALREADY_CONFIRMED
            if verification.amount_minor != order.total_amount * 100:
                current_app.logger.warning(
                    "Amount mismatch for order %s: notified %s, expected %s",
                    order.id, verification.amount, order.total_amount,
                )
                return INVALID_AMOUNT
            return _apply_payment(order, verification)

        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Payment notification failed")
        return UNKNOWN_ERROR


# =============================================================================
# RETURN (read-only)
# =============================================================================

def handle_return(params: dict, gateway: PaymentGatewayAdapter | None = None) -> dict:
    """Report the outcome of a browser redirect. Never writes."""
    gateway = gateway or get_gateway()
    verification = gateway.verify_return(params)

    if not verification.verified:
        return {"success": False, "message": "Verification failed", "code": "97"}
    if not verification.success:
        return {
            "success": False,
            "message": get_response_message(verification.response_code),
            "code": verification.response_code,
        }

    order = _find_by_txn_ref(verification.txn_ref)
    if order is None:
        return {"success": False, "message": "Order not found", "code": "01"}

    return {
        "success": verification.response_code == "00",
        "message": get_response_message(verification.response_code),
        "code": verification.response_code,
        "data": {
            "order_id": order.id,
            "txn_ref": verification.txn_ref,
            "transaction_no": verification.transaction_no,
            "amount": verification.amount,
            "bank_code": verification.bank_code,
            "pay_date": verification.pay_date,
            "order_status": order.order_status,
            "payment_status": order.payment_status,
        },
    }


def check_payment_status(order_id: int, customer_id: int | None = None) -> dict:
    order = db.session.query(CustomerOrder).filter(CustomerOrder.id == order_id)
    if customer_id is not None:
        order = order.filter(CustomerOrder.customer_id == customer_id)
    order = order.populate_existing().first()
    if order is None:
        raise OrderNotFoundError("Order not found")
    return order_service.order_status_payload(order)


# =============================================================================
# EXPIRY SWEEP
# =============================================================================

def expire_stale_sessions(now=None) -> int:
    """
    Close gateway orders whose payment session lapsed without confirmation.

    payment pending -> expired, order pending -> cancelled. Stock was never
    taken for these orders, so nothing is restored. A notification that
    races the sweep loses on the paid-transition UPDATE.
    """
    now = now or utcnow()

    def _op():
        rows = conditional_update(
            CustomerOrder,
            [
                CustomerOrder.payment_method.in_(GATEWAY_METHODS),
                CustomerOrder.payment_status == PAYMENT_PENDING,
                CustomerOrder.order_status == ORDER_PENDING,
                CustomerOrder.stock_deducted.is_(False),
                CustomerOrder.payment_expires_at.isnot(None),
                CustomerOrder.payment_expires_at < now,
            ],
            {
                "payment_status": PAYMENT_EXPIRED,
                "order_status": ORDER_CANCELLED,
                "version_id": CustomerOrder.version_id + 1,
            },
        )
        db.session.commit()
        return rows

    expired = run_with_retry(_op)
    if expired:
        current_app.logger.info("Expired %s stale payment sessions", expired)
    return expired
