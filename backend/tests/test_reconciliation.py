import pytest
from datetime import timedelta

from orderdesk.extensions import db
from orderdesk.models import CustomerOrder, Transaction
from orderdesk.services import reconciliation_service, stock_service
from orderdesk.services.order_service import InvalidTransitionError
from orderdesk.services.stock_service import InsufficientStockError
from orderdesk.time_utils import utcnow


@pytest.fixture
def gateway_order(db_session, make_product, shipping):
    """Two-line gateway order: 3 x 10000 + 1 x 5000."""
    p1 = make_product(selling_price=10000, current_stock=10)
    p2 = make_product(selling_price=5000, current_stock=5)
    session = reconciliation_service.create_payment_session(
        customer_id=None,
        items=[{"product_id": p1, "quantity": 3}, {"product_id": p2, "quantity": 1}],
        shipping=shipping,
        client_ip="203.0.113.9",
    )
    return session, p1, p2


def _ledger_rows(order_id, category="customer_payment"):
    return db.session.query(Transaction).filter_by(
        ref_type="CustomerOrder", ref_id=order_id, category=category, is_deleted=False
    ).all()


def test_payment_session_sets_reference_and_expiry(gateway_order):
    session, p1, p2 = gateway_order
    order = db.session.get(CustomerOrder, session["order_id"])

    assert order.total_amount == 35000
    assert session["total_amount"] == 35000
    assert order.txn_ref == session["txn_ref"]
    assert order.payment_attempts == 1
    assert order.payment_expires_at - order.payment_url_created_at == timedelta(minutes=15)
    assert "vnp_Amount=3500000" in session["payment_url"]
    assert "vnp_SecureHash=" in session["payment_url"]
    assert stock_service.get_stock(p1) == 10
    assert stock_service.get_stock(p2) == 5


def test_notify_marks_paid_takes_stock_and_books_once(gateway_order, signed_params):
    session, p1, p2 = gateway_order

    reply = reconciliation_service.handle_notify(signed_params(session["txn_ref"], 35000))

    assert reply.code == "00"
    order = db.session.get(CustomerOrder, session["order_id"])
    db.session.refresh(order)
    assert order.payment_status == "paid"
    assert order.order_status == "confirmed"
    assert order.stock_deducted is True
    assert order.gateway_transaction_no == "14000001"
    assert order.gateway_response_code == "00"
    assert stock_service.get_stock(p1) == 7
    assert stock_service.get_stock(p2) == 4

    rows = _ledger_rows(order.id)
    assert len(rows) == 1
    assert rows[0].type == "inflow"
    assert rows[0].amount == 35000
    assert rows[0].method == "bank_transfer"
    assert rows[0].is_auto_generated is True


def test_duplicate_notify_is_already_confirmed(gateway_order, signed_params):
    session, p1, p2 = gateway_order
    params = signed_params(session["txn_ref"], 35000)

    first = reconciliation_service.handle_notify(params)
    second = reconciliation_service.handle_notify(params)
    third = reconciliation_service.handle_notify(params)

    assert first.code == "00"
    assert second.code == "02"
    assert third.code == "02"
    assert stock_service.get_stock(p1) == 7
    assert stock_service.get_stock(p2) == 4
    assert len(_ledger_rows(session["order_id"])) == 1


def test_amount_mismatch_changes_nothing(gateway_order, signed_params):
    session, p1, p2 = gateway_order

    reply = reconciliation_service.handle_notify(signed_params(session["txn_ref"], 30000))

    assert reply.code == "04"
    order = db.session.get(CustomerOrder, session["order_id"])
    db.session.refresh(order)
    assert order.payment_status == "pending"
    assert order.stock_deducted is False
    assert stock_service.get_stock(p1) == 10
    assert _ledger_rows(order.id) == []


def test_bad_signature_is_checksum_failure(gateway_order, signed_params):
    session, _, _ = gateway_order
    params = signed_params(session["txn_ref"], 35000)
    params["vnp_Amount"] = "100"

    reply = reconciliation_service.handle_notify(params)

    assert reply.code == "97"
    assert _ledger_rows(session["order_id"]) == []


def test_unsuccessful_payment_is_unknown_error(gateway_order, signed_params):
    session, p1, _ = gateway_order

    reply = reconciliation_service.handle_notify(signed_params(session["txn_ref"], 35000, response_code="24"))

    assert reply.code == "99"
    order = db.session.get(CustomerOrder, session["order_id"])
    db.session.refresh(order)
    assert order.payment_status == "pending"
    assert stock_service.get_stock(p1) == 10


def test_unknown_reference_is_order_not_found(db_session, signed_params):
    reply = reconciliation_service.handle_notify(signed_params("999999-01", 35000))
    assert reply.code == "01"
    assert reply.to_dict() == {"RspCode": "01", "Message": "Order not found"}


def test_notify_for_cancelled_order_does_not_pay(gateway_order, signed_params):
    session, p1, _ = gateway_order
    from orderdesk.services import order_service
    order_service.cancel_order(session["order_id"])

    reply = reconciliation_service.handle_notify(signed_params(session["txn_ref"], 35000))

    assert reply.code == "02"
    order = db.session.get(CustomerOrder, session["order_id"])
    db.session.refresh(order)
    assert order.order_status == "cancelled"
    assert order.payment_status == "failed"
    assert stock_service.get_stock(p1) == 10
    assert _ledger_rows(order.id) == []


def test_return_is_read_only(gateway_order, signed_params):
    session, p1, _ = gateway_order
    params = signed_params(session["txn_ref"], 35000)

    result = reconciliation_service.handle_return(params)

    assert result["success"] is True
    assert result["code"] == "00"
    assert result["data"]["payment_status"] == "pending"
    assert result["data"]["order_status"] == "pending"
    assert stock_service.get_stock(p1) == 10
    assert _ledger_rows(session["order_id"]) == []

    reconciliation_service.handle_notify(params)
    after = reconciliation_service.handle_return(params)
    assert after["data"]["payment_status"] == "paid"


def test_return_reports_failures_without_raising(gateway_order, signed_params):
    session, _, _ = gateway_order

    tampered = signed_params(session["txn_ref"], 35000)
    tampered["vnp_TxnRef"] = "other"
    assert reconciliation_service.handle_return(tampered) == {
        "success": False, "message": "Verification failed", "code": "97"
    }

    cancelled = reconciliation_service.handle_return(signed_params(session["txn_ref"], 35000, response_code="24"))
    assert cancelled["success"] is False
    assert cancelled["message"] == "Customer cancelled transaction"

    missing = reconciliation_service.handle_return(signed_params("000000-09", 35000))
    assert missing["code"] == "01"


def test_retry_payment_rotates_reference(gateway_order, signed_params):
    session, p1, _ = gateway_order

    retried = reconciliation_service.retry_payment(session["order_id"], client_ip="203.0.113.9")

    assert retried["txn_ref"] != session["txn_ref"]
    order = db.session.get(CustomerOrder, session["order_id"])
    db.session.refresh(order)
    assert order.payment_attempts == 2
    assert order.txn_ref == retried["txn_ref"]

    # Old session no longer matches an order
    assert reconciliation_service.handle_notify(signed_params(session["txn_ref"], 35000)).code == "01"
    assert reconciliation_service.handle_notify(signed_params(retried["txn_ref"], 35000)).code == "00"

    with pytest.raises(InvalidTransitionError, match="already paid"):
        reconciliation_service.retry_payment(session["order_id"], client_ip="203.0.113.9")


def test_retry_payment_rechecks_stock(gateway_order):
    session, p1, _ = gateway_order
    stock_service.adjust_stock(p1, -9)
    db.session.commit()

    with pytest.raises(InsufficientStockError):
        reconciliation_service.retry_payment(session["order_id"], client_ip="203.0.113.9")


def test_paid_deduction_may_backorder(gateway_order, signed_params):
    session, p1, _ = gateway_order
    stock_service.adjust_stock(p1, -9)
    db.session.commit()

    reply = reconciliation_service.handle_notify(signed_params(session["txn_ref"], 35000))

    assert reply.code == "00"
    assert stock_service.get_stock(p1) == -2


def test_check_payment_status(gateway_order, signed_params):
    session, _, _ = gateway_order
    reconciliation_service.handle_notify(signed_params(session["txn_ref"], 35000))

    status = reconciliation_service.check_payment_status(session["order_id"])
    assert status["payment_method"] == "vnpay"
    assert status["payment_status"] == "paid"
    assert status["order_status"] == "confirmed"
    assert status["response_code"] == "00"
    assert status["completed_at"] is not None


def test_expire_stale_sessions(gateway_order, signed_params):
    session, p1, _ = gateway_order

    assert reconciliation_service.expire_stale_sessions() == 0
    expired = reconciliation_service.expire_stale_sessions(now=utcnow() + timedelta(minutes=16))
    assert expired == 1

    order = db.session.get(CustomerOrder, session["order_id"])
    db.session.refresh(order)
    assert order.payment_status == "expired"
    assert order.order_status == "cancelled"
    assert stock_service.get_stock(p1) == 10

    assert reconciliation_service.handle_notify(signed_params(session["txn_ref"], 35000)).code == "02"


def test_fractional_wire_amount_is_invalid_amount(gateway_order, signed_params):
    session, p1, _ = gateway_order

    reply = reconciliation_service.handle_notify(
        signed_params(session["txn_ref"], 35000, vnp_Amount="3500099")
    )

    assert reply.code == "04"
    order = db.session.get(CustomerOrder, session["order_id"])
    db.session.refresh(order)
    assert order.payment_status == "pending"
    assert stock_service.get_stock(p1) == 10
    assert _ledger_rows(order.id) == []


def test_unpaid_gateway_order_cannot_ship(gateway_order, signed_params):
    session, _, _ = gateway_order
    from orderdesk.services import order_service
    order_service.update_order(session["order_id"], {"order_status": "confirmed"})

    with pytest.raises(InvalidTransitionError, match="paid before shipping"):
        order_service.update_order(session["order_id"], {"order_status": "shipped"})

    reply = reconciliation_service.handle_notify(signed_params(session["txn_ref"], 35000))

    assert reply.code == "00"
    order = db.session.get(CustomerOrder, session["order_id"])
    db.session.refresh(order)
    assert order.order_status == "confirmed"
    assert order.payment_status == "paid"

    shipped = order_service.update_order(session["order_id"], {"order_status": "shipped"})
    assert shipped.order_status == "shipped"


def test_notify_never_moves_order_status_backwards(gateway_order, signed_params):
    session, _, _ = gateway_order
    db.session.query(CustomerOrder).filter_by(id=session["order_id"]).update({"order_status": "shipped"})
    db.session.commit()

    reply = reconciliation_service.handle_notify(signed_params(session["txn_ref"], 35000))

    assert reply.code == "00"
    order = db.session.get(CustomerOrder, session["order_id"])
    db.session.refresh(order)
    assert order.order_status == "shipped"
    assert order.payment_status == "paid"


def test_retry_payment_rejects_deleted_product(gateway_order):
    session, p1, _ = gateway_order
    from orderdesk.models import Product
    from orderdesk.services.stock_service import ProductMissingError
    db.session.query(Product).filter_by(id=p1).update({"is_deleted": True})
    db.session.commit()

    with pytest.raises(ProductMissingError):
        reconciliation_service.retry_payment(session["order_id"], client_ip="203.0.113.9")

    order = db.session.get(CustomerOrder, session["order_id"])
    db.session.refresh(order)
    assert order.payment_attempts == 1
    assert order.txn_ref == session["txn_ref"]
