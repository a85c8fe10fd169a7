import pytest

from orderdesk.extensions import db
from orderdesk.models import CustomerOrder, CustomerOrderItem, Product, Transaction
from orderdesk.services import order_service, stock_service
from orderdesk.services.order_service import InvalidItemError, InvalidTransitionError, OrderNotFoundError
from orderdesk.services.stock_service import InsufficientStockError
from orderdesk.validation import ValidationError


def _stock(product_id):
    return stock_service.get_stock(product_id)


def test_cod_order_takes_stock_at_placement(db_session, make_product, shipping):
    p1 = make_product(selling_price=10000, current_stock=10)
    p2 = make_product(selling_price=5000, current_stock=4)

    order = order_service.create_order(
        customer_id=None,
        items=[{"product_id": p1, "quantity": 3}, {"product_id": p2, "quantity": 1}],
        shipping=shipping,
        payment_method="cod",
    )

    assert order.total_amount == 35000
    assert order.stock_deducted is True
    assert order.order_status == "pending"
    assert order.payment_status == "pending"
    assert _stock(p1) == 7
    assert _stock(p2) == 3


def test_gateway_order_leaves_stock_untouched(db_session, make_product, shipping):
    p1 = make_product(selling_price=10000, current_stock=10)

    order = order_service.create_order(
        customer_id=None,
        items=[{"product_id": p1, "quantity": 2}],
        shipping=shipping,
        payment_method="vnpay",
    )

    assert order.stock_deducted is False
    assert _stock(p1) == 10


def test_total_uses_server_prices_and_snapshots_lines(db_session, make_product, shipping):
    p1 = make_product(selling_price=12000, current_stock=5)

    order = order_service.create_order(
        customer_id=None,
        items=[{"product_id": p1, "quantity": 2, "price": 1}],
        shipping=shipping,
        payment_method="cod",
    )
    order_id = order.id

    db.session.query(Product).filter_by(id=p1).update({"selling_price": 99000})
    db.session.commit()

    detail = order_service.get_order(order_id)
    assert detail["order"]["total_amount"] == 24000
    assert detail["items"][0]["price"] == 12000
    assert sum(i["subtotal"] for i in detail["items"]) == detail["order"]["total_amount"]


def test_duplicate_lines_are_merged(db_session, make_product, shipping):
    p1 = make_product(selling_price=10000, current_stock=10)

    order = order_service.create_order(
        customer_id=None,
        items=[{"product_id": p1, "quantity": 2}, {"product_id": p1, "quantity": 3}],
        shipping=shipping,
        payment_method="cod",
    )

    items = db.session.query(CustomerOrderItem).filter_by(order_id=order.id).all()
    assert len(items) == 1
    assert items[0].quantity == 5
    assert _stock(p1) == 5


def test_insufficient_stock_names_product_and_changes_nothing(db_session, make_product, shipping):
    p1 = make_product(selling_price=10000, current_stock=2, name="Green Tea")

    with pytest.raises(InsufficientStockError) as exc:
        order_service.create_order(
            customer_id=None,
            items=[{"product_id": p1, "quantity": 3}],
            shipping=shipping,
            payment_method="cod",
        )

    assert "Green Tea" in str(exc.value)
    assert exc.value.details["available"] == 2
    assert db.session.query(CustomerOrder).count() == 0
    assert _stock(p1) == 2


def test_unknown_product_is_invalid_item(db_session, make_product, shipping):
    make_product()
    with pytest.raises(InvalidItemError):
        order_service.create_order(
            customer_id=None,
            items=[{"product_id": 9999, "quantity": 1}],
            shipping=shipping,
            payment_method="cod",
        )


def test_cart_limits_and_shape(db_session, make_product, shipping):
    ids = [make_product(current_stock=5) for _ in range(11)]

    with pytest.raises(ValidationError, match="more than 10"):
        order_service.create_order(
            customer_id=None,
            items=[{"product_id": pid, "quantity": 1} for pid in ids],
            shipping=shipping,
            payment_method="cod",
        )

    with pytest.raises(ValidationError, match="empty"):
        order_service.create_order(customer_id=None, items=[], shipping=shipping, payment_method="cod")

    with pytest.raises(ValidationError):
        order_service.create_order(
            customer_id=None,
            items=[{"product_id": ids[0], "quantity": 0}],
            shipping=shipping,
            payment_method="cod",
        )


def test_missing_shipping_fields_rejected(db_session, make_product):
    p1 = make_product()
    with pytest.raises(ValidationError, match="recipient_phone"):
        order_service.create_order(
            customer_id=None,
            items=[{"product_id": p1, "quantity": 1}],
            shipping={"recipient_name": "A", "shipping_address": "Somewhere"},
            payment_method="cod",
        )


def test_gateway_minimum_amount(db_session, make_product, shipping):
    p1 = make_product(selling_price=5000, current_stock=10)
    with pytest.raises(ValidationError, match="Minimum order amount"):
        order_service.create_order(
            customer_id=None,
            items=[{"product_id": p1, "quantity": 1}],
            shipping=shipping,
            payment_method="vnpay",
        )


def test_customer_cannot_see_other_customers_order(db_session, make_product, shipping, customer):
    p1 = make_product()
    order = order_service.create_order(
        customer_id=None,
        items=[{"product_id": p1, "quantity": 1}],
        shipping=shipping,
        payment_method="cod",
    )

    with pytest.raises(OrderNotFoundError):
        order_service.get_order(order.id, customer_id=customer.id)
    with pytest.raises(OrderNotFoundError):
        order_service.cancel_order(order.id, customer_id=customer.id)


def test_list_customer_orders_paginates_newest_first(db_session, make_product, shipping, customer):
    p1 = make_product(current_stock=50)
    ids = []
    for _ in range(3):
        order = order_service.create_order(
            customer_id=customer.id,
            items=[{"product_id": p1, "quantity": 1}],
            shipping=shipping,
            payment_method="cod",
        )
        ids.append(order.id)

    page = order_service.list_customer_orders(customer.id, {}, page=1, limit=2)
    assert [o["id"] for o in page["items"]] == [ids[2], ids[1]]
    assert page["pagination"]["total_items"] == 3
    assert page["pagination"]["has_next_page"] is True
    assert page["items"][0]["item_count"] == 1


def test_admin_list_search_and_export(db_session, make_product, shipping):
    p1 = make_product(selling_price=20000, current_stock=50)
    first = order_service.create_order(
        customer_id=None,
        items=[{"product_id": p1, "quantity": 1}],
        shipping=shipping,
        payment_method="cod",
    )
    order_service.create_order(
        customer_id=None,
        items=[{"product_id": p1, "quantity": 3}],
        shipping={**shipping, "recipient_name": "Tran Thi B"},
        payment_method="cod",
    )

    by_name = order_service.list_all_orders({"search": "tran"})
    assert [o["recipient_name"] for o in by_name["items"]] == ["Tran Thi B"]

    by_id = order_service.list_all_orders({"search": first.display_id})
    assert [o["id"] for o in by_id["items"]] == [first.id]

    by_price = order_service.list_all_orders({"price_min": "30000", "sort_by": "total_amount", "sort_order": "asc"})
    assert [o["total_amount"] for o in by_price["items"]] == [60000]

    csv_text = order_service.export_orders_csv({})
    lines = csv_text.strip().splitlines()
    assert lines[0].startswith("display_id,order_date")
    assert len(lines) == 3


def test_admin_status_moves_one_step(db_session, make_product, shipping):
    p1 = make_product()
    order = order_service.create_order(
        customer_id=None,
        items=[{"product_id": p1, "quantity": 1}],
        shipping=shipping,
        payment_method="cod",
    )

    with pytest.raises(InvalidTransitionError):
        order_service.update_order(order.id, {"order_status": "delivered"})

    updated = order_service.update_order(order.id, {"order_status": "confirmed", "shipping_note": "Call first"})
    assert updated.order_status == "confirmed"
    assert updated.shipping_note == "Call first"


def test_admin_marks_cod_paid_books_payment_once(db_session, make_product, shipping):
    p1 = make_product(selling_price=15000, current_stock=5)
    order = order_service.create_order(
        customer_id=None,
        items=[{"product_id": p1, "quantity": 2}],
        shipping=shipping,
        payment_method="cod",
    )

    paid = order_service.update_order(order.id, {"payment_status": "paid"})
    assert paid.payment_status == "paid"
    # COD stock was already taken at placement
    assert _stock(p1) == 3

    entries = db.session.query(Transaction).filter_by(ref_id=order.id, category="customer_payment").all()
    assert len(entries) == 1
    assert entries[0].method == "cash"
    assert entries[0].amount == 30000


def test_refund_requires_prior_payment(db_session, make_product, shipping):
    p1 = make_product()
    order = order_service.create_order(
        customer_id=None,
        items=[{"product_id": p1, "quantity": 1}],
        shipping=shipping,
        payment_method="cod",
    )

    with pytest.raises(InvalidTransitionError, match="not paid"):
        order_service.update_order(order.id, {"payment_status": "refunded"})

    order_service.update_order(order.id, {"payment_status": "paid"})
    refunded = order_service.update_order(order.id, {"payment_status": "refunded"})
    assert refunded.payment_status == "refunded"
    assert db.session.query(Transaction).filter_by(ref_id=order.id, category="refund").count() == 1


def test_update_rejects_unknown_fields(db_session, make_product, shipping):
    p1 = make_product()
    order = order_service.create_order(
        customer_id=None,
        items=[{"product_id": p1, "quantity": 1}],
        shipping=shipping,
        payment_method="cod",
    )
    with pytest.raises(ValidationError, match="Field not allowed"):
        order_service.update_order(order.id, {"total_amount": 1})
