"""
Concurrency tests against a file-backed SQLite database.

Each worker thread runs in its own app context (and so its own session and
connection); correctness must come from the conditional UPDATEs and the
ledger's unique index, not from in-process locking.
"""

import os
import tempfile
import threading
import unittest

from orderdesk import create_app
from orderdesk.extensions import db
from orderdesk.models import Product, CustomerOrder, Transaction
from orderdesk.services import order_service, reconciliation_service, stock_service
from orderdesk.services.gateway import get_gateway
from orderdesk.services.order_service import InvalidTransitionError
from orderdesk.validation import ConflictError


SHIPPING = {
    "recipient_name": "Concurrent Buyer",
    "recipient_phone": "0900000000",
    "shipping_address": "1 Test Street",
}


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30}},
            "VNPAY_TMN_CODE": "TESTTMN1",
            "VNPAY_HASH_SECRET": "test-hash-secret",
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            product = Product(sku="CONCUR-1", name="Concurrent Product", selling_price=10000, current_stock=10)
            db.session.add(product)
            db.session.commit()
            self.product_id = product.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_threads(self, target, count):
        threads = [threading.Thread(target=target) for _ in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    def test_duplicate_notifications_apply_once(self):
        with self.app.app_context():
            session = reconciliation_service.create_payment_session(
                customer_id=None,
                items=[{"product_id": self.product_id, "quantity": 3}],
                shipping=SHIPPING,
                client_ip="127.0.0.1",
            )
            gateway = get_gateway()
            params = {
                "vnp_TmnCode": "TESTTMN1",
                "vnp_Amount": str(30000 * 100),
                "vnp_TxnRef": session["txn_ref"],
                "vnp_ResponseCode": "00",
                "vnp_TransactionStatus": "00",
                "vnp_TransactionNo": "14000099",
            }
            params["vnp_SecureHash"] = gateway.sign_params(params)
            order_id = session["order_id"]

        replies = []
        lock = threading.Lock()

        def worker():
            with self.app.app_context():
                try:
                    reply = reconciliation_service.handle_notify(dict(params))
                    with lock:
                        replies.append(reply.code)
                finally:
                    db.session.remove()

        self._run_threads(worker, 8)

        self.assertEqual(len(replies), 8)
        self.assertTrue(set(replies) <= {"00", "02", "99"}, replies)
        self.assertEqual(replies.count("00"), 1, replies)

        with self.app.app_context():
            order = db.session.get(CustomerOrder, order_id)
            self.assertEqual(order.payment_status, "paid")
            self.assertTrue(order.stock_deducted)
            self.assertEqual(stock_service.get_stock(self.product_id), 7)
            payments = db.session.query(Transaction).filter_by(
                ref_id=order_id, category="customer_payment", is_deleted=False
            ).count()
            self.assertEqual(payments, 1)

    def test_concurrent_cod_orders_never_oversell(self):
        placed = []
        errors = []
        lock = threading.Lock()

        def worker():
            with self.app.app_context():
                try:
                    order = order_service.create_order(
                        customer_id=None,
                        items=[{"product_id": self.product_id, "quantity": 4}],
                        shipping=SHIPPING,
                        payment_method="cod",
                    )
                    with lock:
                        placed.append(order.id)
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        self._run_threads(worker, 6)

        self.assertLessEqual(len(placed), 2)
        self.assertEqual(len(placed) + len(errors), 6)

        with self.app.app_context():
            remaining = stock_service.get_stock(self.product_id)
            self.assertGreaterEqual(remaining, 0)
            self.assertEqual(remaining, 10 - 4 * len(placed))
            self.assertEqual(db.session.query(CustomerOrder).count(), len(placed))

    def test_concurrent_cancel_restores_once(self):
        with self.app.app_context():
            order = order_service.create_order(
                customer_id=None,
                items=[{"product_id": self.product_id, "quantity": 5}],
                shipping=SHIPPING,
                payment_method="cod",
            )
            order_id = order.id

        cancelled = []
        lock = threading.Lock()

        def worker():
            with self.app.app_context():
                try:
                    order_service.cancel_order(order_id)
                    with lock:
                        cancelled.append(order_id)
                except Exception:
                    pass
                finally:
                    db.session.remove()

        self._run_threads(worker, 5)

        self.assertEqual(len(cancelled), 1)
        with self.app.app_context():
            self.assertEqual(stock_service.get_stock(self.product_id), 10)

    def test_cancel_racing_notify_settles_consistently(self):
        with self.app.app_context():
            session = reconciliation_service.create_payment_session(
                customer_id=None,
                items=[{"product_id": self.product_id, "quantity": 3}],
                shipping=SHIPPING,
                client_ip="127.0.0.1",
            )
            params = {
                "vnp_TmnCode": "TESTTMN1",
                "vnp_Amount": str(30000 * 100),
                "vnp_TxnRef": session["txn_ref"],
                "vnp_ResponseCode": "00",
                "vnp_TransactionStatus": "00",
                "vnp_TransactionNo": "14000123",
            }
            params["vnp_SecureHash"] = get_gateway().sign_params(params)
            order_id = session["order_id"]

        barrier = threading.Barrier(2)
        outcome = {}

        def notify():
            with self.app.app_context():
                try:
                    barrier.wait()
                    outcome["reply"] = reconciliation_service.handle_notify(dict(params)).code
                finally:
                    db.session.remove()

        def cancel():
            with self.app.app_context():
                try:
                    barrier.wait()
                    order_service.cancel_order(order_id)
                    outcome["cancel"] = "ok"
                except (ConflictError, InvalidTransitionError) as exc:
                    outcome["cancel"] = exc
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=notify), threading.Thread(target=cancel)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        with self.app.app_context():
            order = db.session.get(CustomerOrder, order_id)
            stock = stock_service.get_stock(self.product_id)
            payments = db.session.query(Transaction).filter_by(
                ref_id=order_id, category="customer_payment", is_deleted=False
            ).count()
            refunds = db.session.query(Transaction).filter_by(
                ref_id=order_id, category="refund", is_deleted=False
            ).count()

            if order.payment_status == "failed":
                # Cancel won: the payment never applied
                self.assertEqual(outcome["reply"], "02")
                self.assertEqual(outcome["cancel"], "ok")
                self.assertEqual(order.order_status, "cancelled")
                self.assertFalse(order.stock_deducted)
                self.assertEqual(stock, 10)
                self.assertEqual((payments, refunds), (0, 0))
            else:
                # Notify won: stock taken once, then cancel either refunded or was refused
                self.assertEqual(outcome["reply"], "00")
                self.assertEqual(payments, 1)
                if order.order_status == "cancelled":
                    self.assertEqual(outcome["cancel"], "ok")
                    self.assertEqual(order.payment_status, "refunded")
                    self.assertFalse(order.stock_deducted)
                    self.assertEqual(stock, 10)
                    self.assertEqual(refunds, 1)
                else:
                    self.assertIsInstance(outcome["cancel"], (ConflictError, InvalidTransitionError))
                    self.assertEqual(order.payment_status, "paid")
                    self.assertTrue(order.stock_deducted)
                    self.assertEqual(stock, 7)
                    self.assertEqual(refunds, 0)


if __name__ == "__main__":
    unittest.main()
