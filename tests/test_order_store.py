from __future__ import annotations

import os
import shutil
import tempfile
import threading
import unittest
from decimal import Decimal

from grundy import create_app
from grundy.extensions import db
from grundy.models import OrderTransition
from grundy.services.order_store import InMemoryOrderStore, PaymentStatus, ReferenceLocks, StoreCode
from grundy.services.sql_order_store import SqlOrderStore


def _order(reference="ORDER_TEST_1", **overrides):
    data = {
        "order_reference": reference,
        "customer_email": "Ada@Example.com",
        "amount": "4800",
        "payment_method": "terminal_delivery",
        "items": [{"vendor_id": "VENDOR_001", "unit_price": "2400", "quantity": 2}],
        "vendor_payouts": [{"vendor_id": "VENDOR_001", "net_payout": "4148"}],
    }
    data.update(overrides)
    return data


class OrderStoreContract:
    """Behaviour both registries must share."""

    def test_create_defaults(self):
        result = self.store.create(_order())
        self.assertTrue(result.ok)
        order = result.order
        self.assertEqual(order.payment_status, PaymentStatus.PENDING)
        self.assertEqual(order.payment_method, "terminal_on_delivery")
        self.assertEqual(order.customer_email, "ada@example.com")
        self.assertEqual(order.customer_name, "ada")
        self.assertEqual(order.amount, Decimal("4800"))
        self.assertTrue(order.id.startswith("order_"))
        self.assertIsNotNone(order.created_at)
        self.assertIsNone(order.paid_at)

    def test_generated_reference(self):
        result = self.store.create(_order(reference=""))
        self.assertTrue(result.order.order_reference.startswith("ORDER_"))

    def test_duplicate_reference_rejected(self):
        self.assertTrue(self.store.create(_order()).ok)
        again = self.store.create(_order(amount="10"))
        self.assertFalse(again.ok)
        self.assertEqual(again.code, StoreCode.DUPLICATE_REFERENCE)
        self.assertEqual(self.store.get("ORDER_TEST_1").amount, Decimal("4800"))

    def test_invalid_order_data(self):
        self.assertEqual(self.store.create(_order(customer_email="")).code, StoreCode.INVALID_ORDER)
        self.assertEqual(self.store.create(_order(payment_method="cash")).code, StoreCode.INVALID_ORDER)
        self.assertEqual(self.store.create(_order(amount="0")).code, StoreCode.INVALID_ORDER)

    def test_paid_is_idempotent(self):
        self.store.create(_order())
        first = self.store.transition_payment("ORDER_TEST_1", "paid", {"reference": "PSK_1", "n": 1})
        self.assertTrue(first.ok)
        self.assertTrue(first.changed)
        paid_at = first.order.paid_at
        self.assertIsNotNone(paid_at)

        second = self.store.transition_payment("ORDER_TEST_1", "success", {"reference": "PSK_2", "n": 2})
        self.assertTrue(second.ok)
        self.assertFalse(second.changed)
        self.assertEqual(second.order.payment_status, PaymentStatus.PAID)
        self.assertEqual(second.order.paid_at, paid_at)
        self.assertEqual(second.order.payment_reference, "PSK_1")
        self.assertEqual(second.order.payment_details, {"reference": "PSK_2", "n": 2})

    def test_state_machine_is_monotonic(self):
        self.store.create(_order())
        self.assertTrue(self.store.transition_payment("ORDER_TEST_1", "failed").ok)
        back = self.store.transition_payment("ORDER_TEST_1", "paid")
        self.assertFalse(back.ok)
        self.assertEqual(back.code, StoreCode.INVALID_TRANSITION)
        self.assertEqual(self.store.get("ORDER_TEST_1").payment_status, PaymentStatus.FAILED)

        self.store.create(_order(reference="ORDER_TEST_2"))
        self.assertEqual(
            self.store.transition_payment("ORDER_TEST_2", "delivered").code, StoreCode.INVALID_TRANSITION
        )
        self.assertEqual(self.store.transition_payment("ORDER_TEST_2", "bogus").code, StoreCode.INVALID_TRANSITION)

    def test_transition_unknown_order(self):
        result = self.store.transition_payment("ORDER_MISSING", "paid")
        self.assertFalse(result.ok)
        self.assertEqual(result.code, StoreCode.NOT_FOUND)
        self.assertEqual(self.store.list(), [])

    def test_rider_assignment_compare_and_set(self):
        self.store.create(_order())
        first = self.store.assign_delivery("ORDER_TEST_1", "RIDER_001", "TERMINAL_001")
        self.assertTrue(first.ok)
        self.assertTrue(first.changed)
        same = self.store.assign_delivery("ORDER_TEST_1", "RIDER_001", "TERMINAL_001")
        self.assertTrue(same.ok)
        self.assertFalse(same.changed)
        other = self.store.assign_delivery("ORDER_TEST_1", "RIDER_002", "TERMINAL_002")
        self.assertFalse(other.ok)
        self.assertEqual(other.code, StoreCode.ALREADY_ASSIGNED)
        self.assertEqual(self.store.get("ORDER_TEST_1").rider_id, "RIDER_001")

    def test_assignment_blocked_after_terminal_state(self):
        self.store.create(_order())
        self.store.transition_payment("ORDER_TEST_1", "failed")
        result = self.store.assign_delivery("ORDER_TEST_1", "RIDER_001")
        self.assertEqual(result.code, StoreCode.INVALID_TRANSITION)
        self.assertEqual(self.store.assign_delivery("ORDER_NOPE", "RIDER_001").code, StoreCode.NOT_FOUND)

    def test_complete_delivery_requires_paid(self):
        self.store.create(_order())
        early = self.store.complete_delivery("ORDER_TEST_1")
        self.assertEqual(early.code, StoreCode.INVALID_TRANSITION)
        self.store.transition_payment("ORDER_TEST_1", "paid")
        done = self.store.complete_delivery("ORDER_TEST_1")
        self.assertTrue(done.ok)
        self.assertEqual(done.order.payment_status, PaymentStatus.DELIVERED)
        self.assertIsNotNone(done.order.delivered_at)
        self.assertIsNotNone(done.order.paid_at)

    def test_reads_are_snapshots(self):
        self.store.create(_order())
        snapshot = self.store.get("ORDER_TEST_1")
        snapshot.payment_status = "paid"
        snapshot.items.append({"vendor_id": "X"})
        fresh = self.store.get("ORDER_TEST_1")
        self.assertEqual(fresh.payment_status, PaymentStatus.PENDING)
        self.assertEqual(len(fresh.items), 1)

    def test_listing_and_filters(self):
        self.store.create(_order(reference="A"))
        self.store.create(_order(reference="B", payment_method="prepay"))
        self.store.create(_order(reference="C", payment_method="bank_transfer_delivery"))
        self.store.transition_payment("B", "paid")
        self.assertEqual([o.order_reference for o in self.store.list()], ["A", "B", "C"])
        self.assertEqual([o.order_reference for o in self.store.list_by_status("paid")], ["B"])
        self.assertEqual(
            [o.order_reference for o in self.store.list_by_payment_method("bank_transfer_on_delivery")], ["C"]
        )

    def test_lookup_helpers(self):
        self.store.create(_order(reference="A", virtual_account_number="9900000001"))
        self.store.create(_order(reference="B", amount="10"))
        self.store.transition_payment("A", "paid", {"reference": "PSK_A"})
        self.assertEqual(self.store.find_by_payment_reference("PSK_A").order_reference, "A")
        self.assertIsNone(self.store.find_by_payment_reference("PSK_NONE"))
        matches = self.store.find_by_email_amount("ada@example.com", Decimal("4800.00"))
        self.assertEqual([o.order_reference for o in matches], ["A"])
        self.assertEqual([o.order_reference for o in self.store.find_by_virtual_account("9900000001")], ["A"])
        self.assertEqual(self.store.find_by_virtual_account(""), [])

    def test_concurrent_paid_events_apply_once(self):
        self.store.create(_order())
        results = []

        def worker(n):
            results.append(self._in_context(self.store.transition_payment, "ORDER_TEST_1", "paid", {"n": n}))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertTrue(all(r.ok for r in results))
        self.assertEqual(sum(1 for r in results if r.changed), 1)

    def test_concurrent_riders_single_winner(self):
        self.store.create(_order())
        results = []

        def worker(rider):
            results.append(self._in_context(self.store.assign_delivery, "ORDER_TEST_1", rider))

        threads = [threading.Thread(target=worker, args=(f"RIDER_{n:03d}",)) for n in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        winners = [r for r in results if r.ok]
        self.assertEqual(len(winners), 1)
        self.assertTrue(all(r.code == StoreCode.ALREADY_ASSIGNED for r in results if not r.ok))

    def test_reference_locks_do_not_accumulate(self):
        self.store.create(_order())
        self.store.transition_payment("ORDER_TEST_1", "paid")
        for n in range(20):
            self.store.assign_delivery(f"ORDER_UNKNOWN_{n}", "RIDER_001")
            self.store.complete_delivery(f"ORDER_UNKNOWN_{n}")
            self.store.transition_payment(f"ORDER_UNKNOWN_{n}", "paid")
        self.assertTrue(self.store.complete_delivery("ORDER_TEST_1").ok)
        self.assertEqual(len(self.store._locks), 0)

    def _in_context(self, fn, *args):
        return fn(*args)


class ReferenceLocksTestCase(unittest.TestCase):
    def test_nested_holds_share_one_entry(self):
        locks = ReferenceLocks()
        with locks.hold("ORDER_A"):
            with locks.hold("ORDER_A"):
                self.assertEqual(len(locks), 1)
            self.assertEqual(len(locks), 1)
        self.assertEqual(len(locks), 0)

    def test_contended_holds_release_entry(self):
        locks = ReferenceLocks()
        entered = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold("ORDER_A"):
                entered.set()
                release.wait(5)

        first = threading.Thread(target=holder)
        first.start()
        entered.wait(5)
        entered.clear()
        second = threading.Thread(target=holder)
        second.start()
        release.set()
        first.join(5)
        second.join(5)
        self.assertTrue(entered.is_set())
        self.assertEqual(len(locks), 0)


class InMemoryOrderStoreTestCase(OrderStoreContract, unittest.TestCase):
    def setUp(self):
        self.store = InMemoryOrderStore()


class SqlOrderStoreTestCase(OrderStoreContract, unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._saved_env = {
            "SQLALCHEMY_DATABASE_URI": os.getenv("SQLALCHEMY_DATABASE_URI"),
            "DATABASE_URL": os.getenv("DATABASE_URL"),
            "ORDER_STORE": os.getenv("ORDER_STORE"),
        }
        # file-backed so worker threads get their own connections
        cls._tmpdir = tempfile.mkdtemp(prefix="grundy-store-")
        db_uri = "sqlite:///" + os.path.join(cls._tmpdir, "orders.db")
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        os.environ["ORDER_STORE"] = "sql"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)

    @classmethod
    def tearDownClass(cls):
        with cls.app.app_context():
            db.engine.dispose()
        shutil.rmtree(cls._tmpdir, ignore_errors=True)
        for key, value in cls._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def setUp(self):
        self.ctx = self.app.app_context()
        self.ctx.push()
        db.session.remove()
        db.drop_all()
        db.create_all()
        self.store = SqlOrderStore()

    def tearDown(self):
        db.session.remove()
        self.ctx.pop()

    def _in_context(self, fn, *args):
        with self.app.app_context():
            return fn(*args)

    def test_transitions_are_audited(self):
        self.store.create(_order())
        self.store.transition_payment("ORDER_TEST_1", "paid", {"reference": "PSK_1"}, source="webhook")
        self.store.transition_payment("ORDER_TEST_1", "paid", {"reference": "PSK_1"}, source="webhook")
        rows = OrderTransition.query.filter_by(order_reference="ORDER_TEST_1").order_by(OrderTransition.id).all()
        self.assertEqual([(r.from_status, r.to_status) for r in rows], [("", "pending"), ("pending", "paid")])
        self.assertEqual(rows[-1].source, "webhook")


if __name__ == "__main__":
    unittest.main()
