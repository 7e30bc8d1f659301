# --- path/bootstrap (keep this at the very top) ---
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
# --- end path/bootstrap ---

import copy
import threading
import time
import unittest

from checkout import CheckoutSession, CheckoutValidationError
from dao import Customer, Order, Product
from metrics import (
    CHECKOUT_DURATION_SECONDS,
    CHECKOUT_ERROR_TOTAL,
    ORDER_COMMIT_STEP_FAILURES_TOTAL,
    ORDERS_RECONCILED_TOTAL,
)
from order_commit import CommitState, CommitStep, OrderCommitSequence, OrderReconciler
from store_client import DuplicateIdentifierError, StoreError, StoreUnavailableError


class FakeStoreClient:
    """
    In-memory stand-in for StoreClient.  Records every call and mirrors the
    backend's conditional and idempotent semantics.  ``fail_next`` maps a
    method name to an error raised on its next call only.
    """

    def __init__(self, customers, products):
        self.customers = {c.phone_number: c for c in customers}
        self.products = {p.product_id: p for p in products}
        self.orders = {}
        self.movements = set()
        self.calls = []
        self.fail_next = {}

    def _enter(self, name, *args):
        self.calls.append((name,) + args)
        err = self.fail_next.pop(name, None)
        if err is not None:
            raise err

    def create_order(self, doc):
        self._enter("create_order", doc["orderId"])
        if doc["orderId"] in self.orders:
            raise DuplicateIdentifierError("Order with this ID already exists", 409)
        order = Order.from_document(doc)
        self.orders[order.order_id] = order
        return copy.deepcopy(order)

    def apply_loyalty(self, phone, order_id, redeem, earn):
        self._enter("apply_loyalty", phone, order_id)
        c = self.customers[phone]
        if order_id in c.order_history:
            return copy.deepcopy(c), False
        if c.loyalty_points < redeem:
            raise StoreError("Insufficient points", 409)
        c.loyalty_points = c.loyalty_points - redeem + earn
        c.order_history.append(order_id)
        return copy.deepcopy(c), True

    def decrement_stock(self, product_id, quantity, order_id=None):
        self._enter("decrement_stock", product_id, order_id)
        p = self.products.get(product_id)
        if p is None:
            raise StoreError("Product not found", 404)
        if (order_id, product_id) in self.movements:
            return copy.deepcopy(p), False
        if p.stock_quantity < quantity:
            raise StoreError(f"Insufficient stock for product {product_id}", 409)
        p.stock_quantity -= quantity
        self.movements.add((order_id, product_id))
        return copy.deepcopy(p), True

    def get_order(self, order_id):
        self._enter("get_order", order_id)
        order = self.orders.get(order_id)
        return copy.deepcopy(order) if order else None

    def update_order(self, order_id, updates):
        self._enter("update_order", order_id)
        order = self.orders[order_id]
        order.status = updates.get("status", order.status)
        return copy.deepcopy(order)

    def list_orders(self, customer_id=None, status=None, start_date=None, end_date=None):
        self._enter("list_orders", status)
        return [copy.deepcopy(o) for o in self.orders.values() if status in (None, o.status)]

    def call_names(self):
        return [c[0] for c in self.calls]

    def lose_create_response(self, times=1):
        """Save orders but answer the next ``times`` creates with a timeout."""
        original = self.create_order
        remaining = [times]

        def create_order(doc):
            order = original(doc)
            if remaining[0] > 0:
                remaining[0] -= 1
                raise StoreUnavailableError("Store did not respond within 5.0s")
            return order

        self.create_order = create_order


def make_session(client, points=20, lines=(("P1", 2),)):
    session = CheckoutSession()
    session.refresh_products(copy.deepcopy(list(client.products.values())))
    session.select_customer(copy.deepcopy(client.customers["5551000000"]))
    for pid, qty in lines:
        session.add_product(session.products[pid], qty)
    session.set_discount_points(points)
    return session


class TestOrderCommitSequence(unittest.TestCase):
    def setUp(self):
        self.client = FakeStoreClient(
            customers=[Customer("5551000000", "Jane Smith", loyalty_points=100)],
            products=[
                Product("P1", "Whole Milk", "Dairy", 25.00, 5, "A1", "B"),
                Product("P2", "Cheddar Cheese", "Dairy", 4.99, 3, "A1", "C"),
            ],
        )
        self.sequence = OrderCommitSequence(self.client)

    def test_successful_commit_updates_every_store(self):
        result = self.sequence.commit(make_session(self.client))

        self.assertTrue(result.ok, result.message)
        self.assertEqual(result.state, CommitState.COMMITTED)
        self.assertEqual(
            result.completed_steps,
            [CommitStep.CREATE_ORDER, CommitStep.APPLY_LOYALTY,
             CommitStep.ADJUST_STOCK, CommitStep.FINALIZE],
        )
        self.assertEqual(
            self.client.call_names(),
            ["create_order", "apply_loyalty", "decrement_stock", "update_order"],
        )
        customer = self.client.customers["5551000000"]
        self.assertEqual(customer.loyalty_points, 84)
        self.assertEqual(customer.order_history, [result.order_id])
        self.assertEqual(self.client.products["P1"].stock_quantity, 3)
        order = self.client.orders[result.order_id]
        self.assertEqual(order.status, "completed")
        self.assertAlmostEqual(order.total_amount, 40.00)
        self.assertEqual(order.points_redeemed, 20)
        self.assertEqual(order.points_earned, 4)

    def test_order_created_as_pending(self):
        self.client.fail_next["apply_loyalty"] = StoreError("boom", 500)
        result = self.sequence.commit(make_session(self.client))
        self.assertEqual(self.client.orders[result.order_id].status, "pending")

    def test_create_failure_issues_no_other_call(self):
        self.client.fail_next["create_order"] = StoreError("Order store down", 500)
        result = self.sequence.commit(make_session(self.client))

        self.assertFalse(result.ok)
        self.assertEqual(result.state, CommitState.FAILED)
        self.assertEqual(result.failed_at, CommitStep.CREATE_ORDER)
        self.assertEqual(result.message, "Order store down")
        self.assertEqual(self.client.call_names(), ["create_order"])
        self.assertEqual(self.client.customers["5551000000"].loyalty_points, 100)
        self.assertEqual(self.client.products["P1"].stock_quantity, 5)

    def test_validation_failure_issues_no_call(self):
        self.client.customers["5551000000"].loyalty_points = 10
        session = make_session(self.client, points=0)
        # Bypass the session guard to exercise the commit-time check
        session.discount_points = 11
        with self.assertRaises(CheckoutValidationError):
            self.sequence.commit(session)
        self.assertEqual(self.client.calls, [])

    def test_empty_cart_rejected_before_any_call(self):
        session = make_session(self.client, lines=())
        with self.assertRaises(CheckoutValidationError):
            self.sequence.commit(session)
        self.assertEqual(self.client.calls, [])

    def test_stock_failure_records_progress(self):
        session = make_session(self.client, points=0, lines=(("P1", 1), ("P2", 2)))
        # Someone else sold P2 in the meantime
        self.client.products["P2"].stock_quantity = 1
        result = self.sequence.commit(session)

        self.assertEqual(result.state, CommitState.FAILED)
        self.assertEqual(result.failed_at, CommitStep.ADJUST_STOCK)
        self.assertEqual(result.decremented, ["P1"])
        self.assertEqual(result.completed_steps, [CommitStep.CREATE_ORDER, CommitStep.APPLY_LOYALTY])
        self.assertEqual(self.client.products["P2"].stock_quantity, 1)
        self.assertIn("Insufficient stock", result.message)

    def test_timeout_is_a_step_failure(self):
        step_failures = ORDER_COMMIT_STEP_FAILURES_TOTAL.value(step="apply_loyalty")
        unavailable = CHECKOUT_ERROR_TOTAL.value(type="store_unavailable")
        self.client.fail_next["apply_loyalty"] = StoreUnavailableError(
            "Store did not respond within 5.0s")
        result = self.sequence.commit(make_session(self.client))

        self.assertEqual(result.state, CommitState.FAILED)
        self.assertEqual(result.failed_at, CommitStep.APPLY_LOYALTY)
        self.assertIsNone(result.status)
        self.assertIn("did not respond", result.message)
        self.assertNotIn("decrement_stock", self.client.call_names())
        self.assertEqual(
            ORDER_COMMIT_STEP_FAILURES_TOTAL.value(step="apply_loyalty"), step_failures + 1)
        self.assertEqual(CHECKOUT_ERROR_TOTAL.value(type="store_unavailable"), unavailable + 1)

    def test_successful_commit_is_timed(self):
        before = CHECKOUT_DURATION_SECONDS.count(outcome="committed")
        self.assertTrue(self.sequence.commit(make_session(self.client)).ok)
        self.assertEqual(CHECKOUT_DURATION_SECONDS.count(outcome="committed"), before + 1)

    def test_create_timeout_after_save_resumes_the_order(self):
        self.client.lose_create_response()
        session = make_session(self.client)
        result = self.sequence.commit(session)

        self.assertTrue(result.ok, result.message)
        self.assertEqual(
            self.client.call_names(),
            ["create_order", "get_order", "apply_loyalty", "decrement_stock", "update_order"],
        )
        self.assertEqual(list(self.client.orders), [result.order_id])
        self.assertEqual(self.client.products["P1"].stock_quantity, 3)
        self.assertEqual(self.client.customers["5551000000"].loyalty_points, 84)

    def test_unsaved_create_keeps_order_id_for_retry(self):
        self.client.fail_next["create_order"] = StoreUnavailableError("Store unreachable")
        session = make_session(self.client)
        first = self.sequence.commit(session)

        self.assertEqual(first.failed_at, CommitStep.CREATE_ORDER)
        self.assertEqual(session.pending_order_id, first.order_id)
        self.assertEqual(self.client.orders, {})

        second = self.sequence.commit(session)
        self.assertTrue(second.ok, second.message)
        self.assertEqual(second.order_id, first.order_id)
        self.assertEqual(list(self.client.orders), [first.order_id])

    def test_retry_after_unconfirmed_create_sells_once(self):
        self.client.lose_create_response()
        self.client.fail_next["get_order"] = StoreUnavailableError("Store unreachable")
        session = make_session(self.client)
        first = self.sequence.commit(session)
        self.assertEqual(first.failed_at, CommitStep.CREATE_ORDER)
        self.assertEqual(self.client.customers["5551000000"].loyalty_points, 100)

        second = self.sequence.commit(session)
        self.assertTrue(second.ok, second.message)
        self.assertEqual(second.order_id, first.order_id)
        self.assertEqual(list(self.client.orders), [first.order_id])
        self.assertEqual(self.client.products["P1"].stock_quantity, 3)
        customer = self.client.customers["5551000000"]
        self.assertEqual(customer.loyalty_points, 84)
        self.assertEqual(customer.order_history, [first.order_id])

        # Nothing is left for the reconciler to sell again
        self.assertEqual(OrderReconciler(self.client, min_age=0).reconcile_pending(), [])
        self.assertEqual(self.client.products["P1"].stock_quantity, 3)

    def test_duplicate_new_order_id_surfaces_already_exists(self):
        original = self.client.create_order

        def collide(doc):
            self.client.create_order = original
            raise DuplicateIdentifierError("Order with this ID already exists", 409)

        self.client.create_order = collide
        session = make_session(self.client)
        result = self.sequence.commit(session)

        self.assertEqual(result.failed_at, CommitStep.CREATE_ORDER)
        self.assertEqual(result.message, "Order with this ID already exists")
        self.assertIsNone(session.pending_order_id)
        self.assertNotIn("apply_loyalty", self.client.call_names())

        retry = self.sequence.commit(session)
        self.assertTrue(retry.ok, retry.message)
        self.assertNotEqual(retry.order_id, result.order_id)


class TestOrderReconciler(unittest.TestCase):
    def setUp(self):
        self.client = FakeStoreClient(
            customers=[Customer("5551000000", "Jane Smith", loyalty_points=100)],
            products=[
                Product("P1", "Whole Milk", "Dairy", 25.00, 5, "A1", "B"),
                Product("P2", "Cheddar Cheese", "Dairy", 4.99, 3, "A1", "C"),
            ],
        )
        self.sequence = OrderCommitSequence(self.client)
        self.reconciler = OrderReconciler(self.client, min_age=0)

    def test_loyalty_failure_is_completed_exactly_once(self):
        self.client.fail_next["apply_loyalty"] = StoreError("timeout", None)
        failed = self.sequence.commit(make_session(self.client))
        self.assertEqual(failed.failed_at, CommitStep.APPLY_LOYALTY)
        self.assertNotIn("decrement_stock", self.client.call_names())

        results = self.reconciler.reconcile_pending()
        self.assertEqual(len(results), 1)
        self.assertTrue(results[0].ok, results[0].message)

        customer = self.client.customers["5551000000"]
        self.assertEqual(customer.loyalty_points, 84)
        self.assertEqual(customer.order_history, [failed.order_id])
        self.assertEqual(self.client.products["P1"].stock_quantity, 3)
        self.assertEqual(self.client.orders[failed.order_id].status, "completed")

        # Nothing left to do on the next pass
        self.assertEqual(self.reconciler.reconcile_pending(), [])
        self.assertEqual(customer.loyalty_points, 84)

    def test_partial_stock_failure_is_resumed(self):
        session = make_session(self.client, points=0, lines=(("P1", 1), ("P2", 2)))
        calls = []

        original = self.client.decrement_stock

        def flaky(product_id, quantity, order_id=None):
            calls.append(product_id)
            if product_id == "P2" and calls.count("P2") == 1:
                raise StoreError("connection reset", None)
            return original(product_id, quantity, order_id)

        self.client.decrement_stock = flaky
        failed = self.sequence.commit(session)
        self.assertEqual(failed.decremented, ["P1"])

        result = self.reconciler.reconcile_order(self.client.orders[failed.order_id])
        self.assertTrue(result.ok, result.message)
        self.assertEqual(self.client.products["P1"].stock_quantity, 4)
        self.assertEqual(self.client.products["P2"].stock_quantity, 1)
        self.assertEqual(len(self.client.customers["5551000000"].order_history), 1)

    def test_completed_order_is_left_alone(self):
        result = self.sequence.commit(make_session(self.client))
        self.client.calls.clear()
        outcome = self.reconciler.reconcile_order(self.client.orders[result.order_id])
        self.assertTrue(outcome.ok)
        self.assertEqual(self.client.calls, [])

    def test_recent_pending_orders_are_skipped(self):
        reconciler = OrderReconciler(self.client, min_age=60)
        self.client.fail_next["apply_loyalty"] = StoreError("timeout", None)
        failed = self.sequence.commit(make_session(self.client))

        self.assertEqual(reconciler.reconcile_pending(), [])
        self.assertEqual(self.client.orders[failed.order_id].status, "pending")
        self.assertEqual(self.client.customers["5551000000"].loyalty_points, 100)

    def test_rejected_order_is_escalated(self):
        reconciler = OrderReconciler(self.client, min_age=0, max_attempts=2)
        escalated = ORDERS_RECONCILED_TOTAL.value(outcome="escalated")
        session = make_session(self.client, points=0, lines=(("P1", 1), ("P2", 2)))
        self.client.fail_next["apply_loyalty"] = StoreError("timeout", None)
        failed = self.sequence.commit(session)
        del self.client.products["P2"]

        first = reconciler.reconcile_pending()
        self.assertEqual([r.status for r in first], [404])
        self.assertEqual(reconciler.escalated, {})

        second = reconciler.reconcile_pending()
        self.assertEqual(second[0].failed_at, CommitStep.ADJUST_STOCK)
        self.assertEqual(list(reconciler.escalated), [failed.order_id])
        self.assertEqual(ORDERS_RECONCILED_TOTAL.value(outcome="escalated"), escalated + 1)

        self.client.calls.clear()
        self.assertEqual(reconciler.reconcile_pending(), [])
        self.assertEqual(self.client.call_names(), ["list_orders"])
        self.assertEqual(self.client.products["P1"].stock_quantity, 4)
        self.assertEqual(len(self.client.customers["5551000000"].order_history), 1)

        # Manual reconciliation once the product is back
        self.client.products["P2"] = Product("P2", "Cheddar Cheese", "Dairy", 4.99, 3, "A1", "C")
        result = reconciler.reconcile_order(self.client.orders[failed.order_id])
        self.assertTrue(result.ok, result.message)
        self.assertEqual(reconciler.escalated, {})
        self.assertEqual(self.client.products["P2"].stock_quantity, 1)
        self.assertEqual(self.client.products["P1"].stock_quantity, 4)

    def test_transient_failures_are_never_escalated(self):
        reconciler = OrderReconciler(self.client, min_age=0, max_attempts=1)
        self.client.fail_next["apply_loyalty"] = StoreError("timeout", None)
        failed = self.sequence.commit(make_session(self.client))

        for _ in range(2):
            self.client.fail_next["apply_loyalty"] = StoreUnavailableError("Store unreachable")
            self.assertFalse(reconciler.reconcile_pending()[0].ok)
        self.assertEqual(reconciler.escalated, {})

        self.assertTrue(reconciler.reconcile_pending()[0].ok)
        self.assertEqual(self.client.orders[failed.order_id].status, "completed")

    def test_reconciler_thread_survives_a_crashed_pass(self):
        self.client.fail_next["apply_loyalty"] = StoreError("timeout", None)
        failed = self.sequence.commit(make_session(self.client))
        self.client.fail_next["list_orders"] = RuntimeError("listing blew up")
        stop = threading.Event()

        with self.assertLogs("order_commit", level="ERROR"):
            thread = self.reconciler.start_reconciler_thread(0.01, stop)
            deadline = time.monotonic() + 5
            while (self.client.orders[failed.order_id].status != "completed"
                   and time.monotonic() < deadline):
                time.sleep(0.01)
        stop.set()
        thread.join(timeout=2)

        self.assertFalse(thread.is_alive())
        self.assertTrue(thread.daemon)
        self.assertEqual(self.client.orders[failed.order_id].status, "completed")
        self.assertEqual(self.client.customers["5551000000"].loyalty_points, 84)


if __name__ == "__main__":
    unittest.main()
