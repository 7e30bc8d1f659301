# --- path/bootstrap (keep this at the very top) ---
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
# --- end path/bootstrap ---

import http.client
import json
import os
import tempfile
import threading
import unittest

import requests

import dao
from app import StoreApp
from app_web import make_server
from config import Settings
from store_client import DuplicateIdentifierError, StoreClient, StoreError

ALLOWED_ORIGIN = "http://localhost:5173"


class WebTestCase(unittest.TestCase):
    """
    Runs the real REST backend on an ephemeral port for the whole class and
    gives every test an empty database.  Request threads open their own
    connections, so switching STOREFLOW_DB_PATH between tests is enough.
    """

    @classmethod
    def setUpClass(cls):
        settings = Settings(db_path="unused", cors_origins=[ALLOWED_ORIGIN])
        cls.httpd = make_server("127.0.0.1", 0, settings)
        cls.port = cls.httpd.server_address[1]
        cls.base = f"http://127.0.0.1:{cls.port}"
        cls.thread = threading.Thread(target=cls.httpd.serve_forever, daemon=True)
        cls.thread.start()

    @classmethod
    def tearDownClass(cls):
        cls.httpd.shutdown()
        cls.httpd.server_close()

    def setUp(self):
        tmp = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
        tmp.close()
        self.db_path = tmp.name
        os.environ["STOREFLOW_DB_PATH"] = self.db_path
        dao.close_request_connection()
        self.client = StoreClient(base_url=f"{self.base}/api", timeout=5.0)

    def tearDown(self):
        self.client.close()
        dao.close_request_connection()
        for suffix in ("", "-wal", "-shm"):
            try:
                os.unlink(self.db_path + suffix)
            except FileNotFoundError:
                pass

    def add_product(self, pid="PROD001", price=25.0, stock=5, name="Whole Milk"):
        return self.client.create_product({
            "productId": pid, "name": name, "category": "Dairy", "price": price,
            "stockQuantity": stock, "aisle": "A1", "shelf": "B",
        })

    def add_customer(self, phone="5551000000", points=100):
        return self.client.create_customer({
            "phoneNumber": phone, "name": "Jane Smith", "password": "password123",
            "loyaltyPoints": points,
        })


class TestRestApi(WebTestCase):
    def test_unknown_route(self):
        resp = requests.get(f"{self.base}/api/nothing", timeout=5)
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json(), {"message": "Route not found"})

    def test_create_returns_201_and_duplicate_409(self):
        body = {"productId": "PROD001", "name": "Whole Milk", "category": "Dairy",
                "price": 3.49, "stockQuantity": 5, "aisle": "A1", "shelf": "B"}
        resp = requests.post(f"{self.base}/api/products", json=body, timeout=5)
        self.assertEqual(resp.status_code, 201)
        with self.assertRaises(DuplicateIdentifierError) as ctx:
            self.client.create_product(body)
        self.assertEqual(ctx.exception.message, "Product with this ID already exists")
        self.assertEqual(ctx.exception.status, 409)

    def test_validation_errors_are_400(self):
        resp = requests.post(f"{self.base}/api/products", data="{not json",
                             headers={"Content-Type": "application/json"}, timeout=5)
        self.assertEqual(resp.status_code, 400)
        self.assertIn("message", resp.json())
        with self.assertRaises(StoreError) as ctx:
            self.client.create_product({"productId": "P1"})
        self.assertEqual(ctx.exception.status, 400)

    def test_malformed_content_length_is_400(self):
        conn = http.client.HTTPConnection("127.0.0.1", self.port, timeout=5)
        try:
            conn.putrequest("POST", "/api/products")
            conn.putheader("Content-Type", "application/json")
            conn.putheader("Content-Length", "twelve")
            conn.endheaders()
            resp = conn.getresponse()
            self.assertEqual(resp.status, 400)
            self.assertEqual(json.loads(resp.read()), {"message": "Invalid Content-Length header"})
        finally:
            conn.close()

    def test_get_update_delete(self):
        self.add_product()
        self.assertEqual(self.client.get_product("PROD001").name, "Whole Milk")
        self.assertEqual(self.client.update_product("PROD001", {"price": 2.99}).price, 2.99)
        self.assertEqual(self.client.delete_product("PROD001"), "Product deleted successfully")
        self.assertIsNone(self.client.get_product("PROD001"))
        with self.assertRaises(StoreError) as ctx:
            self.client.delete_product("PROD001")
        self.assertEqual(ctx.exception.status, 404)

    def test_product_search(self):
        self.add_product("P1", name="Whole Milk")
        self.add_product("P2", name="Cheddar Cheese")
        self.assertEqual([p.product_id for p in self.client.list_products(name="MILK")], ["P1"])

    def test_decrement_endpoint(self):
        self.add_product(stock=2)
        with self.assertRaises(StoreError) as ctx:
            self.client.decrement_stock("PROD001", 3, "ORD1")
        self.assertEqual(ctx.exception.status, 409)
        product, applied = self.client.decrement_stock("PROD001", 2, "ORD1")
        self.assertTrue(applied)
        self.assertEqual(product.stock_quantity, 0)
        _, applied = self.client.decrement_stock("PROD001", 2, "ORD1")
        self.assertFalse(applied)
        self.assertEqual(self.client.restock("PROD001", 4).stock_quantity, 4)

    def test_password_never_returned(self):
        resp = requests.post(f"{self.base}/api/customers", json={
            "phoneNumber": "5551000000", "name": "Jane Smith", "password": "password123"}, timeout=5)
        self.assertEqual(resp.status_code, 201)
        self.assertNotIn("password", resp.json())
        listed = requests.get(f"{self.base}/api/customers", timeout=5).json()
        self.assertNotIn("password", listed[0])

    def test_employee_login(self):
        self.client.create_employee({"employeeId": "emp001", "name": "Aakash Mehta",
                                     "password": "emp001pass"})
        self.assertEqual(self.client.login_employee("emp001", "emp001pass"),
                         {"employeeId": "emp001", "name": "Aakash Mehta"})
        with self.assertRaises(StoreError) as ctx:
            self.client.login_employee("emp001", "nope")
        self.assertEqual(ctx.exception.status, 401)
        with self.assertRaises(StoreError) as ctx:
            self.client.login_employee("emp999", "nope")
        self.assertEqual(ctx.exception.status, 404)

    def test_loyalty_endpoint(self):
        self.add_customer(points=10)
        with self.assertRaises(StoreError) as ctx:
            self.client.apply_loyalty("5551000000", "ORD1", 11, 0)
        self.assertEqual(ctx.exception.status, 409)
        customer, applied = self.client.apply_loyalty("5551000000", "ORD1", 10, 3)
        self.assertTrue(applied)
        self.assertEqual(customer.loyalty_points, 3)
        self.assertEqual(customer.order_history, ["ORD1"])

    def test_cors_headers(self):
        resp = requests.get(f"{self.base}/api/products", headers={"Origin": ALLOWED_ORIGIN},
                            timeout=5)
        self.assertEqual(resp.headers.get("Access-Control-Allow-Origin"), ALLOWED_ORIGIN)
        self.assertEqual(resp.headers.get("Access-Control-Allow-Credentials"), "true")

        resp = requests.get(f"{self.base}/api/products",
                            headers={"Origin": "http://evil.example"}, timeout=5)
        self.assertNotIn("Access-Control-Allow-Origin", resp.headers)

        resp = requests.options(f"{self.base}/api/orders", headers={"Origin": ALLOWED_ORIGIN},
                                timeout=5)
        self.assertEqual(resp.status_code, 204)
        self.assertIn("PUT", resp.headers.get("Access-Control-Allow-Methods", ""))

    def test_metrics_endpoint(self):
        requests.get(f"{self.base}/api/products", timeout=5)
        resp = requests.get(f"{self.base}/metrics", timeout=5)
        self.assertEqual(resp.status_code, 200)
        self.assertIn("http_requests_total", resp.text)
        self.assertIn('endpoint="/api/products"', resp.text)


class TestCheckoutOverHttp(WebTestCase):
    def setUp(self):
        super().setUp()
        self.add_product("PROD001", price=25.0, stock=5)
        self.add_customer(points=100)
        settings = Settings(db_path=self.db_path, api_base=f"{self.base}/api")
        self.app = StoreApp(client=self.client, settings=settings)

    def test_full_checkout(self):
        ok, msg = self.app.find_customer("5551000000")
        self.assertTrue(ok, msg)
        self.app.refresh_products()
        ok, msg = self.app.add_to_cart("PROD001", 2)
        self.assertTrue(ok, msg)
        ok, msg = self.app.set_discount_points(20)
        self.assertTrue(ok, msg)

        ok, receipt = self.app.checkout()
        self.assertTrue(ok, receipt)
        self.assertIn("Total: 40.00", receipt)
        self.assertIn("Points balance: 84", receipt)
        self.assertEqual(self.app.view_cart(), [])

        customer = self.client.get_customer("5551000000")
        self.assertEqual(customer.loyalty_points, 84)
        self.assertEqual(len(customer.order_history), 1)
        self.assertEqual(self.client.get_product("PROD001").stock_quantity, 3)

        order = self.client.get_order(customer.order_history[0])
        self.assertEqual(order.status, "completed")
        self.assertEqual(order.total_amount, 40.0)
        self.assertEqual(order.items[0].quantity, 2)

    def test_points_above_balance_rejected_before_any_write(self):
        self.client.update_customer("5551000000", {"loyaltyPoints": 10})
        self.app.find_customer("5551000000")
        self.app.refresh_products()
        self.app.add_to_cart("PROD001", 1)
        ok, _ = self.app.set_discount_points(11)
        self.assertFalse(ok)
        self.assertEqual(self.client.list_orders(), [])

    def test_alerts_are_copied_to_employee(self):
        self.client.create_employee({"employeeId": "emp001", "name": "Aakash Mehta",
                                     "password": "emp001pass"})
        ok, msg = self.app.send_alert("emp001", "Restock aisle 3", alert_id="ALERT1")
        self.assertTrue(ok, msg)
        ok, msg = self.app.mark_alert_delivered("ALERT1")
        self.assertTrue(ok, msg)

        self.assertEqual(self.client.get_alert("ALERT1").status, "delivered")
        employee = self.client.get_employee("emp001")
        self.assertEqual([(a.alert_id, a.status) for a in employee.alerts],
                         [("ALERT1", "delivered")])

    def test_dashboard_counts(self):
        self.add_product("PROD002", stock=3, name="Salt")
        stats = self.app.dashboard()
        self.assertEqual(stats.total_products, 2)
        self.assertEqual(stats.low_stock_products, 2)
        self.assertEqual(stats.total_customers, 1)
        self.assertEqual(stats.total_orders, 0)


if __name__ == "__main__":
    unittest.main()
