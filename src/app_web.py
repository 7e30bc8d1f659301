"""
JSON REST backend for StoreFlow.

Built on the standard library's ``ThreadingHTTPServer``; every request runs
on its own thread with its own SQLite connection.  Routes map one-to-one on
the DAOs:

    /api/products[/<productId>[/decrement]]
    /api/customers[/login | /<phoneNumber>[/loyalty]]
    /api/orders[/<orderId>]
    /api/employees[/login | /<employeeId>]
    /api/alerts[/<alertId>]
    /metrics

Errors are answered as ``{"message": ...}`` with 400 (validation), 401
(bad credentials), 404 (unknown document or route), 409 (duplicate id or
a failed stock/points condition) or 500.

Run the server with:

    python app_web.py

It listens on ``$HOST:$PORT`` (default 0.0.0.0:5000).  Use CTRL+C to stop.
"""

from __future__ import annotations

import json
import logging
import re
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, unquote, urlsplit

import logging_config
from config import Settings, load_settings
from dao import (
    AlertDAO,
    ConditionFailed,
    CustomerDAO,
    DocumentValidationError,
    DuplicateKeyError,
    EmployeeDAO,
    OrderDAO,
    ProductDAO,
    close_request_connection,
    get_request_connection,
)
from metrics import HTTP_REQUESTS_TOTAL, HTTP_REQUEST_LATENCY_SECONDS, generate_metrics_text

logger = logging.getLogger(__name__)


class BadRequest(Exception):
    """The request body or query could not be understood."""


# (method, path pattern, handler name); first match wins
_ROUTES: List[Tuple[str, "re.Pattern[str]", str]] = [
    (m, re.compile(p), h)
    for m, p, h in [
        ("GET", r"^/api/products$", "_list_products"),
        ("POST", r"^/api/products$", "_create_product"),
        ("POST", r"^/api/products/([^/]+)/decrement$", "_decrement_stock"),
        ("POST", r"^/api/products/([^/]+)/restock$", "_restock"),
        ("GET", r"^/api/products/([^/]+)$", "_get_product"),
        ("PUT", r"^/api/products/([^/]+)$", "_update_product"),
        ("DELETE", r"^/api/products/([^/]+)$", "_delete_product"),
        ("POST", r"^/api/customers/login$", "_login_customer"),
        ("GET", r"^/api/customers$", "_list_customers"),
        ("POST", r"^/api/customers$", "_create_customer"),
        ("POST", r"^/api/customers/([^/]+)/loyalty$", "_apply_loyalty"),
        ("GET", r"^/api/customers/([^/]+)$", "_get_customer"),
        ("PUT", r"^/api/customers/([^/]+)$", "_update_customer"),
        ("DELETE", r"^/api/customers/([^/]+)$", "_delete_customer"),
        ("GET", r"^/api/orders$", "_list_orders"),
        ("POST", r"^/api/orders$", "_create_order"),
        ("GET", r"^/api/orders/([^/]+)$", "_get_order"),
        ("PUT", r"^/api/orders/([^/]+)$", "_update_order"),
        ("DELETE", r"^/api/orders/([^/]+)$", "_delete_order"),
        ("POST", r"^/api/employees/login$", "_login_employee"),
        ("GET", r"^/api/employees$", "_list_employees"),
        ("POST", r"^/api/employees$", "_create_employee"),
        ("GET", r"^/api/employees/([^/]+)$", "_get_employee"),
        ("PUT", r"^/api/employees/([^/]+)$", "_update_employee"),
        ("DELETE", r"^/api/employees/([^/]+)$", "_delete_employee"),
        ("GET", r"^/api/alerts$", "_list_alerts"),
        ("POST", r"^/api/alerts$", "_create_alert"),
        ("GET", r"^/api/alerts/([^/]+)$", "_get_alert"),
        ("PUT", r"^/api/alerts/([^/]+)$", "_update_alert"),
        ("DELETE", r"^/api/alerts/([^/]+)$", "_delete_alert"),
    ]
]


def _warmup_db() -> None:
    """Open (and if needed create) the database before serving."""
    get_request_connection()
    close_request_connection()


class StoreHTTPRequestHandler(BaseHTTPRequestHandler):
    """Request handler for the StoreFlow REST API."""

    server_version = "StoreFlow/1.0"
    cors_origins: List[str] = []

    # -------------------
    # Response utilities
    # -------------------
    def _cors_headers(self) -> None:
        origin = self.headers.get("Origin")
        if origin and origin in self.cors_origins:
            self.send_header("Access-Control-Allow-Origin", origin)
            self.send_header("Access-Control-Allow-Methods", "GET, POST, PUT, DELETE")
            self.send_header("Access-Control-Allow-Headers", "Content-Type")
            self.send_header("Access-Control-Allow-Credentials", "true")
            self.send_header("Vary", "Origin")

    def _send_json(self, payload: Any, status: int = 200) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self._cors_headers()
        self.end_headers()
        self.wfile.write(body)
        self._record_metrics(status)

    def _send_message(self, message: str, status: int) -> None:
        self._send_json({"message": message}, status)

    def _record_metrics(self, status: int) -> None:
        if self._metrics_recorded:
            return
        self._metrics_recorded = True
        endpoint = self._endpoint_label()
        HTTP_REQUESTS_TOTAL.inc(endpoint=endpoint, method=self.command, status=str(status))
        HTTP_REQUEST_LATENCY_SECONDS.observe(
            time.perf_counter() - self._request_start_time, endpoint=endpoint
        )

    def _endpoint_label(self) -> str:
        # Collapse identifiers so the label set stays bounded
        parts = urlsplit(self.path).path.rstrip("/").split("/")
        if len(parts) > 3 and parts[1] == "api" and parts[3] != "login":
            parts[3] = ":id"
        return "/".join(parts) or "/"

    def log_message(self, format: str, *args: Any) -> None:
        logger.info(
            format % args,
            extra={"extra": {"client": self.client_address[0], "method": self.command}},
        )

    # --------------
    # Request input
    # --------------
    def _read_json(self) -> Dict[str, Any]:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            raise BadRequest("Invalid Content-Length header")
        raw = self.rfile.read(length) if length > 0 else b""
        if not raw:
            return {}
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise BadRequest("Request body must be valid JSON")
        if not isinstance(data, dict):
            raise BadRequest("Request body must be a JSON object")
        return data

    def _query(self) -> Dict[str, str]:
        qs = parse_qs(urlsplit(self.path).query)
        return {k: v[0] for k, v in qs.items() if v}

    # --------------
    # Request entry
    # --------------
    def _dispatch(self) -> None:
        self._request_start_time = time.perf_counter()
        self._metrics_recorded = False
        path = urlsplit(self.path).path.rstrip("/") or "/"
        try:
            if path == "/metrics" and self.command == "GET":
                self._send_metrics()
                return
            for method, pattern, name in _ROUTES:
                if method != self.command:
                    continue
                match = pattern.match(path)
                if match:
                    handler: Callable[..., None] = getattr(self, name)
                    handler(*(unquote(g) for g in match.groups()))
                    return
            self._send_message("Route not found", 404)
        except (BadRequest, DocumentValidationError) as e:
            self._send_message(str(e), 400)
        except (DuplicateKeyError, ConditionFailed) as e:
            self._send_message(str(e), 409)
        except Exception:
            logger.exception(f"Unhandled error for {self.command} {path}")
            self._send_message("Something went wrong!", 500)
        finally:
            close_request_connection()

    def do_GET(self) -> None:
        self._dispatch()

    def do_POST(self) -> None:
        self._dispatch()

    def do_PUT(self) -> None:
        self._dispatch()

    def do_DELETE(self) -> None:
        self._dispatch()

    def do_OPTIONS(self) -> None:
        self._request_start_time = time.perf_counter()
        self._metrics_recorded = False
        self.send_response(204)
        self._cors_headers()
        self.send_header("Content-Length", "0")
        self.end_headers()
        self._record_metrics(204)

    def _send_metrics(self) -> None:
        output = generate_metrics_text()
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; version=0.0.4")
        self.send_header("Content-Length", str(len(output)))
        self.end_headers()
        self.wfile.write(output)
        self._record_metrics(200)

    # -------------------------------------------------------------
    # Shared CRUD helpers
    # -------------------------------------------------------------
    def _found_or_404(self, doc: Optional[Any], kind: str, status: int = 200) -> None:
        if doc is None:
            self._send_message(f"{kind} not found", 404)
        else:
            self._send_json(doc.to_document(), status)

    def _deleted_or_404(self, deleted: bool, kind: str) -> None:
        if deleted:
            self._send_message(f"{kind} deleted successfully", 200)
        else:
            self._send_message(f"{kind} not found", 404)

    # -------------------------------------------------------------
    # Products
    # -------------------------------------------------------------
    def _list_products(self) -> None:
        q = self._query()
        products = ProductDAO().list_products(name=q.get("name"), category=q.get("category"))
        self._send_json([p.to_document() for p in products])

    def _create_product(self) -> None:
        product = ProductDAO().create_product(self._read_json())
        self._send_json(product.to_document(), 201)

    def _get_product(self, product_id: str) -> None:
        self._found_or_404(ProductDAO().get_product(product_id), "Product")

    def _update_product(self, product_id: str) -> None:
        self._found_or_404(ProductDAO().update_product(product_id, self._read_json()), "Product")

    def _delete_product(self, product_id: str) -> None:
        self._deleted_or_404(ProductDAO().delete(product_id), "Product")

    def _decrement_stock(self, product_id: str) -> None:
        body = self._read_json()
        product, applied = ProductDAO().decrease_stock_if_available(
            product_id, body.get("quantity"), body.get("orderId")
        )
        if product is None:
            self._send_message("Product not found", 404)
            return
        self._send_json({"product": product.to_document(), "applied": applied})

    def _restock(self, product_id: str) -> None:
        product = ProductDAO().increase_stock(product_id, self._read_json().get("quantity"))
        self._found_or_404(product, "Product")

    # -------------------------------------------------------------
    # Customers
    # -------------------------------------------------------------
    def _list_customers(self) -> None:
        self._send_json([c.to_document() for c in CustomerDAO().list_customers()])

    def _create_customer(self) -> None:
        customer = CustomerDAO().create_customer(self._read_json())
        self._send_json(customer.to_document(), 201)

    def _get_customer(self, phone: str) -> None:
        self._found_or_404(CustomerDAO().get_customer(phone), "Customer")

    def _update_customer(self, phone: str) -> None:
        self._found_or_404(CustomerDAO().update_customer(phone, self._read_json()), "Customer")

    def _delete_customer(self, phone: str) -> None:
        self._deleted_or_404(CustomerDAO().delete(phone), "Customer")

    def _apply_loyalty(self, phone: str) -> None:
        body = self._read_json()
        customer, applied = CustomerDAO().apply_loyalty(
            phone, body.get("orderId"), body.get("redeem", 0), body.get("earn", 0)
        )
        if customer is None:
            self._send_message("Customer not found", 404)
            return
        self._send_json({"customer": customer.to_document(), "applied": applied})

    def _login_customer(self) -> None:
        body = self._read_json()
        phone, password = body.get("phoneNumber"), body.get("password")
        if not phone or not password:
            raise BadRequest("phoneNumber and password are required")
        dao = CustomerDAO()
        if dao.get_customer(phone) is None:
            self._send_message("Customer not found", 404)
            return
        customer = dao.authenticate(phone, password)
        if customer is None:
            self._send_message("Invalid credentials", 401)
            return
        self._send_json(customer.to_document())

    # -------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------
    def _list_orders(self) -> None:
        q = self._query()
        orders = OrderDAO().list_orders(
            customer_id=q.get("customerId"),
            status=q.get("status"),
            start_date=q.get("startDate"),
            end_date=q.get("endDate"),
        )
        self._send_json([o.to_document() for o in orders])

    def _create_order(self) -> None:
        order = OrderDAO().create_order(self._read_json())
        self._send_json(order.to_document(), 201)

    def _get_order(self, order_id: str) -> None:
        self._found_or_404(OrderDAO().get_order(order_id), "Order")

    def _update_order(self, order_id: str) -> None:
        self._found_or_404(OrderDAO().update_order(order_id, self._read_json()), "Order")

    def _delete_order(self, order_id: str) -> None:
        self._deleted_or_404(OrderDAO().delete(order_id), "Order")

    # -------------------------------------------------------------
    # Employees
    # -------------------------------------------------------------
    def _list_employees(self) -> None:
        self._send_json([e.to_document() for e in EmployeeDAO().list_employees()])

    def _create_employee(self) -> None:
        employee = EmployeeDAO().create_employee(self._read_json())
        self._send_json(employee.to_document(), 201)

    def _get_employee(self, employee_id: str) -> None:
        self._found_or_404(EmployeeDAO().get_employee(employee_id), "Employee")

    def _update_employee(self, employee_id: str) -> None:
        self._found_or_404(
            EmployeeDAO().update_employee(employee_id, self._read_json()), "Employee"
        )

    def _delete_employee(self, employee_id: str) -> None:
        self._deleted_or_404(EmployeeDAO().delete(employee_id), "Employee")

    def _login_employee(self) -> None:
        body = self._read_json()
        employee_id, password = body.get("employeeId"), body.get("password")
        if not employee_id or not password:
            raise BadRequest("employeeId and password are required")
        dao = EmployeeDAO()
        if dao.get_employee(employee_id) is None:
            self._send_message("Employee not found", 404)
            return
        employee = dao.authenticate(employee_id, password)
        if employee is None:
            self._send_message("Invalid credentials", 401)
            return
        self._send_json({"employeeId": employee.employee_id, "name": employee.name})

    # -------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------
    def _list_alerts(self) -> None:
        alerts = AlertDAO().list_alerts(employee_id=self._query().get("employeeId"))
        self._send_json([a.to_document() for a in alerts])

    def _create_alert(self) -> None:
        alert = AlertDAO().create_alert(self._read_json())
        self._send_json(alert.to_document(), 201)

    def _get_alert(self, alert_id: str) -> None:
        self._found_or_404(AlertDAO().get_alert(alert_id), "Alert")

    def _update_alert(self, alert_id: str) -> None:
        self._found_or_404(AlertDAO().update_alert(alert_id, self._read_json()), "Alert")

    def _delete_alert(self, alert_id: str) -> None:
        self._deleted_or_404(AlertDAO().delete(alert_id), "Alert")


def make_server(
    host: str = "0.0.0.0", port: int = 5000, settings: Settings | None = None
) -> ThreadingHTTPServer:
    """Build (but do not start) a server whose handler uses ``settings``' CORS list."""
    settings = settings or load_settings()
    handler = type(
        "ConfiguredStoreHandler",
        (StoreHTTPRequestHandler,),
        {"cors_origins": list(settings.cors_origins)},
    )
    httpd = ThreadingHTTPServer((host, port), handler)
    httpd.daemon_threads = True
    return httpd


def run_server(host: str = "0.0.0.0", port: int = 5000, settings: Settings | None = None) -> None:
    """Start the threaded HTTP server and serve requests forever."""
    httpd = make_server(host, port, settings)
    logger.info(f"Serving on http://{host}:{port}")
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        httpd.server_close()


def main() -> None:
    settings = load_settings()
    logging_config.configure_logging(settings.log_dir)
    _warmup_db()
    if settings.reconcile_interval > 0:
        from order_commit import OrderReconciler
        from store_client import StoreClient

        client = StoreClient(base_url=settings.api_base, timeout=settings.http_timeout)
        OrderReconciler(client).start_reconciler_thread(settings.reconcile_interval)
        logger.info(f"Order reconciler running every {settings.reconcile_interval}s")
    run_server(settings.host, settings.port, settings)


if __name__ == "__main__":
    main()
