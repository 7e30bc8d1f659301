"""HTTP client for the StoreFlow REST backend.

Every call carries a bounded timeout and is attempted exactly once.  A
non-2xx response is raised as :class:`StoreError` carrying the server's
``message``; callers decide whether to surface it or retry.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

from config import load_settings
from dao import Alert, Customer, Employee, Order, Product

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """The store rejected a request."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class DuplicateIdentifierError(StoreError):
    """An insert used an identifier that already exists."""


class StoreUnavailableError(StoreError):
    """The store could not be reached or did not answer in time."""


def _seg(value: str) -> str:
    return quote(str(value), safe="")


class StoreClient:
    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ):
        settings = load_settings()
        self.base_url = (base_url or settings.api_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.http_timeout
        self.session = session or requests.Session()

    def close(self) -> None:
        self.session.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        params: Dict[str, Any] | None = None,
        body: Any = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        if params:
            params = {k: v for k, v in params.items() if v not in (None, "")}
        try:
            response = self.session.request(
                method, url, params=params or None, json=body, timeout=self.timeout
            )
        except requests.Timeout as e:
            logger.warning(f"{method} {path} timed out", extra={"extra": {"url": url}})
            raise StoreUnavailableError(f"Store did not respond within {self.timeout}s") from e
        except requests.ConnectionError as e:
            logger.warning(f"{method} {path} failed to connect", extra={"extra": {"url": url}})
            raise StoreUnavailableError(f"Store unreachable: {e}") from e
        except requests.RequestException as e:
            logger.warning(f"{method} {path} failed: {type(e).__name__}", extra={"extra": {"url": url}})
            raise StoreUnavailableError(f"Store request failed: {e}") from e

        try:
            data = response.json() if response.content else None
        except ValueError:
            data = None

        if response.ok:
            return data

        message = data.get("message") if isinstance(data, dict) else None
        message = message or response.reason or f"HTTP {response.status_code}"
        if response.status_code == 409 and "already exists" in message:
            raise DuplicateIdentifierError(message, response.status_code)
        raise StoreError(message, response.status_code)

    def _get_or_none(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            return self._request("GET", path)
        except StoreError as e:
            if e.status == 404:
                return None
            raise

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def list_products(self, name: str | None = None, category: str | None = None) -> List[Product]:
        docs = self._request("GET", "/products", params={"name": name, "category": category})
        return [Product.from_document(d) for d in docs]

    def get_product(self, product_id: str) -> Optional[Product]:
        doc = self._get_or_none(f"/products/{_seg(product_id)}")
        return Product.from_document(doc) if doc else None

    def create_product(self, doc: Dict[str, Any]) -> Product:
        return Product.from_document(self._request("POST", "/products", body=doc))

    def update_product(self, product_id: str, updates: Dict[str, Any]) -> Product:
        return Product.from_document(
            self._request("PUT", f"/products/{_seg(product_id)}", body=updates)
        )

    def delete_product(self, product_id: str) -> str:
        return self._request("DELETE", f"/products/{_seg(product_id)}")["message"]

    def decrement_stock(
        self, product_id: str, quantity: int, order_id: str | None = None
    ) -> Tuple[Product, bool]:
        """Atomically take ``quantity`` units; returns ``(product, applied)``."""
        body: Dict[str, Any] = {"quantity": quantity}
        if order_id:
            body["orderId"] = order_id
        data = self._request("POST", f"/products/{_seg(product_id)}/decrement", body=body)
        return Product.from_document(data["product"]), bool(data["applied"])

    def restock(self, product_id: str, quantity: int) -> Product:
        return Product.from_document(
            self._request("POST", f"/products/{_seg(product_id)}/restock", body={"quantity": quantity})
        )

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def list_customers(self) -> List[Customer]:
        return [Customer.from_document(d) for d in self._request("GET", "/customers")]

    def get_customer(self, phone_number: str) -> Optional[Customer]:
        doc = self._get_or_none(f"/customers/{_seg(phone_number)}")
        return Customer.from_document(doc) if doc else None

    def create_customer(self, doc: Dict[str, Any]) -> Customer:
        return Customer.from_document(self._request("POST", "/customers", body=doc))

    def update_customer(self, phone_number: str, updates: Dict[str, Any]) -> Customer:
        return Customer.from_document(
            self._request("PUT", f"/customers/{_seg(phone_number)}", body=updates)
        )

    def delete_customer(self, phone_number: str) -> str:
        return self._request("DELETE", f"/customers/{_seg(phone_number)}")["message"]

    def apply_loyalty(
        self, phone_number: str, order_id: str, redeem: int, earn: int
    ) -> Tuple[Customer, bool]:
        data = self._request(
            "POST",
            f"/customers/{_seg(phone_number)}/loyalty",
            body={"orderId": order_id, "redeem": redeem, "earn": earn},
        )
        return Customer.from_document(data["customer"]), bool(data["applied"])

    def login_customer(self, phone_number: str, password: str) -> Dict[str, Any]:
        return self._request(
            "POST", "/customers/login", body={"phoneNumber": phone_number, "password": password}
        )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def list_orders(
        self,
        customer_id: str | None = None,
        status: str | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> List[Order]:
        params = {
            "customerId": customer_id,
            "status": status,
            "startDate": start_date,
            "endDate": end_date,
        }
        return [Order.from_document(d) for d in self._request("GET", "/orders", params=params)]

    def get_order(self, order_id: str) -> Optional[Order]:
        doc = self._get_or_none(f"/orders/{_seg(order_id)}")
        return Order.from_document(doc) if doc else None

    def create_order(self, doc: Dict[str, Any]) -> Order:
        return Order.from_document(self._request("POST", "/orders", body=doc))

    def update_order(self, order_id: str, updates: Dict[str, Any]) -> Order:
        return Order.from_document(self._request("PUT", f"/orders/{_seg(order_id)}", body=updates))

    def delete_order(self, order_id: str) -> str:
        return self._request("DELETE", f"/orders/{_seg(order_id)}")["message"]

    # ------------------------------------------------------------------
    # Employees
    # ------------------------------------------------------------------

    def list_employees(self) -> List[Employee]:
        return [Employee.from_document(d) for d in self._request("GET", "/employees")]

    def get_employee(self, employee_id: str) -> Optional[Employee]:
        doc = self._get_or_none(f"/employees/{_seg(employee_id)}")
        return Employee.from_document(doc) if doc else None

    def create_employee(self, doc: Dict[str, Any]) -> Employee:
        return Employee.from_document(self._request("POST", "/employees", body=doc))

    def update_employee(self, employee_id: str, updates: Dict[str, Any]) -> Employee:
        return Employee.from_document(
            self._request("PUT", f"/employees/{_seg(employee_id)}", body=updates)
        )

    def delete_employee(self, employee_id: str) -> str:
        return self._request("DELETE", f"/employees/{_seg(employee_id)}")["message"]

    def login_employee(self, employee_id: str, password: str) -> Dict[str, Any]:
        return self._request(
            "POST", "/employees/login", body={"employeeId": employee_id, "password": password}
        )

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def list_alerts(self, employee_id: str | None = None) -> List[Alert]:
        docs = self._request("GET", "/alerts", params={"employeeId": employee_id})
        return [Alert.from_document(d) for d in docs]

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        doc = self._get_or_none(f"/alerts/{_seg(alert_id)}")
        return Alert.from_document(doc) if doc else None

    def create_alert(self, doc: Dict[str, Any]) -> Alert:
        return Alert.from_document(self._request("POST", "/alerts", body=doc))

    def update_alert(self, alert_id: str, updates: Dict[str, Any]) -> Alert:
        return Alert.from_document(self._request("PUT", f"/alerts/{_seg(alert_id)}", body=updates))

    def delete_alert(self, alert_id: str) -> str:
        return self._request("DELETE", f"/alerts/{_seg(alert_id)}")["message"]
