# src/app.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from checkout import (
    CheckoutBreakdown,
    CheckoutSession,
    CheckoutValidationError,
    CartLine,
    compute_breakdown,
)
from config import Settings, load_settings
from dao import Alert, AlertCopy, Order, Product, now_iso
from order_commit import CommitResult, OrderCommitSequence, OrderReconciler
from store_client import StoreClient, StoreError

logger = logging.getLogger(__name__)

# Products below this many units are flagged on the dashboards
LOW_STOCK_THRESHOLD = 10


def _new_id(prefix: str, suffix: str = "") -> str:
    ident = f"{prefix}{int(time.time() * 1000)}"
    return f"{ident}_{suffix}" if suffix else ident


@dataclass
class DashboardStats:
    total_products: int
    low_stock_products: int
    total_customers: int
    total_orders: int
    pending_orders: int
    total_revenue: float


class StoreApp:
    """
    Operator-side business logic for StoreFlow: customer lookup, the cart,
    checkout, stock management and alerts.  All persistence goes through
    the REST backend via :class:`StoreClient`; methods used by the console
    return ``(ok, message)`` tuples instead of raising.
    """

    def __init__(self, client: StoreClient | None = None, settings: Settings | None = None) -> None:
        settings = settings or load_settings()
        self.client = client or StoreClient(settings.api_base, settings.http_timeout)
        self.session = CheckoutSession(
            point_value=settings.point_value, earn_rate=settings.earn_rate
        )
        self.commit_sequence = OrderCommitSequence(self.client)
        self.reconciler = OrderReconciler(self.client)
        self.current_employee: Optional[Dict[str, str]] = None

    # ---- Authentication ----

    def login_employee(self, employee_id: str, password: str) -> Tuple[bool, str]:
        try:
            info = self.client.login_employee(employee_id, password)
        except StoreError as e:
            return False, e.message
        self.current_employee = info
        logger.info("Employee logged in", extra={"user_id": employee_id})
        return True, f"Welcome, {info['name']}!"

    def login_customer(self, phone_number: str, password: str) -> Tuple[bool, str]:
        try:
            doc = self.client.login_customer(phone_number, password)
        except StoreError as e:
            return False, e.message
        return True, f"Welcome, {doc['name']}! You have {doc['loyaltyPoints']} points."

    # ---- Customers ----

    def find_customer(self, phone_number: str) -> Tuple[bool, str]:
        """Look up a customer and select them for the current checkout."""
        try:
            customer = self.client.get_customer(phone_number)
        except StoreError as e:
            return False, e.message
        if customer is None:
            return False, "Customer not found."
        self.session.select_customer(customer)
        return True, f"{customer.name} selected ({customer.loyalty_points} points)."

    def register_customer(self, phone_number: str, name: str, password: str) -> Tuple[bool, str]:
        phone_number = phone_number.strip()
        if not phone_number.isdigit() or len(phone_number) < 10:
            return False, "Phone number must have at least 10 digits."
        if len(password) < 6:
            return False, "Password must be at least 6 characters."
        try:
            customer = self.client.create_customer(
                {"phoneNumber": phone_number, "name": name, "password": password}
            )
        except StoreError as e:
            return False, e.message
        self.session.select_customer(customer)
        return True, f"Customer {customer.name} registered."

    def order_history(self, phone_number: str) -> List[Order]:
        return self.client.list_orders(customer_id=phone_number)

    # ---- Product catalogue ----

    def refresh_products(self) -> List[Product]:
        products = self.client.list_products()
        self.session.refresh_products(products)
        return products

    def search_products(self, name: str | None = None, category: str | None = None) -> List[Product]:
        return self.client.list_products(name=name, category=category)

    def low_stock_products(self) -> List[Product]:
        return [p for p in self.refresh_products() if p.stock_quantity < LOW_STOCK_THRESHOLD]

    # ---- Cart operations ----

    def add_to_cart(self, product_id: str, qty: int) -> Tuple[bool, str]:
        product = self.session.products.get(product_id)
        if product is None:
            try:
                product = self.client.get_product(product_id)
            except StoreError as e:
                return False, e.message
            if product is None:
                return False, "Product not found."
        try:
            self.session.add_product(product, qty)
        except CheckoutValidationError as e:
            return False, str(e)
        return True, f"Added {qty} x {product.name} to cart"

    def set_cart_quantity(self, product_id: str, qty: int) -> Tuple[bool, str]:
        try:
            self.session.set_quantity(product_id, qty)
        except CheckoutValidationError as e:
            return False, str(e)
        return True, "Cart updated."

    def remove_from_cart(self, product_id: str) -> None:
        self.session.remove_line(product_id)

    def view_cart(self) -> List[CartLine]:
        return list(self.session.lines)

    def set_discount_points(self, points: int) -> Tuple[bool, str]:
        try:
            self.session.set_discount_points(points)
        except CheckoutValidationError as e:
            return False, str(e)
        return True, f"Redeeming {points} points."

    def checkout_preview(self) -> CheckoutBreakdown:
        return compute_breakdown(self.session)

    # ---- Checkout ----

    def checkout(self) -> Tuple[bool, str]:
        """Commit the current session and return a receipt or the failure reason."""
        try:
            result = self.commit_sequence.commit(self.session)
        except CheckoutValidationError as e:
            return False, str(e)
        if not result.ok:
            if result.completed_steps:
                # The pending order now belongs to the reconciler
                self.session.clear()
                return False, self._failure_text(result)
            text = self._failure_text(result)
            if self.session.pending_order_id:
                text += f" Retrying checkout reuses order ID {self.session.pending_order_id}."
            return False, text
        receipt = self._receipt(result)
        self.session.clear()
        try:
            self.refresh_products()
        except StoreError as e:
            logger.warning(f"Product refresh after checkout failed: {e.message}")
        return True, receipt

    def _receipt(self, result: CommitResult) -> str:
        b = result.breakdown
        lines = [f"Order ID: {result.order_id}"]
        for ln in self.session.lines:
            lines.append(
                f" - {ln.name} x {ln.quantity} @ {ln.price:.2f} = {ln.price * ln.quantity:.2f}"
            )
        lines.append(f"Subtotal: {b.subtotal:.2f}")
        if b.points_redeemed:
            lines.append(f"Discount ({b.points_redeemed} points): -{b.discount:.2f}")
        lines.append(f"Total: {b.total:.2f}")
        lines.append(f"Points earned: {b.points_earned}")
        if result.customer is not None:
            lines.append(f"Points balance: {result.customer.loyalty_points}")
        return "\n".join(lines)

    @staticmethod
    def _failure_text(result: CommitResult) -> str:
        if result.failed_at is None or not result.completed_steps:
            return f"Order could not be created: {result.message}"
        done = ", ".join(s.value for s in result.completed_steps)
        return (
            f"Order {result.order_id} is pending ({result.failed_at.value} failed: "
            f"{result.message}). Completed: {done}. It will be completed on reconciliation."
        )

    def reconcile_pending_orders(self) -> Tuple[bool, str]:
        try:
            results = self.reconciler.reconcile_pending()
        except StoreError as e:
            return False, e.message
        done = sum(1 for r in results if r.ok)
        msg = f"Reconciled {done} of {len(results)} pending orders."
        if self.reconciler.escalated:
            ids = ", ".join(sorted(self.reconciler.escalated))
            msg += f" Needs manual reconciliation: {ids}."
        return done == len(results), msg

    # ---- Stock management ----

    def add_product(
        self, name: str, category: str, price: float, stock: int, aisle: str, shelf: str
    ) -> Tuple[bool, str]:
        doc = {
            "productId": _new_id("PROD"),
            "name": name,
            "category": category,
            "price": price,
            "stockQuantity": stock,
            "aisle": aisle,
            "shelf": shelf,
        }
        try:
            product = self.client.create_product(doc)
        except StoreError as e:
            return False, e.message
        return True, f"Added product {product.product_id}."

    def restock(self, product_id: str, qty: int) -> Tuple[bool, str]:
        try:
            product = self.client.restock(product_id, qty)
        except StoreError as e:
            return False, e.message
        return True, f"{product.name} now has {product.stock_quantity} in stock."

    def remove_stock(self, product_id: str, qty: int) -> Tuple[bool, str]:
        try:
            product, _ = self.client.decrement_stock(product_id, qty)
        except StoreError as e:
            return False, e.message
        return True, f"{product.name} now has {product.stock_quantity} in stock."

    def delete_product(self, product_id: str) -> Tuple[bool, str]:
        try:
            return True, self.client.delete_product(product_id)
        except StoreError as e:
            return False, e.message

    # ---- Alerts ----

    def send_alert(self, employee_id: str, message: str, alert_id: str | None = None) -> Tuple[bool, str]:
        """Create an alert and append its copy to the employee's alert list."""
        if not message.strip():
            return False, "Please enter an alert message."
        alert_id = alert_id or _new_id("ALERT")
        try:
            employee = self.client.get_employee(employee_id)
            if employee is None:
                return False, "Employee not found."
            alert = self.client.create_alert(
                {"alertId": alert_id, "message": message, "employeeId": employee_id,
                 "timestamp": now_iso(), "status": "pending"}
            )
            copies = [c.to_document() for c in employee.alerts]
            copies.append(AlertCopy(alert.alert_id, alert.message, alert.timestamp).to_document())
            self.client.update_employee(employee_id, {"alerts": copies})
        except StoreError as e:
            return False, e.message
        return True, f"Alert {alert_id} sent to {employee.name}."

    def broadcast_alert(self, message: str) -> Tuple[bool, str]:
        try:
            employees = self.client.list_employees()
        except StoreError as e:
            return False, e.message
        sent = 0
        for emp in employees:
            ok, msg = self.send_alert(emp.employee_id, message, _new_id("ALERT", emp.employee_id))
            if not ok:
                return False, f"Sent to {sent} of {len(employees)} employees; {msg}"
            sent += 1
        return True, f"Alert sent to all {sent} employees!"

    def list_alerts(self, employee_id: str | None = None) -> List[Alert]:
        return self.client.list_alerts(employee_id)

    def mark_alert_delivered(self, alert_id: str) -> Tuple[bool, str]:
        try:
            alert = self.client.update_alert(alert_id, {"status": "delivered"})
            employee = self.client.get_employee(alert.employee_id)
            if employee is not None:
                copies = [c.to_document() for c in employee.alerts]
                for c in copies:
                    if c["alertId"] == alert_id:
                        c["status"] = "delivered"
                self.client.update_employee(employee.employee_id, {"alerts": copies})
        except StoreError as e:
            return False, e.message
        return True, f"Alert {alert_id} marked as delivered."

    # ---- Dashboard ----

    def dashboard(self) -> DashboardStats:
        products = self.client.list_products()
        orders = self.client.list_orders()
        return DashboardStats(
            total_products=len(products),
            low_stock_products=sum(1 for p in products if p.stock_quantity < LOW_STOCK_THRESHOLD),
            total_customers=len(self.client.list_customers()),
            total_orders=len(orders),
            pending_orders=sum(1 for o in orders if o.status == "pending"),
            total_revenue=round(sum(o.total_amount for o in orders if o.status == "completed"), 2),
        )
