"""
Storekeeper console for StoreFlow.

Wires :class:`app.StoreApp` into an interactive menu: select or register
a customer, build a cart, redeem points, check out, manage stock and send
alerts.  All I/O lives here so the business logic stays testable.  The
REST backend (``app_web.py``) must be running at ``$STOREFLOW_API_BASE``.
"""

import sys

import logging_config
from app import LOW_STOCK_THRESHOLD, StoreApp
from config import load_settings
from store_client import StoreError

MENU = """
-- StoreFlow Storekeeper Console --
1. Employee login
2. Select customer
3. Register customer
4. List / search products
5. Add product to cart
6. Change cart quantity
7. View cart
8. Redeem loyalty points
9. Checkout
10. Add new product
11. Restock / remove stock
12. Send alert
13. Dashboard
14. Reconcile pending orders
0. Exit"""


def _read_int(prompt: str) -> int | None:
    try:
        return int(input(prompt).strip())
    except ValueError:
        print("Please enter a whole number.")
        return None


def _print_products(products) -> None:
    if not products:
        print("No products found.")
        return
    for p in products:
        flag = "  (low stock)" if p.stock_quantity < LOW_STOCK_THRESHOLD else ""
        print(
            f"{p.product_id}  {p.name:<24} {p.category:<10} ${p.price:>7.2f}  "
            f"stock {p.stock_quantity:>4}  aisle {p.aisle}/{p.shelf}{flag}"
        )


def _print_cart(app: StoreApp) -> None:
    lines = app.view_cart()
    if not lines:
        print("Cart is empty.")
        return
    customer = app.session.customer
    if customer:
        print(f"Customer: {customer.name} ({customer.phone_number}), {customer.loyalty_points} points")
    for ln in lines:
        print(f"{ln.name} x {ln.quantity} = ${ln.price * ln.quantity:.2f}")
    b = app.checkout_preview()
    print(f"Subtotal: ${b.subtotal:.2f}")
    if b.points_redeemed:
        print(f"Discount ({b.points_redeemed} points): -${b.discount:.2f}")
    print(f"Total: ${b.total:.2f}   Points earned: {b.points_earned}")


def _handle_choice(app: StoreApp, choice: str) -> bool:
    """Run one menu action; returns False when the operator exits."""
    msg = ""
    if choice == "1":
        employee_id = input("Employee ID: ").strip()
        password = input("Password: ").strip()
        _, msg = app.login_employee(employee_id, password)
    elif choice == "2":
        _, msg = app.find_customer(input("Customer phone: ").strip())
    elif choice == "3":
        phone = input("Phone number: ").strip()
        name = input("Name: ").strip()
        password = input("Password: ").strip()
        _, msg = app.register_customer(phone, name, password)
    elif choice == "4":
        term = input("Name contains (blank for all): ").strip()
        category = input("Category contains (blank for all): ").strip()
        if term or category:
            _print_products(app.search_products(term or None, category or None))
        else:
            _print_products(app.refresh_products())
    elif choice == "5":
        pid = input("Product ID: ").strip()
        qty = _read_int("Quantity: ")
        if qty is not None:
            _, msg = app.add_to_cart(pid, qty)
    elif choice == "6":
        pid = input("Product ID: ").strip()
        qty = _read_int("New quantity (0 removes): ")
        if qty is not None:
            _, msg = app.set_cart_quantity(pid, qty)
    elif choice == "7":
        _print_cart(app)
    elif choice == "8":
        points = _read_int("Points to redeem: ")
        if points is not None:
            _, msg = app.set_discount_points(points)
    elif choice == "9":
        ok, receipt = app.checkout()
        msg = f"\nOrder registered! Receipt:\n{receipt}" if ok else f"Checkout failed: {receipt}"
    elif choice == "10":
        name = input("Product name: ").strip()
        category = input("Category: ").strip()
        aisle = input("Aisle: ").strip()
        shelf = input("Shelf: ").strip()
        try:
            price = float(input("Price: "))
            stock = int(input("Initial stock: "))
        except ValueError:
            msg = "Please enter valid numeric values for price and stock."
        else:
            _, msg = app.add_product(name, category, price, stock, aisle, shelf)
    elif choice == "11":
        pid = input("Product ID: ").strip()
        delta = _read_int("Units to add (negative to remove): ")
        if delta:
            _, msg = app.restock(pid, delta) if delta > 0 else app.remove_stock(pid, -delta)
    elif choice == "12":
        employee_id = input("Employee ID (blank for all): ").strip()
        message = input("Message: ").strip()
        if employee_id:
            _, msg = app.send_alert(employee_id, message)
        else:
            _, msg = app.broadcast_alert(message)
    elif choice == "13":
        stats = app.dashboard()
        msg = (
            f"Products: {stats.total_products} ({stats.low_stock_products} low on stock)\n"
            f"Customers: {stats.total_customers}\n"
            f"Orders: {stats.total_orders} ({stats.pending_orders} pending)\n"
            f"Revenue: ${stats.total_revenue:.2f}"
        )
    elif choice == "14":
        _, msg = app.reconcile_pending_orders()
    elif choice == "0":
        print("Exiting console.")
        return False
    else:
        msg = "Invalid option. Please try again."
    if msg:
        print(msg)
    return True


def interactive_cli() -> None:
    """Run the storekeeper menu until the operator exits."""
    app = StoreApp(settings=load_settings())
    while True:
        print(MENU)
        choice = input("Select an option: ").strip()
        try:
            if not _handle_choice(app, choice):
                break
        except StoreError as e:
            print(f"Store error: {e.message}")


def main() -> None:
    logging_config.configure_logging(load_settings().log_dir)
    try:
        interactive_cli()
    except KeyboardInterrupt:
        print("\nInterrupted by user. Exiting.")
        sys.exit(0)


if __name__ == "__main__":
    main()
