"""
Populate the StoreFlow database with demo data.

Wipes every collection, then inserts 50 customers (phone ``555`` plus seven
digits, password ``password123``), 100 products spread over aisles A1-A10
and shelves A-E, and ten employees (``emp001`` .. ``emp010`` with password
``<id>pass``).  Writes go straight through the DAOs, so the REST backend
does not need to be running.

    python seed.py [--seed N] [--customers N] [--products N]
"""

from __future__ import annotations

import argparse
import logging
import random
from typing import List, Optional

import logging_config
from dao import CustomerDAO, EmployeeDAO, ProductDAO, get_request_connection

logger = logging.getLogger(__name__)

FIRST_NAMES = ["John", "Jane", "Mike", "Sarah", "David", "Lisa", "Tom", "Amy", "Chris", "Emma"]
LAST_NAMES = ["Smith", "Johnson", "Williams", "Brown", "Jones", "Garcia", "Miller", "Davis",
              "Rodriguez", "Martinez"]

CATALOGUE = [
    ("Whole Milk", "Dairy", 3.49),
    ("Cheddar Cheese", "Dairy", 4.99),
    ("Greek Yogurt", "Dairy", 5.99),
    ("White Bread", "Bakery", 2.49),
    ("Whole Wheat Bread", "Bakery", 2.99),
    ("Croissants", "Bakery", 3.99),
    ("Bananas", "Produce", 1.29),
    ("Apples", "Produce", 2.99),
    ("Carrots", "Produce", 1.99),
    ("Spinach", "Produce", 2.49),
    ("Basmati Rice", "Grains", 5.99),
    ("Quinoa", "Grains", 7.99),
    ("Pasta", "Grains", 1.99),
    ("Sugar 1kg", "Pantry", 2.99),
    ("Salt", "Pantry", 1.49),
    ("Olive Oil", "Pantry", 8.99),
    ("Potato Chips", "Snacks", 3.49),
    ("Chocolate Bar", "Snacks", 2.99),
    ("Cookies", "Snacks", 4.49),
    ("Orange Juice", "Beverages", 4.99),
]

EMPLOYEES = [
    ("emp001", "Aakash Mehta"),
    ("emp002", "Priya Sharma"),
    ("emp003", "Rahul Verma"),
    ("emp004", "Neha Kapoor"),
    ("emp005", "Rohan Das"),
    ("emp006", "Anjali Singh"),
    ("emp007", "Deepak Joshi"),
    ("emp008", "Sneha Rao"),
    ("emp009", "Vikram Chauhan"),
    ("emp010", "Tanya Iyer"),
]

_TABLES = ("Customer", "Orders", "Product", "Employee", "Alert", "StockMovement")


def clear_collections() -> None:
    conn = get_request_connection()
    with conn:
        for table in _TABLES:
            conn.execute(f"DELETE FROM {table};")


def seed(customers: int = 50, products: int = 100, rng: Optional[random.Random] = None) -> dict:
    """Reset the database and insert demo documents; returns the counts inserted."""
    rng = rng or random.Random()
    clear_collections()

    customer_dao = CustomerDAO()
    for i in range(customers):
        customer_dao.create_customer({
            "phoneNumber": f"555{1000000 + i:07d}",
            "name": f"{rng.choice(FIRST_NAMES)} {rng.choice(LAST_NAMES)}",
            "password": "password123",
            "loyaltyPoints": rng.randint(0, 100),
        })

    product_dao = ProductDAO()
    for i in range(products):
        name, category, price = CATALOGUE[i % len(CATALOGUE)]
        variation = f" {i // len(CATALOGUE) + 1}" if i >= len(CATALOGUE) else ""
        product_dao.create_product({
            "productId": f"PROD{i + 1:03d}",
            "name": name + variation,
            "category": category,
            "price": round(max(0.5, price + rng.uniform(-1, 1)), 2),
            "stockQuantity": rng.randint(10, 100),
            "aisle": f"A{rng.randint(1, 10)}",
            "shelf": rng.choice("ABCDE"),
        })

    employee_dao = EmployeeDAO()
    for employee_id, name in EMPLOYEES:
        employee_dao.create_employee(
            {"employeeId": employee_id, "name": name, "password": f"{employee_id}pass"}
        )

    counts = {"customers": customers, "products": products, "employees": len(EMPLOYEES)}
    logger.info("Database seeded", extra={"extra": counts})
    return counts


def main(argv: List[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Seed the StoreFlow database with demo data.")
    parser.add_argument("--seed", type=int, default=None, help="random seed for repeatable data")
    parser.add_argument("--customers", type=int, default=50)
    parser.add_argument("--products", type=int, default=100)
    args = parser.parse_args(argv)

    logging_config.configure_logging(to_file=False)
    counts = seed(args.customers, args.products, random.Random(args.seed))
    print(f"Seeded {counts['customers']} customers, {counts['products']} products "
          f"and {counts['employees']} employees.")


if __name__ == "__main__":
    main()
