"""
Data access layer for the StoreFlow document collections.

Each collection of the store (products, customers, orders, employees and
alerts) lives in its own SQLite table.  Embedded lists such as a
customer's order history, an order's line items or an employee's alert
copies are stored as JSON text so a row round-trips to the same document
the REST API exposes.

Two writes are special because the checkout flow depends on them:

 - :meth:`ProductDAO.decrease_stock_if_available` is an atomic conditional
   decrement (``stock >= qty``) and, when given an order id, is idempotent
   per (order, product) through the ``StockMovement`` ledger.
 - :meth:`CustomerDAO.apply_loyalty` redeems and awards points and appends
   the order id to the history in a single conditional UPDATE that is a
   no-op when the order id is already recorded.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import resolve_db_path

logger = logging.getLogger(__name__)

_thread_local = threading.local()

_PBKDF2_ITERATIONS = 120_000

ORDER_STATUSES = ("pending", "completed")
ALERT_STATUSES = ("pending", "delivered")

# ------------------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------------------


class DocumentValidationError(ValueError):
    """A document is missing a required field or carries an invalid value."""


class DuplicateKeyError(Exception):
    """An insert collided with an existing identity key."""


class ConditionFailed(Exception):
    """A conditional update matched the document but its guard did not hold."""


# ------------------------------------------------------------------------------
# Schema
# ------------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS Product (
    product_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    category TEXT NOT NULL,
    price REAL NOT NULL CHECK (price >= 0),
    stock_quantity INTEGER NOT NULL CHECK (stock_quantity >= 0),
    aisle TEXT NOT NULL,
    shelf TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS Customer (
    phone_number TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    loyalty_points INTEGER NOT NULL DEFAULT 0 CHECK (loyalty_points >= 0),
    order_history TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS Orders (
    order_id TEXT PRIMARY KEY,
    customer_id TEXT NOT NULL,
    items TEXT NOT NULL DEFAULT '[]',
    order_date TEXT NOT NULL,
    total_amount REAL NOT NULL CHECK (total_amount >= 0),
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'completed')),
    subtotal REAL NOT NULL DEFAULT 0,
    discount REAL NOT NULL DEFAULT 0,
    points_redeemed INTEGER NOT NULL DEFAULT 0,
    points_earned INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_orders_customer ON Orders (customer_id);
CREATE INDEX IF NOT EXISTS idx_orders_status ON Orders (status);

CREATE TABLE IF NOT EXISTS Employee (
    employee_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    alerts TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS Alert (
    alert_id TEXT PRIMARY KEY,
    message TEXT NOT NULL,
    employee_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'delivered')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_alert_employee ON Alert (employee_id);

CREATE TABLE IF NOT EXISTS StockMovement (
    order_id TEXT NOT NULL,
    product_id TEXT NOT NULL,
    quantity INTEGER NOT NULL CHECK (quantity > 0),
    created_at TEXT NOT NULL,
    PRIMARY KEY (order_id, product_id)
);
"""

# ------------------------------------------------------------------------------
# Connection management
# ------------------------------------------------------------------------------


def _ensure_parent_dir(path: str) -> None:
    parent = os.path.dirname(os.path.abspath(path))
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)


def _apply_schema_if_needed(conn: sqlite3.Connection) -> None:
    (ver,) = conn.execute("PRAGMA user_version;").fetchone()
    if int(ver) > 0:
        return
    conn.executescript(_SCHEMA)
    conn.execute("PRAGMA user_version = 1;")


def _new_connection(db_path: Optional[str] = None) -> sqlite3.Connection:
    """Open a configured SQLite connection.

    The connection waits up to ten seconds on a locked database and runs in
    WAL mode so request threads of the HTTP server can read while another
    thread holds the write lock.

    Raises:
        sqlite3.OperationalError: If the database cannot be opened.
    """
    db_path = db_path or resolve_db_path()
    _ensure_parent_dir(db_path)
    try:
        conn = sqlite3.connect(db_path, check_same_thread=False, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 10000;")
        try:
            conn.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.OperationalError:
            # e.g. network filesystems without shared memory support
            pass
        _apply_schema_if_needed(conn)
        return conn
    except sqlite3.OperationalError as e:
        logger.error(f"DB open failed ({db_path}): {e}")
        raise


def get_request_connection() -> sqlite3.Connection:
    """Return the connection bound to the current thread, opening it lazily."""
    conn = getattr(_thread_local, "conn", None)
    if conn is None:
        conn = _new_connection()
        _thread_local.conn = conn
    return conn


def close_request_connection() -> None:
    """Close and forget the current thread's connection, if any."""
    conn = getattr(_thread_local, "conn", None)
    if conn is not None:
        conn.close()
        _thread_local.conn = None


# ------------------------------------------------------------------------------
# Helpers: timestamps, passwords, field coercion
# ------------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


def normalize_timestamp(value: Any) -> str:
    """Return ``value`` as a UTC ISO-8601 string with microsecond precision.

    Accepts ISO strings (a trailing ``Z`` included) and naive values, which
    are taken to be UTC.  Normalising every stored date to one format keeps
    string comparison in SQL equivalent to chronological comparison.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise DocumentValidationError(f"Invalid date: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def hash_password(password: str) -> str:
    """Return a salted PBKDF2-SHA256 hash in ``algo$iterations$salt$digest`` form."""
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), bytes.fromhex(salt), _PBKDF2_ITERATIONS
    ).hex()
    return f"pbkdf2_sha256${_PBKDF2_ITERATIONS}${salt}${digest}"


def verify_password(password: str, stored: str) -> bool:
    try:
        algo, iterations, salt, digest = stored.split("$", 3)
    except ValueError:
        return False
    if algo != "pbkdf2_sha256":
        return False
    candidate = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), bytes.fromhex(salt), int(iterations)
    ).hex()
    return hmac.compare_digest(candidate, digest)


def _as_text(value: Any, path: str) -> str:
    if value is None or isinstance(value, (dict, list)):
        raise DocumentValidationError(f"{path} must be a string")
    text = str(value).strip()
    if not text:
        raise DocumentValidationError(f"{path} is required")
    return text


def _as_number(value: Any, path: str) -> float:
    if isinstance(value, bool):
        raise DocumentValidationError(f"{path} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise DocumentValidationError(f"{path} must be a number")
    if number < 0:
        raise DocumentValidationError(f"{path} must not be negative")
    return number


def _as_count(value: Any, path: str, minimum: int = 0) -> int:
    if isinstance(value, bool):
        raise DocumentValidationError(f"{path} must be an integer")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise DocumentValidationError(f"{path} must be an integer")
    if not number.is_integer():
        raise DocumentValidationError(f"{path} must be an integer")
    if number < minimum:
        raise DocumentValidationError(f"{path} must be at least {minimum}")
    return int(number)


def _as_status(allowed: Tuple[str, ...]) -> Callable[[Any, str], str]:
    def coerce(value: Any, path: str) -> str:
        if value not in allowed:
            raise DocumentValidationError(
                f"{path} must be one of {', '.join(allowed)} (got {value!r})"
            )
        return value

    return coerce


def _as_id_list(value: Any, path: str) -> str:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise DocumentValidationError(f"{path} must be a list of strings")
    return json.dumps(value)


def _as_timestamp(value: Any, path: str) -> str:
    return normalize_timestamp(value)


def _as_order_items(value: Any, path: str) -> str:
    if not isinstance(value, list):
        raise DocumentValidationError(f"{path} must be a list")
    items = []
    for idx, raw in enumerate(value):
        if not isinstance(raw, dict):
            raise DocumentValidationError(f"{path}[{idx}] must be an object")
        items.append(OrderItem.from_document(raw, f"{path}[{idx}]").to_document())
    return json.dumps(items)


def _as_alert_copies(value: Any, path: str) -> str:
    if not isinstance(value, list):
        raise DocumentValidationError(f"{path} must be a list")
    copies = []
    for idx, raw in enumerate(value):
        if not isinstance(raw, dict):
            raise DocumentValidationError(f"{path}[{idx}] must be an object")
        copies.append(AlertCopy.from_document(raw, f"{path}[{idx}]").to_document())
    return json.dumps(copies)


# ------------------------------------------------------------------------------
# Domain models
# ------------------------------------------------------------------------------


@dataclass
class Product:
    product_id: str
    name: str
    category: str
    price: float
    stock_quantity: int
    aisle: str = ""
    shelf: str = ""
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Product":
        return cls(
            product_id=row["product_id"],
            name=row["name"],
            category=row["category"],
            price=row["price"],
            stock_quantity=row["stock_quantity"],
            aisle=row["aisle"],
            shelf=row["shelf"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Product":
        return cls(
            product_id=doc["productId"],
            name=doc.get("name", ""),
            category=doc.get("category", ""),
            price=float(doc.get("price", 0)),
            stock_quantity=int(doc.get("stockQuantity", 0)),
            aisle=doc.get("aisle", ""),
            shelf=doc.get("shelf", ""),
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "name": self.name,
            "category": self.category,
            "price": self.price,
            "stockQuantity": self.stock_quantity,
            "aisle": self.aisle,
            "shelf": self.shelf,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Customer:
    phone_number: str
    name: str
    loyalty_points: int = 0
    order_history: List[str] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Customer":
        return cls(
            phone_number=row["phone_number"],
            name=row["name"],
            loyalty_points=row["loyalty_points"],
            order_history=json.loads(row["order_history"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Customer":
        return cls(
            phone_number=doc["phoneNumber"],
            name=doc.get("name", ""),
            loyalty_points=int(doc.get("loyaltyPoints") or 0),
            order_history=list(doc.get("orderHistory") or []),
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
        )

    def to_document(self) -> Dict[str, Any]:
        # The password hash never leaves the store
        return {
            "phoneNumber": self.phone_number,
            "name": self.name,
            "loyaltyPoints": self.loyalty_points,
            "orderHistory": list(self.order_history),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class OrderItem:
    """Snapshot of one product line at the moment the order was placed."""

    product_id: str
    name: str
    quantity: int
    price: float

    @classmethod
    def from_document(cls, doc: Dict[str, Any], path: str = "items") -> "OrderItem":
        return cls(
            product_id=_as_text(doc.get("productId"), f"{path}.productId"),
            name=_as_text(doc.get("name"), f"{path}.name"),
            quantity=_as_count(doc.get("quantity"), f"{path}.quantity", minimum=1),
            price=_as_number(doc.get("price"), f"{path}.price"),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "price": self.price,
        }


@dataclass
class Order:
    order_id: str
    customer_id: str
    items: List[OrderItem]
    order_date: str
    total_amount: float
    status: str = "pending"
    subtotal: float = 0.0
    discount: float = 0.0
    points_redeemed: int = 0
    points_earned: int = 0
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Order":
        items = [OrderItem.from_document(d) for d in json.loads(row["items"])]
        return cls(
            order_id=row["order_id"],
            customer_id=row["customer_id"],
            items=items,
            order_date=row["order_date"],
            total_amount=row["total_amount"],
            status=row["status"],
            subtotal=row["subtotal"],
            discount=row["discount"],
            points_redeemed=row["points_redeemed"],
            points_earned=row["points_earned"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Order":
        return cls(
            order_id=doc["orderId"],
            customer_id=doc.get("customerId", ""),
            items=[OrderItem.from_document(d) for d in doc.get("items") or []],
            order_date=doc.get("orderDate", ""),
            total_amount=float(doc.get("totalAmount", 0)),
            status=doc.get("status", "pending"),
            subtotal=float(doc.get("subtotal") or 0),
            discount=float(doc.get("discount") or 0),
            points_redeemed=int(doc.get("pointsRedeemed") or 0),
            points_earned=int(doc.get("pointsEarned") or 0),
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "customerId": self.customer_id,
            "items": [it.to_document() for it in self.items],
            "orderDate": self.order_date,
            "totalAmount": self.total_amount,
            "status": self.status,
            "subtotal": self.subtotal,
            "discount": self.discount,
            "pointsRedeemed": self.points_redeemed,
            "pointsEarned": self.points_earned,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class AlertCopy:
    """An alert as embedded in the employee document."""

    alert_id: str
    message: str
    timestamp: str
    status: str = "pending"

    @classmethod
    def from_document(cls, doc: Dict[str, Any], path: str = "alerts") -> "AlertCopy":
        return cls(
            alert_id=_as_text(doc.get("alertId"), f"{path}.alertId"),
            message=_as_text(doc.get("message"), f"{path}.message"),
            timestamp=normalize_timestamp(doc.get("timestamp") or now_iso()),
            status=_as_status(ALERT_STATUSES)(doc.get("status", "pending"), f"{path}.status"),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "alertId": self.alert_id,
            "message": self.message,
            "timestamp": self.timestamp,
            "status": self.status,
        }


@dataclass
class Employee:
    employee_id: str
    name: str
    alerts: List[AlertCopy] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Employee":
        return cls(
            employee_id=row["employee_id"],
            name=row["name"],
            alerts=[AlertCopy.from_document(d) for d in json.loads(row["alerts"])],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Employee":
        return cls(
            employee_id=doc["employeeId"],
            name=doc.get("name", ""),
            alerts=[AlertCopy.from_document(d) for d in doc.get("alerts") or []],
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "employeeId": self.employee_id,
            "name": self.name,
            "alerts": [a.to_document() for a in self.alerts],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Alert:
    alert_id: str
    message: str
    employee_id: str
    timestamp: str
    status: str = "pending"
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Alert":
        return cls(
            alert_id=row["alert_id"],
            message=row["message"],
            employee_id=row["employee_id"],
            timestamp=row["timestamp"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Alert":
        return cls(
            alert_id=doc["alertId"],
            message=doc.get("message", ""),
            employee_id=doc.get("employeeId", ""),
            timestamp=doc.get("timestamp", ""),
            status=doc.get("status", "pending"),
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "alertId": self.alert_id,
            "message": self.message,
            "employeeId": self.employee_id,
            "timestamp": self.timestamp,
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


# ------------------------------------------------------------------------------
# Base DAO
# ------------------------------------------------------------------------------

# (document key, column, coercion) triples
FieldSpec = Tuple[str, str, Callable[[Any, str], Any]]


class BaseDAO:
    """
    Base class for all DAOs.

    Subclasses describe their collection with ``table``, ``key_column``,
    ``key_field`` and ``fields``; the base class turns incoming documents
    into validated column values and runs the generic insert, partial
    update and delete statements.
    """

    kind = "Document"
    table = ""
    key_field = ""
    key_column = ""
    # Fields that must be present on create (document keys)
    required: Tuple[str, ...] = ()
    fields: Tuple[FieldSpec, ...] = ()

    def __init__(self, conn: Optional[sqlite3.Connection] = None) -> None:
        self._conn_explicit = conn

    def _conn(self) -> sqlite3.Connection:
        return self._conn_explicit if self._conn_explicit is not None else get_request_connection()

    def _columns_from_document(self, doc: Dict[str, Any], creating: bool) -> Dict[str, Any]:
        if not isinstance(doc, dict):
            raise DocumentValidationError(f"{self.kind} must be a JSON object")
        if creating:
            for name in self.required:
                if doc.get(name) in (None, ""):
                    raise DocumentValidationError(
                        f"{self.kind} validation failed: {name} is required"
                    )
        values: Dict[str, Any] = {}
        for doc_key, column, coerce in self.fields:
            if doc_key in doc:
                values[column] = coerce(doc[doc_key], doc_key)
        return values

    def _insert(self, values: Dict[str, Any]) -> None:
        ts = now_iso()
        values = dict(values, created_at=ts, updated_at=ts)
        cols = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        conn = self._conn()
        try:
            with conn:
                conn.execute(
                    f"INSERT INTO {self.table} ({cols}) VALUES ({marks});",
                    tuple(values.values()),
                )
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e) or "PRIMARY KEY" in str(e):
                raise DuplicateKeyError(f"{self.kind} with this ID already exists")
            raise DocumentValidationError(f"{self.kind} validation failed: {e}")

    def _update(self, key: str, updates: Dict[str, Any]) -> bool:
        """Apply a partial update; identity keys in ``updates`` are ignored."""
        values = self._columns_from_document(updates, creating=False)
        values.pop(self.key_column, None)
        values["updated_at"] = now_iso()
        assignments = ", ".join(f"{col} = ?" for col in values)
        conn = self._conn()
        try:
            with conn:
                cur = conn.execute(
                    f"UPDATE {self.table} SET {assignments} WHERE {self.key_column} = ?;",
                    (*values.values(), key),
                )
        except sqlite3.IntegrityError as e:
            raise DocumentValidationError(f"{self.kind} validation failed: {e}")
        return cur.rowcount > 0

    def _fetch_row(self, key: str) -> Optional[sqlite3.Row]:
        return self._conn().execute(
            f"SELECT * FROM {self.table} WHERE {self.key_column} = ?;", (key,)
        ).fetchone()

    def delete(self, key: str) -> bool:
        conn = self._conn()
        with conn:
            cur = conn.execute(f"DELETE FROM {self.table} WHERE {self.key_column} = ?;", (key,))
        return cur.rowcount > 0


# ------------------------------------------------------------------------------
# Product DAO
# ------------------------------------------------------------------------------


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class ProductDAO(BaseDAO):
    """DAO for Product documents."""

    kind = "Product"
    table = "Product"
    key_field = "productId"
    key_column = "product_id"
    required = ("productId", "name", "category", "price", "stockQuantity", "aisle", "shelf")
    fields = (
        ("productId", "product_id", _as_text),
        ("name", "name", _as_text),
        ("category", "category", _as_text),
        ("price", "price", _as_number),
        ("stockQuantity", "stock_quantity", _as_count),
        ("aisle", "aisle", _as_text),
        ("shelf", "shelf", _as_text),
    )

    def create_product(self, doc: Dict[str, Any]) -> Product:
        values = self._columns_from_document(doc, creating=True)
        self._insert(values)
        return self.get_product(values["product_id"])

    def get_product(self, product_id: str) -> Optional[Product]:
        row = self._fetch_row(product_id)
        return Product.from_row(row) if row else None

    def list_products(self, name: str | None = None, category: str | None = None) -> List[Product]:
        """List products, optionally filtered by case-insensitive substrings."""
        clauses: List[str] = []
        params: List[Any] = []
        if name:
            clauses.append("name LIKE ? ESCAPE '\\'")
            params.append(_like_pattern(name))
        if category:
            clauses.append("category LIKE ? ESCAPE '\\'")
            params.append(_like_pattern(category))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn().execute(
            f"SELECT * FROM Product{where} ORDER BY created_at, product_id;", params
        ).fetchall()
        return [Product.from_row(r) for r in rows]

    def update_product(self, product_id: str, updates: Dict[str, Any]) -> Optional[Product]:
        if not self._update(product_id, updates):
            return None
        return self.get_product(product_id)

    def decrease_stock_if_available(
        self, product_id: str, qty: int, order_id: str | None = None
    ) -> Tuple[Optional[Product], bool]:
        """
        Atomically decrease the stock of a product by ``qty`` only if enough
        inventory is available.

        When ``order_id`` is given the decrement is recorded in the
        ``StockMovement`` ledger inside the same transaction, so repeating
        the call for the same (order, product) pair leaves stock untouched.

        :param product_id: ID of the product to update
        :param qty: Quantity to subtract; must be at least 1
        :param order_id: Optional order the movement belongs to
        :returns: ``(product, applied)``; ``product`` is None when it does not exist
        :raises ConditionFailed: If the stock is lower than ``qty``
        """
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
            raise DocumentValidationError("quantity must be a positive integer")
        if self.get_product(product_id) is None:
            return None, False
        conn = self._conn()
        ts = now_iso()
        with conn:
            if order_id:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO StockMovement (order_id, product_id, quantity, created_at)"
                    " VALUES (?, ?, ?, ?);",
                    (order_id, product_id, qty, ts),
                )
                if cur.rowcount == 0:
                    logger.info(
                        "Stock movement already applied",
                        extra={"request_id": order_id, "extra": {"product_id": product_id}},
                    )
                    return self.get_product(product_id), False
            cur = conn.execute(
                "UPDATE Product SET stock_quantity = stock_quantity - ?, updated_at = ?"
                " WHERE product_id = ? AND stock_quantity >= ?;",
                (qty, ts, product_id, qty),
            )
            if cur.rowcount == 0:
                # Raising inside the transaction also discards the ledger row
                raise ConditionFailed(f"Insufficient stock for product {product_id}")
        return self.get_product(product_id), True

    def increase_stock(self, product_id: str, qty: int) -> Optional[Product]:
        """Add ``qty`` units to a product's stock (restocking)."""
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 0:
            raise DocumentValidationError("quantity must be a non-negative integer")
        conn = self._conn()
        with conn:
            cur = conn.execute(
                "UPDATE Product SET stock_quantity = stock_quantity + ?, updated_at = ?"
                " WHERE product_id = ?;",
                (qty, now_iso(), product_id),
            )
        return self.get_product(product_id) if cur.rowcount else None


# ------------------------------------------------------------------------------
# Customer DAO
# ------------------------------------------------------------------------------


class CustomerDAO(BaseDAO):
    """DAO for Customer documents.  Passwords are stored as salted hashes."""

    kind = "Customer"
    table = "Customer"
    key_field = "phoneNumber"
    key_column = "phone_number"
    required = ("phoneNumber", "name", "password")
    fields = (
        ("phoneNumber", "phone_number", _as_text),
        ("name", "name", _as_text),
        ("password", "password_hash", lambda v, p: hash_password(_as_text(v, p))),
        ("loyaltyPoints", "loyalty_points", _as_count),
        ("orderHistory", "order_history", _as_id_list),
    )

    def create_customer(self, doc: Dict[str, Any]) -> Customer:
        values = self._columns_from_document(doc, creating=True)
        self._insert(values)
        return self.get_customer(values["phone_number"])

    def get_customer(self, phone_number: str) -> Optional[Customer]:
        row = self._fetch_row(phone_number)
        return Customer.from_row(row) if row else None

    def list_customers(self) -> List[Customer]:
        rows = self._conn().execute(
            "SELECT * FROM Customer ORDER BY created_at, phone_number;"
        ).fetchall()
        return [Customer.from_row(r) for r in rows]

    def update_customer(self, phone_number: str, updates: Dict[str, Any]) -> Optional[Customer]:
        if not self._update(phone_number, updates):
            return None
        return self.get_customer(phone_number)

    def authenticate(self, phone_number: str, password: str) -> Optional[Customer]:
        row = self._fetch_row(phone_number)
        if row is None or not verify_password(password, row["password_hash"]):
            return None
        return Customer.from_row(row)

    def apply_loyalty(
        self, phone_number: str, order_id: str, redeem: int, earn: int
    ) -> Tuple[Optional[Customer], bool]:
        """Redeem and award points for an order and append it to the history.

        The balance becomes ``balance - redeem + earn`` and ``order_id`` is
        appended in one UPDATE guarded by ``balance >= redeem``.  An order
        already present in the history is not applied twice.

        Returns:
            ``(customer, applied)``; ``customer`` is None when it does not exist.

        Raises:
            ConditionFailed: If the balance is lower than ``redeem``.
        """
        order_id = _as_text(order_id, "orderId")
        redeem = _as_count(redeem, "redeem")
        earn = _as_count(earn, "earn")
        conn = self._conn()
        with conn:
            cur = conn.execute(
                """
                UPDATE Customer
                SET loyalty_points = loyalty_points - ? + ?,
                    order_history = json_insert(order_history, '$[#]', ?),
                    updated_at = ?
                WHERE phone_number = ?
                  AND loyalty_points >= ?
                  AND NOT EXISTS (
                      SELECT 1 FROM json_each(Customer.order_history) WHERE value = ?
                  );
                """,
                (redeem, earn, order_id, now_iso(), phone_number, redeem, order_id),
            )
        customer = self.get_customer(phone_number)
        if cur.rowcount > 0:
            return customer, True
        if customer is None:
            return None, False
        if order_id in customer.order_history:
            return customer, False
        raise ConditionFailed(
            f"Customer {phone_number} has {customer.loyalty_points} points; {redeem} requested"
        )


# ------------------------------------------------------------------------------
# Order DAO
# ------------------------------------------------------------------------------


class OrderDAO(BaseDAO):
    """DAO for Order documents."""

    kind = "Order"
    table = "Orders"
    key_field = "orderId"
    key_column = "order_id"
    required = ("orderId", "customerId", "totalAmount")
    fields = (
        ("orderId", "order_id", _as_text),
        ("customerId", "customer_id", _as_text),
        ("items", "items", _as_order_items),
        ("orderDate", "order_date", _as_timestamp),
        ("totalAmount", "total_amount", _as_number),
        ("status", "status", _as_status(ORDER_STATUSES)),
        ("subtotal", "subtotal", _as_number),
        ("discount", "discount", _as_number),
        ("pointsRedeemed", "points_redeemed", _as_count),
        ("pointsEarned", "points_earned", _as_count),
    )

    def create_order(self, doc: Dict[str, Any]) -> Order:
        values = self._columns_from_document(doc, creating=True)
        values.setdefault("order_date", now_iso())
        self._insert(values)
        return self.get_order(values["order_id"])

    def get_order(self, order_id: str) -> Optional[Order]:
        row = self._fetch_row(order_id)
        return Order.from_row(row) if row else None

    def list_orders(
        self,
        customer_id: str | None = None,
        status: str | None = None,
        start_date: str | None = None,
        end_date: str | None = None,
    ) -> List[Order]:
        """List orders newest first, optionally filtered.

        ``start_date`` and ``end_date`` are inclusive bounds on ``orderDate``.
        """
        clauses: List[str] = []
        params: List[Any] = []
        if customer_id:
            clauses.append("customer_id = ?")
            params.append(customer_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        if start_date:
            clauses.append("order_date >= ?")
            params.append(normalize_timestamp(start_date))
        if end_date:
            clauses.append("order_date <= ?")
            params.append(normalize_timestamp(end_date))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn().execute(
            f"SELECT * FROM Orders{where} ORDER BY order_date DESC, order_id DESC;", params
        ).fetchall()
        return [Order.from_row(r) for r in rows]

    def update_order(self, order_id: str, updates: Dict[str, Any]) -> Optional[Order]:
        if not self._update(order_id, updates):
            return None
        return self.get_order(order_id)


# ------------------------------------------------------------------------------
# Employee DAO
# ------------------------------------------------------------------------------


class EmployeeDAO(BaseDAO):
    """DAO for Employee documents and their embedded alert copies."""

    kind = "Employee"
    table = "Employee"
    key_field = "employeeId"
    key_column = "employee_id"
    required = ("employeeId", "name", "password")
    fields = (
        ("employeeId", "employee_id", _as_text),
        ("name", "name", _as_text),
        ("password", "password_hash", lambda v, p: hash_password(_as_text(v, p))),
        ("alerts", "alerts", _as_alert_copies),
    )

    def create_employee(self, doc: Dict[str, Any]) -> Employee:
        values = self._columns_from_document(doc, creating=True)
        self._insert(values)
        return self.get_employee(values["employee_id"])

    def get_employee(self, employee_id: str) -> Optional[Employee]:
        row = self._fetch_row(employee_id)
        return Employee.from_row(row) if row else None

    def list_employees(self) -> List[Employee]:
        rows = self._conn().execute(
            "SELECT * FROM Employee ORDER BY created_at, employee_id;"
        ).fetchall()
        return [Employee.from_row(r) for r in rows]

    def update_employee(self, employee_id: str, updates: Dict[str, Any]) -> Optional[Employee]:
        if not self._update(employee_id, updates):
            return None
        return self.get_employee(employee_id)

    def authenticate(self, employee_id: str, password: str) -> Optional[Employee]:
        row = self._fetch_row(employee_id)
        if row is None or not verify_password(password, row["password_hash"]):
            return None
        return Employee.from_row(row)


# ------------------------------------------------------------------------------
# Alert DAO
# ------------------------------------------------------------------------------


class AlertDAO(BaseDAO):
    """DAO for Alert documents."""

    kind = "Alert"
    table = "Alert"
    key_field = "alertId"
    key_column = "alert_id"
    required = ("alertId", "message", "employeeId")
    fields = (
        ("alertId", "alert_id", _as_text),
        ("message", "message", _as_text),
        ("employeeId", "employee_id", _as_text),
        ("timestamp", "timestamp", _as_timestamp),
        ("status", "status", _as_status(ALERT_STATUSES)),
    )

    def create_alert(self, doc: Dict[str, Any]) -> Alert:
        values = self._columns_from_document(doc, creating=True)
        values.setdefault("timestamp", now_iso())
        self._insert(values)
        return self.get_alert(values["alert_id"])

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        row = self._fetch_row(alert_id)
        return Alert.from_row(row) if row else None

    def list_alerts(self, employee_id: str | None = None) -> List[Alert]:
        """List alerts newest first, optionally only those for one employee."""
        conn = self._conn()
        if employee_id is not None:
            rows = conn.execute(
                "SELECT * FROM Alert WHERE employee_id = ? ORDER BY timestamp DESC, alert_id DESC;",
                (employee_id,),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM Alert ORDER BY timestamp DESC, alert_id DESC;"
            ).fetchall()
        return [Alert.from_row(r) for r in rows]

    def update_alert(self, alert_id: str, updates: Dict[str, Any]) -> Optional[Alert]:
        if not self._update(alert_id, updates):
            return None
        return self.get_alert(alert_id)
