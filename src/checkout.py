"""
Checkout arithmetic and the storekeeper's in-progress checkout.

The ``compute_*`` functions are pure: they take plain values and return
``Decimal`` amounts quantized to cents, so the same cart always yields the
same breakdown.  :class:`CheckoutSession` holds everything the operator has
selected so far (customer, cart lines, points to redeem and the product
snapshots the cart was built from) and is handed explicitly to
``compute_breakdown`` and to the order commit sequence.

Loyalty rules: each redeemed point is worth ``POINT_VALUE`` off the
subtotal, the discount never exceeds the subtotal, and one point is earned
per ``EARN_RATE`` of the post-discount total.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional

from dao import Customer, Product

CENT = Decimal("0.01")
POINT_VALUE = Decimal("0.50")
EARN_RATE = Decimal("10")


class CheckoutValidationError(ValueError):
    """The checkout cannot proceed; nothing has been sent to the store."""


def to_money(value) -> Decimal:
    """Convert ``value`` to a cent-quantized Decimal.

    Floats go through ``str`` first so ``2.99`` stays ``2.99`` instead of
    its binary approximation.
    """
    if isinstance(value, Decimal):
        amount = value
    else:
        amount = Decimal(str(value))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


# ------------------------------------------------------------------------------
# Pure calculations
# ------------------------------------------------------------------------------


def compute_subtotal(items: Iterable) -> Decimal:
    """Sum ``price * quantity`` over cart lines or order items."""
    subtotal = Decimal("0")
    for item in items:
        if isinstance(item.quantity, bool) or int(item.quantity) != item.quantity or item.quantity < 1:
            raise CheckoutValidationError(f"Invalid quantity for {item.product_id}: {item.quantity}")
        price = to_money(item.price)
        if price < 0:
            raise CheckoutValidationError(f"Invalid price for {item.product_id}: {item.price}")
        subtotal += price * int(item.quantity)
    return to_money(subtotal)


def compute_discount(requested_points: int, point_value: Decimal, subtotal: Decimal) -> Decimal:
    if requested_points < 0:
        raise CheckoutValidationError("Discount points cannot be negative")
    return to_money(min(Decimal(requested_points) * Decimal(point_value), to_money(subtotal)))


def compute_total(subtotal: Decimal, discount: Decimal) -> Decimal:
    return to_money(max(to_money(subtotal) - to_money(discount), Decimal("0")))


def compute_points_earned(total: Decimal, earn_rate: Decimal = EARN_RATE) -> int:
    """Points earned on a post-discount ``total``: ``floor(total / earn_rate)``."""
    if earn_rate <= 0:
        raise CheckoutValidationError("Earn rate must be positive")
    return int((to_money(total) / Decimal(earn_rate)).to_integral_value(rounding=ROUND_FLOOR))


@dataclass(frozen=True)
class CheckoutBreakdown:
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    points_redeemed: int
    points_earned: int
    resulting_balance: int


# ------------------------------------------------------------------------------
# Session
# ------------------------------------------------------------------------------


@dataclass
class CartLine:
    product_id: str
    name: str
    quantity: int
    price: Decimal

    def to_order_item(self) -> Dict[str, object]:
        return {
            "productId": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "price": float(self.price),
        }


@dataclass
class CheckoutSession:
    """Checkout being assembled by one operator.

    Cart edits are checked against the product snapshots the operator last
    loaded; the store re-checks stock when the order is committed.
    """

    customer: Optional[Customer] = None
    lines: List[CartLine] = field(default_factory=list)
    discount_points: int = 0
    products: Dict[str, Product] = field(default_factory=dict)
    point_value: Decimal = POINT_VALUE
    earn_rate: Decimal = EARN_RATE
    # Order id of an attempt whose create call may have reached the store
    pending_order_id: Optional[str] = None

    # -- customer & points ---------------------------------------------------

    def select_customer(self, customer: Optional[Customer]) -> None:
        self.customer = customer
        self.discount_points = 0

    def set_discount_points(self, points: int) -> None:
        if points < 0:
            raise CheckoutValidationError("Discount points cannot be negative")
        if points and self.customer is None:
            raise CheckoutValidationError("Select a customer before redeeming points")
        if self.customer is not None and points > self.customer.loyalty_points:
            raise CheckoutValidationError(
                f"Customer only has {self.customer.loyalty_points} points (requested {points})"
            )
        self.discount_points = points

    # -- cart ----------------------------------------------------------------

    def refresh_products(self, products: Iterable[Product]) -> None:
        """Replace the product snapshots; cart lines are left as they are."""
        self.products = {p.product_id: p for p in products}

    def find_line(self, product_id: str) -> Optional[CartLine]:
        for line in self.lines:
            if line.product_id == product_id:
                return line
        return None

    def add_product(self, product: Product, quantity: int = 1) -> CartLine:
        if quantity < 1:
            raise CheckoutValidationError("Quantity must be at least 1")
        self.products[product.product_id] = product
        line = self.find_line(product.product_id)
        wanted = quantity + (line.quantity if line else 0)
        if wanted > product.stock_quantity:
            raise CheckoutValidationError(
                f"Only {product.stock_quantity} of {product.name} in stock"
            )
        if line is None:
            line = CartLine(product.product_id, product.name, quantity, to_money(product.price))
            self.lines.append(line)
        else:
            line.quantity = wanted
        return line

    def set_quantity(self, product_id: str, quantity: int) -> None:
        """Set a line's quantity; zero or less removes the line."""
        line = self.find_line(product_id)
        if line is None:
            raise CheckoutValidationError(f"Product {product_id} is not in the cart")
        if quantity <= 0:
            self.remove_line(product_id)
            return
        product = self.products.get(product_id)
        if product is not None and quantity > product.stock_quantity:
            raise CheckoutValidationError(
                f"Only {product.stock_quantity} of {product.name} in stock"
            )
        line.quantity = quantity

    def remove_line(self, product_id: str) -> None:
        self.lines = [ln for ln in self.lines if ln.product_id != product_id]

    def clear(self) -> None:
        self.customer = None
        self.lines = []
        self.discount_points = 0
        self.pending_order_id = None

    # -- commit preconditions ------------------------------------------------

    def validate(self) -> None:
        """Raise :class:`CheckoutValidationError` unless the session can be committed."""
        if self.customer is None:
            raise CheckoutValidationError("Please select a customer")
        if not self.lines:
            raise CheckoutValidationError("Cart is empty")
        if self.discount_points > self.customer.loyalty_points:
            raise CheckoutValidationError(
                f"Customer only has {self.customer.loyalty_points} points "
                f"(requested {self.discount_points})"
            )
        for line in self.lines:
            product = self.products.get(line.product_id)
            if product is None:
                raise CheckoutValidationError(f"{line.name} is no longer available")
            if line.quantity > product.stock_quantity:
                raise CheckoutValidationError(
                    f"Only {product.stock_quantity} of {line.name} in stock"
                )


def compute_breakdown(session: CheckoutSession) -> CheckoutBreakdown:
    subtotal = compute_subtotal(session.lines)
    discount = compute_discount(session.discount_points, session.point_value, subtotal)
    total = compute_total(subtotal, discount)
    earned = compute_points_earned(total, session.earn_rate)
    balance = session.customer.loyalty_points if session.customer else 0
    return CheckoutBreakdown(
        subtotal=subtotal,
        discount=discount,
        total=total,
        points_redeemed=session.discount_points,
        points_earned=earned,
        resulting_balance=balance - session.discount_points + earned,
    )
