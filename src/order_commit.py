"""
Order commit sequence and the reconciler for partially committed orders.

A confirmed checkout touches three collections that share no transaction:

    VALIDATED -> ORDER_PERSISTED -> CUSTOMER_UPDATED -> STOCK_ADJUSTED -> COMMITTED
                       \\________________ any failure ________________/-> FAILED

1. The order is created with status ``pending``.  If this fails nothing
   else is attempted, unless a lookup shows the store saved the order
   anyway, in which case the sequence carries on from step 2.
2. The customer's loyalty balance and order history are updated in one
   conditional call keyed by the order id.
3. Stock is decremented line by line, each call keyed by (order id,
   product id).
4. The order is promoted to ``completed``.

Steps 2-4 are idempotent on the store side, so a FAILED result is never
rolled back: the order stays ``pending`` and :class:`OrderReconciler`
re-drives the remaining steps from the data stored on the order.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from checkout import CheckoutBreakdown, CheckoutSession, CheckoutValidationError, compute_breakdown
from dao import Customer, Order, normalize_timestamp
from metrics import (
    CHECKOUT_DURATION_SECONDS,
    CHECKOUT_ERROR_TOTAL,
    ORDER_COMMIT_STEP_FAILURES_TOTAL,
    ORDERS_RECONCILED_TOTAL,
)
from store_client import DuplicateIdentifierError, StoreClient, StoreError, StoreUnavailableError

logger = logging.getLogger(__name__)


class CommitState(Enum):
    VALIDATED = "validated"
    ORDER_PERSISTED = "order_persisted"
    CUSTOMER_UPDATED = "customer_updated"
    STOCK_ADJUSTED = "stock_adjusted"
    COMMITTED = "committed"
    FAILED = "failed"


class CommitStep(Enum):
    CREATE_ORDER = "create_order"
    APPLY_LOYALTY = "apply_loyalty"
    ADJUST_STOCK = "adjust_stock"
    FINALIZE = "finalize"


# State reached once each step succeeds
_STATE_AFTER = {
    CommitStep.CREATE_ORDER: CommitState.ORDER_PERSISTED,
    CommitStep.APPLY_LOYALTY: CommitState.CUSTOMER_UPDATED,
    CommitStep.ADJUST_STOCK: CommitState.STOCK_ADJUSTED,
    CommitStep.FINALIZE: CommitState.COMMITTED,
}


@dataclass
class CommitResult:
    """Progress of one order through the commit sequence."""

    order_id: str
    state: CommitState = CommitState.VALIDATED
    breakdown: Optional[CheckoutBreakdown] = None
    completed_steps: List[CommitStep] = field(default_factory=list)
    decremented: List[str] = field(default_factory=list)
    failed_at: Optional[CommitStep] = None
    message: str = ""
    status: Optional[int] = None
    customer: Optional[Customer] = None

    @property
    def ok(self) -> bool:
        return self.state is CommitState.COMMITTED

    def advance(self, step: CommitStep) -> None:
        self.completed_steps.append(step)
        self.state = _STATE_AFTER[step]

    def fail(self, step: CommitStep, message: str, status: Optional[int] = None) -> None:
        self.failed_at = step
        self.state = CommitState.FAILED
        self.message = message
        self.status = status


def generate_order_id(now: float | None = None) -> str:
    millis = int((time.time() if now is None else now) * 1000)
    return f"ORD{millis}{uuid.uuid4().hex[:4].upper()}"


def _error_type(err: StoreError) -> str:
    if isinstance(err, StoreUnavailableError):
        return "store_unavailable"
    if isinstance(err, DuplicateIdentifierError):
        return "duplicate_id"
    if err.status == 409:
        return "condition_failed"
    return "store_error"


# ------------------------------------------------------------------------------
# Commit sequence
# ------------------------------------------------------------------------------


class OrderCommitSequence:
    def __init__(self, client: StoreClient):
        self.client = client

    def commit(self, session: CheckoutSession) -> CommitResult:
        """Persist the checkout held by ``session``.

        The order id is kept on ``session`` until it is cleared, so retrying
        after a failed create reuses it and resumes an order the store did
        persist instead of selling the cart twice.

        Raises:
            CheckoutValidationError: When a precondition fails; no request
                has been sent in that case.

        Returns:
            A :class:`CommitResult`; ``result.ok`` is False when a store
            call failed, with ``failed_at`` naming the step.
        """
        start = time.perf_counter()
        outcome = "committed"
        try:
            try:
                session.validate()
                breakdown = compute_breakdown(session)
            except CheckoutValidationError:
                outcome = "invalid"
                CHECKOUT_ERROR_TOTAL.inc(type="validation")
                raise

            reused = session.pending_order_id is not None
            order_id = session.pending_order_id or generate_order_id()
            session.pending_order_id = order_id
            result = CommitResult(order_id=order_id, breakdown=breakdown, customer=session.customer)
            order_doc = {
                "orderId": order_id,
                "customerId": session.customer.phone_number,
                "items": [line.to_order_item() for line in session.lines],
                "orderDate": datetime.now(UTC).isoformat(),
                "totalAmount": float(breakdown.total),
                "status": "pending",
                "subtotal": float(breakdown.subtotal),
                "discount": float(breakdown.discount),
                "pointsRedeemed": breakdown.points_redeemed,
                "pointsEarned": breakdown.points_earned,
            }

            try:
                self.client.create_order(order_doc)
            except StoreError as e:
                existing = None
                # The store may have saved the order before the call failed
                if isinstance(e, StoreUnavailableError) or (
                    reused and isinstance(e, DuplicateIdentifierError)
                ):
                    existing = self._find_order(order_id)
                if existing is not None:
                    logger.warning("Order already persisted, resuming", extra={
                        "request_id": order_id, "extra": {"error": e.message}})
                    self.resume(result, existing)
                else:
                    if isinstance(e, DuplicateIdentifierError) and not reused:
                        session.pending_order_id = None
                    self._record_failure(result, CommitStep.CREATE_ORDER, e)
            else:
                result.advance(CommitStep.CREATE_ORDER)
                logger.info("Order persisted", extra={"request_id": order_id, "extra": {
                    "customer_id": order_doc["customerId"], "total": order_doc["totalAmount"]}})
                self.drive(
                    result,
                    customer_id=order_doc["customerId"],
                    lines=[(ln.product_id, ln.quantity) for ln in session.lines],
                    redeem=breakdown.points_redeemed,
                    earn=breakdown.points_earned,
                )
            if not result.ok:
                outcome = "failed"
            return result
        finally:
            CHECKOUT_DURATION_SECONDS.observe(time.perf_counter() - start, outcome=outcome)

    def _find_order(self, order_id: str) -> Optional[Order]:
        try:
            return self.client.get_order(order_id)
        except StoreError as e:
            logger.warning(f"Order lookup failed: {e.message}", extra={"request_id": order_id})
            return None

    def resume(self, result: CommitResult, order: Order) -> CommitResult:
        """Continue the sequence for an order the store already holds."""
        if order.status == "completed":
            result.completed_steps = list(_STATE_AFTER)
            result.state = CommitState.COMMITTED
            result.customer = None
            result.message = f"Order {order.order_id} already completed"
            return result
        # The stored order is the record of the create step
        if CommitStep.CREATE_ORDER not in result.completed_steps:
            result.advance(CommitStep.CREATE_ORDER)
        return self.drive(
            result,
            customer_id=order.customer_id,
            lines=[(it.product_id, it.quantity) for it in order.items],
            redeem=order.points_redeemed,
            earn=order.points_earned,
        )

    def drive(
        self,
        result: CommitResult,
        customer_id: str,
        lines: Sequence[Tuple[str, int]],
        redeem: int,
        earn: int,
    ) -> CommitResult:
        """Run the loyalty, stock and finalize steps for an order that exists."""
        order_id = result.order_id

        try:
            customer, applied = self.client.apply_loyalty(customer_id, order_id, redeem, earn)
        except StoreError as e:
            return self._record_failure(result, CommitStep.APPLY_LOYALTY, e)
        result.customer = customer
        result.advance(CommitStep.APPLY_LOYALTY)
        logger.info("Loyalty applied", extra={"request_id": order_id, "extra": {
            "customer_id": customer_id, "redeem": redeem, "earn": earn,
            "balance": customer.loyalty_points, "applied": applied}})

        for product_id, quantity in lines:
            try:
                product, applied = self.client.decrement_stock(product_id, quantity, order_id)
            except StoreError as e:
                return self._record_failure(result, CommitStep.ADJUST_STOCK, e, product_id)
            result.decremented.append(product_id)
            logger.info("Stock adjusted", extra={"request_id": order_id, "extra": {
                "product_id": product_id, "quantity": quantity,
                "stock": product.stock_quantity, "applied": applied}})
        result.advance(CommitStep.ADJUST_STOCK)

        try:
            self.client.update_order(order_id, {"status": "completed"})
        except StoreError as e:
            return self._record_failure(result, CommitStep.FINALIZE, e)
        result.advance(CommitStep.FINALIZE)
        result.message = f"Order {order_id} completed"
        logger.info("Order committed", extra={"request_id": order_id})
        return result

    def _record_failure(
        self, result: CommitResult, step: CommitStep, err: StoreError, product_id: str | None = None
    ) -> CommitResult:
        result.fail(step, err.message, err.status)
        ORDER_COMMIT_STEP_FAILURES_TOTAL.inc(step=step.value)
        CHECKOUT_ERROR_TOTAL.inc(type=_error_type(err))
        details = {"step": step.value, "status": err.status,
                   "completed_steps": [s.value for s in result.completed_steps],
                   "decremented": list(result.decremented)}
        if product_id:
            details["product_id"] = product_id
        logger.error(f"Order commit failed: {err.message}",
                     extra={"request_id": result.order_id, "extra": details})
        return result


# ------------------------------------------------------------------------------
# Reconciler
# ------------------------------------------------------------------------------


class OrderReconciler:
    """Re-drives pending orders until their loyalty, stock and status are applied.

    Orders younger than ``min_age`` seconds are skipped so an operator's
    in-flight commit is left to finish on its own.  An order the store keeps
    rejecting with 404 or 409 is escalated after ``max_attempts`` passes:
    it is logged for manual reconciliation and left out of later passes.
    """

    def __init__(self, client: StoreClient, min_age: float = 30.0, max_attempts: int = 3):
        self.client = client
        self.min_age = min_age
        self.max_attempts = max_attempts
        self.sequence = OrderCommitSequence(client)
        self.escalated: Dict[str, CommitResult] = {}
        self._attempts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def reconcile_order(self, order: Order) -> CommitResult:
        result = CommitResult(order_id=order.order_id)
        if order.status != "completed":
            logger.info("Reconciling order", extra={"request_id": order.order_id})
        self.sequence.resume(result, order)
        if result.ok:
            with self._lock:
                self._attempts.pop(order.order_id, None)
                self.escalated.pop(order.order_id, None)
        return result

    def _old_enough(self, order: Order, now: datetime) -> bool:
        if self.min_age <= 0:
            return True
        placed = datetime.fromisoformat(normalize_timestamp(order.order_date))
        return now - placed >= timedelta(seconds=self.min_age)

    def _record_rejection(self, result: CommitResult) -> str:
        """Count a failure the store will keep answering the same way."""
        with self._lock:
            attempts = self._attempts.get(result.order_id, 0) + 1
            if attempts < self.max_attempts:
                self._attempts[result.order_id] = attempts
                return "failed"
            self._attempts.pop(result.order_id, None)
            self.escalated[result.order_id] = result
        logger.error(
            f"Order {result.order_id} needs manual reconciliation: "
            f"{result.failed_at.value} rejected {attempts} times ({result.message})",
            extra={"request_id": result.order_id, "extra": {
                "step": result.failed_at.value, "status": result.status,
                "completed_steps": [s.value for s in result.completed_steps],
                "decremented": list(result.decremented)}},
        )
        return "escalated"

    def reconcile_pending(self) -> List[CommitResult]:
        now = datetime.now(UTC)
        results: List[CommitResult] = []
        for order in self.client.list_orders(status="pending"):
            if order.order_id in self.escalated or not self._old_enough(order, now):
                continue
            result = self.reconcile_order(order)
            if result.ok:
                outcome = "completed"
            elif result.status in (404, 409):
                outcome = self._record_rejection(result)
            else:
                outcome = "failed"
            ORDERS_RECONCILED_TOTAL.inc(outcome=outcome)
            results.append(result)
        return results

    def start_reconciler_thread(
        self, interval: float, stop_event: threading.Event | None = None
    ) -> threading.Thread:
        """Run :meth:`reconcile_pending` every ``interval`` seconds on a daemon thread."""
        stop = stop_event or threading.Event()

        def _loop() -> None:
            while not stop.is_set():
                try:
                    self.reconcile_pending()
                except StoreError as e:
                    logger.warning(f"Reconciler pass failed: {e.message}")
                except Exception:
                    logger.exception("Reconciler pass crashed")
                stop.wait(interval)

        t = threading.Thread(target=_loop, name="order-reconciler", daemon=True)
        t.start()
        return t
