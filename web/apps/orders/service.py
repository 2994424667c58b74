"""Order saga orchestrator.

``OrderService`` turns a checkout into a durable order while coordinating
three resources it does not own: catalog stock, the payment gateway and the
notification service. There is no distributed transaction; instead each step
that mutates a remote resource has a compensating step, and every started
``create`` ends in one of three states:

- rejected before any mutation (validation, unknown product, not enough stock);
- ``paid`` with the order row committed and stock decremented;
- ``failed`` with decremented stock handed back (best effort);
  or ``cancelled`` when a cancel wins the race with the charge, in which
  case the cancel alone hands stock back.

Remote client errors (``RemoteServiceError``) never leave this module: they
are converted to the ``OrderError`` taxonomy in ``errors.py``.
"""

import contextvars
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Mapping, Optional

from django.conf import settings

from apps.monitoring.metrics import (
    order_compensations_total,
    order_processing_duration,
    orders_created_total,
    orders_status_total,
)
from apps.monitoring.tracing import start_span

from .domain import (
    REFUNDABLE_STATUSES,
    TERMINAL_STATUSES,
    Caller,
    InventoryPort,
    NotificationType,
    NotificationsPort,
    Order,
    OrderItem,
    OrderLine,
    OrderStatus,
    Page,
    PaymentsPort,
    ProductSnapshot,
    ShippingAddress,
    StockDirection,
    can_transition,
    compute_total,
    price_items,
)
from .errors import (
    ForbiddenError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    OrderError,
    PaymentError,
    UpstreamUnavailableError,
    ValidationError,
)
from .repository import OrderRepository
from .retry import ClientFaultError, RemoteServiceError
from .store import OrderStore

logger = logging.getLogger(__name__)

# Notifications sent when an admin moves an order forward.
STATUS_NOTIFICATIONS = {
    OrderStatus.SHIPPED: NotificationType.ORDER_SHIPPED,
    OrderStatus.DELIVERED: NotificationType.ORDER_DELIVERED,
}


class OrderService:
    """Domain service for placing, reading and moving orders.

    Args:
        inventory: Catalog stock port.
        payments: Payment gateway port.
        notifications: Best-effort notification port.
        repository: Order persistence; defaults to one over ``store``.
        store: Database access; defaults to the default connection.
        fetch_concurrency: Upper bound on parallel product lookups.
    """

    def __init__(
        self,
        inventory: InventoryPort,
        payments: PaymentsPort,
        notifications: NotificationsPort,
        repository: Optional[OrderRepository] = None,
        store: Optional[OrderStore] = None,
        fetch_concurrency: Optional[int] = None,
    ):
        self.inventory = inventory
        self.payments = payments
        self.notifications = notifications
        self.store = store or OrderStore()
        self.repository = repository or OrderRepository(self.store)
        self.fetch_concurrency = fetch_concurrency or getattr(settings, "INVENTORY_FETCH_CONCURRENCY", 8)

    # ------------------------------------------------------------------ create

    def create(self, caller: Caller, lines: Iterable[OrderLine], shipping_address: Mapping[str, Any]) -> Order:
        """Place an order: validate, check stock, persist, reserve, charge.

        Args:
            caller: Identity placing the order; becomes the owner.
            lines: Requested products and quantities. Lines for the same
                product are merged.
            shipping_address: Mapping with street, city, state, country and
                postal_code.

        Returns:
            The persisted order with its items, status ``paid``; ``cancelled``
            when a concurrent cancel landed while the charge was in flight.

        Raises:
            ValidationError: Empty items, bad quantity or incomplete address.
            NotFoundError: A product does not exist (or is inactive).
            InsufficientStockError: Stock is lower than the requested quantity.
            UpstreamUnavailableError: The catalog could not be reached.
            PaymentError: The charge failed; stock was handed back and the
                order is ``failed``.
        """
        started = time.perf_counter()
        outcome = "error"
        with start_span("order.create", {"user.id": caller.id}) as span:
            try:
                order = self._create(caller, lines, shipping_address, span)
                outcome = "success"
                return order
            except OrderError as e:
                outcome = e.code.lower()
                raise
            finally:
                order_processing_duration.labels(outcome).observe(time.perf_counter() - started)

    def _create(self, caller: Caller, lines, shipping_address, span) -> Order:
        lines = self._validate(lines, shipping_address)
        address = ShippingAddress.from_mapping(shipping_address)

        # 1) Availability, before anything is mutated
        products = self._fetch_products([l.product_id for l in lines])
        for line in lines:
            product = products[line.product_id]
            if not product.exists:
                raise NotFoundError(f"Product {line.product_id} not found")
            if line.quantity > product.stock:
                raise InsufficientStockError(line.product_id, line.quantity, product.stock)

        items = price_items(lines, products)
        order = Order(
            id=str(uuid.uuid4()),
            user_id=caller.id,
            status=OrderStatus.PENDING,
            total_amount=compute_total(items),
            shipping_address=address,
            items=items,
        )
        span.set_attributes({"order.id": order.id, "order.total": str(order.total_amount)})
        log_extra = {"order_id": order.id, "user_id": caller.id}

        # 2) Local insert and remote stock decrement
        self._persist_and_reserve(order)
        logger.info("order persisted, stock reserved", extra=log_extra)

        # 3) Payment
        if self._charge(order):
            outcome = OrderStatus.PAID
            logger.info("order paid", extra=log_extra)
            self._notify(order, NotificationType.ORDER_CREATED)
        else:
            outcome = OrderStatus.CANCELLED
        span.set_attribute("order.status", outcome.value)
        orders_created_total.labels(outcome.value).inc()
        return self.repository.get(order.id) or order

    def _validate(self, lines: Iterable[OrderLine], shipping_address: Mapping[str, Any]) -> List[OrderLine]:
        lines = list(lines or [])
        if not lines:
            raise ValidationError("Order must contain at least one item")

        merged: Dict[int, int] = {}
        for line in lines:
            qty = line.quantity
            if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
                raise ValidationError(f"Quantity for product {line.product_id} must be a positive integer")
            merged[line.product_id] = merged.get(line.product_id, 0) + qty

        missing = ShippingAddress.missing_fields(shipping_address)
        if missing:
            raise ValidationError(f"Shipping address is missing: {', '.join(missing)}")
        return [OrderLine(pid, qty) for pid, qty in merged.items()]

    def _fetch_products(self, product_ids: List[int]) -> Dict[int, ProductSnapshot]:
        """Look products up concurrently; every lookup has finished when this returns."""
        workers = max(1, min(len(product_ids), self.fetch_concurrency))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="inventory-fetch") as pool:
            # each task runs in its own copy of the context: request id and trace
            futures = {
                pid: pool.submit(contextvars.copy_context().run, self.inventory.fetch, pid)
                for pid in product_ids
            }
            products: Dict[int, ProductSnapshot] = {}
            for pid, future in futures.items():
                try:
                    products[pid] = future.result()
                except RemoteServiceError as e:
                    logger.error("product lookup failed", extra={"product_id": pid, "error": str(e)})
                    raise UpstreamUnavailableError(e.service, f"Product {pid} could not be checked") from e
        return products

    def _persist_and_reserve(self, order: Order) -> None:
        decremented: List[OrderItem] = []
        with self.store.transaction() as tx:
            tx.begin()
            try:
                self.repository.insert(tx, order)
                for item in order.items:
                    self.inventory.adjust_stock(item.product_id, item.quantity, StockDirection.DECREASE)
                    decremented.append(item)
            except RemoteServiceError as e:
                tx.rollback()
                failed = order.items[len(decremented)]
                logger.warning(
                    "stock decrement failed, rolling back",
                    extra={"order_id": order.id, "product_id": failed.product_id, "error": str(e)},
                )
                self._compensate(order.id, decremented, "reservation_failed")
                raise self._reservation_error(failed, e) from e
            except Exception:
                tx.rollback()
                self._compensate(order.id, decremented, "reservation_failed")
                raise

            try:
                tx.commit()
            except Exception:
                logger.error("order commit failed", extra={"order_id": order.id})
                self._compensate(order.id, decremented, "commit_failed")
                raise

    @staticmethod
    def _reservation_error(item: OrderItem, e: RemoteServiceError) -> OrderError:
        if isinstance(e, ClientFaultError):
            if e.status_code in (409, 422):
                return InsufficientStockError(item.product_id, item.quantity)
            if e.status_code == 404:
                return NotFoundError(f"Product {item.product_id} not found")
        return UpstreamUnavailableError(e.service)

    def _charge(self, order: Order) -> bool:
        """Charge the order; True when it moved to ``paid``, False when a cancel won."""
        reason = "Payment processing failed"
        try:
            result = self.payments.charge(order.id, order.user_id, order.total_amount)
        except RemoteServiceError as e:
            logger.warning("payment call failed", extra={"order_id": order.id, "error": str(e)})
            result = None
        else:
            if not result.success:
                reason = f"Payment {result.status or 'declined'}"

        if result is None or not result.success:
            # the status flip comes first: a concurrent cancel has already handed stock back
            if self.repository.set_status(order.id, OrderStatus.PENDING, OrderStatus.FAILED):
                orders_status_total.labels(OrderStatus.FAILED.value).inc()
                orders_created_total.labels(OrderStatus.FAILED.value).inc()
                self._compensate(order.id, order.items, "payment_failed")
            else:
                logger.warning("order left pending concurrently", extra={"order_id": order.id})
                orders_created_total.labels(OrderStatus.CANCELLED.value).inc()
            raise PaymentError(order.id, reason)

        if not self.repository.set_status(order.id, OrderStatus.PENDING, OrderStatus.PAID):
            # cancelled while the charge was in flight; stock is already back
            logger.error(
                "order charged after leaving pending, refund required",
                extra={"order_id": order.id, "transaction_id": result.transaction_id},
            )
            return False
        orders_status_total.labels(OrderStatus.PAID.value).inc()
        order.status = OrderStatus.PAID
        self._notify(order, NotificationType.ORDER_PAID, transaction_id=result.transaction_id)
        return True

    def _compensate(self, order_id: str, items: Iterable[OrderItem], reason: str) -> None:
        """Hand stock back item by item. Failures are logged, never raised."""
        for item in items:
            try:
                self.inventory.adjust_stock(item.product_id, item.quantity, StockDirection.INCREASE)
            except RemoteServiceError as e:
                logger.error(
                    "stock compensation failed",
                    extra={
                        "order_id": order_id,
                        "product_id": item.product_id,
                        "quantity": item.quantity,
                        "reason": reason,
                        "error": str(e),
                    },
                )
            else:
                order_compensations_total.labels(reason).inc()

    # ------------------------------------------------------------------ reads

    def get(self, order_id: str, caller: Caller) -> Order:
        """Return the order if ``caller`` owns it or is an admin.

        Raises:
            NotFoundError: No such order.
            ForbiddenError: The caller may not see it.
        """
        with start_span("order.get", {"order.id": order_id}):
            return self._load_for(order_id, caller)

    def list(
        self,
        caller: Caller,
        status: Optional[str] = None,
        user_id: Optional[int] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page:
        """One page of orders, newest first.

        Non-admins only ever see their own orders; ``user_id`` is honored for
        admins only.
        """
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        parsed = None
        if status is not None:
            parsed = OrderStatus.parse(status)
            if parsed is None:
                raise ValidationError(f"Invalid status: {status}")
        owner = user_id if caller.is_admin else caller.id
        with start_span("order.list", {"user.id": caller.id, "page": page}):
            return self.repository.list(user_id=owner, status=parsed, page=page, limit=limit)

    # ------------------------------------------------------------------ writes

    def update_status(self, order_id: str, new_status: Any) -> Order:
        """Move an order along the status machine (admin operation).

        ``cancelled`` goes through the cancellation path so stock is handed
        back. ``failed`` cannot be set by hand.

        Raises:
            ValidationError: ``new_status`` is not a status.
            NotFoundError: No such order.
            InvalidStateError: The transition is not allowed, or the order
                changed status concurrently.
        """
        target = OrderStatus.parse(new_status)
        if target is None:
            raise ValidationError(f"Invalid status: {new_status}")

        with start_span("order.update_status", {"order.id": order_id, "order.status": target.value}):
            order = self.repository.get(order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")
            if target == OrderStatus.FAILED:
                raise InvalidStateError("Orders only fail during payment")
            if not can_transition(order.status, target):
                raise InvalidStateError(f"Cannot transition from {order.status.value} to {target.value}")
            if target == OrderStatus.CANCELLED:
                return self._cancel(order)

            if not self.repository.set_status(order.id, order.status, target):
                raise InvalidStateError("Order status changed concurrently")
            orders_status_total.labels(target.value).inc()
            logger.info(
                "order status updated",
                extra={"order_id": order.id, "from": order.status.value, "to": target.value},
            )
            order.status = target
            if target in STATUS_NOTIFICATIONS:
                self._notify(order, STATUS_NOTIFICATIONS[target])
            return self.repository.get(order.id) or order

    def cancel(self, order_id: str, caller: Caller) -> Order:
        """Cancel an order and hand its stock back.

        Raises:
            NotFoundError: No such order.
            ForbiddenError: The caller neither owns it nor is an admin.
            InvalidStateError: The order is already delivered, cancelled or
                failed (nothing is touched), or changed concurrently.
        """
        with start_span("order.cancel", {"order.id": order_id}):
            order = self._load_for(order_id, caller)
            if order.status in TERMINAL_STATUSES:
                raise InvalidStateError(f"Order cannot be cancelled in status {order.status.value}")
            return self._cancel(order)

    def _cancel(self, order: Order) -> Order:
        previous = order.status
        # the status flip comes first: only one concurrent cancel may compensate
        if not self.repository.set_status(order.id, previous, OrderStatus.CANCELLED):
            raise InvalidStateError("Order status changed concurrently")
        orders_status_total.labels(OrderStatus.CANCELLED.value).inc()
        order.status = OrderStatus.CANCELLED

        self._compensate(order.id, order.items, "cancelled")
        if previous in REFUNDABLE_STATUSES:
            logger.info(
                "refund required for cancelled order",
                extra={"order_id": order.id, "amount": str(order.total_amount), "previous_status": previous.value},
            )
        self._notify(order, NotificationType.ORDER_CANCELLED, previous_status=previous.value)
        return self.repository.get(order.id) or order

    # ------------------------------------------------------------------ helpers

    def _load_for(self, order_id: str, caller: Caller) -> Order:
        order = self.repository.get(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if not caller.can_access(order.user_id):
            raise ForbiddenError("Access denied")
        return order

    def _notify(self, order: Order, type: NotificationType, **extra: Any) -> None:
        data = {
            "orderId": order.id,
            "status": order.status.value,
            "totalAmount": str(order.total_amount),
            **extra,
        }
        self.notifications.notify(order.user_id, type, order.id, data)
