"""In-process stub adapters for the orders domain ports.

These stubs implement ``InventoryPort``, ``PaymentsPort`` and
``NotificationsPort`` without any network calls. They are used by unit tests
and by local development (``USE_HTTP_ADAPTERS=False``) where deterministic
behavior is useful and the catalog, payment and notification services are
not running.

Failures are reported with the same ``RemoteServiceError`` types the HTTP
clients raise, so the orchestrator cannot tell a stub from the real thing.
"""

import threading
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .domain import (
    ChargeResult,
    InventoryPort,
    NotificationType,
    NotificationsPort,
    PaymentsPort,
    ProductSnapshot,
    StockDirection,
)
from .retry import ClientFaultError, RemoteServiceError


class InventoryStub(InventoryPort):
    """Thread-safe in-memory catalog.

    Args:
        catalog: Mapping ``product_id -> (unit price, stock)``.

    ``fail(operation, product_id, error)`` makes the next calls of
    ``operation`` (``"fetch"``, ``"decrease"`` or ``"increase"``) for that
    product raise ``error``. Every successful adjustment is appended to
    ``adjustments`` as ``(product_id, quantity, direction)``.
    """

    service = "product-service"

    def __init__(self, catalog: Optional[Mapping[int, Tuple[Any, int]]] = None):
        self._lock = threading.Lock()
        self.products: Dict[int, List] = {
            int(pid): [Decimal(str(price)), int(stock)] for pid, (price, stock) in (catalog or {}).items()
        }
        self.inactive: set[int] = set()
        self.failures: Dict[Tuple[str, int], RemoteServiceError] = {}
        self.adjustments: List[Tuple[int, int, StockDirection]] = []
        self.fetched: List[int] = []

    def fail(self, operation: str, product_id: int, error: RemoteServiceError) -> None:
        self.failures[(operation, product_id)] = error

    def stock(self, product_id: int) -> int:
        return self.products[product_id][1]

    def fetch(self, product_id: int) -> ProductSnapshot:
        with self._lock:
            self.fetched.append(product_id)
            self._maybe_fail("fetch", product_id)
            entry = self.products.get(product_id)
            if entry is None or product_id in self.inactive:
                return ProductSnapshot(product_id, exists=False)
            return ProductSnapshot(product_id, True, entry[0], entry[1])

    def adjust_stock(self, product_id: int, quantity: int, direction: StockDirection) -> None:
        with self._lock:
            self._maybe_fail(direction.value, product_id)
            entry = self.products.get(product_id)
            if entry is None:
                raise ClientFaultError(self.service, f"stock_{direction.value}", 404, 1, "Product not found")
            if direction == StockDirection.DECREASE:
                if entry[1] < quantity:
                    raise ClientFaultError(self.service, "stock_decrease", 409, 1, "Insufficient stock")
                entry[1] -= quantity
            else:
                entry[1] += quantity
            self.adjustments.append((product_id, quantity, direction))

    def _maybe_fail(self, operation: str, product_id: int) -> None:
        error = self.failures.get((operation, product_id))
        if error is not None:
            raise error


class PaymentsStub(PaymentsPort):
    """Approves every charge unless told otherwise.

    ``approve=False`` declines with ``success=False``; ``error`` is raised
    instead of answering, to simulate an unreachable or rejecting gateway.
    """

    def __init__(self, approve: bool = True, error: Optional[RemoteServiceError] = None):
        self.approve = approve
        self.error = error
        self.charges: List[Tuple[str, int, Decimal]] = []

    def charge(self, order_id: str, user_id: int, amount: Decimal) -> ChargeResult:
        self.charges.append((order_id, user_id, amount))
        if self.error is not None:
            raise self.error
        if not self.approve:
            return ChargeResult(False, None, "declined")
        return ChargeResult(True, str(uuid.uuid4()), "completed")


class NotificationsStub(NotificationsPort):
    """Records notifications instead of sending them."""

    def __init__(self):
        self.sent: List[Tuple[int, NotificationType, str, dict]] = []

    def notify(self, user_id: int, type: NotificationType, order_id: str, data: Mapping[str, Any]) -> None:
        self.sent.append((user_id, type, order_id, dict(data)))

    def types_for(self, order_id: str) -> List[NotificationType]:
        return [t for _, t, oid, _ in self.sent if oid == order_id]
