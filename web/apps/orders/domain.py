"""Domain models, status machine and ports for orders.

This module contains the dataclasses used as DTOs across the service, the
closed ``OrderStatus`` enumeration with its transition table, and the
protocol definitions (ports) for the three remote dependencies the saga
coordinates: inventory, payments and notifications. It does no I/O.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Protocol

CENT = Decimal("0.01")


# ---- Enums ----
class OrderStatus(str, Enum):
    """Closed set of order statuses.

    ``delivered``, ``cancelled`` and ``failed`` are terminal. ``failed`` is
    only ever reached from ``pending`` when the charge fails.
    """

    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: Any) -> Optional["OrderStatus"]:
        """Return the member for ``value`` or None when it is not a status."""
        try:
            return cls(value)
        except ValueError:
            return None


TRANSITIONS: Mapping[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

# Statuses in which money has been taken, so cancelling implies a refund.
REFUNDABLE_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.PROCESSING, OrderStatus.SHIPPED})


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class StockDirection(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


class NotificationType(str, Enum):
    ORDER_CREATED = "order_created"
    ORDER_PAID = "order_paid"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCELLED = "order_cancelled"


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class Caller:
    """Authenticated identity forwarded by the gateway."""

    id: int
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def can_access(self, owner_id: int) -> bool:
        return self.is_admin or self.id == owner_id


@dataclass(frozen=True)
class ShippingAddress:
    street: str
    city: str
    state: str
    country: str
    postal_code: str

    REQUIRED = ("street", "city", "state", "country", "postal_code")

    @classmethod
    def missing_fields(cls, raw: Mapping[str, Any] | None) -> List[str]:
        """Names of required fields absent or blank in ``raw``."""
        raw = raw or {}
        return [f for f in cls.REQUIRED if not str(raw.get(f) or "").strip()]

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "ShippingAddress":
        return cls(**{f: str(raw[f]).strip() for f in cls.REQUIRED})

    def as_dict(self) -> dict:
        return {f: getattr(self, f) for f in self.REQUIRED}


@dataclass(frozen=True)
class OrderLine:
    """A requested line of a checkout: which product and how many."""

    product_id: int
    quantity: int


@dataclass(frozen=True)
class OrderItem:
    """A persisted line item.

    ``price`` is the unit price captured from the catalog when the order was
    placed; later catalog price changes never touch it.
    """

    product_id: int
    quantity: int
    price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


@dataclass
class Order:
    """Container for order data.

    Attributes:
        id: Opaque order identifier (UUID text).
        user_id: Owning user.
        status: Current ``OrderStatus``.
        total_amount: Sum of item subtotals, computed server side.
        shipping_address: Where to ship.
        items: Immutable line items.
        created_at / updated_at: Row timestamps.
    """

    id: str
    user_id: int
    status: OrderStatus
    total_amount: Decimal
    shipping_address: ShippingAddress
    items: List[OrderItem] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Page:
    items: List[Order]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass(frozen=True)
class ProductSnapshot:
    """Availability of a product as reported by the catalog at read time."""

    product_id: int
    exists: bool
    price: Decimal = Decimal("0")
    stock: int = 0


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    transaction_id: Optional[str] = None
    status: Optional[str] = None


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def price_items(lines: Iterable[OrderLine], products: Mapping[int, ProductSnapshot]) -> List[OrderItem]:
    """Snapshot catalog prices onto the requested lines."""
    return [OrderItem(l.product_id, l.quantity, quantize(products[l.product_id].price)) for l in lines]


def compute_total(items: Iterable[OrderItem]) -> Decimal:
    return quantize(sum((i.subtotal for i in items), Decimal("0")))


# ---- Ports (DIP) ----
class InventoryPort(Protocol):
    """Catalog stock operations used by the saga."""

    def fetch(self, product_id: int) -> ProductSnapshot:
        """Return the product's price and stock; ``exists`` is False when unknown.

        Raises:
            RemoteServiceError: When the catalog cannot be reached.
        """
        ...

    def adjust_stock(self, product_id: int, quantity: int, direction: StockDirection) -> None:
        """Increase or decrease stock by ``quantity``.

        Raises:
            RemoteServiceError: ``ClientFaultError`` with 404 for unknown
                products, 409/422 when a decrease exceeds stock.
        """
        ...


class PaymentsPort(Protocol):
    def charge(self, order_id: str, user_id: int, amount: Decimal) -> ChargeResult:
        """Charge ``amount`` for the order. Raises ``RemoteServiceError`` on failure."""
        ...


class NotificationsPort(Protocol):
    def notify(self, user_id: int, type: NotificationType, order_id: str, data: Mapping[str, Any]) -> None:
        """Best-effort: never raises."""
        ...
