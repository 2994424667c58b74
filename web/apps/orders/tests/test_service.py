"""Saga tests for OrderService with in-process stubs and the test database.

Stubs record every stock adjustment, charge and notification so the tests can
assert both the outcome and the compensations that led to it.
"""

import threading
from decimal import Decimal

import pytest

from apps.orders.adapters import InventoryStub, NotificationsStub, PaymentsStub
from apps.orders.domain import Caller, NotificationType, OrderLine, OrderStatus, Role, StockDirection
from apps.orders.errors import (
    ForbiddenError,
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    PaymentError,
    UpstreamUnavailableError,
    ValidationError,
)
from apps.orders.retry import ClientFaultError, TransientRemoteError
from apps.orders.service import OrderService

USER = Caller(42)
OTHER = Caller(7)
ADMIN = Caller(1, Role.ADMIN)

CATALOG = {1: ("25.00", 10), 2: ("9.99", 5), 3: ("100.00", 0)}


@pytest.fixture
def inventory():
    return InventoryStub(CATALOG)


@pytest.fixture
def payments():
    return PaymentsStub()


@pytest.fixture
def notifications():
    return NotificationsStub()


@pytest.fixture
def service(inventory, payments, notifications):
    return OrderService(inventory, payments, notifications)


def decreases(inventory):
    return [(p, q) for p, q, d in inventory.adjustments if d == StockDirection.DECREASE]


def increases(inventory):
    return [(p, q) for p, q, d in inventory.adjustments if d == StockDirection.INCREASE]


# ---- create ----

@pytest.mark.django_db
def test_create_happy_path(service, inventory, payments, notifications, address):
    order = service.create(USER, [OrderLine(1, 2), OrderLine(2, 1)], address)

    assert order.status == OrderStatus.PAID
    assert order.user_id == 42
    assert order.total_amount == Decimal("59.99")
    assert [(i.product_id, i.quantity, i.price) for i in order.items] == [
        (1, 2, Decimal("25.00")),
        (2, 1, Decimal("9.99")),
    ]
    assert inventory.stock(1) == 8 and inventory.stock(2) == 4
    assert payments.charges == [(order.id, 42, Decimal("59.99"))]
    assert notifications.types_for(order.id) == [NotificationType.ORDER_PAID, NotificationType.ORDER_CREATED]
    assert service.get(order.id, USER).status == OrderStatus.PAID


@pytest.mark.django_db
def test_create_merges_duplicate_lines(service, inventory, address):
    order = service.create(USER, [OrderLine(1, 1), OrderLine(1, 2)], address)
    assert [(i.product_id, i.quantity) for i in order.items] == [(1, 3)]
    assert decreases(inventory) == [(1, 3)]
    assert sorted(inventory.fetched) == [1]


@pytest.mark.django_db
def test_create_total_ignores_later_price_changes(service, inventory, address):
    order = service.create(USER, [OrderLine(2, 2)], address)
    inventory.products[2][0] = Decimal("1.00")
    assert service.get(order.id, USER).total_amount == Decimal("19.98")


@pytest.mark.parametrize(
    "lines,addr",
    [
        ([], None),
        ([OrderLine(1, 0)], None),
        ([OrderLine(1, -1)], None),
        ([OrderLine(1, 1)], {"street": "x", "city": "y"}),
    ],
)
@pytest.mark.django_db
def test_create_validation_has_no_side_effects(service, inventory, payments, address, lines, addr):
    with pytest.raises(ValidationError):
        service.create(USER, lines, addr if addr is not None else address)
    assert inventory.fetched == [] and inventory.adjustments == [] and payments.charges == []


@pytest.mark.django_db
def test_create_unknown_product(service, inventory, payments, address):
    with pytest.raises(NotFoundError):
        service.create(USER, [OrderLine(1, 1), OrderLine(99, 1)], address)
    assert inventory.adjustments == [] and payments.charges == []


@pytest.mark.django_db
def test_create_inactive_product_is_unknown(service, inventory, address):
    inventory.inactive.add(1)
    with pytest.raises(NotFoundError):
        service.create(USER, [OrderLine(1, 1)], address)


@pytest.mark.django_db
def test_create_insufficient_stock_before_any_mutation(service, inventory, payments, address, metric):
    before = metric("orders_created_total", status="pending")
    with pytest.raises(InsufficientStockError) as e:
        service.create(USER, [OrderLine(1, 1), OrderLine(2, 6)], address)
    assert e.value.product_id == 2
    assert inventory.adjustments == [] and payments.charges == []
    assert service.list(ADMIN).total == 0
    assert metric("orders_created_total", status="pending") == before


@pytest.mark.django_db
def test_create_catalog_down(service, inventory, address):
    inventory.fail("fetch", 2, TransientRemoteError("product-service", "fetch", 503, 3, "down"))
    with pytest.raises(UpstreamUnavailableError):
        service.create(USER, [OrderLine(1, 1), OrderLine(2, 1)], address)
    assert inventory.adjustments == []


@pytest.mark.django_db
def test_partial_decrement_is_compensated(service, inventory, payments, address, metric):
    """Second decrement loses a race: the first one is handed back, nothing persists."""
    before = metric("order_compensations_total", reason="reservation_failed")
    inventory.fail("decrease", 2, ClientFaultError("product-service", "stock_decrease", 409, 1, "conflict"))

    with pytest.raises(InsufficientStockError):
        service.create(USER, [OrderLine(1, 2), OrderLine(2, 1)], address)

    assert decreases(inventory) == [(1, 2)]
    assert increases(inventory) == [(1, 2)]
    assert inventory.stock(1) == 10
    assert payments.charges == []
    assert service.list(ADMIN).total == 0
    assert metric("order_compensations_total", reason="reservation_failed") == before + 1


@pytest.mark.django_db
def test_decrement_of_unknown_product_maps_to_not_found(service, inventory, address):
    inventory.fail("decrease", 1, ClientFaultError("product-service", "stock_decrease", 404, 1, "gone"))
    with pytest.raises(NotFoundError):
        service.create(USER, [OrderLine(1, 1)], address)


@pytest.mark.django_db
def test_payment_declined_compensates_and_fails_order(service, inventory, payments, notifications, address):
    payments.approve = False

    with pytest.raises(PaymentError) as e:
        service.create(USER, [OrderLine(1, 2), OrderLine(2, 1)], address)

    failed = service.get(e.value.order_id, USER)
    assert failed.status == OrderStatus.FAILED
    assert sorted(increases(inventory)) == [(1, 2), (2, 1)]
    assert inventory.stock(1) == 10 and inventory.stock(2) == 5
    assert notifications.sent == []


@pytest.mark.django_db
def test_payment_unreachable_is_a_payment_failure(service, inventory, payments, address):
    payments.error = TransientRemoteError("payment-service", "charge", 503, 3, "down")
    with pytest.raises(PaymentError) as e:
        service.create(USER, [OrderLine(1, 1)], address)
    assert service.get(e.value.order_id, USER).status == OrderStatus.FAILED
    assert inventory.stock(1) == 10


@pytest.mark.django_db
def test_compensation_failure_is_logged_not_raised(service, inventory, payments, address, caplog):
    payments.approve = False
    inventory.fail("increase", 1, TransientRemoteError("product-service", "stock_increase", 503, 3, "down"))

    with pytest.raises(PaymentError):
        service.create(USER, [OrderLine(1, 2), OrderLine(2, 1)], address)

    assert increases(inventory) == [(2, 1)]
    assert "stock compensation failed" in caplog.text


@pytest.mark.django_db
def test_create_records_span(service, address, spans):
    order = service.create(USER, [OrderLine(1, 1)], address)
    span = next(s for s in spans.get_finished_spans() if s.name == "order.create")
    assert span.attributes["order.id"] == order.id
    assert span.attributes["order.total"] == "25.00"


# ---- reads ----

@pytest.mark.django_db
def test_get_authorization(service, address):
    order = service.create(USER, [OrderLine(1, 1)], address)
    assert service.get(order.id, ADMIN).id == order.id
    with pytest.raises(ForbiddenError):
        service.get(order.id, OTHER)
    with pytest.raises(NotFoundError):
        service.get("00000000-0000-4000-8000-000000000000", USER)


@pytest.mark.django_db
def test_get_is_idempotent(service, address):
    order = service.create(USER, [OrderLine(1, 1)], address)
    first = service.get(order.id, USER)
    second = service.get(order.id, USER)
    assert first == second


@pytest.mark.django_db
def test_list_scopes_non_admins_to_themselves(service, address):
    service.create(USER, [OrderLine(1, 1)], address)
    service.create(USER, [OrderLine(1, 1)], address)
    service.create(OTHER, [OrderLine(2, 1)], address)

    assert service.list(USER).total == 2
    # user_id is ignored for non-admins
    assert service.list(USER, user_id=7).total == 2
    assert service.list(ADMIN).total == 3
    assert service.list(ADMIN, user_id=7).total == 1
    assert service.list(ADMIN, status="paid", limit=2).total_pages == 2
    with pytest.raises(ValidationError):
        service.list(USER, status="lost")


# ---- status changes ----

@pytest.mark.django_db
def test_update_status_walks_the_machine(service, notifications, address):
    order = service.create(USER, [OrderLine(1, 1)], address)
    for status in ("processing", "shipped", "delivered"):
        order = service.update_status(order.id, status)
        assert order.status.value == status
    types = notifications.types_for(order.id)
    assert NotificationType.ORDER_SHIPPED in types and NotificationType.ORDER_DELIVERED in types


@pytest.mark.django_db
def test_update_status_rejects_skips_and_unknowns(service, address):
    order = service.create(USER, [OrderLine(1, 1)], address)
    with pytest.raises(InvalidStateError):
        service.update_status(order.id, "delivered")
    with pytest.raises(InvalidStateError):
        service.update_status(order.id, "failed")
    with pytest.raises(ValidationError):
        service.update_status(order.id, "teleported")
    with pytest.raises(NotFoundError):
        service.update_status("00000000-0000-4000-8000-000000000000", "processing")
    assert service.get(order.id, USER).status == OrderStatus.PAID


@pytest.mark.django_db
def test_update_status_to_cancelled_restores_stock(service, inventory, address):
    order = service.create(USER, [OrderLine(1, 3)], address)
    assert inventory.stock(1) == 7
    assert service.update_status(order.id, "cancelled").status == OrderStatus.CANCELLED
    assert inventory.stock(1) == 10


@pytest.mark.django_db
def test_cancel_restores_stock_and_logs_refund(service, inventory, notifications, address, caplog):
    order = service.create(USER, [OrderLine(1, 2), OrderLine(2, 1)], address)
    cancelled = service.cancel(order.id, USER)

    assert cancelled.status == OrderStatus.CANCELLED
    assert inventory.stock(1) == 10 and inventory.stock(2) == 5
    assert "refund required" in caplog.text
    assert notifications.types_for(order.id)[-1] == NotificationType.ORDER_CANCELLED


@pytest.mark.django_db
def test_cancel_authorization(service, inventory, address):
    order = service.create(USER, [OrderLine(1, 1)], address)
    with pytest.raises(ForbiddenError):
        service.cancel(order.id, OTHER)
    assert service.cancel(order.id, ADMIN).status == OrderStatus.CANCELLED


@pytest.mark.django_db
def test_terminal_orders_are_immutable(service, inventory, address):
    order = service.create(USER, [OrderLine(1, 1)], address)
    service.cancel(order.id, USER)
    adjustments = list(inventory.adjustments)

    with pytest.raises(InvalidStateError):
        service.cancel(order.id, USER)
    with pytest.raises(InvalidStateError):
        service.update_status(order.id, "processing")
    assert inventory.adjustments == adjustments
    assert service.get(order.id, USER).status == OrderStatus.CANCELLED


@pytest.mark.django_db
def test_failed_orders_cannot_be_cancelled(service, inventory, payments, address):
    payments.approve = False
    with pytest.raises(PaymentError) as e:
        service.create(USER, [OrderLine(1, 2)], address)
    adjustments = list(inventory.adjustments)

    with pytest.raises(InvalidStateError):
        service.cancel(e.value.order_id, USER)
    assert inventory.adjustments == adjustments
    assert inventory.stock(1) == 10


# ---- cancel racing the charge ----

class CancellingPayments(PaymentsStub):
    """Cancels the order while its charge is in flight."""

    def __init__(self, approve):
        super().__init__(approve=approve)
        self.service = None

    def charge(self, order_id, user_id, amount):
        self.service.cancel(order_id, ADMIN)
        return super().charge(order_id, user_id, amount)


@pytest.mark.django_db
def test_declined_charge_after_cancel_hands_stock_back_once(inventory, notifications, address, metric):
    payments = CancellingPayments(approve=False)
    service = payments.service = OrderService(inventory, payments, notifications)
    failed_before = metric("orders_created_total", status="failed")

    with pytest.raises(PaymentError) as e:
        service.create(USER, [OrderLine(1, 2)], address)

    assert inventory.stock(1) == 10
    assert increases(inventory) == [(1, 2)]
    assert service.get(e.value.order_id, USER).status == OrderStatus.CANCELLED
    assert metric("orders_created_total", status="failed") == failed_before


@pytest.mark.django_db
def test_approved_charge_after_cancel_is_not_counted_as_paid(inventory, notifications, address, metric, caplog):
    payments = CancellingPayments(approve=True)
    service = payments.service = OrderService(inventory, payments, notifications)
    paid_before = metric("orders_created_total", status="paid")
    cancelled_before = metric("orders_created_total", status="cancelled")

    order = service.create(USER, [OrderLine(1, 2)], address)

    assert order.status == OrderStatus.CANCELLED
    assert inventory.stock(1) == 10
    assert metric("orders_created_total", status="paid") == paid_before
    assert metric("orders_created_total", status="cancelled") == cancelled_before + 1
    assert NotificationType.ORDER_CREATED not in notifications.types_for(order.id)
    assert "refund required" in caplog.text


# ---- concurrency ----

class BarrierInventory(InventoryStub):
    """Every lookup waits until ``parties`` lookups are in flight at once."""

    def __init__(self, catalog, parties):
        super().__init__(catalog)
        self.barrier = threading.Barrier(parties, timeout=5)

    def fetch(self, product_id):
        self.barrier.wait()
        return super().fetch(product_id)


@pytest.mark.django_db
def test_product_lookups_run_concurrently(payments, notifications, address):
    inventory = BarrierInventory(CATALOG, parties=2)
    service = OrderService(inventory, payments, notifications, fetch_concurrency=4)

    order = service.create(USER, [OrderLine(1, 1), OrderLine(2, 1)], address)

    assert order.status == OrderStatus.PAID
    assert sorted(inventory.fetched) == [1, 2]
