"""Repository layer for persisting orders.

SQL for the ``orders`` and ``order_items`` tables, issued through
``OrderStore``. The repository maps rows to domain ``Order`` objects so the
orchestrator is not coupled to Django ORM types or to backend specific value
representations (SQLite hands back text for JSON and datetimes, PostgreSQL
native objects).

Status writes are compare-and-set: ``set_status`` only updates the row when
it still holds the status the caller observed, and reports whether it did.
"""

import json
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
from typing import Any, Iterable, List, Optional

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from .domain import Order, OrderItem, OrderStatus, Page, ShippingAddress, quantize
from .store import OrderStore, TransactionHandle

ORDER_COLUMNS = "id, user_id, status, total_amount, shipping_address, created_at, updated_at"


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = parse_datetime(value)
    if value is not None and timezone.is_naive(value):
        value = timezone.make_aware(value, dt_timezone.utc)
    return value


def _to_address(value: Any) -> ShippingAddress:
    if isinstance(value, (str, bytes)):
        value = json.loads(value)
    return ShippingAddress.from_mapping(value)


class OrderRepository:
    """Repository that persists ``Order`` domain objects with raw SQL."""

    def __init__(self, store: OrderStore | None = None):
        self.store = store or OrderStore()

    # ---- writes ----
    def insert(self, handle: TransactionHandle, order: Order) -> Order:
        """Insert the order row and its items inside ``handle``'s transaction.

        Sets ``created_at`` / ``updated_at`` on ``order`` and returns it.
        """
        now = timezone.now()
        stamp = self.store.adapt_datetime(now)
        handle.query(
            f"INSERT INTO orders ({ORDER_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s)",
            [
                order.id,
                order.user_id,
                order.status.value,
                order.total_amount,
                json.dumps(order.shipping_address.as_dict()),
                stamp,
                stamp,
            ],
            operation="insert_order",
        )
        for item in order.items:
            handle.query(
                "INSERT INTO order_items (order_id, product_id, quantity, price) VALUES (%s, %s, %s, %s)",
                [order.id, item.product_id, item.quantity, item.price],
                operation="insert_order_item",
            )
        order.created_at = order.updated_at = now
        return order

    def set_status(self, order_id: str, expected: OrderStatus, new: OrderStatus) -> bool:
        """Compare-and-set the status. Returns False when the row no longer holds ``expected``."""
        rs = self.store.query(
            "UPDATE orders SET status = %s, updated_at = %s WHERE id = %s AND status = %s",
            [new.value, self.store.adapt_datetime(timezone.now()), order_id, expected.value],
            operation="update_status",
        )
        return rs.rowcount == 1

    # ---- reads ----
    def get(self, order_id: str) -> Optional[Order]:
        row = self.store.query(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = %s", [order_id], operation="get_order"
        ).first()
        if row is None:
            return None
        order = self._order_from_row(row)
        order.items = self._items_for([order.id]).get(order.id, [])
        return order

    def list(
        self,
        user_id: Optional[int] = None,
        status: Optional[OrderStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page:
        """Return one page of orders, newest first."""
        clauses, params = [], []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        total = self.store.query(
            f"SELECT COUNT(*) AS total FROM orders{where}", params, operation="count_orders"
        ).first()["total"]
        rows = self.store.query(
            f"SELECT {ORDER_COLUMNS} FROM orders{where} ORDER BY created_at DESC, id LIMIT %s OFFSET %s",
            [*params, limit, (page - 1) * limit],
            operation="list_orders",
        )
        orders = [self._order_from_row(r) for r in rows]
        items = self._items_for([o.id for o in orders])
        for o in orders:
            o.items = items.get(o.id, [])
        return Page(items=orders, page=page, limit=limit, total=int(total))

    def _items_for(self, order_ids: Iterable[str]) -> dict[str, List[OrderItem]]:
        order_ids = list(order_ids)
        if not order_ids:
            return {}
        placeholders = ", ".join(["%s"] * len(order_ids))
        rows = self.store.query(
            "SELECT order_id, product_id, quantity, price FROM order_items "
            f"WHERE order_id IN ({placeholders}) ORDER BY id",
            order_ids,
            operation="get_order_items",
        )
        out: dict[str, List[OrderItem]] = {}
        for r in rows:
            out.setdefault(r["order_id"], []).append(
                OrderItem(int(r["product_id"]), int(r["quantity"]), quantize(Decimal(str(r["price"]))))
            )
        return out

    @staticmethod
    def _order_from_row(row: dict) -> Order:
        return Order(
            id=row["id"],
            user_id=int(row["user_id"]),
            status=OrderStatus(row["status"]),
            total_amount=quantize(Decimal(str(row["total_amount"]))),
            shipping_address=_to_address(row["shipping_address"]),
            created_at=_to_datetime(row["created_at"]),
            updated_at=_to_datetime(row["updated_at"]),
        )
