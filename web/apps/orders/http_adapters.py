"""HTTP adapter clients for the orders domain ports.

Concrete ``httpx`` clients for the catalog (inventory), payment and
notification services. Each client owns a ``RemoteServiceClient`` that
supplies retry with exponential backoff, 4xx/5xx classification, per-attempt
metrics and a tracing span; the adapter only builds the request and maps the
response body onto domain types.

Every outgoing request carries:

- ``X-Request-ID`` from the ContextVar set by the gateway middleware;
- W3C ``traceparent`` headers for the current span;
- for payments, an ``Idempotency-Key`` derived from the order id, so a retried
  charge cannot bill the customer twice.
"""

from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx
from django.conf import settings

from apps.monitoring.tracing import trace_headers
from gateway.middleware import REQUEST_ID_CTX

from .domain import (
    ChargeResult,
    InventoryPort,
    NotificationType,
    NotificationsPort,
    PaymentsPort,
    ProductSnapshot,
    StockDirection,
)
from .retry import ClientFaultError, RemoteServiceClient, RetryPolicy

# Wire names of the catalog's stock operations.
STOCK_OPERATIONS = {
    StockDirection.INCREASE: "add",
    StockDirection.DECREASE: "subtract",
}


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers: request id, trace context, then any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    headers.update(trace_headers())
    if extra:
        headers.update(extra)
    return headers


def retry_policy(max_attempts_setting: str = "HTTP_RETRY_MAX_ATTEMPTS", default_attempts: int = 3) -> RetryPolicy:
    """Read a retry policy from settings."""
    return RetryPolicy(
        max_attempts=getattr(settings, max_attempts_setting, default_attempts),
        delay=getattr(settings, "HTTP_RETRY_DELAY_SECS", 1.0),
        backoff_multiplier=getattr(settings, "HTTP_RETRY_BACKOFF_MULTIPLIER", 2.0),
    )


# ---------------- Inventory Adapter ---------------- #

class HttpInventoryClient(InventoryPort):
    """Catalog service client: product availability and stock adjustments."""

    service = "product-service"

    def __init__(self, base_url: str | None = None, timeout: float | None = None, remote: RemoteServiceClient | None = None):
        self.base_url = (base_url or settings.INVENTORY_BASE_URL).rstrip("/")
        self.timeout = timeout or getattr(settings, "INVENTORY_TIMEOUT_SECS", 10.0)
        self.remote = remote or RemoteServiceClient(self.service, retry_policy())

    def fetch(self, product_id: int) -> ProductSnapshot:
        """Read price and stock for a product.

        Maps responses:
        - 200 with an active product -> ``ProductSnapshot(exists=True)``
        - 404, or a product flagged ``is_active: false`` -> ``exists=False``

        Raises:
            ClientFaultError: For other 4xx responses.
            TransientRemoteError: When retries are exhausted.
        """
        url = f"{self.base_url}/api/products/{product_id}"

        def op() -> ProductSnapshot:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.get(url, headers=_request_headers())
            resp.raise_for_status()
            data = resp.json().get("data") or {}
            if not data or data.get("is_active") is False:
                return ProductSnapshot(product_id, exists=False)
            stock = data.get("stock_quantity", data.get("stock", 0))
            return ProductSnapshot(product_id, True, Decimal(str(data["price"])), int(stock))

        try:
            return self.remote.call(op, "fetch")
        except ClientFaultError as e:
            if e.status_code == 404:
                return ProductSnapshot(product_id, exists=False)
            raise

    def adjust_stock(self, product_id: int, quantity: int, direction: StockDirection) -> None:
        """PATCH the product's stock by ``quantity`` in the given direction."""
        url = f"{self.base_url}/api/products/{product_id}/stock"
        payload = {"quantity": quantity, "operation": STOCK_OPERATIONS[direction]}

        def op() -> None:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.patch(url, json=payload, headers=_request_headers())
            resp.raise_for_status()

        self.remote.call(op, f"stock_{direction.value}")


# ---------------- Payments Adapter ---------------- #

class HttpPaymentsClient(PaymentsPort):
    """Payment service client.

    A 402 (declined) is a client fault and surfaces as ``ClientFaultError``
    after a single attempt; the orchestrator treats any raised error as a
    failed charge.
    """

    service = "payment-service"

    def __init__(self, base_url: str | None = None, timeout: float | None = None, remote: RemoteServiceClient | None = None):
        self.base_url = (base_url or settings.PAYMENTS_BASE_URL).rstrip("/")
        self.timeout = timeout or getattr(settings, "PAYMENTS_TIMEOUT_SECS", 15.0)
        self.currency = getattr(settings, "PAYMENT_CURRENCY", "USD")
        self.payment_method = getattr(settings, "PAYMENT_METHOD", "credit_card")
        self.remote = remote or RemoteServiceClient(self.service, retry_policy())

    def charge(self, order_id: str, user_id: int, amount: Decimal) -> ChargeResult:
        payload = {
            "order_id": order_id,
            "user_id": user_id,
            "amount": float(amount),
            "currency": self.currency,
            "payment_method": self.payment_method,
        }
        headers = _request_headers({"Idempotency-Key": f"order-{order_id}"})

        def op() -> ChargeResult:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(f"{self.base_url}/api/payments", json=payload, headers=headers)
            resp.raise_for_status()
            body = resp.json()
            data = body.get("data") or {}
            tx = data.get("transactionId") or data.get("id")
            return ChargeResult(
                success=bool(body.get("success")),
                transaction_id=str(tx) if tx else None,
                status=data.get("status"),
            )

        return self.remote.call(op, "charge")


# ---------------- Notifications Adapter ---------------- #

class HttpNotificationsClient(NotificationsPort):
    """Notification service client. Fire-and-forget: ``notify`` never raises."""

    service = "notification-service"

    def __init__(self, base_url: str | None = None, timeout: float | None = None, remote: RemoteServiceClient | None = None):
        self.base_url = (base_url or settings.NOTIFICATIONS_BASE_URL).rstrip("/")
        self.timeout = timeout or getattr(settings, "NOTIFICATIONS_TIMEOUT_SECS", 10.0)
        self.remote = remote or RemoteServiceClient(
            self.service, retry_policy("NOTIFICATIONS_RETRY_MAX_ATTEMPTS", 2)
        )

    def notify(self, user_id: int, type: NotificationType, order_id: str, data: Mapping[str, Any]) -> None:
        payload = {"userId": user_id, "type": type.value, "orderId": order_id, "data": dict(data)}

        def op() -> None:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(f"{self.base_url}/api/notifications", json=payload, headers=_request_headers())
            resp.raise_for_status()

        self.remote.fire(op, type.value)
