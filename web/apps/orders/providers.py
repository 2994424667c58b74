"""Service provider helpers for wiring OrderService with ports.

``get_order_service`` returns an ``OrderService`` for the current request.
With ``settings.USE_HTTP_ADAPTERS`` on it talks to the catalog, payment and
notification services over HTTP; otherwise it uses in-process stubs seeded
from ``settings.STUB_CATALOG``. The stubs are process-wide so stock
decrements survive between requests during local development;
``reset_stub_ports`` starts over with a fresh catalog (tests).

Views call ``providers.get_order_service()`` through the module so tests can
monkeypatch it.
"""

import threading
from typing import Optional, Tuple

from django.conf import settings

from .adapters import InventoryStub, NotificationsStub, PaymentsStub
from .http_adapters import HttpInventoryClient, HttpNotificationsClient, HttpPaymentsClient
from .service import OrderService

_lock = threading.Lock()
_stubs: Optional[Tuple[InventoryStub, PaymentsStub, NotificationsStub]] = None


def stub_ports() -> Tuple[InventoryStub, PaymentsStub, NotificationsStub]:
    global _stubs
    with _lock:
        if _stubs is None:
            _stubs = (
                InventoryStub(getattr(settings, "STUB_CATALOG", {})),
                PaymentsStub(),
                NotificationsStub(),
            )
        return _stubs


def reset_stub_ports() -> None:
    global _stubs
    with _lock:
        _stubs = None


def get_order_service() -> OrderService:
    """Return a configured OrderService instance.

    Returns:
        OrderService: HTTP-backed when ``USE_HTTP_ADAPTERS`` is truthy,
        stub-backed otherwise.
    """
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return OrderService(
            inventory=HttpInventoryClient(),
            payments=HttpPaymentsClient(),
            notifications=HttpNotificationsClient(),
        )

    inventory, payments, notifications = stub_ports()
    return OrderService(inventory=inventory, payments=payments, notifications=notifications)
