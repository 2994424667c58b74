"""Health and metrics endpoints.

``/health/`` and ``/health/live/`` only report that the process is up.
``/health/ready/`` checks the database through the order store so a pod is
taken out of rotation when it cannot persist orders. ``/metrics`` exposes the
default Prometheus registry.
"""

import logging

from django.http import HttpResponse, JsonResponse
from django.utils import timezone
from django.views.decorators.http import require_GET
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from apps.orders.store import OrderStore

logger = logging.getLogger(__name__)

SERVICE = "order-service"


def _doc(status: str, **extra) -> dict:
    return {"status": status, "service": SERVICE, "timestamp": timezone.now().isoformat(), **extra}


@require_GET
def health_view(_request):
    return JsonResponse(_doc("healthy"))


@require_GET
def live_view(_request):
    return JsonResponse(_doc("alive"))


@require_GET
def ready_view(_request):
    try:
        OrderStore().query("SELECT 1", operation="health")
    except Exception:
        logger.exception("readiness check failed")
        return JsonResponse(_doc("not ready", checks={"database": "unhealthy"}), status=503)
    return JsonResponse(_doc("ready", checks={"database": "healthy"}))


@require_GET
def metrics_view(_request):
    return HttpResponse(generate_latest(), content_type=CONTENT_TYPE_LATEST)
