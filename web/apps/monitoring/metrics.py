"""Prometheus metrics for the orders service.

All collectors are registered once on the default registry at import time and
exposed by the ``/metrics`` view. Label sets are kept small and bounded:
statuses come from ``OrderStatus``, services and operations from the outbound
clients.
"""

from prometheus_client import Counter, Histogram

# ---- HTTP (gateway middleware) ----
http_request_duration = Histogram(
    "http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "route", "status_code"],
    buckets=[0.1, 0.5, 1, 2, 5],
)

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "route", "status_code"],
)

# ---- Orders ----
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created, by resulting status",
    ["status"],
)

orders_status_total = Counter(
    "orders_status_total",
    "Total number of order status changes, by new status",
    ["status"],
)

order_compensations_total = Counter(
    "order_compensations_total",
    "Stock compensations issued, by reason",
    ["reason"],
)

order_processing_duration = Histogram(
    "order_processing_duration_seconds",
    "Duration of order creation in seconds",
    ["outcome"],
    buckets=[0.5, 1, 2, 5, 10, 30],
)

# ---- Outbound services ----
external_service_requests = Counter(
    "external_service_requests_total",
    "Outbound request attempts, by service, operation and outcome",
    ["service", "operation", "outcome"],
)

external_service_duration = Histogram(
    "external_service_duration_seconds",
    "Duration of a single outbound request attempt in seconds",
    ["service", "operation"],
    buckets=[0.1, 0.5, 1, 2, 5],
)

# ---- Database ----
database_query_duration = Histogram(
    "database_query_duration_seconds",
    "Duration of order store statements in seconds",
    ["operation"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1],
)
