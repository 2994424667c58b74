"""Request-level middleware: correlation id, size limit and HTTP metrics.

``RequestIdMiddleware`` gives every request an identifier, taken from the
incoming ``X-Request-ID`` header (set by the routing gateway) or generated
here. The id is stored on the request, in ``REQUEST_ID_CTX`` for code that
has no request object (outbound clients, log filters), and echoed on the
response.

``RequestMetricsMiddleware`` records ``http_requests_total`` and
``http_request_duration_seconds`` labelled by the resolved URL route rather
than the raw path, so order ids do not explode label cardinality.
"""

import time
import uuid
import contextvars

from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

from apps.monitoring.metrics import http_request_duration, http_requests_total

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")


class RequestIdMiddleware(MiddlewareMixin):
    """Set and return a per-request identifier.

    Attributes:
        HEADER (str): Incoming header as found in ``request.META``.
        RESPONSE_HEADER (str): Header added to outgoing responses.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        response[self.RESPONSE_HEADER] = getattr(request, "request_id", REQUEST_ID_CTX.get())
        token = getattr(request, "_request_id_token", None)
        if token is not None:
            REQUEST_ID_CTX.reset(token)
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    """Reject ``/api/`` requests whose declared body exceeds ``API_MAX_BYTES``."""

    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        limit = getattr(settings, "API_MAX_BYTES", 1024 * 1024)
        clen = request.META.get("CONTENT_LENGTH")
        if clen and clen.isdigit() and int(clen) > limit:
            return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
        return None


class RequestMetricsMiddleware(MiddlewareMixin):
    def process_request(self, request):
        request._metrics_started = time.perf_counter()

    def process_response(self, request, response):
        started = getattr(request, "_metrics_started", None)
        if started is None:
            return response
        match = getattr(request, "resolver_match", None)
        route = match.route if match is not None and match.route else request.path
        labels = (request.method, route, str(response.status_code))
        http_request_duration.labels(*labels).observe(time.perf_counter() - started)
        http_requests_total.labels(*labels).inc()
        return response
