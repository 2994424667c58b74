"""HTTP views for the orders app.

Views are kept intentionally small: they validate requests (via Pydantic),
map them to domain arguments, delegate to ``OrderService`` and render the
result. Every ``OrderError`` is rendered as ``{"detail": code, "message":
text}`` with the error's HTTP status; Pydantic failures as 400
``VALIDATION_ERROR`` with the field errors.

The caller identity (``request.user.caller``) comes from
``BearerTokenAuthentication``.

Idempotency: when an ``Idempotency-Key`` header is sent to the create
endpoint, the first request is processed and its response stored; retries
with the same payload replay it with ``Idempotent-Replay: true``. Reusing the
key with a different payload returns 409.
"""

from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .authentication import IsAdminRole
from .domain import OrderLine
from .errors import OrderError
from .idempotency import discard, finalize, get_or_create_idempotent
from .schemas import CreateOrderDTO, ListQueryDTO, OrderReadDTO, UpdateStatusDTO


def _error(e: OrderError) -> Response:
    return Response({"detail": e.code, "message": e.message}, status=e.http_status)


def _invalid(e: PydanticValidationError) -> Response:
    return Response(
        {"detail": "VALIDATION_ERROR", "errors": e.errors(include_url=False, include_context=False)},
        status=status.HTTP_400_BAD_REQUEST,
    )


def _order(order) -> dict:
    return OrderReadDTO.from_domain(order).to_json()


class OrdersPingView(APIView):
    """Simple liveness endpoint for the orders module."""

    authentication_classes = []
    permission_classes = [AllowAny]

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(APIView):
    """List orders (GET) and create an order through the saga (POST)."""

    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        try:
            q = ListQueryDTO.model_validate(request.query_params.dict())
        except PydanticValidationError as e:
            return _invalid(e)

        try:
            page = providers.get_order_service().list(
                request.user.caller, status=q.status, user_id=q.user_id, page=q.page, limit=q.limit
            )
        except OrderError as e:
            return _error(e)

        return Response(
            {
                "results": [_order(o) for o in page.items],
                "page": page.page,
                "limit": page.limit,
                "total": page.total,
                "total_pages": page.total_pages,
            }
        )

    def post(self, request):
        """Create a new order.

        Returns:
            Response: One of the following responses.
            - 201 with the order (status ``paid``) when created.
            - the stored status and body, with ``Idempotent-Replay: true``,
              when the same key and payload are retried.
            - 409 ``IDEMPOTENCY_CONFLICT`` / ``IDEMPOTENCY_IN_PROGRESS``.
            - 400 ``VALIDATION_ERROR`` for invalid payloads.
            - 404 ``NOT_FOUND`` for unknown products.
            - 422 ``INSUFFICIENT_STOCK``.
            - 402 ``PAYMENT_FAILED`` when the charge fails.
            - 503 ``UPSTREAM_UNAVAILABLE`` when a dependency is down.
        """
        caller = request.user.caller
        idem_key = request.headers.get("Idempotency-Key")

        # 1) Pydantic validation
        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return _invalid(e)

        # 2) Idempotency get-or-create
        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(idem_key, caller.id, request.data)
            except ValueError as e:
                return Response({"detail": str(e)}, status=status.HTTP_409_CONFLICT)
            if existing:
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        # 3) Saga
        lines = [OrderLine(i.product_id, i.quantity) for i in dto.items]
        try:
            order = providers.get_order_service().create(caller, lines, dto.shipping_address.model_dump())
        except OrderError as e:
            resp = _error(e)
            if rec:
                finalize(rec, e.http_status, resp.data)
            return resp
        except Exception:
            if rec:
                discard(rec)
            raise

        body = _order(order)
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        try:
            order = providers.get_order_service().get(str(oid), request.user.caller)
        except OrderError as e:
            return _error(e)
        return Response(_order(order))


class UpdateOrderStatusView(APIView):
    """Admin-only status change along the order state machine."""

    permission_classes = [IsAuthenticated, IsAdminRole]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_write"

    def patch(self, request, oid):
        try:
            dto = UpdateStatusDTO.model_validate(request.data)
        except PydanticValidationError as e:
            return _invalid(e)
        try:
            order = providers.get_order_service().update_status(str(oid), dto.status)
        except OrderError as e:
            return _error(e)
        return Response(_order(order))


class CancelOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_write"

    def post(self, request, oid):
        try:
            order = providers.get_order_service().cancel(str(oid), request.user.caller)
        except OrderError as e:
            return _error(e)
        return Response(_order(order))
