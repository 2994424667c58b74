"""Error taxonomy of the orders service.

Every error raised by ``OrderService`` toward its callers is an ``OrderError``
with a stable ``code`` (returned as ``detail`` in HTTP bodies) and the HTTP
status the views map it to. Remote client errors (see ``retry.py``) never
leave the service: they are converted to one of these.
"""


class OrderError(Exception):
    code = "ORDER_ERROR"
    http_status = 400

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(OrderError):
    """Malformed input; raised before any mutation."""

    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(OrderError):
    code = "NOT_FOUND"
    http_status = 404


class ForbiddenError(OrderError):
    code = "FORBIDDEN"
    http_status = 403


class InsufficientStockError(OrderError):
    code = "INSUFFICIENT_STOCK"
    http_status = 422

    def __init__(self, product_id: int, requested: int | None = None, available: int | None = None):
        detail = f"Insufficient stock for product {product_id}"
        if requested is not None and available is not None:
            detail += f" (requested {requested}, available {available})"
        super().__init__(detail)
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvalidStateError(OrderError):
    """The order's current status does not allow the requested transition."""

    code = "INVALID_STATE"
    http_status = 409


class PaymentError(OrderError):
    """The charge failed; stock compensation was attempted before raising."""

    code = "PAYMENT_FAILED"
    http_status = 402

    def __init__(self, order_id: str, reason: str = "Payment processing failed"):
        super().__init__(reason)
        self.order_id = order_id


class UpstreamUnavailableError(OrderError):
    """A dependency kept failing after retries, or answered with an unexpected status."""

    code = "UPSTREAM_UNAVAILABLE"
    http_status = 503

    def __init__(self, service: str, message: str | None = None):
        super().__init__(message or f"{service} unavailable")
        self.service = service
