"""Logging filter that adds request and trace correlation to records.

Installed on the console handler in ``settings.LOGGING`` so the JSON
formatter can always reference ``%(request_id)s`` and ``%(trace_id)s``.
"""

from logging import Filter, LogRecord

from apps.monitoring.tracing import current_trace_id
from .middleware import REQUEST_ID_CTX


class RequestContextFilter(Filter):
    """Attach ``request_id`` and ``trace_id`` attributes to log records.

    ``request_id`` comes from ``REQUEST_ID_CTX`` (set by
    ``RequestIdMiddleware``); ``trace_id`` is the hex id of the current
    OpenTelemetry span. Both fall back to ``"-"`` outside a request or span.
    Values already present on the record (passed via ``extra``) are kept.
    """

    def filter(self, record: LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = REQUEST_ID_CTX.get()
        if not hasattr(record, "trace_id"):
            record.trace_id = current_trace_id()
        return True
