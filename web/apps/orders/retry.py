"""Retrying wrapper for calls to remote services.

``RemoteServiceClient`` runs a zero-argument operation (already bound to its
request) with exponential backoff, classifying each failure:

- a 4xx status (malformed request, not found, conflict, declined) is the
  caller's fault: it is raised at once as ``ClientFaultError``;
- everything else (transport errors, timeouts, 5xx, unreadable bodies) is
  transient: the call sleeps ``delay * backoff_multiplier ** (attempt - 1)``
  and tries again, raising ``TransientRemoteError`` after ``max_attempts``.

Each attempt is counted in ``external_service_requests_total`` and timed in
``external_service_duration_seconds``; one span covers the whole sequence.
``sleep`` and ``clock`` are injectable so the delay sequence can be asserted
without waiting.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import httpx
from opentelemetry.trace import SpanKind

from apps.monitoring.metrics import external_service_duration, external_service_requests
from apps.monitoring.tracing import start_span

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RemoteServiceError(Exception):
    """Terminal outcome of a remote call sequence.

    Attributes:
        service: Target service name.
        operation: Logical operation name (``fetch``, ``charge``...).
        status_code: HTTP status of the last response, if any.
        attempts: Attempts made before giving up.
    """

    def __init__(self, service: str, operation: str, status_code: Optional[int], attempts: int, message: str):
        super().__init__(f"{service}.{operation} failed after {attempts} attempt(s): {message}")
        self.service = service
        self.operation = operation
        self.status_code = status_code
        self.attempts = attempts


class ClientFaultError(RemoteServiceError):
    """The dependency rejected the request (4xx). Never retried."""


class TransientRemoteError(RemoteServiceError):
    """The dependency kept failing with retryable errors until attempts ran out."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay: float = 1.0
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return self.delay * (self.backoff_multiplier ** (attempt - 1))


def status_code_of(exc: BaseException) -> Optional[int]:
    """Extract an HTTP status from an error, if it carries one."""
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        return exc.response.status_code
    status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


def is_client_fault(status_code: Optional[int]) -> bool:
    return status_code is not None and 400 <= status_code < 500


class RemoteServiceClient:
    """Retry, classification and instrumentation for one target service."""

    def __init__(
        self,
        service: str,
        policy: RetryPolicy,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.service = service
        self.policy = policy
        self._sleep = sleep
        self._clock = clock

    def call(self, operation: Callable[[], T], name: str) -> T:
        """Run ``operation`` with retries and return its result.

        Raises:
            ClientFaultError: On the first 4xx response.
            TransientRemoteError: When every attempt failed transiently.
        """
        max_attempts = max(1, self.policy.max_attempts)
        with start_span(
            f"remote.{self.service}.{name}",
            {"peer.service": self.service, "remote.operation": name},
            kind=SpanKind.CLIENT,
        ) as span:
            attempt = 0
            while True:
                attempt += 1
                started = self._clock()
                try:
                    result = operation()
                except Exception as e:
                    status = status_code_of(e)
                    client_fault = is_client_fault(status)
                    self._observe(name, started, "client_error" if client_fault else "transient_error")
                    if status is not None:
                        span.set_attribute("http.status_code", status)
                    if client_fault:
                        span.set_attribute("remote.attempts", attempt)
                        raise ClientFaultError(self.service, name, status, attempt, str(e)) from e
                    if attempt >= max_attempts:
                        span.set_attribute("remote.attempts", attempt)
                        logger.error(
                            "%s %s failed after %d attempts: %s", self.service, name, attempt, e,
                            extra={"service": self.service, "operation": name},
                        )
                        raise TransientRemoteError(self.service, name, status, attempt, str(e)) from e
                    wait = self.policy.delay_for(attempt)
                    logger.warning(
                        "%s %s failed (attempt %d/%d), retrying in %.3fs",
                        self.service, name, attempt, max_attempts, wait,
                        extra={"service": self.service, "operation": name},
                    )
                    self._sleep(wait)
                    continue

                self._observe(name, started, "success")
                span.set_attribute("remote.attempts", attempt)
                return result

    def fire(self, operation: Callable[[], object], name: str) -> None:
        """Best-effort variant of ``call``: failures are logged, never raised."""
        try:
            self.call(operation, name)
        except RemoteServiceError as e:
            logger.warning("best-effort %s %s dropped: %s", self.service, name, e)

    def _observe(self, name: str, started: float, outcome: str) -> None:
        external_service_duration.labels(self.service, name).observe(max(0.0, self._clock() - started))
        external_service_requests.labels(self.service, name, outcome).inc()
