from datetime import datetime, timedelta, timezone

import jwt
import pytest
from django.conf import settings as django_settings
from django.core.cache import cache
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from prometheus_client import REGISTRY

# One provider for the whole session; the global provider can only be set once
_span_exporter = InMemorySpanExporter()
_provider = TracerProvider()
_provider.add_span_processor(SimpleSpanProcessor(_span_exporter))
trace.set_tracer_provider(_provider)


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.HTTP_RETRY_DELAY_SECS = 0.0
    from apps.orders.providers import reset_stub_ports

    reset_stub_ports()
    # throttle counters live in the cache
    cache.clear()
    yield
    reset_stub_ports()


@pytest.fixture
def spans():
    """In-memory span exporter, emptied before the test."""
    _span_exporter.clear()
    return _span_exporter


@pytest.fixture
def metric():
    """Read a sample from the default Prometheus registry (0.0 when absent)."""

    def read(name, **labels):
        return REGISTRY.get_sample_value(name, labels) or 0.0

    return read


def bearer(claims, secret=None, expires_in=3600):
    """Client kwargs carrying a signed HS256 token for ``claims``."""
    payload = {"exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in), **claims}
    token = jwt.encode(payload, secret or django_settings.JWT_SECRET, algorithm="HS256")
    return {"HTTP_AUTHORIZATION": f"Bearer {token}"}


@pytest.fixture
def token_headers():
    return bearer


@pytest.fixture
def user_headers():
    return bearer({"id": 42, "email": "user@example.com", "role": "user"})


@pytest.fixture
def other_user_headers():
    return bearer({"id": 7, "email": "other@example.com", "role": "user"})


@pytest.fixture
def admin_headers():
    return bearer({"id": 1, "email": "admin@example.com", "role": "admin"})


@pytest.fixture
def address():
    return {
        "street": "1 Main St",
        "city": "Springfield",
        "state": "IL",
        "country": "US",
        "postal_code": "62701",
    }
