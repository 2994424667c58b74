"""Django settings for the orders service.

Values are read from environment variables with development defaults. The
orders app reads the outbound client settings (base URLs, timeouts, retry
policy) through ``getattr(settings, NAME, default)`` so tests can override
them with the pytest-django ``settings`` fixture.
"""

import os
from pathlib import Path


def env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in {"1", "true", "yes", "on"}


BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-orders-dev-key")
DEBUG = env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.monitoring",
    "apps.orders",
]

MIDDLEWARE = [
    "gateway.middleware.RequestIdMiddleware",
    "gateway.middleware.RequestMetricsMiddleware",
    "gateway.middleware.ApiSizeLimitMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

# ---- Database ----
DB_ENGINE = os.getenv("DB_ENGINE", "sqlite")

if DB_ENGINE == "postgresql":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("DB_NAME", "order_db"),
            "USER": os.getenv("DB_USER", "postgres"),
            "PASSWORD": os.getenv("DB_PASSWORD", "postgres"),
            "HOST": os.getenv("DB_HOST", "orders-db"),
            "PORT": os.getenv("DB_PORT", "5432"),
            # Pooled connections require CONN_MAX_AGE = 0
            "CONN_MAX_AGE": 0,
            "OPTIONS": {
                "pool": {
                    "min_size": int(os.getenv("DB_POOL_MIN", "2")),
                    "max_size": int(os.getenv("DB_POOL_MAX", "20")),
                    "timeout": float(os.getenv("DB_POOL_TIMEOUT", "2")),
                },
            },
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("DB_NAME", str(BASE_DIR / "orders.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = False
USE_TZ = True

CACHES = {
    "default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"},
}

# ---- REST framework ----
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "apps.orders.authentication.BearerTokenAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
    ],
    "DEFAULT_THROTTLE_RATES": {
        "orders_list": os.getenv("THROTTLE_ORDERS_LIST", "600/min"),
        "orders_create": os.getenv("THROTTLE_ORDERS_CREATE", "120/min"),
        "orders_detail": os.getenv("THROTTLE_ORDERS_DETAIL", "600/min"),
        "orders_write": os.getenv("THROTTLE_ORDERS_WRITE", "120/min"),
    },
}

# Bearer tokens are issued by the identity service with this shared secret
JWT_SECRET = os.getenv("JWT_SECRET", "your-super-secret-jwt-key-change-in-production")
JWT_ALGORITHMS = ["HS256"]

# ---- Outbound services ----
USE_HTTP_ADAPTERS = env_bool("USE_HTTP_ADAPTERS", True)

INVENTORY_BASE_URL = os.getenv("INVENTORY_BASE_URL", "http://product-service:3002")
PAYMENTS_BASE_URL = os.getenv("PAYMENTS_BASE_URL", "http://payment-service:3005")
NOTIFICATIONS_BASE_URL = os.getenv("NOTIFICATIONS_BASE_URL", "http://notification-service:3006")

INVENTORY_TIMEOUT_SECS = float(os.getenv("INVENTORY_TIMEOUT_SECS", "10"))
PAYMENTS_TIMEOUT_SECS = float(os.getenv("PAYMENTS_TIMEOUT_SECS", "15"))
NOTIFICATIONS_TIMEOUT_SECS = float(os.getenv("NOTIFICATIONS_TIMEOUT_SECS", "10"))

HTTP_RETRY_MAX_ATTEMPTS = int(os.getenv("HTTP_RETRY_MAX_ATTEMPTS", "3"))
HTTP_RETRY_DELAY_SECS = float(os.getenv("HTTP_RETRY_DELAY_SECS", "1.0"))
HTTP_RETRY_BACKOFF_MULTIPLIER = float(os.getenv("HTTP_RETRY_BACKOFF_MULTIPLIER", "2"))
NOTIFICATIONS_RETRY_MAX_ATTEMPTS = int(os.getenv("NOTIFICATIONS_RETRY_MAX_ATTEMPTS", "2"))

INVENTORY_FETCH_CONCURRENCY = int(os.getenv("INVENTORY_FETCH_CONCURRENCY", "8"))

PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "USD")
PAYMENT_METHOD = os.getenv("PAYMENT_METHOD", "credit_card")

# Catalog used by the in-process inventory stub when USE_HTTP_ADAPTERS is off:
# product_id -> (unit price, stock)
STUB_CATALOG = {
    1: ("25.00", 100),
    2: ("9.99", 100),
    3: ("120.00", 10),
}

# ---- Observability ----
OTEL_SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "order-service")
OTEL_TRACES_EXPORTER = os.getenv("OTEL_TRACES_EXPORTER", "none")

API_MAX_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_context": {"()": "gateway.logging_filters.RequestContextFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.json.JsonFormatter",
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(trace_id)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_context"],
        },
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        "django": {"handlers": ["console"], "level": "WARNING", "propagate": False},
    },
}
