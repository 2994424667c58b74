from django.apps import AppConfig
from django.conf import settings


class MonitoringConfig(AppConfig):
    name = "apps.monitoring"
    label = "monitoring"

    def ready(self):
        from .tracing import configure_tracing

        configure_tracing(
            getattr(settings, "OTEL_SERVICE_NAME", "order-service"),
            getattr(settings, "OTEL_TRACES_EXPORTER", "none"),
        )
