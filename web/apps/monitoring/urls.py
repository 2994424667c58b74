from django.urls import path
from .api import health_view, live_view, metrics_view, ready_view

urlpatterns = [
    path("health/", health_view, name="health"),
    path("health/live/", live_view, name="health-live"),
    path("health/ready/", ready_view, name="health-ready"),
    path("metrics", metrics_view, name="metrics"),
]
