from django.urls import path

from .views import (
    CancelOrderView,
    OrdersCollectionView,
    OrdersPingView,
    RetrieveOrderView,
    UpdateOrderStatusView,
)

app_name = "orders"

urlpatterns = [
    path("ping/", OrdersPingView.as_view(), name="ping"),
    path("", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<uuid:oid>/status/", UpdateOrderStatusView.as_view(), name="orders-status"),
    path("<uuid:oid>/cancel/", CancelOrderView.as_view(), name="orders-cancel"),
]
