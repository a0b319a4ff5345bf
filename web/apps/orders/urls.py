from django.urls import path

from .views import (
    AdminOrdersView,
    AdminOrderStatusView,
    ConfirmOrderView,
    OrdersCollectionView,
    OrdersPingView,
    RetrieveOrderView,
)

app_name = "orders"

urlpatterns = [
    path("ping/", OrdersPingView.as_view(), name="ping"),
    path("", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<uuid:oid>/confirm/", ConfirmOrderView.as_view(), name="orders-confirm"),
]

admin_urlpatterns = [
    path("", AdminOrdersView.as_view(), name="admin-orders"),
    path("<uuid:oid>/status/", AdminOrderStatusView.as_view(), name="admin-orders-status"),
]
