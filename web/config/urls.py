from django.urls import include, path

from apps.orders.urls import admin_urlpatterns

urlpatterns = [
    path("api/orders/", include("apps.orders.urls")),
    path("api/admin/orders/", include((admin_urlpatterns, "orders-admin"))),
    path("", include("apps.monitoring.urls")),
]
