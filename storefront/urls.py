from django.contrib import admin
from django.urls import include, path

from . import views

urlpatterns = [
    path("", views.home_view, name="home"),
    path("checkout", views.checkout_view, name="checkout"),
    path("order-confirmed", views.order_confirmed_view, name="order_confirmed"),
    path("", include("payments.urls")),
    path("admin/", admin.site.urls),
]
