from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("eps/pay", views.eps_pay_view, name="eps_pay"),
    # EPS may call back via GET or POST depending on merchant config
    path("eps/success", views.eps_success_view, name="eps_success"),
    path("eps/fail", views.eps_fail_view, name="eps_fail"),
    path("eps/cancel", views.eps_cancel_view, name="eps_cancel"),
]
