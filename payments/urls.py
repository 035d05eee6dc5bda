from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("create", views.create_order_view, name="create"),
    path("verify", views.verify_payment_view, name="verify"),
    path("webhook", views.webhook_view, name="webhook"),
]
