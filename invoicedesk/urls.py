from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("payment/", include("payments.urls")),
]

handler404 = "invoicedesk.views.error_404_view"
handler500 = "invoicedesk.views.error_500_view"
