from django.contrib import admin
from .models import LedgerEntry, PaymentOrder, PendingCredit


@admin.register(PaymentOrder)
class PaymentOrderAdmin(admin.ModelAdmin):
    list_display = ("order_id", "user", "plan", "amount", "currency", "status", "created_at", "paid_at")
    search_fields = ("order_id", "payment_id", "user__username", "user__email")
    list_filter = ("status", "plan", "currency", "created_at")
    readonly_fields = ("created_at", "paid_at")


@admin.register(LedgerEntry)
class LedgerEntryAdmin(admin.ModelAdmin):
    list_display = ("payment_id", "order_id", "user", "plan", "amount", "currency", "gateway_status", "created_at")
    search_fields = ("payment_id", "order_id", "user__username", "user__email")
    list_filter = ("plan", "gateway_status", "created_at")

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PendingCredit)
class PendingCreditAdmin(admin.ModelAdmin):
    list_display = ("payment_id", "kind", "user", "plan", "attempts", "resolved", "created_at", "updated_at")
    search_fields = ("payment_id", "order_id", "user__username")
    list_filter = ("kind", "resolved", "created_at")
    readonly_fields = ("created_at", "updated_at", "last_error")
