from django.contrib import admin
from .models import UserProfile


@admin.register(UserProfile)
class UserProfileAdmin(admin.ModelAdmin):
    list_display = ("user", "role", "subscription_type", "subscription_end_date", "subscription_status", "updated_at")
    search_fields = ("user__username", "user__email", "subscription_id")
    list_filter = ("role", "subscription_type", "subscription_status")
    raw_id_fields = ("user",)
    readonly_fields = ("created_at", "updated_at")
