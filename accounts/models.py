from django.conf import settings
from django.db import models
from django.db.models.signals import post_save
from django.dispatch import receiver
from django.utils import timezone


class UserProfile(models.Model):
    """Per-user profile row; holds the entitlement written by payment verification."""

    ROLE_FREE = "free"
    ROLE_PRO = "pro"
    ROLE_MAX = "max"
    ROLE_CHOICES = [(ROLE_FREE, "Free"), (ROLE_PRO, "Pro"), (ROLE_MAX, "Max")]

    SUB_FREE = "free"
    SUB_PRO_MONTHLY = "pro_monthly"
    SUB_MAX_LIFETIME = "max_lifetime"
    SUBSCRIPTION_CHOICES = [
        (SUB_FREE, "Free"),
        (SUB_PRO_MONTHLY, "Pro (monthly)"),
        (SUB_MAX_LIFETIME, "Max (lifetime)"),
    ]

    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="profile")
    role = models.CharField(max_length=8, choices=ROLE_CHOICES, default=ROLE_FREE)
    subscription_type = models.CharField(max_length=16, choices=SUBSCRIPTION_CHOICES, default=SUB_FREE)
    # null for free and for lifetime plans
    subscription_end_date = models.DateTimeField(null=True, blank=True)
    subscription_id = models.CharField(max_length=64, blank=True, default="", db_index=True)  # last applied payment id
    subscription_status = models.CharField(max_length=16, default="inactive")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)

    def __str__(self) -> str:
        return f"{self.user_id} ({self.role})"

    def is_active_subscription(self, now=None) -> bool:
        if self.role == self.ROLE_MAX:
            return True
        if self.role == self.ROLE_PRO and self.subscription_end_date:
            return self.subscription_end_date > (now or timezone.now())
        return False

    @property
    def effective_role(self) -> str:
        """Role to enforce; an expired monthly plan reads as free even if the stored role still says pro."""
        if self.is_active_subscription():
            return self.role
        return self.ROLE_FREE


@receiver(post_save, sender=settings.AUTH_USER_MODEL)
def create_profile_on_signup(sender, instance, created, **kwargs):
    if created:
        UserProfile.objects.get_or_create(user=instance)
