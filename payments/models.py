from django.conf import settings
from django.db import models


class PaymentOrder(models.Model):
    """An intent to pay, issued before checkout. Amount always comes from the plans table."""

    STATUS = [("created", "Created"), ("paid", "Paid")]

    order_id = models.CharField(max_length=64, unique=True, db_index=True)  # gateway-assigned
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="payment_orders")
    plan = models.CharField(max_length=16)
    amount = models.PositiveIntegerField()  # paise
    currency = models.CharField(max_length=8, default="INR")
    plans_version = models.PositiveIntegerField(default=1)
    status = models.CharField(max_length=12, choices=STATUS, default="created")
    payment_id = models.CharField(max_length=64, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    paid_at = models.DateTimeField(null=True, blank=True)

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"

    def __str__(self):
        return f"{self.order_id} ({self.status})"


class LedgerEntry(models.Model):
    """Append-only record of a processed payment. ``payment_id`` is the idempotency key."""

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="ledger_entries")
    order_id = models.CharField(max_length=64, db_index=True)
    payment_id = models.CharField(max_length=64, unique=True)
    amount = models.PositiveIntegerField()  # paise
    currency = models.CharField(max_length=8)
    gateway_status = models.CharField(max_length=16)
    plan = models.CharField(max_length=16)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name_plural = "ledger entries"
        ordering = ("-created_at",)

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise ValueError("Ledger entries are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Ledger entries are append-only")

    def __str__(self):
        return f"{self.payment_id} {self.plan} {self.currency} {self.amount}"


class PendingCredit(models.Model):
    """A verified payment whose entitlement or ledger write could not be completed in-request."""

    KIND_ENTITLEMENT = "entitlement"
    KIND_LEDGER = "ledger"
    KIND_CHOICES = [(KIND_ENTITLEMENT, "Entitlement"), (KIND_LEDGER, "Ledger")]

    kind = models.CharField(max_length=16, choices=KIND_CHOICES)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="pending_credits")
    order_id = models.CharField(max_length=64)
    payment_id = models.CharField(max_length=64, db_index=True)
    amount = models.PositiveIntegerField()
    currency = models.CharField(max_length=8)
    gateway_status = models.CharField(max_length=16)
    plan = models.CharField(max_length=16)
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True, default="")
    resolved = models.BooleanField(default=False, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("created_at",)
        constraints = [
            models.UniqueConstraint(fields=["kind", "payment_id"], name="uq_pending_credit_kind_payment"),
        ]

    def __str__(self):
        return f"{self.kind}:{self.payment_id} ({'resolved' if self.resolved else 'open'})"
