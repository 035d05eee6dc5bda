from django.conf import settings
from django.core.checks import Error, register


@register()
def razorpay_settings_check(app_configs, **kwargs):
    """Missing gateway credentials are reported once at startup rather than on every request."""
    errors = []
    if not getattr(settings, "RAZORPAY_KEY_SECRET", ""):
        errors.append(Error(
            "RAZORPAY_KEY_SECRET is not set; payment signatures cannot be verified.",
            id="payments.E001",
        ))
    if not getattr(settings, "RAZORPAY_KEY_ID", ""):
        errors.append(Error(
            "RAZORPAY_KEY_ID is not set; payment orders cannot be created.",
            id="payments.E002",
        ))
    if not getattr(settings, "RAZORPAY_WEBHOOK_SECRET", ""):
        errors.append(Error(
            "RAZORPAY_WEBHOOK_SECRET is not set; gateway webhooks cannot be verified.",
            id="payments.E003",
        ))
    return errors
