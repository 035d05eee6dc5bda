import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _admin_recipients() -> List[str]:
    # Comma-separated list via env or settings; fall back to DEFAULT_FROM_EMAIL/host user
    raw = getattr(settings, "PAYMENTS_ADMIN_EMAILS", None)
    if not raw:
        raw = ",".join([
            getattr(settings, "EMAIL_HOST_USER", "") or "",
            getattr(settings, "DEFAULT_FROM_EMAIL", "") or "",
        ])
    emails = [e.strip() for e in (raw or "").split(",") if e and e.strip()]
    seen = set()
    uniq: List[str] = []
    for e in emails:
        if e.lower() not in seen:
            seen.add(e.lower())
            uniq.append(e)
    return uniq


def send_operator_alert(*, reason: str, payment_id: str, **details) -> None:
    """Email operators about a payment that needs attention (config drift, stuck credit).

    Never raises into the request path; delivery problems are logged.
    """
    try:
        admins = _admin_recipients()
        if not admins:
            logger.warning("No operator recipients configured for alert %s (%s)", reason, payment_id)
            return
        context = {"reason": reason, "payment_id": payment_id, "details": sorted(details.items())}
        from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)
        subject = f"[payments] {reason}: {payment_id}"
        text = render_to_string("emails/operator_alert.txt", context)
        html = render_to_string("emails/operator_alert.html", context)
        msg = EmailMultiAlternatives(subject, text, from_email, admins)
        msg.attach_alternative(html, "text/html")
        msg.send(fail_silently=_fail_silently())
    except Exception:
        logger.exception("Failed to send operator alert %s for %s", reason, payment_id)
