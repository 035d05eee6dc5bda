"""HMAC checks for gateway checkout callbacks and webhooks."""

import hmac, hashlib, logging
from django.core.exceptions import ImproperlyConfigured


logger = logging.getLogger(__name__)


def require_secret(secret, name: str) -> bytes:
    if not secret:
        logger.error("%s missing in settings", name)
        raise ImproperlyConfigured(f"{name} setting is required to verify signatures")
    return secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)


def _matches(expected: str, received) -> bool:
    if not isinstance(received, str) or not received:
        return False
    try:
        received_bytes = received.strip().encode("ascii")
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected.encode("ascii"), received_bytes)


def verify(order_id, payment_id, signature, secret) -> bool:
    """
    Check a checkout signature: ``hex(HMAC_SHA256(secret, order_id + "|" + payment_id))``.

    Returns ``False`` on any mismatch or malformed input. Only a missing
    ``secret`` raises (:class:`ImproperlyConfigured`), since that is a
    deployment error rather than a bad request.
    """

    key = require_secret(secret, "RAZORPAY_KEY_SECRET")
    if not (isinstance(order_id, str) and order_id and isinstance(payment_id, str) and payment_id):
        return False

    msg = f"{order_id}|{payment_id}".encode("utf-8")
    expected = hmac.new(key, msg, hashlib.sha256).hexdigest()
    return _matches(expected, signature)


def verify_webhook(body: bytes, signature, secret) -> bool:
    """Check the ``X-Razorpay-Signature`` header against the raw webhook body."""

    key = require_secret(secret, "RAZORPAY_WEBHOOK_SECRET")
    if not isinstance(body, (bytes, bytearray)):
        return False
    expected = hmac.new(key, bytes(body), hashlib.sha256).hexdigest()
    return _matches(expected, signature)


def sign(order_id: str, payment_id: str, secret: str) -> str:
    """Produce the checkout signature the gateway would send for this order/payment pair."""
    msg = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def sign_webhook(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), bytes(body), hashlib.sha256).hexdigest()
