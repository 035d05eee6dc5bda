import json, logging
from dataclasses import dataclass
from typing import Optional

import requests
from requests import RequestException
from requests.auth import HTTPBasicAuth
from django.conf import settings

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.razorpay.com/v1"


class GatewayError(Exception):
    """Transport failure, timeout or 5xx from the gateway; safe to retry."""


class GatewayRejected(GatewayError):
    """4xx from the gateway (unknown id, bad request); retrying will not help."""


@dataclass(frozen=True)
class GatewayPayment:
    id: str
    order_id: str
    status: str
    amount: int  # minor units as reported by the gateway
    currency: str


class RazorpayClient:
    def __init__(self, key_id: str, key_secret: str, base_url: str = DEFAULT_BASE_URL, timeout: float = 10.0):
        if not key_id or not key_secret:
            raise GatewayError("Missing RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET")
        self.key_id = key_id
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._auth = HTTPBasicAuth(key_id, key_secret)

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = requests.request(method, url, auth=self._auth, timeout=self.timeout, **kwargs)
        except RequestException as e:
            raise GatewayError(f"Gateway request failed: {e}")
        try: data = resp.json()
        except ValueError: data = {"raw": resp.text}
        if resp.status_code == 200: return data
        detail = json.dumps(data)[:800]
        if 400 <= resp.status_code < 500:
            raise GatewayRejected(f"{method} {path} rejected: HTTP {resp.status_code}. Response: {detail}")
        raise GatewayError(f"{method} {path} failed: HTTP {resp.status_code}. Response: {detail}")

    def create_order(self, *, amount: int, currency: str, plan, user_id, receipt: Optional[str] = None) -> dict:
        payload = {
            "amount": int(amount),
            "currency": currency,
            "receipt": (receipt or f"{plan.key}_{user_id}")[:40],
            "notes": {
                "user_id": str(user_id),
                "plan": plan.key,
                "subscription_type": plan.subscription_type,
            },
        }
        data = self._request("POST", "/orders", json=payload)
        if not data.get("id"):
            raise GatewayError(f"Order response missing id. Response: {json.dumps(data)[:800]}")
        return data

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        data = self._request("GET", f"/payments/{payment_id}")
        try:
            amount = int(data["amount"])
        except (KeyError, TypeError, ValueError):
            raise GatewayError(f"Payment {payment_id}: amount missing in response")
        return GatewayPayment(
            id=str(data.get("id") or payment_id),
            order_id=str(data.get("order_id") or ""),
            status=str(data.get("status") or "").lower(),
            amount=amount,
            currency=str(data.get("currency") or ""),
        )


def get_client() -> RazorpayClient:
    return RazorpayClient(
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=settings.RAZORPAY_KEY_SECRET,
        base_url=getattr(settings, "RAZORPAY_BASE_URL", DEFAULT_BASE_URL),
        timeout=getattr(settings, "RAZORPAY_TIMEOUT", 10.0),
    )
