"""Fakes shared by the payments test modules."""
from datetime import datetime, timezone

from .integrations.razorpay import GatewayPayment

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeGateway:
    key_id = "rzp_test_key"

    def __init__(self, payments=None, error=None, order_error=None):
        self.payments = dict(payments or {})
        self.error = error
        self.order_error = order_error
        self.fetched = []
        self.created = []

    def add(self, payment_id, *, order_id, amount, status="captured", currency="INR"):
        self.payments[payment_id] = GatewayPayment(
            id=payment_id, order_id=order_id, status=status, amount=amount, currency=currency
        )

    def fetch_payment(self, payment_id):
        self.fetched.append(payment_id)
        if self.error:
            raise self.error
        return self.payments[payment_id]

    def create_order(self, **kwargs):
        if self.order_error:
            raise self.order_error
        self.created.append(kwargs)
        return {"id": f"order_{len(self.created)}", "amount": kwargs["amount"], "currency": kwargs["currency"]}


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data
