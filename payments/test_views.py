import json
from datetime import timedelta
from unittest.mock import patch

from django.contrib.auth.models import User
from django.test import TestCase
from django.urls import reverse

from accounts.models import UserProfile
from . import signatures
from .integrations.razorpay import GatewayError
from .models import LedgerEntry, PaymentOrder
from .test_support import FakeGateway

SECRET = "test-key-secret"


class CreateOrderViewTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("dave", password="pw")
        self.gateway = FakeGateway()
        patcher = patch("payments.views.get_client", return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _post(self, payload):
        return self.client.post(reverse("payments:create"), data=json.dumps(payload), content_type="application/json")

    def test_requires_login(self):
        resp = self._post({"plan": "pro"})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(self.gateway.created, [])

    def test_creates_order_for_plan(self):
        self.client.force_login(self.user)
        resp = self._post({"plan": "pro"})
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["amount"], 14900)
        self.assertEqual(data["currency"], "INR")
        self.assertEqual(data["key_id"], "rzp_test_key")
        self.assertTrue(PaymentOrder.objects.filter(order_id=data["order_id"], user=self.user).exists())

    def test_client_amount_is_ignored(self):
        self.client.force_login(self.user)
        resp = self._post({"plan": "max", "amount": 100})
        self.assertEqual(resp.json()["amount"], 149900)

    def test_invalid_plan(self):
        self.client.force_login(self.user)
        resp = self._post({"plan": "gold"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"error": "invalid_plan"})

    def test_gateway_down(self):
        self.client.force_login(self.user)
        self.gateway.order_error = GatewayError("timeout")
        resp = self._post({"plan": "pro"})
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp["Retry-After"], "5")
        self.assertFalse(PaymentOrder.objects.exists())

    def test_get_not_allowed(self):
        self.client.force_login(self.user)
        self.assertEqual(self.client.get(reverse("payments:create")).status_code, 405)


class VerifyPaymentViewTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("erin", password="pw")
        self.gateway = FakeGateway()
        patcher = patch("payments.views.get_client", return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _post(self, payload):
        return self.client.post(reverse("payments:verify"), data=json.dumps(payload), content_type="application/json")

    def _payload(self, order_id="order_1", payment_id="pay_1", **overrides):
        payload = {
            "order_id": order_id,
            "payment_id": payment_id,
            "signature": signatures.sign(order_id, payment_id, SECRET),
            "user_id": self.user.pk,
        }
        payload.update(overrides)
        return payload

    def test_successful_payment_upgrades_profile(self):
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        resp = self._post(self._payload())

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True, "plan": "pro", "payment_id": "pay_1"})
        profile = UserProfile.objects.get(user=self.user)
        self.assertEqual(profile.role, "pro")
        self.assertEqual(profile.subscription_status, "active")
        self.assertTrue(profile.subscription_end_date > profile.updated_at + timedelta(days=29))

    def test_resubmission_is_success_without_second_entry(self):
        self.gateway.add("pay_1", order_id="order_1", amount=149900)
        self.assertEqual(self._post(self._payload()).status_code, 200)
        self.assertEqual(self._post(self._payload()).status_code, 200)
        self.assertEqual(LedgerEntry.objects.count(), 1)

    def test_status_codes(self):
        self.gateway.add("pay_failed", order_id="order_1", amount=14900, status="failed")
        self.gateway.add("pay_odd", order_id="order_1", amount=12345)
        cases = [
            (self._payload(signature="00" * 32), 400, "invalid_signature"),
            (self._payload(signature=""), 400, "bad_request"),
            (self._payload(payment_id="pay_failed"), 402, "payment_not_successful"),
            (self._payload(payment_id="pay_odd"), 422, "unknown_plan_amount"),
        ]
        for payload, status, error in cases:
            resp = self._post(payload)
            self.assertEqual(resp.status_code, status, error)
            self.assertEqual(resp.json(), {"error": error})
        self.assertEqual(UserProfile.objects.get(user=self.user).role, "free")

    def test_invalid_json(self):
        resp = self.client.post(reverse("payments:verify"), data="{oops", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

    def test_gateway_unreachable_is_retryable(self):
        self.gateway.error = GatewayError("connection reset")
        resp = self._post(self._payload())
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp["Retry-After"], "5")

    def test_signed_in_user_cannot_verify_for_someone_else(self):
        other = User.objects.create_user("frank")
        self.client.force_login(other)
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        with self.assertLogs("payments.security", level="WARNING"):
            resp = self._post(self._payload())
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(UserProfile.objects.get(user=self.user).role, "free")

    def test_order_issued_to_other_user(self):
        other = User.objects.create_user("grace")
        PaymentOrder.objects.create(order_id="order_1", user=other, plan="pro", amount=14900)
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        with self.assertLogs("payments.security", level="WARNING"):
            resp = self._post(self._payload())
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json(), {"error": "order_user_mismatch"})
