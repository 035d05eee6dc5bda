import json
from unittest.mock import patch

from django.contrib.auth.models import User
from django.test import TestCase, override_settings
from django.urls import reverse

from accounts.models import UserProfile
from . import signatures
from .integrations.razorpay import GatewayError
from .models import LedgerEntry, PaymentOrder
from .test_support import FakeGateway

WEBHOOK_SECRET = "test-webhook-secret"


class RazorpayWebhookTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("heidi")
        PaymentOrder.objects.create(order_id="order_1", user=self.user, plan="max", amount=149900)
        self.gateway = FakeGateway()
        patcher = patch("payments.views.get_client", return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _post(self, payload, signature=None):
        body = json.dumps(payload).encode("utf-8")
        return self.client.post(
            reverse("payments:webhook"),
            data=body,
            content_type="application/json",
            HTTP_X_RAZORPAY_SIGNATURE=signature if signature is not None else signatures.sign_webhook(body, WEBHOOK_SECRET),
        )

    def _event(self, payment_id="pay_1", event="payment.captured"):
        return {"event": event, "payload": {"payment": {"entity": {"id": payment_id, "status": "captured"}}}}

    def test_invalid_signature_rejected(self):
        self.gateway.add("pay_1", order_id="order_1", amount=149900)
        with self.assertLogs("payments.security", level="WARNING"):
            resp = self._post(self._event(), signature="deadbeef")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.gateway.fetched, [])

    def test_captured_payment_credits_order_owner(self):
        self.gateway.add("pay_1", order_id="order_1", amount=149900)
        resp = self._post(self._event())
        self.assertEqual(resp.status_code, 200)
        profile = UserProfile.objects.get(user=self.user)
        self.assertEqual((profile.role, profile.subscription_type), ("max", "max_lifetime"))
        self.assertTrue(PaymentOrder.objects.get(order_id="order_1").is_paid)

    def test_webhook_and_checkout_callback_credit_once(self):
        self.gateway.add("pay_1", order_id="order_1", amount=149900)
        self.assertEqual(self._post(self._event()).status_code, 200)
        self.assertEqual(self._post(self._event()).status_code, 200)

        resp = self.client.post(
            reverse("payments:verify"),
            data=json.dumps({
                "order_id": "order_1",
                "payment_id": "pay_1",
                "signature": signatures.sign("order_1", "pay_1", "test-key-secret"),
                "user_id": str(self.user.pk),
            }),
            content_type="application/json",
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(LedgerEntry.objects.filter(payment_id="pay_1").count(), 1)

    def test_unknown_order_is_acknowledged(self):
        self.gateway.add("pay_9", order_id="order_elsewhere", amount=14900)
        resp = self._post(self._event("pay_9"))
        self.assertEqual(resp.status_code, 202)
        self.assertFalse(LedgerEntry.objects.exists())

    def test_other_events_are_acknowledged(self):
        resp = self._post({"event": "subscription.cancelled", "payload": {}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"received": True})
        self.assertEqual(self.gateway.fetched, [])

    def test_failed_payment_is_acknowledged_without_credit(self):
        self.gateway.add("pay_1", order_id="order_1", amount=149900, status="failed")
        resp = self._post(self._event())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["ignored"], "payment_not_successful")
        self.assertEqual(UserProfile.objects.get(user=self.user).role, "free")

    def test_gateway_down_asks_for_redelivery(self):
        self.gateway.error = GatewayError("timeout")
        resp = self._post(self._event())
        self.assertEqual(resp.status_code, 503)

    def test_malformed_payment_payload_is_bad_request(self):
        for payload in [
            {"event": "payment.captured", "payload": "oops"},
            {"event": "payment.captured", "payload": {"payment": ["pay_1"]}},
            {"event": "payment.captured", "payload": {"payment": {"entity": {"id": 42}}}},
            {"event": "payment.captured"},
        ]:
            resp = self._post(payload)
            self.assertEqual(resp.status_code, 400, payload)
            self.assertEqual(resp.json(), {"error": "bad_request"})
        self.assertEqual(self.gateway.fetched, [])

    @override_settings(RAZORPAY_WEBHOOK_SECRET="")
    def test_missing_webhook_secret_asks_for_redelivery(self):
        with self.assertLogs("payments.views", level="ERROR"):
            resp = self._post(self._event(), signature="anything")
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json(), {"error": "webhook_not_configured"})
        self.assertEqual(self.gateway.fetched, [])
