from io import StringIO
from unittest.mock import patch

from django.contrib.auth.models import User
from django.core.management import call_command
from django.test import TestCase

from accounts.models import UserProfile
from .integrations.razorpay import GatewayError
from .models import LedgerEntry, PendingCredit
from .test_support import FakeGateway


class ReconcilePaymentsCommandTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("ivan")
        self.gateway = FakeGateway()
        patcher = patch("payments.management.commands.reconcile_payments.get_client", return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _run(self):
        out = StringIO()
        call_command("reconcile_payments", "--sleep=0", stdout=out)
        return out.getvalue()

    def _pending(self, kind, payment_id="pay_1", amount=14900, plan="pro"):
        return PendingCredit.objects.create(
            kind=kind, user=self.user, order_id="order_1", payment_id=payment_id,
            amount=amount, currency="INR", gateway_status="captured", plan=plan,
        )

    def test_pending_entitlement_is_credited(self):
        pending = self._pending(PendingCredit.KIND_ENTITLEMENT)
        self.gateway.add("pay_1", order_id="order_1", amount=14900)

        out = self._run()

        self.assertIn("pay_1: credited pro", out)
        pending.refresh_from_db()
        self.assertTrue(pending.resolved)
        self.assertEqual(UserProfile.objects.get(user=self.user).role, "pro")
        self.assertTrue(LedgerEntry.objects.filter(payment_id="pay_1").exists())

    def test_pending_ledger_entry_is_written_without_reapplying(self):
        UserProfile.objects.filter(user=self.user).update(role="pro", subscription_id="pay_1")
        pending = self._pending(PendingCredit.KIND_LEDGER)

        self._run()

        pending.refresh_from_db()
        self.assertTrue(pending.resolved)
        self.assertEqual(LedgerEntry.objects.filter(payment_id="pay_1").count(), 1)
        self.assertEqual(self.gateway.fetched, [])

    def test_gateway_failure_keeps_pending_open(self):
        pending = self._pending(PendingCredit.KIND_ENTITLEMENT)
        self.gateway.error = GatewayError("timeout")

        out = self._run()

        self.assertIn("gateway_unreachable", out)
        pending.refresh_from_db()
        self.assertFalse(pending.resolved)
        self.assertEqual(pending.attempts, 1)
        self.assertEqual(UserProfile.objects.get(user=self.user).role, "free")

    def test_applied_payment_missing_from_ledger_is_backfilled(self):
        UserProfile.objects.filter(user=self.user).update(
            role="max", subscription_type="max_lifetime", subscription_id="pay_7",
        )
        self.gateway.add("pay_7", order_id="order_7", amount=149900)

        out = self._run()

        self.assertIn("backfilled 1", out)
        entry = LedgerEntry.objects.get(payment_id="pay_7")
        self.assertEqual((entry.plan, entry.amount), ("max", 149900))

    def test_nothing_to_do(self):
        out = self._run()
        self.assertIn("Resolved 0 pending credits", out)
        self.assertEqual(self.gateway.fetched, [])
