from datetime import timedelta
from unittest.mock import patch

import requests
from django.conf import settings
from django.contrib.auth.models import User
from django.core import mail
from django.core.exceptions import ImproperlyConfigured
from django.db import DatabaseError, OperationalError
from django.test import SimpleTestCase, TestCase, override_settings

from accounts.models import UserProfile
from . import signatures
from .checks import razorpay_settings_check
from .integrations.razorpay import GatewayError, GatewayRejected, RazorpayClient
from .models import LedgerEntry, PaymentOrder, PendingCredit
from .plans import MAX_LIFETIME, PLANS, PRO_MONTHLY, get_plan, resolve_plan
from .services import (
    AbortReason,
    State,
    UnknownPlan,
    VerificationOrchestrator,
    VerificationRequest,
    issue_order,
    next_entitlement,
)
from .stores import DuplicateLedgerEntry, Entitlement, EntitlementStore, NewLedgerEntry, PaymentLedger
from .test_support import NOW, FakeGateway, FakeResponse

SECRET = "test-key-secret"


class SignatureTests(SimpleTestCase):
    def test_valid_signature_verifies(self):
        for order_id, payment_id, secret in [
            ("order_1", "pay_1", "s3cret"),
            ("order_IluGWxBm9U8zJ8", "pay_IH4NVgf4Dreq1l", SECRET),
            ("ordér", "pày", "ключ"),
        ]:
            sig = signatures.sign(order_id, payment_id, secret)
            self.assertTrue(signatures.verify(order_id, payment_id, sig, secret))

    def test_any_single_character_flip_fails(self):
        sig = signatures.sign("order_1", "pay_1", SECRET)
        for i, ch in enumerate(sig):
            flipped = sig[:i] + ("0" if ch != "0" else "1") + sig[i + 1:]
            self.assertFalse(signatures.verify("order_1", "pay_1", flipped, SECRET), i)

    def test_malformed_input_returns_false(self):
        sig = signatures.sign("order_1", "pay_1", SECRET)
        for bad in ["", "zz", "not-hex-at-all", sig[:-1], sig + "0", None, 123, "ü" * 64]:
            self.assertFalse(signatures.verify("order_1", "pay_1", bad, SECRET), bad)
        self.assertFalse(signatures.verify("", "pay_1", sig, SECRET))
        self.assertFalse(signatures.verify("order_1", "", sig, SECRET))

    def test_order_and_payment_are_bound_together(self):
        sig = signatures.sign("order_1", "pay_1", SECRET)
        self.assertFalse(signatures.verify("order_2", "pay_1", sig, SECRET))
        self.assertFalse(signatures.verify("order_1", "pay_2", sig, SECRET))
        self.assertFalse(signatures.verify("order_1", "pay_1", sig, "other-secret"))

    def test_missing_secret_raises(self):
        with self.assertRaises(ImproperlyConfigured):
            signatures.verify("order_1", "pay_1", "abc", "")

    def test_webhook_signature(self):
        body = b'{"event":"payment.captured"}'
        good = signatures.sign_webhook(body, "hook-secret")
        self.assertTrue(signatures.verify_webhook(body, good, "hook-secret"))
        self.assertFalse(signatures.verify_webhook(body + b" ", good, "hook-secret"))
        self.assertFalse(signatures.verify_webhook(body, "", "hook-secret"))
        with self.assertRaises(ImproperlyConfigured):
            signatures.verify_webhook(body, good, None)


class PlanTests(SimpleTestCase):
    def test_known_amounts_resolve(self):
        self.assertEqual(resolve_plan(14900), (PRO_MONTHLY, True))
        self.assertEqual(resolve_plan(149900), (MAX_LIFETIME, True))
        self.assertEqual(PRO_MONTHLY.subscription_type, "pro_monthly")
        self.assertEqual(PRO_MONTHLY.duration, timedelta(days=30))
        self.assertEqual(MAX_LIFETIME.subscription_type, "max_lifetime")
        self.assertTrue(MAX_LIFETIME.is_lifetime)

    def test_unknown_amounts_do_not_resolve(self):
        for amount in [1, 0, -14900, 14901, 149, 1499, "14900", 14900.0, True, None]:
            plan, ok = resolve_plan(amount)
            self.assertFalse(ok, amount)
            self.assertIsNone(plan)

    def test_order_prices_come_from_the_same_table(self):
        for key, plan in PLANS.items():
            self.assertIs(get_plan(key), plan)
            self.assertEqual(resolve_plan(plan.amount), (plan, True))
        self.assertIsNone(get_plan("enterprise"))
        self.assertIsNone(get_plan(None))


class RazorpayClientTests(SimpleTestCase):
    def setUp(self):
        self.client_ = RazorpayClient("rzp_key", "rzp_secret", base_url="https://gateway.test/v1/", timeout=3)

    def test_fetch_payment_parses_response(self):
        data = {"id": "pay_1", "order_id": "order_1", "status": "captured", "amount": 14900, "currency": "INR"}
        with patch("payments.integrations.razorpay.requests.request", return_value=FakeResponse(200, data)) as req:
            payment = self.client_.fetch_payment("pay_1")
        self.assertEqual((payment.status, payment.amount, payment.order_id), ("captured", 14900, "order_1"))
        args, kwargs = req.call_args
        self.assertEqual(args, ("GET", "https://gateway.test/v1/payments/pay_1"))
        self.assertEqual(kwargs["timeout"], 3)

    def test_server_error_is_retryable_gateway_error(self):
        with patch("payments.integrations.razorpay.requests.request", return_value=FakeResponse(502, text="bad gw")):
            with self.assertRaises(GatewayError) as cm:
                self.client_.fetch_payment("pay_1")
        self.assertNotIsInstance(cm.exception, GatewayRejected)

    def test_client_error_is_rejected(self):
        body = {"error": {"code": "BAD_REQUEST_ERROR"}}
        with patch("payments.integrations.razorpay.requests.request", return_value=FakeResponse(400, body)):
            with self.assertRaises(GatewayRejected):
                self.client_.fetch_payment("pay_missing")

    def test_timeout_raises_gateway_error(self):
        with patch("payments.integrations.razorpay.requests.request", side_effect=requests.Timeout("slow")):
            with self.assertRaises(GatewayError):
                self.client_.fetch_payment("pay_1")

    def test_create_order_sends_plan_amount_and_notes(self):
        with patch(
            "payments.integrations.razorpay.requests.request",
            return_value=FakeResponse(200, {"id": "order_9", "amount": 14900, "currency": "INR"}),
        ) as req:
            data = self.client_.create_order(amount=14900, currency="INR", plan=PRO_MONTHLY, user_id=7)
        self.assertEqual(data["id"], "order_9")
        payload = req.call_args.kwargs["json"]
        self.assertEqual(payload["amount"], 14900)
        self.assertEqual(payload["notes"], {"user_id": "7", "plan": "pro", "subscription_type": "pro_monthly"})

    def test_missing_credentials(self):
        with self.assertRaises(GatewayError):
            RazorpayClient("", "")


class NextEntitlementTests(SimpleTestCase):
    def test_renewal_restarts_window_from_now(self):
        current = Entitlement("1", "pro", "pro_monthly", NOW + timedelta(days=10))
        new = next_entitlement(current, PRO_MONTHLY, NOW)
        self.assertEqual(new.subscription_end_date, NOW + timedelta(days=30))

    def test_expired_pro_gets_fresh_window(self):
        current = Entitlement("1", "pro", "pro_monthly", NOW - timedelta(days=3))
        self.assertEqual(next_entitlement(current, PRO_MONTHLY, NOW).subscription_end_date, NOW + timedelta(days=30))

    def test_never_moves_backwards(self):
        lifetime = Entitlement("1", "max", "max_lifetime", None)
        self.assertEqual(next_entitlement(lifetime, PRO_MONTHLY, NOW), lifetime)
        far = Entitlement("1", "pro", "pro_monthly", NOW + timedelta(days=45))
        self.assertEqual(next_entitlement(far, PRO_MONTHLY, NOW).subscription_end_date, NOW + timedelta(days=45))

    def test_pro_upgrades_to_lifetime(self):
        current = Entitlement("1", "pro", "pro_monthly", NOW + timedelta(days=10))
        self.assertEqual(next_entitlement(current, MAX_LIFETIME, NOW), Entitlement("1", "max", "max_lifetime", None))


class LedgerTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("ledger-user")
        self.entry = NewLedgerEntry(str(self.user.pk), "order_1", "pay_1", 14900, "INR", "captured", "pro")

    def test_duplicate_payment_id_is_rejected(self):
        ledger = PaymentLedger()
        ledger.append(self.entry)
        with self.assertRaises(DuplicateLedgerEntry):
            ledger.append(self.entry)
        self.assertEqual(LedgerEntry.objects.count(), 1)

    def test_entries_are_append_only(self):
        row = PaymentLedger().append(self.entry)
        row.plan = "max"
        with self.assertRaises(ValueError):
            row.save()
        with self.assertRaises(ValueError):
            row.delete()


class OrchestratorTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("alice")
        self.uid = str(self.user.pk)
        self.gateway = FakeGateway()
        self.store = EntitlementStore()
        self.ledger = PaymentLedger()
        self.sleeps = []
        self.orchestrator = VerificationOrchestrator(
            self.gateway, self.store, self.ledger, SECRET,
            clock=lambda: NOW, sleep=self.sleeps.append, backoff=0.2,
        )

    def request(self, order_id="order_1", payment_id="pay_1", signature=None, user_id=None):
        return VerificationRequest(
            order_id=order_id,
            payment_id=payment_id,
            signature=signatures.sign(order_id, payment_id, SECRET) if signature is None else signature,
            user_id=self.uid if user_id is None else user_id,
        )

    def profile(self):
        return UserProfile.objects.get(user=self.user)


class VerificationScenarioTests(OrchestratorTestCase):
    def test_free_user_buys_pro(self):
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        result = self.orchestrator.verify(self.request())

        self.assertTrue(result.success)
        self.assertEqual(result.state, State.DONE)
        self.assertEqual((result.plan, result.payment_id), ("pro", "pay_1"))
        profile = self.profile()
        self.assertEqual(profile.role, "pro")
        self.assertEqual(profile.subscription_type, "pro_monthly")
        self.assertEqual(profile.subscription_end_date, NOW + timedelta(days=30))
        self.assertEqual(profile.subscription_id, "pay_1")
        entry = LedgerEntry.objects.get(payment_id="pay_1")
        self.assertEqual((entry.amount, entry.plan, entry.gateway_status), (14900, "pro", "captured"))

    def test_free_user_buys_max(self):
        self.gateway.add("pay_1", order_id="order_1", amount=149900, status="authorized")
        result = self.orchestrator.verify(self.request())

        self.assertTrue(result.success)
        self.assertEqual(result.plan, "max")
        profile = self.profile()
        self.assertEqual(profile.role, "max")
        self.assertEqual(profile.subscription_type, "max_lifetime")
        self.assertIsNone(profile.subscription_end_date)

    def test_tampered_signature_never_touches_entitlement(self):
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        sig = signatures.sign("order_1", "pay_1", SECRET)
        tampered = sig[:-1] + ("a" if sig[-1] != "a" else "b")
        with patch.object(self.store, "update_entitlement") as spy, \
                self.assertLogs("payments.security", level="WARNING"):
            result = self.orchestrator.verify(self.request(signature=tampered))

        self.assertEqual(result.reason, AbortReason.INVALID_SIGNATURE)
        spy.assert_not_called()
        self.assertEqual(self.gateway.fetched, [])
        self.assertEqual(self.profile().role, "free")
        self.assertFalse(LedgerEntry.objects.exists())

    def test_failed_payment_is_not_credited(self):
        self.gateway.add("pay_1", order_id="order_1", amount=14900, status="failed")
        with patch.object(self.store, "update_entitlement") as spy:
            result = self.orchestrator.verify(self.request())
        self.assertEqual(result.reason, AbortReason.PAYMENT_NOT_SUCCESSFUL)
        spy.assert_not_called()
        self.assertFalse(LedgerEntry.objects.exists())

    def test_missing_fields_are_bad_requests(self):
        for req in [
            self.request(signature=""),
            VerificationRequest("", "pay_1", "sig", self.uid),
            VerificationRequest("order_1", "", "sig", self.uid),
            VerificationRequest("order_1", "pay_1", "sig", ""),
        ]:
            self.assertEqual(self.orchestrator.verify(req).reason, AbortReason.BAD_REQUEST)
        self.assertEqual(self.gateway.fetched, [])

    def test_unknown_user_is_bad_request(self):
        for user_id in ["999999", "not-a-number"]:
            result = self.orchestrator.verify(self.request(user_id=user_id))
            self.assertEqual(result.reason, AbortReason.BAD_REQUEST)

    def test_gateway_unreachable_is_retryable(self):
        self.gateway.error = GatewayError("timeout")
        result = self.orchestrator.verify(self.request())
        self.assertEqual(result.reason, AbortReason.GATEWAY_UNREACHABLE)
        self.assertTrue(result.retryable)
        self.assertEqual(self.profile().role, "free")

    def test_gateway_rejecting_payment_id(self):
        self.gateway.error = GatewayRejected("404")
        result = self.orchestrator.verify(self.request())
        self.assertEqual(result.reason, AbortReason.PAYMENT_NOT_SUCCESSFUL)
        self.assertFalse(result.retryable)

    def test_payment_for_another_order_is_rejected(self):
        self.gateway.add("pay_1", order_id="order_other", amount=14900)
        result = self.orchestrator.verify(self.request())
        self.assertEqual(result.reason, AbortReason.PAYMENT_NOT_SUCCESSFUL)
        self.assertEqual(self.profile().role, "free")

    def test_order_issued_to_another_user(self):
        bob = User.objects.create_user("bob")
        PaymentOrder.objects.create(order_id="order_1", user=bob, plan="pro", amount=14900)
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        with self.assertLogs("payments.security", level="WARNING"):
            result = self.orchestrator.verify(self.request())
        self.assertEqual(result.reason, AbortReason.ORDER_USER_MISMATCH)
        self.assertEqual(self.profile().role, "free")

    def test_local_order_is_marked_paid(self):
        PaymentOrder.objects.create(order_id="order_1", user=self.user, plan="pro", amount=14900)
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        self.assertTrue(self.orchestrator.verify(self.request()).success)
        order = PaymentOrder.objects.get(order_id="order_1")
        self.assertTrue(order.is_paid)
        self.assertEqual(order.payment_id, "pay_1")

    def test_unknown_amount_alerts_operators(self):
        self.gateway.add("pay_1", order_id="order_1", amount=9900)
        with self.assertLogs("payments.alerts", level="CRITICAL"):
            result = self.orchestrator.verify(self.request())
        self.assertEqual(result.reason, AbortReason.UNKNOWN_PLAN_AMOUNT)
        self.assertEqual(self.profile().role, "free")
        self.assertFalse(LedgerEntry.objects.exists())
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn("unknown_plan_amount", mail.outbox[0].subject)
        self.assertEqual(mail.outbox[0].to, [settings.PAYMENTS_ADMIN_EMAILS])


class IdempotencyTests(OrchestratorTestCase):
    def test_same_submission_twice_credits_once(self):
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        with patch.object(self.store, "update_entitlement", wraps=self.store.update_entitlement) as spy:
            first = self.orchestrator.verify(self.request())
            self.orchestrator.clock = lambda: NOW + timedelta(days=1)
            second = self.orchestrator.verify(self.request())

        self.assertTrue(first.success)
        self.assertTrue(second.success)
        self.assertFalse(first.already_processed)
        self.assertTrue(second.already_processed)
        self.assertEqual(spy.call_count, 1)
        self.assertEqual(LedgerEntry.objects.filter(payment_id="pay_1").count(), 1)
        self.assertEqual(self.profile().subscription_end_date, NOW + timedelta(days=30))

    def test_existing_ledger_entry_short_circuits(self):
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        self.ledger.append(NewLedgerEntry(self.uid, "order_1", "pay_1", 14900, "INR", "captured", "pro"))
        with patch.object(self.store, "update_entitlement") as spy:
            result = self.orchestrator.verify(self.request())
        self.assertTrue(result.already_processed)
        spy.assert_not_called()

    def test_applied_payment_without_ledger_entry_gets_ledgered(self):
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        UserProfile.objects.filter(user=self.user).update(
            role="pro", subscription_type="pro_monthly",
            subscription_end_date=NOW + timedelta(days=30), subscription_id="pay_1",
        )
        with patch.object(self.store, "update_entitlement") as spy:
            result = self.orchestrator.verify(self.request())
        self.assertTrue(result.already_processed)
        spy.assert_not_called()
        self.assertTrue(LedgerEntry.objects.filter(payment_id="pay_1").exists())

    def test_max_user_paying_for_pro_stays_max(self):
        UserProfile.objects.filter(user=self.user).update(role="max", subscription_type="max_lifetime")
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        result = self.orchestrator.verify(self.request())

        self.assertTrue(result.success)
        profile = self.profile()
        self.assertEqual((profile.role, profile.subscription_type), ("max", "max_lifetime"))
        self.assertIsNone(profile.subscription_end_date)
        self.assertTrue(LedgerEntry.objects.filter(payment_id="pay_1").exists())

    def test_second_pro_payment_restarts_window(self):
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        self.gateway.add("pay_2", order_id="order_2", amount=14900)
        self.orchestrator.verify(self.request())
        self.orchestrator.clock = lambda: NOW + timedelta(days=20)
        self.orchestrator.verify(self.request(order_id="order_2", payment_id="pay_2"))

        self.assertEqual(self.profile().subscription_end_date, NOW + timedelta(days=50))
        self.assertEqual(LedgerEntry.objects.count(), 2)

    def test_credit_racing_between_check_and_write_applies_once(self):
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        payment = self.gateway.payments["pay_1"]
        real_has = self.ledger.has
        racing = []

        def has_then_race(payment_id):
            seen = real_has(payment_id)
            if not racing:
                # the other request for this payment lands after our check
                racing.append(None)
                racing[0] = self.orchestrator.credit(self.uid, "order_1", payment)
            return seen

        with patch.object(self.ledger, "has", side_effect=has_then_race), \
                patch.object(self.store, "update_entitlement", wraps=self.store.update_entitlement) as spy:
            result = self.orchestrator.credit(self.uid, "order_1", payment)

        self.assertTrue(racing[0].success)
        self.assertFalse(racing[0].already_processed)
        self.assertTrue(result.success)
        self.assertTrue(result.already_processed)
        self.assertEqual(spy.call_count, 1)
        self.assertEqual(LedgerEntry.objects.filter(payment_id="pay_1").count(), 1)
        self.assertEqual(self.profile().subscription_end_date, NOW + timedelta(days=30))

    def test_replay_after_failed_ledger_write_is_not_credited_again(self):
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        self.gateway.add("pay_2", order_id="order_2", amount=14900)
        with patch.object(self.ledger, "append", side_effect=DatabaseError("ledger down")), \
                self.assertLogs("payments.alerts", level="ERROR"):
            self.assertTrue(self.orchestrator.verify(self.request()).success)
        self.orchestrator.clock = lambda: NOW + timedelta(days=10)
        self.assertTrue(self.orchestrator.verify(self.request(order_id="order_2", payment_id="pay_2")).success)
        end = self.profile().subscription_end_date

        self.orchestrator.clock = lambda: NOW + timedelta(days=25)
        with patch.object(self.store, "update_entitlement", wraps=self.store.update_entitlement) as spy:
            replay = self.orchestrator.verify(self.request())

        self.assertTrue(replay.already_processed)
        spy.assert_not_called()
        self.assertEqual(end, NOW + timedelta(days=40))
        self.assertEqual(self.profile().subscription_end_date, end)
        self.assertTrue(LedgerEntry.objects.filter(payment_id="pay_1").exists())
        self.assertTrue(PendingCredit.objects.get(kind="ledger", payment_id="pay_1").resolved)


class PersistenceFailureTests(OrchestratorTestCase):
    def test_entitlement_write_retried_then_queued(self):
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        with patch.object(self.store, "update_entitlement", side_effect=DatabaseError("db down")) as spy, \
                self.assertLogs("payments.alerts", level="CRITICAL"):
            result = self.orchestrator.verify(self.request())

        self.assertEqual(result.reason, AbortReason.ENTITLEMENT_WRITE_FAILED)
        self.assertEqual(spy.call_count, 3)
        self.assertEqual(self.sleeps, [0.2, 0.4])
        pending = PendingCredit.objects.get(payment_id="pay_1")
        self.assertEqual((pending.kind, pending.plan, pending.resolved), ("entitlement", "pro", False))
        self.assertEqual(self.profile().role, "free")
        self.assertFalse(LedgerEntry.objects.exists())
        self.assertEqual(len(mail.outbox), 1)

    def test_transient_write_failure_recovers(self):
        self.gateway.add("pay_1", order_id="order_1", amount=149900)
        real = self.store.update_entitlement
        calls = []

        def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("database is locked")
            return real(*args, **kwargs)

        with patch.object(self.store, "update_entitlement", side_effect=flaky):
            result = self.orchestrator.verify(self.request())
        self.assertTrue(result.success)
        self.assertEqual(len(calls), 2)
        self.assertEqual(self.profile().role, "max")
        self.assertFalse(PendingCredit.objects.exists())

    def test_ledger_failure_still_reports_success(self):
        self.gateway.add("pay_1", order_id="order_1", amount=14900)
        with patch.object(self.ledger, "append", side_effect=DatabaseError("ledger down")), \
                self.assertLogs("payments.alerts", level="ERROR"):
            result = self.orchestrator.verify(self.request())

        self.assertTrue(result.success)
        self.assertEqual(self.profile().role, "pro")
        pending = PendingCredit.objects.get(payment_id="pay_1")
        self.assertEqual(pending.kind, "ledger")


class IssueOrderTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("carol")
        self.gateway = FakeGateway()

    def test_amount_comes_from_plan_table(self):
        issued = issue_order(self.user, "max", self.gateway)
        self.assertEqual(issued.amount, 149900)
        self.assertEqual(self.gateway.created[0]["amount"], 149900)
        self.assertEqual(issued.key_id, "rzp_test_key")
        order = PaymentOrder.objects.get(order_id=issued.order_id)
        self.assertEqual((order.user, order.plan, order.amount, order.status), (self.user, "max", 149900, "created"))

    def test_unknown_plan(self):
        with self.assertRaises(UnknownPlan):
            issue_order(self.user, "enterprise", self.gateway)
        self.assertEqual(self.gateway.created, [])
        self.assertFalse(PaymentOrder.objects.exists())


class SettingsCheckTests(SimpleTestCase):
    def test_configured(self):
        self.assertEqual(razorpay_settings_check(None), [])

    @override_settings(RAZORPAY_KEY_SECRET="", RAZORPAY_WEBHOOK_SECRET="")
    def test_missing_secrets_reported(self):
        ids = [m.id for m in razorpay_settings_check(None)]
        self.assertEqual(ids, ["payments.E001", "payments.E003"])

    def test_orchestrator_refuses_empty_secret(self):
        with self.assertRaises(ImproperlyConfigured):
            VerificationOrchestrator(FakeGateway(), EntitlementStore(), PaymentLedger(), "")
