import time
from django.core.management.base import BaseCommand
from django.db.models import Exists, OuterRef

from accounts.models import UserProfile
from payments.integrations.razorpay import GatewayError, get_client
from payments.models import LedgerEntry, PendingCredit
from payments.services import VerificationOrchestrator
from payments.stores import DuplicateLedgerEntry, NewLedgerEntry


def _entry(p: PendingCredit) -> NewLedgerEntry:
    return NewLedgerEntry(
        user_id=str(p.user_id),
        order_id=p.order_id,
        payment_id=p.payment_id,
        amount=p.amount,
        currency=p.currency,
        gateway_status=p.gateway_status,
        plan=p.plan,
    )


class Command(BaseCommand):
    help = "Retry entitlement/ledger writes that failed during payment verification and backfill missing ledger entries"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=100, help="Max rows to process per pass")
        parser.add_argument("--sleep", type=float, default=0.5, help="Pause between gateway calls")

    def handle(self, *args, **opts):
        try:
            self.orchestrator = VerificationOrchestrator.from_settings(get_client())
        except GatewayError as e:
            self.stdout.write(self.style.ERROR(f"Gateway client unavailable: {e}"))
            return
        self.sleep = opts["sleep"]

        ok, failed = self._pending(opts["max"])
        backfilled = self._backfill(opts["max"])
        self.stdout.write(self.style.SUCCESS(
            f"Resolved {ok} pending credits ({failed} still failing), backfilled {backfilled} ledger entries."
        ))

    def _pending(self, limit):
        ok = failed = 0
        pending_credits = self.orchestrator.pending_credits
        for p in pending_credits.open(limit):
            if p.kind == PendingCredit.KIND_LEDGER:
                try:
                    self.orchestrator.ledger.append(_entry(p))
                except DuplicateLedgerEntry:
                    pass
                except Exception as e:
                    pending_credits.fail(p, str(e))
                    failed += 1
                    self.stdout.write(self.style.WARNING(f"{p.payment_id}: ledger write failed: {e}"))
                    continue
                pending_credits.resolve(p)
                ok += 1
                self.stdout.write(self.style.SUCCESS(f"{p.payment_id}: ledger entry recorded"))
                continue

            payment, aborted = self.orchestrator.fetch_successful(p.payment_id)
            result = aborted or self.orchestrator.credit(str(p.user_id), p.order_id, payment)
            if result.success:
                pending_credits.resolve(p)
                ok += 1
                self.stdout.write(self.style.SUCCESS(f"{p.payment_id}: credited {result.plan}"))
            else:
                pending_credits.fail(p, result.reason.value)
                failed += 1
                self.stdout.write(self.style.WARNING(f"{p.payment_id}: {result.reason.value}"))
            time.sleep(self.sleep)
        return ok, failed

    def _backfill(self, limit):
        """Profiles whose applied payment never reached the ledger."""
        missing = (
            UserProfile.objects.exclude(subscription_id="")
            .annotate(ledgered=Exists(LedgerEntry.objects.filter(payment_id=OuterRef("subscription_id"))))
            .filter(ledgered=False)
            .order_by("updated_at")[:limit]
        )
        done = 0
        for profile in missing:
            payment, aborted = self.orchestrator.fetch_successful(profile.subscription_id)
            if aborted:
                self.stdout.write(self.style.WARNING(f"{profile.subscription_id}: {aborted.reason.value}"))
            else:
                result = self.orchestrator.credit(str(profile.user_id), payment.order_id, payment)
                if result.success and self.orchestrator.ledger.has(payment.id):
                    done += 1
                    self.stdout.write(self.style.SUCCESS(f"{payment.id}: ledger entry backfilled"))
                else:
                    self.stdout.write(self.style.WARNING(f"{payment.id}: backfill failed"))
            time.sleep(self.sleep)
        return done
