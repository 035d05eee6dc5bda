"""ORM-backed adapters for the profile entitlement, payment ledger, orders and pending credits."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from accounts.models import UserProfile
from .models import LedgerEntry, PaymentOrder, PendingCredit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Entitlement:
    user_id: str
    role: str = UserProfile.ROLE_FREE
    subscription_type: str = UserProfile.SUB_FREE
    subscription_end_date: Optional[datetime] = None


@dataclass(frozen=True)
class NewLedgerEntry:
    user_id: str
    order_id: str
    payment_id: str
    amount: int
    currency: str
    gateway_status: str
    plan: str


class DuplicateLedgerEntry(Exception):
    pass


def _profiles(user_id):
    try:
        return UserProfile.objects.filter(user_id=int(user_id))
    except (TypeError, ValueError):
        return UserProfile.objects.none()


def _to_entitlement(profile: UserProfile) -> Entitlement:
    return Entitlement(
        user_id=str(profile.user_id),
        role=profile.role,
        subscription_type=profile.subscription_type,
        subscription_end_date=profile.subscription_end_date,
    )


class EntitlementStore:
    def get_entitlement(self, user_id) -> Optional[Entitlement]:
        profile = _profiles(user_id).first()
        return _to_entitlement(profile) if profile else None

    def lock(self, user_id) -> tuple[Entitlement, str]:
        """Row-lock the profile for the rest of the current transaction.

        Returns the entitlement and the id of the last payment applied to it.
        """
        profile = _profiles(user_id).select_for_update().get()
        return _to_entitlement(profile), profile.subscription_id

    def update_entitlement(self, user_id, entitlement: Entitlement, *, payment_id: str) -> None:
        updated = _profiles(user_id).update(
            role=entitlement.role,
            subscription_type=entitlement.subscription_type,
            subscription_end_date=entitlement.subscription_end_date,
            subscription_id=payment_id,
            subscription_status="active",
            updated_at=timezone.now(),
        )
        if updated != 1:
            raise UserProfile.DoesNotExist(f"No profile for user {user_id}")


class PaymentLedger:
    def has(self, payment_id: str) -> bool:
        return LedgerEntry.objects.filter(payment_id=payment_id).exists()

    def append(self, entry: NewLedgerEntry) -> LedgerEntry:
        try:
            with transaction.atomic():
                return LedgerEntry.objects.create(
                    user_id=int(entry.user_id),
                    order_id=entry.order_id,
                    payment_id=entry.payment_id,
                    amount=entry.amount,
                    currency=entry.currency,
                    gateway_status=entry.gateway_status,
                    plan=entry.plan,
                )
        except IntegrityError:
            if self.has(entry.payment_id):
                raise DuplicateLedgerEntry(entry.payment_id)
            raise


class PaymentOrders:
    def create(self, *, order_id: str, user_id, plan, currency: str, plans_version: int) -> PaymentOrder:
        return PaymentOrder.objects.create(
            order_id=order_id,
            user_id=int(user_id),
            plan=plan.key,
            amount=plan.amount,
            currency=currency,
            plans_version=plans_version,
        )

    def owner_of(self, order_id: str) -> Optional[str]:
        """User id that issued ``order_id`` locally, or ``None`` for orders we never issued."""
        user_id = PaymentOrder.objects.filter(order_id=order_id).values_list("user_id", flat=True).first()
        return None if user_id is None else str(user_id)

    def mark_paid(self, order_id: str, payment_id: str) -> None:
        PaymentOrder.objects.filter(order_id=order_id, status="created").update(
            status="paid", payment_id=payment_id, paid_at=timezone.now()
        )


class PendingCredits:
    def record(self, *, kind: str, entry: NewLedgerEntry, error: str) -> Optional[PendingCredit]:
        """Best-effort: the database that just failed may fail here too, so errors are logged, not raised."""
        try:
            with transaction.atomic():
                pending, _ = PendingCredit.objects.update_or_create(
                    kind=kind,
                    payment_id=entry.payment_id,
                    defaults={
                        "user_id": int(entry.user_id),
                        "order_id": entry.order_id,
                        "amount": entry.amount,
                        "currency": entry.currency,
                        "gateway_status": entry.gateway_status,
                        "plan": entry.plan,
                        "last_error": error[:2000],
                        "resolved": False,
                    },
                )
                return pending
        except Exception:
            logger.exception("Could not record pending %s credit for payment %s", kind, entry.payment_id)
            return None

    def has(self, kind: str, payment_id: str) -> bool:
        return PendingCredit.objects.filter(kind=kind, payment_id=payment_id).exists()

    def resolve_payment(self, kind: str, payment_id: str) -> None:
        PendingCredit.objects.filter(kind=kind, payment_id=payment_id, resolved=False).update(
            resolved=True, last_error="", updated_at=timezone.now()
        )

    def open(self, limit: int):
        return PendingCredit.objects.filter(resolved=False).select_related("user")[:limit]

    def resolve(self, pending: PendingCredit) -> None:
        pending.resolved = True
        pending.last_error = ""
        pending.save(update_fields=["resolved", "last_error", "updated_at"])

    def fail(self, pending: PendingCredit, error: str) -> None:
        pending.attempts += 1
        pending.last_error = error[:2000]
        pending.save(update_fields=["attempts", "last_error", "updated_at"])
