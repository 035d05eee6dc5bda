# payments/services.py
"""Order issuance and payment verification.

A verification attempt walks RECEIVED -> SIGNATURE_CHECKED -> STATUS_FETCHED
-> PLAN_RESOLVED -> ENTITLEMENT_UPDATED -> LEDGER_RECORDED -> DONE and can be
ABORTED at any step. Business outcomes are returned as a
:class:`VerificationResult`; nothing here raises for a bad payment.
"""
import enum, logging, time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from accounts.models import UserProfile
from . import signatures
from .emails import send_operator_alert
from .integrations.razorpay import GatewayError, GatewayPayment, GatewayRejected
from .models import PendingCredit
from .plans import DEFAULT_CURRENCY, PLANS_VERSION, ROLE_RANK, Plan, get_plan, resolve_plan
from .stores import (
    DuplicateLedgerEntry,
    Entitlement,
    EntitlementStore,
    NewLedgerEntry,
    PaymentLedger,
    PaymentOrders,
    PendingCredits,
)

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("payments.security")
alerts_logger = logging.getLogger("payments.alerts")

ACCEPTED_STATUSES = frozenset({"captured", "authorized"})


class State(str, enum.Enum):
    RECEIVED = "received"
    SIGNATURE_CHECKED = "signature_checked"
    STATUS_FETCHED = "status_fetched"
    PLAN_RESOLVED = "plan_resolved"
    ENTITLEMENT_UPDATED = "entitlement_updated"
    LEDGER_RECORDED = "ledger_recorded"
    DONE = "done"
    ABORTED = "aborted"


class AbortReason(str, enum.Enum):
    BAD_REQUEST = "bad_request"
    INVALID_SIGNATURE = "invalid_signature"
    ORDER_USER_MISMATCH = "order_user_mismatch"
    GATEWAY_UNREACHABLE = "gateway_unreachable"
    PAYMENT_NOT_SUCCESSFUL = "payment_not_successful"
    UNKNOWN_PLAN_AMOUNT = "unknown_plan_amount"
    ENTITLEMENT_WRITE_FAILED = "entitlement_write_failed"


RETRYABLE_REASONS = frozenset({AbortReason.GATEWAY_UNREACHABLE})


@dataclass(frozen=True)
class VerificationRequest:
    order_id: str
    payment_id: str
    signature: str
    user_id: str

    @classmethod
    def from_dict(cls, data) -> "VerificationRequest":
        data = data if isinstance(data, dict) else {}

        def _s(key):
            value = data.get(key)
            if isinstance(value, int) and not isinstance(value, bool):
                value = str(value)
            return value.strip() if isinstance(value, str) else ""

        return cls(
            order_id=_s("order_id"),
            payment_id=_s("payment_id"),
            signature=_s("signature"),
            user_id=_s("user_id"),
        )


@dataclass(frozen=True)
class VerificationResult:
    state: State
    payment_id: str = ""
    reason: Optional[AbortReason] = None
    plan: Optional[str] = None
    already_processed: bool = False
    entitlement: Optional[Entitlement] = None

    @property
    def success(self) -> bool:
        return self.state == State.DONE

    @property
    def retryable(self) -> bool:
        return self.reason in RETRYABLE_REASONS


def _effective_rank(current: Entitlement, now: datetime) -> int:
    if current.role == UserProfile.ROLE_MAX:
        return ROLE_RANK[UserProfile.ROLE_MAX]
    if current.role == UserProfile.ROLE_PRO and current.subscription_end_date and current.subscription_end_date > now:
        return ROLE_RANK[UserProfile.ROLE_PRO]
    return ROLE_RANK[UserProfile.ROLE_FREE]


def next_entitlement(current: Entitlement, plan: Plan, now: datetime) -> Entitlement:
    """Entitlement after crediting ``plan``. Never moves a user to a lower tier or an earlier expiry."""
    if plan.rank < _effective_rank(current, now):
        return current
    if plan.is_lifetime:
        return Entitlement(
            user_id=current.user_id,
            role=plan.role,
            subscription_type=plan.subscription_type,
            subscription_end_date=None,
        )
    # renewal restarts the window at now + duration; unused days are not carried over
    end = now + plan.duration
    if current.role == plan.role and current.subscription_end_date and current.subscription_end_date > end:
        end = current.subscription_end_date
    return Entitlement(
        user_id=current.user_id,
        role=plan.role,
        subscription_type=plan.subscription_type,
        subscription_end_date=end,
    )


class VerificationOrchestrator:
    """Verifies a checkout callback and credits the purchased plan at most once per payment."""

    def __init__(
        self,
        gateway,
        entitlements: EntitlementStore,
        ledger: PaymentLedger,
        secret: str,
        *,
        orders: Optional[PaymentOrders] = None,
        pending_credits: Optional[PendingCredits] = None,
        clock: Callable[[], datetime] = timezone.now,
        sleep: Callable[[float], None] = time.sleep,
        write_attempts: int = 3,
        backoff: float = 0.2,
    ):
        signatures.require_secret(secret, "RAZORPAY_KEY_SECRET")
        self.gateway = gateway
        self.entitlements = entitlements
        self.ledger = ledger
        self.secret = secret
        self.orders = orders or PaymentOrders()
        self.pending_credits = pending_credits or PendingCredits()
        self.clock = clock
        self.sleep = sleep
        self.write_attempts = max(1, int(write_attempts))
        self.backoff = backoff

    @classmethod
    def from_settings(cls, gateway) -> "VerificationOrchestrator":
        return cls(
            gateway,
            EntitlementStore(),
            PaymentLedger(),
            settings.RAZORPAY_KEY_SECRET,
            write_attempts=getattr(settings, "PAYMENTS_ENTITLEMENT_WRITE_ATTEMPTS", 3),
            backoff=getattr(settings, "PAYMENTS_WRITE_BACKOFF_SECONDS", 0.2),
        )

    def _abort(self, reason: AbortReason, payment_id: str = "") -> VerificationResult:
        return VerificationResult(state=State.ABORTED, reason=reason, payment_id=payment_id)

    def fetch_successful(self, payment_id: str):
        """Authoritative status/amount from the gateway; returns (payment, None) or (None, aborted_result)."""
        try:
            payment = self.gateway.fetch_payment(payment_id)
        except GatewayRejected as e:
            logger.warning("Gateway rejected payment lookup %s: %s", payment_id, e)
            return None, self._abort(AbortReason.PAYMENT_NOT_SUCCESSFUL, payment_id)
        except GatewayError as e:
            logger.error("Gateway unreachable for payment %s: %s", payment_id, e)
            return None, self._abort(AbortReason.GATEWAY_UNREACHABLE, payment_id)

        if payment.status not in ACCEPTED_STATUSES:
            logger.info("Payment %s not successful: status=%s", payment_id, payment.status)
            return None, self._abort(AbortReason.PAYMENT_NOT_SUCCESSFUL, payment_id)
        return payment, None

    # ---------- steps ----------

    def verify(self, req: VerificationRequest) -> VerificationResult:
        # RECEIVED
        if not (req.order_id and req.payment_id and req.signature and req.user_id):
            return self._abort(AbortReason.BAD_REQUEST, req.payment_id)
        if self.entitlements.get_entitlement(req.user_id) is None:
            logger.info("Verification for unknown user_id=%s payment_id=%s", req.user_id, req.payment_id)
            return self._abort(AbortReason.BAD_REQUEST, req.payment_id)

        # SIGNATURE_CHECKED
        if not signatures.verify(req.order_id, req.payment_id, req.signature, self.secret):
            security_logger.warning(
                "Invalid payment signature: order_id=%s payment_id=%s user_id=%s",
                req.order_id, req.payment_id, req.user_id,
            )
            return self._abort(AbortReason.INVALID_SIGNATURE, req.payment_id)

        owner = self.orders.owner_of(req.order_id)
        if owner is not None and owner != req.user_id:
            security_logger.warning(
                "Order %s belongs to user %s but was submitted by user %s",
                req.order_id, owner, req.user_id,
            )
            return self._abort(AbortReason.ORDER_USER_MISMATCH, req.payment_id)

        # STATUS_FETCHED
        payment, aborted = self.fetch_successful(req.payment_id)
        if aborted:
            return aborted
        if payment.order_id and payment.order_id != req.order_id:
            logger.warning(
                "Payment %s belongs to order %s, not %s", req.payment_id, payment.order_id, req.order_id
            )
            return self._abort(AbortReason.PAYMENT_NOT_SUCCESSFUL, req.payment_id)

        return self.credit(req.user_id, req.order_id, payment)

    def verify_with_gateway(self, payment_id: str) -> VerificationResult:
        """Credit a payment known only by id (webhook, reconciliation).

        The caller has already authenticated the notification; status, amount
        and order come from the gateway, the owning user from the local order.
        """
        payment, aborted = self.fetch_successful(payment_id)
        if aborted:
            return aborted

        user_id = self.orders.owner_of(payment.order_id) if payment.order_id else None
        if user_id is None:
            logger.warning("Payment %s references order %r that was not issued here", payment_id, payment.order_id)
            return self._abort(AbortReason.BAD_REQUEST, payment_id)

        return self.credit(user_id, payment.order_id, payment)

    def credit(self, user_id: str, order_id: str, payment: GatewayPayment) -> VerificationResult:
        """Steps PLAN_RESOLVED through DONE for a payment already verified with the gateway.

        Shared with the webhook and the reconciliation command; runs to
        completion once the entitlement write has started.
        """
        # PLAN_RESOLVED
        plan, ok = resolve_plan(payment.amount)
        if not ok:
            alerts_logger.critical(
                "Unknown plan amount %s %s for payment %s (order %s, user %s); entitlement not updated",
                payment.amount, payment.currency, payment.id, order_id, user_id,
            )
            send_operator_alert(
                reason=AbortReason.UNKNOWN_PLAN_AMOUNT.value,
                payment_id=payment.id,
                amount=payment.amount,
                currency=payment.currency,
                order_id=order_id,
                user_id=user_id,
                plans_version=PLANS_VERSION,
            )
            return self._abort(AbortReason.UNKNOWN_PLAN_AMOUNT, payment.id)

        entry = NewLedgerEntry(
            user_id=str(user_id),
            order_id=order_id,
            payment_id=payment.id,
            amount=payment.amount,
            currency=payment.currency or DEFAULT_CURRENCY,
            gateway_status=payment.status,
            plan=plan.key,
        )

        # ENTITLEMENT_UPDATED
        outcome = self._apply_entitlement(entry, plan)
        if outcome is None:
            return self._abort(AbortReason.ENTITLEMENT_WRITE_FAILED, payment.id)
        entitlement, already_processed = outcome
        if already_processed:
            logger.info("Payment %s already processed; entitlement left unchanged", payment.id)
            # entitlement landed but an earlier ledger write did not
            if not self.ledger.has(payment.id):
                self._claim_ledger(entry)
            return VerificationResult(
                state=State.DONE,
                payment_id=payment.id,
                plan=plan.key,
                already_processed=True,
                entitlement=entitlement,
            )

        # LEDGER_RECORDED (claimed together with the entitlement update)
        self.orders.mark_paid(order_id, payment.id)

        logger.info("Payment %s credited: user_id=%s plan=%s", payment.id, user_id, plan.key)
        return VerificationResult(
            state=State.DONE,
            payment_id=payment.id,
            plan=plan.key,
            entitlement=entitlement,
        )

    def _already_applied(self, payment_id: str, applied_payment_id: str) -> bool:
        return (
            applied_payment_id == payment_id
            or self.ledger.has(payment_id)
            or self.pending_credits.has(PendingCredit.KIND_LEDGER, payment_id)
        )

    def _apply_entitlement(self, entry: NewLedgerEntry, plan: Plan):
        """Returns ``(entitlement, already_processed)``, or ``None`` once every write attempt failed.

        The ledger row is inserted under the profile lock before the entitlement
        changes and commits with it; its unique ``payment_id`` decides which of
        two racing credits for the same payment applies.
        """
        last_error = None
        for attempt in range(1, self.write_attempts + 1):
            try:
                with transaction.atomic():
                    current, applied_payment_id = self.entitlements.lock(entry.user_id)
                    if self._already_applied(entry.payment_id, applied_payment_id):
                        return current, True
                    if not self._claim_ledger(entry):
                        return self.entitlements.get_entitlement(entry.user_id) or current, True
                    new = next_entitlement(current, plan, self.clock())
                    self.entitlements.update_entitlement(entry.user_id, new, payment_id=entry.payment_id)
                    return new, False
            except DatabaseError as e:
                last_error = e
                logger.warning(
                    "Entitlement write failed for payment %s (attempt %s/%s): %s",
                    entry.payment_id, attempt, self.write_attempts, e,
                )
                if attempt < self.write_attempts:
                    self.sleep(self.backoff * (2 ** (attempt - 1)))

        alerts_logger.critical(
            "Entitlement write failed for verified payment %s (user %s, plan %s); queued for reconciliation",
            entry.payment_id, entry.user_id, entry.plan,
        )
        self.pending_credits.record(kind=PendingCredit.KIND_ENTITLEMENT, entry=entry, error=str(last_error))
        send_operator_alert(
            reason=AbortReason.ENTITLEMENT_WRITE_FAILED.value,
            payment_id=entry.payment_id,
            user_id=entry.user_id,
            plan=entry.plan,
            error=str(last_error),
        )
        return None

    def _claim_ledger(self, entry: NewLedgerEntry) -> bool:
        """Append the ledger row; ``False`` only when the payment is already ledgered.

        Any other failure is queued as a ledger pending credit and does not
        block the entitlement.
        """
        try:
            self.ledger.append(entry)
        except DuplicateLedgerEntry:
            logger.info("Ledger entry for payment %s already present", entry.payment_id)
            return False
        except DatabaseError as e:
            alerts_logger.error(
                "Ledger write failed for payment %s: %s; queued for retry",
                entry.payment_id, e,
            )
            self.pending_credits.record(kind=PendingCredit.KIND_LEDGER, entry=entry, error=str(e))
            return True
        self.pending_credits.resolve_payment(PendingCredit.KIND_LEDGER, entry.payment_id)
        return True


# ---------- order issuance ----------

class UnknownPlan(Exception):
    pass


@dataclass(frozen=True)
class IssuedOrder:
    order_id: str
    amount: int
    currency: str
    key_id: str
    plan: str


def issue_order(user, plan_key, gateway, *, orders: Optional[PaymentOrders] = None,
                currency: str = DEFAULT_CURRENCY) -> IssuedOrder:
    """Create a gateway order for ``plan_key``. The amount always comes from the plans table.

    Raises :class:`UnknownPlan` for keys outside the table and lets
    :class:`GatewayError` propagate to the caller.
    """
    plan = get_plan(plan_key)
    if plan is None:
        raise UnknownPlan(plan_key)
    receipt = f"{plan.key}_{user.pk}_{int(time.time())}"
    data = gateway.create_order(amount=plan.amount, currency=currency, plan=plan, user_id=user.pk, receipt=receipt)
    order_id = str(data["id"])
    (orders or PaymentOrders()).create(
        order_id=order_id,
        user_id=user.pk,
        plan=plan,
        currency=str(data.get("currency") or currency),
        plans_version=PLANS_VERSION,
    )
    logger.info("Issued order %s for user_id=%s plan=%s amount=%s", order_id, user.pk, plan.key, plan.amount)
    return IssuedOrder(
        order_id=order_id,
        amount=plan.amount,
        currency=str(data.get("currency") or currency),
        key_id=getattr(gateway, "key_id", ""),
        plan=plan.key,
    )
