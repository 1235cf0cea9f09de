"""Client-triggered payment confirmation.

Used when a buyer comes back from a redirect or QR flow. The webhook path
funnels through ``settle`` as well, so both paths share one
check-before-apply guard and a race between them cannot grant twice.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from billing.config import Settings
from billing.datastore import Datastore
from billing.entitlements import EntitlementApplier, EntitlementRequest, EntitlementResult
from billing.errors import (
    ConfigMissing,
    Conflict,
    InvalidRequest,
    NotCompleted,
    NotFound,
    ProviderUnavailable,
    RegionMismatch,
)
from billing.plans import (
    apple_product_id,
    cycle_days,
    days_from_amount,
    get_plan,
    normalize_cycle,
    parse_apple_product_id,
)
from billing.providers.base import Confirmation, ProviderAdapter
from billing.providers.wechat_provider import CLOSED_STATES
from billing.schemas import (
    EntitlementGrant,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    UserProfile,
    utcnow,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_ID = re.compile(r"^\{[A-Z0-9_]+\}$")


def is_placeholder(value: Optional[str]) -> bool:
    value = (value or "").strip()
    return bool(value) and (bool(PLACEHOLDER_ID.match(value)) or "CHECKOUT_SESSION_ID" in value)


@dataclass
class ConfirmParams:
    user_id: str
    user_email: Optional[str] = None
    session_id: Optional[str] = None
    token: Optional[str] = None
    out_trade_no: Optional[str] = None
    trade_no: Optional[str] = None
    wechat_out_trade_no: Optional[str] = None
    operation_id: str = field(default_factory=lambda: f"confirm_{uuid.uuid4().hex[:12]}")


class PaymentConfirmationResolver:
    def __init__(
        self,
        store: Datastore,
        providers: Dict[str, ProviderAdapter],
        applier: EntitlementApplier,
        settings: Settings,
    ):
        self.store = store
        self.providers = providers
        self.applier = applier
        self.settings = settings

    def adapter(self, method: str) -> ProviderAdapter:
        if not self.settings.provider_enabled(method):
            raise RegionMismatch(f"{method} is not available in {self.settings.region}")
        if method not in self.providers:
            raise ConfigMissing(f"{method} provider")
        return self.providers[method]

    @staticmethod
    def route(params: ConfirmParams) -> Tuple[str, str]:
        """Pick the provider from whichever identifier the client brought back."""
        for value in (params.session_id, params.token, params.out_trade_no, params.trade_no, params.wechat_out_trade_no):
            if is_placeholder(value):
                raise InvalidRequest("Invalid session id placeholder received. Return from checkout and retry.")
        if params.session_id:
            return PaymentMethod.STRIPE.value, params.session_id
        if params.token:
            return PaymentMethod.PAYPAL.value, params.token
        if params.out_trade_no or params.trade_no:
            return PaymentMethod.ALIPAY.value, params.out_trade_no or params.trade_no
        if params.wechat_out_trade_no:
            return PaymentMethod.WECHAT.value, params.wechat_out_trade_no
        raise InvalidRequest("Missing payment confirmation parameters")

    def confirm(self, params: ConfirmParams) -> EntitlementResult:
        method, reference = self.route(params)
        context = {"operation_id": params.operation_id, "user_id": params.user_id, "provider": method}
        logger.info("confirming payment", extra={**context, "reference": reference})

        payment = self.store.find_payment(reference)
        if payment is None:
            raise NotFound("Payment not found", **context)
        self.check_owner(payment, params.user_id, params.user_email)
        if payment.payment_method != method:
            raise InvalidRequest("Payment method mismatch", **context)

        if payment.status == PaymentStatus.COMPLETED.value:
            return self.settle(payment, self.stored_confirmation(payment))
        if payment.status == PaymentStatus.REFUNDED.value:
            raise NotCompleted("Payment was refunded", **context)

        adapter = self.adapter(method)
        # NotCompleted / ProviderUnavailable leave the record untouched
        confirmation = adapter.confirm(payment.provider_ref or reference)
        return self.settle(payment, confirmation)

    @staticmethod
    def check_owner(payment: PaymentRecord, user_id: str, user_email: Optional[str] = None) -> None:
        if payment.user_id and payment.user_id == user_id:
            return
        if payment.user_email and user_email and payment.user_email == user_email.strip().lower():
            return
        if not payment.user_id and not payment.user_email:
            return
        # do not reveal other users' orders
        raise NotFound("Payment not found")

    @staticmethod
    def stored_confirmation(payment: PaymentRecord) -> Confirmation:
        return Confirmation(
            completed=True,
            state=PaymentStatus.COMPLETED.value,
            provider_txn_id=payment.provider_transaction_id,
            order_ref=payment.order_id,
            amount=payment.amount,
            currency=payment.currency,
        )

    def snapshot(self, payment: PaymentRecord) -> Optional[EntitlementResult]:
        txn = payment.provider_transaction_id
        grant = self.store.find_one(EntitlementGrant, transaction_id=txn) if txn else None
        return EntitlementResult.from_grant(grant, already_processed=True) if grant else None

    def resolve_days(self, payment: PaymentRecord, confirmation: Confirmation) -> int:
        """Provider answer, then the stored order, then the amount."""
        if confirmation.days:
            return confirmation.days
        if payment.duration_days:
            return payment.duration_days
        stored = payment.details.get("days")
        if isinstance(stored, int) and stored > 0:
            return stored
        if payment.billing_cycle:
            return cycle_days(payment.billing_cycle)
        return days_from_amount(confirmation.amount or payment.amount)

    def settle(self, payment: PaymentRecord, confirmation: Confirmation) -> EntitlementResult:
        """Finalize a paid PaymentRecord and grant through the applier."""
        if payment.membership_applied:
            previous = self.snapshot(payment)
            if previous is not None:
                return previous

        txn = confirmation.provider_txn_id or payment.provider_transaction_id or payment.provider_ref or payment.order_id
        amount = confirmation.amount or payment.amount
        currency = confirmation.currency or payment.currency
        now = utcnow()

        moved = self.store.update_where(
            PaymentRecord,
            {"order_id": payment.order_id},
            {"status": PaymentStatus.PENDING.value},
            {
                "status": PaymentStatus.COMPLETED.value,
                "provider_transaction_id": txn,
                "amount": amount,
                "currency": currency,
                "updated_at": now,
            },
        )
        if not moved and payment.status == PaymentStatus.FAILED.value:
            logger.error(
                "provider reports payment for an order already marked failed; granting anyway",
                extra={"order_id": payment.order_id, "transaction_id": txn},
            )

        days = self.resolve_days(payment, confirmation)
        plan = get_plan(payment.plan_id)
        cycle = payment.billing_cycle or ("yearly" if days >= 365 else "monthly")
        result = self.applier.apply(
            EntitlementRequest(
                user_ref=payment.user_id or payment.user_email,
                transaction_id=txn,
                provider=payment.payment_method,
                plan_id=plan.id if plan else None,
                billing_cycle=normalize_cycle(cycle),
                days=days if plan else None,
                credits=plan.credit_grant(cycle) if plan else payment.credits,
                description=f"{payment.payment_method} {plan.id if plan else 'credits'}-{cycle}",
                subscription_ref=payment.provider_ref if payment.payment_method == PaymentMethod.APPLE.value else None,
            )
        )
        self.store.update_where(
            PaymentRecord,
            {"order_id": payment.order_id},
            {"membership_applied": False},
            {"membership_applied": True, "updated_at": utcnow()},
        )
        logger.info(
            "payment settled",
            extra={
                "order_id": payment.order_id,
                "transaction_id": txn,
                "provider": payment.payment_method,
                "already_processed": result.already_processed,
            },
        )
        return result

    def settle_event(self, method: str, confirmation: Confirmation) -> EntitlementResult:
        """Webhook entry: find the order the event is about, or record it from the event metadata."""
        payment = None
        for reference in (confirmation.order_ref, confirmation.provider_txn_id):
            if reference:
                payment = self.store.find_payment(reference)
                if payment is not None:
                    break
        if payment is None:
            payment = self.record_from_event(method, confirmation)
        return self.settle(payment, confirmation)

    def record_from_event(self, method: str, confirmation: Confirmation) -> PaymentRecord:
        meta = confirmation.metadata
        user_ref = meta.get("userId") or (meta.get("userEmail") or "").strip().lower()
        plan = get_plan(meta.get("planId"))
        if not user_ref or plan is None:
            raise InvalidRequest("Missing planId or userEmail in webhook payload", provider=method)
        cycle = normalize_cycle(meta.get("billingCycle"))
        payment = PaymentRecord(
            order_id=confirmation.order_ref or confirmation.provider_txn_id,
            region=self.settings.region,
            user_id=meta.get("userId") or None,
            user_email=(meta.get("userEmail") or "").strip().lower() or None,
            plan_id=plan.id,
            billing_cycle=cycle,
            amount=confirmation.amount or plan.price(cycle),
            currency=confirmation.currency or "USD",
            payment_method=method,
            provider_ref=confirmation.order_ref,
            details={"source": "webhook"},
        )
        if not self.store.append_ledger(payment):
            payment = self.store.get_payment(payment.order_id)
        logger.info("payment recorded from webhook", extra={"order_id": payment.order_id, "provider": method})
        return payment

    def poll(self, order_id: str, user_id: str, user_email: Optional[str] = None) -> dict:
        """Status polling for push-payment orders; applies the entitlement the first time the provider says paid."""
        payment = self.store.find_payment(order_id)
        if payment is None:
            raise NotFound("Payment not found", order_id=order_id)
        self.check_owner(payment, user_id, user_email)

        trade_state = None
        if payment.status == PaymentStatus.PENDING.value:
            confirmation = self.adapter(payment.payment_method).query(payment.provider_ref or payment.order_id)
            trade_state = confirmation.state
            if confirmation.completed:
                self.settle(payment, confirmation)
            elif confirmation.state in CLOSED_STATES:
                self.store.update_where(
                    PaymentRecord,
                    {"order_id": payment.order_id},
                    {"status": PaymentStatus.PENDING.value},
                    {"status": PaymentStatus.FAILED.value, "updated_at": utcnow()},
                )
            payment = self.store.get_payment(payment.order_id)
        elif payment.status == PaymentStatus.COMPLETED.value and not payment.membership_applied:
            self.settle(payment, self.stored_confirmation(payment))
            payment = self.store.get_payment(payment.order_id)

        return {
            "success": True,
            "orderId": payment.order_id,
            "status": payment.status,
            "tradeState": trade_state,
            "transactionId": payment.provider_transaction_id,
            "membershipApplied": payment.membership_applied,
        }

    def confirm_in_app(
        self,
        user_id: str,
        transaction_id: str,
        product_id: str,
        plan_id: str,
        billing_cycle: str,
        operation_id: Optional[str] = None,
    ) -> EntitlementResult:
        """Grant an App Store purchase.

        A definite "invalid" from Apple rejects the purchase. If Apple cannot
        be reached the grant goes ahead with ``verification_status=pending``
        and the status oracle keeps asking Apple afterwards.
        """
        context = {"operation_id": operation_id, "user_id": user_id, "transaction_id": transaction_id}
        if not transaction_id or not product_id or not plan_id or billing_cycle not in ("monthly", "yearly"):
            raise InvalidRequest("Missing IAP confirmation parameters")
        if is_placeholder(transaction_id):
            raise InvalidRequest("Invalid transaction id")
        plan = get_plan(plan_id)
        if plan is None or apple_product_id(plan.id, billing_cycle) != product_id:
            raise InvalidRequest("Invalid IAP product", **context)
        adapter = self.adapter(PaymentMethod.APPLE.value)

        for subscription in self.store.find_all(Subscription, user_id=user_id, plan_id=plan.id):
            blocking = (
                subscription.provider != PaymentMethod.APPLE.value
                and subscription.status == SubscriptionStatus.ACTIVE.value
                and subscription.current_period_end is not None
                and subscription.current_period_end > utcnow()
            )
            if blocking:
                raise Conflict("Active subscription exists from another payment method", **context)

        verification_status = "pending"
        confirmation = Confirmation(completed=True, state="UNVERIFIED", provider_txn_id=transaction_id)
        try:
            confirmation = adapter.query(transaction_id)
        except ProviderUnavailable:
            logger.warning("apple verification unavailable, granting as pending", extra=context)
        except NotFound as exc:
            raise NotCompleted("Invalid App Store transaction", **context) from exc
        else:
            if not confirmation.completed or confirmation.metadata.get("productId") not in (None, product_id):
                raise NotCompleted("Invalid App Store transaction", **context)
            verification_status = "verified"

        confirmation.provider_txn_id = confirmation.provider_txn_id or transaction_id
        payment = self.record_in_app(
            user_id, plan.id, billing_cycle, confirmation, verification_status, {"productId": product_id, "operationId": operation_id}
        )
        return self.settle(payment, confirmation)

    def record_in_app(
        self,
        user_id: str,
        plan_id: str,
        billing_cycle: str,
        confirmation: Confirmation,
        verification_status: str,
        details: dict,
    ) -> PaymentRecord:
        txn = confirmation.provider_txn_id
        payment = self.store.get_payment(f"apple_{txn}")
        if payment is not None:
            return payment
        plan = get_plan(plan_id)
        profile = self.store.find_one(UserProfile, user_id=user_id)
        payment = PaymentRecord(
            order_id=f"apple_{txn}",
            region=self.settings.region,
            user_id=user_id,
            user_email=profile.email if profile else None,
            plan_id=plan.id,
            billing_cycle=billing_cycle,
            amount=confirmation.amount or plan.price(billing_cycle),
            currency=confirmation.currency or "USD",
            payment_method=PaymentMethod.APPLE,
            provider_ref=confirmation.metadata.get("originalTransactionId") or txn,
            verification_status=verification_status,
            details=details,
        )
        if not self.store.append_ledger(payment):
            payment = self.store.get_payment(payment.order_id)
        return payment

    def in_app_owner(self, confirmation: Confirmation) -> Optional[str]:
        """The user behind an App Store transaction chain: the first purchase we recorded, else the app account token."""
        original = confirmation.metadata.get("originalTransactionId")
        first = self.store.find_payment(original) if original else None
        return (first.user_id if first else None) or confirmation.metadata.get("appAccountToken")

    def apple_renewal(self, confirmation: Confirmation) -> EntitlementResult:
        """A signed App Store notification for a new or renewed purchase."""
        user_id = self.in_app_owner(confirmation)
        plan_id, cycle = parse_apple_product_id(confirmation.metadata.get("productId"))
        if not user_id or get_plan(plan_id) is None:
            raise InvalidRequest("Cannot attribute App Store notification", transaction_id=confirmation.provider_txn_id)
        payment = self.record_in_app(
            user_id, plan_id, normalize_cycle(cycle), confirmation, "verified", {"source": "notification"}
        )
        return self.settle(payment, confirmation)
