import logging
from datetime import datetime, timedelta
from typing import List, Optional

from billing.auth import CurrentUser
from billing.confirmation import PaymentConfirmationResolver
from billing.datastore import Datastore
from billing.errors import InvalidRequest, NotFound
from billing.plans import CREDIT_PACK_PRICE, CREDIT_PACKS, charge_for, cycle_days, get_plan
from billing.providers.base import CheckoutOrder
from billing.schemas import PaymentMethod, PaymentRecord, PaymentStatus, new_id, utcnow

logger = logging.getLogger(__name__)

SESSION_LIFETIME = timedelta(minutes=30)


def session_details(created, started_at: datetime, attempt: int = 1) -> dict:
    return {
        "redirect_url": created.redirect_url,
        "qr_code": created.qr_payload,
        "session_started_at": started_at.isoformat(),
        "session_attempt": attempt,
    }


def payment_view(payment: PaymentRecord) -> dict:
    return {
        "order_id": payment.order_id,
        "payment_method": payment.payment_method,
        "status": payment.status,
        "plan_id": payment.plan_id,
        "billing_cycle": payment.billing_cycle,
        "credits": payment.credits,
        "amount": payment.amount,
        "currency": payment.currency,
        "membership_applied": payment.membership_applied,
        "transaction_id": payment.provider_transaction_id,
        "created_at": payment.created_at.isoformat(),
    }


class CheckoutService:
    """Starts, abandons and lists checkouts. Prices always come from the catalog."""

    def __init__(self, store: Datastore, resolver: PaymentConfirmationResolver, clock=utcnow):
        self.store = store
        self.resolver = resolver
        self.clock = clock

    def create(
        self,
        user: CurrentUser,
        method: str,
        plan_id: Optional[str] = None,
        billing_cycle: Optional[str] = None,
        credits: int = 0,
        order_id: Optional[str] = None,
    ) -> dict:
        if method == PaymentMethod.APPLE.value:
            raise InvalidRequest("In-app purchases are started on the device")
        adapter = self.resolver.adapter(method)

        if order_id:
            existing = self.store.get_payment(order_id)
            if existing is not None:
                self.resolver.check_owner(existing, user.user_id, user.email)
                return {"success": True, "existing": True, **payment_view(existing)}

        plan = get_plan(plan_id)
        if plan_id and plan is None:
            raise InvalidRequest(f"Unknown plan {plan_id}")
        if plan is not None:
            if billing_cycle not in ("monthly", "yearly"):
                raise InvalidRequest("billing_cycle must be monthly or yearly")
            amount_usd = plan.price(billing_cycle)
            days = cycle_days(billing_cycle)
            credits = plan.credit_grant(billing_cycle)
            description = f"{plan.id.title()} plan ({billing_cycle})"
        elif credits in CREDIT_PACKS:
            amount_usd = credits * CREDIT_PACK_PRICE
            days = None
            description = f"{credits} credits"
        else:
            raise InvalidRequest("Choose a plan or a credit pack")

        amount, currency = charge_for(method, amount_usd)
        order = CheckoutOrder(
            order_id=order_id or f"{method}_{new_id()}",
            amount=amount,
            currency=currency,
            description=description,
            plan_id=plan.id if plan else None,
            billing_cycle=billing_cycle if plan else None,
            days=days,
            credits=credits,
            user_id=user.user_id,
            user_email=user.email,
        )
        created = adapter.create(order)

        payment = PaymentRecord(
            order_id=order.order_id,
            region=self.resolver.settings.region,
            user_id=user.user_id,
            user_email=user.email,
            plan_id=order.plan_id,
            billing_cycle=order.billing_cycle,
            duration_days=days,
            credits=credits,
            amount=amount,
            currency=currency,
            payment_method=method,
            provider_ref=created.provider_ref,
            details=session_details(created, self.clock()),
        )
        if not self.store.append_ledger(payment):
            payment = self.store.get_payment(order.order_id)
        logger.info(
            "checkout created",
            extra={"order_id": payment.order_id, "provider": method, "user_id": user.user_id, "amount": amount},
        )
        return {
            "success": True,
            "order_id": payment.order_id,
            "provider_ref": created.provider_ref,
            "redirect_url": created.redirect_url,
            "qr_code": created.qr_payload,
            "amount": amount,
            "currency": currency,
        }

    def cancel(self, user: CurrentUser, order_id: str) -> dict:
        payment = self.store.get_payment(order_id)
        if payment is None:
            raise NotFound("Payment not found", order_id=order_id)
        self.resolver.check_owner(payment, user.user_id, user.email)
        cancelled = self.store.update_where(
            PaymentRecord,
            {"order_id": order_id},
            {"status": PaymentStatus.PENDING.value},
            {"status": PaymentStatus.FAILED.value, "updated_at": utcnow()},
        )
        if cancelled:
            logger.info("checkout abandoned", extra={"order_id": order_id, "user_id": user.user_id})
        status = PaymentStatus.FAILED.value if cancelled else payment.status
        return {"success": True, "order_id": order_id, "status": status}

    def resume(self, user: CurrentUser, order_id: str) -> dict:
        """Send the buyer back to an unpaid checkout, opening a new provider session once the old one expired."""
        payment = self.store.get_payment(order_id)
        if payment is None:
            raise NotFound("Payment not found", order_id=order_id)
        self.resolver.check_owner(payment, user.user_id, user.email)
        if payment.status != PaymentStatus.PENDING:
            raise InvalidRequest("Only pending payments can be continued", order_id=order_id, status=payment.status)

        details = payment.details or {}
        started = details.get("session_started_at")
        started_at = datetime.fromisoformat(started) if started else payment.created_at
        if self.clock() - started_at <= SESSION_LIFETIME and (details.get("redirect_url") or details.get("qr_code")):
            return {
                "success": True,
                "order_id": order_id,
                "provider_ref": payment.provider_ref,
                "redirect_url": details.get("redirect_url"),
                "qr_code": details.get("qr_code"),
                "renewed": False,
            }

        adapter = self.resolver.adapter(payment.payment_method)
        attempt = int(details.get("session_attempt", 1)) + 1
        order = CheckoutOrder(
            order_id=order_id,
            amount=payment.amount,
            currency=payment.currency,
            description=f"Continue payment for order {order_id}",
            plan_id=payment.plan_id,
            billing_cycle=payment.billing_cycle,
            days=payment.duration_days,
            credits=payment.credits,
            user_id=payment.user_id,
            user_email=payment.user_email,
            attempt=attempt,
        )
        created = adapter.create(order)
        now = self.clock()
        renewed = self.store.update_where(
            PaymentRecord,
            {"order_id": order_id},
            {"status": PaymentStatus.PENDING.value},
            {
                "provider_ref": created.provider_ref,
                "details": {**details, **session_details(created, now, attempt)},
                "updated_at": now,
            },
        )
        if not renewed:
            raise InvalidRequest("Only pending payments can be continued", order_id=order_id)
        logger.info(
            "checkout session renewed",
            extra={"order_id": order_id, "provider": payment.payment_method, "attempt": attempt, "user_id": user.user_id},
        )
        return {
            "success": True,
            "order_id": order_id,
            "provider_ref": created.provider_ref,
            "redirect_url": created.redirect_url,
            "qr_code": created.qr_payload,
            "renewed": True,
        }

    def history(self, user: CurrentUser) -> List[dict]:
        payments = {p.order_id: p for p in self.store.find_all(PaymentRecord, user_id=user.user_id)}
        if user.email:
            for payment in self.store.find_all(PaymentRecord, user_email=user.email):
                payments.setdefault(payment.order_id, payment)
        ordered = sorted(payments.values(), key=lambda p: p.created_at, reverse=True)
        return [payment_view(p) for p in ordered]
