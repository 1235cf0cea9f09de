"""The single place where subscription time and credits are granted.

Every confirmed purchase, whichever path it arrives on, ends in
``EntitlementApplier.apply``. A grant is claimed in the ``entitlement_grants``
ledger under the provider transaction id before anything is mutated, so a
second delivery of the same transaction only ever reads the first result.
"""
import logging
from dataclasses import dataclass
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from billing.datastore import Datastore
from billing.errors import DatastoreError, GrantInProgress, InvalidRequest, NotFound, ProfileSyncError
from billing.plans import TIER_RANK, cycle_days, get_plan
from billing.schemas import (
    CreditTransaction,
    CreditType,
    EntitlementGrant,
    PaymentMethod,
    Subscription,
    SubscriptionStatus,
    UserProfile,
    utcnow,
)

logger = logging.getLogger(__name__)

# an unfinished claim older than this belongs to an attempt that died
CLAIM_TIMEOUT = timedelta(minutes=2)
CLAIM_WAIT_STEPS = 5
CLAIM_WAIT_SECONDS = 0.2


@dataclass
class EntitlementRequest:
    user_ref: str
    transaction_id: str
    provider: str
    plan_id: Optional[str] = None
    billing_cycle: Optional[str] = None
    days: Optional[int] = None
    credits: int = 0
    description: Optional[str] = None
    # stable id of a renewing subscription (App Store original transaction)
    subscription_ref: Optional[str] = None


class EntitlementResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    already_processed: bool = False
    transaction_id: str
    new_expire_at: Optional[datetime] = None
    new_credits: int = 0
    subscription_tier: Optional[str] = None

    @classmethod
    def from_grant(cls, grant: EntitlementGrant, already_processed: bool) -> "EntitlementResult":
        return cls(
            already_processed=already_processed,
            transaction_id=grant.transaction_id,
            new_expire_at=grant.new_expire_at,
            new_credits=grant.new_credits,
            subscription_tier=grant.subscription_tier,
        )


def extend_expiry(current_end: Optional[datetime], now: datetime, days: int) -> datetime:
    """Renewals stack on unexpired time; a lapsed membership restarts from now."""
    base = current_end if current_end is not None and current_end > now else now
    return base + timedelta(days=days)


class EntitlementApplier:
    def __init__(
        self,
        store: Datastore,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.clock = clock
        self.sleep = sleep

    def apply(self, request: EntitlementRequest) -> EntitlementResult:
        if not request.transaction_id:
            raise InvalidRequest("No transaction identifier")
        if not request.plan_id and request.credits <= 0:
            raise InvalidRequest("Nothing to grant", transaction_id=request.transaction_id)
        if request.plan_id and get_plan(request.plan_id) is None:
            raise InvalidRequest(f"Unknown plan {request.plan_id}")

        previous = self._already_applied(request.transaction_id)
        if previous is not None:
            logger.info("entitlement already applied", extra={"transaction_id": request.transaction_id})
            return previous

        profile = self._resolve_user(request.user_ref)
        claim = self._claim(request, profile)
        if claim.applied:
            # a concurrent request finished this transaction while we waited
            return self._replay(claim)

        try:
            if request.credits > 0:
                self.store.append_ledger(
                    CreditTransaction(
                        user_id=profile.user_id,
                        amount=request.credits,
                        type=CreditType.PURCHASE,
                        reference_id=request.transaction_id,
                        description=request.description or f"{request.provider} purchase {request.plan_id or 'credits'}",
                    )
                )
            new_expiry = None
            if request.plan_id:
                new_expiry = self._upsert_subscription(profile.user_id, request)
        except Exception:
            logger.exception(
                "entitlement write failed, releasing claim",
                extra={"transaction_id": request.transaction_id, "user_id": profile.user_id},
            )
            self._release(claim)
            raise

        grant = claim.model_copy(update={"new_expire_at": new_expiry, "applied": True})
        try:
            self.store.upsert(grant)
        except DatastoreError as exc:
            raise ProfileSyncError("Entitlement granted but snapshot not stored", transaction_id=request.transaction_id) from exc
        grant = self._finish(grant, email=profile.email)

        logger.info(
            "entitlement applied",
            extra={
                "event": "membership_extended",
                "transaction_id": request.transaction_id,
                "user_id": profile.user_id,
                "provider": request.provider,
                "plan_id": request.plan_id,
                "credits": request.credits,
                "new_expire_at": new_expiry.isoformat() if new_expiry else None,
            },
        )
        return EntitlementResult.from_grant(grant, already_processed=False)

    def _claim(self, request: EntitlementRequest, profile: UserProfile) -> EntitlementGrant:
        """Own the transaction, or return the grant another request already finished.

        An unfinished claim is waited on briefly. One older than
        ``CLAIM_TIMEOUT`` belongs to an attempt that died and is taken over.
        """
        now = self.clock()
        claim = EntitlementGrant(
            transaction_id=request.transaction_id,
            user_id=profile.user_id,
            provider=request.provider,
            plan_id=request.plan_id,
            days=request.days,
            credits=request.credits,
            created_at=now,
            claimed_at=now,
        )
        for _ in range(CLAIM_WAIT_STEPS):
            if self.store.append_ledger(claim):
                return claim
            current = self.store.find_one(EntitlementGrant, transaction_id=request.transaction_id)
            if current is None:
                continue
            if current.applied:
                return current
            if current.claimed_at < self.clock() - CLAIM_TIMEOUT:
                taken = claim.model_copy(update={"attempt": current.attempt + 1, "claimed_at": self.clock()})
                if self.store.update_where(
                    EntitlementGrant,
                    {"transaction_id": request.transaction_id},
                    {"applied": False, "attempt": current.attempt},
                    {"attempt": taken.attempt, "claimed_at": taken.claimed_at},
                ):
                    logger.warning(
                        "taking over stale entitlement claim",
                        extra={"transaction_id": request.transaction_id, "attempt": taken.attempt},
                    )
                    return taken
                continue
            self.sleep(CLAIM_WAIT_SECONDS)
        raise GrantInProgress("Entitlement is being applied, retry shortly", transaction_id=request.transaction_id)

    def _release(self, claim: EntitlementGrant) -> None:
        try:
            self.store.remove(EntitlementGrant, transaction_id=claim.transaction_id)
        except Exception:
            # left in place, the claim goes stale and the next attempt takes it over
            logger.exception("could not release entitlement claim", extra={"transaction_id": claim.transaction_id})

    def _replay(self, grant: EntitlementGrant) -> EntitlementResult:
        if not grant.synced:
            # an earlier attempt granted but never finished the derived write
            grant = self._finish(grant)
        return EntitlementResult.from_grant(grant, already_processed=True)

    def _finish(self, grant: EntitlementGrant, email: Optional[str] = None) -> EntitlementGrant:
        """Write the derived profile and record it on the grant."""
        synced = self.sync_profile(grant.user_id, email=email)
        grant = grant.model_copy(
            update={"new_credits": synced.credits, "subscription_tier": synced.subscription_tier, "synced": True}
        )
        try:
            return self.store.upsert(grant)
        except DatastoreError as exc:
            raise ProfileSyncError("Profile synced but grant snapshot not stored", transaction_id=grant.transaction_id) from exc

    def _already_applied(self, transaction_id: str) -> Optional[EntitlementResult]:
        grant = self.store.find_one(EntitlementGrant, transaction_id=transaction_id)
        if grant is not None:
            # an unfinished claim is settled by _claim
            return self._replay(grant) if grant.applied else None
        subscription = self.store.find_one(Subscription, transaction_id=transaction_id)
        if subscription is not None:
            profile = self.store.find_one(UserProfile, user_id=subscription.user_id)
            return EntitlementResult(
                already_processed=True,
                transaction_id=transaction_id,
                new_expire_at=subscription.current_period_end,
                new_credits=profile.credits if profile else 0,
                subscription_tier=profile.subscription_tier if profile else None,
            )
        return None

    def _resolve_user(self, user_ref: str) -> UserProfile:
        profile = self.store.get_user(user_ref)
        if profile is not None:
            return profile
        if not user_ref or "@" in user_ref:
            raise NotFound("User not found", user_ref=user_ref)
        # first purchase of a user the auth service already knows
        return UserProfile(user_id=user_ref)

    def _upsert_subscription(self, user_id: str, request: EntitlementRequest) -> Optional[datetime]:
        now = self.clock()
        current = self.store.find_one(Subscription, user_id=user_id, plan_id=request.plan_id)
        if current is not None and current.transaction_id == request.transaction_id:
            # extended by an earlier attempt of this transaction that died before finishing
            return current.current_period_end

        if request.provider == PaymentMethod.APPLE.value:
            # the store owns the expiry; it is read live by the status oracle
            new_expiry = None
        else:
            days = request.days or cycle_days(request.billing_cycle)
            new_expiry = extend_expiry(current.current_period_end if current else None, now, days)

        if current is None:
            subscription = Subscription(
                user_id=user_id,
                plan_id=request.plan_id,
                current_period_start=now,
                current_period_end=new_expiry,
                provider=request.provider,
                provider_subscription_id=request.subscription_ref or request.transaction_id,
                transaction_id=request.transaction_id,
                created_at=now,
                updated_at=now,
            )
        else:
            lapsed = current.current_period_end is not None and current.current_period_end <= now
            subscription = current.model_copy(
                update={
                    "status": SubscriptionStatus.ACTIVE.value,
                    "current_period_start": now if lapsed else current.current_period_start,
                    "current_period_end": new_expiry,
                    "cancel_at_period_end": False,
                    "provider": request.provider,
                    "provider_subscription_id": request.subscription_ref or request.transaction_id,
                    "transaction_id": request.transaction_id,
                    "updated_at": now,
                }
            )
        self.store.upsert(subscription)
        return new_expiry

    def sync_profile(self, user_id: str, email: Optional[str] = None) -> UserProfile:
        """Rebuild the cached profile from subscriptions and the credit ledger."""
        try:
            now = self.clock()
            active = [
                s
                for s in self.store.find_all(Subscription, user_id=user_id)
                if s.status == SubscriptionStatus.ACTIVE.value
                and (s.current_period_end is None or s.current_period_end > now)
            ]
            best = max(active, key=lambda s: TIER_RANK.get(s.plan_id, 0), default=None)
            balance = sum(t.amount for t in self.store.find_all(CreditTransaction, user_id=user_id))
            existing = self.store.find_one(UserProfile, user_id=user_id)
            profile = UserProfile(
                user_id=user_id,
                email=(existing.email if existing else None) or email,
                pro=best is not None,
                subscription_tier=get_plan(best.plan_id).tier if best else None,
                membership_expires_at=best.current_period_end if best else None,
                credits=balance,
                updated_at=now,
            )
            return self.store.upsert(profile)
        except DatastoreError as exc:
            logger.error("profile sync failed", extra={"user_id": user_id})
            raise ProfileSyncError("Entitlement granted but profile sync failed", user_id=user_id) from exc
