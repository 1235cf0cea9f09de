"""In-app subscription status, read from the App Store.

No expiry is stored for App Store subscriptions. Each status call asks Apple
first. The answer Apple signed is kept on the subscription as
``last_verified`` and is only read back, labelled ``source: cached``, when
Apple cannot be reached.
"""
import logging
import math
from datetime import datetime
from typing import Callable, Optional

from billing.datastore import Datastore
from billing.entitlements import EntitlementApplier
from billing.errors import NotFound, ProviderUnavailable
from billing.providers.apple_provider import AppleProvider
from billing.providers.base import Confirmation
from billing.schemas import PaymentMethod, Subscription, SubscriptionStatus, utcnow

logger = logging.getLogger(__name__)

LAPSE_NOTIFICATIONS = ("EXPIRED", "GRACE_PERIOD_EXPIRED", "REFUND", "REVOKE")


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class AppleStatusOracle:
    def __init__(
        self,
        store: Datastore,
        provider: Optional[AppleProvider],
        applier: EntitlementApplier,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.provider = provider
        self.applier = applier
        self.clock = clock

    def subscription_for(self, user_id: str) -> Subscription:
        subscriptions = self.store.find_all(Subscription, user_id=user_id, provider=PaymentMethod.APPLE.value)
        if not subscriptions:
            raise NotFound("No in-app subscription", user_id=user_id)
        return max(subscriptions, key=lambda s: s.updated_at)

    def get_status(self, user_id: str) -> dict:
        subscription = self.subscription_for(user_id)
        reference = subscription.provider_subscription_id or subscription.transaction_id
        try:
            if self.provider is None:
                raise ProviderUnavailable("App Store client not configured")
            confirmation = self.provider.subscription_status(reference)
        except ProviderUnavailable as exc:
            logger.warning(
                "app store unreachable, serving last verified status",
                extra={"user_id": user_id, "transaction_id": reference, "reason": exc.message},
            )
            return self._cached(subscription)

        snapshot = self.remember(subscription, confirmation)
        return self._render(snapshot, source="live")

    def remember(self, subscription: Subscription, confirmation: Confirmation) -> dict:
        """Store what Apple reported and mirror its active flag onto the subscription."""
        now = self.clock()
        snapshot = {
            "expiresAt": confirmation.expires_at.isoformat() if confirmation.expires_at else None,
            "autoRenewStatus": confirmation.auto_renew,
            "active": confirmation.completed,
            "productId": confirmation.metadata.get("productId"),
            "verifiedAt": now.isoformat(),
        }
        status = SubscriptionStatus.ACTIVE.value if confirmation.completed else SubscriptionStatus.EXPIRED.value
        self.store.update_where(
            Subscription,
            subscription.key(),
            {},
            {"last_verified": snapshot, "status": status, "updated_at": now},
        )
        if status != subscription.status:
            logger.info(
                "app store subscription state changed",
                extra={"user_id": subscription.user_id, "plan_id": subscription.plan_id, "status": status},
            )
            self.applier.sync_profile(subscription.user_id)
        return snapshot

    def record_notification(self, user_id: str, confirmation: Confirmation) -> Optional[Subscription]:
        """Apply a signed lapse notification (expiry, refund, revocation)."""
        try:
            subscription = self.subscription_for(user_id)
        except NotFound:
            logger.info("lapse notification for unknown subscription", extra={"user_id": user_id})
            return None
        confirmation.completed = False
        self.remember(subscription, confirmation)
        return subscription

    def _cached(self, subscription: Subscription) -> dict:
        if not subscription.last_verified:
            raise ProviderUnavailable("App Store unavailable and no verified status on record")
        return self._render(subscription.last_verified, source="cached")

    def _render(self, snapshot: dict, source: str) -> dict:
        now = self.clock()
        expires_at = _parse(snapshot.get("expiresAt"))
        expired = not snapshot.get("active") or expires_at is None or expires_at <= now
        days_left = 0 if expired else math.ceil((expires_at - now).total_seconds() / 86400)
        return {
            "success": True,
            "expiresAt": snapshot.get("expiresAt"),
            "autoRenewStatus": snapshot.get("autoRenewStatus"),
            "daysLeft": days_left,
            "isExpired": expired,
            "source": source,
            "verifiedAt": snapshot.get("verifiedAt"),
        }
