"""App Store Server API client.

Apple is the source of truth for in-app subscription dates; nothing here
computes an expiry, it only reports what the store signed.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from jose import jwt

from billing.errors import InvalidRequest, NotFound, ProviderUnavailable
from billing.providers.base import CheckoutOrder, Confirmation, CreatedPayment, ProviderAdapter, to_amount
from billing.schemas import PaymentMethod
from billing.signatures import decode_apple_jws

logger = logging.getLogger(__name__)

PRODUCTION_URL = "https://api.storekit.itunes.apple.com"
SANDBOX_URL = "https://api.storekit-sandbox.itunes.apple.com"

# subscription status codes from /inApps/v1/subscriptions
ACTIVE_STATUSES = (1, 4)  # active, billing grace period


def from_millis(value) -> Optional[datetime]:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc) if value else None


class AppleProvider(ProviderAdapter):
    method = PaymentMethod.APPLE

    @property
    def base_url(self) -> str:
        return PRODUCTION_URL if self.settings.apple_environment.lower() == "production" else SANDBOX_URL

    def bearer_token(self) -> str:
        self.settings.require("apple_issuer_id", "apple_key_id", "apple_private_key", "apple_bundle_id")
        now = int(time.time())
        return jwt.encode(
            {
                "iss": self.settings.apple_issuer_id,
                "iat": now,
                "exp": now + 1200,
                "aud": "appstoreconnect-v1",
                "bid": self.settings.apple_bundle_id,
            },
            self.settings.apple_private_key,
            algorithm="ES256",
            headers={"kid": self.settings.apple_key_id, "typ": "JWT"},
        )

    def _get(self, path: str) -> dict:
        response = self.send("GET", f"{self.base_url}{path}", headers={"Authorization": f"Bearer {self.bearer_token()}"})
        if response.status_code == 404:
            raise NotFound("Unknown App Store transaction")
        if response.status_code == 401:
            raise ProviderUnavailable("App Store rejected our credentials")
        if response.status_code >= 400:
            raise InvalidRequest("App Store request rejected", body=response.text[:200])
        return response.json()

    def decode(self, signed: str) -> dict:
        return decode_apple_jws(signed, self.settings.apple_root_cert)

    def create(self, order: CheckoutOrder) -> CreatedPayment:
        raise InvalidRequest("In-app purchases are started on the device")

    def query(self, reference: str) -> Confirmation:
        data = self._get(f"/inApps/v1/transactions/{reference}")
        return self.transaction_confirmation(self.decode(data["signedTransactionInfo"]))

    def transaction_confirmation(self, info: dict) -> Confirmation:
        revoked = bool(info.get("revocationDate"))
        bundle_ok = info.get("bundleId") == self.settings.apple_bundle_id
        price = info.get("price")
        return Confirmation(
            completed=bundle_ok and not revoked,
            state="REVOKED" if revoked else ("VALID" if bundle_ok else "BUNDLE_MISMATCH"),
            provider_txn_id=info.get("transactionId"),
            order_ref=info.get("originalTransactionId"),
            amount=price / 1000 if isinstance(price, int) else to_amount(price),
            currency=info.get("currency"),
            expires_at=from_millis(info.get("expiresDate")),
            metadata={
                "productId": info.get("productId"),
                "originalTransactionId": info.get("originalTransactionId"),
                "appAccountToken": info.get("appAccountToken"),
            },
            raw=info,
        )

    def subscription_status(self, transaction_id: str) -> Confirmation:
        """Latest signed state of the subscription group the transaction belongs to."""
        data = self._get(f"/inApps/v1/subscriptions/{transaction_id}")
        latest = None
        for group in data.get("data", []):
            for item in group.get("lastTransactions", []):
                info = self.decode(item["signedTransactionInfo"])
                renewal = self.decode(item["signedRenewalInfo"]) if item.get("signedRenewalInfo") else {}
                if latest is None or (info.get("expiresDate") or 0) > (latest[1].get("expiresDate") or 0):
                    latest = (item.get("status"), info, renewal)
        if latest is None:
            raise NotFound("No App Store subscription for transaction")
        status, info, renewal = latest
        confirmation = self.transaction_confirmation(info)
        confirmation.completed = confirmation.completed and status in ACTIVE_STATUSES
        confirmation.auto_renew = renewal.get("autoRenewStatus") == 1
        return confirmation
