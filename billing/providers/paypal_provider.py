import logging
import time
from typing import Optional

from billing.errors import ConfigMissing, InvalidRequest, NotCompleted, NotFound
from billing.providers.base import CheckoutOrder, Confirmation, CreatedPayment, ProviderAdapter, to_amount
from billing.schemas import PaymentMethod
from billing.signatures import PayPalCertCache, verify_paypal

logger = logging.getLogger(__name__)

LIVE_URL = "https://api-m.paypal.com"
SANDBOX_URL = "https://api-m.sandbox.paypal.com"


class PayPalProvider(ProviderAdapter):
    method = PaymentMethod.PAYPAL

    def __init__(self, settings, http=None):
        super().__init__(settings, http)
        self.base_url = LIVE_URL if settings.paypal_mode in ("live", "production") else SANDBOX_URL
        self._token: Optional[str] = None
        self._token_expires = 0.0
        self.certs = PayPalCertCache(self._fetch_cert)

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires:
            return self._token
        self.settings.require("paypal_client_id", "paypal_client_secret")
        response = self.send(
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
            data={"grant_type": "client_credentials"},
        )
        if response.status_code in (400, 401):
            raise ConfigMissing("PAYPAL_CLIENT_ID/PAYPAL_CLIENT_SECRET")
        data = response.json()
        self._token = data["access_token"]
        self._token_expires = time.monotonic() + int(data.get("expires_in", 300)) - 60
        return self._token

    def _api(self, method: str, path: str, **kwargs):
        headers = {"Authorization": f"Bearer {self._access_token()}", "Content-Type": "application/json"}
        return self.send(method, f"{self.base_url}{path}", headers=headers, **kwargs)

    def _fetch_cert(self, url: str) -> bytes:
        return self.send("GET", url).content

    def verify_webhook(self, body: bytes, headers) -> bool:
        self.settings.require("paypal_webhook_id")
        return verify_paypal(body, headers, self.settings.paypal_webhook_id, self.certs)

    def create(self, order: CheckoutOrder) -> CreatedPayment:
        base = self.settings.public_base_url
        response = self._api(
            "POST",
            "/v2/checkout/orders",
            json={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "reference_id": order.order_id,
                        "custom_id": order.order_id,
                        "description": order.description,
                        "amount": {"currency_code": order.currency.upper(), "value": f"{order.amount:.2f}"},
                    }
                ],
                "application_context": {
                    "return_url": f"{base}/payment/success?provider=paypal",
                    "cancel_url": f"{base}/payment/cancel?provider=paypal",
                    "user_action": "PAY_NOW",
                },
            },
        )
        if response.status_code >= 400:
            raise InvalidRequest("PayPal order creation failed", body=response.text[:200])
        data = response.json()
        approve = next(
            (link["href"] for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return CreatedPayment(provider_ref=data["id"], redirect_url=approve, raw=data)

    def query(self, reference: str) -> Confirmation:
        response = self._api("GET", f"/v2/checkout/orders/{reference}")
        if response.status_code == 404:
            raise NotFound("PayPal order not found", order=reference)
        return self.order_confirmation(response.json(), reference)

    def capture(self, reference: str) -> Confirmation:
        response = self._api("POST", f"/v2/checkout/orders/{reference}/capture", json={})
        if response.status_code == 404:
            raise NotFound("PayPal order not found", order=reference)
        if response.status_code == 422 and "ORDER_ALREADY_CAPTURED" in response.text:
            logger.info("paypal order already captured, reading it back", extra={"order": reference})
            return self.query(reference)
        if response.status_code >= 400:
            raise NotCompleted("Payment not completed", provider="paypal", body=response.text[:200])
        return self.order_confirmation(response.json(), reference)

    def confirm(self, reference: str) -> Confirmation:
        confirmation = self.capture(reference)
        if not confirmation.completed:
            raise NotCompleted("Payment not completed", provider="paypal", state=confirmation.state)
        return confirmation

    @staticmethod
    def order_confirmation(order: dict, reference: str) -> Confirmation:
        status = (order.get("status") or "").upper()
        unit = (order.get("purchase_units") or [{}])[0]
        captures = (unit.get("payments") or {}).get("captures") or []
        capture = captures[0] if captures else None

        # amount: capture, then purchase unit, then processor response
        amount, currency = None, None
        if capture and capture.get("amount"):
            amount = to_amount(capture["amount"].get("value"))
            currency = capture["amount"].get("currency_code")
        elif unit.get("amount"):
            amount = to_amount(unit["amount"].get("value"))
            currency = unit["amount"].get("currency_code")
        else:
            verify = (((order.get("payment_source") or {}).get("paypal") or {}).get("processor_response") or {}).get(
                "verify_response"
            ) or {}
            amount = to_amount(verify.get("gross_amount"))
            currency = verify.get("currency_code")

        return Confirmation(
            completed=status == "COMPLETED",
            state=status or "UNKNOWN",
            provider_txn_id=capture["id"] if capture else None,
            order_ref=unit.get("custom_id") or unit.get("reference_id") or reference,
            amount=amount,
            currency=currency,
            raw=order,
        )

    @staticmethod
    def capture_confirmation(capture: dict) -> Confirmation:
        """PAYMENT.CAPTURE.* webhook resource."""
        status = (capture.get("status") or "").upper()
        related = (capture.get("supplementary_data") or {}).get("related_ids") or {}
        amount = capture.get("amount") or {}
        return Confirmation(
            completed=status == "COMPLETED",
            state=status or "UNKNOWN",
            provider_txn_id=capture.get("id"),
            order_ref=capture.get("custom_id") or related.get("order_id"),
            amount=to_amount(amount.get("value")),
            currency=amount.get("currency_code"),
            raw=capture,
        )
