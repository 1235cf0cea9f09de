import logging
from typing import Optional

import stripe

from billing.errors import ConfigMissing, InvalidRequest, NotFound, ProviderUnavailable
from billing.providers.base import CheckoutOrder, Confirmation, CreatedPayment, ProviderAdapter
from billing.schemas import PaymentMethod

logger = logging.getLogger(__name__)


class StripeProvider(ProviderAdapter):
    method = PaymentMethod.STRIPE

    def __init__(self, settings, client: Optional[stripe.StripeClient] = None, http=None):
        super().__init__(settings, http)
        self._client = client

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            self.settings.require("stripe_secret_key")
            self._client = stripe.StripeClient(
                self.settings.stripe_secret_key,
                http_client=stripe.RequestsClient(timeout=self.settings.provider_timeout),
                max_network_retries=1,
            )
        return self._client

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.AuthenticationError as exc:
            raise ConfigMissing("STRIPE_SECRET_KEY") from exc
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "http_status", None) == 404:
                raise NotFound("Checkout session not found") from exc
            raise InvalidRequest(exc.user_message or "Invalid Stripe request") from exc
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
            logger.warning("stripe unavailable: %s", exc)
            raise ProviderUnavailable("Stripe unavailable") from exc

    def create(self, order: CheckoutOrder) -> CreatedPayment:
        base = self.settings.public_base_url
        query = f"planId={order.plan_id or ''}&cycle={order.billing_cycle or ''}"
        session = self._call(
            self.client.checkout.sessions.create,
            params={
                "mode": "payment",
                "line_items": [
                    {
                        "quantity": 1,
                        "price_data": {
                            "currency": order.currency.lower(),
                            "unit_amount": int(round(order.amount * 100)),
                            "product_data": {"name": order.description},
                        },
                    }
                ],
                "customer_email": order.user_email,
                "client_reference_id": order.user_id,
                "success_url": f"{base}/payment/success?session_id={{CHECKOUT_SESSION_ID}}&{query}",
                "cancel_url": f"{base}/payment/cancel?{query}",
                "metadata": {
                    "orderId": order.order_id,
                    "planId": order.plan_id or "",
                    "billingCycle": order.billing_cycle or "",
                    "days": str(order.days or ""),
                    "credits": str(order.credits or ""),
                    "userId": order.user_id or "",
                    "userEmail": order.user_email or "",
                },
            },
            options={"idempotency_key": order.order_id if order.attempt == 1 else f"{order.order_id}:{order.attempt}"},
        )
        return CreatedPayment(provider_ref=session.id, redirect_url=session.url)

    def query(self, reference: str) -> Confirmation:
        session = self._call(self.client.checkout.sessions.retrieve, reference)
        return self.session_confirmation(session if isinstance(session, dict) else session.to_dict())

    @staticmethod
    def session_confirmation(session: dict) -> Confirmation:
        """Shared by the confirm call and the checkout.session webhooks."""
        get = session.get
        metadata = dict(get("metadata") or {})
        email = (get("customer_details") or {}).get("email") or get("customer_email")
        if email and not metadata.get("userEmail"):
            metadata["userEmail"] = email
        amount_total = get("amount_total")
        days = metadata.get("days")
        return Confirmation(
            completed=get("payment_status") == "paid",
            state=get("payment_status") or "unknown",
            provider_txn_id=get("id"),
            order_ref=metadata.get("orderId") or get("id"),
            amount=amount_total / 100 if amount_total is not None else None,
            currency=(get("currency") or "").upper() or None,
            days=int(days) if days and str(days).isdigit() else None,
            metadata=metadata,
        )
