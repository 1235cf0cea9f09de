"""Provider webhook endpoints.

Each endpoint authenticates the raw body, turns it into an ``InboundEvent``
and hands it to the ledger with the action to run. The answer uses the
token each provider expects; anything other than success makes the provider
redeliver.
"""
import json
import logging
from typing import Callable, Optional, Tuple
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from jose import jws
from jose.exceptions import JOSEError

from billing.auth import get_services
from billing.errors import BillingError, RegionMismatch, VerificationError
from billing.ledger import DUPLICATE, IGNORED, Action, InboundEvent
from billing.oracle import LAPSE_NOTIFICATIONS
from billing.providers.alipay_provider import AlipayProvider
from billing.providers.base import Confirmation
from billing.providers.paypal_provider import PayPalProvider
from billing.providers.stripe_provider import StripeProvider
from billing.providers.wechat_provider import WeChatPayProvider
from billing.schemas import PaymentMethod
from billing.signatures import verify_stripe

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks")

STRIPE_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
PAYPAL_CAPTURE_EVENTS = ("PAYMENT.CAPTURE.COMPLETED",)
PAYPAL_ORDER_EVENTS = ("CHECKOUT.ORDER.APPROVED", "CHECKOUT.ORDER.COMPLETED")
WECHAT_EVENTS = ("TRANSACTION.SUCCESS",)
APPLE_PURCHASE_NOTIFICATIONS = ("SUBSCRIBED", "DID_RENEW", "ONE_TIME_CHARGE")

Authenticate = Callable[[], Tuple[InboundEvent, Optional[Action]]]


async def raw_body(request: Request) -> bytes:
    return await request.body()


def _json(body: bytes) -> dict:
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise VerificationError("Invalid payload") from exc
    if not isinstance(data, dict):
        raise VerificationError("Invalid payload")
    return data


def _settle(services, method: str, confirmation: Confirmation) -> Action:
    def action():
        if not confirmation.completed:
            logger.info("payment event not paid yet", extra={"provider": method, "state": confirmation.state})
            return None
        return services.resolver.settle_event(method, confirmation)

    return action


def _authenticated(authenticate: Authenticate) -> Tuple[InboundEvent, Optional[Action]]:
    try:
        return authenticate()
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise VerificationError("Malformed webhook payload") from exc


def _deliver(services, provider: str, body: bytes, authenticate: Authenticate, ok, fail):
    try:
        if not services.settings.provider_enabled(provider):
            raise RegionMismatch(f"{provider} webhooks are not accepted in {services.settings.region}")
        event, action = _authenticated(authenticate)
    except BillingError as exc:
        services.ledger.record_rejected(provider, exc.message, {"body": body.decode("utf-8", "replace")[:2000]})
        logger.warning("webhook rejected: %s", exc.message, extra={"provider": provider})
        return fail(exc)

    try:
        outcome = services.ledger.process(event, action)
    except BillingError as exc:
        return fail(exc)
    return ok(outcome)


def _json_ok(outcome: str):
    if outcome == DUPLICATE:
        return {"status": "success", "alreadyProcessed": True}
    return {"status": "ignored" if outcome == IGNORED else "success"}


def _json_fail(exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content={"status": "failed", "error": exc.message})


@router.post("/stripe")
def stripe_webhook(
    body: bytes = Depends(raw_body),
    stripe_signature: Optional[str] = Header(None),
    services=Depends(get_services),
):
    def authenticate():
        settings = services.settings
        data = _json(body) if settings.verification_bypassed else verify_stripe(body, stripe_signature, settings.stripe_webhook_secrets)
        session = (data.get("data") or {}).get("object") or {}
        event = InboundEvent(
            provider=PaymentMethod.STRIPE.value,
            event_id=data.get("id") or "",
            event_type=data.get("type") or "",
            payload=data,
            transaction_id=session.get("id"),
        )
        if not event.event_id:
            raise VerificationError("Missing event id")
        if event.event_type not in STRIPE_EVENTS:
            return event, None
        return event, _settle(services, PaymentMethod.STRIPE.value, StripeProvider.session_confirmation(session))

    return _deliver(services, PaymentMethod.STRIPE.value, body, authenticate, _json_ok, _json_fail)


@router.post("/paypal")
def paypal_webhook(request: Request, body: bytes = Depends(raw_body), services=Depends(get_services)):
    def authenticate():
        adapter = services.resolver.adapter(PaymentMethod.PAYPAL.value)
        if not services.settings.verification_bypassed and not adapter.verify_webhook(body, request.headers):
            raise VerificationError("Invalid PayPal signature")
        data = _json(body)
        resource = data.get("resource") or {}
        event = InboundEvent(
            provider=PaymentMethod.PAYPAL.value,
            event_id=data.get("id") or "",
            event_type=data.get("event_type") or "",
            payload=data,
            transaction_id=resource.get("id"),
        )
        if not event.event_id:
            raise VerificationError("Missing event id")
        if event.event_type in PAYPAL_CAPTURE_EVENTS:
            return event, _settle(services, event.provider, PayPalProvider.capture_confirmation(resource))
        if event.event_type in PAYPAL_ORDER_EVENTS:
            # approval without a return to the site still needs a capture
            return event, lambda: services.resolver.settle_event(event.provider, adapter.confirm(resource["id"]))
        return event, None

    return _deliver(services, PaymentMethod.PAYPAL.value, body, authenticate, _json_ok, _json_fail)


@router.post("/alipay")
def alipay_webhook(body: bytes = Depends(raw_body), services=Depends(get_services)):
    def authenticate():
        adapter = services.resolver.adapter(PaymentMethod.ALIPAY.value)
        try:
            params = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError as exc:
            raise VerificationError("Alipay notification is not utf-8") from exc
        if not services.settings.verification_bypassed:
            if not adapter.verify_notification(params):
                raise VerificationError("Invalid Alipay signature")
            if params.get("app_id") != services.settings.alipay_app_id:
                raise VerificationError("Alipay app_id mismatch")
        confirmation = AlipayProvider.trade_confirmation(params)
        event = InboundEvent(
            provider=PaymentMethod.ALIPAY.value,
            event_id=params.get("notify_id") or f"{params.get('out_trade_no')}:{confirmation.state}",
            event_type=confirmation.state,
            payload=params,
            transaction_id=params.get("trade_no"),
        )
        if not confirmation.completed:
            return event, None
        return event, _settle(services, event.provider, confirmation)

    return _deliver(
        services,
        PaymentMethod.ALIPAY.value,
        body,
        authenticate,
        lambda outcome: PlainTextResponse("success"),
        lambda exc: PlainTextResponse("failure", status_code=exc.status_code),
    )


@router.post("/wechat")
def wechat_webhook(request: Request, body: bytes = Depends(raw_body), services=Depends(get_services)):
    def authenticate():
        adapter = services.resolver.adapter(PaymentMethod.WECHAT.value)
        if not services.settings.verification_bypassed and not adapter.verify_notification(body, request.headers):
            raise VerificationError("Invalid WeChat Pay signature")
        data = _json(body)
        transaction = adapter.decrypt(data.get("resource") or {})
        event = InboundEvent(
            provider=PaymentMethod.WECHAT.value,
            event_id=data.get("id") or "",
            event_type=data.get("event_type") or "",
            payload={**data, "resource": transaction},
            transaction_id=transaction.get("transaction_id"),
        )
        if not event.event_id:
            raise VerificationError("Missing event id")
        if event.event_type not in WECHAT_EVENTS:
            return event, None
        return event, _settle(services, event.provider, WeChatPayProvider.transaction_confirmation(transaction))

    return _deliver(
        services,
        PaymentMethod.WECHAT.value,
        body,
        authenticate,
        lambda outcome: {"code": "SUCCESS", "message": "OK"},
        lambda exc: JSONResponse(status_code=exc.status_code, content={"code": "FAIL", "message": exc.message}),
    )


def _unverified_claims(token: str) -> dict:
    try:
        return json.loads(jws.get_unverified_claims(token))
    except (JOSEError, ValueError) as exc:
        raise VerificationError("Invalid App Store payload") from exc


@router.post("/apple")
def apple_webhook(body: bytes = Depends(raw_body), services=Depends(get_services)):
    def authenticate():
        adapter = services.resolver.adapter(PaymentMethod.APPLE.value)
        decode = _unverified_claims if services.settings.verification_bypassed else adapter.decode
        signed = _json(body).get("signedPayload")
        if not signed:
            raise VerificationError("Missing signedPayload")
        notification = decode(signed)
        data = notification.get("data") or {}
        info = decode(data["signedTransactionInfo"]) if data.get("signedTransactionInfo") else {}
        if info and data.get("bundleId") not in (None, services.settings.apple_bundle_id):
            raise VerificationError("App Store bundle mismatch")
        event = InboundEvent(
            provider=PaymentMethod.APPLE.value,
            event_id=notification.get("notificationUUID") or "",
            event_type=notification.get("notificationType") or "",
            payload={"notification": notification, "transaction": info},
            transaction_id=info.get("transactionId"),
        )
        if not event.event_id:
            raise VerificationError("Missing notificationUUID")
        if not info:
            return event, None
        confirmation = adapter.transaction_confirmation(info)
        if event.event_type in APPLE_PURCHASE_NOTIFICATIONS:
            return event, lambda: services.resolver.apple_renewal(confirmation)
        if event.event_type in LAPSE_NOTIFICATIONS:
            return event, lambda: _apple_lapse(services, confirmation)
        return event, None

    return _deliver(services, PaymentMethod.APPLE.value, body, authenticate, _json_ok, _json_fail)


def _apple_lapse(services, confirmation: Confirmation):
    user_id = services.resolver.in_app_owner(confirmation)
    if not user_id:
        return None
    return services.oracle.record_notification(user_id, confirmation)
