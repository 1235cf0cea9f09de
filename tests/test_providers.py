import json
from urllib.parse import parse_qs

import httpx
import pytest
import stripe

from billing.errors import NotCompleted, NotFound, ProviderUnavailable
from billing.providers.alipay_provider import AlipayProvider
from billing.providers.apple_provider import AppleProvider
from billing.providers.base import CheckoutOrder
from billing.providers.paypal_provider import PayPalProvider
from billing.providers.stripe_provider import StripeProvider
from billing.providers.wechat_provider import WeChatPayProvider
from billing.signatures import verify_alipay
from conftest import mock_http


def order(**overrides):
    fields = dict(
        order_id="ord_1",
        amount=19.99,
        currency="USD",
        description="Pro monthly",
        user_id="user-1",
        user_email="buyer@example.com",
        plan_id="pro",
        billing_cycle="monthly",
        days=30,
    )
    fields.update(overrides)
    return CheckoutOrder(**fields)


def test_timeout_is_provider_unavailable(cn_settings):
    def slow(request):
        raise httpx.ReadTimeout("slow", request=request)

    provider = WeChatPayProvider(cn_settings, http=mock_http(slow))

    with pytest.raises(ProviderUnavailable):
        provider.query("wx_ord_1")


def test_server_error_is_provider_unavailable(cn_settings):
    provider = AlipayProvider(cn_settings, http=mock_http(lambda request: httpx.Response(502)))

    with pytest.raises(ProviderUnavailable):
        provider.query("alipay_ord_1")


# Stripe


def test_stripe_session_confirmation():
    confirmation = StripeProvider.session_confirmation(
        {
            "id": "cs_1",
            "payment_status": "paid",
            "amount_total": 1999,
            "currency": "usd",
            "customer_details": {"email": "buyer@example.com"},
            "metadata": {"orderId": "stripe_ord_1", "days": "30"},
        }
    )

    assert confirmation.completed
    assert confirmation.amount == 19.99
    assert confirmation.currency == "USD"
    assert confirmation.order_ref == "stripe_ord_1"
    assert confirmation.days == 30
    assert confirmation.metadata["userEmail"] == "buyer@example.com"


def test_stripe_connection_error(intl_settings, mocker):
    client = mocker.Mock()
    client.checkout.sessions.retrieve.side_effect = stripe.APIConnectionError("network down")
    provider = StripeProvider(intl_settings, client=client)

    with pytest.raises(ProviderUnavailable):
        provider.query("cs_1")


def test_stripe_unpaid_session_is_not_confirmed(intl_settings, mocker):
    client = mocker.Mock()
    client.checkout.sessions.retrieve.return_value = {"id": "cs_1", "payment_status": "unpaid", "metadata": {}}
    provider = StripeProvider(intl_settings, client=client)

    with pytest.raises(NotCompleted):
        provider.confirm("cs_1")


def test_stripe_create_passes_order_metadata(intl_settings, mocker):
    client = mocker.Mock()
    client.checkout.sessions.create.return_value = mocker.Mock(id="cs_new", url="https://checkout.stripe.com/c/cs_new")
    provider = StripeProvider(intl_settings, client=client)

    created = provider.create(order())

    assert created.provider_ref == "cs_new"
    params = client.checkout.sessions.create.call_args.kwargs["params"]
    assert params["metadata"]["orderId"] == "ord_1"
    assert params["line_items"][0]["price_data"]["unit_amount"] == 1999
    assert client.checkout.sessions.create.call_args.kwargs["options"] == {"idempotency_key": "ord_1"}


def test_stripe_renewed_session_gets_its_own_idempotency_key(intl_settings, mocker):
    client = mocker.Mock()
    client.checkout.sessions.create.return_value = mocker.Mock(id="cs_again", url="https://checkout.stripe.com/c/cs_again")

    StripeProvider(intl_settings, client=client).create(order(attempt=3))

    assert client.checkout.sessions.create.call_args.kwargs["options"] == {"idempotency_key": "ord_1:3"}


# PayPal


def paypal_api(routes):
    def handler(request):
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 3600})
        assert request.headers["Authorization"] == "Bearer A21"
        status, body = routes[(request.method, request.url.path)]
        return httpx.Response(status, json=body)

    return handler


def completed_order(**unit):
    return {"id": "PAYPAL-ORDER-1", "status": "COMPLETED", "purchase_units": [{"custom_id": "paypal_ord_1", **unit}]}


def test_paypal_capture(intl_settings):
    body = completed_order(
        payments={"captures": [{"id": "CAPTURE-1", "amount": {"value": "19.99", "currency_code": "USD"}}]}
    )
    provider = PayPalProvider(
        intl_settings, http=mock_http(paypal_api({("POST", "/v2/checkout/orders/PAYPAL-ORDER-1/capture"): (201, body)}))
    )

    confirmation = provider.confirm("PAYPAL-ORDER-1")

    assert confirmation.provider_txn_id == "CAPTURE-1"
    assert confirmation.order_ref == "paypal_ord_1"
    assert confirmation.amount == 19.99


def test_paypal_already_captured_reads_order_back(intl_settings):
    routes = {
        ("POST", "/v2/checkout/orders/PAYPAL-ORDER-1/capture"): (
            422,
            {"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_ALREADY_CAPTURED"}]},
        ),
        ("GET", "/v2/checkout/orders/PAYPAL-ORDER-1"): (
            200,
            completed_order(amount={"value": "199.99", "currency_code": "USD"}),
        ),
    }
    provider = PayPalProvider(intl_settings, http=mock_http(paypal_api(routes)))

    confirmation = provider.confirm("PAYPAL-ORDER-1")

    assert confirmation.completed
    assert confirmation.amount == 199.99


def test_paypal_amount_from_processor_response():
    confirmation = PayPalProvider.order_confirmation(
        {
            "status": "COMPLETED",
            "purchase_units": [{}],
            "payment_source": {
                "paypal": {"processor_response": {"verify_response": {"gross_amount": "9.99", "currency_code": "USD"}}}
            },
        },
        "PAYPAL-ORDER-2",
    )

    assert confirmation.amount == 9.99
    assert confirmation.order_ref == "PAYPAL-ORDER-2"


def test_paypal_declined_capture(intl_settings):
    routes = {("POST", "/v2/checkout/orders/PAYPAL-ORDER-1/capture"): (422, {"details": [{"issue": "INSTRUMENT_DECLINED"}]})}
    provider = PayPalProvider(intl_settings, http=mock_http(paypal_api(routes)))

    with pytest.raises(NotCompleted):
        provider.confirm("PAYPAL-ORDER-1")


def test_paypal_token_is_reused(intl_settings):
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return paypal_api({("GET", "/v2/checkout/orders/X"): (200, completed_order())})(request)

    provider = PayPalProvider(intl_settings, http=mock_http(handler))
    provider.query("X")
    provider.query("X")

    assert calls.count("/v1/oauth2/token") == 1


# Alipay


def test_alipay_query_success(cn_settings, rsa_keys):
    seen = {}

    def handler(request):
        params = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        seen.update(params)
        return httpx.Response(
            200,
            json={
                "alipay_trade_query_response": {
                    "code": "10000",
                    "out_trade_no": "alipay_ord_1",
                    "trade_no": "2026030122001",
                    "trade_status": "TRADE_SUCCESS",
                    "total_amount": "199.99",
                }
            },
        )

    confirmation = AlipayProvider(cn_settings, http=mock_http(handler)).confirm("alipay_ord_1")

    assert confirmation.provider_txn_id == "2026030122001"
    assert confirmation.amount == 199.99
    assert seen["method"] == "alipay.trade.query"
    assert verify_alipay(seen, rsa_keys.public_pem)


def test_alipay_trade_not_found_is_not_completed(cn_settings):
    body = {"alipay_trade_query_response": {"code": "40004", "sub_code": "ACQ.TRADE_NOT_EXIST"}}
    provider = AlipayProvider(cn_settings, http=mock_http(lambda request: httpx.Response(200, json=body)))

    confirmation = provider.query("alipay_ord_1")

    assert not confirmation.completed
    assert confirmation.state == "ACQ.TRADE_NOT_EXIST"


def test_alipay_page_pay_url_is_signed(cn_settings, rsa_keys):
    created = AlipayProvider(cn_settings, http=mock_http(lambda request: httpx.Response(500))).create(
        order(order_id="alipay_ord_1", currency="CNY")
    )

    params = {k: v[0] for k, v in parse_qs(created.redirect_url.split("?", 1)[1]).items()}
    assert created.provider_ref == "alipay_ord_1"
    assert json.loads(params["biz_content"])["total_amount"] == "19.99"
    assert verify_alipay(params, rsa_keys.public_pem)


# WeChat Pay


def test_wechat_unknown_order_is_notpay(cn_settings):
    provider = WeChatPayProvider(cn_settings, http=mock_http(lambda request: httpx.Response(404, json={"code": "ORDER_NOT_EXIST"})))

    confirmation = provider.query("wx_ord_1")

    assert not confirmation.completed
    assert confirmation.state == "NOTPAY"


def test_wechat_native_order(cn_settings):
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"code_url": "weixin://wxpay/bizpayurl?pr=abc"})

    created = WeChatPayProvider(cn_settings, http=mock_http(handler)).create(order(order_id="wx_ord_1", currency="CNY"))

    assert created.qr_payload == "weixin://wxpay/bizpayurl?pr=abc"
    assert seen["body"]["amount"] == {"total": 1999, "currency": "CNY"}
    assert seen["auth"].startswith('WECHATPAY2-SHA256-RSA2048 mchid="1900000109"')
    assert 'serial_no="SERIAL123"' in seen["auth"]


# App Store


def test_apple_transaction_lookup(intl_settings, apple_chain):
    info = {
        "transactionId": "2000000100",
        "originalTransactionId": "1000000001",
        "bundleId": "com.morntool.app",
        "productId": "com.morntool.pro.monthly",
        "price": 19990,
        "currency": "USD",
        "expiresDate": 1775044800000,
    }

    def handler(request):
        assert request.url.host == "api.storekit-sandbox.itunes.apple.com"
        return httpx.Response(200, json={"signedTransactionInfo": apple_chain.sign(info)})

    confirmation = AppleProvider(intl_settings, http=mock_http(handler)).query("2000000100")

    assert confirmation.completed
    assert confirmation.amount == 19.99
    assert confirmation.order_ref == "1000000001"
    assert confirmation.metadata["productId"] == "com.morntool.pro.monthly"


def test_apple_other_bundle_is_not_completed(intl_settings):
    confirmation = AppleProvider(intl_settings).transaction_confirmation({"transactionId": "1", "bundleId": "com.other"})

    assert not confirmation.completed
    assert confirmation.state == "BUNDLE_MISMATCH"


def test_apple_unknown_transaction(intl_settings):
    provider = AppleProvider(intl_settings, http=mock_http(lambda request: httpx.Response(404)))

    with pytest.raises(NotFound):
        provider.query("missing")
