import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

from billing.errors import ProviderUnavailable
from billing.providers.base import CheckoutOrder, Confirmation, CreatedPayment, ProviderAdapter, to_amount
from billing.schemas import PaymentMethod
from billing.signatures import alipay_sign, verify_alipay

logger = logging.getLogger(__name__)

SUCCESS_STATES = ("TRADE_SUCCESS", "TRADE_FINISHED")
CHINA_TZ = timezone(timedelta(hours=8))


class AlipayProvider(ProviderAdapter):
    method = PaymentMethod.ALIPAY

    def _signed(self, method: str, biz_content: dict, **extra) -> dict:
        self.settings.require("alipay_app_id", "alipay_private_key")
        params = {
            "app_id": self.settings.alipay_app_id,
            "method": method,
            "format": "JSON",
            "charset": "utf-8",
            "sign_type": "RSA2",
            "timestamp": datetime.now(CHINA_TZ).strftime("%Y-%m-%d %H:%M:%S"),
            "version": "1.0",
            "biz_content": json.dumps(biz_content, separators=(",", ":"), ensure_ascii=False),
            **extra,
        }
        params["sign"] = alipay_sign(params, self.settings.alipay_private_key)
        return params

    def verify_notification(self, params: dict) -> bool:
        self.settings.require("alipay_public_key")
        return verify_alipay(params, self.settings.alipay_public_key)

    def create(self, order: CheckoutOrder) -> CreatedPayment:
        base = self.settings.public_base_url
        params = self._signed(
            "alipay.trade.page.pay",
            {
                "out_trade_no": order.order_id,
                "total_amount": f"{order.amount:.2f}",
                "subject": order.description,
                "product_code": "FAST_INSTANT_TRADE_PAY",
            },
            return_url=f"{base}/payment/success?provider=alipay",
            notify_url=f"{base}/webhooks/alipay",
        )
        return CreatedPayment(
            provider_ref=order.order_id,
            redirect_url=f"{self.settings.alipay_gateway}?{urlencode(params)}",
        )

    def query(self, reference: str) -> Confirmation:
        params = self._signed("alipay.trade.query", {"out_trade_no": reference})
        response = self.send("POST", self.settings.alipay_gateway, data=params)
        try:
            body = response.json()["alipay_trade_query_response"]
        except (ValueError, KeyError) as exc:
            raise ProviderUnavailable("Unexpected Alipay response") from exc

        if body.get("code") != "10000":
            # ACQ.TRADE_NOT_EXIST until the buyer has scanned or paid
            state = body.get("sub_code") or body.get("code") or "UNKNOWN"
            logger.info("alipay trade not payable yet", extra={"out_trade_no": reference, "state": state})
            return Confirmation(completed=False, state=state, order_ref=reference, raw=body)

        return self.trade_confirmation(body, reference)

    @staticmethod
    def trade_confirmation(trade: dict, reference: Optional[str] = None) -> Confirmation:
        """Query responses and async notifications carry the same trade fields."""
        state = trade.get("trade_status") or "UNKNOWN"
        return Confirmation(
            completed=state in SUCCESS_STATES,
            state=state,
            provider_txn_id=trade.get("trade_no"),
            order_ref=trade.get("out_trade_no") or reference,
            amount=to_amount(trade.get("total_amount")),
            currency="CNY",
            raw=dict(trade),
        )
