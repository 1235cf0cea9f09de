import json
import logging
import secrets
import time
from typing import Optional
from urllib.parse import quote, urlencode

from billing.errors import InvalidRequest, ProviderUnavailable
from billing.providers.base import CheckoutOrder, Confirmation, CreatedPayment, ProviderAdapter
from billing.schemas import PaymentMethod
from billing.signatures import decrypt_wechat_resource, rsa_sha256_sign, verify_wechat

logger = logging.getLogger(__name__)

API_URL = "https://api.mch.weixin.qq.com"

# trade states after which the order can never be paid
CLOSED_STATES = ("CLOSED", "REVOKED", "PAYERROR", "REFUND")


class WeChatPayProvider(ProviderAdapter):
    method = PaymentMethod.WECHAT

    def authorization(self, method: str, path: str, body: str, timestamp: Optional[str] = None, nonce: Optional[str] = None) -> str:
        self.settings.require("wechat_mch_id", "wechat_serial_no", "wechat_private_key")
        timestamp = timestamp or str(int(time.time()))
        nonce = nonce or secrets.token_hex(16)
        message = f"{method}\n{path}\n{timestamp}\n{nonce}\n{body}\n".encode("utf-8")
        signature = rsa_sha256_sign(message, self.settings.wechat_private_key)
        return (
            f'WECHATPAY2-SHA256-RSA2048 mchid="{self.settings.wechat_mch_id}",nonce_str="{nonce}",'
            f'signature="{signature}",timestamp="{timestamp}",serial_no="{self.settings.wechat_serial_no}"'
        )

    def _api(self, method: str, path: str, body: Optional[dict] = None):
        payload = json.dumps(body, separators=(",", ":"), ensure_ascii=False) if body is not None else ""
        headers = {
            "Accept": "application/json",
            "Authorization": self.authorization(method, path, payload),
        }
        if body is not None:
            headers["Content-Type"] = "application/json"
        return self.send(method, f"{API_URL}{path}", headers=headers, content=payload.encode("utf-8") or None)

    def verify_notification(self, body: bytes, headers) -> bool:
        self.settings.require("wechat_platform_public_key")
        return verify_wechat(
            body,
            headers.get("wechatpay-timestamp"),
            headers.get("wechatpay-nonce"),
            headers.get("wechatpay-signature"),
            self.settings.wechat_platform_public_key,
        )

    def decrypt(self, resource: dict) -> dict:
        self.settings.require("wechat_api_v3_key")
        return decrypt_wechat_resource(resource, self.settings.wechat_api_v3_key)

    def create(self, order: CheckoutOrder) -> CreatedPayment:
        self.settings.require("wechat_app_id")
        response = self._api(
            "POST",
            "/v3/pay/transactions/native",
            {
                "appid": self.settings.wechat_app_id,
                "mchid": self.settings.wechat_mch_id,
                "description": order.description,
                "out_trade_no": order.order_id,
                "notify_url": f"{self.settings.public_base_url}/webhooks/wechat",
                "amount": {"total": int(round(order.amount * 100)), "currency": "CNY"},
            },
        )
        if response.status_code >= 400:
            raise InvalidRequest("WeChat order creation failed", body=response.text[:200])
        data = response.json()
        return CreatedPayment(provider_ref=order.order_id, qr_payload=data.get("code_url"), raw=data)

    def query(self, reference: str) -> Confirmation:
        path = f"/v3/pay/transactions/out-trade-no/{quote(reference, safe='')}?{urlencode({'mchid': self.settings.wechat_mch_id or ''})}"
        response = self._api("GET", path)
        if response.status_code == 404:
            return Confirmation(completed=False, state="NOTPAY", order_ref=reference)
        if response.status_code >= 400:
            raise ProviderUnavailable(f"WeChat query failed: {response.status_code}")
        return self.transaction_confirmation(response.json(), reference)

    @staticmethod
    def transaction_confirmation(data: dict, reference: Optional[str] = None) -> Confirmation:
        state = data.get("trade_state") or "UNKNOWN"
        total = (data.get("amount") or {}).get("total")
        return Confirmation(
            completed=state == "SUCCESS",
            state=state,
            provider_txn_id=data.get("transaction_id"),
            order_ref=data.get("out_trade_no") or reference,
            amount=total / 100 if total is not None else None,
            currency=(data.get("amount") or {}).get("currency") or "CNY",
            raw=data,
        )
