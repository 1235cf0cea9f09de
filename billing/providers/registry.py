from typing import Dict

import httpx

from billing.config import Settings
from billing.providers.alipay_provider import AlipayProvider
from billing.providers.apple_provider import AppleProvider
from billing.providers.base import ProviderAdapter
from billing.providers.paypal_provider import PayPalProvider
from billing.providers.stripe_provider import StripeProvider
from billing.providers.wechat_provider import WeChatPayProvider

ADAPTERS = {
    "stripe": StripeProvider,
    "paypal": PayPalProvider,
    "alipay": AlipayProvider,
    "wechat": WeChatPayProvider,
    "apple": AppleProvider,
}


def build_providers(settings: Settings) -> Dict[str, ProviderAdapter]:
    """One adapter per provider enabled in the live region, sharing one HTTP pool."""
    http = httpx.Client(timeout=settings.provider_timeout)
    return {name: cls(settings, http=http) for name, cls in ADAPTERS.items() if settings.provider_enabled(name)}
