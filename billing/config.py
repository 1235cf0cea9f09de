import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from billing.errors import ConfigMissing

BASE_DIR = Path(__file__).resolve().parent.parent

INTL = "INTL"
CN = "CN"

REGION_PROVIDERS = {
    INTL: {"stripe", "paypal", "apple"},
    CN: {"wechat", "alipay", "apple"},
}


def _pem(raw: Optional[str]) -> str:
    # .env files usually carry PEM blocks with literal "\n"
    return (raw or "").strip().replace("\\n", "\n")


def _secrets(raw: Optional[str]) -> List[str]:
    return [s.strip() for s in (raw or "").replace("\n", ",").split(",") if s.strip()]


class Settings(BaseModel):
    environment: str = "production"
    region: str = INTL
    database_url: Optional[str] = None
    firebase_credentials: Optional[str] = None
    firebase_project_id: Optional[str] = None
    jwt_secret: Optional[str] = None
    public_base_url: str = "http://localhost:8000"
    provider_timeout: float = 10.0
    skip_signature_verification: bool = False
    log_level: str = "INFO"
    log_format: str = "json"

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secrets: List[str] = []

    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_webhook_id: Optional[str] = None
    paypal_mode: str = "sandbox"

    alipay_app_id: Optional[str] = None
    alipay_private_key: Optional[str] = None
    alipay_public_key: Optional[str] = None
    alipay_gateway: str = "https://openapi.alipay.com/gateway.do"

    wechat_mch_id: Optional[str] = None
    wechat_app_id: Optional[str] = None
    wechat_serial_no: Optional[str] = None
    wechat_private_key: Optional[str] = None
    wechat_platform_public_key: Optional[str] = None
    wechat_api_v3_key: Optional[str] = None

    apple_issuer_id: Optional[str] = None
    apple_key_id: Optional[str] = None
    apple_private_key: Optional[str] = None
    apple_bundle_id: Optional[str] = None
    apple_root_cert: Optional[str] = None
    apple_environment: str = "Sandbox"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        load_dotenv(dotenv_path=env_file or BASE_DIR / ".env")
        return cls(
            environment=os.getenv("ENVIRONMENT", "production"),
            region=os.getenv("DEPLOYMENT_REGION", INTL).strip().upper(),
            database_url=os.getenv("DATABASE_URL"),
            firebase_credentials=os.getenv("FIREBASE_CREDENTIALS"),
            firebase_project_id=os.getenv("FIREBASE_PROJECT_ID"),
            jwt_secret=os.getenv("JWT_SECRET"),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/"),
            provider_timeout=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10")),
            skip_signature_verification=os.getenv("SKIP_SIGNATURE_VERIFICATION", "false").lower() == "true",
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_webhook_secrets=_secrets(os.getenv("STRIPE_WEBHOOK_SECRET")),
            paypal_client_id=os.getenv("PAYPAL_CLIENT_ID"),
            paypal_client_secret=os.getenv("PAYPAL_CLIENT_SECRET"),
            paypal_webhook_id=os.getenv("PAYPAL_WEBHOOK_ID"),
            paypal_mode=os.getenv("PAYPAL_MODE", "sandbox"),
            alipay_app_id=os.getenv("ALIPAY_APP_ID"),
            alipay_private_key=_pem(os.getenv("ALIPAY_PRIVATE_KEY")) or None,
            alipay_public_key=_pem(os.getenv("ALIPAY_PUBLIC_KEY")) or None,
            alipay_gateway=os.getenv("ALIPAY_GATEWAY", "https://openapi.alipay.com/gateway.do"),
            wechat_mch_id=os.getenv("WECHAT_PAY_MCH_ID"),
            wechat_app_id=os.getenv("WECHAT_PAY_APP_ID") or os.getenv("WECHAT_APP_ID"),
            wechat_serial_no=os.getenv("WECHAT_PAY_SERIAL_NO"),
            wechat_private_key=_pem(os.getenv("WECHAT_PAY_PRIVATE_KEY")) or None,
            wechat_platform_public_key=_pem(os.getenv("WECHAT_PAY_PLATFORM_PUBLIC_KEY")) or None,
            wechat_api_v3_key=os.getenv("WECHAT_PAY_API_V3_KEY"),
            apple_issuer_id=os.getenv("APPLE_ISSUER_ID"),
            apple_key_id=os.getenv("APPLE_KEY_ID"),
            apple_private_key=_pem(os.getenv("APPLE_PRIVATE_KEY")) or None,
            apple_bundle_id=os.getenv("APPLE_BUNDLE_ID"),
            apple_root_cert=_pem(os.getenv("APPLE_ROOT_CERT")) or None,
            apple_environment=os.getenv("APPLE_ENVIRONMENT", "Sandbox"),
        )

    @property
    def verification_bypassed(self) -> bool:
        """The bypass flag only counts in local development."""
        return self.skip_signature_verification and self.environment == "development"

    def provider_enabled(self, provider: str) -> bool:
        return provider in REGION_PROVIDERS.get(self.region, set())

    def require(self, *names: str) -> None:
        missing = [n for n in names if not getattr(self, n)]
        if missing:
            raise ConfigMissing(", ".join(n.upper() for n in missing))

    def validate_region(self) -> None:
        if self.region not in REGION_PROVIDERS:
            raise ConfigMissing(f"DEPLOYMENT_REGION must be one of {sorted(REGION_PROVIDERS)}, got {self.region!r}")
        if self.region == INTL:
            self.require("database_url")
        else:
            self.require("firebase_project_id")
