"""Domain records shared by both regional datastores.

Each record names its collection and its natural key; the datastore
adapters use the key for lookups, document ids and uniqueness.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class PaymentMethod(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    ALIPAY = "alipay"
    WECHAT = "wechat"
    APPLE = "apple"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class EventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    IGNORED = "ignored"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"


class CreditType(str, Enum):
    PURCHASE = "purchase"
    CONSUME = "consume"
    ADJUSTMENT = "adjustment"


class Record(BaseModel):
    model_config = ConfigDict(use_enum_values=True, from_attributes=True, validate_default=True)

    __collection__: ClassVar[str] = ""
    __key__: ClassVar[Tuple[str, ...]] = ()

    @field_validator("*", mode="after")
    @classmethod
    def _aware(cls, value: Any) -> Any:
        # SQLite hands back naive datetimes
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def key(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.__key__}

    @classmethod
    def document_id(cls, **key: Any) -> str:
        return ":".join(str(key[name]) for name in cls.__key__)


class PaymentRecord(Record):
    __collection__ = "payments"
    __key__ = ("order_id",)

    id: str = Field(default_factory=new_id)
    order_id: str
    region: str
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    plan_id: Optional[str] = None
    billing_cycle: Optional[BillingCycle] = None
    duration_days: Optional[int] = None
    credits: int = 0
    amount: float = 0.0
    currency: str = "USD"
    payment_method: PaymentMethod
    provider_ref: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    membership_applied: bool = False
    verification_status: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status != PaymentStatus.PENDING


class WebhookEvent(Record):
    __collection__ = "webhook_events"
    __key__ = ("provider", "event_id")

    provider: str
    event_id: str
    event_type: str
    transaction_id: Optional[str] = None
    status: EventStatus = EventStatus.RECEIVED
    payload: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class Subscription(Record):
    __collection__ = "subscriptions"
    __key__ = ("user_id", "plan_id")

    user_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: datetime = Field(default_factory=utcnow)
    # None for in-app purchases: the store owns that date
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    provider: str
    provider_subscription_id: Optional[str] = None
    transaction_id: Optional[str] = None
    # last answer the app store signed for this subscription; read back only when the store is unreachable
    last_verified: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class UserProfile(Record):
    __collection__ = "user_profiles"
    __key__ = ("user_id",)

    user_id: str
    email: Optional[str] = None
    pro: bool = False
    subscription_tier: Optional[str] = None
    membership_expires_at: Optional[datetime] = None
    credits: int = 0
    updated_at: datetime = Field(default_factory=utcnow)


class CreditTransaction(Record):
    __collection__ = "credit_transactions"
    __key__ = ("reference_id",)

    id: str = Field(default_factory=new_id)
    user_id: str
    amount: int
    type: CreditType = CreditType.PURCHASE
    reference_id: str
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class EntitlementGrant(Record):
    __collection__ = "entitlement_grants"
    __key__ = ("transaction_id",)

    transaction_id: str
    user_id: str
    provider: str
    plan_id: Optional[str] = None
    days: Optional[int] = None
    credits: int = 0
    new_expire_at: Optional[datetime] = None
    new_credits: int = 0
    subscription_tier: Optional[str] = None
    applied: bool = False
    synced: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    # owner of an unfinished claim; a stale claim is taken over by bumping attempt
    claimed_at: datetime = Field(default_factory=utcnow)
    attempt: int = 1


RECORD_TYPES = (PaymentRecord, WebhookEvent, Subscription, UserProfile, CreditTransaction, EntitlementGrant)
