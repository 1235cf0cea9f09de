from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, UniqueConstraint

from billing.database import Base
from billing.schemas import (
    CreditTransaction,
    EntitlementGrant,
    PaymentRecord,
    Subscription,
    UserProfile,
    WebhookEvent,
)


class PaymentRow(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True)
    order_id = Column(String, unique=True, index=True, nullable=False)   # session id / order token / out_trade_no
    region = Column(String, nullable=False)
    user_id = Column(String, index=True)
    user_email = Column(String, index=True)
    plan_id = Column(String)
    billing_cycle = Column(String)
    duration_days = Column(Integer)
    credits = Column(Integer, default=0)
    amount = Column(Float)
    currency = Column(String)
    payment_method = Column(String, nullable=False)
    provider_ref = Column(String, index=True)
    provider_transaction_id = Column(String, index=True)
    status = Column(String, nullable=False)                              # pending | completed | failed | refunded
    membership_applied = Column(Boolean, default=False)
    verification_status = Column(String)
    details = Column(JSON)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))


class WebhookEventRow(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    event_type = Column(String)
    transaction_id = Column(String, index=True)
    status = Column(String, nullable=False)                              # received | processing | processed | failed | ignored
    payload = Column(JSON)
    error_message = Column(String)
    created_at = Column(DateTime(timezone=True))
    processed_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))


class SubscriptionRow(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (UniqueConstraint("user_id", "plan_id", name="uq_subscription_user_plan"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    plan_id = Column(String, nullable=False)
    status = Column(String, nullable=False)
    current_period_start = Column(DateTime(timezone=True))
    current_period_end = Column(DateTime(timezone=True))
    cancel_at_period_end = Column(Boolean, default=False)
    provider = Column(String)
    provider_subscription_id = Column(String, index=True)
    transaction_id = Column(String, index=True)
    last_verified = Column(JSON)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))


class UserProfileRow(Base):
    __tablename__ = "user_profiles"

    user_id = Column(String, primary_key=True)
    email = Column(String, unique=True, index=True)
    pro = Column(Boolean, default=False)
    subscription_tier = Column(String)
    membership_expires_at = Column(DateTime(timezone=True))
    credits = Column(Integer, default=0)
    updated_at = Column(DateTime(timezone=True))


class CreditTransactionRow(Base):
    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    type = Column(String, nullable=False)
    reference_id = Column(String, unique=True, nullable=False)
    description = Column(String)
    created_at = Column(DateTime(timezone=True))


class EntitlementGrantRow(Base):
    __tablename__ = "entitlement_grants"

    transaction_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False)
    plan_id = Column(String)
    days = Column(Integer)
    credits = Column(Integer, default=0)
    new_expire_at = Column(DateTime(timezone=True))
    new_credits = Column(Integer, default=0)
    subscription_tier = Column(String)
    applied = Column(Boolean, default=False)
    synced = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True))
    claimed_at = Column(DateTime(timezone=True))
    attempt = Column(Integer, default=1)


ROWS = {
    PaymentRecord: PaymentRow,
    WebhookEvent: WebhookEventRow,
    Subscription: SubscriptionRow,
    UserProfile: UserProfileRow,
    CreditTransaction: CreditTransactionRow,
    EntitlementGrant: EntitlementGrantRow,
}
