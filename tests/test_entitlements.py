from datetime import timedelta

import pytest

from billing.entitlements import CLAIM_WAIT_STEPS, EntitlementApplier, EntitlementRequest, extend_expiry
from billing.errors import DatastoreError, GrantInProgress, InvalidRequest, NotFound, ProfileSyncError
from billing.schemas import CreditTransaction, EntitlementGrant, Subscription, UserProfile
from conftest import NOW


def pro_monthly(txn="cs_1", user="user-1", **overrides):
    fields = dict(
        user_ref=user,
        transaction_id=txn,
        provider="stripe",
        plan_id="pro",
        billing_cycle="monthly",
        days=30,
        credits=900,
    )
    fields.update(overrides)
    return EntitlementRequest(**fields)


def failing_for(record_type, upsert):
    def write(record):
        if isinstance(record, record_type):
            raise DatastoreError("down")
        return upsert(record)

    return write


def test_extend_expiry_stacks_on_unexpired_time():
    current = NOW + timedelta(days=10)
    assert extend_expiry(current, NOW, 30) == NOW + timedelta(days=40)


def test_extend_expiry_restarts_lapsed_membership():
    assert extend_expiry(NOW - timedelta(days=3), NOW, 30) == NOW + timedelta(days=30)
    assert extend_expiry(None, NOW, 365) == NOW + timedelta(days=365)


def test_first_purchase_grants_subscription_and_credits(store, applier):
    result = applier.apply(pro_monthly())

    assert result.success and not result.already_processed
    assert result.new_expire_at == NOW + timedelta(days=30)
    assert result.new_credits == 900
    assert result.subscription_tier == "pro"

    subscription = store.find_one(Subscription, user_id="user-1", plan_id="pro")
    assert subscription.transaction_id == "cs_1"
    assert store.find_one(CreditTransaction, reference_id="cs_1").amount == 900
    profile = store.find_one(UserProfile, user_id="user-1")
    assert profile.pro and profile.credits == 900


def test_same_transaction_twice_is_a_noop(store, applier):
    first = applier.apply(pro_monthly())
    second = applier.apply(pro_monthly())

    assert second.already_processed
    assert second.new_expire_at == first.new_expire_at
    assert second.new_credits == first.new_credits
    assert len(store.find_all(CreditTransaction, user_id="user-1")) == 1


def test_renewal_before_expiry_extends(store, applier):
    applier.apply(pro_monthly("cs_1"))
    result = applier.apply(pro_monthly("cs_2"))

    assert result.new_expire_at == NOW + timedelta(days=60)
    assert result.new_credits == 1800


def test_credit_pack_leaves_subscription_alone(store, applier):
    result = applier.apply(pro_monthly("pack_1", plan_id=None, billing_cycle=None, days=None, credits=100))

    assert result.new_credits == 100
    assert result.new_expire_at is None
    assert store.find_all(Subscription, user_id="user-1") == []


def test_apple_grant_stores_no_expiry(store, applier):
    result = applier.apply(pro_monthly("2000000123", provider="apple"))

    subscription = store.find_one(Subscription, user_id="user-1", plan_id="pro")
    assert subscription.current_period_end is None
    assert result.new_expire_at is None
    assert store.find_one(UserProfile, user_id="user-1").pro


def test_highest_tier_wins_profile(store, applier):
    applier.apply(pro_monthly("cs_1", plan_id="basic", credits=300))
    applier.apply(pro_monthly("cs_2", plan_id="business", credits=2800))

    profile = store.find_one(UserProfile, user_id="user-1")
    assert profile.subscription_tier == "business"
    assert profile.credits == 3100


def test_user_resolved_by_email(store, applier):
    store.upsert(UserProfile(user_id="user-9", email="nine@example.com"))
    result = applier.apply(pro_monthly(user="nine@example.com"))

    assert store.find_one(EntitlementGrant, transaction_id=result.transaction_id).user_id == "user-9"


def test_unknown_email_is_not_found(applier):
    with pytest.raises(NotFound):
        applier.apply(pro_monthly(user="ghost@example.com"))


@pytest.mark.parametrize(
    "overrides",
    [{"transaction_id": ""}, {"plan_id": "platinum"}, {"plan_id": None, "credits": 0}],
)
def test_rejects_unusable_requests(applier, overrides):
    with pytest.raises(InvalidRequest):
        applier.apply(pro_monthly(**overrides))


def test_failed_subscription_write_releases_claim(store, applier, mocker):
    original = store.upsert
    mocker.patch.object(store, "upsert", side_effect=failing_for(Subscription, original))

    with pytest.raises(DatastoreError):
        applier.apply(pro_monthly())

    assert store.find_one(EntitlementGrant, transaction_id="cs_1") is None


def test_profile_sync_failure_is_retryable_without_regrant(store, applier, mocker):
    original = store.upsert
    patched = mocker.patch.object(store, "upsert", side_effect=failing_for(UserProfile, original))

    with pytest.raises(ProfileSyncError):
        applier.apply(pro_monthly())

    grant = store.find_one(EntitlementGrant, transaction_id="cs_1")
    assert grant.applied and not grant.synced

    patched.side_effect = original
    result = applier.apply(pro_monthly())

    assert result.already_processed
    assert result.new_credits == 900
    assert store.find_one(EntitlementGrant, transaction_id="cs_1").synced
    subscription = store.find_one(Subscription, user_id="user-1", plan_id="pro")
    assert subscription.current_period_end == NOW + timedelta(days=30)


def unfinished_claim(claimed_at=NOW):
    # exactly what apply() writes before granting anything
    return EntitlementGrant(
        transaction_id="cs_1",
        user_id="user-1",
        provider="stripe",
        plan_id="pro",
        days=30,
        credits=900,
        created_at=claimed_at,
        claimed_at=claimed_at,
    )


def test_unexpected_failure_releases_claim_and_retry_grants(store, applier, mocker):
    original = store.upsert

    def connection_reset(record):
        if isinstance(record, Subscription):
            raise ConnectionResetError("connection reset by peer")
        return original(record)

    patched = mocker.patch.object(store, "upsert", side_effect=connection_reset)
    with pytest.raises(ConnectionResetError):
        applier.apply(pro_monthly())
    assert store.find_one(EntitlementGrant, transaction_id="cs_1") is None

    patched.side_effect = original
    result = applier.apply(pro_monthly())

    assert not result.already_processed
    assert result.new_expire_at == NOW + timedelta(days=30)
    assert result.new_credits == 900
    assert store.find_one(Subscription, user_id="user-1", plan_id="pro").current_period_end == NOW + timedelta(days=30)
    assert len(store.find_all(CreditTransaction, user_id="user-1")) == 1


def test_concurrent_request_waits_for_the_winner(store):
    store.append_ledger(unfinished_claim())

    def winner_finishes(seconds):
        finished = unfinished_claim().model_copy(
            update={
                "new_expire_at": NOW + timedelta(days=30),
                "new_credits": 900,
                "subscription_tier": "pro",
                "applied": True,
                "synced": True,
            }
        )
        store.upsert(finished)

    applier = EntitlementApplier(store, clock=lambda: NOW, sleep=winner_finishes)
    result = applier.apply(pro_monthly())

    assert result.already_processed
    assert result.new_expire_at == NOW + timedelta(days=30)
    assert result.new_credits == 900
    assert store.find_all(CreditTransaction, user_id="user-1") == []


def test_concurrent_request_gives_up_while_winner_is_busy(store, mocker):
    store.append_ledger(unfinished_claim())
    sleep = mocker.Mock()

    with pytest.raises(GrantInProgress) as raised:
        EntitlementApplier(store, clock=lambda: NOW, sleep=sleep).apply(pro_monthly())

    assert raised.value.retryable
    assert sleep.call_count == CLAIM_WAIT_STEPS
    assert store.find_all(CreditTransaction, user_id="user-1") == []
    assert store.find_all(Subscription, user_id="user-1") == []


def test_stale_claim_is_taken_over(store, applier):
    # an attempt died after appending the credits
    store.append_ledger(unfinished_claim(claimed_at=NOW - timedelta(minutes=10)))
    store.append_ledger(CreditTransaction(user_id="user-1", amount=900, type="purchase", reference_id="cs_1"))

    result = applier.apply(pro_monthly())

    assert not result.already_processed
    assert result.new_credits == 900
    assert result.new_expire_at == NOW + timedelta(days=30)
    grant = store.find_one(EntitlementGrant, transaction_id="cs_1")
    assert grant.applied and grant.attempt == 2
    assert len(store.find_all(CreditTransaction, user_id="user-1")) == 1


def test_takeover_does_not_extend_twice(store, applier):
    # an attempt died after writing the subscription
    store.append_ledger(unfinished_claim(claimed_at=NOW - timedelta(minutes=10)))
    store.upsert(
        Subscription(
            user_id="user-1",
            plan_id="pro",
            provider="stripe",
            transaction_id="cs_1",
            current_period_end=NOW + timedelta(days=30),
        )
    )

    result = applier.apply(pro_monthly())

    assert result.new_expire_at == NOW + timedelta(days=30)
    assert store.find_one(Subscription, user_id="user-1", plan_id="pro").current_period_end == NOW + timedelta(days=30)
