"""Reward engine: extend-or-create per leg."""

from datetime import timedelta, timezone

import pytest

from celestia.payments.stripe_service import handle_subscription_updated
from celestia.referral.rewards import LegAction, Party, RewardEngine
from celestia.storage.models import SubscriptionStatus

from conftest import NOW, FakeGateway, add_referral, add_subscription, count_subscriptions, get_subscription


def test_creates_trial_for_users_without_subscription(database, engine):
    referral = add_referral(database, "alice", "bob")

    outcome = engine.grant(referral)

    assert outcome.fully_granted
    assert outcome.referrer.action is LegAction.CREATED
    assert outcome.referred.action is LegAction.CREATED

    alice = get_subscription(database, "alice")
    bob = get_subscription(database, "bob")
    assert alice.status == SubscriptionStatus.TRIAL.value
    assert alice.trial_ends_at == NOW + timedelta(days=7)
    assert alice.current_period_end == NOW + timedelta(days=7)
    assert bob.trial_ends_at == NOW + timedelta(days=30)
    assert bob.plan_type == "referral_trial"


def test_extends_running_trial_from_its_end(database, engine):
    add_subscription(
        database,
        "alice",
        status="trial",
        plan_type="monthly",
        trial_ends_at=NOW + timedelta(days=10),
        current_period_end=NOW + timedelta(days=10),
    )

    action, period_end = engine.extend_or_create("alice", 7)

    assert action is LegAction.EXTENDED
    assert period_end == NOW + timedelta(days=17)
    record = get_subscription(database, "alice")
    assert record.trial_ends_at == NOW + timedelta(days=17)
    assert record.plan_type == "monthly"


def test_expired_trial_extends_from_now(database, engine):
    add_subscription(
        database,
        "alice",
        status="trial",
        trial_ends_at=NOW - timedelta(days=4),
        current_period_end=NOW - timedelta(days=4),
    )

    _, period_end = engine.extend_or_create("alice", 7)

    assert period_end == NOW + timedelta(days=7)


def test_extends_local_active_subscription_period(database, engine):
    add_subscription(
        database,
        "alice",
        status="active",
        plan_type="yearly",
        current_period_end=NOW + timedelta(days=20),
    )

    action, period_end = engine.extend_or_create("alice", 7)

    assert action is LegAction.EXTENDED
    assert period_end == NOW + timedelta(days=27)
    assert get_subscription(database, "alice").status == "active"


def test_cancelled_subscription_reopens_as_trial(database, engine):
    add_subscription(
        database,
        "alice",
        status="cancelled",
        plan_type="monthly",
        current_period_end=NOW - timedelta(days=40),
    )

    action, period_end = engine.extend_or_create("alice", 30)

    record = get_subscription(database, "alice")
    assert action is LegAction.EXTENDED
    assert period_end == NOW + timedelta(days=30)
    assert record.status == "trial"
    assert record.trial_ends_at == period_end
    assert record.plan_type == "monthly"


def test_free_record_gets_trial_plan(database, engine):
    add_subscription(database, "alice", status="free", plan_type="free")

    engine.extend_or_create("alice", 7)

    record = get_subscription(database, "alice")
    assert record.status == "trial"
    assert record.plan_type == "referral_trial"


def test_stripe_managed_subscription_extends_through_gateway(database, clock):
    processor_end = NOW + timedelta(days=12)
    gateway = FakeGateway({"sub_123": processor_end})
    engine = RewardEngine(database, gateway=gateway, clock=clock)
    add_subscription(
        database,
        "alice",
        status="active",
        stripe_subscription_id="sub_123",
        current_period_end=processor_end,
    )
    referral = add_referral(database, "alice", "bob")

    outcome = engine.grant(referral)

    assert outcome.referrer.action is LegAction.EXTENDED_EXTERNAL
    assert gateway.calls == [("sub_123", 7, f"referral-{referral.id}-referrer")]
    assert get_subscription(database, "alice").current_period_end == processor_end + timedelta(days=7)


def test_stripe_outage_fails_only_that_leg(database, clock):
    gateway = FakeGateway({"sub_123": NOW + timedelta(days=12)})
    gateway.fail = True
    engine = RewardEngine(database, gateway=gateway, clock=clock)
    add_subscription(
        database,
        "alice",
        status="active",
        stripe_subscription_id="sub_123",
        current_period_end=NOW + timedelta(days=12),
    )
    referral = add_referral(database, "alice", "bob")

    outcome = engine.grant(referral)

    assert outcome.referrer.action is LegAction.FAILED
    assert "Stripe unreachable" in outcome.referrer.error
    assert outcome.referred.action is LegAction.CREATED
    assert not outcome.fully_granted
    assert get_subscription(database, "alice").current_period_end == NOW + timedelta(days=12)


def test_unknown_status_fails_the_leg(database, engine):
    add_subscription(database, "alice", status="paused")

    outcome = engine.grant_leg(Party.REFERRER, "alice", 7)

    assert outcome.action is LegAction.FAILED
    assert "unknown status" in outcome.error


def test_at_most_one_record_per_user(database, engine):
    engine.extend_or_create("alice", 7)
    engine.extend_or_create("alice", 7)

    assert count_subscriptions(database) == 1
    assert get_subscription(database, "alice").trial_ends_at == NOW + timedelta(days=14)


@pytest.mark.parametrize("days", [7, 30])
def test_extension_days_are_exact(database, engine, days):
    _, period_end = engine.extend_or_create("alice", days)

    assert period_end - NOW == timedelta(days=days)


def test_past_due_period_is_extended_without_status_change(database, engine):
    add_subscription(
        database,
        "alice",
        status="past_due",
        plan_type="monthly",
        current_period_end=NOW - timedelta(days=2),
    )

    action, period_end = engine.extend_or_create("alice", 7)

    record = get_subscription(database, "alice")
    assert action is LegAction.EXTENDED
    assert period_end == NOW + timedelta(days=7)
    assert record.current_period_end == NOW + timedelta(days=7)
    assert record.status == "past_due"
    assert record.trial_ends_at is None


def test_stripe_subscription_stays_external_after_trialing_webhook(database, clock):
    gateway = FakeGateway({"sub_1": NOW + timedelta(days=12)})
    engine = RewardEngine(database, gateway=gateway, clock=clock)
    add_subscription(
        database,
        "alice",
        status="active",
        stripe_subscription_id="sub_1",
        current_period_end=NOW + timedelta(days=12),
    )

    engine.extend_or_create("alice", 7)
    # Stripe reports the pushed-back billing date as a trial
    handle_subscription_updated(
        {
            "id": "sub_1",
            "status": "trialing",
            "current_period_end": int((NOW + timedelta(days=12)).replace(tzinfo=timezone.utc).timestamp()),
            "trial_end": int((NOW + timedelta(days=19)).replace(tzinfo=timezone.utc).timestamp()),
        },
        database,
    )
    mirrored = get_subscription(database, "alice")
    assert mirrored.status == "trial"
    assert mirrored.trial_ends_at == NOW + timedelta(days=19)

    action, period_end = engine.extend_or_create("alice", 7)

    assert action is LegAction.EXTENDED_EXTERNAL
    assert len(gateway.calls) == 2
    assert period_end == NOW + timedelta(days=26)
    record = get_subscription(database, "alice")
    assert record.current_period_end == NOW + timedelta(days=26)
    assert record.trial_ends_at == NOW + timedelta(days=26)
