"""End-to-end activation pipeline against an in-memory database."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from celestia.referral.activation import ActivationStatus
from celestia.referral.errors import LedgerWriteError
from celestia.referral.guards import RejectReason
from celestia.referral.rewards import LegAction, Party

from conftest import (
    NOW,
    add_push_token,
    add_referral,
    add_subscription,
    add_user,
    count_subscriptions,
    get_referral,
    get_subscription,
)


@pytest.fixture
def referral(database):
    add_user(database, "alice", created_at=NOW - timedelta(days=90))
    add_user(database, "bob", created_at=NOW - timedelta(hours=5))
    add_push_token(database, "alice", "token-alice")
    add_push_token(database, "bob", "token-bob")
    return add_referral(database, "alice", "bob")


def test_first_qualifying_action_rewards_both_sides(database, activation, sender, referral):
    result = activation.process_activation("bob", "reading_completed")

    assert result.status is ActivationStatus.ACTIVATED
    assert result.outcome.fully_granted
    assert get_subscription(database, "alice").current_period_end == NOW + timedelta(days=7)
    assert get_subscription(database, "bob").current_period_end == NOW + timedelta(days=30)

    stored = get_referral(database, referral.id)
    assert stored.activated_at == NOW
    assert stored.action_type == "reading_completed"

    assert sender.tokens_sent() == ["token-alice", "token-bob"]
    assert result.notifications == {Party.REFERRER: True, Party.REFERRED: True}


def test_referrer_notification_carries_tier_hint(activation, sender, referral):
    activation.process_activation("bob", "reading_completed")

    referrer_message = sender.sent[0]
    assert "7 extra days" in referrer_message["body"]
    assert "2 more referrals to reach Crescent" in referrer_message["body"]


def test_processor_outage_still_activates_and_rewards_other_side(database, activation, gateway, sender, referral):
    gateway.periods["sub_alice"] = NOW + timedelta(days=3)
    gateway.fail = True
    add_subscription(
        database,
        "alice",
        status="active",
        stripe_subscription_id="sub_alice",
        current_period_end=NOW + timedelta(days=3),
    )

    result = activation.process_activation("bob", "reading_completed")

    assert result.status is ActivationStatus.ACTIVATED
    assert result.outcome.referrer.action is LegAction.FAILED
    assert get_subscription(database, "alice").current_period_end == NOW + timedelta(days=3)
    assert get_subscription(database, "bob").current_period_end == NOW + timedelta(days=30)
    assert get_referral(database, referral.id).activated_at == NOW

    assert sender.tokens_sent() == ["token-bob"]
    assert result.notifications == {Party.REFERRER: False, Party.REFERRED: True}


def test_second_invocation_changes_nothing(database, activation, sender, clock, referral):
    activation.process_activation("bob", "reading_completed")
    clock.advance(hours=2)

    result = activation.process_activation("bob", "journal_entry")

    assert result.status is ActivationStatus.REJECTED
    assert result.reason is RejectReason.NO_REFERRAL
    assert get_subscription(database, "alice").current_period_end == NOW + timedelta(days=7)
    assert get_subscription(database, "bob").current_period_end == NOW + timedelta(days=30)
    assert get_referral(database, referral.id).action_type == "reading_completed"
    assert len(sender.sent) == 2


def test_rejected_activation_writes_nothing(database, activation, sender):
    add_user(database, "bob", created_at=NOW - timedelta(minutes=20))
    referral = add_referral(database, "alice", "bob")

    result = activation.process_activation("bob", "reading_completed")

    assert result.status is ActivationStatus.REJECTED
    assert result.reason is RejectReason.TOO_NEW
    assert count_subscriptions(database) == 0
    stored = get_referral(database, referral.id)
    assert stored.activated_at is None
    assert stored.claimed_at is None
    assert sender.sent == []


def test_notification_failure_for_one_party_does_not_affect_other(database, activation, sender, referral):
    sender.failing.add("token-bob")

    result = activation.process_activation("bob", "reading_completed")

    assert result.status is ActivationStatus.ACTIVATED
    assert result.notifications == {Party.REFERRER: True, Party.REFERRED: False}
    assert sender.tokens_sent() == ["token-alice"]
    assert get_referral(database, referral.id).activated_at == NOW


def test_user_without_devices_is_still_rewarded(database, activation, sender):
    add_user(database, "carol", created_at=NOW - timedelta(days=1))
    add_referral(database, "alice", "carol")

    result = activation.process_activation("carol", "reading_completed")

    assert result.status is ActivationStatus.ACTIVATED
    assert result.notifications == {Party.REFERRER: False, Party.REFERRED: False}
    assert get_subscription(database, "carol").current_period_end == NOW + timedelta(days=30)


def test_claimed_referral_is_left_to_its_owner(database, activation, referral):
    activation.ledger.claim(referral.id)

    result = activation.process_activation("bob", "reading_completed")

    assert result.status is ActivationStatus.IN_PROGRESS
    assert count_subscriptions(database) == 0


def test_ledger_failure_propagates(database, activation, referral):
    with patch.object(
        activation.ledger, "mark_activated", side_effect=LedgerWriteError(referral.id, "disk full")
    ):
        with pytest.raises(LedgerWriteError):
            activation.process_activation("bob", "reading_completed")

    assert get_referral(database, referral.id).activated_at is None


def test_scheduled_notifications_run_after_the_pipeline(activation, sender, referral):
    tasks = []

    result = activation.process_activation(
        "bob", "reading_completed", schedule=lambda fn, *args: tasks.append((fn, args))
    )

    assert result.status is ActivationStatus.ACTIVATED
    assert sender.sent == []
    assert len(tasks) == 3

    for fn, args in tasks:
        fn(*args)
    assert sender.tokens_sent() == ["token-alice", "token-bob"]


def test_reaching_a_tier_grants_bonus_days(database, activation, sender, referral):
    add_referral(database, "alice", "earlier-1", activated_at=NOW - timedelta(days=3))
    add_referral(database, "alice", "earlier-2", activated_at=NOW - timedelta(days=2))

    activation.process_activation("bob", "reading_completed")

    # 7 days for the referral plus 7 bonus days for reaching Crescent
    assert get_subscription(database, "alice").current_period_end == NOW + timedelta(days=14)
    assert sender.tokens_sent() == ["token-alice", "token-bob", "token-alice"]
    assert "Crescent" in sender.sent[2]["title"]


def test_failed_ledger_write_is_retried_once_claim_goes_stale(database, activation, clock, referral):
    with patch.object(
        activation.ledger, "mark_activated", side_effect=LedgerWriteError(referral.id, "disk full")
    ):
        with pytest.raises(LedgerWriteError):
            activation.process_activation("bob", "reading_completed")

    # The abandoned claim still blocks a retry inside its TTL
    clock.advance(minutes=5)
    assert activation.process_activation("bob", "journal_entry").status is ActivationStatus.IN_PROGRESS

    clock.advance(minutes=6)
    result = activation.process_activation("bob", "journal_entry")

    assert result.status is ActivationStatus.ACTIVATED
    stored = get_referral(database, referral.id)
    assert stored.activated_at == NOW + timedelta(minutes=11)
    assert stored.action_type == "journal_entry"


def test_request_ip_feeds_ip_dedup_without_session(database, activation):
    add_user(database, "carol", created_at=NOW - timedelta(days=1))
    add_referral(database, "alice", "carol")
    add_referral(database, "dave", "x1", activated_at=NOW - timedelta(days=3), activation_ip="203.0.113.7")
    add_referral(database, "erin", "x2", activated_at=NOW - timedelta(days=4), activation_ip="203.0.113.7")

    result = activation.process_activation("carol", "reading_completed", ip_address="203.0.113.7")

    assert result.status is ActivationStatus.REJECTED
    assert result.reason is RejectReason.DUPLICATE_IP
