"""Activation ledger compare-and-set writes."""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from celestia.referral.errors import LedgerWriteError
from celestia.referral.ledger import ActivationLedger

from conftest import NOW, add_referral, get_referral


@pytest.fixture
def ledger(database, clock):
    return ActivationLedger(database, clock=clock, claim_ttl=timedelta(minutes=10))


def test_mark_activated_transitions_once(database, ledger):
    referral = add_referral(database, "alice", "bob")

    assert ledger.mark_activated(referral.id, ip_address="203.0.113.7", action_type="journal_entry")
    assert not ledger.mark_activated(referral.id, ip_address="198.51.100.1")

    stored = get_referral(database, referral.id)
    assert stored.activated_at == NOW
    assert stored.activation_ip == "203.0.113.7"
    assert stored.action_type == "journal_entry"


def test_activated_timestamp_is_never_overwritten(database, ledger, clock):
    referral = add_referral(database, "alice", "bob")
    ledger.mark_activated(referral.id)

    clock.advance(days=1)
    ledger.mark_activated(referral.id)

    assert get_referral(database, referral.id).activated_at == NOW


def test_second_claim_is_refused(database, ledger):
    referral = add_referral(database, "alice", "bob")

    assert ledger.claim(referral.id)
    assert not ledger.claim(referral.id)


def test_stale_claim_can_be_taken_over(database, ledger, clock):
    referral = add_referral(database, "alice", "bob")
    ledger.claim(referral.id)

    clock.advance(minutes=11)

    assert ledger.claim(referral.id)


def test_activated_referral_cannot_be_claimed(database, ledger):
    referral = add_referral(database, "alice", "bob", activated_at=NOW - timedelta(days=1))

    assert not ledger.claim(referral.id)


def test_datastore_failure_raises_ledger_write_error(database, ledger):
    referral = add_referral(database, "alice", "bob")

    with patch.object(database, "session", side_effect=OperationalError("UPDATE", {}, Exception("gone"))):
        with pytest.raises(LedgerWriteError) as exc_info:
            ledger.mark_activated(referral.id)

    assert exc_info.value.referral_id == referral.id
    assert get_referral(database, referral.id).activated_at is None
