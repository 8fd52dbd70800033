"""Shared fixtures: in-memory database, frozen clock and fake collaborators."""

from datetime import datetime, timedelta
from typing import Any

import pytest

from celestia.notify.dispatcher import NotificationDispatcher
from celestia.notify.push_sender import PushDeliveryError, TokenUnregisteredError
from celestia.payments.stripe_service import PaymentProcessorError
from celestia.referral.activation import ReferralActivationService
from celestia.referral.guards import GuardChain
from celestia.referral.ledger import ActivationLedger
from celestia.referral.models import Referral
from celestia.referral.rewards import RewardEngine
from celestia.referral.tier_rewards import TierRewardService
from celestia.referral.tiers import TierProgressionCounter
from celestia.storage.db import Database
from celestia.storage.models import PushToken, SubscriptionRecord, User, UserSession

NOW = datetime(2026, 10, 17, 12, 0, 0)


class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeGateway:
    """Stands in for Stripe: keeps period ends per subscription id."""

    def __init__(self, periods: dict[str, datetime] | None = None):
        self.periods = dict(periods or {})
        self.calls: list[tuple[str, int, str | None]] = []
        self.fail = False

    def extend_period(self, subscription_id: str, days: int, idempotency_key: str | None = None) -> datetime:
        self.calls.append((subscription_id, days, idempotency_key))
        if self.fail:
            raise PaymentProcessorError("Stripe unreachable")
        self.periods[subscription_id] = self.periods[subscription_id] + timedelta(days=days)
        return self.periods[subscription_id]


class FakePushSender:
    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.failing: set[str] = set()
        self.unregistered: set[str] = set()

    def send(self, token: str, title: str, body: str, data: dict[str, Any] | None = None) -> None:
        if token in self.unregistered:
            raise TokenUnregisteredError(token)
        if token in self.failing:
            raise PushDeliveryError(f"rejected {token}")
        self.sent.append({"token": token, "title": title, "body": body, "data": data or {}})

    def tokens_sent(self) -> list[str]:
        return [message["token"] for message in self.sent]


@pytest.fixture
def database():
    database = Database("sqlite://")
    database.create_tables()
    yield database
    database.drop_tables()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sender():
    return FakePushSender()


@pytest.fixture
def engine(database, gateway, clock):
    return RewardEngine(database, gateway=gateway, clock=clock)


@pytest.fixture
def dispatcher(database, sender):
    return NotificationDispatcher(database, sender=sender)


@pytest.fixture
def activation(database, engine, dispatcher, clock):
    counter = TierProgressionCounter(database)
    return ReferralActivationService(
        database,
        guards=GuardChain(database, clock=clock),
        engine=engine,
        ledger=ActivationLedger(database, clock=clock),
        counter=counter,
        dispatcher=dispatcher,
        tier_rewards=TierRewardService(database, engine=engine, counter=counter, dispatcher=dispatcher),
    )


# ==================== DATA HELPERS ====================


def add_user(database: Database, user_id: str, created_at: datetime, name: str | None = None) -> None:
    with database.session() as session:
        session.add(User(id=user_id, email=f"{user_id}@example.com", name=name, created_at=created_at))


def add_session(database: Database, user_id: str, ip_address: str, at: datetime = NOW) -> None:
    with database.session() as session:
        session.add(UserSession(user_id=user_id, ip_address=ip_address, session_timestamp=at))


def add_referral(
    database: Database,
    referrer: str,
    referred: str,
    activated_at: datetime | None = None,
    activation_ip: str | None = None,
) -> Referral:
    with database.session() as session:
        referral = Referral(
            referrer_user_id=referrer,
            referred_user_id=referred,
            activated_at=activated_at,
            activation_ip=activation_ip,
            created_at=NOW - timedelta(days=1),
        )
        session.add(referral)
        session.flush()
        return referral


def add_subscription(database: Database, user_id: str, **fields) -> None:
    with database.session() as session:
        session.add(SubscriptionRecord(user_id=user_id, **fields))


def add_push_token(database: Database, user_id: str, token: str) -> None:
    with database.session() as session:
        session.add(PushToken(user_id=user_id, token=token, platform="ios"))


def get_subscription(database: Database, user_id: str) -> SubscriptionRecord | None:
    from sqlalchemy import select

    with database.session() as session:
        return session.scalar(select(SubscriptionRecord).where(SubscriptionRecord.user_id == user_id))


def get_referral(database: Database, referral_id: int) -> Referral:
    with database.session() as session:
        return session.get(Referral, referral_id)


def count_subscriptions(database: Database) -> int:
    from sqlalchemy import func, select

    with database.session() as session:
        return session.scalar(select(func.count(SubscriptionRecord.id)))
