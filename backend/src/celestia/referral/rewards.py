"""Reward engine granting subscription time to both sides of a referral.

Each side ("leg") is resolved independently with the same extend-or-create
procedure. A failing leg is reported in the outcome instead of raised, so the
pipeline always reaches the activation ledger.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from celestia.logging_config import get_logger
from celestia.payments.stripe_service import PaymentProcessorError, StripeSubscriptionGateway
from celestia.referral.models import Referral
from celestia.settings import settings
from celestia.storage.db import Database, db
from celestia.storage.models import SubscriptionRecord, SubscriptionStatus, utcnow

logger = get_logger(__name__)

_KNOWN_STATUSES = {status.value for status in SubscriptionStatus}


class Party(str, Enum):
    """Side of the referral a reward leg belongs to."""
    REFERRER = "referrer"
    REFERRED = "referred"


class LegAction(str, Enum):
    """What a reward leg did to the subscription record."""
    CREATED = "created"
    EXTENDED = "extended"
    EXTENDED_EXTERNAL = "extended_external"
    FAILED = "failed"


class SubscriptionGateway(Protocol):
    """Payment processor operations the engine needs."""

    def extend_period(
        self, subscription_id: str, days: int, idempotency_key: str | None = None
    ) -> datetime: ...


@dataclass(frozen=True)
class LegOutcome:
    """Result of one reward leg."""
    party: Party
    user_id: str
    action: LegAction
    extension_days: int
    period_end: datetime | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.action is not LegAction.FAILED


@dataclass(frozen=True)
class RewardOutcome:
    """Both legs of a grant."""
    referrer: LegOutcome
    referred: LegOutcome

    @property
    def legs(self) -> tuple[LegOutcome, LegOutcome]:
        return (self.referrer, self.referred)

    @property
    def fully_granted(self) -> bool:
        return self.referrer.succeeded and self.referred.succeeded


class RewardEngine:
    """Grants 7 days to the referrer and 30 days to the referred user."""

    def __init__(
        self,
        database: Database | None = None,
        gateway: SubscriptionGateway | None = None,
        clock: Callable[[], datetime] = utcnow,
        referrer_days: int | None = None,
        referred_days: int | None = None,
        trial_plan: str | None = None,
    ):
        self.db = database or db
        self.gateway = gateway or StripeSubscriptionGateway()
        self.clock = clock
        self.referrer_days = referrer_days or settings.referral_referrer_extension_days
        self.referred_days = referred_days or settings.referral_referred_extension_days
        self.trial_plan = trial_plan or settings.referral_trial_plan

    def grant(self, referral: Referral) -> RewardOutcome:
        """Grant both legs of a validated referral, sequentially.

        Args:
            referral: Referral that passed the guard chain

        Returns:
            Outcome of each leg; never raises for a leg failure
        """
        referrer = self.grant_leg(
            Party.REFERRER,
            referral.referrer_user_id,
            self.referrer_days,
            idempotency_key=f"referral-{referral.id}-referrer",
        )
        referred = self.grant_leg(
            Party.REFERRED,
            referral.referred_user_id,
            self.referred_days,
            idempotency_key=f"referral-{referral.id}-referred",
        )

        if not (referrer.succeeded and referred.succeeded):
            logger.warning(
                "referral_reward_partial",
                referral_id=referral.id,
                referrer_action=referrer.action.value,
                referred_action=referred.action.value,
            )

        return RewardOutcome(referrer=referrer, referred=referred)

    def grant_leg(
        self,
        party: Party,
        user_id: str,
        days: int,
        idempotency_key: str | None = None,
    ) -> LegOutcome:
        """Run extend-or-create for one user, capturing failures in the outcome."""
        try:
            action, period_end = self.extend_or_create(user_id, days, idempotency_key=idempotency_key)
        except (PaymentProcessorError, SQLAlchemyError, ValueError) as e:
            logger.warning(
                "referral_leg_failed",
                party=party.value,
                user_id=user_id,
                days=days,
                error=str(e),
                error_type=type(e).__name__,
            )
            return LegOutcome(
                party=party,
                user_id=user_id,
                action=LegAction.FAILED,
                extension_days=days,
                error=str(e),
            )

        logger.info(
            "referral_leg_granted",
            party=party.value,
            user_id=user_id,
            days=days,
            action=action.value,
            period_end=period_end.isoformat(),
        )
        return LegOutcome(
            party=party,
            user_id=user_id,
            action=action,
            extension_days=days,
            period_end=period_end,
        )

    def extend_or_create(
        self,
        user_id: str,
        days: int,
        idempotency_key: str | None = None,
    ) -> tuple[LegAction, datetime]:
        """Add ``days`` to a user's subscription, creating a trial if there is none.

        A concurrent first insert for the same user loses on the unique
        constraint; the loser retries once and extends the winner's record.

        Returns:
            What was done and the resulting period end

        Raises:
            PaymentProcessorError: Stripe-managed subscription could not be extended
            ValueError: Existing record is malformed
            SQLAlchemyError: Datastore failure
        """
        try:
            return self._extend_or_create_once(user_id, days, idempotency_key)
        except IntegrityError:
            logger.info("subscription_insert_conflict", user_id=user_id)
            return self._extend_or_create_once(user_id, days, idempotency_key)

    def _extend_or_create_once(
        self,
        user_id: str,
        days: int,
        idempotency_key: str | None,
    ) -> tuple[LegAction, datetime]:
        delta = timedelta(days=days)

        with self.db.session() as session:
            # Row lock serializes against billing webhooks touching the same record
            record = session.scalar(
                select(SubscriptionRecord)
                .where(SubscriptionRecord.user_id == user_id)
                .with_for_update()
            )

            if record is None:
                period_end = self.clock() + delta
                session.add(
                    SubscriptionRecord(
                        user_id=user_id,
                        status=SubscriptionStatus.TRIAL.value,
                        plan_type=self.trial_plan,
                        trial_ends_at=period_end,
                        current_period_end=period_end,
                    )
                )
                session.flush()
                return LegAction.CREATED, period_end

            if record.status not in _KNOWN_STATUSES:
                raise ValueError(f"Subscription for {user_id} has unknown status {record.status!r}")

            if record.is_processor_managed:
                return LegAction.EXTENDED_EXTERNAL, self._extend_external(
                    record, days, idempotency_key
                )

            period_end = self._extend_local(record, delta)
            record.updated_at = utcnow()
            return LegAction.EXTENDED, period_end

    def _extend_external(
        self,
        record: SubscriptionRecord,
        days: int,
        idempotency_key: str | None,
    ) -> datetime:
        """Extend on Stripe first, then mirror the confirmed end locally."""
        processor_end = self.gateway.extend_period(
            record.stripe_subscription_id,
            days,
            idempotency_key=idempotency_key,
        )
        if record.current_period_end is None or processor_end > record.current_period_end:
            record.current_period_end = processor_end
        # The extension is carried by Stripe's trial_end
        if record.status == SubscriptionStatus.TRIAL.value and (
            record.trial_ends_at is None or processor_end > record.trial_ends_at
        ):
            record.trial_ends_at = processor_end
        record.updated_at = utcnow()
        return record.current_period_end

    def _extend_local(self, record: SubscriptionRecord, delta: timedelta) -> datetime:
        now = self.clock()
        status = record.status

        if status == SubscriptionStatus.TRIAL.value:
            trial_end = max(record.trial_ends_at or now, now) + delta
            record.trial_ends_at = trial_end
            if record.current_period_end is None or record.current_period_end < trial_end:
                record.current_period_end = trial_end
            return trial_end

        if status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value):
            period_end = max(record.current_period_end or now, now) + delta
            record.current_period_end = period_end
            return period_end

        # free / cancelled: the reward reopens access as a trial
        base = max(
            value for value in (record.trial_ends_at, record.current_period_end, now) if value
        )
        period_end = base + delta
        record.status = SubscriptionStatus.TRIAL.value
        record.trial_ends_at = period_end
        record.current_period_end = period_end
        if record.plan_type == "free":
            record.plan_type = self.trial_plan
        return period_end
