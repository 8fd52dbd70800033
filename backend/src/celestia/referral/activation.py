"""Referral activation pipeline.

    ActivationEvent -> GuardChain -> claim -> RewardEngine -> ActivationLedger
                    -> TierProgressionCounter -> notifications -> tier rewards

Guard rejections, failed reward legs and undeliverable notifications are all
normal outcomes. Only a failed ledger write propagates (LedgerWriteError), in
which case the referral stays eligible for the next qualifying action.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from celestia.logging_config import get_logger
from celestia.notify.dispatcher import NotificationDispatcher
from celestia.referral.guards import GuardChain, RejectReason
from celestia.referral.ledger import ActivationLedger
from celestia.referral.models import Referral
from celestia.referral.rewards import LegOutcome, Party, RewardEngine, RewardOutcome
from celestia.referral.tier_rewards import TierRewardService
from celestia.referral.tiers import TierProgress, TierProgressionCounter
from celestia.storage.db import Database, db

logger = get_logger(__name__)

# Deferred-execution hook, e.g. FastAPI's BackgroundTasks.add_task
Scheduler = Callable[..., Any]

REWARD_TEMPLATES = {
    Party.REFERRER: "referral_reward_referrer",
    Party.REFERRED: "referral_reward_referred",
}


@dataclass(frozen=True)
class ActivationEvent:
    """A referred user performed an in-app action."""
    user_id: str
    action_type: str
    ip_address: str | None = None  # Request IP, used when no session IP is known


class ActivationStatus(str, Enum):
    ACTIVATED = "activated"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"  # Another invocation holds the claim
    ALREADY_ACTIVATED = "already_activated"  # Lost the ledger write after granting


@dataclass
class ActivationResult:
    status: ActivationStatus
    referral_id: int | None = None
    reason: RejectReason | None = None
    outcome: RewardOutcome | None = None
    # Per-party delivery flags; only filled when notifications run inline
    notifications: dict[Party, bool] = field(default_factory=dict)


class ReferralActivationService:
    """Runs the activation pipeline for one event."""

    def __init__(
        self,
        database: Database | None = None,
        guards: GuardChain | None = None,
        engine: RewardEngine | None = None,
        ledger: ActivationLedger | None = None,
        counter: TierProgressionCounter | None = None,
        dispatcher: NotificationDispatcher | None = None,
        tier_rewards: TierRewardService | None = None,
    ):
        self.db = database or db
        self.guards = guards or GuardChain(self.db)
        self.engine = engine or RewardEngine(self.db)
        self.ledger = ledger or ActivationLedger(self.db)
        self.counter = counter or TierProgressionCounter(self.db)
        self.dispatcher = dispatcher or NotificationDispatcher(self.db)
        self.tier_rewards = tier_rewards or TierRewardService(
            self.db, engine=self.engine, counter=self.counter, dispatcher=self.dispatcher
        )

    def process_activation(
        self,
        user_id: str,
        action_type: str,
        schedule: Scheduler | None = None,
        ip_address: str | None = None,
    ) -> ActivationResult:
        """Evaluate a referred user's action and grant referral rewards if eligible.

        Args:
            user_id: User who performed the action
            action_type: Kind of action (reading_completed, journal_entry, ...)
            schedule: Optional hook to defer notifications; inline when omitted
            ip_address: IP the action came from, a fallback for IP dedup

        Returns:
            ActivationResult describing what happened

        Raises:
            LedgerWriteError: The activation could not be recorded
            SQLAlchemyError: The guard chain could not read the datastore
        """
        event = ActivationEvent(user_id=user_id, action_type=action_type, ip_address=ip_address)
        return self.handle(event, schedule)

    def handle(self, event: ActivationEvent, schedule: Scheduler | None = None) -> ActivationResult:
        guard_result = self.guards.evaluate(
            event.user_id, event.action_type, ip_address=event.ip_address
        )
        if not guard_result.passed:
            return ActivationResult(status=ActivationStatus.REJECTED, reason=guard_result.reason)

        referral = guard_result.referral
        if not self.ledger.claim(referral.id):
            return ActivationResult(status=ActivationStatus.IN_PROGRESS, referral_id=referral.id)

        outcome = self.engine.grant(referral)

        # Always recorded, whatever the legs did
        transitioned = self.ledger.mark_activated(
            referral.id,
            ip_address=guard_result.ip_address,
            action_type=event.action_type,
        )
        if not transitioned:
            logger.warning("referral_activation_race_lost", referral_id=referral.id)
            return ActivationResult(
                status=ActivationStatus.ALREADY_ACTIVATED,
                referral_id=referral.id,
                outcome=outcome,
            )

        result = ActivationResult(
            status=ActivationStatus.ACTIVATED,
            referral_id=referral.id,
            outcome=outcome,
        )

        progress = self._tier_progress(referral.referrer_user_id)
        for leg in outcome.legs:
            self._dispatch_reward_notification(referral, leg, progress, schedule, result)

        if schedule is not None:
            schedule(self.tier_rewards.process_referral_tier_reward, referral.referrer_user_id)
        else:
            self.tier_rewards.process_referral_tier_reward(referral.referrer_user_id)

        logger.info(
            "referral_activation_completed",
            referral_id=referral.id,
            referrer_user_id=referral.referrer_user_id,
            referred_user_id=referral.referred_user_id,
            action_type=event.action_type,
            referrer_action=outcome.referrer.action.value,
            referred_action=outcome.referred.action.value,
        )
        return result

    def _tier_progress(self, referrer_user_id: str) -> TierProgress | None:
        try:
            return self.counter.progress(referrer_user_id)
        except SQLAlchemyError as e:
            logger.warning("tier_progress_unavailable", user_id=referrer_user_id, error=str(e))
            return None

    def _dispatch_reward_notification(
        self,
        referral: Referral,
        leg: LegOutcome,
        progress: TierProgress | None,
        schedule: Scheduler | None,
        result: ActivationResult,
    ) -> None:
        if not leg.succeeded:
            logger.warning(
                "referral_notification_skipped",
                referral_id=referral.id,
                party=leg.party.value,
                reason="leg_failed",
            )
            result.notifications[leg.party] = False
            return

        context: dict[str, Any] = {
            "days": leg.extension_days,
            "period_end": leg.period_end.isoformat() if leg.period_end else None,
        }
        if leg.party is Party.REFERRER and progress is not None and progress.next_tier:
            context["remaining"] = progress.remaining
            context["next_tier"] = progress.next_tier.name

        template = REWARD_TEMPLATES[leg.party]
        if schedule is not None:
            schedule(self.dispatcher.notify, leg.user_id, template, context)
        else:
            result.notifications[leg.party] = self.dispatcher.notify(leg.user_id, template, context)
