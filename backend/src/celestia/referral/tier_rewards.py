"""Milestone bonuses for referrers who reach a referral tier."""

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from celestia.logging_config import get_logger
from celestia.notify.dispatcher import NotificationDispatcher
from celestia.referral.models import ReferralTierReward
from celestia.referral.rewards import Party, RewardEngine
from celestia.referral.tiers import REFERRAL_TIERS, ReferralTier, TierProgressionCounter
from celestia.storage.db import Database, db

logger = get_logger(__name__)


class TierRewardService:
    """Grants each tier's bonus days at most once per referrer."""

    def __init__(
        self,
        database: Database | None = None,
        engine: RewardEngine | None = None,
        counter: TierProgressionCounter | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ):
        self.db = database or db
        self.engine = engine or RewardEngine(self.db)
        self.counter = counter or TierProgressionCounter(self.db)
        self.dispatcher = dispatcher or NotificationDispatcher(self.db)

    def process_referral_tier_reward(self, referrer_user_id: str) -> list[ReferralTier]:
        """Grant bonuses for every reached tier that has not been rewarded yet.

        Never raises; failures are logged.

        Returns:
            Tiers granted by this call
        """
        try:
            count = self.counter.count_activated(referrer_user_id)
            with self.db.session() as session:
                rewarded = set(
                    session.scalars(
                        select(ReferralTierReward.tier).where(
                            ReferralTierReward.user_id == referrer_user_id
                        )
                    )
                )
        except SQLAlchemyError as e:
            logger.warning("tier_reward_lookup_failed", user_id=referrer_user_id, error=str(e))
            return []

        granted = []
        for tier in REFERRAL_TIERS:
            if tier.bonus_days and tier.threshold <= count and tier.threshold not in rewarded:
                if self._grant_tier(referrer_user_id, tier):
                    granted.append(tier)
        return granted

    def _grant_tier(self, user_id: str, tier: ReferralTier) -> bool:
        # Reserve the tier first so concurrent activations cannot both pay it
        try:
            with self.db.session() as session:
                session.add(
                    ReferralTierReward(user_id=user_id, tier=tier.threshold, bonus_days=tier.bonus_days)
                )
        except IntegrityError:
            logger.info("tier_reward_already_granted", user_id=user_id, tier=tier.threshold)
            return False
        except SQLAlchemyError as e:
            logger.warning("tier_reward_reserve_failed", user_id=user_id, tier=tier.threshold, error=str(e))
            return False

        outcome = self.engine.grant_leg(
            Party.REFERRER,
            user_id,
            tier.bonus_days,
            idempotency_key=f"tier-{user_id}-{tier.threshold}",
        )
        if not outcome.succeeded:
            self._release(user_id, tier)
            return False

        logger.info(
            "tier_reward_granted",
            user_id=user_id,
            tier=tier.threshold,
            tier_name=tier.name,
            bonus_days=tier.bonus_days,
        )
        self.dispatcher.notify(
            user_id,
            "referral_tier_reached",
            {"tier": tier.name, "bonus_days": tier.bonus_days},
        )
        return True

    def _release(self, user_id: str, tier: ReferralTier) -> None:
        """Drop a reservation whose extension failed so a later activation retries it."""
        try:
            with self.db.session() as session:
                session.execute(
                    delete(ReferralTierReward).where(
                        ReferralTierReward.user_id == user_id,
                        ReferralTierReward.tier == tier.threshold,
                    )
                )
        except SQLAlchemyError as e:
            logger.error("tier_reward_release_failed", user_id=user_id, tier=tier.threshold, error=str(e))
