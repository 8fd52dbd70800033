"""Referral tiers and the counter used for progression hints."""

from dataclasses import dataclass

from sqlalchemy import func, select

from celestia.referral.models import Referral
from celestia.storage.db import Database, db


@dataclass(frozen=True)
class ReferralTier:
    """Milestone reached at ``threshold`` activated referrals."""
    threshold: int
    name: str
    bonus_days: int = 0  # Extra days granted to the referrer on reaching it


REFERRAL_TIERS: tuple[ReferralTier, ...] = (
    ReferralTier(1, "New Moon"),
    ReferralTier(3, "Crescent", bonus_days=7),
    ReferralTier(5, "First Quarter", bonus_days=14),
    ReferralTier(10, "Full Moon", bonus_days=30),
    ReferralTier(25, "Eclipse", bonus_days=90),
)


@dataclass(frozen=True)
class TierProgress:
    count: int
    current_tier: ReferralTier | None
    next_tier: ReferralTier | None

    @property
    def remaining(self) -> int | None:
        """Activated referrals still needed for the next tier."""
        if self.next_tier is None:
            return None
        return self.next_tier.threshold - self.count


def tier_progress(count: int) -> TierProgress:
    current = None
    upcoming = None
    for tier in REFERRAL_TIERS:
        if count >= tier.threshold:
            current = tier
        elif upcoming is None:
            upcoming = tier
    return TierProgress(count=count, current_tier=current, next_tier=upcoming)


def tier_reached_at(count: int) -> ReferralTier | None:
    """Tier whose threshold is exactly ``count``, if any."""
    for tier in REFERRAL_TIERS:
        if tier.threshold == count:
            return tier
    return None


class TierProgressionCounter:
    def __init__(self, database: Database | None = None):
        self.db = database or db

    def count_activated(self, referrer_user_id: str) -> int:
        """Count all activated referrals credited to a referrer."""
        with self.db.session() as session:
            return session.scalar(
                select(func.count(Referral.id)).where(
                    Referral.referrer_user_id == referrer_user_id,
                    Referral.activated_at.is_not(None),
                )
            ) or 0

    def progress(self, referrer_user_id: str) -> TierProgress:
        return tier_progress(self.count_activated(referrer_user_id))
