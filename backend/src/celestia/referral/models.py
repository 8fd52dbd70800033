"""Referral system database models."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from celestia.storage.db import Base
from celestia.storage.models import utcnow


class ReferralCode(Base):
    """Unique referral code for each user.

    Each user gets one referral code that they can share.
    Tracks clicks and conversions (signups that used the code).
    """
    __tablename__ = "referral_codes"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, unique=True)
    code = Column(String(20), unique=True, nullable=False, index=True)

    # Statistics
    clicks = Column(Integer, default=0, nullable=False)  # Visits of the share link
    conversions = Column(Integer, default=0, nullable=False)  # Signups with this code

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<ReferralCode(code={self.code}, conversions={self.conversions})>"


class Referral(Base):
    """One referrer -> referred relationship.

    ``activated_at`` goes from NULL to a timestamp exactly once, through the
    activation ledger's conditional update. Rows are never deleted.
    """
    __tablename__ = "referrals"

    id = Column(Integer, primary_key=True)
    referrer_user_id = Column(String(64), nullable=False, index=True)
    referred_user_id = Column(String(64), nullable=False, unique=True)
    referral_code_id = Column(Integer, ForeignKey("referral_codes.id"), nullable=True)

    # Activation
    activated_at = Column(DateTime, nullable=True, index=True)
    activation_ip = Column(String(45), nullable=True, index=True)
    action_type = Column(String(50), nullable=True)  # Action that triggered activation
    claimed_at = Column(DateTime, nullable=True)  # In-flight activation marker

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def is_activated(self) -> bool:
        return self.activated_at is not None

    def __repr__(self):
        return f"<Referral(id={self.id}, referrer={self.referrer_user_id}, referred={self.referred_user_id})>"


class ReferralTierReward(Base):
    """Milestone bonus granted to a referrer (at most once per tier)."""
    __tablename__ = "referral_tier_rewards"
    __table_args__ = (
        UniqueConstraint("user_id", "tier", name="uq_referral_tier_rewards_user_tier"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    tier = Column(Integer, nullable=False)  # Activated-referral threshold
    bonus_days = Column(Integer, nullable=False)
    granted_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<ReferralTierReward(user={self.user_id}, tier={self.tier})>"
