"""Referral service for managing referral codes and signups."""

import secrets
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from celestia.logging_config import get_logger
from celestia.referral.errors import ReferralError
from celestia.referral.models import Referral, ReferralCode
from celestia.referral.tiers import TierProgressionCounter, tier_progress
from celestia.settings import settings
from celestia.storage.db import Database, db
from celestia.storage.models import utcnow

logger = get_logger(__name__)


def _generate_unique_code(length: int = 8) -> str:
    """Generate a readable referral code.

    Uses uppercase letters and digits, avoiding confusing characters.
    Format: ABC12XYZ (8 chars by default)
    """
    # Exclude confusing characters: 0, O, I, l, 1
    alphabet = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
    return "".join(secrets.choice(alphabet) for _ in range(length))


def referral_link(code: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/ref/{code}"


class ReferralService:
    """Service for managing referral codes and referral relationships."""

    def __init__(self, database: Database | None = None):
        """Initialize referral service."""
        self.db = database or db
        self.counter = TierProgressionCounter(self.db)

    def get_or_create_code(self, user_id: str) -> ReferralCode:
        """Get existing referral code or create new one for user.

        Args:
            user_id: User ID

        Returns:
            ReferralCode object
        """
        with self.db.session() as session:
            existing = session.scalar(
                select(ReferralCode).where(ReferralCode.user_id == user_id)
            )
            if existing:
                return existing

            code = _generate_unique_code()
            attempts = 0
            while attempts < 10:
                taken = session.scalar(select(ReferralCode.id).where(ReferralCode.code == code))
                if not taken:
                    break
                code = _generate_unique_code()
                attempts += 1

            referral_code = ReferralCode(user_id=user_id, code=code, clicks=0, conversions=0)
            session.add(referral_code)
            session.flush()

            logger.info("referral_code_created", user_id=user_id, code=code)
            return referral_code

    def validate_code(self, code: str) -> ReferralCode | None:
        """Validate a referral code.

        Returns:
            ReferralCode if valid, None otherwise
        """
        if not code:
            return None

        with self.db.session() as session:
            return session.scalar(
                select(ReferralCode).where(ReferralCode.code == code.upper().strip())
            )

    def track_click(self, code: str) -> bool:
        """Track a click on a referral link.

        Returns:
            True if tracked successfully
        """
        code = code.upper().strip()

        with self.db.session() as session:
            referral_code = session.scalar(select(ReferralCode).where(ReferralCode.code == code))
            if not referral_code:
                return False

            referral_code.clicks += 1
            referral_code.updated_at = utcnow()

        logger.info("referral_click_tracked", code=code)
        return True

    def attach_referral(self, referred_user_id: str, code: str) -> Referral:
        """Record that a new user signed up with someone's referral code.

        The referral starts un-activated; rewards come later, when the
        referred user performs a qualifying action.

        Args:
            referred_user_id: User who signed up
            code: Referral code they used

        Returns:
            The new referral record

        Raises:
            ReferralError: Unknown code, self-referral, or user already referred
        """
        referral_code = self.validate_code(code)
        if referral_code is None:
            raise ReferralError("Invalid referral code", code="invalid_code")
        if referral_code.user_id == referred_user_id:
            raise ReferralError("You cannot use your own referral code", code="self_referral")

        try:
            with self.db.session() as session:
                already = session.scalar(
                    select(Referral.id).where(Referral.referred_user_id == referred_user_id)
                )
                if already:
                    raise ReferralError("Account was already referred", code="already_referred")

                referral = Referral(
                    referrer_user_id=referral_code.user_id,
                    referred_user_id=referred_user_id,
                    referral_code_id=referral_code.id,
                )
                session.add(referral)

                stored_code = session.get(ReferralCode, referral_code.id)
                stored_code.conversions += 1
                stored_code.updated_at = utcnow()
                session.flush()
        except IntegrityError as e:
            raise ReferralError("Account was already referred", code="already_referred") from e

        logger.info(
            "referral_signup_processed",
            referral_id=referral.id,
            referrer_user_id=referral.referrer_user_id,
            referred_user_id=referred_user_id,
        )
        return referral

    def get_referral_stats(self, user_id: str) -> dict[str, Any]:
        """Get referral statistics for a user.

        Returns:
            Dict with code, link, counters and tier progress
        """
        referral_code = self.get_or_create_code(user_id)

        with self.db.session() as session:
            total = session.scalar(
                select(func.count(Referral.id)).where(Referral.referrer_user_id == user_id)
            ) or 0
            last_activated: datetime | None = session.scalar(
                select(func.max(Referral.activated_at)).where(Referral.referrer_user_id == user_id)
            )

        activated = self.counter.count_activated(user_id)
        progress = tier_progress(activated)

        return {
            "code": referral_code.code,
            "link": referral_link(referral_code.code),
            "clicks": referral_code.clicks,
            "conversions": referral_code.conversions,
            "referrals_count": total,
            "activated_count": activated,
            "pending_count": total - activated,
            "last_activated_at": last_activated,
            "current_tier": progress.current_tier.name if progress.current_tier else None,
            "next_tier": progress.next_tier.name if progress.next_tier else None,
            "referrals_to_next_tier": progress.remaining,
        }

    def get_referrer_for_user(self, user_id: str) -> str | None:
        """Get the referrer ID for a user."""
        with self.db.session() as session:
            return session.scalar(
                select(Referral.referrer_user_id).where(Referral.referred_user_id == user_id)
            )
