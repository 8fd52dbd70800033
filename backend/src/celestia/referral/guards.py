"""Guard chain deciding whether a referred user's action may activate a referral.

Guards run in a fixed order and stop at the first failure:

1. referral lookup   - an un-activated referral must exist for the user
2. account age       - the referred account must be old enough
3. velocity limit    - the referrer may only be credited so often per day
4. IP dedup          - one network may not activate many referrals

The chain only reads. A rejection is a normal outcome, not an error.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Union

from sqlalchemy import func, select

from celestia.identity.store import IdentityStore
from celestia.logging_config import get_logger
from celestia.referral.models import Referral
from celestia.settings import settings
from celestia.storage.db import Database, db
from celestia.storage.models import utcnow

logger = get_logger(__name__)


class RejectReason(str, Enum):
    """Why a referral activation was refused."""
    NO_REFERRAL = "no_referral"
    TOO_NEW = "too_new"
    VELOCITY_EXCEEDED = "velocity_exceeded"
    DUPLICATE_IP = "duplicate_ip"


@dataclass(frozen=True)
class GuardPass:
    """All guards passed."""
    referral: Referral
    ip_address: str | None = None

    passed = True


@dataclass(frozen=True)
class GuardReject:
    """A guard refused the activation."""
    reason: RejectReason

    passed = False


GuardResult = Union[GuardPass, GuardReject]


class GuardChain:
    """Read-only abuse checks run before any reward is granted."""

    def __init__(
        self,
        database: Database | None = None,
        identity: IdentityStore | None = None,
        clock: Callable[[], datetime] = utcnow,
        min_account_age: timedelta | None = None,
        daily_cap: int | None = None,
        max_activations_per_ip: int | None = None,
    ):
        self.db = database or db
        self.identity = identity or IdentityStore(self.db)
        self.clock = clock
        self.min_account_age = min_account_age or timedelta(
            hours=settings.referral_min_account_age_hours
        )
        self.daily_cap = daily_cap if daily_cap is not None else settings.referral_daily_activation_cap
        self.max_activations_per_ip = (
            max_activations_per_ip
            if max_activations_per_ip is not None
            else settings.referral_max_activations_per_ip
        )

    def evaluate(
        self,
        referred_user_id: str,
        action_type: str,
        ip_address: str | None = None,
    ) -> GuardResult:
        """Run every guard in order, short-circuiting on the first rejection.

        Args:
            referred_user_id: User who performed the action
            action_type: Action that triggered the evaluation (logged only)
            ip_address: Request IP, used only when no session IP is recorded

        Returns:
            GuardPass with the referral to activate, or GuardReject
        """
        now = self.clock()

        referral = self.find_pending_referral(referred_user_id)
        if referral is None:
            return self._reject(RejectReason.NO_REFERRAL, referred_user_id, action_type)

        if not self.is_account_old_enough(referred_user_id, now):
            return self._reject(
                RejectReason.TOO_NEW, referred_user_id, action_type, referral_id=referral.id
            )

        credited_today = self.count_referrer_activations_since(
            referral.referrer_user_id, _start_of_day(now)
        )
        if credited_today >= self.daily_cap:
            return self._reject(
                RejectReason.VELOCITY_EXCEEDED,
                referred_user_id,
                action_type,
                referral_id=referral.id,
                referrer_user_id=referral.referrer_user_id,
                credited_today=credited_today,
            )

        ip_address = self.identity.latest_session_ip(referred_user_id) or ip_address
        if ip_address:
            ip_activations = self.count_activations_from_ip(ip_address)
            if ip_activations >= self.max_activations_per_ip:
                return self._reject(
                    RejectReason.DUPLICATE_IP,
                    referred_user_id,
                    action_type,
                    referral_id=referral.id,
                    ip_activations=ip_activations,
                )

        return GuardPass(referral=referral, ip_address=ip_address)

    # ==================== INDIVIDUAL GUARDS ====================

    def find_pending_referral(self, referred_user_id: str) -> Referral | None:
        """Find the un-activated referral for a referred user."""
        with self.db.session() as session:
            return session.scalar(
                select(Referral).where(
                    Referral.referred_user_id == referred_user_id,
                    Referral.activated_at.is_(None),
                )
            )

    def is_account_old_enough(self, user_id: str, now: datetime) -> bool:
        created_at = self.identity.account_created_at(user_id)
        if created_at is None:
            return False
        return now - created_at >= self.min_account_age

    def count_referrer_activations_since(self, referrer_user_id: str, since: datetime) -> int:
        with self.db.session() as session:
            return session.scalar(
                select(func.count(Referral.id)).where(
                    Referral.referrer_user_id == referrer_user_id,
                    Referral.activated_at.is_not(None),
                    Referral.activated_at >= since,
                )
            ) or 0

    def count_activations_from_ip(self, ip_address: str) -> int:
        """Count activations recorded from an IP across all referrers."""
        with self.db.session() as session:
            return session.scalar(
                select(func.count(Referral.id)).where(
                    Referral.activation_ip == ip_address,
                    Referral.activated_at.is_not(None),
                )
            ) or 0

    def _reject(
        self,
        reason: RejectReason,
        referred_user_id: str,
        action_type: str,
        **context,
    ) -> GuardReject:
        logger.info(
            "referral_guard_rejected",
            reason=reason.value,
            referred_user_id=referred_user_id,
            action_type=action_type,
            **context,
        )
        return GuardReject(reason=reason)


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)
