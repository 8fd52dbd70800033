"""Service providers for route dependencies (overridable in tests)."""

from functools import lru_cache

from celestia.notify.dispatcher import NotificationDispatcher
from celestia.referral.activation import ReferralActivationService
from celestia.referral.service import ReferralService


@lru_cache(maxsize=1)
def get_referral_service() -> ReferralService:
    return ReferralService()


@lru_cache(maxsize=1)
def get_activation_service() -> ReferralActivationService:
    return ReferralActivationService()


@lru_cache(maxsize=1)
def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher()
