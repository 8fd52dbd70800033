"""Referral module for Celestia.

A referred user's first qualifying action after signup activates the referral:
- Referrer gets 7 extra days of Celestia+
- Referred user gets 30 days of Celestia+
- Referrers reaching a tier milestone get a one-off bonus
"""

from celestia.referral.activation import (
    ActivationEvent,
    ActivationResult,
    ActivationStatus,
    ReferralActivationService,
)
from celestia.referral.errors import LedgerWriteError, ReferralError
from celestia.referral.models import Referral, ReferralCode, ReferralTierReward
from celestia.referral.service import ReferralService

__all__ = [
    "ActivationEvent",
    "ActivationResult",
    "ActivationStatus",
    "LedgerWriteError",
    "Referral",
    "ReferralActivationService",
    "ReferralCode",
    "ReferralError",
    "ReferralService",
    "ReferralTierReward",
]
