"""Referral pipeline exceptions."""


class ReferralError(Exception):
    """Raised when a referral code cannot be used (unknown, self-referral, ...)."""

    def __init__(self, message: str, code: str = "invalid_referral"):
        self.code = code
        super().__init__(message)


class LedgerWriteError(Exception):
    """Raised when the activation ledger cannot be written.

    Fatal for the invocation: the referral stays eligible and the caller
    retries on the next qualifying action.
    """

    def __init__(self, referral_id: int, reason: str):
        self.referral_id = referral_id
        self.reason = reason
        super().__init__(f"Activation ledger write failed for referral {referral_id}: {reason}")
