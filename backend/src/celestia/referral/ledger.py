"""Activation ledger: the single place a referral becomes activated."""

from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError

from celestia.logging_config import get_logger
from celestia.referral.errors import LedgerWriteError
from celestia.referral.models import Referral
from celestia.settings import settings
from celestia.storage.db import Database, db
from celestia.storage.models import utcnow

logger = get_logger(__name__)


class ActivationLedger:
    """Compare-and-set writes on ``referrals.activated_at``.

    Both operations are a single conditional UPDATE, so two concurrent
    invocations can never both win, across processes and restarts.
    """

    def __init__(
        self,
        database: Database | None = None,
        clock: Callable[[], datetime] = utcnow,
        claim_ttl: timedelta | None = None,
    ):
        self.db = database or db
        self.clock = clock
        self.claim_ttl = claim_ttl or timedelta(seconds=settings.referral_claim_ttl_seconds)

    def claim(self, referral_id: int) -> bool:
        """Reserve a pending referral for one in-flight activation.

        A claim older than the TTL is considered abandoned (crashed worker)
        and can be taken over.

        Returns:
            True if this caller holds the claim

        Raises:
            LedgerWriteError: If the datastore is unavailable
        """
        now = self.clock()
        stale_before = now - self.claim_ttl

        try:
            with self.db.session() as session:
                result = session.execute(
                    update(Referral)
                    .where(
                        Referral.id == referral_id,
                        Referral.activated_at.is_(None),
                        or_(Referral.claimed_at.is_(None), Referral.claimed_at < stale_before),
                    )
                    .values(claimed_at=now)
                    .execution_options(synchronize_session=False)
                )
                claimed = result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error("referral_claim_failed", referral_id=referral_id, error=str(e))
            raise LedgerWriteError(referral_id, str(e)) from e

        if not claimed:
            logger.info("referral_claim_contended", referral_id=referral_id)
        return claimed

    def mark_activated(
        self,
        referral_id: int,
        ip_address: str | None = None,
        action_type: str | None = None,
    ) -> bool:
        """Mark a referral activated; a no-op if it already is.

        Args:
            referral_id: Referral to mark
            ip_address: Referred user's session IP, kept for IP dedup
            action_type: Action that triggered the activation

        Returns:
            True if this call performed the NULL -> timestamp transition

        Raises:
            LedgerWriteError: If the datastore is unavailable
        """
        now = self.clock()

        try:
            with self.db.session() as session:
                result = session.execute(
                    update(Referral)
                    .where(
                        Referral.id == referral_id,
                        Referral.activated_at.is_(None),
                    )
                    .values(
                        activated_at=now,
                        activation_ip=ip_address,
                        action_type=action_type,
                    )
                    .execution_options(synchronize_session=False)
                )
                transitioned = result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error("referral_ledger_write_failed", referral_id=referral_id, error=str(e))
            raise LedgerWriteError(referral_id, str(e)) from e

        if transitioned:
            logger.info("referral_activated", referral_id=referral_id, action_type=action_type)
        else:
            logger.info("referral_already_activated", referral_id=referral_id)
        return transitioned
