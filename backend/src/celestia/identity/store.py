"""Read access to identity and session data owned by the auth service."""

from datetime import datetime

from sqlalchemy import select

from celestia.logging_config import get_logger
from celestia.storage.db import Database, db
from celestia.storage.models import User, UserSession, utcnow

logger = get_logger(__name__)


class IdentityStore:
    """Lookups of account creation time and session fingerprints."""

    def __init__(self, database: Database | None = None):
        self.db = database or db

    def get_user(self, user_id: str) -> User | None:
        with self.db.session() as session:
            return session.get(User, user_id)

    def account_created_at(self, user_id: str) -> datetime | None:
        """Return when the account was created, or None for unknown users."""
        with self.db.session() as session:
            return session.scalar(select(User.created_at).where(User.id == user_id))

    def latest_session_ip(self, user_id: str) -> str | None:
        """Return the IP address of the user's most recent session."""
        with self.db.session() as session:
            return session.scalar(
                select(UserSession.ip_address)
                .where(
                    UserSession.user_id == user_id,
                    UserSession.ip_address.is_not(None),
                )
                .order_by(UserSession.session_timestamp.desc(), UserSession.id.desc())
                .limit(1)
            )

    def record_session(self, user_id: str, ip_address: str | None) -> None:
        """Record a session fingerprint for the user.

        Normally written by the session middleware; exposed here for the
        action endpoint and the CLI.
        """
        with self.db.session() as session:
            session.add(
                UserSession(
                    user_id=user_id,
                    ip_address=ip_address,
                    session_timestamp=utcnow(),
                )
            )
