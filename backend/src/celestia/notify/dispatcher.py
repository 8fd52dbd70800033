"""Best-effort push notification dispatch.

Nothing in here raises to the caller: a notification that cannot be delivered
is logged and dropped.
"""

from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from celestia.logging_config import get_logger
from celestia.notify.push_sender import (
    FcmPushSender,
    NoPushEndpointError,
    NotificationError,
    PushDeliveryError,
    TokenUnregisteredError,
)
from celestia.notify.templates import render
from celestia.storage.db import Database, db
from celestia.storage.models import PushToken, utcnow

logger = get_logger(__name__)

ALLOWED_PLATFORMS = {"android", "ios", "web", "unknown"}


class PushSender(Protocol):
    def send(self, token: str, title: str, body: str, data: dict[str, Any] | None = None) -> None: ...


class NotificationDispatcher:
    """Renders templates and fans them out to a user's devices."""

    def __init__(self, database: Database | None = None, sender: PushSender | None = None):
        self.db = database or db
        self._sender = sender

    @property
    def sender(self) -> PushSender:
        if self._sender is None:
            self._sender = FcmPushSender()
        return self._sender

    def notify(self, user_id: str, template_key: str, context: dict[str, Any]) -> bool:
        """Send a templated push notification to every active device of a user.

        Args:
            user_id: Recipient
            template_key: Key in ``celestia.notify.templates.TEMPLATES``
            context: Values the template needs

        Returns:
            True if at least one device accepted the message
        """
        try:
            message = render(template_key, context)
            tokens = self.active_tokens(user_id)
            if not tokens:
                raise NoPushEndpointError(user_id)

            delivered = 0
            for token in tokens:
                try:
                    self.sender.send(token, message.title, message.body, message.data)
                    delivered += 1
                except TokenUnregisteredError:
                    self.revoke_token(token)
                except PushDeliveryError as e:
                    logger.warning(
                        "push_delivery_failed",
                        user_id=user_id,
                        template=template_key,
                        error=str(e),
                    )

            if not delivered:
                raise PushDeliveryError(f"No device accepted {template_key} for user {user_id}")

        except NotificationError as e:
            logger.warning(
                "notification_not_delivered",
                user_id=user_id,
                template=template_key,
                error=str(e),
            )
            return False
        except Exception as e:
            # Fire-and-forget boundary: the caller's work is already committed
            logger.error(
                "notification_error",
                user_id=user_id,
                template=template_key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        logger.info(
            "notification_sent",
            user_id=user_id,
            template=template_key,
            devices=delivered,
        )
        return True

    # ==================== PUSH TOKENS ====================

    def active_tokens(self, user_id: str) -> list[str]:
        with self.db.session() as session:
            return list(
                session.scalars(
                    select(PushToken.token).where(
                        PushToken.user_id == user_id,
                        PushToken.revoked.is_(False),
                    )
                )
            )

    def register_token(self, user_id: str, token: str, platform: str | None = None) -> PushToken:
        """Register or re-assign a device token to a user."""
        if not token:
            raise ValueError("token is required")
        platform = (platform or "unknown").strip().lower()
        if platform not in ALLOWED_PLATFORMS:
            platform = "unknown"

        try:
            return self._upsert_token(user_id, token, platform)
        except IntegrityError:
            # Concurrent registration of the same token; the second pass updates it
            return self._upsert_token(user_id, token, platform)

    def _upsert_token(self, user_id: str, token: str, platform: str) -> PushToken:
        with self.db.session() as session:
            existing = session.scalar(select(PushToken).where(PushToken.token == token))
            if existing is None:
                existing = PushToken(user_id=user_id, token=token, platform=platform)
                session.add(existing)
            else:
                existing.user_id = user_id
                existing.platform = platform
                existing.revoked = False
                existing.last_seen_at = utcnow()
            session.flush()
            return existing

    def revoke_token(self, token: str) -> None:
        with self.db.session() as session:
            session.execute(
                update(PushToken)
                .where(PushToken.token == token)
                .values(revoked=True, updated_at=utcnow())
            )
        logger.info("push_token_revoked", token_prefix=token[:12])
