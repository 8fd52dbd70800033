"""Stripe integration: subscription period extension and webhook mirroring."""

from datetime import datetime, timedelta, timezone
from typing import Any

import stripe
from sqlalchemy import select

from celestia.logging_config import get_logger
from celestia.settings import settings
from celestia.storage.db import Database, db
from celestia.storage.models import SubscriptionRecord, utcnow

logger = get_logger(__name__)

# Subscription statuses Stripe reports, mapped onto local ones
STRIPE_STATUS_MAP = {
    "trialing": "trial",
    "active": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "canceled": "cancelled",
    "incomplete_expired": "cancelled",
}


class PaymentProcessorError(Exception):
    """Raised when Stripe cannot be reached or rejects a request."""


def _configure_stripe() -> None:
    if not settings.stripe_secret_key:
        raise PaymentProcessorError("Stripe not configured")
    stripe.api_key = settings.stripe_secret_key
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.stripe_timeout_seconds)


def _from_timestamp(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _period_end(subscription: Any) -> datetime | None:
    """Read the end of the current billing period from a Stripe subscription.

    Newer API versions report the period on the subscription items instead
    of the subscription itself. A pushed-back billing date shows up as
    ``trial_end``, so the latest of all of them is the next billing date.
    """
    items = (subscription.get("items") or {}).get("data") or []
    ends = [item.get("current_period_end") for item in items if item.get("current_period_end")]
    ends += [
        value
        for value in (subscription.get("current_period_end"), subscription.get("trial_end"))
        if value
    ]
    return _from_timestamp(max(ends)) if ends else None


class StripeSubscriptionGateway:
    """Reads and extends Stripe-managed billing periods."""

    def get_period_end(self, subscription_id: str) -> datetime:
        """Get the end of the current period tracked by Stripe.

        Raises:
            PaymentProcessorError: If Stripe is unreachable or the period is unknown
        """
        _configure_stripe()
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise PaymentProcessorError(f"Could not retrieve subscription {subscription_id}: {e}") from e

        period_end = _period_end(subscription)
        if period_end is None:
            raise PaymentProcessorError(f"Subscription {subscription_id} has no billing period")
        return period_end

    def extend_period(
        self,
        subscription_id: str,
        days: int,
        idempotency_key: str | None = None,
    ) -> datetime:
        """Push the next billing date of a subscription back by ``days``.

        Stripe has no direct period edit; setting ``trial_end`` without
        proration defers the next invoice, which is a free extension.

        Args:
            subscription_id: Stripe subscription ID
            days: Number of days to add
            idempotency_key: Base key for the request; the target date is appended
                so a retry computed from a different period gets its own key

        Returns:
            New period end as reported back by Stripe
        """
        current_end = self.get_period_end(subscription_id)
        new_end = max(current_end, utcnow()) + timedelta(days=days)

        trial_end = int(new_end.replace(tzinfo=timezone.utc).timestamp())
        params: dict[str, Any] = {
            "trial_end": trial_end,
            "proration_behavior": "none",
        }
        if idempotency_key:
            # Stripe rejects a reused key whose parameters differ
            params["idempotency_key"] = f"{idempotency_key}-{trial_end}"

        try:
            updated = stripe.Subscription.modify(subscription_id, **params)
        except stripe.StripeError as e:
            raise PaymentProcessorError(f"Could not extend subscription {subscription_id}: {e}") from e

        confirmed_end = _period_end(updated) or new_end

        logger.info(
            "stripe_subscription_extended",
            subscription_id=subscription_id,
            days=days,
            period_end=confirmed_end.isoformat(),
        )

        return max(confirmed_end, new_end)


def verify_webhook_signature(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify and parse a Stripe webhook event.

    Args:
        payload: Raw request body
        sig_header: Stripe-Signature header value

    Returns:
        Verified Stripe event

    Raises:
        ValueError: If signature is invalid
    """
    if not settings.stripe_webhook_secret:
        raise ValueError("Stripe webhook secret not configured")

    try:
        return stripe.Webhook.construct_event(
            payload,
            sig_header,
            settings.stripe_webhook_secret,
        )
    except stripe.SignatureVerificationError:
        raise ValueError("Invalid webhook signature")


def handle_subscription_updated(subscription: Any, database: Database | None = None) -> bool:
    """Mirror a Stripe subscription update into the local record.

    The period end only ever moves forward here, the same rule the referral
    rewards follow, so a late webhook cannot undo an extension.

    Returns:
        True if a local record was updated
    """
    database = database or db
    subscription_id = subscription["id"]
    period_end = _period_end(subscription)
    trial_end = _from_timestamp(subscription.get("trial_end"))
    status = STRIPE_STATUS_MAP.get(subscription.get("status") or "")

    with database.session() as session:
        record = session.scalar(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.stripe_subscription_id == subscription_id)
            .with_for_update()
        )
        if record is None:
            customer_id = subscription.get("customer")
            if customer_id:
                record = session.scalar(
                    select(SubscriptionRecord)
                    .where(SubscriptionRecord.stripe_customer_id == customer_id)
                    .with_for_update()
                )
        if record is None:
            logger.warning("stripe_subscription_unknown", subscription_id=subscription_id)
            return False

        record.stripe_subscription_id = subscription_id
        if status:
            record.status = status
        if period_end and (record.current_period_end is None or period_end > record.current_period_end):
            record.current_period_end = period_end
        if trial_end and (record.trial_ends_at is None or trial_end > record.trial_ends_at):
            record.trial_ends_at = trial_end
        record.updated_at = utcnow()

        logger.info(
            "stripe_subscription_mirrored",
            user_id=record.user_id,
            subscription_id=subscription_id,
            status=record.status,
            period_end=record.current_period_end.isoformat() if record.current_period_end else None,
        )
        return True
