"""Webhook endpoints for external services."""

from datetime import timedelta

from fastapi import APIRouter, HTTPException, Request, status
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from celestia.logging_config import get_logger
from celestia.payments.stripe_service import handle_subscription_updated, verify_webhook_signature
from celestia.settings import settings
from celestia.storage.db import Database, db
from celestia.storage.models import ProcessedWebhookEvent, utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SUBSCRIPTION_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
}


def is_event_processed(event_id: str, source: str, database: Database | None = None) -> bool:
    """Check if a webhook event has already been processed."""
    with (database or db).session() as session:
        existing = session.scalar(
            select(ProcessedWebhookEvent.id).where(
                ProcessedWebhookEvent.event_id == event_id,
                ProcessedWebhookEvent.source == source,
            )
        )
        return existing is not None


def mark_event_processed(
    event_id: str,
    event_type: str,
    source: str,
    database: Database | None = None,
) -> None:
    """Mark a webhook event as processed.

    A concurrent duplicate delivery hitting the unique constraint is ignored.
    """
    try:
        with (database or db).session() as session:
            session.add(
                ProcessedWebhookEvent(
                    event_id=event_id,
                    event_type=event_type,
                    source=source,
                    processed_at=utcnow(),
                )
            )
    except IntegrityError:
        logger.info("webhook_event_already_marked", event_id=event_id, source=source)


def cleanup_old_events(days: int = 30, database: Database | None = None) -> int:
    """Remove webhook events older than specified days.

    Returns:
        Number of deleted events
    """
    cutoff = utcnow() - timedelta(days=days)
    with (database or db).session() as session:
        result = session.execute(
            delete(ProcessedWebhookEvent).where(ProcessedWebhookEvent.processed_at < cutoff)
        )
        return result.rowcount


@router.post("/stripe")
async def stripe_webhook(request: Request):
    """Handle Stripe subscription webhooks.

    Verifies the signature and mirrors subscription periods locally.
    Uses database-backed idempotency to prevent duplicate processing.
    """
    if not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhooks not configured",
        )

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = verify_webhook_signature(payload, sig_header)
    except ValueError as e:
        logger.warning("stripe_webhook_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    event_id = event.get("id", "")
    event_type = event.get("type", "")

    if event_type not in SUBSCRIPTION_EVENTS:
        logger.info("stripe_webhook_unhandled", event_type=event_type)
        return {"received": True}

    if is_event_processed(event_id, "stripe"):
        logger.info("stripe_webhook_duplicate", event_id=event_id)
        return {"received": True, "duplicate": True}

    subscription = event["data"]["object"]
    try:
        handle_subscription_updated(subscription)
    except Exception as e:
        logger.error("stripe_subscription_sync_error", error=str(e), event_id=event_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error processing subscription event",
        )

    # Mark as processed AFTER successful handling
    mark_event_processed(event_id, event_type, "stripe")
    logger.info("stripe_subscription_event_processed", event_id=event_id, event_type=event_type)

    return {"received": True}
