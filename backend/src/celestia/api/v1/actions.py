"""In-app action endpoint.

Qualifying actions (finishing a reading, writing a journal entry, ...) are
reported here; each one is also an activation event for the referral pipeline.
The action always succeeds from the user's point of view.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from celestia.api.deps import get_activation_service
from celestia.auth.middleware import get_identity_store, require_auth
from celestia.identity.store import IdentityStore
from celestia.logging_config import get_logger
from celestia.referral.activation import ReferralActivationService
from celestia.referral.errors import LedgerWriteError
from celestia.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/actions", tags=["actions"])


class ActionRequest(BaseModel):
    action_type: str = Field(..., min_length=1, max_length=50, pattern=r"^[a-z_]+$")


class ActionResponse(BaseModel):
    recorded: bool = True


@router.post("", response_model=ActionResponse)
def record_action(
    request: Request,
    body: ActionRequest,
    background_tasks: BackgroundTasks,
    user: User = Depends(require_auth),
    identity: IdentityStore = Depends(get_identity_store),
    activation: ReferralActivationService = Depends(get_activation_service),
):
    """Record a user action and evaluate referral activation for it."""
    client_ip = request.client.host if request.client else None
    identity.record_session(user.id, client_ip)

    try:
        result = activation.process_activation(
            user.id,
            body.action_type,
            schedule=background_tasks.add_task,
            ip_address=client_ip,
        )
    except (LedgerWriteError, SQLAlchemyError) as e:
        # Referral stays pending and is retried on the next action
        logger.error(
            "referral_activation_deferred",
            user_id=user.id,
            error=str(e),
            error_type=type(e).__name__,
        )
    else:
        logger.debug(
            "referral_activation_evaluated",
            user_id=user.id,
            status=result.status.value,
            reason=result.reason.value if result.reason else None,
        )

    return ActionResponse()
