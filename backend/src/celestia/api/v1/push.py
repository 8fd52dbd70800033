"""Push token registration endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from celestia.api.deps import get_dispatcher
from celestia.auth.middleware import require_auth
from celestia.notify.dispatcher import NotificationDispatcher
from celestia.storage.models import User

router = APIRouter(prefix="/push", tags=["push"])


class RegisterTokenRequest(BaseModel):
    token: str = Field(..., min_length=8, max_length=512)
    platform: str | None = None


@router.post("/tokens", status_code=status.HTTP_201_CREATED)
async def register_push_token(
    body: RegisterTokenRequest,
    user: User = Depends(require_auth),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Register the calling device for push notifications."""
    token = dispatcher.register_token(user.id, body.token, body.platform)
    return {"registered": True, "platform": token.platform}


@router.delete("/tokens/{token}")
async def revoke_push_token(
    token: str,
    user: User = Depends(require_auth),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Stop sending notifications to a device of the current user."""
    if token not in dispatcher.active_tokens(user.id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown token")
    dispatcher.revoke_token(token)
    return {"revoked": True}
