"""Referral API v1 endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from celestia.api.deps import get_referral_service
from celestia.api.rate_limit import limiter
from celestia.auth.middleware import require_auth
from celestia.identity.store import IdentityStore
from celestia.logging_config import get_logger
from celestia.referral.errors import ReferralError
from celestia.referral.service import ReferralService, referral_link
from celestia.settings import settings
from celestia.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/referral", tags=["referral"])


# ==================== MODELS ====================


class ReferralCodeResponse(BaseModel):
    """Response with user's referral code."""
    code: str
    link: str


class ReferralStatsResponse(BaseModel):
    """Response with referral statistics."""
    code: str
    link: str
    clicks: int
    conversions: int
    referrals_count: int
    activated_count: int
    pending_count: int
    last_activated_at: datetime | None = None
    current_tier: str | None = None
    next_tier: str | None = None
    referrals_to_next_tier: int | None = None


class CodeRequest(BaseModel):
    """Request carrying a referral code."""
    code: str = Field(..., min_length=4, max_length=20)


class ValidateCodeResponse(BaseModel):
    """Response from code validation."""
    valid: bool
    referrer_name: str | None = None
    reward_days: int = Field(default_factory=lambda: settings.referral_referred_extension_days)


class ClaimResponse(BaseModel):
    referral_id: int
    reward_days: int


# ==================== ENDPOINTS ====================


@router.get("/code", response_model=ReferralCodeResponse)
async def get_referral_code(
    user: User = Depends(require_auth),
    service: ReferralService = Depends(get_referral_service),
):
    """Get current user's referral code.

    Creates a new code if user doesn't have one.
    """
    referral_code = service.get_or_create_code(user.id)

    return ReferralCodeResponse(code=referral_code.code, link=referral_link(referral_code.code))


@router.get("/stats", response_model=ReferralStatsResponse)
async def get_referral_stats(
    user: User = Depends(require_auth),
    service: ReferralService = Depends(get_referral_service),
):
    """Get referral statistics and tier progress for current user."""
    return ReferralStatsResponse(**service.get_referral_stats(user.id))


@router.post("/validate", response_model=ValidateCodeResponse)
@limiter.limit("30/minute")
async def validate_referral_code(
    request: Request,
    body: CodeRequest,
    service: ReferralService = Depends(get_referral_service),
):
    """Validate a referral code.

    Used during signup to check a code and personalise the invite screen.
    """
    referral_code = service.validate_code(body.code)

    if not referral_code:
        return ValidateCodeResponse(valid=False)

    # First name only for privacy
    referrer = IdentityStore(service.db).get_user(referral_code.user_id)
    referrer_name = referrer.name.split()[0] if referrer and referrer.name else None

    return ValidateCodeResponse(valid=True, referrer_name=referrer_name)


@router.post("/claim", response_model=ClaimResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def claim_referral_code(
    request: Request,
    body: CodeRequest,
    user: User = Depends(require_auth),
    service: ReferralService = Depends(get_referral_service),
):
    """Attach the current (newly signed-up) user to a referrer."""
    try:
        referral = service.attach_referral(user.id, body.code)
    except ReferralError as e:
        logger.info("referral_claim_refused", user_id=user.id, reason=e.code)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code, "message": str(e)},
        )

    return ClaimResponse(
        referral_id=referral.id,
        reward_days=settings.referral_referred_extension_days,
    )


@router.post("/track-click")
@limiter.limit("60/minute")
async def track_referral_click(
    request: Request,
    body: CodeRequest,
    service: ReferralService = Depends(get_referral_service),
):
    """Track a click on a referral link.

    Called when someone visits /ref/CODE.
    """
    if not service.track_click(body.code):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Invalid referral code",
        )

    return {"success": True}


@router.get("/link")
async def get_shareable_link(
    user: User = Depends(require_auth),
    service: ReferralService = Depends(get_referral_service),
):
    """Get shareable referral link and ready-made share copy."""
    referral_code = service.get_or_create_code(user.id)
    link = referral_link(referral_code.code)
    user_name = user.name.split()[0] if user.name else "A friend"
    days = settings.referral_referred_extension_days

    return {
        "link": link,
        "code": referral_code.code,
        "share_text": f"{user_name} is giving you {days} days of Celestia+. Read your stars here: {link}",
        "email_subject": f"{days} free days of Celestia+ from {user_name}",
    }
