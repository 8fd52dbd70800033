"""Bearer-token identity for FastAPI routes.

Tokens are issued by the identity service; this module only verifies them
and resolves the user they name.
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from celestia.identity.store import IdentityStore
from celestia.logging_config import get_logger
from celestia.settings import settings
from celestia.storage.models import User

logger = get_logger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


def get_identity_store() -> IdentityStore:
    return IdentityStore()


def decode_token(token: str) -> str | None:
    """Return the user id (``sub`` claim) of a valid token, else None."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.info("token_rejected", error=str(e))
        return None
    subject = payload.get("sub")
    return str(subject) if subject else None


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    identity: IdentityStore = Depends(get_identity_store),
) -> User | None:
    """Get current authenticated user.

    Returns:
        User or None if not authenticated
    """
    if not credentials:
        return None

    user_id = decode_token(credentials.credentials)
    if not user_id:
        return None

    user = identity.get_user(user_id)
    if user:
        request.state.user = user
    return user


def require_auth(user: User | None = Depends(get_current_user)) -> User:
    """Require authentication - raises 401 if not authenticated.

    Raises:
        HTTPException: 401 if not authenticated
    """
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
