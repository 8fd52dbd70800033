"""Request authentication."""

from celestia.auth.middleware import get_current_user, require_auth

__all__ = ["get_current_user", "require_auth"]
