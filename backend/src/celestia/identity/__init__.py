"""Identity and session lookups."""

from celestia.identity.store import IdentityStore

__all__ = ["IdentityStore"]
