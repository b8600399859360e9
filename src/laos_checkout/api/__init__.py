"""HTTP surface of the checkout service."""
from .app import create_app
from .auth import AuthenticatedUser, IdentityProvider, StaticTokenIdentityProvider

__all__ = [
    "AuthenticatedUser",
    "IdentityProvider",
    "StaticTokenIdentityProvider",
    "create_app",
]
