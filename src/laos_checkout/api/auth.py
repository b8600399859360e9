"""Caller identity for the checkout endpoints."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Request


@dataclass
class AuthenticatedUser:
    id: str
    email: Optional[str] = None


class IdentityProvider(ABC):
    """Resolves the user behind an HTTP request."""

    @abstractmethod
    async def validate_request(self, request: Request) -> Optional[AuthenticatedUser]:
        """Return the authenticated user, or None for anonymous requests."""


class StaticTokenIdentityProvider(IdentityProvider):
    """
    Maps fixed bearer tokens to user ids.

    For development and tests only; production deployments plug in the
    session provider of the hosting application.
    """

    def __init__(self, tokens: Optional[Dict[str, str]] = None):
        self._tokens = dict(tokens or {})

    def add_token(self, token: str, user_id: str) -> None:
        self._tokens[token] = user_id

    async def validate_request(self, request: Request) -> Optional[AuthenticatedUser]:
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token:
            return None
        user_id = self._tokens.get(token.strip())
        if user_id is None:
            return None
        return AuthenticatedUser(id=user_id)
