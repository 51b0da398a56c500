"""
Auth Boundary
=============
Caller identity and role claims.

Authentication happens in the external auth service; this module only
turns a resolved identity into an Actor the core can authorize against.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from postgrest.exceptions import APIError

from errors import AuthorizationError, StoreUnavailable


logger = logging.getLogger(__name__)


class Role(Enum):
    """Staff roles."""
    WAITER = "waiter"
    KITCHEN = "kitchen"
    CASHIER = "cashier"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller: account id plus role claim."""
    user_id: Optional[str]
    role: Role

    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def parse_role(value: Any) -> Role:
    """
    Parse a role claim.

    Raises:
        AuthorizationError: If the claim is missing or unknown
    """
    if isinstance(value, Role):
        return value

    if not value:
        raise AuthorizationError("Missing role claim")

    try:
        return Role(str(value).strip().lower())
    except ValueError:
        raise AuthorizationError(f"Unknown role claim: {value}")


class SupabaseAuthResolver:
    """Resolves bearer tokens through the Supabase auth API."""

    def __init__(self, client, timeout: float = 5.0):
        self.client = client
        self.timeout = timeout

    async def resolve(self, token: str) -> Actor:
        """
        Resolve a bearer token to an Actor.

        Args:
            token: Access token issued by the auth service

        Returns:
            Actor with the user's id and role claim

        Raises:
            AuthorizationError: Token rejected or no usable role claim
            StoreUnavailable: Auth service did not answer in time
        """
        if not token:
            raise AuthorizationError("Missing access token")

        loop = asyncio.get_running_loop()

        try:
            response = await asyncio.wait_for(
                loop.run_in_executor(None, lambda: self.client.auth.get_user(token)),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise StoreUnavailable("Auth service timeout")
        except APIError as e:
            raise AuthorizationError(f"Token rejected: {e.message}")
        except Exception as e:
            logger.warning(f"Token resolution failed: {str(e)}")
            raise AuthorizationError("Token rejected")

        user = getattr(response, "user", None)
        if user is None:
            raise AuthorizationError("Token rejected")

        app_metadata = getattr(user, "app_metadata", None) or {}
        user_metadata = getattr(user, "user_metadata", None) or {}
        role = parse_role(app_metadata.get("role") or user_metadata.get("role"))

        return Actor(user_id=str(user.id), role=role)


class LocalAuthResolver:
    """
    Token resolver for local runs against the in-memory store.

    Tokens have the form ``<role>:<user_id>``.
    """

    async def resolve(self, token: str) -> Actor:
        if not token or ":" not in token:
            raise AuthorizationError("Malformed local token")

        role, user_id = token.split(":", 1)
        return Actor(user_id=user_id or None, role=parse_role(role))
