"""
Bearer token verification.

Tokens are issued elsewhere; this module only verifies them (HS256) and
turns the claims ``id``, ``role``, ``name`` and ``email`` into an Actor.
"""

from typing import Optional

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError as SchemaValidationError

from config import Settings
from errors import AuthenticationRequiredError, RoleNotPermittedError
from schemas.users import Actor, ActorRole

logger = structlog.get_logger().bind(component="auth")

bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str, settings: Settings) -> Actor:
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationRequiredError("Not authorized, token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationRequiredError("Not authorized, token invalid")

    if not claims.get("id"):
        raise AuthenticationRequiredError("Not authorized, token invalid")
    try:
        return Actor(
            id=str(claims["id"]),
            role=claims.get("role", ActorRole.USER.value),
            name=claims.get("name"),
            email=claims.get("email"),
        )
    except SchemaValidationError:
        raise AuthenticationRequiredError("Not authorized, token invalid")


async def get_current_actor(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    if credentials is None or not credentials.credentials:
        raise AuthenticationRequiredError()
    actor = decode_token(credentials.credentials, request.app.state.settings)
    structlog.contextvars.bind_contextvars(user_id=actor.id)
    return actor


def require_roles(*roles: ActorRole):
    """Dependency factory: the caller must hold one of ``roles``."""

    async def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            logger.warning("role_not_permitted", user_id=actor.id, role=actor.role.value)
            raise RoleNotPermittedError(actor.role.value, [r.value for r in roles])
        return actor

    return dependency


require_admin = require_roles(ActorRole.ADMIN)
require_vendor = require_roles(ActorRole.VENDOR)
require_vendor_or_admin = require_roles(ActorRole.VENDOR, ActorRole.ADMIN)
