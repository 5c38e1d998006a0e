#  Generation Broker - Auth Middleware
#
#  FastAPI dependencies for JWT authentication.
#  get_current_user: validates Bearer token and denylist, returns the Account.
#  get_bearer_token: raw token for logout.
#  require_admin: wraps get_current_user + role check.
#
#  Depends on: services/auth.py, container.py
#  Used by:    app.py, routes/*

import logging

import jwt
from dependency_injector.wiring import inject, Provide
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from broker.container import Container
from broker.models.enums import UserRole
from broker.models.records import Account
from broker.services.auth import AuthService

logger = logging.getLogger("broker.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_bearer_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> str:
    if not credentials:
        raise _unauthorized("Not authenticated")
    return credentials.credentials


@inject
async def get_current_user(
    token: str = Depends(get_bearer_token),
    auth: AuthService = Depends(Provide[Container.auth]),
) -> Account:
    """Validate Bearer token and return the account. Raises 401 on failure."""
    try:
        payload = auth.decode_token(token)
    except jwt.PyJWTError:
        raise _unauthorized("Invalid or expired token")

    if payload.get("type") != "access":
        raise _unauthorized("Invalid token type")

    if await auth.is_denylisted(token):
        raise _unauthorized("Token has been revoked")

    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise _unauthorized("Invalid token subject")

    user = await auth.get_user(user_id)
    if not user or not user.is_active:
        raise _unauthorized("User not found or disabled")
    return user


async def require_admin(user: Account = Depends(get_current_user)) -> Account:
    """Require the current user to have admin role."""
    if user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user
