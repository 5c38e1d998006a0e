#  Generation Broker - Auth Routes
#
#  Registration, login, logout and current-user profile.
#
#  Depends on: container.py, services/auth.py, middleware/auth.py
#  Used by:    app.py

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends, HTTPException
from starlette.requests import Request

from broker.container import Container
from broker.middleware.auth import get_bearer_token, get_current_user
from broker.models.records import Account
from broker.models.schemas import LoginRequest, LoginResponse, RegisterRequest, UserOut
from broker.rate_limit import limiter
from broker.services.auth import AuthService

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", status_code=201)
@limiter.limit("5/minute")
@inject
async def register(
    request: Request,
    body: RegisterRequest,
    auth: AuthService = Depends(Provide[Container.auth]),
) -> LoginResponse:
    """Register a new account. First account becomes admin."""
    try:
        result = await auth.register(body.username, body.password)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return LoginResponse(
        access_token=result["access_token"],
        token_type=result["token_type"],
        user=UserOut.from_account(result["user"]),
    )


@router.post("/login")
@limiter.limit("5/minute")
@inject
async def login(
    request: Request,
    body: LoginRequest,
    auth: AuthService = Depends(Provide[Container.auth]),
) -> LoginResponse:
    """Authenticate and receive an access token."""
    try:
        result = await auth.login(body.username, body.password)
    except (ValueError, PermissionError) as e:
        raise HTTPException(status_code=401, detail=str(e))
    return LoginResponse(
        access_token=result["access_token"],
        token_type=result["token_type"],
        user=UserOut.from_account(result["user"]),
    )


@router.post("/logout", status_code=204)
@inject
async def logout(
    token: str = Depends(get_bearer_token),
    _user: Account = Depends(get_current_user),
    auth: AuthService = Depends(Provide[Container.auth]),
):
    """Revoke the presented token until it expires."""
    await auth.logout(token)


@router.get("/me")
async def get_me(user: Account = Depends(get_current_user)) -> UserOut:
    """Get the current authenticated user's profile."""
    return UserOut.from_account(user)
