"""
Dashboard authentication routes: register, login, logout, session check.

Failures return the provider's message in ``detail`` so the page can show
it next to the form without clearing the inputs.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from slowapi import Limiter
from slowapi.util import get_remote_address

from tracker.config import get_settings
from tracker.schemas import LoginRequest, RegisterRequest, SessionResponse
from tracker.services.auth import (
    SESSION_COOKIE,
    AuthError,
    User,
    auth_provider,
    get_current_user,
    get_token_from_request,
)

settings = get_settings()
router = APIRouter(prefix="/api/v1/auth", tags=["auth"])

limiter = Limiter(key_func=get_remote_address)


def _session_response(response: Response, user: User, token: str) -> SessionResponse:
    expires_in = settings.session_expiry_hours * 3600
    response.set_cookie(
        key=SESSION_COOKIE,
        value=token,
        httponly=True,
        secure=False,  # Set to True in production with HTTPS
        samesite="lax",
        max_age=expires_in,
    )
    return SessionResponse(
        access_token=token,
        expires_in=expires_in,
        email=user.email,
        uid=user.uid,
    )


@router.post("/register", response_model=SessionResponse)
@limiter.limit(f"{settings.rate_limit_auth}/minute")
async def register(request: Request, body: RegisterRequest, response: Response):
    """Create an account and sign it in."""
    try:
        user, token = await auth_provider.sign_up(body.email, body.password, body.confirm_password)
    except AuthError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return _session_response(response, user, token)


@router.post("/login", response_model=SessionResponse)
@limiter.limit(f"{settings.rate_limit_auth}/minute")
async def login(request: Request, body: LoginRequest, response: Response):
    """Sign in with email and password."""
    try:
        user, token = await auth_provider.sign_in(body.email, body.password)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=e.message)
    return _session_response(response, user, token)


@router.post("/logout")
async def logout(request: Request, response: Response):
    """Sign out, stop the dashboard session and clear the cookie."""
    token = get_token_from_request(request)
    if token:
        await auth_provider.sign_out(token)
    response.delete_cookie(key=SESSION_COOKIE, httponly=True, samesite="lax")
    return {"message": "Logged out successfully"}


@router.get("/session")
async def current_session(user: User = Depends(get_current_user)):
    """Who is signed in. 401 when nobody is."""
    return {"authenticated": True, "email": user.email, "uid": user.uid}
