"""
Email/password authentication provider.

Accounts live in the store's Redis under ``auth:users`` (bcrypt hashes).
Signed-in sessions are JWTs; sign-out revokes the token id until it would
have expired anyway. Observers registered with on_auth_state_changed are
told about every sign-in and sign-out, which is how dashboard sessions are
started and stopped.
"""
import inspect
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Union

import bcrypt
import jwt
import structlog
from fastapi import HTTPException, Request
from pydantic import TypeAdapter, ValidationError, EmailStr

from tracker import store_client
from tracker.config import get_settings

settings = get_settings()
logger = structlog.get_logger("auth")

JWT_ALGORITHM = "HS256"
SESSION_COOKIE = "tracker_session"
USERS_KEY = "auth:users"

_email_adapter = TypeAdapter(EmailStr)


class AuthError(Exception):
    """Sign-in/sign-up failure with a message fit for the login form."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class User:
    uid: str
    email: str


AuthObserver = Callable[[Optional[User], Optional[User]], Union[None, Awaitable[None]]]


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against its hash."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        return False


def _revoked_key(jti: str) -> str:
    return f"auth:revoked:{jti}"


class AuthProvider:
    """Sign-up / sign-in / sign-out with a session observer."""

    def __init__(self):
        self._observers: list[AuthObserver] = []

    def on_auth_state_changed(self, observer: AuthObserver) -> None:
        """``observer(signed_in_user, signed_out_user)``; exactly one is set."""
        self._observers.append(observer)

    async def _notify(self, signed_in: Optional[User], signed_out: Optional[User]) -> None:
        for observer in self._observers:
            result = observer(signed_in, signed_out)
            if inspect.isawaitable(result):
                await result

    # ---- tokens ----

    def create_token(self, user: User) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user.uid,
            "email": user.email,
            "type": "dashboard_session",
            "jti": secrets.token_hex(16),
            "exp": now + timedelta(hours=settings.session_expiry_hours),
            "iat": now,
        }
        return jwt.encode(payload, settings.secret_key, algorithm=JWT_ALGORITHM)

    def decode_token(self, token: str) -> Optional[dict]:
        try:
            payload = jwt.decode(token, settings.secret_key, algorithms=[JWT_ALGORITHM])
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError:
            return None
        if payload.get("type") != "dashboard_session":
            return None
        return payload

    async def verify_token(self, token: str) -> Optional[User]:
        payload = self.decode_token(token)
        if payload is None:
            return None
        r = await store_client.get_redis()
        if await r.exists(_revoked_key(payload["jti"])):
            return None
        return User(uid=payload["sub"], email=payload["email"])

    # ---- accounts ----

    async def sign_up(self, email: str, password: str, confirm_password: str) -> tuple[User, str]:
        if not email or not password or not confirm_password:
            raise AuthError("Please fill in all fields")
        if len(password) < settings.min_password_length:
            raise AuthError(f"Password must be at least {settings.min_password_length} characters")
        if password != confirm_password:
            raise AuthError("Passwords do not match")
        email = self._normalize_email(email)

        user = User(uid=secrets.token_hex(12), email=email)
        record = {
            "uid": user.uid,
            "email": email,
            "password_hash": hash_password(password),
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        r = await store_client.get_redis()
        created = await r.hsetnx(USERS_KEY, email, json.dumps(record))
        if not created:
            raise AuthError("The email address is already in use by another account.")

        logger.info("User registered", email=email)
        token = self.create_token(user)
        await self._notify(user, None)
        return user, token

    async def sign_in(self, email: str, password: str) -> tuple[User, str]:
        if not email or not password:
            raise AuthError("Please enter email and password")
        email = self._normalize_email(email)

        r = await store_client.get_redis()
        data = await r.hget(USERS_KEY, email)
        record = json.loads(data) if data else None
        if record is None or not verify_password(password, record["password_hash"]):
            logger.warning("Sign-in rejected", email=email)
            raise AuthError("Invalid email or password.")

        user = User(uid=record["uid"], email=email)
        logger.info("User signed in", email=email)
        token = self.create_token(user)
        await self._notify(user, None)
        return user, token

    async def sign_out(self, token: str) -> Optional[User]:
        payload = self.decode_token(token)
        if payload is None:
            return None
        ttl = max(1, int(payload["exp"] - time.time()))
        r = await store_client.get_redis()
        await r.set(_revoked_key(payload["jti"]), "1", ex=ttl)

        user = User(uid=payload["sub"], email=payload["email"])
        logger.info("User signed out", email=user.email)
        await self._notify(None, user)
        return user

    @staticmethod
    def _normalize_email(email: str) -> str:
        try:
            return _email_adapter.validate_python(email.strip()).lower()
        except ValidationError:
            raise AuthError("The email address is badly formatted.") from None


auth_provider = AuthProvider()


def get_token_from_request(request: Request) -> Optional[str]:
    """Extract session token from request (header or cookie)."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return request.cookies.get(SESSION_COOKIE)


async def get_current_user(request: Request) -> User:
    """Dependency that requires a signed-in user."""
    token = get_token_from_request(request)
    if not token:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = await auth_provider.verify_token(token)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired session",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
