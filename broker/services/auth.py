#  Generation Broker - Auth Service
#
#  JWT encode/decode, registration, username/password login, and logout through a
#  Redis denylist whose entries expire with the token.
#
#  Depends on: cache.py, config.py, services/accounts.py
#  Used by:    container.py, routes/auth.py, middleware/auth.py

import logging
import time
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt

from broker.cache import Cache, denylist_key
from broker.config import (
    AUTH_ACCESS_TOKEN_EXPIRE_MINUTES,
    AUTH_ALGORITHM,
    AUTH_ALLOW_REGISTRATION,
    AUTH_SECRET_KEY,
)
from broker.exceptions import NotFoundError
from broker.models.records import Account
from broker.services.accounts import AccountStore, verify_password

logger = logging.getLogger("broker.auth")

# Pre-computed dummy hash for timing-safe login
_DUMMY_HASH = bcrypt.hashpw(b"dummy-password-for-timing", bcrypt.gensalt()).decode()


class AuthService:
    """Login, token issue/validation and logout."""

    def __init__(self, accounts: AccountStore, cache: Cache):
        self._accounts = accounts
        self._cache = cache

    # ------------------------------------------------------------------
    # JWT helpers
    # ------------------------------------------------------------------

    @staticmethod
    def create_access_token(user_id: int, role: str) -> str:
        expire = datetime.now(timezone.utc) + timedelta(minutes=AUTH_ACCESS_TOKEN_EXPIRE_MINUTES)
        payload = {
            "sub": str(user_id),
            "role": role,
            "type": "access",
            "exp": expire,
        }
        return jwt.encode(payload, AUTH_SECRET_KEY, algorithm=AUTH_ALGORITHM)

    @staticmethod
    def decode_token(token: str) -> dict:
        """Decode and validate a JWT. Raises jwt.PyJWTError on failure."""
        return jwt.decode(token, AUTH_SECRET_KEY, algorithms=[AUTH_ALGORITHM])

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(self, username: str, password: str) -> dict:
        """Create an account and log it in. The first account becomes admin."""
        if not AUTH_ALLOW_REGISTRATION:
            raise PermissionError("Registration is disabled")
        if await self._accounts.get_by_username(username):
            raise ValueError("Username is already taken")

        account = await self._accounts.create(username, password, first_user_admin=True)
        logger.info("User registered: %s (role=%s)", account.id, account.role.value)
        return {
            "access_token": self.create_access_token(account.id, account.role.value),
            "token_type": "bearer",
            "user": account,
        }

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    async def login(self, username: str, password: str) -> dict:
        account = await self._accounts.get_by_username(username)
        if not account or not account.password_hash:
            verify_password(password, _DUMMY_HASH)
            raise ValueError("Invalid username or password")
        if not verify_password(password, account.password_hash):
            raise ValueError("Invalid username or password")
        if not account.is_active:
            raise PermissionError("Account is disabled")

        logger.info("User %s logged in", account.id)
        return {
            "access_token": self.create_access_token(account.id, account.role.value),
            "token_type": "bearer",
            "user": account,
        }

    async def logout(self, token: str):
        """Denylist the token for the rest of its lifetime."""
        try:
            payload = self.decode_token(token)
        except jwt.PyJWTError:
            return
        remaining = int(payload.get("exp", 0) - time.time())
        if remaining > 0:
            await self._cache.set_flag(denylist_key(token), remaining)
        logger.info("User %s logged out", payload.get("sub"))

    async def is_denylisted(self, token: str) -> bool:
        return await self._cache.exists(denylist_key(token))

    async def get_user(self, user_id: int) -> Account | None:
        """Cached account snapshot, or None if the user no longer exists."""
        try:
            return await self._accounts.get_cached(user_id)
        except NotFoundError:
            return None
