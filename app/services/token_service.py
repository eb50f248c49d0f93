"""JWT token creation, validation, and revocation bookkeeping."""

import uuid
from datetime import UTC, datetime, timedelta

import jwt

from app.core.config import settings
from app.core.exceptions import (
    InvalidTokenError,
    TokenExpiredError,
)
from app.core.kv_store import KeyValueStore
from app.schemas.auth_schema import TokenPayload

BLACKLIST_PREFIX = "token_blacklist:"
LOGIN_ATTEMPTS_PREFIX = "login_attempts:"
REFRESH_LOCK_PREFIX = "refresh_lock:"

MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_SECONDS = 300
REFRESH_LOCK_SECONDS = 10


class TokenService:
    """Issue JWTs and track revocations and failed logins in the shared store."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self._secret = settings.auth.secret_key.get_secret_value()
        self._algorithm = settings.auth.algorithm

    def _encode(self, user_id: int, email: str, role: str, kind: str, ttl: timedelta) -> str:
        now = datetime.now(UTC)
        payload = {
            "sub": str(user_id),
            "email": email,
            "role": role,
            "type": kind,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def create_access_token(self, user_id: int, email: str, role: str) -> str:
        """Short-lived token accepted by the auth middleware."""
        return self._encode(
            user_id,
            email,
            role,
            "access",
            timedelta(minutes=settings.auth.access_token_expire_minutes),
        )

    def create_refresh_token(self, user_id: int, email: str, role: str) -> str:
        """Long-lived token only accepted by /api/auth/refresh."""
        return self._encode(
            user_id,
            email,
            role,
            "refresh",
            timedelta(days=settings.auth.refresh_token_expire_days),
        )

    def decode_token(self, token: str) -> TokenPayload:
        """Decode and validate a JWT token."""
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as e:
            raise TokenExpiredError from e
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError from e

        return TokenPayload(
            sub=payload["sub"],
            email=payload["email"],
            role=payload["role"],
            type=payload["type"],
            jti=payload["jti"],
            exp=payload["exp"],
        )

    # --- Blacklist ---

    async def blacklist_token(self, jti: str, exp: int) -> None:
        """Revoke a token until it would have expired anyway."""
        ttl = exp - int(datetime.now(UTC).timestamp())
        if ttl > 0:
            await self._store.set(f"{BLACKLIST_PREFIX}{jti}", "1", ttl=ttl)

    async def is_blacklisted(self, jti: str) -> bool:
        return await self._store.get(f"{BLACKLIST_PREFIX}{jti}") is not None

    # --- Login attempts ---

    async def record_failed_login(self, email: str) -> int:
        """Count a failed login; the counter expires with the lockout window."""
        key = f"{LOGIN_ATTEMPTS_PREFIX}{email}"
        count = await self._store.incrby(key, 1)
        if count == 1:
            await self._store.expire(key, LOGIN_LOCKOUT_SECONDS)
        return count

    async def reset_login_attempts(self, email: str) -> None:
        await self._store.delete(f"{LOGIN_ATTEMPTS_PREFIX}{email}")

    async def get_login_attempts(self, email: str) -> int:
        result = await self._store.get(f"{LOGIN_ATTEMPTS_PREFIX}{email}")
        return int(result) if result else 0

    # --- Refresh lock (prevent concurrent refresh) ---

    async def acquire_refresh_lock(self, jti: str) -> bool:
        """Only one refresh per token may be in flight."""
        return await self._store.set(
            f"{REFRESH_LOCK_PREFIX}{jti}", "1", ttl=REFRESH_LOCK_SECONDS, nx=True
        )

    async def release_refresh_lock(self, jti: str) -> None:
        await self._store.delete(f"{REFRESH_LOCK_PREFIX}{jti}")
