"""Issuing, validating and revoking user access tokens."""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import jwt

from .errors import ServiceError, TokenExpiredError

JWT_USER_ID_CLAIM = "jwtUserId"
USER_TOKEN_KEY = "user_token:{}"


def user_token_key(user_id: int) -> str:
    """Return the store key under which a user's current token is kept."""
    return USER_TOKEN_KEY.format(user_id)


class TokenStore(Protocol):
    def get(self, key: str) -> str: ...

    def setex(self, key: str, value: str, seconds: int) -> None: ...

    def delete(self, key: str) -> int: ...


class MemoryTokenStore:
    """A key-value store with per-key expiry, kept in memory.

    Like a Redis ``GET``, reading a missing or expired key gives an empty string.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    def get(self, key: str) -> str:
        entry = self._entries.get(key)
        if entry is None:
            return ""
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return ""
        return value

    def setex(self, key: str, value: str, seconds: int) -> None:
        self._entries[key] = (value, self._clock() + seconds)

    def delete(self, key: str) -> int:
        """Remove ``key``; return 1 if it held a live value, else 0."""
        present = self.get(key) != ""
        self._entries.pop(key, None)
        return int(present)


@dataclass(frozen=True)
class TokenGrant:
    """A freshly issued token with its expiry and refresh times in Unix seconds."""

    access_token: str
    access_expire: int
    refresh_after: int


class IdentityService:
    """Issues HS256 tokens and keeps the one current token per user in a store."""

    def __init__(
        self,
        access_secret: str,
        access_expire: int,
        store: TokenStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.access_secret = access_secret
        self.access_expire = access_expire
        self._clock = clock
        self.store: TokenStore = store if store is not None else MemoryTokenStore(clock)

    def _sign(self, issued_at: int, user_id: int) -> str:
        claims = {
            "exp": issued_at + self.access_expire,
            "iat": issued_at,
            JWT_USER_ID_CLAIM: user_id,
        }
        return jwt.encode(claims, self.access_secret, algorithm="HS256")

    def generate_token(self, user_id: int) -> TokenGrant:
        """Issue a token for ``user_id`` and make it the user's current one."""
        now = int(self._clock())
        try:
            token = self._sign(now, user_id)
        except Exception as exc:
            raise ServiceError(
                "failed to generate token", f"sign userId:{user_id}, err:{exc}"
            ) from exc
        try:
            self.store.setex(user_token_key(user_id), token, self.access_expire)
        except Exception as exc:
            raise ServiceError(
                "failed to generate token", f"store userId:{user_id}, err:{exc}"
            ) from exc
        return TokenGrant(
            access_token=token,
            access_expire=now + self.access_expire,
            refresh_after=now + self.access_expire // 2,
        )

    def clear_token(self, user_id: int) -> bool:
        """Revoke the user's current token."""
        try:
            self.store.delete(user_token_key(user_id))
        except Exception as exc:
            raise ServiceError(
                "failed to clear token", f"userId:{user_id}, err:{exc}"
            ) from exc
        return True

    def validate_token(self, user_id: int, token: str) -> bool:
        """Check that ``token`` is the user's current token."""
        try:
            stored = self.store.get(user_token_key(user_id))
        except Exception as exc:
            raise TokenExpiredError(detail=f"userId:{user_id}, err:{exc}") from exc
        if stored != token:
            raise TokenExpiredError(detail=f"token is invalid userId:{user_id}")
        return True