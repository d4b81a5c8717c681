"""Token check performed for a gateway before it forwards a request."""

import json
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from typing import Protocol

import jwt

from .errors import ServiceError, TokenExpiredError
from .identity import JWT_USER_ID_CLAIM


class TokenValidator(Protocol):
    def validate_token(self, user_id: int, token: str) -> bool: ...


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of a successful check; ``user_id`` is 0 for anonymous access."""

    user_id: int
    ok: bool


def strip_query(path: str) -> str:
    """Return ``path`` without its query string."""
    return path.split("?", 1)[0]


def _header(headers: Mapping[str, str], name: str) -> str:
    wanted = name.lower()
    return next((value for key, value in headers.items() if key.lower() == wanted), "")


def _bearer(authorization: str) -> str:
    if len(authorization) > 6 and authorization[:7].upper() == "BEARER ":
        return authorization[7:]
    return authorization


class TokenVerifier:
    """Decides whether a request may pass and which user it belongs to.

    Paths listed in ``no_auth_urls`` may be reached without a token, but a
    token that is sent anyway must still be valid.
    """

    def __init__(
        self,
        access_secret: str,
        identity: TokenValidator,
        no_auth_urls: Iterable[str] = (),
    ) -> None:
        self.access_secret = access_secret
        self.identity = identity
        self.no_auth_urls = frozenset(no_auth_urls)

    def _authenticate(self, authorization: str) -> int:
        raw = _bearer(authorization)
        try:
            claims = jwt.decode(raw, self.access_secret, algorithms=["HS256"])
        except jwt.PyJWTError as exc:
            raise TokenExpiredError(detail=f"parse token err: {exc}") from exc
        user_id = claims.get(JWT_USER_ID_CLAIM)
        if isinstance(user_id, bool) or not isinstance(user_id, int):
            user_id = 0
        if user_id <= 0:
            raise TokenExpiredError(detail=f"invalid userId:{user_id}")
        try:
            ok = self.identity.validate_token(user_id, raw)
        except ServiceError as exc:
            raise TokenExpiredError(detail=f"validate userId:{user_id}, err:{exc}") from exc
        if not ok:
            raise TokenExpiredError(detail=f"validate userId:{user_id} rejected")
        return user_id

    def verify(self, headers: Mapping[str, str]) -> VerifyResult:
        """Check the ``Authorization`` header against the ``X-Original-Uri`` path."""
        authorization = _header(headers, "Authorization")
        path = strip_query(_header(headers, "X-Original-Uri"))
        if path in self.no_auth_urls and not authorization:
            return VerifyResult(user_id=0, ok=True)
        return VerifyResult(user_id=self._authenticate(authorization), ok=True)

    def handle(self, headers: Mapping[str, str]) -> tuple[int, dict[str, str], str]:
        """Answer a gateway auth request: status, response headers and JSON body.

        The ``x-user`` header carries the user id, or ``"0"`` when refused.
        """
        try:
            result = self.verify(headers)
        except ServiceError as exc:
            body = json.dumps({"code": 401, "msg": exc.message})
            return 401, {"x-user": "0"}, body
        body = json.dumps({"userId": result.user_id, "ok": result.ok})
        return 200, {"x-user": str(asdict(result)["user_id"])}, body