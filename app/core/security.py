"""JWT helpers that identify (optionally) the caller of the AI endpoints."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache

import jwt
from fastapi import HTTPException, Request, status
from jwt import ExpiredSignatureError, InvalidTokenError

from app.core.config import AuthSettings, get_settings
from app.core.logger import get_logger

LOGGER = get_logger(__name__)


class AuthenticationError(Exception):
    """Raised when authentication or token validation fails."""


@dataclass(frozen=True, slots=True)
class AuthenticatedUser:
    """Principal decoded from the marketplace access token."""

    user_id: str
    role: str | None = None
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == "admin"


class SecurityProvider:
    """Issue and verify JWT access tokens shared with the marketplace backend."""

    def __init__(self, settings: AuthSettings) -> None:
        self._settings = settings

    @property
    def cookie_name(self) -> str:
        return self._settings.cookie_name

    @property
    def is_enabled(self) -> bool:
        return self._settings.enabled

    def create_access_token(
        self, user: AuthenticatedUser, *, expires_in_minutes: int = 60
    ) -> str:
        """Create a signed JWT for ``user``."""

        now = datetime.now(tz=timezone.utc)
        payload: dict[str, object] = {
            "sub": user.user_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(minutes=expires_in_minutes)).timestamp()),
        }
        if user.role:
            payload["role"] = user.role
        if user.email:
            payload["email"] = user.email
        return jwt.encode(payload, self._settings.secret_key, algorithm=self._settings.algorithm)

    def decode_token(self, token: str) -> AuthenticatedUser:
        """Decode a JWT and return the corresponding ``AuthenticatedUser``."""

        try:
            payload = jwt.decode(
                token,
                self._settings.secret_key,
                algorithms=[self._settings.algorithm],
            )
        except ExpiredSignatureError as exc:
            raise AuthenticationError("Token expired") from exc
        except InvalidTokenError as exc:
            raise AuthenticationError("Invalid token") from exc

        subject = payload.get("sub")
        if subject is None or str(subject).strip() == "":
            raise AuthenticationError("Token payload missing subject")
        role = payload.get("role")
        email = payload.get("email")
        return AuthenticatedUser(
            user_id=str(subject),
            role=role if isinstance(role, str) else None,
            email=email if isinstance(email, str) else None,
        )

    def extract_token(self, request: Request) -> str | None:
        """Return the bearer token from the Authorization header or the auth cookie."""

        header = request.headers.get("Authorization", "")
        scheme, _, credentials = header.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
        cookie = request.cookies.get(self.cookie_name)
        return cookie or None


@lru_cache(maxsize=1)
def get_security_provider() -> SecurityProvider:
    """Return a cached security provider instance."""

    return SecurityProvider(get_settings().auth)


def get_optional_user(request: Request) -> AuthenticatedUser | None:
    """Resolve the caller when a valid token is present; anonymous callers get ``None``.

    An invalid token is treated as anonymous rather than rejected, matching the
    public room-search use case.
    """

    security = get_security_provider()
    if not security.is_enabled:
        return None
    token = security.extract_token(request)
    if not token:
        return None
    try:
        return security.decode_token(token)
    except AuthenticationError as exc:
        LOGGER.info("Ignoring invalid access token", extra={"reason": str(exc)})
        return None


def ensure_admin(user: AuthenticatedUser | None) -> AuthenticatedUser:
    """Return ``user`` when it is an administrator, else raise 401 or 403."""

    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Login required")
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required",
        )
    return user


__all__ = [
    "AuthenticatedUser",
    "AuthenticationError",
    "SecurityProvider",
    "ensure_admin",
    "get_optional_user",
    "get_security_provider",
]
