"""
Identity provider for bearer-token authenticated users.

Tokens are HS256 JWTs carrying:
- sub: user id
- email: user email (optional)
- role: "admin" or "user" (defaults to "user")
- exp: expiration timestamp

The provider also exposes an auth-state stream (signed_in, signed_out,
session_expired) so the entitlement engine can evict a departing user's
cache slots.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Lock
from typing import Callable, Dict, List, Optional

import jwt
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


class AuthenticationError(Exception):
    """Bearer token missing, invalid or expired."""

    error_code = "AUTHENTICATION_FAILED"

    def __init__(self, message: str, expired: bool = False):
        self.message = message
        self.expired = expired
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": "authentication_failed",
            "error_code": self.error_code,
            "message": self.message,
            "expired": self.expired,
        }


class IdentityClaims(BaseModel):
    """Claims accepted from an identity token."""

    sub: str = Field(..., min_length=1, description="User ID")
    email: Optional[str] = Field(None, description="User email")
    role: str = Field("user", description="Application role")
    exp: Optional[int] = Field(None, description="Expiration timestamp (Unix)")

    model_config = ConfigDict(extra="allow")


@dataclass(frozen=True)
class Identity:
    """The authenticated caller."""

    user_id: str
    email: Optional[str] = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role.lower() == ADMIN_ROLE

    @classmethod
    def from_claims(cls, claims: IdentityClaims) -> "Identity":
        return cls(user_id=claims.sub, email=claims.email, role=claims.role or "user")


class AuthStateKind(str, Enum):
    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"
    SESSION_EXPIRED = "session_expired"


@dataclass(frozen=True)
class AuthStateChange:
    kind: AuthStateKind
    user_id: str
    identity: Optional[Identity] = None


AuthStateListener = Callable[[AuthStateChange], None]


def bearer_token_from_header(value: Optional[str]) -> Optional[str]:
    """Extract the token from an 'Authorization: Bearer <token>' header value."""
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class IdentityProvider:
    """
    Verifies identity tokens and tracks signed-in users.

    Usage:
        provider = IdentityProvider.from_env()
        provider.subscribe(on_auth_change)

        identity = provider.authenticate(token)
        provider.observe(identity)
        ...
        provider.sign_out(identity.user_id)
    """

    def __init__(
        self,
        secret: Optional[str],
        algorithm: str = "HS256",
        audience: Optional[str] = None,
    ):
        self._secret = secret
        self._algorithm = algorithm
        self._audience = audience
        self._listeners: List[AuthStateListener] = []
        self._sessions: Dict[str, Identity] = {}
        self._lock = Lock()

    @classmethod
    def from_env(cls) -> "IdentityProvider":
        secret = os.getenv("AUTH_JWT_SECRET")
        if not secret:
            logger.warning("AUTH_JWT_SECRET not configured - all authenticated requests will fail")
        return cls(
            secret=secret,
            algorithm=os.getenv("AUTH_JWT_ALGORITHM", "HS256"),
            audience=os.getenv("AUTH_JWT_AUDIENCE") or None,
        )

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def _decode(self, token: str, verify_exp: bool = True) -> dict:
        return jwt.decode(
            token,
            self._secret,
            algorithms=[self._algorithm],
            audience=self._audience,
            options={
                "verify_signature": True,
                "verify_exp": verify_exp,
                "verify_aud": self._audience is not None,
            },
        )

    def authenticate(self, token: Optional[str]) -> Identity:
        """
        Verify a token and return the caller identity.

        Raises:
            AuthenticationError: missing, invalid or expired token
        """
        if not self.configured:
            raise AuthenticationError("Authentication is not configured")
        if not token:
            raise AuthenticationError("Missing bearer token")

        try:
            payload = self._decode(token)
        except jwt.ExpiredSignatureError:
            self._expire_from_token(token)
            raise AuthenticationError("Token has expired", expired=True)
        except jwt.InvalidTokenError as e:
            logger.warning("Identity token rejected", extra={"error": str(e)})
            raise AuthenticationError("Invalid token")

        try:
            claims = IdentityClaims(**payload)
        except ValidationError as e:
            logger.warning("Identity token claims invalid", extra={"error": str(e)})
            raise AuthenticationError("Invalid token claims")

        return Identity.from_claims(claims)

    def _expire_from_token(self, token: str) -> None:
        """Emit session_expired for a correctly signed but expired token."""
        try:
            payload = self._decode(token, verify_exp=False)
        except jwt.InvalidTokenError:
            return
        user_id = payload.get("sub")
        if not user_id:
            return
        with self._lock:
            identity = self._sessions.pop(user_id, None)
        if identity is not None:
            logger.info("Session expired", extra={"user_id": user_id})
            self._notify(AuthStateChange(AuthStateKind.SESSION_EXPIRED, user_id, identity))

    def issue_token(self, identity: Identity, expires_in: int = 3600) -> str:
        """Issue a token for an identity (development and tests)."""
        if not self.configured:
            raise AuthenticationError("Authentication is not configured")
        now = datetime.now(timezone.utc)
        payload = {
            "sub": identity.user_id,
            "email": identity.email,
            "role": identity.role,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
        }
        if self._audience:
            payload["aud"] = self._audience
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    # ------------------------------------------------------------------
    # Auth state stream
    # ------------------------------------------------------------------

    def subscribe(self, listener: AuthStateListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change: AuthStateChange) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception as e:
                logger.error(
                    "Auth state listener failed",
                    extra={"kind": change.kind.value, "user_id": change.user_id, "error": str(e)},
                )

    def observe(self, identity: Identity) -> None:
        """Record an authenticated request; emits signed_in for new sessions."""
        with self._lock:
            is_new = identity.user_id not in self._sessions
            self._sessions[identity.user_id] = identity
        if is_new:
            logger.info("User signed in", extra={"user_id": identity.user_id, "role": identity.role})
            self._notify(AuthStateChange(AuthStateKind.SIGNED_IN, identity.user_id, identity))

    def sign_out(self, user_id: str) -> bool:
        """End a session. Emits signed_out even if the session was not tracked."""
        with self._lock:
            identity = self._sessions.pop(user_id, None)
        logger.info("User signed out", extra={"user_id": user_id})
        self._notify(AuthStateChange(AuthStateKind.SIGNED_OUT, user_id, identity))
        return identity is not None

    def is_signed_in(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._sessions

    @property
    def active_user_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions.keys())
