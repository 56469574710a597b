"""Identity resolution for metering and telemetry.

Every request is attributed to exactly one identity: an authenticated user,
or an anonymous visitor keyed by its session cookie. Downstream components
only ever see the resolved identity and never inspect auth state themselves.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Union

from jose import JWTError, jwt

from metering.services.errors import AmbiguousIdentityError, MissingIdentityError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str

    kind = "authenticated"


@dataclass(frozen=True)
class AnonymousVisitor:
    session_id: str
    ip_address: Optional[str] = None

    kind = "anonymous"


Identity = Union[AuthenticatedUser, AnonymousVisitor]


@dataclass(frozen=True)
class RequestContext:
    """The parts of a request identity resolution depends on."""

    auth_token: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None


class InvalidTokenError(Exception):
    """The auth provider rejected the token."""


class JWTAuthProvider:
    """Validates HMAC-signed bearer tokens and returns the subject claim."""

    def __init__(self, secret: Optional[str], algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    def validate(self, token: str) -> str:
        if not self.secret:
            raise InvalidTokenError("No token secret configured")
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as e:
            raise InvalidTokenError(str(e)) from e
        subject = claims.get("sub")
        if not subject:
            raise InvalidTokenError("Token has no subject")
        return str(subject)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer`` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def client_ip(headers: Mapping[str, str], fallback: Optional[str] = None) -> Optional[str]:
    """Best-effort client address behind proxies.

    Checks x-forwarded-for (first hop), x-real-ip and cf-connecting-ip before
    falling back to the socket peer address.
    """
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = headers.get(header)
        if value:
            return value.strip()
    return fallback


def new_anonymous_session_id() -> str:
    """Mint a value for the anonymous session cookie."""
    return f"anon_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


class IdentityResolver:
    """Maps a request context to an Identity. Pure: no I/O beyond the provider."""

    def __init__(self, auth_provider: JWTAuthProvider):
        self.auth_provider = auth_provider

    def _anonymous(self, ctx: RequestContext) -> Optional[AnonymousVisitor]:
        if not ctx.session_id:
            return None
        return AnonymousVisitor(session_id=ctx.session_id, ip_address=ctx.ip_address)

    def resolve(self, ctx: RequestContext) -> Identity:
        """Resolve the request identity.

        Raises:
            AmbiguousIdentityError: A token was presented but could not be
                validated. ``fallback`` carries the anonymous identity.
            MissingIdentityError: No token and no session id.
        """
        if ctx.auth_token:
            try:
                user_id = self.auth_provider.validate(ctx.auth_token)
            except InvalidTokenError as e:
                raise AmbiguousIdentityError(
                    f"Auth token could not be validated: {e}",
                    fallback=self._anonymous(ctx),
                ) from e
            return AuthenticatedUser(user_id=user_id)

        visitor = self._anonymous(ctx)
        if visitor is None:
            raise MissingIdentityError("Request has no auth token and no session id")
        return visitor

    def resolve_or_fallback(self, ctx: RequestContext) -> Identity:
        """Resolve, treating an unverifiable token as anonymous traffic."""
        try:
            return self.resolve(ctx)
        except AmbiguousIdentityError as e:
            if e.fallback is None:
                raise MissingIdentityError(str(e)) from e
            logger.warning(
                "Falling back to anonymous identity for session %s: %s",
                e.fallback.session_id,
                e,
            )
            return e.fallback
