"""FastAPI dependencies shared by the routers."""

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, Response

from metering.config import settings
from metering.services.identity import (
    Identity,
    IdentityResolver,
    JWTAuthProvider,
    RequestContext,
    bearer_token,
    client_ip,
    new_anonymous_session_id,
)
from metering.services.quota_ledger import QuotaLedger
from metering.services.session_aggregator import SessionAggregator

ledger = QuotaLedger()
aggregator = SessionAggregator()


def get_ledger() -> QuotaLedger:
    return ledger


def get_aggregator() -> SessionAggregator:
    return aggregator


def get_identity_resolver() -> IdentityResolver:
    return IdentityResolver(
        JWTAuthProvider(settings.AUTH_JWT_SECRET, settings.AUTH_JWT_ALGORITHM)
    )


def get_request_context(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> RequestContext:
    """Collect the identity inputs of a request.

    Visitors without an anonymous session cookie get one minted and set on
    the response, so every request has a session to fall back to.
    """
    session_id = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not session_id:
        session_id = new_anonymous_session_id()
        response.set_cookie(
            key=settings.SESSION_COOKIE_NAME,
            value=session_id,
            max_age=settings.SESSION_COOKIE_MAX_AGE_SECONDS,
            httponly=True,
            secure=settings.SESSION_COOKIE_SECURE,
            samesite="lax",
            path="/",
        )

    peer = request.client.host if request.client else None
    return RequestContext(
        auth_token=bearer_token(authorization),
        session_id=session_id,
        ip_address=client_ip(request.headers, fallback=peer),
    )


def get_identity(
    ctx: RequestContext = Depends(get_request_context),
    resolver: IdentityResolver = Depends(get_identity_resolver),
) -> Identity:
    return resolver.resolve_or_fallback(ctx)


def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    """Reject the request unless it carries the configured admin token."""
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        raise HTTPException(status_code=403, detail="Admin API is disabled")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=403, detail="Invalid admin token")
