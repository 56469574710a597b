"""Tests for identity resolution."""

import re
from datetime import datetime, timedelta, timezone

import pytest

from metering.services.errors import AmbiguousIdentityError, MissingIdentityError
from metering.services.identity import (
    AnonymousVisitor,
    AuthenticatedUser,
    IdentityResolver,
    InvalidTokenError,
    JWTAuthProvider,
    RequestContext,
    bearer_token,
    client_ip,
    new_anonymous_session_id,
)
from tests.conftest import TEST_JWT_SECRET, make_token


@pytest.fixture()
def resolver():
    return IdentityResolver(JWTAuthProvider(TEST_JWT_SECRET))


class TestJWTAuthProvider:
    """Tests for token validation."""

    def test_valid_token_returns_subject(self):
        provider = JWTAuthProvider(TEST_JWT_SECRET)
        assert provider.validate(make_token("user-42")) == "user-42"

    def test_wrong_secret_rejected(self):
        provider = JWTAuthProvider(TEST_JWT_SECRET)
        with pytest.raises(InvalidTokenError):
            provider.validate(make_token("user-42", secret="other-secret"))

    def test_expired_token_rejected(self):
        provider = JWTAuthProvider(TEST_JWT_SECRET)
        expired = datetime.now(timezone.utc) - timedelta(minutes=5)
        with pytest.raises(InvalidTokenError):
            provider.validate(make_token("user-42", exp=int(expired.timestamp())))

    def test_token_without_subject_rejected(self):
        provider = JWTAuthProvider(TEST_JWT_SECRET)
        with pytest.raises(InvalidTokenError, match="no subject"):
            provider.validate(make_token(""))

    def test_no_secret_configured_rejects_everything(self):
        with pytest.raises(InvalidTokenError, match="No token secret"):
            JWTAuthProvider(None).validate(make_token("user-42"))


class TestIdentityResolver:
    """Tests for IdentityResolver.resolve and resolve_or_fallback."""

    def test_valid_token_resolves_to_user(self, resolver):
        ctx = RequestContext(auth_token=make_token("user-42"), session_id="anon_1")
        assert resolver.resolve(ctx) == AuthenticatedUser(user_id="user-42")

    def test_no_token_resolves_to_anonymous(self, resolver):
        ctx = RequestContext(session_id="anon_1", ip_address="10.0.0.1")
        identity = resolver.resolve(ctx)
        assert identity == AnonymousVisitor(session_id="anon_1", ip_address="10.0.0.1")
        assert identity.kind == "anonymous"

    def test_invalid_token_is_ambiguous(self, resolver):
        ctx = RequestContext(auth_token="garbage", session_id="anon_1")
        with pytest.raises(AmbiguousIdentityError) as exc_info:
            resolver.resolve(ctx)
        assert exc_info.value.fallback == AnonymousVisitor(session_id="anon_1")

    def test_missing_everything_raises(self, resolver):
        with pytest.raises(MissingIdentityError):
            resolver.resolve(RequestContext())

    def test_fallback_to_anonymous_on_invalid_token(self, resolver, caplog):
        ctx = RequestContext(auth_token="garbage", session_id="anon_1")
        with caplog.at_level("WARNING"):
            identity = resolver.resolve_or_fallback(ctx)
        assert identity == AnonymousVisitor(session_id="anon_1")
        assert "Falling back to anonymous identity" in caplog.text

    def test_no_fallback_without_session(self, resolver):
        with pytest.raises(MissingIdentityError):
            resolver.resolve_or_fallback(RequestContext(auth_token="garbage"))

    def test_authenticated_user_kind(self):
        assert AuthenticatedUser(user_id="u").kind == "authenticated"


class TestRequestHelpers:
    """Tests for header parsing helpers."""

    def test_bearer_token(self):
        assert bearer_token("Bearer abc.def") == "abc.def"
        assert bearer_token("bearer  abc ") == "abc"

    def test_bearer_token_rejects_other_schemes(self):
        assert bearer_token(None) is None
        assert bearer_token("Basic dXNlcjpwYXNz") is None
        assert bearer_token("Bearer ") is None

    def test_client_ip_prefers_first_forwarded_hop(self):
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.2", "x-real-ip": "10.0.0.9"}
        assert client_ip(headers, "127.0.0.1") == "203.0.113.7"

    def test_client_ip_header_order(self):
        assert client_ip({"x-real-ip": "10.0.0.9", "cf-connecting-ip": "10.0.0.8"}) == "10.0.0.9"
        assert client_ip({"cf-connecting-ip": "10.0.0.8"}) == "10.0.0.8"

    def test_client_ip_falls_back_to_peer(self):
        assert client_ip({}, "127.0.0.1") == "127.0.0.1"

    def test_new_anonymous_session_id_format(self):
        value = new_anonymous_session_id()
        assert re.fullmatch(r"anon_\d{13}_[0-9a-f]{12}", value)
        assert new_anonymous_session_id() != value
