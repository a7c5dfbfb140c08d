import time

import httpx
import pytest

from app.utils.oidc import (
    APPLE,
    GOOGLE,
    AudienceNotConfiguredError,
    IdentityTokenVerifier,
    JWKSCache,
    KeySetFetchError,
)


def verifier_for(transport: httpx.AsyncBaseTransport, audiences: set[str]) -> IdentityTokenVerifier:
    return IdentityTokenVerifier(JWKSCache(transport=transport), lambda provider: audiences)


class TestIdentityTokenVerifier:
    """Tests for provider identity token verification."""

    @pytest.mark.asyncio
    async def test_valid_apple_token(self, jwks_transport, make_identity_token):
        """Test that a correctly signed token yields an assertion."""
        verifier = verifier_for(jwks_transport, {"com.example.web"})
        assertion = await verifier.verify(APPLE, make_identity_token(email="Person@Example.com"))

        assert assertion is not None
        assert assertion.subject == "001234.apple-user"
        assert assertion.issuer == "https://appleid.apple.com"
        assert assertion.audience == ["com.example.web"]
        assert assertion.email == "person@example.com"

    @pytest.mark.asyncio
    async def test_google_bare_issuer_accepted(self, jwks_transport, make_identity_token):
        """Test that Google's scheme-less issuer is accepted."""
        verifier = verifier_for(jwks_transport, {"google-web-client"})
        token = make_identity_token(issuer="accounts.google.com", audience="google-web-client")
        assert await verifier.verify(GOOGLE, token) is not None

    @pytest.mark.asyncio
    async def test_audience_list_intersection(self, jwks_transport, make_identity_token):
        """Test that one matching entry in an audience list is enough."""
        verifier = verifier_for(jwks_transport, {"com.example.web.rn"})
        token = make_identity_token(audience=["other-app", "com.example.web.rn"])
        assertion = await verifier.verify(APPLE, token)
        assert assertion is not None
        assert assertion.audience == ["other-app", "com.example.web.rn"]

    @pytest.mark.asyncio
    async def test_wrong_audience_rejected(self, jwks_transport, make_identity_token):
        """Test that a token for another audience is rejected."""
        verifier = verifier_for(jwks_transport, {"com.example.web"})
        assert await verifier.verify(APPLE, make_identity_token(audience="com.other.app")) is None

    @pytest.mark.asyncio
    async def test_wrong_issuer_rejected(self, jwks_transport, make_identity_token):
        """Test that an Apple-audience token from another issuer is rejected."""
        verifier = verifier_for(jwks_transport, {"com.example.web"})
        token = make_identity_token(issuer="https://accounts.google.com")
        assert await verifier.verify(APPLE, token) is None

    @pytest.mark.asyncio
    async def test_no_allowed_audience_raises(self, jwks_transport, make_identity_token):
        """Test that an empty audience configuration is a server error, not a rejection."""
        verifier = verifier_for(jwks_transport, set())
        with pytest.raises(AudienceNotConfiguredError):
            await verifier.verify(APPLE, make_identity_token())

    @pytest.mark.asyncio
    async def test_expired_token_rejected(self, jwks_transport, make_identity_token):
        """Test that expiry beyond the skew window is rejected."""
        verifier = verifier_for(jwks_transport, {"com.example.web"})
        now = int(time.time())
        stale = make_identity_token(issued_at=now - 3600, expires_at=now - 600)
        assert await verifier.verify(APPLE, stale) is None

    @pytest.mark.asyncio
    async def test_recently_expired_token_within_skew(self, jwks_transport, make_identity_token):
        """Test that a token expired a few seconds ago is still accepted."""
        verifier = verifier_for(jwks_transport, {"com.example.web"})
        now = int(time.time())
        token = make_identity_token(issued_at=now - 600, expires_at=now - 10)
        assert await verifier.verify(APPLE, token) is not None

    @pytest.mark.asyncio
    async def test_future_issued_token_rejected(self, jwks_transport, make_identity_token):
        """Test that a token issued well in the future is rejected."""
        verifier = verifier_for(jwks_transport, {"com.example.web"})
        now = int(time.time())
        token = make_identity_token(issued_at=now + 600, expires_at=now + 1200)
        assert await verifier.verify(APPLE, token) is None

    @pytest.mark.asyncio
    async def test_unknown_key_id_rejected(self, jwks_transport, make_identity_token):
        """Test that a token signed under an unpublished key id is rejected."""
        verifier = verifier_for(jwks_transport, {"com.example.web"})
        assert await verifier.verify(APPLE, make_identity_token(key_id="rotated-away")) is None

    @pytest.mark.asyncio
    async def test_tampered_signature_rejected(self, jwks_transport, make_identity_token):
        """Test that a modified signature fails verification."""
        verifier = verifier_for(jwks_transport, {"com.example.web"})
        header, payload, signature = make_identity_token().split(".")
        flipped = ("A" if signature[0] != "A" else "B") + signature[1:]
        assert await verifier.verify(APPLE, f"{header}.{payload}.{flipped}") is None

    @pytest.mark.asyncio
    async def test_non_rs256_header_rejected(self, jwks_transport):
        """Test that an HS256 token never reaches key lookup."""
        from jose import jwt

        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        verifier = verifier_for(httpx.MockTransport(handler), {"com.example.web"})
        token = jwt.encode(
            {"iss": "https://appleid.apple.com", "aud": "com.example.web", "sub": "x"},
            "shared-secret",
            algorithm="HS256",
            headers={"kid": "test-signing-key"},
        )
        assert await verifier.verify(APPLE, token) is None
        assert calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b", "a.b.c.d"])
    async def test_malformed_rejected(self, jwks_transport, token):
        """Test that malformed tokens are rejected without raising."""
        verifier = verifier_for(jwks_transport, {"com.example.web"})
        assert await verifier.verify(APPLE, token) is None


class TestJWKSCache:
    """Tests for signing key retrieval."""

    @pytest.mark.asyncio
    async def test_keys_cached_until_ttl(self, jwks_document):
        """Test that keys are fetched once and refetched after the TTL."""
        calls = []
        now = [1000.0]

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json=jwks_document)

        cache = JWKSCache(ttl_seconds=60, transport=httpx.MockTransport(handler), clock=lambda: now[0])

        await cache.get_keys(APPLE.jwks_url)
        await cache.get_keys(APPLE.jwks_url)
        assert len(calls) == 1

        now[0] += 61
        keys = await cache.get_keys(APPLE.jwks_url)
        assert len(calls) == 2
        assert keys[0]["kid"] == "test-signing-key"

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        """Test that an unreachable key endpoint raises KeySetFetchError."""
        cache = JWKSCache(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        with pytest.raises(KeySetFetchError):
            await cache.get_keys(APPLE.jwks_url)

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self):
        """Test that a non-JSON body raises KeySetFetchError."""
        cache = JWKSCache(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"<html>"))
        )
        with pytest.raises(KeySetFetchError):
            await cache.get_keys(APPLE.jwks_url)

    @pytest.mark.asyncio
    async def test_incomplete_keys_filtered(self):
        """Test that keys missing required members are dropped, leaving an empty set."""
        document = {"keys": [{"kty": "RSA", "kid": "k1"}, "junk"]}
        cache = JWKSCache(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=document))
        )
        with pytest.raises(KeySetFetchError):
            await cache.get_keys(APPLE.jwks_url)

    @pytest.mark.asyncio
    async def test_fetch_failure_surfaces_from_verifier(self, make_identity_token):
        """Test that the verifier propagates key fetch failures."""
        verifier = verifier_for(
            httpx.MockTransport(lambda request: httpx.Response(500)), {"com.example.web"}
        )
        with pytest.raises(KeySetFetchError):
            await verifier.verify(APPLE, make_identity_token())
