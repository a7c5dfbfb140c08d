import base64
import binascii
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from jose import jws
from jose.exceptions import JWKError, JWSError

from app.config import Settings
from app.utils.native_auth import normalize_email, normalize_text

logger = logging.getLogger(__name__)

JWKS_CACHE_TTL = 3600
IDENTITY_TOKEN_CLOCK_SKEW_SECONDS = 120


@dataclass(frozen=True)
class IdentityProvider:
    name: str
    issuers: frozenset[str]
    jwks_url: str


APPLE = IdentityProvider(
    name="apple",
    issuers=frozenset({"https://appleid.apple.com"}),
    jwks_url="https://appleid.apple.com/auth/keys",
)
GOOGLE = IdentityProvider(
    name="google",
    issuers=frozenset({"https://accounts.google.com", "accounts.google.com"}),
    jwks_url="https://www.googleapis.com/oauth2/v3/certs",
)
IDENTITY_PROVIDERS = {provider.name: provider for provider in (APPLE, GOOGLE)}


def allowed_audiences(settings: Settings, provider: str) -> set[str]:
    if provider == "apple":
        return settings.apple_audiences()
    if provider == "google":
        return settings.google_audiences()
    return set()


class KeySetFetchError(Exception):
    pass


class AudienceNotConfiguredError(Exception):
    pass


@dataclass
class IdentityAssertion:
    issuer: str
    subject: str
    audience: list[str] = field(default_factory=list)
    email: str = ""
    issued_at: float = 0
    expires_at: float = 0


class JWKSCache:
    """
    Per-endpoint cache of RSA signing keys.

    Entries are refetched lazily once expired or empty. There is no lock, so
    concurrent refreshes may both hit the network.
    """

    def __init__(
        self,
        ttl_seconds: int = JWKS_CACHE_TTL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        self._entries: dict[str, tuple[list[dict[str, Any]], float]] = {}

    def clear(self) -> None:
        self._entries.clear()

    async def get_keys(self, jwks_url: str) -> list[dict[str, Any]]:
        now = self._clock()
        cached = self._entries.get(jwks_url)
        if cached and cached[0] and cached[1] > now:
            return cached[0]

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(jwks_url)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as e:
            logger.error("Failed to fetch JWKS from %s: %s", jwks_url, e)
            raise KeySetFetchError(f"jwks_fetch_failed: {e}") from e
        except ValueError as e:
            logger.error("JWKS response from %s is not JSON: %s", jwks_url, e)
            raise KeySetFetchError("jwks_invalid_response") from e

        raw_keys = payload.get("keys") if isinstance(payload, dict) else None
        keys = [
            key
            for key in (raw_keys if isinstance(raw_keys, list) else [])
            if isinstance(key, dict)
            and all(isinstance(key.get(name), str) for name in ("kty", "kid", "n", "e"))
        ]
        if not keys:
            raise KeySetFetchError("jwks_empty")

        self._entries[jwks_url] = (keys, now + self.ttl_seconds)
        logger.info("Refreshed JWKS from %s (%d keys)", jwks_url, len(keys))
        return keys


def _decode_segment(segment: str) -> Optional[dict[str, Any]]:
    try:
        decoded = base64.urlsafe_b64decode((segment + "=" * (-len(segment) % 4)).encode("ascii"))
        parsed = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class IdentityTokenVerifier:
    """Verifies provider-issued RS256 identity tokens against published keys."""

    def __init__(
        self,
        key_cache: JWKSCache,
        audiences: Callable[[str], set[str]],
        clock: Callable[[], float] = time.time,
    ):
        self.key_cache = key_cache
        self._audiences = audiences
        self._clock = clock

    async def verify(self, provider: IdentityProvider, identity_token: str) -> Optional[IdentityAssertion]:
        """
        Return the verified assertion, or None when the token must be rejected.

        Raises AudienceNotConfiguredError when no audience is allowed for the
        provider, and KeySetFetchError when signing keys cannot be loaded.
        """
        segments = identity_token.split(".")
        if len(segments) != 3 or not all(segments):
            return None
        header_segment, payload_segment, _ = segments

        header = _decode_segment(header_segment)
        if header is None or header.get("alg") != "RS256":
            return None
        key_id = normalize_text(header.get("kid"), 128)
        if not key_id:
            return None

        claims = _decode_segment(payload_segment)
        if claims is None:
            return None

        keys = await self.key_cache.get_keys(provider.jwks_url)
        key = next(
            (candidate for candidate in keys if candidate["kid"] == key_id and candidate["kty"] == "RSA"),
            None,
        )
        if key is None:
            return None

        try:
            jws.verify(identity_token, key, algorithms=["RS256"])
        except (JWSError, JWKError):
            return None

        issuer = normalize_text(claims.get("iss"), 256)
        if issuer not in provider.issuers:
            return None

        subject = normalize_text(claims.get("sub"), 256)
        if not subject:
            return None

        audience_claim = claims.get("aud")
        if isinstance(audience_claim, list):
            audiences = [value for value in audience_claim if isinstance(value, str)]
        elif isinstance(audience_claim, str):
            audiences = [audience_claim]
        else:
            audiences = []
        if not audiences:
            return None

        allowed = self._audiences(provider.name)
        if not allowed:
            raise AudienceNotConfiguredError(f"native_auth_{provider.name}_audience_not_configured")
        if not allowed.intersection(audiences):
            return None

        expires_at = claims.get("exp")
        issued_at = claims.get("iat")
        if not _is_number(expires_at) or not _is_number(issued_at):
            return None
        now = self._clock()
        if expires_at <= now - IDENTITY_TOKEN_CLOCK_SKEW_SECONDS:
            return None
        if issued_at > now + IDENTITY_TOKEN_CLOCK_SKEW_SECONDS:
            return None

        return IdentityAssertion(
            issuer=issuer,
            subject=subject,
            audience=audiences,
            email=normalize_email(claims.get("email")),
            issued_at=issued_at,
            expires_at=expires_at,
        )
