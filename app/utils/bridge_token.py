"""
Bridge tokens: short-lived HMAC-signed credentials handed to the native app.

Format is ``<base64url(json payload)>.<base64url(hmac-sha256)>`` where the MAC
covers ``"<version>.<payload>"``. Verification returns ``None`` for every kind
of rejection and only raises when no secret is configured.
"""

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from collections.abc import Callable
from typing import Any, Optional

from app.schemas.native_auth import BridgeTokenPayload, NativeOAuthProvider
from app.utils.native_auth import (
    FALLBACK_CALLBACK_PATH,
    normalize_email,
    normalize_text,
    resolve_provider,
    resolve_safe_callback_path,
)

TOKEN_VERSION = 1
TOKEN_TTL_SECONDS = 90
TOKEN_CLOCK_SKEW_SECONDS = 30


class BridgeSecretMissingError(RuntimeError):
    pass


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def fallback_subject(provider: str) -> str:
    return f"native_{provider}_{uuid.uuid4().hex}"


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class BridgeTokenCodec:
    def __init__(
        self,
        secret: Optional[str],
        ttl_seconds: int = TOKEN_TTL_SECONDS,
        default_display_name: str = "Native User",
        clock: Callable[[], float] = time.time,
    ):
        self._secret = (secret or "").strip()
        self.ttl_seconds = ttl_seconds
        self.default_display_name = default_display_name
        self._clock = clock

    def _require_secret(self) -> bytes:
        if not self._secret:
            raise BridgeSecretMissingError("native_auth_secret_missing")
        return self._secret.encode("utf-8")

    def _sign(self, encoded_payload: str, secret: bytes) -> str:
        digest = hmac.new(
            secret, f"{TOKEN_VERSION}.{encoded_payload}".encode("ascii"), hashlib.sha256
        ).digest()
        return _b64url_encode(digest)

    def mint(
        self,
        *,
        subject: str,
        name: str,
        email: str,
        provider: NativeOAuthProvider,
        callback_url: str,
    ) -> str:
        secret = self._require_secret()
        now = int(self._clock())

        payload = BridgeTokenPayload(
            version=TOKEN_VERSION,
            subject=normalize_text(subject, 256) or fallback_subject(provider),
            display_name=normalize_text(name, 128) or self.default_display_name,
            email=normalize_email(email),
            provider=provider,
            callback_url=resolve_safe_callback_path(callback_url, FALLBACK_CALLBACK_PATH),
            issued_at=now,
            expires_at=now + self.ttl_seconds,
        )

        body = json.dumps(payload.model_dump(by_alias=True), separators=(",", ":"))
        encoded_payload = _b64url_encode(body.encode("utf-8"))
        return f"{encoded_payload}.{self._sign(encoded_payload, secret)}"

    def verify(self, token: str) -> Optional[BridgeTokenPayload]:
        secret = self._require_secret()

        if not isinstance(token, str):
            return None
        segments = token.strip().split(".")
        if len(segments) != 2 or not all(segments):
            return None
        encoded_payload, signature = segments

        try:
            expected = self._sign(encoded_payload, secret)
        except UnicodeEncodeError:
            return None
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
            return None

        try:
            claims = json.loads(_b64url_decode(encoded_payload).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            return None
        if not isinstance(claims, dict):
            return None

        return self._validate_claims(claims)

    def _validate_claims(self, claims: dict[str, Any]) -> Optional[BridgeTokenPayload]:
        provider = resolve_provider(claims.get("provider"))
        if provider is None:
            return None

        subject = normalize_text(claims.get("sub"), 256)
        if not subject:
            return None

        issued_at = claims.get("iat")
        expires_at = claims.get("exp")
        if not _is_int(issued_at) or not _is_int(expires_at):
            return None
        version = claims.get("v")
        if not _is_int(version) or version != TOKEN_VERSION:
            return None

        now = int(self._clock())
        if issued_at > now + TOKEN_CLOCK_SKEW_SECONDS:
            return None
        if expires_at <= now - TOKEN_CLOCK_SKEW_SECONDS:
            return None
        if expires_at <= issued_at:
            return None

        return BridgeTokenPayload(
            version=TOKEN_VERSION,
            subject=subject,
            display_name=normalize_text(claims.get("name"), 128) or self.default_display_name,
            email=normalize_email(claims.get("email")),
            provider=provider,
            callback_url=resolve_safe_callback_path(claims.get("callbackUrl")),
            issued_at=issued_at,
            expires_at=expires_at,
        )
