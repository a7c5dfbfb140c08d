"""
Native sign-in handoff.

A native client cannot run the web OAuth flow itself, so it opens
``/native-auth/start`` in a browser, the provider sign-in page runs on the web
origin, and ``/native-auth/complete`` turns the resulting web session into a
short-lived bridge token. The token reaches the client through the custom
scheme redirect and, when the client supplied a request id, through
``/native-auth/pending`` polling as well. Clients holding a provider identity
token can skip the browser and call ``/native-auth/{provider}/exchange``.

Every outcome is one of two shapes (success or error) so the client has a
single contract to implement.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.schemas.auth import ProviderSession
from app.schemas.native_auth import (
    ExchangeRequest,
    NativeAuthResult,
    NativeOAuthProvider,
    PendingResponse,
    SessionResponse,
)
from app.services.pending_store import PendingResultStore
from app.services.user_service import UserService
from app.utils.auth import create_access_token
from app.utils.bridge_token import BridgeSecretMissingError, BridgeTokenCodec, fallback_subject
from app.utils.native_auth import (
    normalize_email,
    normalize_text,
    resolve_provider,
    resolve_request_id,
    resolve_safe_callback_path,
)
from app.utils.oidc import (
    IDENTITY_PROVIDERS,
    AudienceNotConfiguredError,
    IdentityAssertion,
    IdentityTokenVerifier,
    KeySetFetchError,
)

logger = logging.getLogger(__name__)


class NativeAuthError(Exception):
    """Client-facing failure carrying a short reason code."""

    def __init__(self, code: str, status_code: int = 400):
        super().__init__(code)
        self.code = code
        self.status_code = status_code


@dataclass
class ExchangeOutcome:
    status_code: int
    result: NativeAuthResult


def derive_subject(session: ProviderSession, email: str, provider: str) -> str:
    subject = normalize_text(session.subject, 256)
    if subject:
        return subject
    if email:
        return f"native_email_{email}"[:256]
    return fallback_subject(provider)


def derive_name_from_email(email: str, default: str) -> str:
    local_part = email.split("@")[0].strip()
    label = " ".join(local_part.replace(".", " ").replace("_", " ").replace("-", " ").split())
    return label[:128] or default


class NativeAuthService:
    def __init__(
        self,
        settings: Settings,
        codec: BridgeTokenCodec,
        pending_store: PendingResultStore,
        verifier: IdentityTokenVerifier,
        db: Optional[AsyncSession] = None,
    ):
        self.settings = settings
        self.codec = codec
        self.pending_store = pending_store
        self.verifier = verifier
        self.db = db

    def start(
        self,
        origin: str,
        complete_path: str,
        provider: Any,
        callback_url: Any,
        request_id: Any,
    ) -> str:
        """Return the provider sign-in URL the browser should be sent to."""
        resolved_provider = resolve_provider(provider)
        if resolved_provider is None:
            raise NativeAuthError("invalid_provider")

        callback_path = resolve_safe_callback_path(callback_url)
        resolved_request_id = resolve_request_id(request_id)

        complete_params = {"provider": resolved_provider, "callbackUrl": callback_path}
        if resolved_request_id:
            complete_params["requestId"] = resolved_request_id
        complete_url = f"{origin}{complete_path}?{urlencode(complete_params)}"

        launch_params = {"provider": resolved_provider, "callbackUrl": complete_url}
        launch_url = f"{origin}{self.settings.native_auth_signin_path}?{urlencode(launch_params)}"

        logger.info(
            "native-auth start provider=%s callbackPath=%s requestId=%s origin=%s",
            resolved_provider,
            callback_path,
            resolved_request_id or "-",
            origin,
        )
        return launch_url

    async def complete(
        self,
        provider: Any,
        callback_url: Any,
        request_id: Any,
        session: Optional[ProviderSession],
    ) -> NativeAuthResult:
        """
        Turn the web session into a bridge token.

        Never raises: every failure becomes an error result, saved for polling
        when a request id is present.
        """
        resolved_provider = resolve_provider(provider)
        callback_path = resolve_safe_callback_path(callback_url)
        resolved_request_id = resolve_request_id(request_id)

        if resolved_provider is None:
            logger.warning("native-auth complete: invalid provider")
            return await self._finish(
                resolved_request_id,
                NativeAuthResult(status="error", callback_url=callback_path, message="invalid_provider"),
            )

        if session is None:
            logger.warning("native-auth complete: missing session provider=%s", resolved_provider)
            return await self._finish(
                resolved_request_id,
                NativeAuthResult(
                    status="error",
                    provider=resolved_provider,
                    callback_url=callback_path,
                    message="native_auth_session_missing",
                ),
            )

        email = normalize_email(session.email)
        name = normalize_text(session.name, 128)
        subject = derive_subject(session, email, resolved_provider)
        if not name or not email:
            name, email = await self._fill_from_user(subject, name, email)

        try:
            bridge_token = self.codec.mint(
                subject=subject,
                name=name or self.settings.default_display_name,
                email=email,
                provider=resolved_provider,
                callback_url=callback_path,
            )
        except (BridgeSecretMissingError, ValueError) as e:
            logger.error(
                "native-auth complete: bridge token creation failed provider=%s reason=%s",
                resolved_provider,
                e,
            )
            return await self._finish(
                resolved_request_id,
                NativeAuthResult(
                    status="error",
                    provider=resolved_provider,
                    callback_url=callback_path,
                    message="native_auth_bridge_token_failed",
                ),
            )

        logger.info(
            "native-auth complete: success provider=%s callbackUrl=%s hasEmail=%s",
            resolved_provider,
            callback_path,
            "1" if email else "0",
        )
        return await self._finish(
            resolved_request_id,
            NativeAuthResult(
                status="success",
                provider=resolved_provider,
                callback_url=callback_path,
                bridge_token=bridge_token,
            ),
        )

    async def _fill_from_user(self, subject: str, name: str, email: str) -> tuple[str, str]:
        if self.db is None:
            return name, email
        try:
            user = await UserService(self.db).get_by_external_id(subject)
        except SQLAlchemyError as e:
            logger.warning("native-auth complete: user lookup failed reason=%s", e)
            return name, email
        if user is None:
            return name, email
        return name or user.display_name, email or normalize_email(user.email)

    async def _finish(self, request_id: Optional[str], result: NativeAuthResult) -> NativeAuthResult:
        if request_id:
            try:
                await self.pending_store.save(request_id, result)
            except Exception:
                # The response still carries the result; polling clients will time out.
                logger.exception("native-auth: failed to save pending result requestId=%s", request_id)
        return result

    def app_redirect_url(self, result: NativeAuthResult) -> str:
        params = {"status": result.status}
        if result.provider:
            params["provider"] = result.provider
        if result.callback_url:
            params["callbackUrl"] = result.callback_url
        if result.bridge_token:
            params["token"] = result.bridge_token
        if result.message:
            params["message"] = result.message
        return f"{self.settings.native_auth_app_callback_url}?{urlencode(params)}"

    async def poll(self, request_id: Any) -> dict[str, Any]:
        resolved_request_id = resolve_request_id(request_id)
        if not resolved_request_id:
            raise NativeAuthError("invalid_request_id")

        result = await self.pending_store.consume(resolved_request_id)
        if result is None:
            return PendingResponse().model_dump()
        return result.to_response()

    async def exchange(self, provider: str, body: ExchangeRequest) -> ExchangeOutcome:
        """Verify a provider identity token and mint a bridge token for it."""
        callback_path = resolve_safe_callback_path(normalize_text(body.callback_url, 2048))
        request_id = resolve_request_id(normalize_text(body.request_id, 256))
        resolved_provider = resolve_provider(provider)

        async def fail(message: str, status_code: int = 400) -> ExchangeOutcome:
            result = NativeAuthResult(
                status="error",
                provider=resolved_provider,
                callback_url=callback_path,
                message=message,
            )
            await self._finish(request_id, result)
            return ExchangeOutcome(status_code=status_code, result=result)

        if resolved_provider is None:
            return await fail("native_auth_invalid_provider", 400)

        identity_token = normalize_text(body.identity_token, 8192)
        if not identity_token:
            return await fail("native_auth_missing_identity_token", 400)

        try:
            assertion = await self.verifier.verify(IDENTITY_PROVIDERS[resolved_provider], identity_token)
        except AudienceNotConfiguredError as e:
            logger.error("native-auth exchange: %s", e)
            return await fail("native_auth_audience_not_configured", 500)
        except KeySetFetchError as e:
            logger.error("native-auth exchange: signing keys unavailable provider=%s reason=%s", resolved_provider, e)
            return await fail("native_auth_identity_keys_unavailable", 500)
        if assertion is None:
            return await fail("native_auth_invalid_identity_token", 401)

        email_from_body = normalize_email(body.email)
        if email_from_body and assertion.email and email_from_body != assertion.email:
            return await fail("native_auth_email_mismatch", 400)

        name = normalize_text(body.name, 128) or derive_name_from_email(
            assertion.email or email_from_body, self.settings.default_display_name
        )

        try:
            external_id, display_name, email = await self._upsert_identity(resolved_provider, assertion, name)
        except Exception as e:
            logger.error("native-auth exchange: user upsert failed provider=%s reason=%s", resolved_provider, e)
            if self.db is not None:
                await self.db.rollback()
            return await fail("native_auth_user_upsert_failed", 500)

        try:
            bridge_token = self.codec.mint(
                subject=external_id,
                name=display_name,
                email=email,
                provider=resolved_provider,
                callback_url=callback_path,
            )
        except (BridgeSecretMissingError, ValueError) as e:
            logger.error("native-auth exchange: bridge token failed reason=%s", e)
            return await fail("native_auth_bridge_token_failed", 500)

        result = NativeAuthResult(
            status="success",
            provider=resolved_provider,
            callback_url=callback_path,
            bridge_token=bridge_token,
        )
        await self._finish(request_id, result)

        logger.info("native-auth exchange: success provider=%s hasEmail=%s", resolved_provider, "1" if email else "0")
        return ExchangeOutcome(status_code=200, result=result)

    async def _upsert_identity(
        self, provider: NativeOAuthProvider, assertion: IdentityAssertion, name: str
    ) -> tuple[str, str, str]:
        if self.db is None:
            raise RuntimeError("identity store is not configured")
        user = await UserService(self.db).upsert_native_identity(
            provider=provider,
            subject=assertion.subject,
            email=assertion.email,
            display_name=name,
        )
        await self.db.commit()
        return user.external_id, user.display_name, normalize_email(user.email) or assertion.email

    def issue_session(self, token: Any) -> SessionResponse:
        """Exchange a bridge token for an application access token."""
        try:
            payload = self.codec.verify(token) if isinstance(token, str) and token.strip() else None
        except BridgeSecretMissingError:
            logger.error("native-auth session: bridge token secret is not configured")
            raise NativeAuthError("native_auth_not_configured", 500) from None
        if payload is None:
            raise NativeAuthError("native_auth_invalid_bridge_token", 401)

        access_token = create_access_token(
            payload.subject, email=payload.email or None, name=payload.display_name
        )
        return SessionResponse(
            access_token=access_token,
            subject=payload.subject,
            name=payload.display_name,
            email=payload.email,
            provider=payload.provider,
            callback_url=payload.callback_url,
        )


def parse_exchange_body(raw: Any) -> ExchangeRequest:
    """Untrusted JSON in, validated request out. Anything unusable becomes an empty request."""
    if not isinstance(raw, dict):
        return ExchangeRequest()
    try:
        return ExchangeRequest.model_validate(raw)
    except ValidationError:
        return ExchangeRequest()
