import logging
from functools import lru_cache
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import async_session_maker, get_db
from app.schemas.native_auth import SessionRequest
from app.services.native_auth_service import NativeAuthError, NativeAuthService, parse_exchange_body
from app.services.pending_store import PendingResultStore
from app.utils.auth import CurrentProviderSession
from app.utils.bridge_token import BridgeTokenCodec
from app.utils.native_auth import resolve_public_origin, summarize_user_agent
from app.utils.oidc import IdentityTokenVerifier, JWKSCache, allowed_audiences

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/native-auth", tags=["Native Auth"])
settings = get_settings()

NO_STORE = {"Cache-Control": "no-store, max-age=0"}


@lru_cache
def get_bridge_codec() -> BridgeTokenCodec:
    return BridgeTokenCodec(
        secret=settings.native_auth_secret,
        ttl_seconds=settings.native_auth_token_ttl_seconds,
        default_display_name=settings.default_display_name,
    )


@lru_cache
def get_pending_store() -> PendingResultStore:
    return PendingResultStore(
        session_factory=async_session_maker,
        ttl_seconds=settings.native_auth_pending_ttl_seconds,
    )


@lru_cache
def get_identity_verifier() -> IdentityTokenVerifier:
    key_cache = JWKSCache(
        ttl_seconds=settings.jwks_cache_ttl_seconds,
        timeout=settings.jwks_timeout_seconds,
    )
    # Audiences are read from settings on every verification.
    return IdentityTokenVerifier(key_cache, lambda provider: allowed_audiences(get_settings(), provider))


def get_native_auth_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    codec: Annotated[BridgeTokenCodec, Depends(get_bridge_codec)],
    pending_store: Annotated[PendingResultStore, Depends(get_pending_store)],
    verifier: Annotated[IdentityTokenVerifier, Depends(get_identity_verifier)],
) -> NativeAuthService:
    return NativeAuthService(settings, codec, pending_store, verifier, db)


NativeAuth = Annotated[NativeAuthService, Depends(get_native_auth_service)]


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


@router.get("/start")
async def start(
    request: Request,
    service: NativeAuth,
    provider: Optional[str] = Query(None),
    callback_url: Optional[str] = Query(None, alias="callbackUrl"),
    request_id: Optional[str] = Query(None, alias="requestId"),
):
    origin = resolve_public_origin(request, settings)
    try:
        launch_url = service.start(
            origin,
            request.app.url_path_for("native_auth_complete"),
            provider,
            callback_url,
            request_id,
        )
    except NativeAuthError as e:
        return JSONResponse(status_code=e.status_code, content={"error": e.code})

    logger.debug("native-auth start ua=%s", summarize_user_agent(request.headers.get("user-agent")))
    return RedirectResponse(launch_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.get("/complete", name="native_auth_complete")
async def complete(
    request: Request,
    service: NativeAuth,
    session: CurrentProviderSession,
    provider: Optional[str] = Query(None),
    callback_url: Optional[str] = Query(None, alias="callbackUrl"),
    request_id: Optional[str] = Query(None, alias="requestId"),
) -> RedirectResponse:
    logger.info(
        "native-auth complete begin provider=%s requestId=%s ua=%s",
        provider or "invalid",
        request_id or "-",
        summarize_user_agent(request.headers.get("user-agent")),
    )
    result = await service.complete(provider, callback_url, request_id, session)

    # Custom-scheme redirects are always 302.
    return RedirectResponse(
        service.app_redirect_url(result),
        status_code=status.HTTP_302_FOUND,
        headers=NO_STORE,
    )


@router.get("/pending")
async def pending(
    service: NativeAuth,
    request_id: Optional[str] = Query(None, alias="requestId"),
) -> JSONResponse:
    try:
        content = await service.poll(request_id)
    except NativeAuthError as e:
        return JSONResponse(status_code=e.status_code, content={"error": e.code}, headers=NO_STORE)
    return JSONResponse(content=content, headers=NO_STORE)


@router.post("/{provider}/exchange")
async def exchange(provider: str, request: Request, service: NativeAuth) -> JSONResponse:
    body = parse_exchange_body(await _json_body(request))
    outcome = await service.exchange(provider, body)
    return JSONResponse(
        status_code=outcome.status_code,
        content=outcome.result.to_response(),
        headers=NO_STORE,
    )


@router.post("/session")
async def issue_session(request: Request, service: NativeAuth) -> JSONResponse:
    raw = await _json_body(request)
    body = SessionRequest.model_validate(raw) if isinstance(raw, dict) else SessionRequest()
    try:
        session = service.issue_session(body.token)
    except NativeAuthError as e:
        return JSONResponse(
            status_code=e.status_code,
            content={"status": "error", "message": e.code},
            headers=NO_STORE,
        )
    return JSONResponse(content=session.model_dump(by_alias=True), headers=NO_STORE)
