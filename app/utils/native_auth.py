import re
from typing import Any, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from fastapi import Request

from app.config import Settings
from app.schemas.native_auth import NativeOAuthProvider

SUPPORTED_PROVIDERS: tuple[NativeOAuthProvider, ...] = ("apple", "google")

# Relative paths are resolved against this placeholder; anything that escapes it is external.
SAFE_CALLBACK_ORIGIN = "https://bridge.invalid"
FALLBACK_CALLBACK_PATH = "/"

REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,128}$")


def normalize_text(value: Any, max_length: int) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()[:max_length]


def normalize_email(value: Any) -> str:
    return normalize_text(value, 256).lower()


def resolve_provider(value: Any) -> Optional[NativeOAuthProvider]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if normalized in SUPPORTED_PROVIDERS:
        return normalized  # type: ignore[return-value]
    return None


def resolve_request_id(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if not REQUEST_ID_PATTERN.match(candidate):
        return None
    return candidate


def _safe_callback_path(value: str) -> Optional[str]:
    trimmed = value.strip()
    if not trimmed or not trimmed.startswith("/") or trimmed.startswith("//"):
        return None
    # Browsers read "\" as "/" and drop control characters, so "/\evil" would leave the origin.
    if "\\" in trimmed or any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in trimmed):
        return None

    parsed = urlsplit(urljoin(SAFE_CALLBACK_ORIGIN, trimmed))
    if f"{parsed.scheme}://{parsed.netloc}" != SAFE_CALLBACK_ORIGIN:
        return None

    normalized = urlunsplit(("", "", parsed.path or "/", parsed.query, parsed.fragment))
    if not normalized.startswith("/") or normalized.startswith("//"):
        return None
    return normalized


def resolve_safe_callback_path(value: Any, fallback: str = FALLBACK_CALLBACK_PATH) -> str:
    """
    Reduce a client-supplied callback to a same-origin relative path.

    Absolute URLs, protocol-relative URLs and anything else that would leave
    the origin resolve to the fallback.
    """
    fallback_path = _safe_callback_path(fallback) or FALLBACK_CALLBACK_PATH
    if not isinstance(value, str):
        return fallback_path
    return _safe_callback_path(value) or fallback_path


def summarize_user_agent(value: Optional[str]) -> str:
    normalized = " ".join((value or "").split())
    if not normalized:
        return "unknown"
    return normalized[:160]


def _normalize_origin(value: Optional[str]) -> Optional[str]:
    if not value or not value.strip():
        return None
    parsed = urlsplit(value.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def _allowed_hosts(settings: Settings) -> set[str]:
    hosts = set()
    for value in settings.native_auth_allowed_hosts:
        value = value.strip()
        if not value:
            continue
        origin = _normalize_origin(value if "://" in value else f"https://{value}")
        if origin:
            hosts.add(urlsplit(origin).netloc)
    return hosts


def resolve_public_origin(request: Request, settings: Settings) -> str:
    """
    Origin the browser should be sent to for sign-in and completion.

    PUBLIC_URL wins. Forwarded headers are only honoured when their host is in
    NATIVE_AUTH_ALLOWED_HOSTS (or no allow-list is configured).
    """
    configured = _normalize_origin(settings.public_url)
    if configured:
        return configured

    allowed = _allowed_hosts(settings)

    forwarded_url = _normalize_origin(request.headers.get("x-forwarded-url"))
    if forwarded_url and (not allowed or urlsplit(forwarded_url).netloc in allowed):
        return forwarded_url

    forwarded_proto = (request.headers.get("x-forwarded-proto") or "").split(",")[0].strip().lower()
    forwarded_host = (request.headers.get("x-forwarded-host") or "").split(",")[0].strip()
    if forwarded_proto and forwarded_host and (not allowed or forwarded_host in allowed):
        forwarded_origin = _normalize_origin(f"{forwarded_proto}://{forwarded_host}")
        if forwarded_origin:
            return forwarded_origin

    return str(request.base_url).rstrip("/")
