from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import get_db
from app.models.user import User
from app.schemas.auth import ProviderSession, TokenPayload
from app.services.user_service import UserService

settings = get_settings()

# HTTP Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)

# Forward auth header names (TinyAuth, Authelia, Authentik, etc.)
REMOTE_USER_HEADER = "Remote-User"
REMOTE_EMAIL_HEADER = "Remote-Email"
REMOTE_NAME_HEADER = "Remote-Name"


def create_access_token(
    external_id: str,
    expires_delta: timedelta | None = None,
    email: str | None = None,
    name: str | None = None,
) -> str:
    now = datetime.now(timezone.utc)
    if expires_delta:
        expire = now + expires_delta
    else:
        expire = now + timedelta(days=settings.access_token_ttl_days)
    to_encode = {
        "sub": external_id,
        "exp": expire,
        "iat": now,
    }
    if email:
        to_encode["email"] = email
    if name:
        to_encode["name"] = name
    return jwt.encode(to_encode, settings.secret_key, algorithm="HS256")


def decode_token(token: str) -> TokenPayload:
    """Decode and validate an application access token."""
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=["HS256"],
            options={"verify_exp": True},
        )
        return TokenPayload(**payload)
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_provider_session(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
) -> Optional[ProviderSession]:
    """
    Web session left behind by the provider sign-in page.

    Checked in order: forward auth headers (when trusted), Bearer token,
    session cookie. Returns None when nothing valid is present.
    """
    if settings.auth_trust_header:
        remote_user = request.headers.get(REMOTE_USER_HEADER)
        if remote_user:
            return ProviderSession(
                subject=remote_user,
                email=request.headers.get(REMOTE_EMAIL_HEADER),
                name=request.headers.get(REMOTE_NAME_HEADER),
            )

    token = credentials.credentials if credentials else request.cookies.get(settings.session_cookie_name)
    if not token:
        return None

    try:
        token_data = decode_token(token)
    except HTTPException:
        return None
    return ProviderSession(subject=token_data.sub, email=token_data.email, name=token_data.name)


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """Get the user behind an application access token."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_data = decode_token(credentials.credentials)
    user = await UserService(db).get_by_external_id(token_data.sub)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )

    return user


# Type aliases for dependency injection
CurrentUser = Annotated[User, Depends(get_current_user)]
CurrentProviderSession = Annotated[Optional[ProviderSession], Depends(get_provider_session)]
