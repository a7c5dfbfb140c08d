from uuid import UUID

from pydantic import BaseModel, ConfigDict


class TokenPayload(BaseModel):
    sub: str  # Subject (external_id of the application user)
    exp: int  # Expiration timestamp
    iat: int | None = None  # Issued at timestamp (optional for forward auth tokens)
    email: str | None = None
    name: str | None = None


class ProviderSession(BaseModel):
    """Web session established by the provider sign-in integration."""

    subject: str | None = None
    email: str | None = None
    name: str | None = None


class SessionUser(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_id: str
    email: str | None = None
    display_name: str
    is_active: bool
