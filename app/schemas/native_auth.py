from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

NativeOAuthProvider = Literal["apple", "google"]


class BridgeTokenPayload(BaseModel):
    """Claims carried inside a bridge token. Wire names are the short aliases."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    version: int = Field(alias="v")
    subject: str = Field(alias="sub")
    display_name: str = Field(alias="name")
    email: str
    provider: NativeOAuthProvider
    callback_url: str = Field(alias="callbackUrl")
    issued_at: int = Field(alias="iat")
    expires_at: int = Field(alias="exp")


class NativeAuthResult(BaseModel):
    """Terminal outcome of a handoff, as delivered to the mobile client."""

    model_config = ConfigDict(populate_by_name=True)

    status: Literal["success", "error"]
    provider: NativeOAuthProvider | None = None
    callback_url: str = Field(default="/", alias="callbackUrl")
    bridge_token: str | None = Field(default=None, alias="bridgeToken")
    message: str | None = None

    @model_validator(mode="after")
    def check_status_fields(self) -> "NativeAuthResult":
        if self.status == "success" and not (self.bridge_token and self.provider):
            raise ValueError("success result requires bridgeToken and provider")
        if self.status == "error" and not self.message:
            raise ValueError("error result requires message")
        return self

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PendingResponse(BaseModel):
    status: Literal["pending"] = "pending"


def _text_or_none(value: Any) -> Any:
    # Untrusted JSON: anything that isn't a string is treated as absent.
    return value if isinstance(value, str) else None


class ExchangeRequest(BaseModel):
    identity_token: str | None = Field(
        default=None, validation_alias=AliasChoices("identityToken", "idToken")
    )
    callback_url: str | None = Field(default=None, validation_alias="callbackUrl")
    request_id: str | None = Field(default=None, validation_alias="requestId")
    name: str | None = None
    email: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def strings_only(cls, value: Any) -> Any:
        return _text_or_none(value)


class SessionRequest(BaseModel):
    token: str | None = None

    @field_validator("token", mode="before")
    @classmethod
    def strings_only(cls, value: Any) -> Any:
        return _text_or_none(value)


class SessionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken")
    token_type: str = Field(default="bearer", alias="tokenType")
    subject: str
    name: str
    email: str
    provider: NativeOAuthProvider
    callback_url: str = Field(alias="callbackUrl")
