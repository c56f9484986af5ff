from __future__ import annotations

from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

# Upper bound for opaque credential fields
MAX_CREDENTIAL_LENGTH = 4096


class OAuthErrorBody(BaseModel):
    """RFC 6749 §5.2 error body."""

    error: str
    error_description: Optional[str] = None


class Envelope(BaseModel):
    """Envelope for non-OAuth administrative responses."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class AuthorizeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(..., min_length=1, max_length=255)
    redirect_uri: str = Field(..., min_length=1, max_length=2048)
    scope: str = Field(..., max_length=1024)
    code_challenge: Optional[str] = Field(None, max_length=128)
    code_challenge_method: Optional[str] = Field(None, max_length=16)
    state: Optional[str] = Field(None, max_length=1024)
    organization_id: Optional[str] = Field(None, max_length=255)
    response_type: Literal["code"] = "code"


class AuthorizeResponse(BaseModel):
    code: str
    redirect_uri: str
    state: Optional[str] = None


class TokenRequest(BaseModel):
    """Token endpoint parameters; which ones are required depends on grant_type."""

    grant_type: Optional[str] = Field(None, max_length=64)
    client_id: Optional[str] = Field(None, max_length=255)
    client_secret: Optional[str] = Field(None, max_length=MAX_CREDENTIAL_LENGTH)
    code: Optional[str] = Field(None, max_length=MAX_CREDENTIAL_LENGTH)
    redirect_uri: Optional[str] = Field(None, max_length=2048)
    code_verifier: Optional[str] = Field(None, max_length=MAX_CREDENTIAL_LENGTH)
    refresh_token: Optional[str] = Field(None, max_length=MAX_CREDENTIAL_LENGTH)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str
    scope: str


class RevokeRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_CREDENTIAL_LENGTH)
    client_id: str = Field(..., min_length=1, max_length=255)
    client_secret: Optional[str] = Field(None, max_length=MAX_CREDENTIAL_LENGTH)
    token_type_hint: Optional[str] = Field(None, max_length=64)


class UserInfoResponse(BaseModel):
    sub: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    organization_id: Optional[str] = None


class TokenRevocationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_CREDENTIAL_LENGTH)


class RevocationResult(BaseModel):
    revoked: bool
    sessions_deleted: int = 0
