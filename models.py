from typing import Any, Dict, FrozenSet, Optional, Tuple
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_CLIENT_CREDENTIALS = "client_credentials"
GRANT_REFRESH_TOKEN = "refresh_token"

SUPPORTED_GRANTS = (GRANT_AUTHORIZATION_CODE, GRANT_CLIENT_CREDENTIALS, GRANT_REFRESH_TOKEN)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# OAuth Models
class Client(BaseModel):
    """Registered OAuth client, immutable once loaded"""
    model_config = ConfigDict(frozen=True)

    id: str
    secret: Optional[str] = None
    grants: FrozenSet[str] = Field(default_factory=frozenset)
    redirect_uris: Tuple[str, ...] = ()
    access_token_lifetime: int = 3600
    refresh_token_lifetime: int = 1209600

    @field_validator("grants")
    @classmethod
    def validate_grants(cls, v):
        unknown = set(v) - set(SUPPORTED_GRANTS)
        if unknown:
            raise ValueError(f"Unsupported grant types: {sorted(unknown)}")
        return v


class User(BaseModel):
    """Resource owner bound to codes and tokens"""
    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None


class AuthorizationCode(BaseModel):
    """Single-use authorization code, held in memory only"""
    model_config = ConfigDict(frozen=True)

    code: str
    expires_at: datetime
    redirect_uri: str
    scope: Optional[str] = None
    client_id: str
    user_id: str

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.expires_at


class Token(BaseModel):
    """Issued access/refresh token pair.

    Records are persisted with camelCase keys and ISO-8601 timestamps. The
    access token expiry is always set at issue time; it is optional here
    only so that a damaged record can be loaded and rejected on lookup.
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    access_token: str
    access_token_expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None
    refresh_token_expires_at: Optional[datetime] = None
    client_id: str
    user_id: str
    scope: Optional[str] = None
    created_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def flatten_owner_refs(cls, data: Any) -> Any:
        # Older records nest the owners as {"client": {"id": ...}, "user": {"id": ...}}
        if isinstance(data, dict):
            data = dict(data)
            for ref in ("client", "user"):
                nested = data.pop(ref, None)
                key = f"{ref}Id"
                if isinstance(nested, dict) and key not in data and f"{ref}_id" not in data:
                    data[key] = str(nested.get("id"))
        return data

    @field_validator("access_token_expires_at", "refresh_token_expires_at", "created_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def is_access_token_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.access_token_expires_at

    def is_refresh_token_expired(self, now: Optional[datetime] = None) -> bool:
        if self.refresh_token_expires_at is None:
            return False
        return (now or utcnow()) > self.refresh_token_expires_at

    def to_record(self) -> Dict[str, Any]:
        """Serialize for durable storage"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TokenResponse(BaseModel):
    """OAuth 2.0 Token Response"""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


class TokenIntrospectionResponse(BaseModel):
    """Token validation result returned by /oauth/validate"""
    active: bool
    client_id: Optional[str] = None
    user_id: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None
    exp: Optional[int] = None
    iat: Optional[int] = None
    expires_in: Optional[int] = None
    error: Optional[str] = None


# API Response Models
class FailResponse(BaseModel):
    """Structured rejection for protected resource routes"""
    status: str = "fail"
    message: str
    data: Optional[Any] = None
    error: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str
    service: str
    version: str
    timestamp: str
    components: Dict[str, str]
    environment: str
