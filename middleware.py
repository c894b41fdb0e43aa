import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Request

from auth import AuthManager
from errors import InsufficientScope, InvalidRequest, InvalidToken, OAuthError
from models import FailResponse, Token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """Identity resolved from a bearer token, handed to downstream handlers"""
    token: Token

    @property
    def client_id(self) -> str:
        return self.token.client_id

    @property
    def user_id(self) -> str:
        return self.token.user_id

    @property
    def scope(self) -> Optional[str]:
        return self.token.scope

    @property
    def expires_at(self) -> datetime:
        return self.token.access_token_expires_at


class BearerAuthError(Exception):
    """Rejection of a protected resource request"""

    def __init__(self, cause: OAuthError):
        self.cause = cause
        super().__init__(cause.error_description)

    @property
    def status_code(self) -> int:
        # Anything short of a scope failure is an authentication failure
        return 403 if isinstance(self.cause, InsufficientScope) else 401

    def to_dict(self):
        return FailResponse(message=self.cause.error_description, error=self.cause.error).model_dump()

    @property
    def headers(self):
        if isinstance(self.cause, InsufficientScope):
            return {"WWW-Authenticate": 'Bearer realm="oauth-gateway", error="insufficient_scope"'}
        if isinstance(self.cause, InvalidToken):
            return {"WWW-Authenticate": 'Bearer realm="oauth-gateway", error="invalid_token"'}
        return {"WWW-Authenticate": 'Bearer realm="oauth-gateway"'}


def extract_bearer_token(request: Request, allow_query: bool = False) -> str:
    """Pull the bearer token from the Authorization header (or query string when enabled)"""
    auth_header = request.headers.get("Authorization")
    if auth_header:
        scheme, _, token = auth_header.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise InvalidRequest("Malformed Authorization header, expected 'Bearer <token>'")
        return token

    if allow_query and request.query_params.get("access_token"):
        return request.query_params["access_token"]

    raise InvalidRequest("Authentication required: missing bearer token")


class BearerAuth:
    """
    FastAPI dependency guarding protected routes.

    Returns an ``AuthContext`` for a live token, otherwise raises
    ``BearerAuthError`` before any downstream work happens.
    """

    def __init__(self, auth_manager: AuthManager, allow_query: bool = False, required_scope: Optional[str] = None):
        self.auth_manager = auth_manager
        self.allow_query = allow_query
        self.required_scope = required_scope

    async def __call__(self, request: Request) -> AuthContext:
        try:
            access_token = extract_bearer_token(request, self.allow_query)
        except InvalidRequest as e:
            logger.warning(f"Rejected {request.method} {request.url.path}: {e.error_description}")
            raise BearerAuthError(e)

        token = await self.auth_manager.get_access_token(access_token)
        if token is None:
            logger.warning(f"Rejected {request.method} {request.url.path}: invalid or expired token")
            raise BearerAuthError(InvalidToken("Invalid or expired token"))

        if self.required_scope and not await self.auth_manager.verify_scope(token, self.required_scope):
            logger.warning(f"Rejected {request.method} {request.url.path}: missing scope {self.required_scope}")
            raise BearerAuthError(InsufficientScope(f"Token lacks required scope: {self.required_scope}"))

        return AuthContext(token=token)
