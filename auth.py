import asyncio
import logging
import secrets
import threading
import time
from typing import Any, Dict, List, Optional

from fastapi import Request

from clients import ClientRegistry
from config import Config
from errors import InvalidGrant, InvalidScope
from models import (
    GRANT_REFRESH_TOKEN,
    AuthorizationCode,
    Client,
    Token,
    TokenIntrospectionResponse,
    User,
    utcnow,
)
from token_store import TokenStore

logger = logging.getLogger(__name__)


class UserAuthenticator:
    """Resolves the resource owner behind an authorization request"""

    async def authenticate(self, request: Request) -> Optional[User]:
        raise NotImplementedError


class StaticUserAuthenticator(UserAuthenticator):
    """Resolves every consent to one fixed principal"""

    def __init__(self, user_id: str, name: Optional[str] = None):
        self.user = User(id=user_id, name=name or user_id)

    async def authenticate(self, request: Request) -> Optional[User]:
        return self.user


class AuthManager:
    """
    Server-side contract used by the protocol engine: client lookup,
    authorization codes, token issue/validate/revoke and scope checks.
    """

    def __init__(
        self,
        config: Config,
        registry: ClientRegistry,
        token_store: TokenStore,
        authenticator: Optional[UserAuthenticator] = None,
    ):
        self.config = config
        self.registry = registry
        self.token_store = token_store
        self.authenticator = authenticator or StaticUserAuthenticator(config.default_user)

        # Codes live in memory only; losing them on restart is acceptable
        self.authorization_codes: Dict[str, AuthorizationCode] = {}
        self._codes_lock = threading.Lock()
        self.rate_limits: Dict[str, List[float]] = {}

    # Clients and users
    async def get_client(self, client_id: Optional[str], client_secret: Optional[str] = None) -> Optional[Client]:
        return self.registry.lookup(client_id, client_secret)

    async def get_user_from_client(self, client: Client) -> User:
        """Synthetic service-account user for the client_credentials grant"""
        return User(id=f"client_user:{client.id}", name="Client User")

    async def authenticate_user(self, request: Request) -> Optional[User]:
        return await self.authenticator.authenticate(request)

    def validate_scope(self, requested: Optional[str]) -> str:
        """Return the scope to grant, falling back to the server default"""
        scopes = (requested or "").split()
        if not scopes:
            return self.config.default_scope

        if self.config.allowed_scopes:
            unknown = [s for s in scopes if s not in self.config.allowed_scopes]
            if unknown:
                raise InvalidScope(f"Unknown scope: {' '.join(unknown)}")

        # Normalize whitespace and drop duplicates while keeping order
        return " ".join(dict.fromkeys(scopes))

    # Authorization codes
    async def save_authorization_code(
        self, client: Client, user: User, redirect_uri: str, scope: Optional[str]
    ) -> AuthorizationCode:
        code = AuthorizationCode(
            code=secrets.token_urlsafe(32),
            expires_at=utcnow() + self.config.get_oauth_code_expiry_delta(),
            redirect_uri=redirect_uri,
            scope=scope,
            client_id=client.id,
            user_id=str(user.id),
        )
        with self._codes_lock:
            self.authorization_codes[code.code] = code

        logger.info(f"Authorization code created for client {client.id}")
        return code

    async def consume_authorization_code(self, code: Optional[str]) -> AuthorizationCode:
        """Remove and return a code; a code can only ever be consumed once"""
        with self._codes_lock:
            auth_code = self.authorization_codes.pop(code, None) if code else None

        if auth_code is None:
            raise InvalidGrant("Invalid authorization code")

        if auth_code.is_expired():
            raise InvalidGrant("Authorization code expired")

        return auth_code

    # Tokens
    async def save_token(self, client: Client, user: User, scope: Optional[str]) -> Token:
        refresh_lifetime = client.refresh_token_lifetime if GRANT_REFRESH_TOKEN in client.grants else None
        return self.token_store.issue_token(
            client,
            user,
            scope,
            client.access_token_lifetime,
            refresh_lifetime,
        )

    async def get_access_token(self, access_token: str) -> Optional[Token]:
        return self.token_store.lookup_access_token(access_token)

    async def get_refresh_token(self, refresh_token: str) -> Optional[Token]:
        return self.token_store.lookup_refresh_token(refresh_token)

    async def revoke_token(self, refresh_token: str) -> bool:
        return self.token_store.revoke(refresh_token)

    async def revoke_access_token(self, access_token: str) -> bool:
        return self.token_store.revoke_access_token(access_token)

    async def verify_scope(self, token: Token, scope: Optional[str]) -> bool:
        return self.token_store.verify_scope(token, scope)

    async def introspect_token(self, access_token: str) -> Dict[str, Any]:
        """Describe an access token for /oauth/validate"""
        token = await self.get_access_token(access_token)
        if token is None:
            return TokenIntrospectionResponse(active=False, error="invalid_token").model_dump(exclude_none=True)

        now = utcnow()
        created_at = token.created_at or now
        return TokenIntrospectionResponse(
            active=True,
            client_id=token.client_id,
            user_id=token.user_id,
            scope=token.scope,
            token_type="Bearer",
            exp=int(token.access_token_expires_at.timestamp()),
            iat=int(created_at.timestamp()),
            expires_in=max(0, int((token.access_token_expires_at - now).total_seconds())),
        ).model_dump(exclude_none=True)

    def check_rate_limit(self, key: str, max_requests: Optional[int] = None, window_seconds: Optional[int] = None) -> bool:
        """Check if a request is within rate limits"""
        if not self.config.rate_limit_enabled:
            return True

        max_requests = max_requests or self.config.rate_limit_requests
        window_seconds = window_seconds or self.config.rate_limit_window
        now = time.time()
        window_start = now - window_seconds

        # Clean old entries
        recent = [timestamp for timestamp in self.rate_limits.get(key, []) if timestamp > window_start]

        if len(recent) >= max_requests:
            self.rate_limits[key] = recent
            return False

        recent.append(now)
        self.rate_limits[key] = recent
        return True

    def purge_expired(self) -> Dict[str, int]:
        """Drop expired codes, tokens and rate-limit windows"""
        now = utcnow()
        with self._codes_lock:
            expired_codes = [code for code, data in self.authorization_codes.items() if data.is_expired(now)]
            for code in expired_codes:
                del self.authorization_codes[code]

        expired_tokens = self.token_store.purge_expired()

        cutoff = time.time() - self.config.rate_limit_window
        for key in list(self.rate_limits.keys()):
            self.rate_limits[key] = [t for t in self.rate_limits[key] if t > cutoff]
            if not self.rate_limits[key]:
                del self.rate_limits[key]

        return {"codes": len(expired_codes), "tokens": expired_tokens}

    async def cleanup_expired_tokens(self):
        """Background task to clean up expired tokens and codes"""
        while True:
            try:
                removed = self.purge_expired()
                if removed["codes"] or removed["tokens"]:
                    logger.info(f"Cleaned up {removed['codes']} codes, {removed['tokens']} tokens")
            except Exception as e:
                logger.error(f"Error in cleanup task: {e}")

            await asyncio.sleep(self.config.cleanup_interval)
