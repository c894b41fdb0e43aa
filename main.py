#!/usr/bin/env python3

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from auth import AuthManager, UserAuthenticator
from clients import ClientRegistry
from config import Config
from errors import AccessDenied, InvalidRequest, OAuthError, RateLimitExceeded
from middleware import AuthContext, BearerAuth, BearerAuthError, extract_bearer_token
from models import SUPPORTED_GRANTS, HealthCheckResponse, TokenIntrospectionResponse
from oauth_server import OAuthServer
from proxy import ReverseProxy
from token_store import TokenStore

logger = logging.getLogger(__name__)

SERVICE_NAME = "oauth-gateway"
VERSION = "1.0.0"

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def configure_logging(config: Config):
    logging.basicConfig(level=config.log_level.upper(), format=config.log_format)


async def read_params(request: Request, include_query: bool = True) -> Dict[str, Any]:
    """Merge query parameters with a form or JSON body.

    Endpoints taking client credentials pass ``include_query=False`` so that
    secrets are only ever read from the body or the Authorization header.
    """
    params: Dict[str, Any] = dict(request.query_params) if include_query else {}
    if request.method in ("GET", "HEAD"):
        return params

    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            raise InvalidRequest("Request body is not valid JSON")
        if not isinstance(body, dict):
            raise InvalidRequest("Request body must be a JSON object")
        params.update(body)
    else:
        form = await request.form()
        params.update({key: value for key, value in form.items() if isinstance(value, str)})
    return params


def create_app(
    config: Optional[Config] = None,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
    authenticator: Optional[UserAuthenticator] = None,
) -> FastAPI:
    """Assemble the authorization server and the authenticated reverse proxy"""
    config = config or Config()
    configure_logging(config)

    # Initialize components
    registry = ClientRegistry.from_config(config)
    token_store = TokenStore(config.tokens_file)
    auth_manager = AuthManager(config, registry, token_store, authenticator)
    oauth_server = OAuthServer(auth_manager)
    reverse_proxy = ReverseProxy(config, transport=upstream_transport)
    bearer_auth = BearerAuth(
        auth_manager,
        allow_query=config.allow_bearer_in_query,
        required_scope=config.proxy_required_scope,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {SERVICE_NAME} v{VERSION}")
        logger.info(f"Environment: {config.environment}")
        logger.info(f"Base URL: {config.base_url}")
        logger.info(f"Upstream: {config.upstream_base_url}")

        cleanup_task = asyncio.create_task(auth_manager.cleanup_expired_tokens())
        try:
            yield
        finally:
            logger.info(f"Shutting down {SERVICE_NAME}")
            cleanup_task.cancel()
            await reverse_proxy.close()

    app = FastAPI(
        title="OAuth Gateway",
        description="OAuth 2.0 authorization server fronting an authenticated reverse proxy",
        version=VERSION,
        docs_url="/docs" if config.is_development else None,
        redoc_url="/redoc" if config.is_development else None,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.auth_manager = auth_manager
    app.state.token_store = token_store
    app.state.reverse_proxy = reverse_proxy

    # Add security headers middleware
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)

        # Security headers
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # HTTPS enforcement in production
        if config.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=config.allowed_origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["WWW-Authenticate"],
    )

    # Error handlers
    @app.exception_handler(AccessDenied)
    async def access_denied_handler(request: Request, exc: AccessDenied):
        return RedirectResponse(url=exc.redirect_url, status_code=302)

    @app.exception_handler(BearerAuthError)
    async def bearer_auth_error_handler(request: Request, exc: BearerAuthError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)

    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.error_description}")
        else:
            logger.warning(f"{request.method} {request.url.path} rejected: {exc.error} - {exc.error_description}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers or None)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unexpected error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"error": str(exc) or exc.__class__.__name__})

    # Health and discovery endpoints
    @app.get("/health")
    async def health_check():
        """Health check endpoint with component status"""
        return HealthCheckResponse(
            status="healthy",
            service=SERVICE_NAME,
            version=VERSION,
            timestamp=datetime.now(timezone.utc).isoformat(),
            components={
                "token_store": f"{len(token_store)} tokens",
                "upstream": config.upstream_base_url,
            },
            environment=config.environment,
        ).model_dump()

    @app.get("/.well-known/oauth-authorization-server")
    async def oauth_authorization_server_metadata():
        """OAuth 2.0 Authorization Server Metadata (RFC 8414)"""
        metadata = {
            "issuer": config.base_url,
            "authorization_endpoint": f"{config.base_url}/oauth/authorize",
            "token_endpoint": f"{config.base_url}/oauth/token",
            "revocation_endpoint": f"{config.base_url}/oauth/revoke",
            "introspection_endpoint": f"{config.base_url}/oauth/validate",
            "response_types_supported": ["code"],
            "grant_types_supported": list(SUPPORTED_GRANTS),
            "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
        }
        if config.scopes_supported:
            metadata["scopes_supported"] = config.scopes_supported
        return metadata

    # OAuth Authorization endpoint
    @app.get("/oauth/authorize", response_class=HTMLResponse)
    async def oauth_authorize_form(request: Request):
        """Render the consent prompt"""
        params = dict(request.query_params)
        if not auth_manager.check_rate_limit(f"authorize:{params.get('client_id')}"):
            raise RateLimitExceeded("Rate limit exceeded")
        return HTMLResponse(await oauth_server.render_consent(params))

    @app.post("/oauth/authorize")
    async def oauth_authorize(request: Request):
        """Approve or deny an authorization request"""
        params = await read_params(request)
        if not auth_manager.check_rate_limit(f"authorize:{params.get('client_id')}"):
            raise RateLimitExceeded("Rate limit exceeded")
        redirect_url = await oauth_server.authorize(params, request)
        return RedirectResponse(url=redirect_url, status_code=302)

    # OAuth Token endpoint
    @app.post("/oauth/token")
    async def oauth_token(request: Request):
        """Token issuance for all supported grants"""
        params = await read_params(request, include_query=False)
        authorization = request.headers.get("Authorization")

        # Keyed on the client whichever way it presents its credentials
        client_id, _, _ = oauth_server.extract_client_credentials(params, authorization)
        if client_id and not auth_manager.check_rate_limit(f"token:{client_id}"):
            raise RateLimitExceeded("Rate limit exceeded")

        token_response = await oauth_server.token(params, authorization)
        return JSONResponse(
            content=token_response,
            headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
        )

    # Token validation endpoint
    @app.api_route("/oauth/validate", methods=["GET", "POST"])
    async def oauth_validate(request: Request):
        """Report whether an access token is active and what it is bound to"""
        try:
            params = await read_params(request)
            if request.headers.get("Authorization"):
                access_token = extract_bearer_token(request)
            elif params.get("token"):
                access_token = params["token"]
            else:
                access_token = extract_bearer_token(request, allow_query=config.allow_bearer_in_query)
            result = await auth_manager.introspect_token(access_token)
        except OAuthError as e:
            status_code = 500 if e.status_code >= 500 else 401
            logger.warning(f"Token validation failed: {e.error_description}")
            return JSONResponse(
                status_code=status_code,
                content=TokenIntrospectionResponse(active=False, error=e.error_description).model_dump(exclude_none=True),
            )

        if not result["active"]:
            return JSONResponse(status_code=401, content=result)
        return result

    # Token revocation endpoint
    @app.post("/oauth/revoke")
    async def oauth_revoke(request: Request):
        """Token revocation (RFC 7009 shape)"""
        params = await read_params(request, include_query=False)
        revoked = await oauth_server.revoke(params, request.headers.get("Authorization"))
        return {"revoked": revoked}

    # Liveness for the proxied API, reachable without a token
    @app.get(f"{config.proxy_prefix}/health")
    async def api_health():
        return {"status": "ok"}

    # Authenticated reverse proxy
    @app.api_route(f"{config.proxy_prefix}/{{path:path}}", methods=PROXY_METHODS)
    async def api_proxy(path: str, request: Request, auth: AuthContext = Depends(bearer_auth)):
        return await reverse_proxy.forward(request, path, auth)

    return app


def run():
    try:
        config = Config()
    except ValueError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    app = create_app(config)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    run()
