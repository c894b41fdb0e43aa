import base64
import binascii
import html
import logging
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import unquote_plus, urlencode

from fastapi import Request

from auth import AuthManager
from errors import (
    AccessDenied,
    InvalidClient,
    InvalidGrant,
    InvalidRequest,
    InvalidScope,
    UnauthorizedClient,
    UnsupportedGrantType,
    UnsupportedResponseType,
)
from models import (
    GRANT_AUTHORIZATION_CODE,
    GRANT_CLIENT_CREDENTIALS,
    GRANT_REFRESH_TOKEN,
    SUPPORTED_GRANTS,
    Client,
    Token,
    TokenResponse,
    User,
)

logger = logging.getLogger(__name__)

TRUTHY = {"1", "true", "yes", "on"}

CONSENT_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Authorize {client_id}</title></head>
<body>
  <h1>Authorize application</h1>
  <p><strong>{client_id}</strong> is requesting access with scope <code>{scope}</code>.</p>
  <form method="post" action="/oauth/authorize">
{hidden_fields}
    <button type="submit" name="approve" value="true">Allow</button>
    <button type="submit" name="deny" value="true">Deny</button>
  </form>
</body>
</html>
"""


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUTHY if value is not None else False


def build_redirect_url(redirect_uri: str, params: Dict[str, Optional[str]]) -> str:
    """Append query parameters to a redirect URI, dropping empty values"""
    query = urlencode({k: v for k, v in params.items() if v is not None and v != ""})
    if not query:
        return redirect_uri
    separator = "&" if "?" in redirect_uri else "?"
    return f"{redirect_uri}{separator}{query}"


def parse_basic_credentials(authorization: Optional[str]) -> Optional[Tuple[str, str]]:
    """Decode ``Authorization: Basic base64(client_id:client_secret)``"""
    if not authorization:
        return None

    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() != "basic":
        return None

    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise InvalidRequest("Invalid Basic authorization header")

    if ":" not in decoded:
        raise InvalidRequest("Invalid Basic authorization header")

    client_id, client_secret = decoded.split(":", 1)
    return unquote_plus(client_id), unquote_plus(client_secret)


class OAuthServer:
    """Protocol engine for the authorization_code, client_credentials and refresh_token grants"""

    def __init__(self, auth_manager: AuthManager):
        self.auth_manager = auth_manager

    # Client authentication
    def extract_client_credentials(
        self, form: Mapping[str, Any], authorization: Optional[str]
    ) -> Tuple[Optional[str], Optional[str], bool]:
        """Resolve client credentials from the body, falling back to Basic auth.

        Returns ``(client_id, client_secret, used_basic_auth)``. Body and header
        values that disagree are rejected rather than combined.
        """
        body_id = form.get("client_id") or None
        body_secret = form.get("client_secret")
        basic = parse_basic_credentials(authorization)

        if basic is None:
            return body_id, body_secret, False

        header_id, header_secret = basic
        if body_id is not None and body_id != header_id:
            raise InvalidClient("client_id in body does not match Authorization header")
        if body_secret is not None and body_secret != header_secret:
            raise InvalidClient("client_secret in body does not match Authorization header")

        client_id = body_id if body_id is not None else header_id
        client_secret = body_secret if body_secret is not None else header_secret
        return client_id, client_secret, True

    async def authenticate_client(
        self, form: Mapping[str, Any], authorization: Optional[str], require_secret: bool
    ) -> Client:
        client_id, client_secret, used_basic = self.extract_client_credentials(form, authorization)
        headers = {"WWW-Authenticate": 'Basic realm="oauth"'} if used_basic else None

        if not client_id:
            raise InvalidClient("Missing client credentials", headers=headers)
        if require_secret and not client_secret:
            raise InvalidClient("Missing client_secret", headers=headers)

        client = await self.auth_manager.get_client(client_id, client_secret)
        if client is None:
            raise InvalidClient("Invalid client: client is invalid", headers=headers)
        return client

    # Authorization endpoint
    async def validate_authorize_request(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        """Check an authorization request and return its normalized parameters"""
        response_type = params.get("response_type") or "code"
        if response_type != "code":
            raise UnsupportedResponseType(f"Unsupported response_type: {response_type}")

        client = await self.auth_manager.get_client(params.get("client_id"))
        if client is None:
            raise InvalidRequest("Invalid client_id")

        if GRANT_AUTHORIZATION_CODE not in client.grants:
            raise UnauthorizedClient("Client is not allowed to use the authorization_code grant")

        redirect_uri = params.get("redirect_uri")
        if not redirect_uri and len(client.redirect_uris) == 1:
            redirect_uri = client.redirect_uris[0]
        if not redirect_uri:
            raise InvalidRequest("Missing parameter: redirect_uri")
        if not self.auth_manager.registry.is_redirect_uri_allowed(client, redirect_uri):
            raise InvalidRequest("redirect_uri is not registered for this client")

        return {
            "client": client,
            "redirect_uri": redirect_uri,
            "scope": self.auth_manager.validate_scope(params.get("scope")),
            "state": params.get("state"),
        }

    async def render_consent(self, params: Mapping[str, Any]) -> str:
        """HTML consent prompt for GET /oauth/authorize"""
        validated = await self.validate_authorize_request(params)
        fields = {
            "client_id": validated["client"].id,
            "redirect_uri": validated["redirect_uri"],
            "response_type": "code",
            "scope": validated["scope"],
            "state": validated["state"],
        }
        hidden_fields = "\n".join(
            f'    <input type="hidden" name="{name}" value="{html.escape(value)}">'
            for name, value in fields.items()
            if value
        )
        return CONSENT_PAGE.format(
            client_id=html.escape(validated["client"].id),
            scope=html.escape(validated["scope"]),
            hidden_fields=hidden_fields,
        )

    async def authorize(self, params: Mapping[str, Any], request: Request) -> str:
        """Handle the consent decision and return the redirect location"""
        state = params.get("state")

        if is_truthy(params.get("deny")):
            redirect_uri = params.get("redirect_uri")
            if params.get("client_id"):
                redirect_uri = (await self.validate_authorize_request(params))["redirect_uri"]
            if not redirect_uri:
                raise InvalidRequest("Missing parameter: redirect_uri")
            logger.info(f"Authorization denied for client {params.get('client_id') or '<unspecified>'}")
            raise AccessDenied(build_redirect_url(redirect_uri, {"error": "access_denied", "state": state}))

        validated = await self.validate_authorize_request(params)
        client = validated["client"]
        redirect_uri = validated["redirect_uri"]

        user = await self.auth_manager.authenticate_user(request)
        if user is None:
            raise AccessDenied(build_redirect_url(redirect_uri, {"error": "access_denied", "state": state}))

        auth_code = await self.auth_manager.save_authorization_code(client, user, redirect_uri, validated["scope"])
        logger.info(f"Authorization granted for client {client.id} / user {user.id}")
        return build_redirect_url(redirect_uri, {"code": auth_code.code, "state": state})

    # Token endpoint
    async def token(self, form: Mapping[str, Any], authorization: Optional[str]) -> Dict[str, Any]:
        """Issue a token for any supported grant"""
        grant_type = form.get("grant_type")
        if not grant_type:
            raise InvalidRequest("Missing parameter: grant_type")
        if grant_type not in SUPPORTED_GRANTS:
            raise UnsupportedGrantType(f"Unsupported grant_type: {grant_type}")

        require_secret = grant_type != GRANT_AUTHORIZATION_CODE
        client = await self.authenticate_client(form, authorization, require_secret)

        if grant_type not in client.grants:
            raise UnauthorizedClient(f"Client is not allowed to use the {grant_type} grant")

        if grant_type == GRANT_AUTHORIZATION_CODE:
            token = await self._authorization_code_grant(client, form)
        elif grant_type == GRANT_CLIENT_CREDENTIALS:
            token = await self._client_credentials_grant(client, form)
        else:
            token = await self._refresh_token_grant(client, form)

        logger.info(f"Access token issued for client {client.id} via {grant_type}")
        return self._token_response(client, token)

    async def _authorization_code_grant(self, client: Client, form: Mapping[str, Any]) -> Token:
        code = form.get("code")
        redirect_uri = form.get("redirect_uri")
        if not code:
            raise InvalidRequest("Missing parameter: code")
        if not redirect_uri:
            raise InvalidRequest("Missing parameter: redirect_uri")

        auth_code = await self.auth_manager.consume_authorization_code(code)

        if auth_code.client_id != client.id:
            raise InvalidGrant("Authorization code was issued to another client")
        if auth_code.redirect_uri != redirect_uri:
            raise InvalidGrant("Invalid request: redirect_uri is not a valid URI")

        user = User(id=auth_code.user_id)
        return await self.auth_manager.save_token(client, user, auth_code.scope)

    async def _client_credentials_grant(self, client: Client, form: Mapping[str, Any]) -> Token:
        user = await self.auth_manager.get_user_from_client(client)
        scope = self.auth_manager.validate_scope(form.get("scope"))
        return await self.auth_manager.save_token(client, user, scope)

    async def _refresh_token_grant(self, client: Client, form: Mapping[str, Any]) -> Token:
        refresh_token = form.get("refresh_token")
        if not refresh_token:
            raise InvalidRequest("Missing parameter: refresh_token")

        current = await self.auth_manager.get_refresh_token(refresh_token)
        if current is None:
            raise InvalidGrant("Invalid grant: refresh token is invalid")
        if current.client_id != client.id:
            raise InvalidGrant("Invalid grant: refresh token was issued to another client")

        scope = current.scope
        if form.get("scope"):
            requested = self.auth_manager.validate_scope(form.get("scope"))
            if current.scope and not set(requested.split()) <= set(current.scope.split()):
                raise InvalidScope("Requested scope exceeds the scope originally granted")
            scope = requested

        # Issuing for the same (client, user) evicts the current pair
        return await self.auth_manager.save_token(client, User(id=current.user_id), scope)

    def _token_response(self, client: Client, token: Token) -> Dict[str, Any]:
        return TokenResponse(
            access_token=token.access_token,
            token_type="Bearer",
            expires_in=client.access_token_lifetime,
            refresh_token=token.refresh_token,
            scope=token.scope,
        ).model_dump(exclude_none=True)

    # Revocation endpoint
    async def revoke(self, form: Mapping[str, Any], authorization: Optional[str]) -> bool:
        """Revoke a refresh or access token owned by the calling client"""
        client = await self.authenticate_client(form, authorization, require_secret=False)

        token_value = form.get("token")
        if not token_value:
            raise InvalidRequest("Missing parameter: token")

        if form.get("token_type_hint") != "access_token":
            current = await self.auth_manager.get_refresh_token(token_value)
            if current is not None and current.client_id == client.id:
                return await self.auth_manager.revoke_token(token_value)

        current = await self.auth_manager.get_access_token(token_value)
        if current is not None and current.client_id == client.id:
            return await self.auth_manager.revoke_access_token(token_value)

        return False
