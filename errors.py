from typing import Any, Dict, Optional


class OAuthError(Exception):
    """OAuth protocol error rendered as an RFC 6749 error body"""

    error = "server_error"
    status_code = 500

    def __init__(self, error_description: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        self.error_description = error_description or self.error
        self.headers = headers or {}
        super().__init__(self.error_description)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "error_description": self.error_description}


class InvalidRequest(OAuthError):
    error = "invalid_request"
    status_code = 400


class InvalidClient(OAuthError):
    error = "invalid_client"
    status_code = 401


class InvalidGrant(OAuthError):
    error = "invalid_grant"
    status_code = 400


class UnauthorizedClient(OAuthError):
    error = "unauthorized_client"
    status_code = 400


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"
    status_code = 400


class UnsupportedResponseType(OAuthError):
    error = "unsupported_response_type"
    status_code = 400


class InvalidScope(OAuthError):
    error = "invalid_scope"
    status_code = 400


class AccessDenied(OAuthError):
    """The resource owner declined consent; surfaced as a redirect, never as a body"""

    error = "access_denied"
    status_code = 302

    def __init__(self, redirect_url: str, error_description: Optional[str] = None):
        self.redirect_url = redirect_url
        super().__init__(error_description or "The resource owner denied the request")


class InvalidToken(OAuthError):
    error = "invalid_token"
    status_code = 401


class InsufficientScope(OAuthError):
    error = "insufficient_scope"
    status_code = 403


class RateLimitExceeded(OAuthError):
    error = "rate_limit_exceeded"
    status_code = 429


class UpstreamUnavailable(OAuthError):
    error = "upstream_unavailable"
    status_code = 502


class ServerError(OAuthError):
    error = "server_error"
    status_code = 500


class TokenIntegrityError(ServerError):
    """A stored token record is missing data every issued token carries"""
