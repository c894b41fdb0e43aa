import os
from typing import List, Optional
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()

DEFAULT_GRANTS = "client_credentials,refresh_token,authorization_code"
DEFAULT_REDIRECT_URIS = "http://localhost:5678/rest/oauth2-credential/callback"


class Config:
    """Configuration management for the OAuth gateway"""

    def __init__(self):
        # Server configuration
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", 3000))
        self.environment = os.getenv("ENVIRONMENT", "development")
        self.base_url = os.getenv("BASE_URL", f"http://localhost:{self.port}").rstrip("/")
        self.allowed_origins = self._parse_allowed_origins()

        # Static client configuration
        self.client_id = os.getenv("OAUTH2_CLIENT_ID", "gateway-client")
        self.client_secret = os.getenv("OAUTH2_CLIENT_SECRET")
        self.grants = self._parse_list(os.getenv("OAUTH2_GRANTS", DEFAULT_GRANTS))
        self.redirect_uris = self._parse_list(os.getenv("OAUTH2_REDIRECT_URIS", DEFAULT_REDIRECT_URIS))
        self.access_token_lifetime = int(os.getenv("ACCESS_TOKEN_LIFETIME", 3600))
        self.refresh_token_lifetime = int(os.getenv("REFRESH_TOKEN_LIFETIME", 1209600))  # 14 days

        # OAuth behaviour
        self.default_scope = os.getenv("OAUTH2_DEFAULT_SCOPE", "customer:read customer:write")
        self.allowed_scopes = os.getenv("OAUTH2_SCOPES", "").split()
        self.oauth_code_expiry = int(os.getenv("OAUTH_CODE_EXPIRY", 300))  # 5 minutes
        self.default_user = os.getenv("OAUTH2_DEFAULT_USER", "demo-user")
        self.allow_bearer_in_query = os.getenv("ALLOW_BEARER_IN_QUERY", "false").lower() == "true"

        # Storage configuration
        self.tokens_file = os.getenv("TOKENS_FILE", "tokens.json")

        # Reverse proxy configuration
        self.upstream_base_url = os.getenv("UPSTREAM_BASE_URL", "http://localhost:8080").rstrip("/")
        self.proxy_prefix = "/" + os.getenv("PROXY_PREFIX", "/api").strip("/")
        self.proxy_timeout = float(os.getenv("PROXY_TIMEOUT", 30))
        self.proxy_max_redirects = int(os.getenv("PROXY_MAX_REDIRECTS", 5))
        self.proxy_required_scope = os.getenv("PROXY_REQUIRED_SCOPE", "").strip() or None

        # Rate limiting configuration
        self.rate_limit_enabled = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
        self.rate_limit_requests = int(os.getenv("RATE_LIMIT_REQUESTS", 20))
        self.rate_limit_window = int(os.getenv("RATE_LIMIT_WINDOW", 300))

        # Cleanup configuration
        self.cleanup_interval = int(os.getenv("CLEANUP_INTERVAL", 300))  # 5 minutes

        # Logging configuration
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_format = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        self._validate_config()

    @staticmethod
    def _parse_list(value: str) -> List[str]:
        return [item.strip() for item in value.split(",") if item.strip()]

    def _parse_allowed_origins(self) -> List[str]:
        """Parse allowed origins from environment variable"""
        origins_str = os.getenv("ALLOWED_ORIGINS", "*")
        if origins_str == "*":
            return ["*"]
        return [origin.strip() for origin in origins_str.split(",")]

    def _validate_config(self):
        """Validate configuration values"""
        if not self.client_secret:
            raise ValueError("OAUTH2_CLIENT_SECRET must be set")

        if self.environment == "production" and not self.base_url.startswith("https://"):
            raise ValueError("BASE_URL must use HTTPS in production")

        if self.access_token_lifetime <= 0 or self.refresh_token_lifetime <= 0:
            raise ValueError("ACCESS_TOKEN_LIFETIME and REFRESH_TOKEN_LIFETIME must be positive")

        if self.oauth_code_expiry < 30 or self.oauth_code_expiry > 600:
            raise ValueError("OAUTH_CODE_EXPIRY must be between 30 and 600 seconds")

        if self.proxy_max_redirects < 0:
            raise ValueError("PROXY_MAX_REDIRECTS must not be negative")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment == "production"

    @property
    def scopes_supported(self) -> Optional[List[str]]:
        return self.allowed_scopes or None

    def get_oauth_code_expiry_delta(self) -> timedelta:
        """Get OAuth code expiry as timedelta"""
        return timedelta(seconds=self.oauth_code_expiry)
