"""
Configuration module for the authentication gate.

This module uses Pydantic Settings to load and validate environment variables
for the identity provider, the session cookie, store lifetimes and the
key-value backend.

Environment variables are loaded from .env file or system environment.
Settings are built once at process start and passed explicitly to every
component; nothing reads them per request.
"""

import logging
from functools import lru_cache
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from authgate.errors import ConfigurationError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Identity provider endpoints default to the Auth0 layout under IDP_DOMAIN
    and can be overridden individually.
    """

    # =========================================================================
    # Identity Provider
    # =========================================================================

    IDP_DOMAIN: str = Field(
        ...,
        description="Identity provider domain (e.g., example.eu.auth0.com)",
        min_length=1,
    )

    CLIENT_ID: str = Field(
        ...,
        description="OAuth client ID registered with the identity provider",
        min_length=1,
    )

    CLIENT_SECRET: str = Field(
        ...,
        description="OAuth client secret",
        min_length=1,
    )

    REDIRECT_URI: str = Field(
        ...,
        description="Callback URL registered with the identity provider (e.g., https://app.example.com/callback)",
        min_length=1,
    )

    SCOPES: str = Field(
        default="openid profile",
        description="Requested scopes, comma or space separated",
    )

    IDP_AUTHORIZE_URL: Optional[str] = Field(None, description="Override for the authorize endpoint")
    IDP_TOKEN_URL: Optional[str] = Field(None, description="Override for the token endpoint")
    IDP_JWKS_URL: Optional[str] = Field(None, description="Override for the JWKS endpoint")
    IDP_ISSUER: Optional[str] = Field(None, description="Override for the expected ID token issuer")

    # =========================================================================
    # Session Cookie
    # =========================================================================

    COOKIE_NAME: str = Field(
        default="authgate_session",
        description="Name of the session cookie",
        min_length=1,
    )

    COOKIE_DOMAIN: str = Field(
        ...,
        description="Domain attribute of the session cookie",
        min_length=1,
    )

    CALLBACK_PATH: str = Field(
        default="/callback",
        description="Exact request path that receives the authorization response",
    )

    # =========================================================================
    # Lifetimes
    # =========================================================================

    SESSION_TTL_SECONDS: int = Field(
        default=86400,
        description="Session lifetime in seconds (store TTL and cookie expiry)",
        ge=60,
    )

    STATE_TTL_SECONDS: int = Field(
        default=300,
        description="Lifetime of a pending login state in seconds",
        ge=30,
        le=3600,
    )

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache identity provider signing keys in seconds",
        ge=0,
        le=86400,
    )

    MAX_TOKEN_AGE_SECONDS: Optional[int] = Field(
        default=None,
        description="Reject ID tokens issued longer ago than this (unset disables the check)",
        ge=1,
    )

    CLOCK_SKEW_SECONDS: int = Field(
        default=0,
        description="Clock skew tolerance applied to exp and iat checks",
        ge=0,
        le=300,
    )

    # =========================================================================
    # Timeouts
    # =========================================================================

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for identity provider and upstream calls",
        gt=0,
    )

    KV_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="Timeout for a single key-value store operation",
        gt=0,
    )

    # =========================================================================
    # Key-Value Store
    # =========================================================================

    KV_BACKEND: str = Field(
        default="memory",
        description="Key-value backend: 'memory' (single instance) or 'redis'",
    )

    REDIS_URL: Optional[str] = Field(
        None,
        description="Redis connection URL when KV_BACKEND=redis",
    )

    # =========================================================================
    # Routing
    # =========================================================================

    EXEMPT_PATHS: str = Field(
        default="/health",
        description="Comma-separated paths served without authentication",
    )

    UPSTREAM_URL: Optional[str] = Field(
        None,
        description="Protected application to forward authenticated requests to",
    )

    LOGOUT_REDIRECT_URL: str = Field(
        default="/",
        description="Where /logout sends the browser after clearing the session",
    )

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def idp_base_url(self) -> str:
        return f"https://{self.IDP_DOMAIN}"

    @property
    def authorize_url(self) -> str:
        return self.IDP_AUTHORIZE_URL or f"{self.idp_base_url}/authorize"

    @property
    def token_url(self) -> str:
        return self.IDP_TOKEN_URL or f"{self.idp_base_url}/oauth/token"

    @property
    def jwks_url(self) -> str:
        return self.IDP_JWKS_URL or f"{self.idp_base_url}/.well-known/jwks.json"

    @property
    def issuer(self) -> str:
        return self.IDP_ISSUER or f"{self.idp_base_url}/"

    @property
    def audience(self) -> str:
        """ID tokens are issued to this client."""
        return self.CLIENT_ID

    @property
    def scopes_list(self) -> List[str]:
        """
        Parse SCOPES into a list, accepting commas and/or spaces.

        Returns:
            Scopes in configured order without duplicates.
        """
        scopes: List[str] = []
        for scope in self.SCOPES.replace(",", " ").split():
            if scope not in scopes:
                scopes.append(scope)
        return scopes

    @property
    def exempt_paths_list(self) -> List[str]:
        return [path.strip() for path in self.EXEMPT_PATHS.split(",") if path.strip()]

    @property
    def upstream_url_str(self) -> Optional[str]:
        if not self.UPSTREAM_URL:
            return None
        return self.UPSTREAM_URL.rstrip("/")

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("IDP_DOMAIN")
    @classmethod
    def normalize_idp_domain(cls, v: str) -> str:
        """Accept 'https://tenant.auth0.com/' as well as 'tenant.auth0.com'."""
        v = v.strip()
        if "://" in v:
            v = urlparse(v).netloc
        v = v.rstrip("/")
        if not v or "/" in v or " " in v:
            raise ValueError(f"Invalid IDP_DOMAIN: '{v}'. Expected a host name such as 'tenant.auth0.com'")
        return v

    @field_validator("REDIRECT_URI", "IDP_AUTHORIZE_URL", "IDP_TOKEN_URL", "IDP_JWKS_URL", "UPSTREAM_URL")
    @classmethod
    def validate_http_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Invalid URL: '{v}'. Expected an absolute http(s) URL")
        return v

    @field_validator("CALLBACK_PATH")
    @classmethod
    def validate_callback_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"CALLBACK_PATH must start with '/', got: {v}")
        return v

    @field_validator("KV_BACKEND")
    @classmethod
    def validate_kv_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("memory", "redis"):
            raise ValueError(f"KV_BACKEND must be 'memory' or 'redis', got: {v}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid LOG_LEVEL: {v}")
        return v

    @model_validator(mode="after")
    def check_redis_url(self) -> "Settings":
        if self.KV_BACKEND == "redis" and not self.REDIS_URL:
            raise ValueError("REDIS_URL is required when KV_BACKEND=redis")
        return self


# =============================================================================
# Loading
# =============================================================================

def load_settings(**overrides) -> Settings:
    """
    Build Settings from the environment, failing fast on bad configuration.

    Raises:
        ConfigurationError: If required variables are missing or invalid.
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'settings'}: {error['msg']}"
            for error in e.errors()
        )
        logger.critical(f"Invalid configuration: {problems}")
        raise ConfigurationError(f"Invalid configuration: {problems}") from e


@lru_cache()
def get_settings() -> Settings:
    """
    Get or create the process-wide Settings instance.

    Only the process entry point should call this; components receive
    their settings through their constructors.
    """
    return load_settings()


def validate_configuration(settings: Settings) -> dict:
    """
    Check settings for risky but technically valid values.

    Returns:
        Dictionary with validation status and any warnings.
    """
    errors = []
    warnings = []

    redirect = urlparse(settings.REDIRECT_URI)
    if redirect.path != settings.CALLBACK_PATH:
        warnings.append(
            f"REDIRECT_URI path '{redirect.path}' differs from CALLBACK_PATH '{settings.CALLBACK_PATH}'"
        )
    if redirect.scheme != "https":
        warnings.append("REDIRECT_URI is not https; Secure session cookies will not be sent back")

    if settings.CALLBACK_PATH in settings.exempt_paths_list:
        errors.append("CALLBACK_PATH must not be listed in EXEMPT_PATHS")

    if settings.KV_BACKEND == "memory":
        warnings.append("KV_BACKEND=memory keeps state per process; logins break across instances")

    if settings.MAX_TOKEN_AGE_SECONDS and settings.MAX_TOKEN_AGE_SECONDS < settings.SESSION_TTL_SECONDS:
        warnings.append("MAX_TOKEN_AGE_SECONDS is shorter than SESSION_TTL_SECONDS; sessions end early")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "kv_backend": settings.KV_BACKEND,
        "session_ttl_seconds": settings.SESSION_TTL_SECONDS,
    }
