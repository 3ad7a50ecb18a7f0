"""
FastAPI Application Factory
===========================

Entry point for the authentication gate that sits in front of a protected
web application.

Architecture:
    Browser -> authgate (this service) -> Identity provider / Upstream app

Routes:
    - CALLBACK_PATH : OAuth callback, handled inside the gate middleware
    - /userinfo     : Verified identity claims of the current session
    - /logout       : Ends the current session
    - /health       : Health check endpoint (exempt from authentication)
    - /*            : Forwarded to UPSTREAM_URL when configured

Environment Variables Required:
    - IDP_DOMAIN: Identity provider domain (e.g., "tenant.eu.auth0.com")
    - CLIENT_ID / CLIENT_SECRET: OAuth client credentials
    - REDIRECT_URI: Registered callback URL
    - COOKIE_DOMAIN: Domain attribute of the session cookie
    - KV_BACKEND / REDIS_URL: State and session storage
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn authgate.main:create_app --factory --reload --port 8080

    Production:
        uvicorn authgate.main:create_app --factory --host 0.0.0.0 --port 8080 --workers 4

    Multiple workers require KV_BACKEND=redis.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from authgate import __version__
from authgate.auth.jwks import JWKSCache
from authgate.auth.middleware import AuthGateMiddleware, AuthMiddleware
from authgate.auth.oauth import OAuthClient
from authgate.auth.routes import auth_router
from authgate.auth.verifier import JWTVerifier
from authgate.config import Settings, get_settings, validate_configuration
from authgate.errors import AuthGateError, ConfigurationError
from authgate.models import ErrorResponse, HealthResponse
from authgate.proxy.routes import proxy_router
from authgate.stores import KeyValueStore, SessionStore, StateStore, build_kv_store

logger = logging.getLogger(__name__)


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def build_gate(settings: Settings, kv_store: KeyValueStore, http_client: httpx.AsyncClient) -> AuthMiddleware:
    """Wire the stores, key cache, verifier and OAuth client into one gate."""
    jwks_cache = JWKSCache(
        settings.jwks_url,
        http_client,
        cache_seconds=settings.JWKS_CACHE_SECONDS,
        timeout_seconds=settings.HTTP_TIMEOUT_SECONDS,
    )
    verifier = JWTVerifier(
        jwks_cache,
        max_token_age_seconds=settings.MAX_TOKEN_AGE_SECONDS,
        leeway_seconds=settings.CLOCK_SKEW_SECONDS,
    )
    return AuthMiddleware(
        settings=settings,
        state_store=StateStore(kv_store, settings.STATE_TTL_SECONDS, settings.KV_TIMEOUT_SECONDS),
        session_store=SessionStore(kv_store, settings.SESSION_TTL_SECONDS, settings.KV_TIMEOUT_SECONDS),
        oauth_client=OAuthClient(settings, http_client),
        verifier=verifier,
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Shutdown tasks:
        - Close the shared HTTP client
        - Close the key-value store connection
    """
    settings = app.state.settings
    logger.info(
        "Starting authentication gate",
        extra={
            "idp_domain": settings.IDP_DOMAIN,
            "kv_backend": settings.KV_BACKEND,
            "upstream": settings.upstream_url_str,
        }
    )

    yield

    logger.info("Shutting down authentication gate")
    await app.state.http_client.aclose()
    await app.state.kv_store.close()
    logger.info("Authentication gate shutdown complete")


# Create FastAPI application
def create_app(
    settings: Optional[Settings] = None,
    kv_store: Optional[KeyValueStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Args:
        settings: Configuration; loaded from the environment when omitted
        kv_store: Backing store; chosen by KV_BACKEND when omitted
        http_client: Client for identity provider and upstream calls

    Returns:
        FastAPI: Configured application instance

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    if settings is None:
        settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    report = validate_configuration(settings)
    for warning in report["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    if not report["valid"]:
        raise ConfigurationError("; ".join(report["errors"]))

    if kv_store is None:
        kv_store = build_kv_store(settings)
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)
    gate = build_gate(settings, kv_store, http_client)

    app = FastAPI(
        title="authgate",
        description="Session-based OAuth 2.0 authentication gate",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )

    app.state.settings = settings
    app.state.kv_store = kv_store
    app.state.http_client = http_client
    app.state.gate = gate

    app.add_middleware(
        AuthGateMiddleware,
        gate=gate,
        exempt_paths=settings.exempt_paths_list,
    )

    # Health check endpoint
    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check() -> HealthResponse:
        return HealthResponse(status="ok", service="authgate")

    app.include_router(auth_router)

    # Catch-all; must be registered last
    if settings.upstream_url_str:
        app.include_router(proxy_router)
        logger.info(f"Forwarding authenticated requests to {settings.upstream_url_str}")

    @app.exception_handler(AuthGateError)
    async def auth_gate_error_handler(request: Request, exc: AuthGateError) -> JSONResponse:
        logger.error(
            f"Request failed: {exc}",
            extra={"path": request.url.path, "error_code": exc.error_code}
        )
        body = ErrorResponse(error=exc.error_code, message=exc.message)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump())

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a generic error response.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )
        body = ErrorResponse(error="internal_error", message="An unexpected error occurred")
        return JSONResponse(status_code=500, content=body.model_dump())

    return app


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "authgate.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8080,
        log_level=settings.LOG_LEVEL.lower()
    )
